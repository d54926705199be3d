import pathlib as pl
import shutil
import typing as tp

import pytest

from marklogic_image_tests.utils import configuration
from marklogic_image_tests.utils import http_client
from marklogic_image_tests.utils import poll_utils
from marklogic_image_tests.utils import temptools

MOCKS_DIR = pl.Path(__file__).parent / "mocks"


class FakeClock:
    """Monotonic clock that advances only when `sleep` is called."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(scope="session", autouse=True)
def init_temp_dirs(tmp_path_factory: pytest.TempPathFactory) -> None:
    temptools.PytestTempDirs.init(tmp_path_factory)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_clock() -> type[FakeClock]:
    """Clock factory, for tests where one function scoped clock is not enough."""
    return FakeClock


@pytest.fixture
def fake_docker(tmp_path: pl.Path, monkeypatch: pytest.MonkeyPatch) -> pl.Path:
    """Install fake `docker` executable, return its state dir."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    docker_bin = bin_dir / "docker"
    shutil.copy(MOCKS_DIR / "docker", docker_bin)
    docker_bin.chmod(0o755)

    state_dir = tmp_path / "docker_state"
    state_dir.mkdir()
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state_dir))
    return state_dir


@pytest.fixture
def scenario_config(tmp_path: pl.Path, fake_docker: pl.Path) -> configuration.ScenarioConfig:
    return configuration.ScenarioConfig(
        results_dir=tmp_path / "results" / "test_scenario",
        image="marklogic-db:11",
        upgrade_image="marklogic-db:12",
        credentials=http_client.Credentials(username="admin", password="secret"),
        retry=poll_utils.RetryPolicy(timeout=5, interval=0.05),
        process_timeout=30,
        docker_bin=str(tmp_path / "bin" / "docker"),
    )


@pytest.fixture
def docker_calls(fake_docker: pl.Path) -> tp.Callable[[], list[str]]:
    """Return function listing arguments of all `docker` invocations so far."""

    def _get_calls() -> list[str]:
        calls_file = fake_docker / "calls"
        if not calls_file.exists():
            return []
        return calls_file.read_text(encoding="utf-8").splitlines()

    return _get_calls
