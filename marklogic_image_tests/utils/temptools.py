import pathlib as pl
import tempfile

from _pytest.tmpdir import TempPathFactory


class PytestTempDirs:
    """Base temp dir of the running pytest worker.

    Set in `conftest.py`, where the `tmp_path_factory` fixture is available. Outside of pytest
    (e.g. the cleanup script) the system temp dir is used instead.
    """

    pytest_worker_tmp: pl.Path | None = None

    @classmethod
    def init(cls, tmp_path_factory: TempPathFactory) -> None:
        cls.pytest_worker_tmp = pl.Path(tmp_path_factory.getbasetemp())


def get_basetemp() -> pl.Path:
    """Return temp dir used when not running under pytest."""
    basetemp = pl.Path(tempfile.gettempdir()) / "marklogic-image-tests"
    basetemp.mkdir(mode=0o700, parents=True, exist_ok=True)
    return basetemp


def get_pytest_worker_tmp() -> pl.Path:
    """Return temp dir of the current pytest worker, each xdist worker has its own."""
    return PytestTempDirs.pytest_worker_tmp or get_basetemp()
