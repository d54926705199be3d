import logging
import typing as tp

import allure
import pytest
from _pytest.config import Config
from _pytest.fixtures import FixtureRequest
from _pytest.tmpdir import TempPathFactory
from pytest_metadata.plugin import metadata_key

from marklogic_image_tests.utils import artifacts
from marklogic_image_tests.utils import configuration
from marklogic_image_tests.utils import docker_utils
from marklogic_image_tests.utils import framework_log
from marklogic_image_tests.utils import helpers
from marklogic_image_tests.utils import logfiles
from marklogic_image_tests.utils import pytest_utils
from marklogic_image_tests.utils import temptools

LOGGER = logging.getLogger(__name__)


def pytest_addoption(parser: tp.Any) -> None:
    parser.addoption(
        artifacts.ARTIFACTS_BASE_DIR_ARG,
        action="store",
        type=helpers.check_dir_arg,
        default="",
        help="Path to directory for storing artifacts",
    )


def pytest_configure(config: tp.Any) -> None:
    config.stash[metadata_key]["ML_DOCKER_IMAGE"] = configuration.IMAGE
    config.stash[metadata_key]["ML_UPGRADE_IMAGE"] = configuration.UPGRADE_IMAGE
    config.stash[metadata_key]["ML_TIMEOUT"] = str(configuration.TIMEOUT)
    config.stash[metadata_key]["ML_POLL_INTERVAL"] = str(configuration.POLL_INTERVAL)
    config.stash[metadata_key]["ML_PROCESS_TIMEOUT"] = str(configuration.PROCESS_TIMEOUT)
    config.stash[metadata_key]["HAS_LICENSE"] = str(bool(configuration.LICENSE_KEY))
    config.stash[metadata_key]["KEEP_CONTAINERS"] = str(configuration.KEEP_CONTAINERS)
    config.stash[metadata_key]["docker exe"] = configuration.DOCKER_BIN


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_makereport(item: tp.Any, call: tp.Any) -> tp.Generator:
    """Make result of each test phase available to fixtures."""
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def _save_env_for_allure(pytest_config: Config) -> None:
    """Save environment info in a format for Allure."""
    alluredir = pytest_config.getoption("--alluredir", default=None)

    if not alluredir:
        return

    alluredir = configuration.LAUNCH_PATH / alluredir
    alluredir.mkdir(parents=True, exist_ok=True)
    metadata: dict[str, tp.Any] = pytest_config.stash[metadata_key]  # type: ignore
    with open(alluredir / "environment.properties", "w+", encoding="utf-8") as infile:
        for k, v in metadata.items():
            if isinstance(v, dict):
                continue
            name = k.replace(" ", ".")
            infile.write(f"{name}={v}\n")


@pytest.fixture(scope="session", autouse=True)
def init_pytest_temp_dirs(tmp_path_factory: TempPathFactory, request: FixtureRequest) -> None:
    """Init `PytestTempDirs` and save environment info."""
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)
    _save_env_for_allure(request.config)
    LOGGER.info(f"Framework log: '{framework_log.get_framework_log_path()}'")


@pytest.fixture
def scenario_name() -> str:
    """Return container name derived from the name of the running test."""
    return docker_utils.get_container_name(pytest_utils.get_scenario_name())


@pytest.fixture
def scenario_config(scenario_name: str) -> configuration.ScenarioConfig:
    return configuration.ScenarioConfig.from_env(scenario_name=scenario_name)


def _test_failed(request: FixtureRequest) -> bool:
    reports = (getattr(request.node, f"rep_{w}", None) for w in ("setup", "call"))
    return any(r is not None and r.failed for r in reports)


def _report_logs(
    controller: docker_utils.ContainerController, *, scenario_name: str, failed: bool
) -> None:
    """Save final logs, report errors found there and attach the logs to a failed test."""
    logs = controller.dump_logs()

    errors_str = logfiles.get_logfiles_errors(logs)
    if errors_str:
        framework_log.framework_logger().warning(
            f"Errors found in logs of scenario '{scenario_name}':\n{errors_str}"
        )

    if not failed:
        return
    for source, text in logs.items():
        allure.attach(text, name=f"{source}.log", attachment_type=allure.attachment_type.TEXT)


@pytest.fixture
def container_controller(
    scenario_config: configuration.ScenarioConfig,
    scenario_name: str,
    request: FixtureRequest,
) -> docker_utils.ContainerController:
    """Return controller whose containers and stacks are removed when the scenario ends."""
    controller = docker_utils.ContainerController(scenario_config)

    def _teardown() -> None:
        failed = _test_failed(request)
        try:
            _report_logs(controller, scenario_name=scenario_name, failed=failed)
            if failed:
                artifacts.copy_results(
                    results_dir=scenario_config.results_dir,
                    scenario_name=scenario_name,
                    pytest_config=request.config,
                )
        finally:
            if configuration.KEEP_CONTAINERS:
                LOGGER.warning(f"Keeping containers of scenario '{scenario_name}' running.")
            else:
                controller.teardown()

    request.addfinalizer(_teardown)
    return controller
