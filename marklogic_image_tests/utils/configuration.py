"""Test environment configuration.

Values are read from the environment once, on import. The engine itself never reads them
directly, scenarios build a `ScenarioConfig` from them and pass it around explicitly.
"""

import dataclasses
import os
import pathlib as pl
import shutil

from marklogic_image_tests.utils import http_client
from marklogic_image_tests.utils import poll_utils
from marklogic_image_tests.utils import temptools

LAUNCH_PATH = pl.Path.cwd()

IMAGE = os.environ.get("ML_DOCKER_IMAGE") or "progressofficial/marklogic-db:latest"
# Image for the secondary (`-2`) container of upgrade scenarios
UPGRADE_IMAGE = os.environ.get("ML_UPGRADE_IMAGE") or IMAGE

LICENSE_KEY = os.environ.get("LICENSE_KEY") or ""
LICENSEE = os.environ.get("LICENSEE") or ""

ADMIN_USERNAME = os.environ.get("ML_ADMIN_USERNAME") or "test_admin"
ADMIN_PASSWORD = os.environ.get("ML_ADMIN_PASSWORD") or "test_admin_pass"

# Total time budget for readiness and "should be" style checks
TIMEOUT = float(os.environ.get("ML_TIMEOUT") or 300)
POLL_INTERVAL = float(os.environ.get("ML_POLL_INTERVAL") or 10)
# Outer timeout for every external command
PROCESS_TIMEOUT = float(os.environ.get("ML_PROCESS_TIMEOUT") or 180)

if TIMEOUT <= 0 or POLL_INTERVAL <= 0 or PROCESS_TIMEOUT <= 0:
    msg = (
        f"Invalid timeouts: ML_TIMEOUT={TIMEOUT}, ML_POLL_INTERVAL={POLL_INTERVAL}, "
        f"ML_PROCESS_TIMEOUT={PROCESS_TIMEOUT}; all must be positive"
    )
    raise RuntimeError(msg)
if POLL_INTERVAL >= TIMEOUT:
    msg = f"Invalid ML_POLL_INTERVAL '{POLL_INTERVAL}': must be lower than ML_TIMEOUT '{TIMEOUT}'"
    raise RuntimeError(msg)

# Base dir for per-scenario results, defaults to a dir in the pytest temp dir
RESULTS_DIR: str | pl.Path = os.environ.get("ML_RESULTS_DIR") or ""
if RESULTS_DIR:
    RESULTS_DIR = pl.Path(RESULTS_DIR).expanduser().resolve()

DOCKER_BIN = os.environ.get("DOCKER_BIN") or "docker"
HAS_DOCKER = bool(shutil.which(DOCKER_BIN))

# Containers and stacks are kept running after tests finish
KEEP_CONTAINERS = bool(os.environ.get("KEEP_CONTAINERS"))

APP_SERVICES_PORT = 8000
ADMIN_PORT = 8001
MANAGE_PORT = 8002
HEALTHCHECK_PORT = 7997
DEFAULT_PORTS = ("7997-8002:7997-8002",)

# Label put on every container and volume created by the framework
RESOURCE_LABEL = "marklogic-image-tests"

# Log message emitted by the image once the node finished its initial configuration
READINESS_MARKER = "Cluster config complete, marking this container as ready."


@dataclasses.dataclass(frozen=True)
class ScenarioConfig:
    """Everything a scenario needs to drive containers and query the cluster."""

    results_dir: pl.Path
    image: str = IMAGE
    upgrade_image: str = UPGRADE_IMAGE
    credentials: http_client.Credentials = http_client.Credentials(
        username=ADMIN_USERNAME, password=ADMIN_PASSWORD
    )
    license_key: str = LICENSE_KEY
    licensee: str = LICENSEE
    retry: poll_utils.RetryPolicy = poll_utils.RetryPolicy(
        timeout=TIMEOUT, interval=POLL_INTERVAL
    )
    process_timeout: float = PROCESS_TIMEOUT
    docker_bin: str = DOCKER_BIN
    host: str = "localhost"

    @classmethod
    def from_env(cls, *, scenario_name: str, **overrides: object) -> "ScenarioConfig":
        """Return config of one scenario, with defaults taken from the environment."""
        base_dir = pl.Path(RESULTS_DIR or temptools.get_pytest_worker_tmp() / "results")
        results_dir = base_dir / scenario_name
        results_dir.mkdir(parents=True, exist_ok=True)
        config = cls(results_dir=results_dir)
        return dataclasses.replace(config, **overrides)  # type: ignore[arg-type]

    def base_url(self, port: int) -> str:
        return f"http://{self.host}:{port}"
