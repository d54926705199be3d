import logging
import pathlib as pl
import typing as tp

import pytest

from marklogic_image_tests.utils import configuration
from marklogic_image_tests.utils import docker_utils
from marklogic_image_tests.utils import http_client

LOGGER = logging.getLogger(__name__)

DATA_DIR = pl.Path(__file__).parent / "data"

# Common `skipif`s
SKIPIF_NO_DOCKER = pytest.mark.skipif(
    not configuration.HAS_DOCKER,
    reason=f"the `{configuration.DOCKER_BIN}` executable is not available",
)
SKIPIF_NO_UPGRADE_IMAGE = pytest.mark.skipif(
    configuration.UPGRADE_IMAGE == configuration.IMAGE,
    reason="`ML_UPGRADE_IMAGE` is not set to an image different from `ML_DOCKER_IMAGE`",
)


def hypothesis_settings(max_examples: int = 100) -> tp.Any:
    import hypothesis

    return hypothesis.settings(
        max_examples=max_examples,
        deadline=None,
        suppress_health_check=(
            hypothesis.HealthCheck.too_slow,
            hypothesis.HealthCheck.function_scoped_fixture,
        ),
    )


def create_initialized_container(
    controller: docker_utils.ContainerController,
    name: str,
    *,
    extra_args: tp.Iterable[str] = (),
    volume: bool = False,
) -> docker_utils.ContainerSpec:
    """Create container that initializes the server with the scenario credentials."""
    args = [*docker_utils.init_args(controller.config), *extra_args]
    if volume:
        return controller.create_test_container(name, extra_args=args)
    return controller.create_container(name, extra_args=args)


def open_manage_session(
    config: configuration.ScenarioConfig, *, port: int = configuration.MANAGE_PORT
) -> http_client.AuthSession:
    return http_client.AuthSession(
        base_url=config.base_url(port),
        credentials=config.credentials,
        session_id=f"manage-{port}",
    )


def open_eval_session(
    config: configuration.ScenarioConfig, *, port: int = configuration.APP_SERVICES_PORT
) -> http_client.AuthSession:
    return http_client.AuthSession(
        base_url=config.base_url(port),
        credentials=config.credentials,
        session_id=f"eval-{port}",
    )
