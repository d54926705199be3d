"""Functionality for collecting testing artifacts."""

import logging
import pathlib as pl
import shutil

from _pytest.config import Config

from marklogic_image_tests.utils import helpers

LOGGER = logging.getLogger(__name__)

ARTIFACTS_BASE_DIR_ARG = "--artifacts-base-dir"


def copy_results(
    *, results_dir: pl.Path, scenario_name: str, pytest_config: Config
) -> pl.Path | None:
    """Copy captured output of a failed scenario to artifacts dir."""
    artifacts_base_dir = pytest_config.getoption(ARTIFACTS_BASE_DIR_ARG)
    if not (artifacts_base_dir and results_dir.is_dir()):
        return None

    destdir = (
        pl.Path(artifacts_base_dir)
        / "scenario_artifacts"
        / f"{scenario_name}_{helpers.get_timestamped_rand_str()}"
    )
    shutil.copytree(results_dir, destdir, symlinks=True, ignore_dangling_symlinks=True)
    LOGGER.info(f"Scenario artifacts saved to '{destdir}'.")
    return destdir

