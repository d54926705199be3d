"""Log of framework problems, kept apart from the logs of individual tests.

Failed container creation, errors found in container logs and incomplete teardown end up in
`framework.log` in the pytest worker temp dir, where they are easy to find after the run.
"""

import functools
import logging
import pathlib as pl
import time

from marklogic_image_tests.utils import temptools

FRAMEWORK_LOG_NAME = "framework.log"


class UTCFormatter(logging.Formatter):
    converter = time.gmtime  # type: ignore[assignment]


def get_framework_log_path() -> pl.Path:
    return temptools.get_pytest_worker_tmp() / FRAMEWORK_LOG_NAME


@functools.cache
def framework_logger() -> logging.Logger:
    """Return logger writing to `framework.log`, configured once per worker."""
    handler = logging.FileHandler(get_framework_log_path(), encoding="utf-8")
    handler.setFormatter(UTCFormatter("%(asctime)s %(levelname)s %(message)s"))

    logger = logging.getLogger("marklogic_image_tests.framework")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    return logger
