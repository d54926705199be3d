#!/usr/bin/env python3
"""Remove containers and volumes left behind by interrupted test runs.

Only resources labeled by the testing framework are considered.
"""

import argparse
import logging
import sys

from marklogic_image_tests.utils import configuration
from marklogic_image_tests.utils import docker_utils
from marklogic_image_tests.utils import errors
from marklogic_image_tests.utils import helpers

LOGGER = logging.getLogger(__name__)


def get_args() -> argparse.Namespace:
    """Get command line arguments."""
    parser = argparse.ArgumentParser(description=(__doc__ or "").split("\n", maxsplit=1)[0])
    parser.add_argument(
        "-p",
        "--prefix",
        default="",
        help="Remove only resources whose name starts with the prefix.",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Only list the resources that would be removed.",
    )
    parser.add_argument(
        "--docker-bin",
        default=configuration.DOCKER_BIN,
        help="Path to the `docker` executable.",
    )
    return parser.parse_args()


def cleanup(*, prefix: str, dry_run: bool, docker_bin: str) -> int:
    """Remove labeled containers and volumes, return number of failed removals."""
    containers, volumes = docker_utils.list_labeled_resources(docker_bin=docker_bin)
    containers = [c for c in containers if c.startswith(prefix)]
    volumes = [v for v in volumes if v.startswith(prefix)]

    failed = 0
    for args, names in ((["rm", "-f", "-v"], containers), (["volume", "rm", "-f"], volumes)):
        for name in names:
            if dry_run:
                LOGGER.info(f"Would remove '{name}'.")
                continue
            try:
                helpers.run_command(
                    [docker_bin, *args, name], timeout=configuration.PROCESS_TIMEOUT
                )
            except errors.ProcessFailure as exc:
                LOGGER.error(f"Failed to remove '{name}': {exc}")  # noqa: TRY400
                failed += 1
            else:
                LOGGER.info(f"Removed '{name}'.")

    return failed


def main() -> int:
    logging.basicConfig(format="%(levelname)s:%(message)s", level=logging.INFO)
    args = get_args()

    if not configuration.HAS_DOCKER and args.docker_bin == configuration.DOCKER_BIN:
        LOGGER.error(f"The `{configuration.DOCKER_BIN}` executable was not found.")
        return 1

    failed = cleanup(prefix=args.prefix, dry_run=args.dry_run, docker_bin=args.docker_bin)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
