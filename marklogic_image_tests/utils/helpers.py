import argparse
import contextlib
import dataclasses
import datetime
import logging
import os
import pathlib as pl
import random
import string
import subprocess
import typing as tp

from marklogic_image_tests.utils import errors
from marklogic_image_tests.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ExitResult:
    command: str
    returncode: int
    stdout: str
    stderr: str

    def __bool__(self) -> bool:
        return self.returncode == 0


class LogSink:
    """Append-only capture of one stream (stdout or stderr) of one process invocation."""

    def __init__(self, path: pl.Path) -> None:
        self.path = path

    @classmethod
    def for_container(
        cls, *, results_dir: pl.Path, container: str, label: str, stream: str
    ) -> "LogSink":
        """Return sink addressed by container name, e.g. `<results>/<container>/run.stderr`."""
        return cls(results_dir / container / f"{label}.{stream}")

    def reset(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")

    def write(self, data: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as out_fp:
            out_fp.write(data)

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def is_empty(self) -> bool:
        return not self.read().strip()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str(self.path)!r})"


@contextlib.contextmanager
def environ(env: dict) -> tp.Iterator[None]:
    """Temporarily set environment variables and restore previous environment afterwards."""
    original_env = {key: os.environ.get(key) for key in env}
    os.environ.update(env)
    try:
        yield
    finally:
        for key, value in original_env.items():
            if value is None:
                del os.environ[key]
            else:
                os.environ[key] = value


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def run_process(
    command: list[str],
    *,
    timeout: float,
    stdout_sink: LogSink | None = None,
    stderr_sink: LogSink | None = None,
    workdir: ttypes.FileType = "",
) -> ExitResult:
    """Run external command, capture its output and enforce a wall-clock timeout.

    Non-zero exit status is not an error here, it is up to the caller to decide.

    Args:
        command: A command and its arguments.
        timeout: Number of seconds after which the process is killed.
        stdout_sink: Where to write captured stdout (optional).
        stderr_sink: Where to write captured stderr (optional).
        workdir: Working directory of the process.

    Returns:
        ExitResult: Exit status and captured output.

    Raises:
        ProcessTimeout: When the process didn't finish in time. Partial output is kept.
    """
    if timeout <= 0:
        msg = f"Invalid timeout '{timeout}': must be positive"
        raise ValueError(msg)

    cmd_str = " ".join(command)
    LOGGER.debug(f"Running `{cmd_str}`")

    timed_out = False
    with subprocess.Popen(
        command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, cwd=workdir or None
    ) as p:
        try:
            stdout_b, stderr_b = p.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            p.kill()
            stdout_b, stderr_b = p.communicate()
        retcode = p.returncode

    stdout, stderr = _decode(stdout_b), _decode(stderr_b)
    if stdout_sink:
        stdout_sink.write(stdout)
    if stderr_sink:
        stderr_sink.write(stderr)

    if timed_out:
        msg = f"Command `{cmd_str}` didn't finish in {timeout}s.\nPartial output:\n{stdout}{stderr}"
        raise errors.ProcessTimeout(
            msg, command=cmd_str, returncode=retcode, stdout=stdout, stderr=stderr
        )

    return ExitResult(command=cmd_str, returncode=retcode, stdout=stdout, stderr=stderr)


def run_command(
    command: str | list,
    *,
    timeout: float,
    workdir: ttypes.FileType = "",
    ignore_fail: bool = False,
    stdout_sink: LogSink | None = None,
    stderr_sink: LogSink | None = None,
) -> ExitResult:
    """Run command, fail with `ProcessFailure` on non-zero exit unless `ignore_fail`."""
    cmd = command.split() if isinstance(command, str) else [str(c) for c in command]
    result = run_process(
        cmd, timeout=timeout, stdout_sink=stdout_sink, stderr_sink=stderr_sink, workdir=workdir
    )

    if not ignore_fail and result.returncode != 0:
        err_dec = result.stderr or result.stdout
        msg = f"An error occurred while running `{result.command}`: {err_dec}"
        raise errors.ProcessFailure(
            msg,
            command=result.command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    return result


def get_rand_str(length: int = 8) -> str:
    """Return random string."""
    if length < 1:
        return ""
    return "".join(random.choice(string.ascii_lowercase) for i in range(length))


def get_timestamped_rand_str(rand_str_length: int = 4) -> str:
    """Return random string prefixed with timestamp.

    >>> len(get_timestamped_rand_str()) == len("200801_002401314_cinf")
    True
    """
    timestamp = datetime.datetime.now(tz=datetime.UTC).strftime("%y%m%d_%H%M%S%f")[:-3]
    rand_str_component = get_rand_str(length=rand_str_length)
    rand_str_component = rand_str_component and f"_{rand_str_component}"
    return f"{timestamp}{rand_str_component}"


def check_dir_arg(dir_path: str) -> pl.Path | None:
    """Check that the dir passed as argparse parameter is a valid existing dir."""
    if not dir_path:
        return None
    abs_path = pl.Path(dir_path).expanduser().resolve()
    if not (abs_path.exists() and abs_path.is_dir()):
        msg = f"check_dir_arg: directory '{dir_path}' doesn't exist"
        raise argparse.ArgumentTypeError(msg)
    return abs_path
