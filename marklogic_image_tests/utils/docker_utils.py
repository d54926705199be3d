"""Lifecycle of containers and compose stacks under test.

Everything is driven through the `docker` CLI. Output of every invocation is captured
into sinks under the results directory, addressed by container (or stack) name, e.g.
`<results_dir>/<container>/run.stderr`.
"""

import dataclasses
import enum
import logging
import pathlib as pl
import re
import typing as tp

from marklogic_image_tests.utils import configuration
from marklogic_image_tests.utils import errors
from marklogic_image_tests.utils import framework_log
from marklogic_image_tests.utils import helpers
from marklogic_image_tests.utils import http_client
from marklogic_image_tests.utils import logfiles
from marklogic_image_tests.utils import poll_utils

LOGGER = logging.getLogger(__name__)

SECONDARY_SUFFIX = "-2"
DATA_DIR = "/var/opt/MarkLogic"
ERROR_LOG = f"{DATA_DIR}/Logs/ErrorLog.txt"

USERNAME_SECRET_FILE = "mldb_admin_username.txt"
PASSWORD_SECRET_FILE = "mldb_admin_password.txt"
IMAGE_PLACEHOLDER = "{{IMAGE}}"
USERNAME_PLACEHOLDER = "{{ADMIN_USERNAME}}"
PASSWORD_PLACEHOLDER = "{{ADMIN_PASSWORD}}"

_NAME_RE = re.compile("[^a-zA-Z0-9_.-]+")
_PLACEHOLDER_RE = re.compile(r"\{\{[A-Z_]+\}\}")


class Role(enum.StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclasses.dataclass(frozen=True)
class ContainerSpec:
    name: str
    image: str
    ports: tuple[str, ...] = configuration.DEFAULT_PORTS
    extra_args: tuple[str, ...] = ()
    volume: str = ""
    mount_path: str = DATA_DIR
    role: Role = Role.PRIMARY

    def run_args(self) -> list[str]:
        """Return arguments for `docker run`."""
        args = ["run", "-d", "--name", self.name]
        args.extend(("--label", f"{configuration.RESOURCE_LABEL}=true"))
        for port in self.ports:
            args.extend(("-p", port))
        if self.volume:
            args.extend(("-v", f"{self.volume}:{self.mount_path}"))
        args.extend(self.extra_args)
        args.append(self.image)
        return args


@dataclasses.dataclass
class ComposeStack:
    name: str
    template: pl.Path
    compose_file: pl.Path
    secret_files: tuple[pl.Path, ...]
    nodes: list[str] = dataclasses.field(default_factory=list)
    ready: dict[str, bool] = dataclasses.field(default_factory=dict)

    @property
    def workdir(self) -> pl.Path:
        return self.compose_file.parent


def get_container_name(scenario_name: str) -> str:
    """Derive container name from scenario name.

    >>> get_container_name("Initialized container with TZ")
    'InitializedcontainerwithTZ'
    """
    name = _NAME_RE.sub("", scenario_name).lstrip("_.-")
    if not name:
        msg = f"Can't derive container name from scenario name '{scenario_name}'"
        raise ValueError(msg)
    return name


def get_secondary_name(name: str) -> str:
    """Return name of the secondary container paired with the `name` primary container."""
    return f"{name}{SECONDARY_SUFFIX}"


def get_stack_name(scenario_name: str) -> str:
    """Derive compose project name, it has to be lowercase."""
    return get_container_name(scenario_name).lower()


def init_args(
    config: configuration.ScenarioConfig, *, credentials: http_client.Credentials | None = None
) -> list[str]:
    """Return `docker run` arguments that make the container initialize the server."""
    creds = credentials or config.credentials
    args = [
        "-e",
        "MARKLOGIC_INIT=true",
        "-e",
        f"MARKLOGIC_ADMIN_USERNAME={creds.username}",
        "-e",
        f"MARKLOGIC_ADMIN_PASSWORD={creds.password}",
    ]
    if config.license_key:
        args.extend(("-e", f"LICENSE_KEY={config.license_key}"))
    if config.licensee:
        args.extend(("-e", f"LICENSEE={config.licensee}"))
    return args


def render_template(template: str, *, image: str, credentials: http_client.Credentials) -> str:
    """Substitute image reference and credentials placeholders in compose template."""
    rendered = (
        template.replace(IMAGE_PLACEHOLDER, image)
        .replace(USERNAME_PLACEHOLDER, credentials.username)
        .replace(PASSWORD_PLACEHOLDER, credentials.password)
    )
    leftover = _PLACEHOLDER_RE.findall(rendered)
    if leftover:
        msg = f"Unknown placeholders in compose template: {', '.join(sorted(set(leftover)))}"
        raise ValueError(msg)
    return rendered


class ContainerController:
    """Create and tear down containers and compose stacks of one scenario.

    Every created resource is tracked, so `teardown` can remove all of it even when
    the scenario failed half way.
    """

    def __init__(self, config: configuration.ScenarioConfig) -> None:
        self.config = config
        self.containers: dict[str, ContainerSpec] = {}
        self.volumes: set[str] = set()
        self.stacks: dict[str, ComposeStack] = {}

    def _timeout(self, deadline: poll_utils.Deadline | None = None) -> float:
        if deadline is None:
            return self.config.process_timeout
        return max(1.0, min(self.config.process_timeout, deadline.remaining()))

    def docker(
        self,
        args: list[str],
        *,
        sink_name: str,
        label: str,
        deadline: poll_utils.Deadline | None = None,
        workdir: pl.Path | None = None,
    ) -> helpers.ExitResult:
        """Run `docker` with `args`, capture output to sinks addressed by `sink_name`."""
        sinks = {
            stream: helpers.LogSink.for_container(
                results_dir=self.config.results_dir,
                container=sink_name,
                label=label,
                stream=stream,
            )
            for stream in ("stdout", "stderr")
        }
        for sink in sinks.values():
            sink.reset()
        return helpers.run_process(
            [self.config.docker_bin, *args],
            timeout=self._timeout(deadline),
            stdout_sink=sinks["stdout"],
            stderr_sink=sinks["stderr"],
            workdir=workdir or "",
        )

    def _run(self, spec: ContainerSpec) -> helpers.ExitResult:
        if spec.volume and spec.volume not in self.volumes:
            result = self.docker(
                [
                    "volume",
                    "create",
                    "--label",
                    f"{configuration.RESOURCE_LABEL}=true",
                    spec.volume,
                ],
                sink_name=spec.name,
                label="volume-create",
            )
            if result.returncode != 0:
                msg = f"Failed to create volume '{spec.volume}':\n{result.stderr}"
                framework_log.framework_logger().error(msg)
                raise errors.ProcessFailure(
                    msg,
                    command=result.command,
                    returncode=result.returncode,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            self.volumes.add(spec.volume)

        self.containers[spec.name] = spec
        result = self.docker(spec.run_args(), sink_name=spec.name, label="run")
        LOGGER.info(f"Started container '{spec.name}' from '{spec.image}': rc={result.returncode}")
        return result

    def _create_checked(self, spec: ContainerSpec) -> ContainerSpec:
        result = self._run(spec)
        if result.returncode != 0 or result.stderr.strip():
            msg = (
                f"Failed to create container '{spec.name}' (rc={result.returncode}).\n"
                f"stderr:\n{result.stderr}"
            )
            framework_log.framework_logger().error(msg)
            raise errors.ProcessFailure(
                msg,
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        self.wait_for_readiness(spec.name)
        return spec

    def create_container(
        self,
        name: str,
        *,
        ports: tp.Iterable[str] = configuration.DEFAULT_PORTS,
        extra_args: tp.Iterable[str] = (),
        image: str = "",
    ) -> ContainerSpec:
        """Create container and wait until it reports readiness.

        Raises:
            ProcessFailure: `docker run` failed or wrote to stderr.
            PollTimeout: Readiness marker didn't appear in time.
        """
        spec = ContainerSpec(
            name=name,
            image=image or self.config.image,
            ports=tuple(ports),
            extra_args=tuple(extra_args),
        )
        return self._create_checked(spec)

    def create_failing_container(
        self,
        name: str,
        *,
        ports: tp.Iterable[str] = configuration.DEFAULT_PORTS,
        extra_args: tp.Iterable[str] = (),
        image: str = "",
    ) -> helpers.ExitResult:
        """Create container without checking the outcome, for negative scenarios."""
        spec = ContainerSpec(
            name=name,
            image=image or self.config.image,
            ports=tuple(ports),
            extra_args=tuple(extra_args),
        )
        return self._run(spec)

    def create_test_container(
        self,
        name: str,
        *,
        ports: tp.Iterable[str] = configuration.DEFAULT_PORTS,
        extra_args: tp.Iterable[str] = (),
        image: str = "",
    ) -> ContainerSpec:
        """Create container with data directory on a named volume called `name`."""
        spec = ContainerSpec(
            name=name,
            image=image or self.config.image,
            ports=tuple(ports),
            extra_args=tuple(extra_args),
            volume=name,
        )
        return self._create_checked(spec)

    def create_upgrade_container(
        self,
        name: str,
        *,
        ports: tp.Iterable[str] = configuration.DEFAULT_PORTS,
        extra_args: tp.Iterable[str] = (),
        image: str = "",
    ) -> ContainerSpec:
        """Create secondary container running the upgrade image on the volume of `name`.

        The primary container needs to be stopped first, both use the same data directory.
        """
        spec = ContainerSpec(
            name=get_secondary_name(name),
            image=image or self.config.upgrade_image,
            ports=tuple(ports),
            extra_args=tuple(extra_args),
            volume=name,
            role=Role.SECONDARY,
        )
        return self._create_checked(spec)

    def get_logs(self, name: str, *, deadline: poll_utils.Deadline | None = None) -> str:
        """Fetch current stdout log of the container."""
        result = self.docker(["logs", name], sink_name=name, label="logs", deadline=deadline)
        if result.returncode != 0:
            msg = f"Failed to get logs of container '{name}': {result.stderr}"
            raise errors.ProcessFailure(
                msg, command=result.command, returncode=result.returncode, stderr=result.stderr
            )
        return result.stdout

    def check_logs(
        self,
        name: str,
        pattern: str,
        *,
        mode: logfiles.MatchMode = logfiles.MatchMode.GLOB,
        policy: poll_utils.RetryPolicy | None = None,
    ) -> str:
        """Poll container log until it matches `pattern`, return the matching log."""

        def _check(deadline: poll_utils.Deadline) -> str:
            logs = self.get_logs(name, deadline=deadline)
            logfiles.assert_matches(logs, pattern, label=f"log of container '{name}'", mode=mode)
            return logs

        return poll_utils.poll_until_success(
            _check,
            policy=policy or self.config.retry,
            description=f"`{pattern}` in log of container '{name}'",
        )

    def wait_for_readiness(self, name: str) -> None:
        self.check_logs(name, f"*{configuration.READINESS_MARKER}*")
        LOGGER.info(f"Container '{name}' is ready.")

    def exec_in_container(
        self, name: str, command: list[str], *, ignore_fail: bool = False
    ) -> helpers.ExitResult:
        """Run `command` inside running container."""
        result = self.docker(["exec", name, *command], sink_name=name, label="exec")
        if not ignore_fail and result.returncode != 0:
            msg = f"Command `{' '.join(command)}` failed in container '{name}': {result.stderr}"
            raise errors.ProcessFailure(
                msg,
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def get_error_log(self, name: str) -> str:
        return self.exec_in_container(name, ["cat", ERROR_LOG]).stdout

    def check_error_log(self, name: str, regex: str, *, present: bool = True) -> None:
        """Check case-sensitive `regex` is (or isn't) in the server error log."""
        error_log = self.get_error_log(name)
        label = f"error log of container '{name}'"
        if present:
            logfiles.assert_matches(error_log, regex, label=label, mode=logfiles.MatchMode.REGEX)
        else:
            logfiles.assert_not_matches(
                error_log, regex, label=label, mode=logfiles.MatchMode.REGEX
            )

    def stop(self, name: str) -> None:
        result = self.docker(["stop", name], sink_name=name, label="stop")
        if result.returncode != 0 and "No such container" not in result.stderr:
            msg = f"Failed to stop container '{name}': {result.stderr}"
            raise errors.ProcessFailure(msg, command=result.command, returncode=result.returncode)
        LOGGER.info(f"Stopped container '{name}'.")

    def delete(self, name: str, *, include_secondary: bool = False) -> None:
        """Forcefully remove container together with its anonymous volumes."""
        names = [name, get_secondary_name(name)] if include_secondary else [name]
        for cname in names:
            result = self.docker(["rm", "-f", "-v", cname], sink_name=cname, label="rm")
            if result.returncode != 0 and "No such container" not in result.stderr:
                msg = f"Failed to remove container '{cname}': {result.stderr}"
                raise errors.ProcessFailure(
                    msg, command=result.command, returncode=result.returncode
                )
            self.containers.pop(cname, None)
            LOGGER.info(f"Removed container '{cname}'.")

    def delete_volume(self, name: str) -> None:
        result = self.docker(["volume", "rm", "-f", name], sink_name=name, label="volume-rm")
        if result.returncode != 0:
            msg = f"Failed to remove volume '{name}': {result.stderr}"
            raise errors.ProcessFailure(msg, command=result.command, returncode=result.returncode)
        self.volumes.discard(name)
        LOGGER.info(f"Removed volume '{name}'.")

    def _compose(
        self,
        stack: ComposeStack,
        args: list[str],
        *,
        label: str,
        deadline: poll_utils.Deadline | None = None,
        check: bool = True,
    ) -> helpers.ExitResult:
        result = self.docker(
            ["compose", "-f", str(stack.compose_file), "-p", stack.name, *args],
            sink_name=stack.name,
            label=f"compose-{label}",
            deadline=deadline,
            workdir=stack.workdir,
        )
        if check and result.returncode != 0:
            args_str = " ".join(args)
            msg = f"`docker compose {args_str}` failed for stack '{stack.name}':\n{result.stderr}"
            raise errors.ProcessFailure(
                msg,
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def render_compose(
        self,
        template: pl.Path,
        *,
        name: str = "",
        credentials: http_client.Credentials | None = None,
    ) -> ComposeStack:
        """Render compose template and credential secrets into the results directory.

        The stack is named after the scenario (the results directory) unless `name` is given.
        """
        creds = credentials or self.config.credentials
        stack_name = get_stack_name(name or self.config.results_dir.name)
        stack_dir = self.config.results_dir / "compose" / stack_name
        stack_dir.mkdir(parents=True, exist_ok=True)

        compose_file = stack_dir / template.name
        compose_file.write_text(
            render_template(
                template.read_text(encoding="utf-8"), image=self.config.image, credentials=creds
            ),
            encoding="utf-8",
        )
        username_file = stack_dir / USERNAME_SECRET_FILE
        password_file = stack_dir / PASSWORD_SECRET_FILE
        username_file.write_text(creds.username, encoding="utf-8")
        password_file.write_text(creds.password, encoding="utf-8")

        return ComposeStack(
            name=stack_name,
            template=template,
            compose_file=compose_file,
            secret_files=(username_file, password_file),
        )

    def get_compose_services(self, stack: ComposeStack) -> list[str]:
        result = self._compose(stack, ["ps", "--services"], label="ps")
        return [s.strip() for s in result.stdout.splitlines() if s.strip()]

    def wait_for_compose_readiness(self, stack: ComposeStack) -> None:
        """Poll combined log of each service of the stack for the readiness marker.

        All nodes share one retry budget. Every attempt checks the nodes that are not ready yet.
        """
        stack.nodes = self.get_compose_services(stack)
        stack.ready = dict.fromkeys(stack.nodes, False)
        pattern = f"*{configuration.READINESS_MARKER}*"

        def _check(deadline: poll_utils.Deadline) -> None:
            failures: list[errors.PatternMismatch] = []
            for node in [n for n, ready in stack.ready.items() if not ready]:
                logs = self._compose(stack, ["logs", node], label="logs", deadline=deadline)
                try:
                    logfiles.assert_matches(
                        logs.stdout + logs.stderr,
                        pattern,
                        label=f"log of node '{node}' of stack '{stack.name}'",
                    )
                except errors.PatternMismatch as exc:
                    failures.append(exc)
                    continue
                stack.ready[node] = True
                LOGGER.info(f"Node '{node}' of stack '{stack.name}' is ready.")
            if failures:
                raise failures[0]

        poll_utils.poll_until_success(
            _check,
            policy=self.config.retry,
            description=f"readiness of nodes of stack '{stack.name}'",
        )

    def start_compose(
        self,
        template: pl.Path,
        *,
        name: str = "",
        credentials: http_client.Credentials | None = None,
        verify_readiness: bool = True,
    ) -> ComposeStack:
        """Render the compose template, bring the stack up and optionally wait for it."""
        stack = self.render_compose(template, name=name, credentials=credentials)
        self.stacks[stack.name] = stack
        self._compose(stack, ["up", "-d"], label="up")
        LOGGER.info(f"Started compose stack '{stack.name}' from '{template}'.")

        if verify_readiness:
            self.wait_for_compose_readiness(stack)
        return stack

    def restart_compose(self, stack: ComposeStack) -> None:
        self._compose(stack, ["restart"], label="restart")
        LOGGER.info(f"Restarted compose stack '{stack.name}'.")

    def delete_compose(self, stack: ComposeStack) -> None:
        """Tear the stack down together with its volumes and remove credential files."""
        try:
            self._compose(stack, ["down", "-v"], label="down")
        finally:
            for secret_file in stack.secret_files:
                secret_file.unlink(missing_ok=True)
        self.stacks.pop(stack.name, None)
        LOGGER.info(f"Removed compose stack '{stack.name}'.")

    def dump_logs(self) -> dict[str, str]:
        """Save logs of all tracked containers and stacks into their sinks.

        Return the combined output, keyed by container or stack name.
        """
        logs: dict[str, str] = {}
        for name in self.containers:
            result = self.docker(["logs", name], sink_name=name, label="final-logs")
            logs[name] = result.stdout + result.stderr
        for stack in self.stacks.values():
            result = self._compose(stack, ["logs"], label="final-logs", check=False)
            logs[stack.name] = result.stdout + result.stderr
        return logs

    def teardown(self) -> None:
        """Remove everything created by this controller.

        All removals are attempted, failures are logged and reported together at the end.
        """
        failures: list[str] = []

        for stack in list(self.stacks.values()):
            try:
                self.delete_compose(stack)
            except errors.ScenarioError as exc:
                failures.append(str(exc))
        for name in list(self.containers):
            try:
                self.delete(name)
            except errors.ScenarioError as exc:
                failures.append(str(exc))
        for volume in sorted(self.volumes):
            try:
                self.delete_volume(volume)
            except errors.ScenarioError as exc:
                failures.append(str(exc))

        if failures:
            msg = "Teardown failed:\n" + "\n".join(failures)
            framework_log.framework_logger().error(msg)
            raise errors.ProcessFailure(msg)


def list_labeled_resources(
    *, docker_bin: str = configuration.DOCKER_BIN, timeout: float = configuration.PROCESS_TIMEOUT
) -> tuple[list[str], list[str]]:
    """Return names of containers and volumes created by the framework."""
    label_filter = f"label={configuration.RESOURCE_LABEL}=true"
    containers = helpers.run_command(
        [docker_bin, "ps", "-a", "--filter", label_filter, "--format", "{{.Names}}"],
        timeout=timeout,
    ).stdout.split()
    volumes = helpers.run_command(
        [docker_bin, "volume", "ls", "--filter", label_filter, "--format", "{{.Name}}"],
        timeout=timeout,
    ).stdout.split()
    return containers, volumes
