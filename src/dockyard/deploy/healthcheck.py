"""Container health probes and crash diagnosis.

Builds the ``HEALTHCHECK`` command baked into every application
container, the remote polling loop that waits for Docker to report the
container healthy, and the diagnosis written to the deployment log when
it never does.

Key Concepts:
    HealthProbe: method/scheme/host/port/path of the probe, rendered as a
        layered ``curl || wget || nc || bash /dev/tcp || exit 1`` command.
    ContainerState: ``"<status> <restarting> <restart count>"`` parsed from
        ``docker inspect``.
    Diagnosis: headline + hint lines derived from the exit code, the OOM
        flag or recognisable log patterns.

Tags:
    healthcheck, docker, diagnosis, deployment
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from dockyard.core.errors import ValidationError
from dockyard.deploy.models import Application, BuildPack
from dockyard.remote.shell import quote

_HOST_RE = re.compile(r"^[A-Za-z0-9._:\-]+$")
_PATH_RE = re.compile(r"^/[A-Za-z0-9._~!$&'()*+,;=:@%/?\-]*$")
_METHODS = frozenset({"GET", "HEAD", "POST", "OPTIONS"})
_SCHEMES = frozenset({"http", "https"})


@dataclass(frozen=True)
class HealthProbe:
    method: str
    scheme: str
    host: str
    port: int
    path: str = "/"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"

    @property
    def display(self) -> str:
        """Probe as recorded on the deployment log: ``GET: http://localhost:3000/``."""
        return f"{self.method}: {self.url}"

    def command(self) -> str:
        url = quote(self.url)
        curl = f"curl -s -X {quote(self.method)} -f {url} > /dev/null 2>&1"
        wget = f"wget -q -O- {url} > /dev/null 2>&1"
        nc = f"nc -w5 -z {quote(self.host)} {self.port} 2>/dev/null"
        tcp = f"bash -c {quote(f'echo > /dev/tcp/{self.host}/{self.port}')} 2>/dev/null"
        return f"{curl} || {wget} || {nc} || {tcp} || exit 1"


def build_probe(app: Application) -> HealthProbe:
    """Derive the probe of *app*.

    Port is the explicit health-check port, else the first exposed port;
    the static build pack always serves on 80.

    Raises:
        ValidationError: A setting contains characters a probe cannot carry.
    """
    if app.build_pack == BuildPack.STATIC:
        port = 80
    elif app.health_check_port:
        port = _parse_port(app.health_check_port)
    elif app.exposed_ports:
        port = app.exposed_ports[0]
    else:
        raise ValidationError("No exposed port to health check", field="ports_exposes")

    method = (app.health_check_method or "GET").upper()
    scheme = (app.health_check_scheme or "http").lower()
    host = app.health_check_host or "localhost"
    path = app.health_check_path or "/"

    if method not in _METHODS:
        raise ValidationError("Unsupported health check method", field="health_check_method", value=method)
    if scheme not in _SCHEMES:
        raise ValidationError("Unsupported health check scheme", field="health_check_scheme", value=scheme)
    if not _HOST_RE.match(host):
        raise ValidationError("Invalid health check host", field="health_check_host", value=host)
    if not path.startswith("/"):
        path = "/" + path
    if not _PATH_RE.match(path):
        raise ValidationError("Invalid health check path", field="health_check_path", value=path)

    return HealthProbe(method=method, scheme=scheme, host=host, port=port, path=path)


def _parse_port(value: str | int) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid health check port", field="health_check_port", value=value) from None
    if not 0 < port < 65536:
        raise ValidationError("Invalid health check port", field="health_check_port", value=value)
    return port


def docker_health_options(app: Application, probe: HealthProbe) -> list[str]:
    """``docker run`` flags installing *probe* as the container healthcheck."""
    return [
        f"--health-cmd {quote(probe.command())}",
        f"--health-interval {int(app.health_check_interval)}s",
        f"--health-timeout {int(app.health_check_timeout)}s",
        f"--health-retries {int(app.health_check_retries)}",
        f"--health-start-period {int(app.health_check_start_period)}s",
    ]


def wait_for_health_command(container: str, *, retries: int, interval: int, start_period: int) -> str:
    """Remote loop printing the final health status of *container*.

    Exits 0 once the container reports ``healthy``; prints ``unhealthy``
    and exits 1 as soon as Docker gives up; prints the last status
    (usually ``starting``) and exits 1 after *retries* polls.  The loop is
    wrapped in ``timeout`` so it can never outlive its budget.
    """
    name = quote(container)
    budget = int(start_period) + int(retries) * (int(interval) + 5) + 30
    script = (
        f"sleep {int(start_period)}; "
        f"for i in $(seq 1 {int(retries)}); do "
        f"s=$(docker inspect --format='{{{{.State.Health.Status}}}}' {name} 2>/dev/null || echo missing); "
        'if [ "$s" = healthy ]; then echo healthy; exit 0; fi; '
        'if [ "$s" = unhealthy ]; then echo unhealthy; exit 1; fi; '
        f"sleep {int(interval)}; "
        "done; "
        'echo "${s:-starting}"; exit 1'
    )
    return f"timeout {budget} bash -c {quote(script)}"


def container_state_command(container: str) -> str:
    return (
        "docker inspect --format='{{.State.Status}} {{.State.Restarting}} {{.RestartCount}}' "
        f"{quote(container)}"
    )


def container_exit_command(container: str) -> str:
    return (
        "docker inspect --format='{{.State.ExitCode}} {{.State.OOMKilled}} {{.State.Error}}' "
        f"{quote(container)}"
    )


def container_logs_command(container: str, lines: int = 50) -> str:
    return f"docker logs {quote(container)} 2>&1 | tail -{int(lines)}"


@dataclass(frozen=True)
class ContainerState:
    status: str
    restarting: bool = False
    restart_count: int = 0

    @property
    def is_crash_looping(self) -> bool:
        return self.restarting or self.restart_count > 0 or self.status == "restarting"

    @property
    def has_exited(self) -> bool:
        return self.status in ("exited", "dead")


def parse_container_state(output: str) -> ContainerState:
    """Parse ``"<status> <restarting> <count>"``; missing parts default."""
    parts = output.strip().split()
    status = parts[0] if parts else "unknown"
    restarting = len(parts) > 1 and parts[1] == "true"
    try:
        restart_count = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        restart_count = 0
    return ContainerState(status=status, restarting=restarting, restart_count=restart_count)


@dataclass
class Diagnosis:
    headline: str
    hints: list[str] = field(default_factory=list)

    def lines(self) -> list[str]:
        return [f"ERROR: {self.headline}", *self.hints]


EXIT_CODE_MEANINGS = {
    1: "General application error - the app crashed on startup",
    2: "Shell misuse or missing command argument",
    126: "Command found but not executable (permission issue)",
    127: "Command not found - the start command does not exist in the container",
    137: "Killed (SIGKILL), usually out of memory",
    139: "Segmentation fault (SIGSEGV) - native code crash",
    143: "Process terminated (SIGTERM)",
}


def diagnose_exit(exit_code: int | None, *, oom_killed: bool = False, docker_error: str = "") -> Diagnosis:
    """Diagnosis from ``docker inspect`` when the container left no logs."""
    if oom_killed or exit_code == 137:
        return Diagnosis(
            "Out of memory (OOM kill)",
            ["The container exceeded its memory limit. Raise the limit or reduce startup memory."],
        )
    if docker_error:
        hints = [f"Details: {docker_error}"]
        if "not found" in docker_error:
            hints.append("The start command or entrypoint binary does not exist in the container.")
        return Diagnosis("Docker runtime error", hints)
    if exit_code:
        meaning = EXIT_CODE_MEANINGS.get(exit_code, "Unknown error")
        hints = [f"Meaning: {meaning}"]
        if exit_code == 127:
            hints.append("Check the Dockerfile CMD/ENTRYPOINT or the configured start command.")
        elif exit_code == 126:
            hints.append("Make the start script executable (chmod +x) in the Dockerfile.")
        return Diagnosis(f"Container exited with code {exit_code}", hints)
    return Diagnosis(
        "Container failed to start and produced no logs",
        ["Check environment variables, the start command and image dependencies."],
    )


_MISSING_ENV_PATTERNS = (
    re.compile(r"^([A-Z][A-Z0-9_]+)\s*\n\s*Field\s+required", re.MULTILINE),
    re.compile(r"^([A-Z][A-Z0-9_]+)\s{2,}Field\s+required", re.MULTILINE),
    re.compile(r"([A-Z][A-Z0-9_]+(?:\s+and\s+[A-Z][A-Z0-9_]+)*)\s+(?i:must\s+be\s+(?:defined|set|provided))"),
    re.compile(r"([A-Z][A-Z0-9_]+)\s+(?i:(?:is\s+)?(?:required|not\s+set|not\s+defined|missing|undefined))"),
    re.compile(r"(?i:missing\s+(?:required\s+)?(?:environment\s+)?(?:variable|env\s+var)s?)[:\s]+([A-Z][A-Z0-9_]+)"),
    re.compile(r"process\.env\.([A-Z][A-Z0-9_]+)\s+(?i:is\s+undefined)"),
    re.compile(r"(?i:set\s+the\s+)([A-Z][A-Z0-9_]+)(?i:\s+environment\s+variable)"),
)


def detect_missing_env_vars(logs: str) -> list[str]:
    """Environment variable names the application complained about, in order."""
    found: list[str] = []
    for pattern in _MISSING_ENV_PATTERNS:
        for match in pattern.findall(logs):
            for name in re.split(r"\s+and\s+", match, flags=re.IGNORECASE):
                name = name.strip()
                if name and name not in found:
                    found.append(name)
    return found


def diagnose_logs(logs: str) -> Diagnosis:
    """Diagnosis from the tail of the container logs."""
    missing = detect_missing_env_vars(logs)
    if missing:
        return Diagnosis(
            "Missing required environment variables",
            [f"  - {name}" for name in missing] + ["Add them to the application and redeploy."],
        )
    if "MODULE_NOT_FOUND" in logs or "Cannot find module" in logs:
        return Diagnosis(
            "Module/file not found",
            ["Build artifacts were not created, were overwritten, or the start path is wrong."],
        )
    if "-c: option requires an argument" in logs or "bash: -c:" in logs:
        return Diagnosis("No start command found", ["Set a start command for the application."])
    if "ECONNREFUSED" in logs or "connection refused" in logs:
        return Diagnosis(
            "Connection refused to database/service",
            ["Check that the database/redis/etc. the application needs is running and reachable."],
        )
    if "EADDRINUSE" in logs or "address already in use" in logs:
        return Diagnosis("Port already in use", ["Another process inside the container holds the port."])
    if "ENOENT" in logs or "no such file" in logs:
        return Diagnosis("File or directory not found", ["Check the build process and file paths."])
    if "permission denied" in logs.lower():
        return Diagnosis("Permission denied", ["The application lacks permission to access a resource."])
    return Diagnosis(
        "The container failed to start",
        ["Review the logs above: environment variables, database connections, dependencies, start command."],
    )


__all__ = [
    "HealthProbe",
    "build_probe",
    "docker_health_options",
    "wait_for_health_command",
    "container_state_command",
    "container_exit_command",
    "container_logs_command",
    "ContainerState",
    "parse_container_state",
    "Diagnosis",
    "EXIT_CODE_MEANINGS",
    "diagnose_exit",
    "detect_missing_env_vars",
    "diagnose_logs",
]
