"""
Docker runtime - start, stop and inspect stack services as containers

Each service becomes one container named "<stack>-<service>" attached to a
per-stack network where it is reachable under its service name.
"""

import json
import logging
import os
import platform
import shutil
import subprocess
from pathlib import Path

from indexer_toolkit.core.config import ARTIFACTS_SUBDIR
from indexer_toolkit.core.exceptions import RuntimeCommandError
from indexer_toolkit.core.interfaces import RuntimeState
from indexer_toolkit.stack.models import ServiceSpec

logger = logging.getLogger(__name__)

# Windows-specific subprocess flag to hide console window
# On non-Windows platforms, use 0 (no flags)
_CREATION_FLAGS = (
    subprocess.CREATE_NO_WINDOW if platform.system() == "Windows" else 0
)

STACK_LABEL = "indexer-toolkit.stack"


def find_docker_executable() -> str | None:
    """
    Find the Docker executable path.

    Checks PATH first, then the standard install locations per platform.
    """
    docker_path = shutil.which("docker")
    if docker_path:
        return docker_path

    if platform.system() == "Linux":
        candidates = [
            Path("/usr/bin/docker"),
            Path("/usr/local/bin/docker"),
            Path("/snap/bin/docker"),
        ]
    elif platform.system() == "Darwin":
        candidates = [
            Path("/usr/local/bin/docker"),
            Path("/opt/homebrew/bin/docker"),
            Path("/Applications/Docker.app/Contents/Resources/bin/docker"),
        ]
    elif platform.system() == "Windows":
        candidates = [
            Path(os.environ.get("ProgramFiles", "C:\\Program Files"))
            / "Docker"
            / "Docker"
            / "resources"
            / "bin"
            / "docker.exe",
        ]
    else:
        candidates = []

    for path in candidates:
        if path.exists():
            logger.info(f"Found Docker at: {path}")
            return str(path)
    return None


def expand_placeholders(value: str, workdir: Path) -> str:
    """Expand {workdir} and {artifacts} in mount/argument strings"""
    return value.replace("{artifacts}", str(workdir / ARTIFACTS_SUBDIR)).replace("{workdir}", str(workdir))


class DockerRuntime:
    """
    Container runtime backed by the docker CLI

    Example:
        runtime = DockerRuntime(stack_name="indexer-stack", network="indexer-stack")
        runtime.start(spec, Path(".indexer-stack"))
        runtime.inspect("postgres")
        runtime.stop("postgres")
    """

    def __init__(self, stack_name: str, network: str, docker_command: list[str] | None = None):
        self.stack_name = stack_name
        self.network = network
        self._docker_command = docker_command
        self._network_ready = False

    @property
    def docker_command(self) -> list[str]:
        if self._docker_command is None:
            docker_path = find_docker_executable()
            self._docker_command = [docker_path] if docker_path else ["docker"]
        return self._docker_command

    def container_name(self, service: str) -> str:
        return f"{self.stack_name}-{service}"

    def _run(self, args: list[str], timeout: float = 120, check: bool = True) -> subprocess.CompletedProcess:
        cmd = self.docker_command + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                creationflags=_CREATION_FLAGS,
            )
        except FileNotFoundError:
            raise RuntimeCommandError("Docker not found. Please install Docker.", command=cmd)
        except subprocess.TimeoutExpired:
            raise RuntimeCommandError(f"Docker command timed out after {timeout}s", command=cmd)

        if check and result.returncode != 0:
            raise RuntimeCommandError(
                f"docker {' '.join(args[:2])} failed: {result.stderr.strip() or 'Unknown error'}",
                command=cmd,
            )
        return result

    def _ensure_network(self) -> None:
        if self._network_ready:
            return
        if self._run(["network", "inspect", self.network], check=False).returncode != 0:
            logger.info(f"Creating Docker network '{self.network}'")
            self._run(["network", "create", "--label", f"{STACK_LABEL}={self.stack_name}", self.network])
        self._network_ready = True

    def build_run_args(self, spec: ServiceSpec, workdir: Path) -> list[str]:
        """Arguments for `docker run` (without the docker executable)"""
        directive = spec.start
        args = [
            "run",
            "-d",
            "--name",
            self.container_name(spec.name),
            "--network",
            self.network,
            "--network-alias",
            spec.name,
            "--label",
            f"{STACK_LABEL}={self.stack_name}",
        ]
        for key, value in sorted(directive.env.items()):
            args += ["-e", f"{key}={expand_placeholders(str(value), workdir)}"]
        for port in directive.ports:
            args += ["-p", port]
        for mount in directive.mounts:
            args += ["-v", expand_placeholders(mount, workdir)]
        args.append(directive.value)
        args += [expand_placeholders(arg, workdir) for arg in directive.args]
        return args

    def start(self, spec: ServiceSpec, workdir: Path) -> None:
        self._ensure_network()
        # A container left over from an earlier attempt would block the name
        self._run(["rm", "-f", self.container_name(spec.name)], check=False)

        logger.info(f"Starting container {self.container_name(spec.name)} ({spec.start.value})")
        # Generous timeout: the first start may pull the image
        self._run(self.build_run_args(spec, workdir), timeout=600)

    def stop(self, name: str) -> None:
        result = self._run(["rm", "-f", self.container_name(name)], check=False)
        if result.returncode != 0 and "No such container" not in result.stderr:
            raise RuntimeCommandError(
                f"Failed to stop {self.container_name(name)}: {result.stderr.strip()}"
            )
        logger.info(f"Stopped container {self.container_name(name)}")

    def inspect(self, name: str) -> RuntimeState:
        result = self._run(
            ["inspect", "--format", "{{json .State}}", self.container_name(name)],
            timeout=30,
            check=False,
        )
        if result.returncode != 0:
            return RuntimeState(exists=False)

        try:
            state = json.loads(result.stdout.strip())
        except json.JSONDecodeError:
            logger.warning(f"Unparseable docker inspect output for {name}: {result.stdout[:200]}")
            return RuntimeState(exists=True)

        running = bool(state.get("Running"))
        exit_code = None if running else state.get("ExitCode")
        return RuntimeState(exists=True, running=running, exit_code=exit_code)

    def exec(self, name: str, argv: list[str]) -> str:
        result = self._run(["exec", self.container_name(name), *argv], timeout=60, check=False)
        if result.returncode != 0:
            raise RuntimeCommandError(
                f"exec in {name} exited with {result.returncode}: {result.stderr.strip()}",
                command=argv,
            )
        return result.stdout

    def remove_volume(self, name: str) -> None:
        result = self._run(["volume", "rm", "-f", name], check=False)
        if result.returncode != 0:
            raise RuntimeCommandError(f"Failed to remove volume {name}: {result.stderr.strip()}")
        logger.info(f"Removed volume {name}")
