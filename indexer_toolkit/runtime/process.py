"""
Process runtime - run "command" services as local child processes

Output of each service goes to <workdir>/logs/<service>.log. Stopping a
service terminates its whole process tree.
"""

import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path

import psutil

from indexer_toolkit.core.exceptions import RuntimeCommandError
from indexer_toolkit.core.interfaces import RuntimeState
from indexer_toolkit.runtime.docker import expand_placeholders
from indexer_toolkit.stack.models import ServiceSpec

logger = logging.getLogger(__name__)


class ProcessRuntime:
    """Local process runtime for services started from a command line"""

    def __init__(self, stop_timeout: float = 10.0):
        self.stop_timeout = stop_timeout
        self._processes: dict[str, subprocess.Popen] = {}
        self._workdirs: dict[str, Path] = {}
        self._lock = threading.Lock()

    def start(self, spec: ServiceSpec, workdir: Path) -> None:
        directive = spec.start
        argv = shlex.split(expand_placeholders(directive.value, workdir))
        argv += [expand_placeholders(arg, workdir) for arg in directive.args]
        if not argv:
            raise RuntimeCommandError(f"Service '{spec.name}' has an empty command")

        env = os.environ.copy()
        env.update({key: expand_placeholders(str(value), workdir) for key, value in directive.env.items()})

        log_dir = workdir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"{spec.name}.log"

        self.stop(spec.name)
        logger.info(f"Starting process {spec.name}: {' '.join(argv)}")
        with open(log_path, "ab") as log_file:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=workdir,
                    env=env,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                )
            except OSError as e:
                raise RuntimeCommandError(f"Failed to start {spec.name}: {e}", command=argv)

        with self._lock:
            self._processes[spec.name] = process
            self._workdirs[spec.name] = workdir

    def stop(self, name: str) -> None:
        with self._lock:
            process = self._processes.pop(name, None)
            self._workdirs.pop(name, None)
        if process is None or process.poll() is not None:
            return

        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=self.stop_timeout)
        for proc in alive:
            logger.warning(f"Process {proc.pid} of {name} ignored SIGTERM, killing")
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        process.wait(timeout=self.stop_timeout)
        logger.info(f"Stopped process {name}")

    def inspect(self, name: str) -> RuntimeState:
        with self._lock:
            process = self._processes.get(name)
        if process is None:
            return RuntimeState(exists=False)
        exit_code = process.poll()
        return RuntimeState(exists=True, running=exit_code is None, exit_code=exit_code)

    def exec(self, name: str, argv: list[str]) -> str:
        with self._lock:
            workdir = self._workdirs.get(name)
        try:
            result = subprocess.run(
                argv,
                cwd=workdir,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=60,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RuntimeCommandError(f"exec for {name} failed: {e}", command=argv)
        if result.returncode != 0:
            raise RuntimeCommandError(
                f"exec for {name} exited with {result.returncode}: {result.stderr.strip()}",
                command=argv,
            )
        return result.stdout

    def remove_volume(self, name: str) -> None:
        logger.warning(f"Process runtime has no volumes; ignoring volume:{name}")
