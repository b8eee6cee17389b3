"""
Dispatching runtime - route services to the container or process runtime
based on their start directive
"""

import logging
import threading
from pathlib import Path

from indexer_toolkit.core.interfaces import IServiceRuntime, RuntimeState
from indexer_toolkit.stack.models import DirectiveKind, ServiceSpec

logger = logging.getLogger(__name__)


class DispatchingRuntime:
    """
    Runtime that delegates by directive kind

    image directives go to the container runtime, command directives to the
    process runtime. Later calls for a service go to whichever runtime
    started it; services never started in this process are assumed to be
    containers so `down` can clean up after a previous invocation.
    """

    def __init__(self, containers: IServiceRuntime, processes: IServiceRuntime):
        self.containers = containers
        self.processes = processes
        self._owners: dict[str, IServiceRuntime] = {}
        self._lock = threading.Lock()

    def _owner(self, name: str) -> IServiceRuntime:
        with self._lock:
            return self._owners.get(name, self.containers)

    def start(self, spec: ServiceSpec, workdir: Path) -> None:
        runtime = self.containers if spec.start.kind == DirectiveKind.IMAGE else self.processes
        with self._lock:
            self._owners[spec.name] = runtime
        runtime.start(spec, workdir)

    def stop(self, name: str) -> None:
        self._owner(name).stop(name)

    def inspect(self, name: str) -> RuntimeState:
        return self._owner(name).inspect(name)

    def exec(self, name: str, argv: list[str]) -> str:
        return self._owner(name).exec(name, argv)

    def remove_volume(self, name: str) -> None:
        self.containers.remove_volume(name)
