"""
Core interfaces and protocols

Defines the protocols for the external collaborators the orchestrator
depends on, so tests can substitute deterministic fakes.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from indexer_toolkit.stack.models import ServiceSpec


@dataclass
class RuntimeState:
    """
    Liveness snapshot of a service as reported by the runtime

    Attributes:
        exists: Whether the runtime knows about the service at all
        running: Whether the service is currently running
        exit_code: Exit code once the service has stopped
    """

    exists: bool
    running: bool = False
    exit_code: int | None = None


class IServiceRuntime(Protocol):
    """Protocol for service start/stop/inspect primitives (container or process runtime)"""

    def start(self, spec: "ServiceSpec", workdir: Path) -> None:
        """Start a service from its start directive"""
        ...

    def stop(self, name: str) -> None:
        """Stop and remove a service; stopping an unknown service is a no-op"""
        ...

    def inspect(self, name: str) -> RuntimeState:
        """Report liveness of a service"""
        ...

    def exec(self, name: str, argv: list[str]) -> str:
        """Run a command inside a running service and return its stdout"""
        ...

    def remove_volume(self, name: str) -> None:
        """Destroy a named volume; removing an unknown volume is a no-op"""
        ...


class IHostResolver(Protocol):
    """Protocol for discovering the externally reachable host address"""

    def resolve(self) -> str:
        """
        Resolve the host address

        Raises:
            ConfigRenderError: If no address can be determined
        """
        ...
