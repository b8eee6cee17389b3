"""
Runtime module - service start/stop/inspect primitives

Containers are driven through the docker CLI, command services run as
local processes; DispatchingRuntime picks one per service.
"""

from indexer_toolkit.core.config import Settings
from indexer_toolkit.runtime.dispatch import DispatchingRuntime
from indexer_toolkit.runtime.docker import DockerRuntime, find_docker_executable
from indexer_toolkit.runtime.process import ProcessRuntime


def create_runtime(settings: Settings) -> DispatchingRuntime:
    """Build the default runtime for a stack"""
    return DispatchingRuntime(
        containers=DockerRuntime(stack_name=settings.stack_name, network=settings.docker_network),
        processes=ProcessRuntime(),
    )


__all__ = [
    "DispatchingRuntime",
    "DockerRuntime",
    "ProcessRuntime",
    "create_runtime",
    "find_docker_executable",
]
