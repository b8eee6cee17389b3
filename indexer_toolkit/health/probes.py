"""
Readiness probes

Each probe kind is a HealthProbe subclass implementing check(); the shared
poll() loop turns repeated checks into a Healthy/Failed result bounded by a
timeout. New readiness signals are added by subclassing, the sequencer only
ever calls poll().
"""

import asyncio
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from indexer_toolkit.core.exceptions import (
    RuntimeCommandError,
    StackDefinitionError,
    StartupTimeoutError,
)

if TYPE_CHECKING:
    from indexer_toolkit.core.interfaces import IServiceRuntime
    from indexer_toolkit.stack.models import ServiceInstance

logger = logging.getLogger(__name__)


class ProbeAborted(Exception):
    """Raised by check() when the service can no longer become healthy"""


@dataclass
class ProbeResult:
    """
    Result of polling a service

    Attributes:
        healthy: Whether the service became healthy
        elapsed: Seconds from the first check to the result
        checks: Number of checks performed
        error: StartupTimeoutError when not healthy
    """

    healthy: bool
    elapsed: float
    checks: int
    error: StartupTimeoutError | None = None


class HealthProbe(ABC):
    """Base interface for readiness probes"""

    kind: str = "abstract"

    @abstractmethod
    async def check(self, instance: "ServiceInstance", runtime: "IServiceRuntime") -> bool:
        """
        Query the readiness signal once

        Returns:
            True if the service is ready

        Raises:
            ProbeAborted: If the service can never become ready (e.g. exited)
        """

    def describe(self) -> str:
        return self.kind

    async def poll(
        self,
        instance: "ServiceInstance",
        runtime: "IServiceRuntime",
        interval: float,
        timeout: float,
        backoff: float = 1.0,
        max_interval: float | None = None,
    ) -> ProbeResult:
        """
        Poll until healthy or timeout

        The first check runs immediately. Waits grow by `backoff` after each
        unsuccessful check (1.0 keeps them linear), capped at `max_interval`,
        and never extend past the deadline. A check still running at the
        deadline is cancelled and counts as not ready.

        Raises:
            asyncio.CancelledError: If the surrounding attempt is cancelled
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout
        delay = interval
        checks = 0

        while True:
            checks += 1
            try:
                # A single slow check must not carry the poll past its deadline
                async with asyncio.timeout_at(deadline):
                    ready = await self.check(instance, runtime)
            except TimeoutError:
                logger.debug(f"[{instance.name}] {self.describe()} check still pending at the deadline")
                ready = False
            except ProbeAborted as e:
                elapsed = loop.time() - start
                logger.warning(f"[{instance.name}] probe aborted after {elapsed:.2f}s: {e}")
                return ProbeResult(
                    healthy=False,
                    elapsed=elapsed,
                    checks=checks,
                    error=StartupTimeoutError(instance.name, timeout, str(e)),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"[{instance.name}] {self.describe()} check error: {e}")
                ready = False

            if ready:
                elapsed = loop.time() - start
                logger.debug(f"[{instance.name}] healthy after {elapsed:.2f}s ({checks} checks)")
                return ProbeResult(healthy=True, elapsed=elapsed, checks=checks)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            await asyncio.sleep(min(delay, remaining))
            if backoff > 1.0:
                delay = delay * backoff
                if max_interval is not None:
                    delay = min(delay, max_interval)

        elapsed = loop.time() - start
        return ProbeResult(
            healthy=False,
            elapsed=elapsed,
            checks=checks,
            error=StartupTimeoutError(instance.name, timeout, f"{self.describe()} never succeeded"),
        )


class HttpProbe(HealthProbe):
    """
    HTTP status check

    Healthy when the endpoint answers with one of the expected status codes
    and, if json_key is set, the (dotted) key in the JSON body is truthy.
    """

    kind = "http"

    def __init__(
        self,
        url: str,
        method: str = "GET",
        expected_status: tuple[int, ...] = (200,),
        json_key: str | None = None,
        request_timeout: float = 5.0,
    ):
        self.url = url
        self.method = method.upper()
        self.expected_status = tuple(expected_status)
        self.json_key = json_key
        self.request_timeout = request_timeout

    def describe(self) -> str:
        return f"http {self.method} {self.url}"

    async def check(self, instance: "ServiceInstance", runtime: "IServiceRuntime") -> bool:
        async with httpx.AsyncClient(timeout=self.request_timeout) as client:
            response = await client.request(self.method, self.url)

        if response.status_code not in self.expected_status:
            return False
        if self.json_key is None:
            return True

        value: Any = response.json()
        for part in self.json_key.split("."):
            if not isinstance(value, dict) or part not in value:
                return False
            value = value[part]
        return bool(value)


class TcpProbe(HealthProbe):
    """TCP connect check"""

    kind = "tcp"

    def __init__(self, host: str, port: int, connect_timeout: float = 2.0):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

    def describe(self) -> str:
        return f"tcp {self.host}:{self.port}"

    async def check(self, instance: "ServiceInstance", runtime: "IServiceRuntime") -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class ExitCodeProbe(HealthProbe):
    """
    Process exit check

    For one-shot services (migrations, init jobs): healthy once the service
    has exited with the expected code. Exiting with any other code aborts the
    probe immediately.
    """

    kind = "exit_code"

    def __init__(self, expected_code: int = 0):
        self.expected_code = expected_code

    def describe(self) -> str:
        return f"exit code {self.expected_code}"

    async def check(self, instance: "ServiceInstance", runtime: "IServiceRuntime") -> bool:
        state = await asyncio.to_thread(runtime.inspect, instance.name)
        if state.running or state.exit_code is None:
            return False
        if state.exit_code != self.expected_code:
            raise ProbeAborted(f"exited with code {state.exit_code}, expected {self.expected_code}")
        return True


class RunningProbe(HealthProbe):
    """Healthy as soon as the runtime reports the service running"""

    kind = "running"

    async def check(self, instance: "ServiceInstance", runtime: "IServiceRuntime") -> bool:
        state = await asyncio.to_thread(runtime.inspect, instance.name)
        if not state.running and state.exit_code is not None:
            raise ProbeAborted(f"exited with code {state.exit_code}")
        return state.running


class ExecProbe(HealthProbe):
    """
    Command check run inside the service (e.g. pg_isready)

    Healthy when the command exits zero.
    """

    kind = "exec"

    def __init__(self, command: list[str]):
        self.command = list(command)

    def describe(self) -> str:
        return f"exec {' '.join(self.command)}"

    async def check(self, instance: "ServiceInstance", runtime: "IServiceRuntime") -> bool:
        try:
            await asyncio.to_thread(runtime.exec, instance.name, self.command)
        except RuntimeCommandError as e:
            logger.debug(f"[{instance.name}] {self.describe()} not ready: {e.message}")
            return False
        return True


PROBE_KINDS = ["http", "tcp", "exit_code", "running", "exec"]


def build_probe(descriptor: dict[str, Any]) -> HealthProbe:
    """
    Build a probe from its stack.yaml descriptor

    Examples:
        {"kind": "http", "url": "http://localhost:8040/metrics"}
        {"kind": "tcp", "host": "localhost", "port": 8545}
        {"kind": "exec", "command": ["pg_isready", "-U", "graph-node"]}

    Raises:
        StackDefinitionError: If the descriptor is malformed
    """
    if not isinstance(descriptor, dict) or "kind" not in descriptor:
        raise StackDefinitionError("Probe must be a mapping with a 'kind' field", field="probe", value=descriptor)

    kind = descriptor["kind"]
    try:
        if kind == "http":
            return HttpProbe(
                url=descriptor["url"],
                method=descriptor.get("method", "GET"),
                expected_status=tuple(descriptor.get("expected_status", [200])),
                json_key=descriptor.get("json_key"),
            )
        if kind == "tcp":
            return TcpProbe(host=descriptor.get("host", "localhost"), port=int(descriptor["port"]))
        if kind == "exit_code":
            return ExitCodeProbe(expected_code=int(descriptor.get("expected_code", 0)))
        if kind == "running":
            return RunningProbe()
        if kind == "exec":
            command = descriptor["command"]
            if isinstance(command, str):
                command = shlex.split(command)
            return ExecProbe(command=command)
    except KeyError as e:
        raise StackDefinitionError(f"Probe '{kind}' is missing field {e}", field="probe", value=descriptor)

    raise StackDefinitionError(
        f"Unknown probe kind '{kind}'. Valid kinds: {', '.join(PROBE_KINDS)}",
        field="probe.kind",
        value=kind,
    )
