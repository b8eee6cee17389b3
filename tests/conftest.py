"""
Shared fixtures: an in-memory service runtime and time-scripted probes

Times in the stack tests are scaled down (seconds become tenths of a
second) so the suite stays fast while keeping the relative ordering.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from indexer_toolkit.core.config import Settings, reset_settings
from indexer_toolkit.core.exceptions import RuntimeCommandError
from indexer_toolkit.core.interfaces import RuntimeState
from indexer_toolkit.health.probes import HealthProbe
from indexer_toolkit.stack.models import DirectiveKind, ServiceSpec, StartDirective


class FakeRuntime:
    """Records every call; exec answers come from a handler"""

    def __init__(self, exec_handler: Callable[[str, list[str]], str] | None = None):
        self.events: list[tuple[str, str]] = []
        self.running: set[str] = set()
        self.removed_volumes: list[str] = []
        self.exec_calls: list[tuple[str, list[str]]] = []
        self.start_failures: set[str] = set()
        self.exit_codes: dict[str, int] = {}
        self.exec_handler = exec_handler or (lambda name, argv: "")

    @property
    def started(self) -> list[str]:
        return [name for event, name in self.events if event == "start"]

    @property
    def stopped(self) -> list[str]:
        return [name for event, name in self.events if event == "stop"]

    def start(self, spec: ServiceSpec, workdir: Path) -> None:
        self.events.append(("start", spec.name))
        if spec.name in self.start_failures:
            raise RuntimeCommandError(f"cannot start {spec.name}")
        self.running.add(spec.name)

    def stop(self, name: str) -> None:
        self.events.append(("stop", name))
        self.running.discard(name)

    def inspect(self, name: str) -> RuntimeState:
        if name in self.exit_codes:
            return RuntimeState(exists=True, running=False, exit_code=self.exit_codes[name])
        if name not in self.started:
            return RuntimeState(exists=False)
        return RuntimeState(exists=True, running=name in self.running)

    def exec(self, name: str, argv: list[str]) -> str:
        self.exec_calls.append((name, list(argv)))
        return self.exec_handler(name, argv)

    def remove_volume(self, name: str) -> None:
        self.events.append(("remove_volume", name))
        self.removed_volumes.append(name)


class ScriptedProbe(HealthProbe):
    """
    Healthy once `ready_after` seconds have passed since the first check of
    an attempt; never healthy when ready_after is None
    """

    kind = "scripted"

    def __init__(self, ready_after: float | None = 0.0):
        self.ready_after = ready_after
        self.first_check: dict[tuple[str, int], float] = {}
        self.checks = 0

    async def check(self, instance, runtime) -> bool:
        self.checks += 1
        now = asyncio.get_running_loop().time()
        first = self.first_check.setdefault((instance.name, instance.attempt), now)
        return self.ready_after is not None and now - first >= self.ready_after


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Keep INDEXER_TOOLKIT_* from the environment out of the tests"""
    import os

    for key in list(os.environ):
        if key.startswith("INDEXER_TOOLKIT_"):
            monkeypatch.delenv(key)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        working_dir=tmp_path / "work",
        poll_interval=0.01,
        max_poll_interval=0.05,
        service_timeout=1.0,
        host_address="127.0.0.1",
        _env_file=None,
    )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def scripted_probe() -> type[ScriptedProbe]:
    return ScriptedProbe


@pytest.fixture
def make_spec():
    """Factory for image services with a scripted probe"""

    def _make(
        name: str,
        depends_on: tuple[str, ...] = (),
        probe: HealthProbe | None = None,
        state: tuple[str, ...] = (),
        attributes=None,
        timeout: float | None = None,
        required: bool = True,
    ) -> ServiceSpec:
        return ServiceSpec(
            name=name,
            start=StartDirective(kind=DirectiveKind.IMAGE, value=f"example/{name}:latest"),
            probe=probe or ScriptedProbe(),
            depends_on=frozenset(depends_on),
            timeout=timeout,
            state_locations=state,
            attributes=attributes,
            required=required,
        )

    return _make
