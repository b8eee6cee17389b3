"""
Attribute readers

Readers fetch observable attributes of a running service for validation
rules: a JSON status endpoint, a Prometheus metrics endpoint, a SQL
setting, or the output of a command executed inside the service.
"""

import asyncio
import logging
import re
import shlex
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families
from sqlalchemy import create_engine, text

from indexer_toolkit.core.exceptions import StackDefinitionError, ToolkitError

if TYPE_CHECKING:
    from indexer_toolkit.core.interfaces import IServiceRuntime
    from indexer_toolkit.stack.models import ServiceInstance

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class AttributeReadError(ToolkitError):
    """An observable attribute could not be read"""

    def __init__(self, message: str):
        super().__init__(message, component="AttributeReader")


class AttributeReader(ABC):
    """Base interface for attribute readers"""

    kind: str = "abstract"

    @abstractmethod
    async def read(self, query: str, instance: "ServiceInstance", runtime: "IServiceRuntime") -> Any:
        """
        Read one attribute

        Raises:
            AttributeReadError: If the value cannot be retrieved
        """


class HttpAttributeReader(AttributeReader):
    """
    Reads a dotted key path from a JSON endpoint

    Example:
        reader = HttpAttributeReader("http://localhost:8030/status")
        await reader.read("store.encoding", instance, runtime)
    """

    kind = "http"

    def __init__(self, url: str, request_timeout: float = 5.0):
        self.url = url
        self.request_timeout = request_timeout

    async def read(self, query: str, instance: "ServiceInstance", runtime: "IServiceRuntime") -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                value: Any = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AttributeReadError(f"GET {self.url} failed: {e}")

        for part in query.split("."):
            if not isinstance(value, dict) or part not in value:
                raise AttributeReadError(f"Key '{query}' not present in {self.url}")
            value = value[part]
        return value


class MetricsAttributeReader(AttributeReader):
    """
    Reads a metric from a Prometheus text endpoint

    Samples of the same metric with different labels are summed. A metric
    that is not exported yet reads as `missing_value` (counters start at
    zero); pass missing_value=None to treat absence as an error.
    """

    kind = "metrics"

    def __init__(self, url: str, missing_value: float | None = 0.0, request_timeout: float = 5.0):
        self.url = url
        self.missing_value = missing_value
        self.request_timeout = request_timeout

    async def read(self, query: str, instance: "ServiceInstance", runtime: "IServiceRuntime") -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                response = await client.get(self.url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise AttributeReadError(f"GET {self.url} failed: {e}")

        try:
            value = parse_metric(response.text, query)
        except ValueError as e:
            raise AttributeReadError(f"Cannot parse metrics from {self.url}: {e}")
        if value is None:
            if self.missing_value is None:
                raise AttributeReadError(f"Metric '{query}' not exported by {self.url}")
            return self.missing_value
        return value


def parse_metric(exposition: str, metric: str) -> float | None:
    """
    Sum every sample of `metric` in Prometheus text exposition format

    A counter family also answers to its name without the `_total`
    suffix. Returns None when no sample matches.

    Raises:
        ValueError: If the exposition cannot be parsed
    """
    total = None
    for family in text_string_to_metric_families(exposition):
        for sample in family.samples:
            if not _sample_matches(family, sample.name, metric):
                continue
            total = sample.value if total is None else total + sample.value
    return total


def _sample_matches(family: Metric, sample_name: str, metric: str) -> bool:
    if sample_name == metric:
        return True
    return family.type == "counter" and family.name == metric and sample_name == f"{metric}_total"


class SqlAttributeReader(AttributeReader):
    """
    Reads a server setting or scalar query through SQLAlchemy

    A bare identifier query is read with SHOW (e.g. "server_encoding");
    a query starting with SELECT is executed as-is and its first column
    of the first row is returned.
    """

    kind = "sql"

    def __init__(self, url: str, connect_timeout: int = 5):
        self.url = url
        self.connect_timeout = connect_timeout

    def _statement(self, query: str) -> str:
        if query.lstrip().lower().startswith("select"):
            return query
        if not _IDENTIFIER.match(query):
            raise AttributeReadError(f"Not a setting name: {query!r}")
        return f"SHOW {query}"

    def _read_sync(self, statement: str) -> Any:
        engine = create_engine(self.url, connect_args={"connect_timeout": self.connect_timeout})
        try:
            with engine.connect() as conn:
                return conn.execute(text(statement)).scalar()
        finally:
            engine.dispose()

    async def read(self, query: str, instance: "ServiceInstance", runtime: "IServiceRuntime") -> Any:
        statement = self._statement(query)
        try:
            return await asyncio.to_thread(self._read_sync, statement)
        except AttributeReadError:
            raise
        except Exception as e:
            raise AttributeReadError(f"{statement} failed: {e}")


class ExecAttributeReader(AttributeReader):
    """
    Reads the stdout of a command executed inside the service

    "{query}" in the command is replaced by the rule's query.

    Example:
        ExecAttributeReader(["psql", "-U", "graph-node", "-tAc", "SHOW {query}"])
    """

    kind = "exec"

    def __init__(self, command: list[str]):
        self.command = list(command)

    async def read(self, query: str, instance: "ServiceInstance", runtime: "IServiceRuntime") -> Any:
        argv = [part.replace("{query}", query) for part in self.command]
        try:
            output = await asyncio.to_thread(runtime.exec, instance.name, argv)
        except ToolkitError as e:
            raise AttributeReadError(f"{' '.join(argv)} failed: {e.message}")
        return output.strip()


READER_KINDS = ["http", "metrics", "sql", "exec"]


def build_reader(descriptor: dict[str, Any]) -> AttributeReader:
    """
    Build a reader from its stack.yaml descriptor

    Raises:
        StackDefinitionError: If the descriptor is malformed
    """
    if not isinstance(descriptor, dict) or "kind" not in descriptor:
        raise StackDefinitionError(
            "Attributes must be a mapping with a 'kind' field", field="attributes", value=descriptor
        )

    kind = descriptor["kind"]
    try:
        if kind == "http":
            return HttpAttributeReader(url=descriptor["url"])
        if kind == "metrics":
            return MetricsAttributeReader(url=descriptor["url"], missing_value=descriptor.get("missing_value", 0.0))
        if kind == "sql":
            return SqlAttributeReader(url=descriptor["url"])
        if kind == "exec":
            command = descriptor["command"]
            if isinstance(command, str):
                command = shlex.split(command)
            return ExecAttributeReader(command=command)
    except KeyError as e:
        raise StackDefinitionError(f"Attributes '{kind}' is missing field {e}", field="attributes", value=descriptor)

    raise StackDefinitionError(
        f"Unknown attributes kind '{kind}'. Valid kinds: {', '.join(READER_KINDS)}",
        field="attributes.kind",
        value=kind,
    )
