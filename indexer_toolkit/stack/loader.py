"""
Stack loader - YAML parsing and validation

Handles loading stack definitions from a config directory containing a
stack.yaml plus the template and payload files it references.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from indexer_toolkit.core.exceptions import StackDefinitionError
from indexer_toolkit.health.probes import build_probe
from indexer_toolkit.stack.models import (
    ConfigTemplate,
    DirectiveKind,
    ServiceSpec,
    StackDefinition,
    StartDirective,
    ValidationRule,
)
from indexer_toolkit.validation.comparators import get_comparator
from indexer_toolkit.validation.readers import build_reader

logger = logging.getLogger(__name__)

STACK_FILE = "stack.yaml"

_SERVICE_FIELDS = {
    "image",
    "command",
    "env",
    "ports",
    "mounts",
    "args",
    "depends_on",
    "probe",
    "timeout",
    "state",
    "attributes",
    "required",
}


class StackLoader:
    """
    Load and validate stack definitions

    Example:
        definition = StackLoader.load_from_dir(Path("stack"))
    """

    @staticmethod
    def load_from_dir(config_dir: Path) -> StackDefinition:
        """
        Load the stack.yaml of a config directory

        Args:
            config_dir: Directory holding stack.yaml; template and payload
                sources resolve relative to it

        Returns:
            Parsed and validated stack definition

        Raises:
            StackDefinitionError: If the file is missing or invalid
        """
        stack_file = config_dir / STACK_FILE
        if not stack_file.exists():
            raise StackDefinitionError(
                f"Stack file not found: {stack_file}",
                field=STACK_FILE,
                recovery_hint="Run 'indexer-toolkit init <dir>' to write the default stack",
            )

        try:
            with open(stack_file, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise StackDefinitionError(f"Invalid YAML syntax: {e}", field=STACK_FILE)

        logger.debug(f"Loaded {stack_file}")
        return StackLoader._parse_stack(data, config_dir)

    @staticmethod
    def load_from_string(yaml_content: str, base_dir: Path | None = None) -> StackDefinition:
        """
        Load a stack from a YAML string

        Args:
            yaml_content: YAML content as string
            base_dir: Directory for relative template/payload sources

        Raises:
            StackDefinitionError: If YAML cannot be parsed or is invalid
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise StackDefinitionError(f"Invalid YAML syntax: {e}")

        return StackLoader._parse_stack(data, base_dir)

    @staticmethod
    def _parse_stack(data: Any, base_dir: Path | None) -> StackDefinition:
        if not isinstance(data, dict):
            raise StackDefinitionError("Stack definition must be a mapping")
        if "name" not in data:
            raise StackDefinitionError("Stack must have a 'name' field", field="name")
        if "services" not in data:
            raise StackDefinitionError("Stack must have a 'services' field", field="services")

        services_data = data["services"]
        if not isinstance(services_data, dict) or not services_data:
            raise StackDefinitionError("'services' must be a non-empty mapping of name -> service", field="services")
        services = [StackLoader._parse_service(str(name), body) for name, body in services_data.items()]

        rules_data = data.get("rules") or []
        if not isinstance(rules_data, list):
            raise StackDefinitionError("'rules' must be a list", field="rules")
        rules = [StackLoader._parse_rule(rule_data) for rule_data in rules_data]

        variables = data.get("variables") or {}
        if not isinstance(variables, dict):
            raise StackDefinitionError("'variables' must be a mapping", field="variables")

        templates_data = data.get("templates") or []
        if not isinstance(templates_data, list):
            raise StackDefinitionError("'templates' must be a list", field="templates")
        templates = [StackLoader._parse_template(t, base_dir) for t in templates_data]

        payloads_data = data.get("payloads") or []
        if not isinstance(payloads_data, list):
            raise StackDefinitionError("'payloads' must be a list", field="payloads")
        payloads: dict[str, bytes] = {}
        for payload_data in payloads_data:
            target, content = StackLoader._parse_payload(payload_data, base_dir)
            payloads[target] = content

        targets = [t.target for t in templates] + list(payloads)
        duplicates = sorted({t for t in targets if targets.count(t) > 1})
        if duplicates:
            raise StackDefinitionError(
                f"Artifact target written more than once: {', '.join(duplicates)}",
                field="templates",
                value=duplicates,
            )

        return StackDefinition(
            name=str(data["name"]),
            services=services,
            rules=rules,
            templates=templates,
            variables=dict(variables),
            payloads=payloads,
        )

    @staticmethod
    def _parse_service(name: str, data: Any) -> ServiceSpec:
        """
        Parse one service body

        Raises:
            StackDefinitionError: If the structure is invalid
        """
        field_prefix = f"services.{name}"
        if not isinstance(data, dict):
            raise StackDefinitionError(f"Service '{name}' must be a mapping", field=field_prefix)

        unknown = sorted(set(data) - _SERVICE_FIELDS)
        if unknown:
            raise StackDefinitionError(
                f"Service '{name}' has unknown field(s): {', '.join(unknown)}",
                field=field_prefix,
                value=unknown,
            )

        if ("image" in data) == ("command" in data):
            raise StackDefinitionError(
                f"Service '{name}' must have exactly one of 'image' or 'command'",
                field=field_prefix,
            )
        kind = DirectiveKind.IMAGE if "image" in data else DirectiveKind.COMMAND

        env = data.get("env") or {}
        if not isinstance(env, dict):
            raise StackDefinitionError(f"Service '{name}' env must be a mapping", field=f"{field_prefix}.env")

        start = StartDirective(
            kind=kind,
            value=str(data[kind.value]),
            env={str(k): str(v) for k, v in env.items()},
            ports=StackLoader._string_list(data, "ports", field_prefix),
            mounts=StackLoader._string_list(data, "mounts", field_prefix),
            args=StackLoader._string_list(data, "args", field_prefix),
        )

        if "probe" not in data:
            raise StackDefinitionError(f"Service '{name}' must have a 'probe'", field=f"{field_prefix}.probe")

        timeout = data.get("timeout")
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                raise StackDefinitionError(
                    f"Service '{name}' timeout must be a number",
                    field=f"{field_prefix}.timeout",
                    value=timeout,
                )
            if timeout <= 0:
                raise StackDefinitionError(
                    f"Service '{name}' timeout must be positive",
                    field=f"{field_prefix}.timeout",
                    value=timeout,
                )

        required = data.get("required", True)
        if not isinstance(required, bool):
            raise StackDefinitionError(
                f"Service '{name}' required must be true or false",
                field=f"{field_prefix}.required",
                value=required,
            )

        attributes = data.get("attributes")
        return ServiceSpec(
            name=name,
            start=start,
            probe=build_probe(data["probe"]),
            depends_on=frozenset(StackLoader._string_list(data, "depends_on", field_prefix)),
            timeout=timeout,
            state_locations=StackLoader._string_list(data, "state", field_prefix),
            attributes=build_reader(attributes) if attributes is not None else None,
            required=required,
        )

    @staticmethod
    def _string_list(data: dict[str, Any], key: str, field_prefix: str) -> tuple[str, ...]:
        value = data.get(key) or []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise StackDefinitionError(f"'{key}' must be a list", field=f"{field_prefix}.{key}", value=value)
        return tuple(str(item) for item in value)

    @staticmethod
    def _parse_rule(data: Any) -> ValidationRule:
        if not isinstance(data, dict):
            raise StackDefinitionError("Rule must be a mapping", field="rules", value=data)

        for required in ("target", "query", "expected"):
            if required not in data:
                raise StackDefinitionError(f"Rule must have '{required}' field", field="rules", value=data)

        return ValidationRule(
            target=str(data["target"]),
            query=str(data["query"]),
            expected=data["expected"],
            comparator=get_comparator(data.get("comparator")),
            name=str(data.get("name", "")),
            resets=StackLoader._string_list(data, "resets", "rules"),
        )

    @staticmethod
    def _parse_template(data: Any, base_dir: Path | None) -> ConfigTemplate:
        if not isinstance(data, dict) or "target" not in data:
            raise StackDefinitionError("Template must be a mapping with a 'target' field", field="templates", value=data)

        target = str(data["target"])
        if "text" in data:
            text = str(data["text"])
        elif "source" in data:
            text = StackLoader._read_source(data["source"], base_dir, "templates").decode("utf-8")
        else:
            raise StackDefinitionError(
                f"Template '{target}' needs either 'source' or 'text'",
                field="templates",
                value=target,
            )

        placeholders = data.get("placeholders") or {}
        if not isinstance(placeholders, dict):
            raise StackDefinitionError(
                f"Template '{target}' placeholders must be a mapping",
                field="templates.placeholders",
                value=placeholders,
            )

        return ConfigTemplate(
            name=str(data.get("name", target)),
            target=target,
            text=text,
            placeholders={str(k): str(v) for k, v in placeholders.items()},
        )

    @staticmethod
    def _parse_payload(data: Any, base_dir: Path | None) -> tuple[str, bytes]:
        if not isinstance(data, dict) or "target" not in data:
            raise StackDefinitionError("Payload must be a mapping with a 'target' field", field="payloads", value=data)

        target = str(data["target"])
        if "content" in data:
            return target, str(data["content"]).encode("utf-8")
        if "source" in data:
            return target, StackLoader._read_source(data["source"], base_dir, "payloads")
        raise StackDefinitionError(f"Payload '{target}' needs either 'source' or 'content'", field="payloads", value=target)

    @staticmethod
    def _read_source(source: str, base_dir: Path | None, field: str) -> bytes:
        path = Path(source)
        if not path.is_absolute():
            if base_dir is None:
                raise StackDefinitionError(
                    f"Relative source '{source}' needs a config directory",
                    field=field,
                    value=source,
                )
            path = base_dir / path

        try:
            return path.read_bytes()
        except OSError as e:
            raise StackDefinitionError(f"Cannot read {path}: {e}", field=field, value=source)
