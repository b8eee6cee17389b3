"""
Configuration templater

Renders {{ token }} placeholders in configuration templates. Rendering is a
pure function of (template, variables): the same inputs always produce the
same bytes. Environment discovery lives in the resolver, never here.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from indexer_toolkit.core.exceptions import ConfigRenderError
from indexer_toolkit.core.interfaces import IHostResolver
from indexer_toolkit.stack.models import ConfigTemplate, StackDefinition

logger = logging.getLogger(__name__)

# {{ token }} with optional whitespace; tokens may contain dots and dashes
PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.\-]*)\s*\}\}")

HOST_VARIABLE = "host_address"


def placeholder_tokens(template: ConfigTemplate) -> list[str]:
    """Placeholder tokens in order of first appearance"""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER.finditer(template.text):
        seen.setdefault(match.group(1), None)
    return list(seen)


def required_variables(template: ConfigTemplate) -> set[str]:
    """Variable names a template needs"""
    return {template.placeholders.get(token, token) for token in placeholder_tokens(template)}


def find_unused_variables(template: ConfigTemplate, variables: Mapping[str, Any]) -> list[str]:
    """Supplied variables the template never references"""
    required = required_variables(template)
    return sorted(name for name in variables if name not in required)


def render(template: ConfigTemplate, variables: Mapping[str, Any], warn_unused: bool = True) -> bytes:
    """
    Render a template to bytes

    Args:
        template: Template to render
        variables: Variable values (rendered with str())
        warn_unused: Log a warning for supplied variables the template ignores

    Returns:
        UTF-8 encoded content

    Raises:
        ConfigRenderError: If a required variable is missing or None
    """
    missing = sorted(name for name in required_variables(template) if variables.get(name) is None)
    if missing:
        raise ConfigRenderError(
            f"Template '{template.name}' is missing variable(s): {', '.join(missing)}",
            template=template.name,
            missing=missing,
        )

    if warn_unused:
        unused = find_unused_variables(template, variables)
        if unused:
            logger.warning(f"[WARN]  Template '{template.name}' ignores variable(s): {', '.join(unused)}")

    def substitute(match: re.Match[str]) -> str:
        token = match.group(1)
        return str(variables[template.placeholders.get(token, token)])

    return PLACEHOLDER.sub(substitute, template.text).encode("utf-8")


@dataclass
class RenderedArtifacts:
    """Files written for one attempt"""

    artifact_dir: Path
    variables: dict[str, Any]
    files: dict[str, Path] = field(default_factory=dict)
    unused_variables: list[str] = field(default_factory=list)

    @property
    def host_address(self) -> str | None:
        value = self.variables.get(HOST_VARIABLE)
        return str(value) if value is not None else None


class ConfigTemplater:
    """
    Render and write the configuration artifacts of a stack

    Example:
        templater = ConfigTemplater(StaticHostResolver("172.17.0.1"))
        artifacts = templater.render_all(definition, Path(".indexer-stack/artifacts"))
    """

    def __init__(self, resolver: IHostResolver):
        self.resolver = resolver

    def resolve_variables(self, static: Mapping[str, Any]) -> dict[str, Any]:
        """
        Merge static variables with environment-discovered ones

        A host_address given explicitly in the static variables wins over
        the resolver.

        Raises:
            ConfigRenderError: If the host address cannot be resolved
        """
        variables = dict(static)
        if variables.get(HOST_VARIABLE) is None:
            variables[HOST_VARIABLE] = self.resolver.resolve()
        return variables

    def render_all(self, definition: StackDefinition, artifact_dir: Path) -> RenderedArtifacts:
        """
        Render every template and write templates and payloads

        Files are replaced if a previous attempt left them behind and are
        made read-only for the rest of the attempt.

        Raises:
            ConfigRenderError: If any template cannot be rendered
        """
        variables = self.resolve_variables(definition.variables)

        rendered: dict[str, bytes] = {}
        referenced: set[str] = set()
        for template in definition.templates:
            rendered[template.target] = render(template, variables, warn_unused=False)
            referenced |= required_variables(template)

        unused = sorted(name for name in variables if name not in referenced and name != HOST_VARIABLE)
        if unused and definition.templates:
            logger.warning(f"[WARN]  Variable(s) not referenced by any template: {', '.join(unused)}")

        for target, content in definition.payloads.items():
            rendered[target] = content

        artifacts = RenderedArtifacts(artifact_dir=artifact_dir, variables=variables, unused_variables=unused)
        for target, content in rendered.items():
            artifacts.files[target] = _write_read_only(artifact_dir, target, content)

        logger.info(f"Rendered {len(artifacts.files)} artifact(s) to {artifact_dir}")
        return artifacts


def _write_read_only(artifact_dir: Path, target: str, content: bytes) -> Path:
    path = (artifact_dir / target).resolve()
    if artifact_dir.resolve() not in path.parents:
        raise ConfigRenderError(f"Artifact path escapes the artifact directory: {target}", template=target)

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        path.chmod(0o644)
        path.unlink()
    path.write_bytes(content)
    path.chmod(0o444)
    return path
