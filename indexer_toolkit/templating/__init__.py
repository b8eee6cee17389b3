"""
Templating module - configuration rendering

Renders environment-specific configuration artifacts from templates and
resolves environment values such as the reachable host address.
"""

from indexer_toolkit.templating.renderer import (
    HOST_VARIABLE,
    ConfigTemplater,
    RenderedArtifacts,
    find_unused_variables,
    placeholder_tokens,
    render,
    required_variables,
)
from indexer_toolkit.templating.resolver import DockerHostResolver, StaticHostResolver

__all__ = [
    "HOST_VARIABLE",
    "ConfigTemplater",
    "RenderedArtifacts",
    "DockerHostResolver",
    "StaticHostResolver",
    "find_unused_variables",
    "placeholder_tokens",
    "render",
    "required_variables",
]
