"""
Core module - Base abstractions and interfaces

Provides foundational components used across the toolkit:
- Interfaces and protocols
- Base exception hierarchy
- Configuration management
"""

from indexer_toolkit.core.config import (
    Settings,
    configure_logging,
    get_settings,
    reset_settings,
)

__all__ = [
    "Settings",
    "configure_logging",
    "get_settings",
    "reset_settings",
]
