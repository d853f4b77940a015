"""
Plugin system for the BindInfo operator.

This package provides the plugin architecture for extensible inputs and
reconcilers.
"""

from plugins.inputs.base import InputPlugin
from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "InputPlugin",
    "ReconcilerPlugin",
    "ReconcilerContext",
    "ReconcileResult",
    "PluginRegistry",
    "get_registry",
]
