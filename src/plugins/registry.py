"""
Plugin Registry - Discovery and registration of plugins.

Input plugins feed objects into the store; reconciler plugins drive objects
of the kinds they claim towards their desired state. Each kind may be
claimed by at most one reconciler. Third-party reconcilers are discovered
through the ``bindinfo.reconcilers`` entry point group.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.inputs.base import InputPlugin
from plugins.reconcilers.base import ReconcilerPlugin

logger = logging.getLogger(__name__)

RECONCILER_ENTRY_POINT_GROUP = "bindinfo.reconcilers"


class PluginRegistry:
    """Holds registered plugin classes and lazily created instances."""

    def __init__(self):
        self._input_classes: Dict[str, Type[InputPlugin]] = {}
        self._input_configs: Dict[str, Dict[str, Any]] = {}
        self._inputs: Dict[str, InputPlugin] = {}

        self._reconciler_classes: Dict[str, Type[ReconcilerPlugin]] = {}
        self._reconcilers: Dict[str, ReconcilerPlugin] = {}
        # kind -> reconciler name
        self._owners: Dict[str, str] = {}

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """Register an input plugin class and snapshot its env configuration."""
        instance = plugin_class()
        if instance.name in self._input_classes:
            logger.warning(f"Replacing input plugin {instance.name}")

        self._input_classes[instance.name] = plugin_class
        self._input_configs[instance.name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {instance.name} v{instance.version}")

    def register_reconciler_plugin(self, plugin_class: Type[ReconcilerPlugin]) -> None:
        """
        Register a reconciler plugin class.

        Raises:
            ValueError: If one of its kinds is claimed by another reconciler
        """
        instance = plugin_class()
        name = instance.name
        kinds = list(instance.resource_types)

        taken = {kind: self._owners[kind] for kind in kinds if self._owners.get(kind, name) != name}
        if taken:
            kind, owner = next(iter(taken.items()))
            raise ValueError(
                f"Resource type '{kind}' is already claimed by reconciler '{owner}'; "
                f"cannot register '{name}'"
            )
        if name in self._reconciler_classes:
            logger.warning(f"Replacing reconciler plugin {name}")

        self._reconciler_classes[name] = plugin_class
        self._reconcilers.pop(name, None)
        for kind in kinds:
            self._owners[kind] = name
        logger.info(f"Registered reconciler plugin: {name} ({', '.join(kinds)})")

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """Return the initialized input plugin called ``name``, creating it once."""
        if name not in self._input_classes:
            raise ValueError(
                f"Unknown input plugin: {name}. "
                f"Available plugins: {', '.join(self._input_classes) or 'none'}"
            )

        plugin = self._inputs.get(name)
        if plugin is None:
            plugin = self._input_classes[name]()
            await plugin.initialize(config or {})
            self._inputs[name] = plugin
            logger.info(f"Initialized input plugin: {name}")
        return plugin

    def get_reconciler_plugin(self, name: str) -> ReconcilerPlugin:
        """Return the reconciler plugin called ``name``, creating it once."""
        if name not in self._reconciler_classes:
            raise ValueError(
                f"Unknown reconciler plugin: {name}. "
                f"Available reconcilers: {', '.join(self._reconciler_classes) or 'none'}"
            )

        if name not in self._reconcilers:
            self._reconcilers[name] = self._reconciler_classes[name]()
        return self._reconcilers[name]

    def list_input_plugins(self) -> List[str]:
        return list(self._input_classes)

    def list_reconciler_plugins(self) -> List[str]:
        return list(self._reconciler_classes)

    def has_input_plugin(self, name: str) -> bool:
        return name in self._input_classes

    def has_reconciler_for_resource_type(self, kind: str) -> bool:
        return kind in self._owners

    def get_reconciler_for_resource_type(self, kind: str) -> Optional[ReconcilerPlugin]:
        """Reconciler claiming ``kind``, or None."""
        name = self._owners.get(kind)
        return self.get_reconciler_plugin(name) if name else None

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        """Env-derived configuration of an input plugin (a copy)."""
        return dict(self._input_configs.get(name, {}))


_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Drop the global registry."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the HTTP input and BindInfo reconciler, then any reconcilers
    published under the entry point group.

    A reconciler that fails to load or to register is logged and skipped.
    """
    registry = get_registry()

    from plugins.inputs.http import HTTPInputPlugin
    from plugins.reconcilers.bindinfo import BindInfoReconcilerPlugin

    registry.register_input_plugin(HTTPInputPlugin)
    registry.register_reconciler_plugin(BindInfoReconcilerPlugin)

    for ep in entry_points(group=RECONCILER_ENTRY_POINT_GROUP):
        try:
            registry.register_reconciler_plugin(ep.load())
        except Exception as e:
            logger.warning(f"Could not load reconciler plugin {ep.name}: {e}")
