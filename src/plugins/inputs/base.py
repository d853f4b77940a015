"""
Input Plugin Base - Abstract interface for resource input sources.

Input plugins provide mechanisms for users to submit resources:
- HTTP API: REST endpoints
- GitOps: Watch Git repositories of manifests
- File watcher: Watch local manifest files
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from models import Resource

# Callback type for when resources are created/updated/deleted
# (event_type: str, resource: Resource) -> None
ResourceCallback = Callable[[str, Resource], Awaitable[None]]


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins are responsible for receiving resource manifests
    from external sources, writing them to the object store and
    notifying the application of changes.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http', 'gitops')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Called once when the plugin is loaded.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_resource_event: ResourceCallback) -> None:
        """
        Start the input plugin.

        This method should start listening for resource changes and
        call the callback when resources are created/updated/deleted.

        Args:
            on_resource_event: Callback to invoke when resource events occur.
                              First arg is event type ('created', 'updated', 'deleted'),
                              second arg is the stored Resource.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}

    def set_store(self, store: Any) -> None:
        """
        Set the object store for plugins that read or write resources.

        Args:
            store: The ObjectStore instance
        """
        pass

    def set_event_recorder(self, recorder: Any) -> None:
        """
        Set the event recorder for plugins that expose recorded events.

        Args:
            recorder: The EventRecorder instance
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus for plugins that stream events.

        Args:
            event_bus: The EventBus instance
        """
        pass
