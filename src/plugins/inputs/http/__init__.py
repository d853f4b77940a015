"""
HTTP Input Plugin.

This plugin provides a Kubernetes-style REST API for applying and reading
resources.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
