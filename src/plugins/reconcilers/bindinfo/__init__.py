"""
BindInfo reconciler.

Copies the Secrets and ConfigMaps a BindInfo marks public from the operand's
namespace into every consumer namespace its Registry lists.
"""

from plugins.reconcilers.bindinfo.plugin import BindInfoReconcilerPlugin
from plugins.reconcilers.bindinfo.reconciler import BindInfoReconciler

__all__ = ["BindInfoReconciler", "BindInfoReconcilerPlugin"]
