"""
Reconciler plugins package.

Reconciler plugins own the reconciliation logic for one or more resource kinds.
They are discovered via Python entry points (group: 'bindinfo.reconcilers').
"""

from plugins.reconcilers.base import (
    ReconcilerPlugin,
    ReconcilerContext,
    ReconcileResult,
)

__all__ = ["ReconcilerPlugin", "ReconcilerContext", "ReconcileResult"]
