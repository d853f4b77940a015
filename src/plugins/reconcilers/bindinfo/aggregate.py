"""Collects per-binding failures of one reconcile pass."""

from typing import Iterable, List, Optional

from models import Phase


class MultiError(Exception):
    """
    Several independent errors reported as one.

    Errors are added as they happen; iteration over the remaining work is
    never stopped by this class.
    """

    def __init__(self, errors: Optional[Iterable[Exception]] = None):
        self.errors: List[Exception] = list(errors or [])
        super().__init__()

    def add(self, err: Exception) -> None:
        self.errors.append(err)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __str__(self) -> str:
        return "the following errors occurred:\n" + "\n".join(
            f"  - {err}" for err in self.errors
        )


def phase_for(errors: MultiError) -> Phase:
    """Completed when nothing failed, Failed otherwise."""
    return Phase.FAILED if errors else Phase.COMPLETED
