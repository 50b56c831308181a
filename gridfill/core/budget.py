"""BudgetTracker — running-cost ledger with a hard ceiling.

A job owns a root tracker; each entity gets a child tracker whose
charges also count against the job.  Check-and-charge is atomic across
the whole tree (one lock per root), so concurrent entities can never
push the job past its ceiling.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Charge:
    label: str
    cost_cents: int


class BudgetTracker:
    """Ledger of spend against an optional ceiling.

    Args:
        total_cents: Ceiling in cents; ``None`` means unlimited.
        parent: Tracker that every charge is also applied to.
        name: Label used in logs and ``repr``.
    """

    def __init__(
        self,
        total_cents: Optional[int] = None,
        parent: Optional["BudgetTracker"] = None,
        name: str = "budget",
    ) -> None:
        if total_cents is not None and total_cents < 0:
            raise ValueError(f"total_cents must be non-negative, got {total_cents}")
        self.total_cents = total_cents
        self.parent = parent
        self.name = name
        self._spent = 0
        self._charges: list[Charge] = []
        self._lock: threading.RLock = parent._lock if parent is not None else threading.RLock()

    # -- views -----------------------------------------------------------

    @property
    def spent_cents(self) -> int:
        return self._spent

    @property
    def charges(self) -> list[Charge]:
        with self._lock:
            return list(self._charges)

    @property
    def remaining_cents(self) -> Optional[int]:
        """Smallest remaining allowance along the chain; ``None`` if unlimited."""
        with self._lock:
            return self._remaining_unlocked()

    @property
    def exhausted(self) -> bool:
        remaining = self.remaining_cents
        return remaining is not None and remaining <= 0

    def _remaining_unlocked(self) -> Optional[int]:
        own = None if self.total_cents is None else self.total_cents - self._spent
        upstream = self.parent._remaining_unlocked() if self.parent is not None else None
        if own is None:
            return upstream
        if upstream is None:
            return own
        return min(own, upstream)

    # -- mutation --------------------------------------------------------

    def can_afford(self, cost_cents: int) -> bool:
        with self._lock:
            remaining = self._remaining_unlocked()
            return remaining is None or cost_cents <= remaining

    def try_charge(self, cost_cents: int, label: str = "") -> bool:
        """Charge *cost_cents* if affordable; return whether it was charged."""
        if cost_cents < 0:
            raise ValueError(f"cost must be non-negative, got {cost_cents}")
        with self._lock:
            remaining = self._remaining_unlocked()
            if remaining is not None and cost_cents > remaining:
                return False
            node: Optional[BudgetTracker] = self
            while node is not None:
                node._spent += cost_cents
                node._charges.append(Charge(label=label, cost_cents=cost_cents))
                node = node.parent
            return True

    def charge(self, cost_cents: int, label: str = "") -> None:
        """Charge *cost_cents*; raise ``ValueError`` if it would exceed the ceiling."""
        if not self.try_charge(cost_cents, label):
            raise ValueError(
                f"{self.name}: charge of {cost_cents}c exceeds remaining {self.remaining_cents}c"
            )

    def allot(self, total_cents: Optional[int], name: str = "entity") -> "BudgetTracker":
        """Create a child tracker capped at *total_cents* that also draws on this one."""
        return BudgetTracker(total_cents=total_cents, parent=self, name=name)

    def __repr__(self) -> str:
        return f"BudgetTracker({self.name}, spent={self._spent}, total={self.total_cents})"
