"""
Settlement matching.

The venue's closed-PnL records share no key with local positions, so a
close is matched by similarity. Tiers run from strict to permissive and the
first tier with a candidate wins; within a tier the newest record wins.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set, Tuple

from config.settings import ReconcileConfig
from liqtrader.client_interface import ClosedPnlRecord
from liqtrader.models import Position


def relative_diff(value: float, reference: float) -> float:
    if reference <= 0:
        return float("inf")
    return abs(value - reference) / reference


def _within(record: ClosedPnlRecord, position: Position, entry_tol: float, qty_tol: float) -> bool:
    if position.entry_price <= 0 or record.avg_entry_price <= 0:
        return False
    if relative_diff(record.avg_entry_price, position.entry_price) >= entry_tol:
        return False
    # Unknown quantity on either side does not disqualify
    if position.quantity <= 0 or record.qty <= 0:
        return True
    return relative_diff(record.qty, position.quantity) < qty_tol


def tier_exact(record: ClosedPnlRecord, position: Position) -> bool:
    """Entry within 0.5% and quantity within 1%."""
    return _within(record, position, 0.005, 0.01)


def tier_close(record: ClosedPnlRecord, position: Position) -> bool:
    """Entry within 5% and quantity within 20% (partial fills, DCA drift)."""
    return _within(record, position, 0.05, 0.20)


def tier_side(record: ClosedPnlRecord, position: Position) -> bool:
    return record.position_side == position.side


def tier_any(record: ClosedPnlRecord, position: Position) -> bool:
    return True


MATCH_TIERS: Tuple[Tuple[str, Callable[[ClosedPnlRecord, Position], bool]], ...] = (
    ("exact", tier_exact),
    ("close", tier_close),
    ("side", tier_side),
    ("any", tier_any),
)


def candidate_records(
    records: Iterable[ClosedPnlRecord],
    position: Position,
    consumed: Set[str],
    not_before: Optional[int] = None,
) -> List[ClosedPnlRecord]:
    """Unconsumed records for the symbol, newest first."""
    candidates = [
        r for r in records
        if r.symbol == position.symbol
        and r.order_id not in consumed
        and (not_before is None or r.created_time >= not_before)
    ]
    return sorted(candidates, key=lambda r: r.created_time, reverse=True)


def match_record(
    records: Iterable[ClosedPnlRecord],
    position: Position,
    consumed: Set[str],
    not_before: Optional[int] = None,
) -> Optional[Tuple[ClosedPnlRecord, str]]:
    """Best record for a closed position and the name of the tier that matched."""
    candidates = candidate_records(records, position, consumed, not_before)
    for name, predicate in MATCH_TIERS:
        for record in candidates:
            if predicate(record, position):
                return record, name
    return None


@dataclass(frozen=True)
class MatchRetryPolicy:
    """
    How many times to look for a settlement record and when to loosen up.

    The last `relax_last` attempts drop the created-after-open filter so a
    record stamped slightly before the local open time can still match.
    """

    attempts: int = 5
    delay_seconds: float = 2.0
    relax_last: int = 2

    def is_relaxed(self, attempt: int) -> bool:
        return attempt >= self.attempts - self.relax_last

    @classmethod
    def from_config(cls, config: ReconcileConfig) -> "MatchRetryPolicy":
        return cls(
            attempts=config.match_attempts,
            delay_seconds=config.match_retry_delay_seconds,
            relax_last=config.match_relax_last,
        )
