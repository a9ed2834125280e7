"""
Position Ledger and per-symbol pending locks.

Both structures are mutated only from the event loop thread. Every
check-then-act on them happens without an intervening await, which is what
makes them safe under cooperative scheduling.
"""

from typing import Dict, Iterator, List, Optional, Set

from liqtrader.exceptions import InvariantViolation
from liqtrader.models import Position


class PendingLocks:
    """Symbols with an entry, DCA add or close currently in flight."""

    def __init__(self):
        self._symbols: Set[str] = set()

    def try_acquire(self, symbol: str) -> bool:
        if symbol in self._symbols:
            return False
        self._symbols.add(symbol)
        return True

    def release(self, symbol: str):
        self._symbols.discard(symbol)

    def is_locked(self, symbol: str) -> bool:
        return symbol in self._symbols

    def snapshot(self) -> Set[str]:
        return set(self._symbols)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._symbols

    def __len__(self) -> int:
        return len(self._symbols)


class PositionLedger:
    """Authoritative local view of open positions, one per symbol."""

    def __init__(self):
        self._positions: Dict[str, Position] = {}

    def get(self, symbol: str) -> Optional[Position]:
        return self._positions.get(symbol)

    def add(self, position: Position):
        if position.symbol in self._positions:
            raise InvariantViolation(f"{position.symbol} already open in ledger")
        if position.quantity <= 0:
            raise InvariantViolation(f"{position.symbol} added with quantity {position.quantity}")
        self._positions[position.symbol] = position

    def remove(self, symbol: str) -> Optional[Position]:
        return self._positions.pop(symbol, None)

    def clear(self):
        self._positions.clear()

    def symbols(self) -> Set[str]:
        return set(self._positions)

    def positions(self) -> List[Position]:
        return list(self._positions.values())

    def open_or_pending_count(self, locks: PendingLocks) -> int:
        """Distinct symbols that are open or have an action in flight."""
        return len(self.symbols() | locks.snapshot())

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._positions

    def __iter__(self) -> Iterator[Position]:
        return iter(list(self._positions.values()))

    def __len__(self) -> int:
        return len(self._positions)
