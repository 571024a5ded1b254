"""Per-dataset privacy budget ledger with pluggable composition accounting.

Every consume call is serialized per ledger: the check against the budget and
the write of the new entry happen under one lock, so two callers can never both
see enough remaining budget and jointly overrun it. Refused calls are written to
the ledger too, marked "refused".
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .exceptions import BudgetExhaustedError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"

STATUS_ACCEPTED = "accepted"
STATUS_REFUSED = "refused"
STATUS_RESET = "reset"

DEFAULT_RDP_ORDERS: Tuple[float, ...] = (1.25, 1.5, 1.75, 2.0, 2.5, 3.0, 4.0, 5.0, 6.0, 8.0, 16.0, 32.0, 64.0)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class BudgetEntry:
    epsilon: float
    operation: str
    actor: str
    timestamp: str
    status: str = STATUS_ACCEPTED
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'epsilon': self.epsilon,
            'operation': self.operation,
            'actor': self.actor,
            'timestamp': self.timestamp,
            'status': self.status,
            'note': self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetEntry":
        return cls(
            epsilon=float(data['epsilon']),
            operation=str(data.get('operation', '')),
            actor=str(data.get('actor', '')),
            timestamp=str(data.get('timestamp', '')),
            status=str(data.get('status', STATUS_ACCEPTED)),
            note=str(data.get('note', '')),
        )


# ======================== Composition strategies ========================

class CompositionStrategy:
    """Turns the accepted entries of a ledger into one effective epsilon."""

    name = "base"
    delta: Optional[float] = None

    def accumulate(self, entries: Sequence[BudgetEntry]) -> float:
        return self.compose([e.epsilon for e in entries])[0]

    def compose(self, epsilons: Sequence[float]) -> Tuple[float, Dict[str, Any]]:
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        return {'method': self.name, 'delta': self.delta}


class SequentialComposition(CompositionStrategy):
    """Basic composition: epsilons add up."""

    name = "sequential"

    def compose(self, epsilons: Sequence[float]) -> Tuple[float, Dict[str, Any]]:
        total = float(sum(epsilons))
        return total, {'bound': 'sequential', 'count': len(epsilons)}


class AdvancedComposition(CompositionStrategy):
    """Dwork-Rothblum-Vadhan advanced composition for pure-DP releases.

    eps_total = sqrt(2 ln(1/delta) * sum eps_i^2) + sum eps_i (e^eps_i - 1)

    which for k equal releases is sqrt(2k ln(1/delta)) eps + k eps (e^eps - 1).
    The sequential sum is also a valid bound, so the smaller of the two is reported.
    """

    name = "advanced"

    def __init__(self, delta: float = 1e-6):
        if not 0.0 < delta < 1.0:
            raise ValueError("delta must be in (0, 1)")
        self.delta = float(delta)

    def compose(self, epsilons: Sequence[float]) -> Tuple[float, Dict[str, Any]]:
        sequential = float(sum(epsilons))
        if not epsilons:
            return 0.0, {'bound': 'sequential', 'count': 0}
        eps_sq = sum(e * e for e in epsilons)
        advanced = math.sqrt(2.0 * math.log(1.0 / self.delta) * eps_sq) + sum(e * math.expm1(e) for e in epsilons)
        if advanced < sequential:
            return advanced, {'bound': 'advanced', 'count': len(epsilons), 'sequential': sequential}
        return sequential, {'bound': 'sequential', 'count': len(epsilons), 'advanced': advanced}


class RenyiComposition(CompositionStrategy):
    """Renyi-DP accounting over a grid of orders.

    A pure eps-DP release is (alpha, min(eps, alpha eps^2 / 2))-RDP. Curves add up
    per order and convert with eps(delta) = RDP(alpha) + ln(1/delta) / (alpha - 1),
    minimised over the grid. The sequential sum is reported when it is smaller.
    """

    name = "renyi"

    def __init__(self, delta: float = 1e-6, orders: Optional[Iterable[float]] = None):
        if not 0.0 < delta < 1.0:
            raise ValueError("delta must be in (0, 1)")
        self.delta = float(delta)
        self.orders = tuple(float(a) for a in (orders or DEFAULT_RDP_ORDERS))
        if not self.orders or any(a <= 1.0 for a in self.orders):
            raise ValueError("Renyi orders must all be > 1")

    def rdp_curve(self, epsilons: Sequence[float]) -> Dict[float, float]:
        return {a: float(sum(min(e, a * e * e / 2.0) for e in epsilons)) for a in self.orders}

    def compose(self, epsilons: Sequence[float]) -> Tuple[float, Dict[str, Any]]:
        sequential = float(sum(epsilons))
        if not epsilons:
            return 0.0, {'bound': 'sequential', 'count': 0}
        curve = self.rdp_curve(epsilons)
        log_term = math.log(1.0 / self.delta)
        best_order, best_eps = min(
            ((a, rdp + log_term / (a - 1.0)) for a, rdp in curve.items()),
            key=lambda t: t[1],
        )
        if best_eps < sequential:
            return best_eps, {'bound': 'renyi', 'count': len(epsilons), 'order': best_order, 'sequential': sequential}
        return sequential, {'bound': 'sequential', 'count': len(epsilons), 'renyi': best_eps, 'order': best_order}

    def describe(self) -> Dict[str, Any]:
        return {'method': self.name, 'delta': self.delta, 'orders': list(self.orders)}


_STRATEGIES = {
    'sequential': SequentialComposition,
    'basic': SequentialComposition,
    'advanced': AdvancedComposition,
    'renyi': RenyiComposition,
    'rdp': RenyiComposition,
}


def resolve_composition(
    composition: Union[str, CompositionStrategy, None],
    delta: Optional[float] = None,
) -> CompositionStrategy:
    """Build a strategy from its name ("sequential", "advanced", "renyi") or pass one through."""
    if isinstance(composition, CompositionStrategy):
        return composition
    name = str(composition or 'sequential').lower()
    if name not in _STRATEGIES:
        raise ValueError(f"Unknown composition method '{composition}'. Use sequential, advanced or renyi.")
    cls = _STRATEGIES[name]
    if cls is SequentialComposition:
        return cls()
    return cls(delta=delta) if delta is not None else cls()


# ============================== State ==============================

@dataclass(frozen=True)
class BudgetState:
    dataset_id: str
    total_budget: float
    spent: float
    composition: str
    warning_fraction: float
    auto_pause: bool
    entries: Tuple[BudgetEntry, ...] = ()
    delta: Optional[float] = None
    bound: str = "sequential"
    schema_version: str = SCHEMA_VERSION

    @property
    def remaining(self) -> float:
        return self.total_budget - self.spent

    @property
    def consumption_count(self) -> int:
        return sum(1 for e in self._active() if e.status == STATUS_ACCEPTED)

    @property
    def refused_count(self) -> int:
        return sum(1 for e in self.entries if e.status == STATUS_REFUSED)

    @property
    def exhausted(self) -> bool:
        return self.spent >= self.total_budget

    def _active(self) -> Tuple[BudgetEntry, ...]:
        last_reset = max((i for i, e in enumerate(self.entries) if e.status == STATUS_RESET), default=-1)
        return self.entries[last_reset + 1:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_version': self.schema_version,
            'dataset_id': self.dataset_id,
            'total_budget': self.total_budget,
            'spent': self.spent,
            'remaining': self.remaining,
            'composition': self.composition,
            'bound': self.bound,
            'delta': self.delta,
            'warning_fraction': self.warning_fraction,
            'auto_pause': self.auto_pause,
            'consumption_count': self.consumption_count,
            'refused_count': self.refused_count,
            'entries': [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetState":
        return cls(
            dataset_id=str(data['dataset_id']),
            total_budget=float(data['total_budget']),
            spent=float(data['spent']),
            composition=str(data.get('composition', 'sequential')),
            warning_fraction=float(data.get('warning_fraction', 0.2)),
            auto_pause=bool(data.get('auto_pause', True)),
            entries=tuple(BudgetEntry.from_dict(e) for e in data.get('entries', [])),
            delta=data.get('delta'),
            bound=str(data.get('bound', data.get('composition', 'sequential'))),
            schema_version=str(data.get('schema_version', SCHEMA_VERSION)),
        )


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    message: str
    state: BudgetState
    warning: bool = False

    def as_tuple(self) -> Tuple[bool, str, BudgetState]:
        return self.success, self.message, self.state


# ============================== Ledger ==============================

class BudgetLedger:
    """Cumulative privacy expenditure for one dataset.

    Args:
        dataset_id: Identifier of the protected dataset
        total_budget: Total epsilon budget B
        warning_fraction: Warn once remaining / B drops below this (0 < w < 1)
        auto_pause: Refuse consumption that would push spending past B
        composition: "sequential", "advanced", "renyi" or a CompositionStrategy
        delta: Delta used by advanced / Renyi accounting
        lock: Lock guarding this ledger (a fresh one if omitted)
    """

    def __init__(
        self,
        dataset_id: str,
        total_budget: float,
        *,
        warning_fraction: float = 0.2,
        auto_pause: bool = True,
        composition: Union[str, CompositionStrategy, None] = "sequential",
        delta: Optional[float] = None,
        lock: Optional[threading.Lock] = None,
    ) -> None:
        self.dataset_id = str(dataset_id)
        self.total_budget = float(total_budget)
        if not math.isfinite(self.total_budget) or self.total_budget <= 0:
            raise ValueError("total_budget must be positive")
        self.warning_fraction = float(warning_fraction)
        if not 0.0 < self.warning_fraction < 1.0:
            raise ValueError("warning_fraction must be in (0, 1)")
        self.auto_pause = bool(auto_pause)
        self.composition = resolve_composition(composition, delta)
        self._lock = lock if lock is not None else threading.Lock()
        self._entries: List[BudgetEntry] = []
        self._spent = 0.0
        self._bound = "sequential"

    def _active_accepted(self) -> List[BudgetEntry]:
        active: List[BudgetEntry] = []
        for e in self._entries:
            if e.status == STATUS_RESET:
                active = []
            elif e.status == STATUS_ACCEPTED:
                active.append(e)
        return active

    def _snapshot(self) -> BudgetState:
        return BudgetState(
            dataset_id=self.dataset_id,
            total_budget=self.total_budget,
            spent=self._spent,
            composition=self.composition.name,
            warning_fraction=self.warning_fraction,
            auto_pause=self.auto_pause,
            entries=tuple(self._entries),
            delta=self.composition.delta,
            bound=self._bound,
        )

    def consume(self, epsilon: float, operation_label: str, actor: str = "unknown") -> ConsumeResult:
        """Record a privacy expenditure.

        Raises BudgetExhaustedError (after logging the refused attempt) when
        auto-pause is on and the composed spending would exceed the budget.
        With auto-pause off the overrun is recorded and the call succeeds.
        A non-positive or non-finite epsilon is also logged as refused, then
        raises ValueError.
        """
        epsilon = float(epsilon)
        if not math.isfinite(epsilon) or epsilon <= 0:
            with self._lock:
                self._entries.append(BudgetEntry(
                    epsilon if math.isfinite(epsilon) else 0.0,
                    str(operation_label), str(actor), _now(),
                    status=STATUS_REFUSED,
                    note=f"invalid epsilon {epsilon!r}",
                ))
            logger.warning(
                "Refused invalid epsilon=%r for %s on dataset %s by %s",
                epsilon, operation_label, self.dataset_id, actor,
            )
            raise ValueError("epsilon must be positive and finite")
        entry = BudgetEntry(epsilon, str(operation_label), str(actor), _now())

        with self._lock:
            active = [e.epsilon for e in self._active_accepted()]
            projected, detail = self.composition.compose(active + [epsilon])
            if self.auto_pause and projected > self.total_budget + 1e-12:
                remaining = self.total_budget - self._spent
                self._entries.append(BudgetEntry(
                    epsilon, entry.operation, entry.actor, entry.timestamp,
                    status=STATUS_REFUSED,
                    note=f"would reach {projected:.6g} of {self.total_budget:.6g}",
                ))
                logger.warning(
                    "Refused epsilon=%.6g for %s on dataset %s by %s (remaining %.6g)",
                    epsilon, operation_label, self.dataset_id, actor, remaining,
                )
                raise BudgetExhaustedError(self.dataset_id, epsilon, remaining)

            self._entries.append(entry)
            self._spent = projected
            self._bound = detail.get('bound', self.composition.name)
            state = self._snapshot()

        logger.info(
            "Consumed epsilon=%.6g for %s on dataset %s by %s: spent %.6g of %.6g (%s)",
            epsilon, operation_label, self.dataset_id, actor, state.spent, state.total_budget, state.composition,
        )
        if state.spent > state.total_budget:
            logger.warning(
                "Dataset %s is over budget: spent %.6g of %.6g (auto-pause disabled)",
                self.dataset_id, state.spent, state.total_budget,
            )
        warning = state.remaining / state.total_budget < self.warning_fraction
        message = f"Consumed epsilon={epsilon:.6g}; remaining {state.remaining:.6g} of {state.total_budget:.6g}"
        if warning:
            message += f" (below {self.warning_fraction:.0%} warning threshold)"
        return ConsumeResult(True, message, state, warning)

    def get_status(self) -> BudgetState:
        with self._lock:
            return self._snapshot()

    def reset(self, actor: str, reason: str) -> BudgetState:
        """Zero the spent figure. Kept in the ledger as an audited "reset" entry."""
        if not str(reason).strip():
            raise ValueError("A reset needs a reason for the audit trail")
        with self._lock:
            previous = self._spent
            self._entries.append(BudgetEntry(0.0, "reset", str(actor), _now(), status=STATUS_RESET, note=str(reason)))
            self._spent = 0.0
            self._bound = "sequential"
            state = self._snapshot()
        logger.warning(
            "Budget for dataset %s reset by %s (was %.6g spent): %s",
            self.dataset_id, actor, previous, reason,
        )
        return state


class LedgerStore:
    """Keyed store of ledgers, one per dataset id, each with its own lock."""

    def __init__(self) -> None:
        self._ledgers: Dict[str, BudgetLedger] = {}
        self._lock = threading.Lock()

    def create(self, dataset_id: str, total_budget: float, **kwargs: Any) -> BudgetLedger:
        with self._lock:
            if dataset_id in self._ledgers:
                raise ValueError(f"A ledger for dataset '{dataset_id}' already exists")
            ledger = BudgetLedger(dataset_id, total_budget, lock=threading.Lock(), **kwargs)
            self._ledgers[dataset_id] = ledger
        logger.info("Opened ledger for dataset %s with budget %.6g", dataset_id, ledger.total_budget)
        return ledger

    def get(self, dataset_id: str) -> BudgetLedger:
        with self._lock:
            try:
                return self._ledgers[dataset_id]
            except KeyError:
                raise KeyError(f"No budget ledger for dataset '{dataset_id}'") from None

    def get_or_create(self, dataset_id: str, total_budget: float, **kwargs: Any) -> BudgetLedger:
        with self._lock:
            ledger = self._ledgers.get(dataset_id)
            if ledger is None:
                ledger = BudgetLedger(dataset_id, total_budget, lock=threading.Lock(), **kwargs)
                self._ledgers[dataset_id] = ledger
            return ledger

    def consume(self, dataset_id: str, epsilon: float, operation_label: str, actor: str = "unknown") -> ConsumeResult:
        return self.get(dataset_id).consume(epsilon, operation_label, actor)

    def status(self, dataset_id: str) -> BudgetState:
        return self.get(dataset_id).get_status()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            ledgers = list(self._ledgers.values())
        return {ledger.dataset_id: ledger.get_status().to_dict() for ledger in ledgers}

    def __contains__(self, dataset_id: object) -> bool:
        with self._lock:
            return dataset_id in self._ledgers

    def __len__(self) -> int:
        with self._lock:
            return len(self._ledgers)


def print_budget_status(state: BudgetState) -> None:
    """Print formatted budget status."""
    print("=" * 80)
    print(f"Privacy Budget Ledger: {state.dataset_id}")
    print("=" * 80)

    print(f"\nComposition: {state.composition} (reported bound: {state.bound})")
    if state.delta is not None:
        print(f"  Delta: {state.delta:.2e}")
    print(f"\nBudget:")
    print(f"  Total epsilon: {state.total_budget:.6f}")
    print(f"  Spent: {state.spent:.6f}")
    print(f"  Remaining: {state.remaining:.6f}")
    print(f"  Consumptions: {state.consumption_count}, refused: {state.refused_count}")
    print(f"  Auto-pause: {'on' if state.auto_pause else 'off'}")

    if state.entries:
        print(f"\nEntries:")
        for e in state.entries:
            print(f"  {e.timestamp}  {e.status:<8}  eps={e.epsilon:.6g}  {e.operation} ({e.actor})")
            if e.note:
                print(f"      {e.note}")

    print("\n" + "=" * 80)
