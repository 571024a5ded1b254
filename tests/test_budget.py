"""Tests for BudgetLedger, composition strategies and LedgerStore."""

import math
import threading

import pytest

from synthcert import BudgetLedger, BudgetState, LedgerStore
from synthcert.budget import (
    STATUS_REFUSED,
    STATUS_RESET,
    AdvancedComposition,
    RenyiComposition,
    SequentialComposition,
    print_budget_status,
    resolve_composition,
)
from synthcert.exceptions import BudgetExhaustedError


def test_sequential_spending_adds_up():
    ledger = BudgetLedger("D1", 10.0)

    ledger.consume(1.5, "sample", "alice")
    result = ledger.consume(2.0, "enforce", "bob")

    assert result.success
    assert result.state.spent == pytest.approx(3.5)
    assert result.state.remaining == pytest.approx(6.5)
    assert result.state.consumption_count == 2
    assert result.state.bound == "sequential"


def test_overrun_is_refused_and_spent_unchanged():
    ledger = BudgetLedger("D1", 3.0)
    ledger.consume(1.0, "a")
    ledger.consume(1.5, "b")

    with pytest.raises(BudgetExhaustedError) as excinfo:
        ledger.consume(1.0, "c", "mallory")

    state = ledger.get_status()
    assert state.spent == pytest.approx(2.5)
    assert state.consumption_count == 2
    assert state.refused_count == 1
    assert state.entries[-1].status == STATUS_REFUSED
    assert excinfo.value.dataset_id == "D1"
    assert excinfo.value.requested == 1.0
    assert excinfo.value.remaining == pytest.approx(0.5)


def test_spending_exactly_the_budget_is_allowed():
    ledger = BudgetLedger("D1", 1.0)
    ledger.consume(0.5, "a")
    result = ledger.consume(0.5, "b")

    assert result.success
    assert result.state.exhausted
    with pytest.raises(BudgetExhaustedError):
        ledger.consume(0.01, "c")


def test_overrun_is_recorded_when_auto_pause_is_off(caplog):
    ledger = BudgetLedger("D1", 1.0, auto_pause=False)

    with caplog.at_level("WARNING", logger="synthcert.budget"):
        ledger.consume(0.8, "a")
        result = ledger.consume(0.8, "b")

    assert result.success
    assert result.state.spent == pytest.approx(1.6)
    assert result.state.remaining == pytest.approx(-0.6)
    assert any("over budget" in r.getMessage() for r in caplog.records)


def test_warning_signal_below_fraction():
    ledger = BudgetLedger("D1", 10.0, warning_fraction=0.2)

    assert not ledger.consume(7.0, "a").warning
    low = ledger.consume(1.5, "b")

    assert low.warning
    assert "warning threshold" in low.message


def test_invalid_arguments():
    with pytest.raises(ValueError):
        BudgetLedger("D1", 0.0)
    with pytest.raises(ValueError):
        BudgetLedger("D1", 1.0, warning_fraction=1.0)
    with pytest.raises(ValueError):
        BudgetLedger("D1", 1.0, composition="moments")
    ledger = BudgetLedger("D1", 1.0)
    with pytest.raises(ValueError):
        ledger.consume(0.0, "a")
    with pytest.raises(ValueError):
        ledger.consume(float('nan'), "a")


def test_invalid_epsilon_is_recorded_as_refused(caplog):
    ledger = BudgetLedger("D1", 5.0)
    ledger.consume(1.0, "a", "alice")

    with caplog.at_level("WARNING", logger="synthcert.budget"):
        with pytest.raises(ValueError):
            ledger.consume(-2.0, "b", "mallory")
        with pytest.raises(ValueError):
            ledger.consume(float('inf'), "c", "mallory")

    state = ledger.get_status()
    assert state.spent == pytest.approx(1.0)
    assert state.consumption_count == 1
    assert state.refused_count == 2
    assert [e.actor for e in state.entries[-2:]] == ["mallory", "mallory"]
    assert state.entries[-2].epsilon == -2.0
    assert state.entries[-1].epsilon == 0.0
    assert "invalid epsilon" in state.entries[-1].note
    assert sum("invalid epsilon" in r.getMessage() for r in caplog.records) == 2


def test_reset_is_audited(caplog):
    ledger = BudgetLedger("D1", 2.0)
    ledger.consume(2.0, "a")

    with pytest.raises(ValueError):
        ledger.reset("admin", "   ")

    with caplog.at_level("WARNING", logger="synthcert.budget"):
        state = ledger.reset("admin", "new quarter")

    assert state.spent == 0.0
    assert state.consumption_count == 0
    assert state.entries[-1].status == STATUS_RESET
    assert state.entries[-1].note == "new quarter"
    assert len(state.entries) == 2
    assert any("reset" in r.getMessage() for r in caplog.records)
    assert ledger.consume(1.0, "b").success


def test_advanced_composition_formula():
    strategy = AdvancedComposition(delta=1e-5)
    eps = [0.1] * 100

    total, detail = strategy.compose(eps)

    expected = math.sqrt(2 * 100 * math.log(1e5)) * 0.1 + 100 * 0.1 * math.expm1(0.1)
    assert total == pytest.approx(expected)
    assert total < 10.0
    assert detail['bound'] == 'advanced'


def test_advanced_composition_never_worse_than_sequential():
    strategy = AdvancedComposition()

    total, detail = strategy.compose([1.0, 1.0])

    assert total == pytest.approx(2.0)
    assert detail['bound'] == 'sequential'


def test_renyi_composition_tighter_for_many_small_releases():
    eps = [0.05] * 400
    sequential, _ = SequentialComposition().compose(eps)
    advanced, _ = AdvancedComposition(delta=1e-6).compose(eps)
    renyi, detail = RenyiComposition(delta=1e-6).compose(eps)

    assert renyi < sequential
    assert renyi <= advanced
    assert detail['bound'] == 'renyi'
    assert detail['order'] in RenyiComposition().orders


def test_renyi_curve():
    strategy = RenyiComposition(orders=[2.0, 100.0])

    curve = strategy.rdp_curve([0.1, 0.1])

    assert curve[2.0] == pytest.approx(2 * 2.0 * 0.01 / 2)
    # capped at eps per release for large orders
    assert curve[100.0] == pytest.approx(0.2)


def test_ledger_reports_which_bound_was_used():
    ledger = BudgetLedger("D1", 100.0, composition="renyi", delta=1e-6)
    for _ in range(200):
        state = ledger.consume(0.05, "train step").state

    assert state.composition == "renyi"
    assert state.bound == "renyi"
    assert state.spent < 10.0
    assert state.delta == 1e-6


def test_renyi_ledger_admits_more_queries_than_sequential():
    sequential = BudgetLedger("S", 5.0)
    renyi = BudgetLedger("R", 5.0, composition="rdp")

    def count(ledger):
        n = 0
        while True:
            try:
                ledger.consume(0.05, "q")
            except BudgetExhaustedError:
                return n
            n += 1

    assert count(sequential) == 100
    assert count(renyi) > 100


def test_resolve_composition():
    assert isinstance(resolve_composition("basic"), SequentialComposition)
    assert isinstance(resolve_composition(None), SequentialComposition)
    assert resolve_composition("advanced", 1e-4).delta == 1e-4
    custom = RenyiComposition(orders=[2.0])
    assert resolve_composition(custom) is custom
    assert custom.accumulate([]) == 0.0


def test_concurrent_consumers_never_overrun():
    ledger = BudgetLedger("D1", 5.0)
    accepted = []
    refused = []
    barrier = threading.Barrier(20)

    def worker(i):
        barrier.wait()
        for _ in range(10):
            try:
                ledger.consume(0.1, f"op-{i}", f"worker-{i}")
                accepted.append(i)
            except BudgetExhaustedError:
                refused.append(i)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    state = ledger.get_status()
    assert len(accepted) == 50
    assert len(refused) == 150
    assert state.spent == pytest.approx(5.0)
    assert state.spent <= state.total_budget + 1e-9


def test_state_roundtrip():
    ledger = BudgetLedger("D1", 4.0, composition="advanced")
    ledger.consume(1.0, "a", "alice")
    with pytest.raises(BudgetExhaustedError):
        ledger.consume(10.0, "b", "bob")
    state = ledger.get_status()

    restored = BudgetState.from_dict(state.to_dict())

    assert restored == state
    assert restored.schema_version == "1.0"
    assert state.to_dict()['refused_count'] == 1


def test_state_from_dict_ignores_unknown_keys():
    data = BudgetLedger("D1", 1.0).get_status().to_dict()
    data['future_field'] = 'x'
    del data['bound']

    restored = BudgetState.from_dict(data)

    assert restored.bound == 'sequential'


def test_ledger_store():
    store = LedgerStore()
    store.create("D1", 10.0)
    store.create("D2", 1.0, composition="advanced")

    assert "D1" in store and len(store) == 2
    with pytest.raises(ValueError):
        store.create("D1", 5.0)
    with pytest.raises(KeyError):
        store.get("D3")

    store.consume("D1", 1.0, "sample", "alice")
    assert store.status("D1").remaining == pytest.approx(9.0)
    assert store.get_or_create("D1", 99.0).total_budget == 10.0
    assert store.get_or_create("D3", 2.0).total_budget == 2.0
    assert set(store.snapshot()) == {"D1", "D2", "D3"}


def test_ledgers_are_independent():
    store = LedgerStore()
    store.create("A", 1.0)
    store.create("B", 1.0)
    store.consume("A", 1.0, "x")

    assert store.status("B").spent == 0.0
    assert store.get("A")._lock is not store.get("B")._lock


def test_print_budget_status(capsys):
    ledger = BudgetLedger("D1", 10.0)
    ledger.consume(1.0, "sample", "alice")

    print_budget_status(ledger.get_status())

    out = capsys.readouterr().out
    assert "Privacy Budget Ledger: D1" in out
    assert "alice" in out
