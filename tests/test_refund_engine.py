from __future__ import annotations

import asyncio
import sqlite3
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from conftest import FakeTreasury, new_address
from restock_bot import (
    CYCLE_BALANCE_ERROR,
    CYCLE_DISABLED,
    CYCLE_INSUFFICIENT_FUNDS,
    CYCLE_LEDGER_UPDATE_FAILED,
    CYCLE_NO_PENDING,
    CYCLE_REFUNDED,
    CYCLE_TRANSFER_FAILED,
    CYCLE_UNRESOLVED,
    NOT_FOUND,
    RESOLVED,
    LedgerStore,
    RefundEngine,
    RefundPolicy,
    Resolution,
    TradeRecord,
    TradeStatus,
)


class StubResolver:
    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self.mapping = mapping or {}
        self.calls: List[str] = []

    async def resolve_detailed(self, account: str) -> Resolution:
        self.calls.append(account)
        if account in self.mapping:
            return Resolution(account, self.mapping[account], RESOLVED)
        return Resolution(account, account, NOT_FOUND)


def seed(ledger: LedgerStore, amounts: List[str]) -> List[str]:
    addrs = [new_address() for _ in amounts]

    async def scenario() -> None:
        for a, amt in zip(addrs, amounts):
            assert await ledger.append(TradeRecord(a, Decimal(amt)))

    asyncio.run(scenario())
    return addrs


def make_engine(ledger, resolver, treasury, enabled=True) -> RefundEngine:
    return RefundEngine(ledger, resolver, treasury, RefundPolicy(Decimal(2), Decimal(2)), enabled=enabled)


def test_policy_required_balance() -> None:
    assert RefundPolicy(Decimal(2), Decimal(2)).required_balance(Decimal(1)) == Decimal(4)
    assert RefundPolicy(Decimal("0.5"), Decimal(3)).required_balance(Decimal("0.25")) == Decimal("1.25")


def test_enabled_engine_requires_treasury(ledger: LedgerStore) -> None:
    with pytest.raises(ValueError):
        make_engine(ledger, StubResolver(), None)


def test_disabled_engine_is_a_no_op(ledger: LedgerStore) -> None:
    seed(ledger, ["1"])
    resolver = StubResolver()
    engine = make_engine(ledger, resolver, None, enabled=False)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_DISABLED
    assert resolver.calls == []
    assert ledger.records()[0].status == TradeStatus.PENDING


def test_insufficient_funds_ends_cycle(ledger: LedgerStore) -> None:
    (addr,) = seed(ledger, ["1"])
    resolver = StubResolver({addr: new_address()})
    treasury = FakeTreasury(balance="3")
    engine = make_engine(ledger, resolver, treasury)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_INSUFFICIENT_FUNDS
    assert result.index == 0
    assert treasury.transfers == []
    assert resolver.calls == []
    assert ledger.records()[0].status == TradeStatus.PENDING


def test_affordable_refund_is_settled(ledger: LedgerStore) -> None:
    (addr,) = seed(ledger, ["1"])
    wallet = new_address()
    treasury = FakeTreasury(balance="10")
    engine = make_engine(ledger, StubResolver({addr: wallet}), treasury)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_REFUNDED
    assert result.confirmation_ref == "sig1"
    assert treasury.transfers == [(wallet, 1_000_000_000)]
    record = ledger.records()[0]
    assert record.status == TradeStatus.REFUNDED
    assert record.confirmation_ref == "sig1"
    assert engine.refunds_sent == 1


def test_unaffordable_head_blocks_affordable_tail(ledger: LedgerStore) -> None:
    addrs = seed(ledger, ["5", "0.1"])
    resolver = StubResolver({a: new_address() for a in addrs})
    treasury = FakeTreasury(balance="4")
    engine = make_engine(ledger, resolver, treasury)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_INSUFFICIENT_FUNDS
    assert result.index == 0
    assert treasury.transfers == []
    assert [r.status for r in ledger.records()] == [TradeStatus.PENDING, TradeStatus.PENDING]


def test_refunded_records_are_skipped_and_one_settles_per_cycle(ledger: LedgerStore) -> None:
    addrs = seed(ledger, ["1", "0.5", "0.25"])
    asyncio.run(ledger.update_at(0, {"status": TradeStatus.REFUNDED, "confirmation_ref": "old"}))
    wallets = {a: new_address() for a in addrs}
    treasury = FakeTreasury(balance="100")
    engine = make_engine(ledger, StubResolver(wallets), treasury)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_REFUNDED
    assert result.index == 1
    assert treasury.transfers == [(wallets[addrs[1]], 500_000_000)]
    assert [r.status for r in ledger.records()] == [
        TradeStatus.REFUNDED,
        TradeStatus.REFUNDED,
        TradeStatus.PENDING,
    ]


def test_successive_cycles_drain_queue_in_order(ledger: LedgerStore) -> None:
    addrs = seed(ledger, ["1", "2"])
    wallets = {a: new_address() for a in addrs}
    treasury = FakeTreasury(balance="100")
    engine = make_engine(ledger, StubResolver(wallets), treasury)

    async def scenario():
        return [(await engine.run_cycle()).outcome for _ in range(3)]

    assert asyncio.run(scenario()) == [CYCLE_REFUNDED, CYCLE_REFUNDED, CYCLE_NO_PENDING]
    assert [t[0] for t in treasury.transfers] == [wallets[addrs[0]], wallets[addrs[1]]]
    assert engine.cycles == 3


def test_unresolved_payee_ends_cycle_without_marking(ledger: LedgerStore) -> None:
    addrs = seed(ledger, ["1", "1"])
    resolver = StubResolver({addrs[1]: new_address()})
    treasury = FakeTreasury(balance="100")
    engine = make_engine(ledger, resolver, treasury)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_UNRESOLVED
    assert result.detail == NOT_FOUND
    assert resolver.calls == [addrs[0]]
    assert treasury.transfers == []
    assert ledger.pending_count() == 2


def test_transfer_failure_leaves_record_pending(ledger: LedgerStore) -> None:
    (addr,) = seed(ledger, ["1"])
    treasury = FakeTreasury(balance="10", fail=RuntimeError("blockhash not found"))
    engine = make_engine(ledger, StubResolver({addr: new_address()}), treasury)

    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_TRANSFER_FAILED
    assert "blockhash" in result.detail
    assert ledger.records()[0].status == TradeStatus.PENDING


def test_ledger_update_failure_after_transfer_is_reported(ledger: LedgerStore, monkeypatch) -> None:
    (addr,) = seed(ledger, ["1"])
    treasury = FakeTreasury(balance="10")
    engine = make_engine(ledger, StubResolver({addr: new_address()}), treasury)

    def failing_update(index, fields) -> bool:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(ledger, "_update_row", failing_update)
    result = asyncio.run(engine.run_cycle())

    assert result.outcome == CYCLE_LEDGER_UPDATE_FAILED
    assert result.confirmation_ref == "sig1"
    assert len(treasury.transfers) == 1
    assert ledger.records()[0].status == TradeStatus.PENDING


def test_balance_error_ends_cycle(ledger: LedgerStore) -> None:
    seed(ledger, ["1"])

    class BrokenTreasury(FakeTreasury):
        async def get_balance(self) -> Decimal:
            raise ConnectionError("rpc down")

    engine = make_engine(ledger, StubResolver(), BrokenTreasury())
    assert asyncio.run(engine.run_cycle()).outcome == CYCLE_BALANCE_ERROR


def test_empty_ledger_has_nothing_pending(ledger: LedgerStore) -> None:
    engine = make_engine(ledger, StubResolver(), FakeTreasury())
    result = asyncio.run(engine.run_cycle())
    assert result.outcome == CYCLE_NO_PENDING
    assert engine.last_result is result


def test_run_forever_runs_at_startup_and_stops(ledger: LedgerStore) -> None:
    (addr,) = seed(ledger, ["1"])
    treasury = FakeTreasury(balance="10")
    engine = RefundEngine(
        ledger,
        StubResolver({addr: new_address()}),
        treasury,
        RefundPolicy(),
        enabled=True,
        interval_sec=3600,
    )

    async def scenario() -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(engine.run_forever(stop))
        while engine.cycles == 0:
            await asyncio.sleep(0)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())
    assert engine.cycles == 1
    assert ledger.records()[0].status == TradeStatus.REFUNDED
