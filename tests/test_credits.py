from __future__ import annotations

import asyncio

import pytest

from visual_lab.credits import CreditGate
from visual_lab.errors import InsufficientCredit


def test_reserve_then_commit_deducts_and_logs(store):
    gate = CreditGate(store)

    async def scenario():
        reservation = await gate.reserve("u1", "nanobanana")
        assert store.get_balance("u1") == 10
        return await gate.commit(reservation)

    assert asyncio.run(scenario()) == 9
    assert store.get_balance("u1") == 9
    assert gate.reserved("u1") == 0
    assert len(store.list_generation_records("u1")) == 1


def test_release_leaves_balance_untouched(store):
    gate = CreditGate(store)

    async def scenario():
        reservation = await gate.reserve("u1", "nanobanana")
        await gate.release(reservation)
        await gate.release(reservation)

    asyncio.run(scenario())
    assert store.get_balance("u1") == 10
    assert gate.reserved("u1") == 0
    assert store.list_generation_records("u1") == []


def test_reservations_count_against_balance(store):
    store.set_balance("u1", 2)
    gate = CreditGate(store)

    async def scenario():
        await gate.reserve("u1", "nanobanana")
        await gate.reserve("u1", "nanobanana")
        await gate.reserve("u1", "nanobanana")

    with pytest.raises(InsufficientCredit) as info:
        asyncio.run(scenario())
    assert info.value.balance == 0


def test_zero_balance_rejected(store):
    store.set_balance("u1", 0)
    with pytest.raises(InsufficientCredit):
        asyncio.run(CreditGate(store).reserve("u1", "nanobanana"))


def test_cost_policy_applies_per_model(store):
    store.set_balance("u1", 2)
    gate = CreditGate(store, cost_policy=lambda model: 3 if model == "nanobanana pro" else 1)

    with pytest.raises(InsufficientCredit):
        asyncio.run(gate.reserve("u1", "nanobanana pro"))
    reservation = asyncio.run(gate.reserve("u1", "nanobanana"))
    assert reservation.cost == 1


def test_commit_never_goes_negative(store):
    gate = CreditGate(store)

    async def scenario():
        reservation = await gate.reserve("u1", "nanobanana")
        store.set_balance("u1", 0)
        return await gate.commit(reservation)

    assert asyncio.run(scenario()) == 0


def test_generation_log_failure_keeps_deduction(store, monkeypatch, caplog):
    gate = CreditGate(store)

    def broken(user_id):
        raise OSError("disk full")

    monkeypatch.setattr(store, "append_generation_record", broken)

    async def scenario():
        return await gate.commit(await gate.reserve("u1", "nanobanana"))

    assert asyncio.run(scenario()) == 9
    assert "reconciliation gap" in caplog.text
