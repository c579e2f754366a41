"""
Unit tests for the Coordinator: result mapping, aliases, listeners and per-owner locking.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar, Tuple

import pytest

from cdpbridge import (
    AtomicSwapRequest, BuyAssetRequest, CreateETFRequest, CreateWalletRequest, JournalState,
    OnrampRequest, OperationKind, OperationStatus, RedeemRequest, TokenizeRequest,
)
from cdpbridge.coordinator import request_owners

from tests.fake_ledger import ADMIN_KEY, THOMAS_ADDRESS, build_bridge, run

UNIT = 10**18


class TestResults:

    def test_success(self, coordinator):
        result = run(coordinator.execute(CreateETFRequest("AP", "ES3", 100)))
        assert result.status == OperationStatus.SUCCEEDED
        assert result.value.new_etf_balance == Decimal(100)
        assert result.error_kind is None
        assert result.to_dict()["result"]["newETFBalance"] == "100"

    def test_failure_is_structured(self, coordinator, registry):
        result = run(coordinator.execute(CreateETFRequest("AP", "ES3", 300)))
        assert result.status == OperationStatus.FAILED
        assert result.error_kind == "InsufficientBalance"
        assert result.details["symbol"] == "A"
        assert result.details["required"] == "1500"
        assert result.value is None
        assert registry.get_account("AP").stock("A") == Decimal(1000)

    def test_timeout_is_indeterminate(self):
        bridge = build_bridge(confirmation_timeout=0.05, stall_kinds={OperationKind.MINT})
        bridge.settlement.create_etf("AP", "ES3", 100)
        result = run(bridge.coordinator.execute(TokenizeRequest("AP", "ES3", 50, ADMIN_KEY)))
        assert result.status == OperationStatus.INDETERMINATE
        assert result.error_kind == "Indeterminate"

    def test_partial_swap_status_follows_cause(self):
        def swap_result(**client_kwargs):
            bridge = build_bridge(confirmation_timeout=0.05, stall_seconds=5.0)

            async def scenario():
                s = bridge.settlement
                await s.create_wallet("THOMAS", THOMAS_ADDRESS, ADMIN_KEY)
                await s.onramp("THOMAS", 1000, ADMIN_KEY)
                s.create_etf("AP", "ES3", 10)
                await s.tokenize("AP", "ES3", 10, ADMIN_KEY)
                for key, value in client_kwargs.items():
                    getattr(bridge.client, key).add(value)
                return await bridge.coordinator.execute(
                    AtomicSwapRequest("THOMAS", "AP", "SGDC", "TES3", 100, 1))

            return run(scenario())

        reverted = swap_result(revert_kinds=OperationKind.TRANSFER_FROM)
        assert reverted.status == OperationStatus.FAILED
        assert reverted.error_kind == "PartialSwapFailure"
        assert reverted.details["cause"] == "OperationReverted"

        stalled = swap_result(stall_calls=7)
        assert stalled.status == OperationStatus.INDETERMINATE
        assert stalled.details["failed_step"] == 4

    def test_journal_write_failure_after_submit_is_indeterminate(self, monkeypatch):
        bridge = build_bridge()
        bridge.settlement.create_etf("AP", "ES3", 100)
        append = bridge.journal._append

        def disk_full_on_submitted(record):
            if record.get("state") == JournalState.SUBMITTED.value:
                raise OSError(28, "No space left on device")
            append(record)

        monkeypatch.setattr(bridge.journal, "_append", disk_full_on_submitted)

        async def scenario():
            result = await bridge.coordinator.execute(TokenizeRequest("AP", "ES3", 50, ADMIN_KEY))
            await bridge.client.settle_pending()
            return result

        result = run(scenario())
        assert result.status == OperationStatus.INDETERMINATE
        assert result.error_kind == "Indeterminate"
        assert bridge.registry.get_account("AP").etf("ES3") == Decimal(100)

    def test_request_ids_are_unique_and_kept(self, coordinator):
        a = CreateETFRequest("AP", "ES3", 1)
        b = CreateETFRequest("AP", "ES3", 1)
        assert a.request_id != b.request_id
        assert run(coordinator.execute(a)).request_id == a.request_id

    def test_unknown_request_type_propagates(self, coordinator):
        @dataclass(frozen=True)
        class Bogus:
            owner_id: str
            request_id: str = "x"
            operation: ClassVar[str] = "Bogus"
            owner_fields: ClassVar[Tuple[str, ...]] = ("owner_id",)

        with pytest.raises(TypeError):
            run(coordinator.execute(Bogus("AP")))


class TestAliases:

    def test_unique_identifier_resolves_to_owner(self, coordinator, registry):
        result = run(coordinator.execute(CreateETFRequest("SN91X81J21", "ES3", 10)))
        assert result.succeeded
        assert result.value.owner_id == "AP"
        assert registry.get_account("AP").etf("ES3") == Decimal(10)

    def test_request_owners_are_sorted(self):
        assert request_owners(AtomicSwapRequest("THOMAS", "AP", "SGDC", "TES3", 1, 1)) == ["AP", "THOMAS"]
        assert request_owners(BuyAssetRequest("THOMAS", "AP", "TES3", 1)) == ["AP", "THOMAS"]


class TestListeners:

    def test_notified_on_success_only(self, coordinator):
        seen = []
        coordinator.subscribe(seen.append)
        run(coordinator.execute(CreateETFRequest("AP", "ES3", 1)))
        run(coordinator.execute(CreateETFRequest("AP", "ES3", 10**6)))
        assert [r.status for r in seen] == [OperationStatus.SUCCEEDED]

    def test_async_listener_awaited(self, coordinator):
        seen = []

        async def listener(result):
            await asyncio.sleep(0)
            seen.append(result.operation)

        coordinator.subscribe(listener)
        run(coordinator.execute(CreateETFRequest("AP", "ES3", 1)))
        assert seen == ["CreateETF"]

    def test_failing_listener_does_not_affect_result(self, coordinator, caplog):
        def broken(result):
            raise RuntimeError("listener bug")

        coordinator.subscribe(broken)
        with caplog.at_level(logging.ERROR):
            result = run(coordinator.execute(CreateETFRequest("AP", "ES3", 1)))
        assert result.succeeded
        assert "listener bug" in caplog.text

    def test_unsubscribe(self, coordinator):
        seen = []
        unsubscribe = coordinator.subscribe(seen.append)
        unsubscribe()
        run(coordinator.execute(CreateETFRequest("AP", "ES3", 1)))
        assert seen == []


class TestLocking:

    def test_concurrent_tokenize_cannot_overdraw(self):
        bridge = build_bridge()
        bridge.client.block_time = 0.02
        bridge.settlement.create_etf("AP", "ES3", 100)

        results = run(bridge.coordinator.execute_many([
            TokenizeRequest("AP", "ES3", 60, ADMIN_KEY),
            TokenizeRequest("AP", "ES3", 60, ADMIN_KEY),
        ]))
        statuses = sorted(r.status.value for r in results)
        assert statuses == ["FAILED", "SUCCEEDED"]
        failed = next(r for r in results if not r.succeeded)
        assert failed.error_kind == "InsufficientBalance"
        assert bridge.chain.balance_of(bridge.chain.resolve_address("AP"), "TES3") == 60 * UNIT
        assert bridge.registry.get_account("AP").etf("ES3") == Decimal(40)

    def test_execute_many_keeps_request_order(self, coordinator):
        requests = [CreateETFRequest("AP", "ES3", n) for n in (1, 2, 3)]
        results = run(coordinator.execute_many(requests))
        assert [r.request_id for r in results] == [r.request_id for r in requests]

    def test_disjoint_owners_do_not_wait(self, coordinator):
        async def scenario():
            async with coordinator.lock_for("AP"):
                other = await asyncio.wait_for(
                    coordinator.execute(CreateETFRequest("THOMAS", "ES3", 1)), timeout=1.0)
                with pytest.raises(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        coordinator.execute(CreateETFRequest("AP", "ES3", 1)), timeout=0.05)
                return other

        other = run(scenario())
        assert other.error_kind == "InsufficientBalance"

    def test_overlapping_swaps_do_not_deadlock(self):
        bridge = build_bridge()

        async def scenario():
            c = bridge.coordinator
            await c.execute(CreateWalletRequest("THOMAS", THOMAS_ADDRESS, ADMIN_KEY))
            await c.execute(OnrampRequest("THOMAS", 1000, ADMIN_KEY))
            await c.execute(OnrampRequest("AP", 1000, ADMIN_KEY))
            return await asyncio.wait_for(c.execute_many([
                AtomicSwapRequest("AP", "THOMAS", "SGDC", "SGDC", 10, 20),
                AtomicSwapRequest("THOMAS", "AP", "SGDC", "SGDC", 30, 40),
            ]), timeout=5.0)

        results = run(scenario())
        assert all(r.succeeded for r in results)
        # AP: -10 +20 +30 -40 ; THOMAS: +10 -20 -30 +40
        assert bridge.chain.balance_of(bridge.chain.resolve_address("AP"), "SGDC") == 1000 * UNIT
        assert bridge.chain.balance_of(THOMAS_ADDRESS, "SGDC") == 1000 * UNIT

    def test_redeem_and_tokenize_serialize(self):
        bridge = build_bridge()
        bridge.client.block_time = 0.01
        bridge.settlement.create_etf("AP", "ES3", 100)

        async def scenario():
            await bridge.coordinator.execute(TokenizeRequest("AP", "ES3", 50, ADMIN_KEY))
            return await bridge.coordinator.execute_many([
                RedeemRequest("AP", "ES3", 50, ADMIN_KEY),
                TokenizeRequest("AP", "ES3", 50, ADMIN_KEY),
            ])

        results = run(scenario())
        assert all(r.succeeded for r in results)
        assert bridge.registry.get_account("AP").etf("ES3") == Decimal(50)

    def test_idle_locks_are_forgotten(self):
        bridge = build_bridge()
        bridge.client.block_time = 0.01
        bridge.settlement.create_etf("AP", "ES3", 100)

        async def scenario():
            c = bridge.coordinator
            await c.execute(CreateWalletRequest("THOMAS", THOMAS_ADDRESS, ADMIN_KEY))
            await c.execute_many([
                TokenizeRequest("AP", "ES3", 10, ADMIN_KEY),
                TokenizeRequest("AP", "ES3", 10, ADMIN_KEY),
                OnrampRequest("THOMAS", 5, ADMIN_KEY),
                CreateETFRequest("NOBODY", "ES3", 1),
            ])
            return dict(c._locks), dict(c._users)

        locks, users = run(scenario())
        assert locks == {}
        assert users == {}

    def test_lock_held_outside_execute_is_kept(self, coordinator):
        async def scenario():
            async with coordinator.lock_for("AP"):
                await coordinator.execute(CreateETFRequest("THOMAS", "ES3", 1))
                return set(coordinator._locks)

        assert run(scenario()) == {"AP"}
