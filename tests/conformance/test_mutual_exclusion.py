"""
Mutual Exclusion Conformance Tests

INVARIANT: two operations that touch a common owner are totally ordered.
Concurrent requests whose combined requirement exceeds the available
balance never both succeed, whatever the interleaving of ledger
confirmations.
"""

import asyncio
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from cdpbridge import CreateETFRequest, OperationStatus, RedeemRequest, TokenizeRequest

from tests.fake_ledger import ADMIN_KEY, AP_ADDRESS, build_bridge, fund, run

UNIT = 10**18


class TestCreateETF:

    def test_combined_requirement_exceeds_balance(self):
        bridge = build_bridge()
        results = run(bridge.coordinator.execute_many([
            CreateETFRequest("AP", "ES3", 150),
            CreateETFRequest("AP", "ES3", 150),
        ]))
        assert sorted(r.status.value for r in results) == ["FAILED", "SUCCEEDED"]
        account = bridge.registry.get_account("AP")
        assert account.stock("A") == Decimal(250)
        assert account.etf("ES3") == Decimal(150)

    @given(quantities=st.lists(st.integers(min_value=1, max_value=120), min_size=2, max_size=6))
    @settings(max_examples=60, deadline=None)
    def test_successes_fit_within_balance(self, quantities):
        bridge = build_bridge()
        results = run(bridge.coordinator.execute_many(
            [CreateETFRequest("AP", "ES3", q) for q in quantities]))

        created = sum(q for q, r in zip(quantities, results) if r.succeeded)
        assert 5 * created <= 1000 and 2 * created <= 500
        account = bridge.registry.get_account("AP")
        assert account.etf("ES3") == created
        assert account.stock("A") == 1000 - 5 * created
        assert account.stock("B") == 500 - 2 * created


class TestBridgeOperations:

    @given(
        quantities=st.lists(st.integers(min_value=1, max_value=60), min_size=2, max_size=5),
        block_time=st.sampled_from([0.0, 0.001, 0.005]),
    )
    @settings(max_examples=30, deadline=None)
    def test_concurrent_tokenize_never_overdraws(self, quantities, block_time):
        bridge = build_bridge()
        bridge.client.block_time = block_time
        bridge.settlement.create_etf("AP", "ES3", 100)

        results = run(bridge.coordinator.execute_many(
            [TokenizeRequest("AP", "ES3", q, ADMIN_KEY) for q in quantities]))

        minted = sum(q for q, r in zip(quantities, results) if r.succeeded)
        assert minted <= 100
        assert bridge.registry.get_account("AP").etf("ES3") == 100 - minted
        assert bridge.chain.balance_of(AP_ADDRESS, "TES3") == minted * UNIT

    @given(quantities=st.lists(st.integers(min_value=1, max_value=60), min_size=2, max_size=5))
    @settings(max_examples=30, deadline=None)
    def test_concurrent_redeem_never_overdraws(self, quantities):
        bridge = build_bridge()
        bridge.client.block_time = 0.001
        fund(bridge.chain, AP_ADDRESS, "TES3", 100)

        results = run(bridge.coordinator.execute_many(
            [RedeemRequest("AP", "ES3", q, ADMIN_KEY) for q in quantities]))

        burned = sum(q for q, r in zip(quantities, results) if r.succeeded)
        assert burned <= 100
        assert all(r.status != OperationStatus.INDETERMINATE for r in results)
        assert bridge.registry.get_account("AP").etf("ES3") == burned
        assert bridge.chain.balance_of(AP_ADDRESS, "TES3") == (100 - burned) * UNIT

    def test_operations_on_one_owner_do_not_interleave(self):
        bridge = build_bridge()
        bridge.client.block_time = 0.005
        bridge.settlement.create_etf("AP", "ES3", 100)
        active = []
        overlaps = []

        original = bridge.settlement.tokenize

        async def tracked(*args, **kwargs):
            if active:
                overlaps.append(args)
            active.append(args)
            try:
                return await original(*args, **kwargs)
            finally:
                active.remove(args)

        bridge.settlement.tokenize = tracked

        async def scenario():
            return await asyncio.gather(*(
                bridge.coordinator.execute(TokenizeRequest("AP", "ES3", n, ADMIN_KEY))
                for n in (10, 20, 30)
            ))

        results = run(scenario())
        assert all(r.succeeded for r in results)
        assert overlaps == []
