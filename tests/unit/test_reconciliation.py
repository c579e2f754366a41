"""
Unit tests for the reconciliation report.
"""

from decimal import Decimal

import pytest

from cdpbridge import Indeterminate, JournalState, OperationKind, reconcile

from tests.fake_ledger import ADMIN_KEY, AP_ADDRESS, build_bridge, run


def _report(bridge):
    return run(reconcile(bridge.registry, bridge.client, bridge.journal, bridge.config.tokens))


def test_clean_after_successful_operations():
    bridge = build_bridge()
    bridge.settlement.create_etf("AP", "ES3", 100)
    run(bridge.settlement.tokenize("AP", "ES3", 30, ADMIN_KEY))

    report = _report(bridge)
    assert report.clean
    rows = {r.owner_id: r for r in report.holdings}
    assert rows["AP"].offchain == Decimal(70)
    assert rows["AP"].onchain == Decimal(30)
    assert rows["AP"].total == Decimal(100)
    assert rows["AP"].address == AP_ADDRESS
    assert rows["THOMAS"].onchain is None


def test_indeterminate_mint_is_reported():
    bridge = build_bridge(confirmation_timeout=0.05, stall_kinds={OperationKind.MINT})
    bridge.settlement.create_etf("AP", "ES3", 100)

    async def scenario():
        with pytest.raises(Indeterminate):
            await bridge.settlement.tokenize("AP", "ES3", 30, ADMIN_KEY)
        await bridge.client.settle_pending()
        return await reconcile(bridge.registry, bridge.client, bridge.journal, bridge.config.tokens)

    report = run(scenario())
    assert not report.clean
    assert report.attention[0].state == JournalState.INDETERMINATE
    ap = next(r for r in report.holdings if r.owner_id == "AP")
    # tokens exist onchain that the registry never debited
    assert ap.total == Decimal(130)

    data = report.to_dict()
    assert data["clean"] is False
    assert data["attention"][0]["operation"] == "Tokenize"
    assert data["attention"][0]["symbol"] == "ES3"


def test_report_does_not_mutate():
    bridge = build_bridge()
    bridge.settlement.create_etf("AP", "ES3", 100)
    before = bridge.registry.document()
    block = bridge.chain.block_number
    _report(bridge)
    assert bridge.registry.document() == before
    assert bridge.chain.block_number == block
