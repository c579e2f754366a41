"""
The tutorial runs end to end in quick mode and finishes reconciled.
"""

from decimal import Decimal

import demo

from tests.fake_ledger import run


def test_tutorial_quick_mode(monkeypatch, capsys):
    monkeypatch.setattr(demo, "QUICK_MODE", True)

    bridge = run(demo.run_tutorial())

    out = capsys.readouterr().out
    assert "STEP 9: Reconciliation" in out
    assert "Error (InsufficientBalance)" in out
    assert "Error (WalletNotBound)" in out
    assert "Error (InvalidAddress)" in out
    assert "Clean: True" in out

    ap = bridge.registry.get_account("AP")
    assert ap.stock("A") == Decimal(500)
    assert ap.etf("ES3") == Decimal(80)
    assert bridge.chain.balance_of(demo.CONFIG.thomas_address, "TES3") == 20 * 10**18
    assert bridge.chain.verify_supply()["valid"]
