"""
Unit tests for the in-memory TokenLedger.
"""

import pytest

from cdpbridge import (
    InvalidAddress, ReceiptStatus, TokenAsset, TokenLedger, UnsupportedSymbol,
    approve, bind_address, burn, mint, transfer, transfer_from,
)
from cdpbridge.core import ZERO_ADDRESS

from tests.fake_ledger import (
    ADMIN_KEY, AP_ADDRESS, DEPOSITORY_ADDRESS, TES3_CONTRACT, THOMAS_ADDRESS, build_chain,
)

UNIT = 10**18


@pytest.fixture
def chain():
    chain = build_chain({"AP": AP_ADDRESS, "THOMAS": THOMAS_ADDRESS})
    chain.apply(mint(AP_ADDRESS, 100 * UNIT, "TES3", ADMIN_KEY), "0xm")
    return chain


def _balance(chain, address, asset="TES3"):
    return chain.balance_of(address, asset)


class TestMintBurn:

    def test_mint_credits_and_counts_supply(self, chain):
        assert _balance(chain, AP_ADDRESS) == 100 * UNIT
        assert chain.total_supply("TES3") == 100 * UNIT

    def test_addresses_compare_case_insensitively(self, chain):
        assert _balance(chain, AP_ADDRESS.lower()) == 100 * UNIT

    def test_burn_debits(self, chain):
        receipt = chain.apply(burn(AP_ADDRESS, 40 * UNIT, "TES3", ADMIN_KEY), "0xb")
        assert receipt.succeeded
        assert _balance(chain, AP_ADDRESS) == 60 * UNIT

    def test_burn_more_than_held_reverts(self, chain):
        receipt = chain.apply(burn(AP_ADDRESS, 101 * UNIT, "TES3", ADMIN_KEY), "0xb")
        assert receipt.status == ReceiptStatus.REVERTED
        assert "insufficient" in receipt.reason
        assert _balance(chain, AP_ADDRESS) == 100 * UNIT

    def test_only_minters_mint(self, chain):
        receipt = chain.apply(mint(AP_ADDRESS, 1, "TES3", "intruder"), "0xm2")
        assert receipt.status == ReceiptStatus.REVERTED
        assert _balance(chain, AP_ADDRESS) == 100 * UNIT

    def test_mint_to_contract_reverts(self, chain):
        receipt = chain.apply(mint(TES3_CONTRACT, 1, "TES3", ADMIN_KEY), "0xm3")
        assert receipt.status == ReceiptStatus.REVERTED

    def test_unregistered_asset_reverts(self, chain):
        receipt = chain.apply(mint(AP_ADDRESS, 1, "NOPE", ADMIN_KEY), "0xm4")
        assert receipt.status == ReceiptStatus.REVERTED


class TestTransfers:

    def test_transfer(self, chain):
        assert chain.apply(transfer(AP_ADDRESS, THOMAS_ADDRESS, 10 * UNIT, "TES3"), "0xt").succeeded
        assert _balance(chain, THOMAS_ADDRESS) == 10 * UNIT

    def test_transfer_from_consumes_allowance(self, chain):
        chain.apply(approve(AP_ADDRESS, THOMAS_ADDRESS, 30 * UNIT, "TES3"), "0xa")
        assert chain.allowance(AP_ADDRESS, THOMAS_ADDRESS, "TES3") == 30 * UNIT

        receipt = chain.apply(transfer_from(THOMAS_ADDRESS, AP_ADDRESS, THOMAS_ADDRESS, 20 * UNIT, "TES3"), "0xtf")
        assert receipt.succeeded
        assert chain.allowance(AP_ADDRESS, THOMAS_ADDRESS, "TES3") == 10 * UNIT
        assert _balance(chain, THOMAS_ADDRESS) == 20 * UNIT

    def test_transfer_from_beyond_allowance_reverts(self, chain):
        chain.apply(approve(AP_ADDRESS, THOMAS_ADDRESS, 5 * UNIT, "TES3"), "0xa")
        receipt = chain.apply(transfer_from(THOMAS_ADDRESS, AP_ADDRESS, THOMAS_ADDRESS, 6 * UNIT, "TES3"), "0xtf")
        assert receipt.status == ReceiptStatus.REVERTED
        assert "allowance" in receipt.reason
        assert _balance(chain, AP_ADDRESS) == 100 * UNIT


class TestReads:

    def test_unknown_holder_reads_zero(self, chain):
        assert _balance(chain, "0x1111111111111111111111111111111111111111") == 0

    def test_contract_address_is_not_a_holder(self, chain):
        with pytest.raises(InvalidAddress):
            chain.balance_of(TES3_CONTRACT, "TES3")
        with pytest.raises(InvalidAddress):
            chain.balance_of(DEPOSITORY_ADDRESS, "SGDC")

    def test_unregistered_asset(self, chain):
        with pytest.raises(UnsupportedSymbol):
            chain.balance_of(AP_ADDRESS, "NOPE")

    def test_duplicate_asset_registration(self, chain):
        with pytest.raises(ValueError):
            chain.register_asset(TokenAsset("TES3", "again", "0x2222222222222222222222222222222222222222"))


class TestBindings:

    def test_bound_owners_resolve(self, chain):
        assert chain.resolve_address("AP") == AP_ADDRESS
        assert chain.resolve_address("NOBODY") is None

    def test_rebinding_reverts(self, chain):
        receipt = chain.apply(bind_address("AP", "0x3333333333333333333333333333333333333333", ADMIN_KEY), "0xbind")
        assert receipt.status == ReceiptStatus.REVERTED
        assert chain.resolve_address("AP") == AP_ADDRESS

    def test_address_bound_once(self, chain):
        receipt = chain.apply(bind_address("NEW", AP_ADDRESS, ADMIN_KEY), "0xbind")
        assert receipt.status == ReceiptStatus.REVERTED

    @pytest.mark.parametrize("address", [ZERO_ADDRESS, DEPOSITORY_ADDRESS])
    def test_zero_and_contract_addresses_rejected(self, chain, address):
        receipt = chain.apply(bind_address("NEW", address, ADMIN_KEY), "0xbind")
        assert receipt.status == ReceiptStatus.REVERTED


class TestAudit:

    def test_every_operation_logged_with_block(self, chain):
        start = chain.block_number
        chain.apply(burn(AP_ADDRESS, 1000 * UNIT, "TES3", ADMIN_KEY), "0xfail")
        chain.apply(burn(AP_ADDRESS, UNIT, "TES3", ADMIN_KEY), "0xok")
        assert chain.block_number == start + 2
        assert [t.status for t in chain.transaction_log[-2:]] == [ReceiptStatus.REVERTED, ReceiptStatus.SUCCESS]

    def test_verify_supply(self, chain):
        chain.apply(transfer(AP_ADDRESS, THOMAS_ADDRESS, 10 * UNIT, "TES3"), "0xt")
        chain.apply(burn(THOMAS_ADDRESS, 5 * UNIT, "TES3", ADMIN_KEY), "0xb")
        report = chain.verify_supply()
        assert report["valid"]
        assert report["supplies"]["TES3"] == 95 * UNIT

    def test_verify_supply_detects_tampering(self, chain):
        chain.balances["TES3"][AP_ADDRESS.lower()] += 1
        report = chain.verify_supply()
        assert not report["valid"]
        assert report["discrepancies"][0]["asset"] == "TES3"


def test_open_ledger_without_minters():
    chain = TokenLedger("open")
    chain.register_asset(TokenAsset("X", "X", "0x4444444444444444444444444444444444444444"))
    assert chain.apply(mint(AP_ADDRESS, 1, "X", "anyone"), "0x1").succeeded
