"""
chain.py - In-memory Onchain Token Ledger

TokenLedger models the onchain side of the bridge: a depository that mints and
burns token balances, standard token transfers and allowances, and the
owner -> address bindings the depository keeps. It stands in for a deployed
network in tests, the demo and single-process runs.

Key properties:
    - Applies one LedgerOperation at a time; each either applies fully or
      produces a REVERTED receipt with no state change
    - Balances are integer base units; no balance can go negative
    - Contract addresses are never holders: balance reads against them fail
    - Always logs: every confirmed operation (successful or reverted) is
      appended to the transaction log with its block number
    - Supply is conserved: for every asset, the sum of balances equals
      minted minus burned (see verify_supply)
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import logging

from .core import (
    LedgerOperation, OperationKind, Receipt, ReceiptStatus,
    InvalidAddress, UnsupportedSymbol,
    ZERO_ADDRESS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TokenAsset:
    """
    A token registered with the ledger.

    Attributes:
        asset_id: Ticker of the token (e.g., "TES3", "SGDC")
        name: Human-readable name
        contract_address: Address of the token contract (never a holder)
    """
    asset_id: str
    name: str
    contract_address: str


@dataclass(frozen=True, slots=True)
class ChainTransaction:
    """An executed, immutable record of one confirmed operation."""
    tx_hash: str
    block_number: int
    operation: LedgerOperation
    status: ReceiptStatus
    reason: str = ""

    def __repr__(self) -> str:
        suffix = f" ({self.reason})" if self.reason else ""
        return (f"ChainTransaction(#{self.block_number} {self.tx_hash[:10]} "
                f"{self.operation!r} {self.status.value}{suffix})")


class TokenLedger:
    """
    Token balances, allowances and owner bindings with full validation and audit trail.

    Thread Safety:
        Not thread-safe. Drive it from a single event loop (InMemoryLedgerClient does).

    Example:
        chain = TokenLedger("anvil")
        chain.register_asset(TokenAsset("TES3", "Tokenized ES3", "0x5FC8..."))
        receipt = chain.apply(mint("0x7099...", 50 * 10**18, "TES3", "admin"), "0x01")
    """

    def __init__(
        self,
        name: str = "chain",
        minters: Optional[Iterable[str]] = None,
        contract_addresses: Optional[Iterable[str]] = None,
    ):
        """
        Create a token ledger.

        Args:
            name: Ledger identifier
            minters: Identities allowed to mint, burn and bind addresses.
                     Empty or None lets any signer do so.
            contract_addresses: Addresses of ledger programs (e.g., the depository)
                                in addition to the token contracts registered later
        """
        self.name = name
        self.minters: Set[str] = set(minters or ())
        self.assets: Dict[str, TokenAsset] = {}
        self.balances: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.bindings: Dict[str, str] = {}
        self.minted: Dict[str, int] = defaultdict(int)
        self.burned: Dict[str, int] = defaultdict(int)
        self.transaction_log: List[ChainTransaction] = []
        self._contracts: Set[str] = {_norm(a) for a in (contract_addresses or ())}
        self._block_number = 0

    # ========================================================================
    # READS
    # ========================================================================

    @property
    def block_number(self) -> int:
        """Number of the last block produced."""
        return self._block_number

    def is_contract(self, address: str) -> bool:
        return _norm(address) in self._contracts

    def balance_of(self, address: str, asset_id: str) -> int:
        """
        Confirmed balance of asset_id at address, in base units.

        Returns 0 for addresses that have never held the asset.

        Raises:
            InvalidAddress: If address belongs to a contract
            UnsupportedSymbol: If asset_id is not registered
        """
        self._require_asset(asset_id)
        if self.is_contract(address):
            raise InvalidAddress(
                f"Refusing to read {asset_id} balance of contract address {address}",
                address=address, asset_id=asset_id,
            )
        return self.balances[asset_id].get(_norm(address), 0)

    def allowance(self, owner: str, spender: str, asset_id: str) -> int:
        self._require_asset(asset_id)
        return self.allowances.get((asset_id, _norm(owner), _norm(spender)), 0)

    def resolve_address(self, owner_id: str) -> Optional[str]:
        """Address bound to owner_id, or None if unbound."""
        return self.bindings.get(owner_id)

    def total_supply(self, asset_id: str) -> int:
        self._require_asset(asset_id)
        return sum(self.balances[asset_id][a] for a in sorted(self.balances[asset_id]))

    def verify_supply(self) -> Dict[str, Any]:
        """
        Verify that supply is conserved for every asset.

        For every asset, the sum of all balances must equal total minted minus
        total burned, and no balance may be negative.

        Returns:
            Dict with keys:
            - 'valid': bool - True if every asset is conserved
            - 'supplies': Dict[str, int] - Current total supply per asset
            - 'discrepancies': List[Dict] - asset, expected, actual (and any negative holders)
        """
        supplies = {}
        discrepancies = []
        for asset_id in sorted(self.assets):
            actual = self.total_supply(asset_id)
            expected = self.minted[asset_id] - self.burned[asset_id]
            supplies[asset_id] = actual
            negative = [a for a, q in self.balances[asset_id].items() if q < 0]
            if actual != expected or negative:
                discrepancies.append({
                    'asset': asset_id,
                    'expected': expected,
                    'actual': actual,
                    'negative_holders': negative,
                })
        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_asset(self, asset: TokenAsset) -> None:
        """
        Register a token. Its contract address becomes a non-holder address.

        Raises:
            ValueError: If asset_id is already registered
        """
        if asset.asset_id in self.assets:
            raise ValueError(f"Asset {asset.asset_id} already registered")
        self.assets[asset.asset_id] = asset
        self._contracts.add(_norm(asset.contract_address))
        logger.debug("Registered asset %s (%s) at %s", asset.asset_id, asset.name, asset.contract_address)

    def register_contract(self, address: str) -> None:
        self._contracts.add(_norm(address))

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def apply(self, operation: LedgerOperation, tx_hash: str) -> Receipt:
        """
        Validate and apply one operation in a new block.

        Never raises for a rejected operation: the rejection is recorded and
        returned as a REVERTED receipt.
        """
        self._block_number += 1
        block = self._block_number

        reason = self._validate(operation)
        if reason:
            status = ReceiptStatus.REVERTED
            logger.debug("✗ REVERTED %s in block %d: %s", operation, block, reason)
        else:
            self._execute(operation)
            status = ReceiptStatus.SUCCESS
            logger.debug("✓ APPLIED %s in block %d", operation, block)

        self.transaction_log.append(ChainTransaction(tx_hash, block, operation, status, reason))
        return Receipt(tx_hash, block, status, reason)

    def _validate(self, op: LedgerOperation) -> str:
        """
        Check one operation against token semantics.

        Returns:
            Empty string if the operation may be applied, else the revert reason
        """
        kind = op.kind
        if kind == OperationKind.BIND_ADDRESS:
            if not self._may_administer(op.signer):
                return f"{op.signer} not authorized to bind wallets"
            if op.owner_id in self.bindings:
                return f"wallet already exists for {op.owner_id}"
            bad = self._holder_problem(op.dest)
            if bad:
                return bad
            if _norm(op.dest) in {_norm(a) for a in self.bindings.values()}:
                return f"address {op.dest} already bound"
            return ""

        if op.asset_id not in self.assets:
            return f"asset not registered: {op.asset_id}"
        asset = op.asset_id

        if kind == OperationKind.MINT:
            if not self._may_administer(op.signer):
                return f"{op.signer} not authorized to mint {asset}"
            return self._holder_problem(op.dest)

        if kind == OperationKind.BURN:
            if not self._may_administer(op.signer):
                return f"{op.signer} not authorized to burn {asset}"
            return self._funds_problem(op.source, asset, op.quantity)

        if kind == OperationKind.TRANSFER:
            if _norm(op.signer) != _norm(op.source):
                return f"{op.signer} cannot transfer from {op.source}"
            return self._holder_problem(op.dest) or self._funds_problem(op.source, asset, op.quantity)

        if kind == OperationKind.APPROVE:
            if _norm(op.signer) != _norm(op.source):
                return f"{op.signer} cannot approve on behalf of {op.source}"
            return self._holder_problem(op.spender)

        if kind == OperationKind.TRANSFER_FROM:
            if _norm(op.signer) != _norm(op.spender):
                return f"{op.signer} is not spender {op.spender}"
            allowed = self.allowances.get((asset, _norm(op.source), _norm(op.spender)), 0)
            if allowed < op.quantity:
                return f"insufficient allowance: {allowed} < {op.quantity}"
            return self._holder_problem(op.dest) or self._funds_problem(op.source, asset, op.quantity)

        return f"unsupported operation {kind.value}"

    def _execute(self, op: LedgerOperation) -> None:
        kind = op.kind
        if kind == OperationKind.BIND_ADDRESS:
            self.bindings[op.owner_id] = op.dest
            return
        asset = op.asset_id
        balances = self.balances[asset]
        if kind == OperationKind.MINT:
            balances[_norm(op.dest)] += op.quantity
            self.minted[asset] += op.quantity
        elif kind == OperationKind.BURN:
            balances[_norm(op.source)] -= op.quantity
            self.burned[asset] += op.quantity
        elif kind == OperationKind.TRANSFER:
            balances[_norm(op.source)] -= op.quantity
            balances[_norm(op.dest)] += op.quantity
        elif kind == OperationKind.APPROVE:
            self.allowances[(asset, _norm(op.source), _norm(op.spender))] = op.quantity
        elif kind == OperationKind.TRANSFER_FROM:
            key = (asset, _norm(op.source), _norm(op.spender))
            self.allowances[key] -= op.quantity
            balances[_norm(op.source)] -= op.quantity
            balances[_norm(op.dest)] += op.quantity

    def _may_administer(self, signer: str) -> bool:
        return not self.minters or signer in self.minters

    def _holder_problem(self, address: Optional[str]) -> str:
        if not address or _norm(address) == _norm(ZERO_ADDRESS):
            return "zero address"
        if self.is_contract(address):
            return f"{address} is a contract address"
        return ""

    def _funds_problem(self, address: str, asset_id: str, quantity: int) -> str:
        have = self.balances[asset_id].get(_norm(address), 0)
        if have < quantity:
            return f"insufficient {asset_id} balance: {have} < {quantity}"
        return ""

    def _require_asset(self, asset_id: str) -> None:
        if asset_id not in self.assets:
            raise UnsupportedSymbol(f"Asset {asset_id} not registered", asset_id=asset_id)


def _norm(address: Optional[str]) -> str:
    """Addresses compare case-insensitively (checksummed and lower-case forms are equal)."""
    return (address or "").lower()
