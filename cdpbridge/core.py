"""
Core types and pure functions for the tokenization bridge.

This module provides the foundational data structures shared by every component:
1. Decimal context and fixed-point conversion between registry quantities and
   ledger base units
2. Immutable data structures: Account, Composition, LedgerOperation,
   PendingHandle, Receipt and the success records returned by settlement
3. Exceptions: BridgeError and the settlement error taxonomy
4. Operation factories: mint, burn, transfer, transfer_from, approve, bind_address

Nothing in this module performs I/O or touches either ledger.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, InvalidOperation, getcontext
from enum import Enum
import hashlib
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Registry quantities are arbitrary-precision decimals. The global context is
# configured once at import time so that every component rounds identically.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_BRIDGE_DECIMAL_CONTEXT = getcontext()
_BRIDGE_DECIMAL_CONTEXT.prec = 50
_BRIDGE_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Fractional digits of every onchain token (matches the deployed contracts).
TOKEN_DECIMALS = 18

# Seconds to wait for a ledger confirmation before reporting Indeterminate.
DEFAULT_CONFIRMATION_TIMEOUT = 60.0

# The unset owner->address binding as reported by the depository contract.
ZERO_ADDRESS = "0x" + "0" * 40

ZERO = Decimal("0")

# Settlement operation names, used in results, journal records and logs.
OP_CREATE_ETF = "CreateETF"
OP_TOKENIZE = "Tokenize"
OP_REDEEM = "Redeem"
OP_ATOMIC_SWAP = "AtomicSwap"
OP_CREATE_WALLET = "CreateWallet"
OP_ONRAMP = "Onramp"

# Type aliases
# Mapping from security or ETF symbol to an offchain quantity.
Holdings = Dict[str, Decimal]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class BridgeError(Exception):
    """
    Base exception for all settlement errors.

    Every subclass names its taxonomy kind so that callers (and the
    Coordinator) can report failures without inspecting exception types.
    """
    kind = "BridgeError"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self._details = details

    def details(self) -> Dict[str, Any]:
        """JSON-safe context describing the failure (owner, symbol, step, ...)."""
        return {k: _json_safe(v) for k, v in self._details.items() if v is not None}


class NotFound(BridgeError):
    """Raised when a referenced owner account does not exist where existence is required."""
    kind = "NotFound"


class UnknownETF(BridgeError):
    """Raised when no composition is configured for an ETF symbol."""
    kind = "UnknownETF"


class UnsupportedSymbol(BridgeError):
    """Raised when a symbol cannot be tokenized or redeemed."""
    kind = "UnsupportedSymbol"


class InsufficientBalance(BridgeError):
    """Raised when a quantity precondition fails, offchain or onchain."""
    kind = "InsufficientBalance"

    def __init__(self, symbol: str, required: Any, available: Any, **details: Any):
        super().__init__(
            f"Insufficient {symbol}: have {available}, need {required}",
            symbol=symbol, required=required, available=available, **details
        )
        self.symbol = symbol
        self.required = required
        self.available = available


class WalletNotBound(BridgeError):
    """Raised when an owner has no ledger address bound."""
    kind = "WalletNotBound"


class InvalidAddress(BridgeError):
    """Raised when a contract address is used where a holder address is expected."""
    kind = "InvalidAddress"


class LedgerUnavailable(BridgeError):
    """Raised when the ledger client cannot be reached."""
    kind = "LedgerUnavailable"


class Indeterminate(BridgeError):
    """
    Raised when a ledger-mutating call did not confirm within the timeout.

    The operation may still confirm later. This is never a negative result:
    no compensating action may be taken on the strength of it.
    """
    kind = "Indeterminate"


class OperationReverted(BridgeError):
    """Raised when the ledger confirmed an operation as failed. No state changed for that step."""
    kind = "OperationReverted"


class PartialSwapFailure(BridgeError):
    """
    Raised when an AtomicSwap fails after at least one leg succeeded.

    Attributes:
        failed_step: 1-based index of the step that failed
        completed: (step, tx_hash) pairs of the steps that confirmed
        cause: taxonomy kind of the failing step (OperationReverted, Indeterminate, ...)
        outstanding: authorizations the caller should revoke, as
                     (owner_id, spender_id, asset_id) tuples
    """
    kind = "PartialSwapFailure"

    def __init__(
        self,
        message: str,
        failed_step: int,
        completed: Tuple[Tuple[int, str], ...],
        cause: str,
        outstanding: Tuple[Tuple[str, str, str], ...] = (),
        **details: Any
    ):
        super().__init__(
            message,
            failed_step=failed_step,
            completed=[{"step": s, "tx_hash": h} for s, h in completed],
            cause=cause,
            outstanding=[
                {"owner": o, "spender": s, "asset": a} for o, s, a in outstanding
            ],
            **details
        )
        self.failed_step = failed_step
        self.completed = completed
        self.cause = cause
        self.outstanding = outstanding


class InvalidRequest(BridgeError):
    """Raised for malformed requests: non-positive quantities, identical parties, rebinding."""
    kind = "InvalidRequest"


class ReconciliationRequired(BridgeError):
    """Raised when a ledger step confirmed but a following registry or journal write failed."""
    kind = "ReconciliationRequired"


class StorageError(BridgeError):
    """Raised when a durable write failed before any ledger call was submitted. Nothing changed."""
    kind = "StorageError"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return normalize_decimal(value)
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    return value


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert a quantity to Decimal.

    Floats go through str() so that 0.1 becomes Decimal("0.1"), not its binary expansion.

    Raises:
        InvalidRequest: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise InvalidRequest(f"Quantity must be a number, got {value!r}")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f"Quantity must be a number, got {value!r}") from None
    if not d.is_finite():
        raise InvalidRequest(f"Quantity must be finite, got {value!r}")
    return d


def normalize_decimal(d: Decimal) -> str:
    """
    Canonical string for a Decimal: Decimal("1.0") and Decimal("1.00") both become "1".

    Scientific notation is never produced.
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def to_base_units(quantity: Decimal, decimals: int = TOKEN_DECIMALS) -> int:
    """
    Convert a decimal quantity to integer ledger base units.

    Truncates toward zero: never mint more than the offchain side backs.
    """
    scaled = (to_decimal(quantity) * (Decimal(10) ** decimals)).quantize(
        Decimal("1"), rounding=ROUND_DOWN
    )
    return int(scaled)


def from_base_units(units: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Convert integer ledger base units to an exact decimal quantity."""
    return Decimal(int(units)).scaleb(-decimals)


def settled_quantity(quantity: Decimal, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """The part of quantity that survives conversion to base units and back."""
    return from_base_units(to_base_units(quantity, decimals), decimals)


def fingerprint(identity: str) -> str:
    """Short non-reversible tag for an acting identity, safe to log."""
    return hashlib.sha256(identity.encode()).hexdigest()[:10]


# ============================================================================
# OFFCHAIN DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Account:
    """
    Snapshot of an owner's offchain holdings.

    Attributes:
        owner_id: Stable owner identifier (e.g., "AP")
        stocks: Security symbol -> quantity
        etfs: ETF symbol -> quantity
        wallet_address: Last ledger address recorded for this owner, if any.
                        Informational only: bindings are always re-read from the ledger.
    """
    owner_id: str
    stocks: Mapping[str, Decimal]
    etfs: Mapping[str, Decimal]
    wallet_address: Optional[str] = None

    def stock(self, symbol: str) -> Decimal:
        return self.stocks.get(symbol, ZERO)

    def etf(self, symbol: str) -> Decimal:
        return self.etfs.get(symbol, ZERO)


@dataclass(frozen=True, slots=True)
class Composition:
    """
    Constituents of one ETF share.

    Attributes:
        etf_symbol: The ETF this composition defines
        constituents: (constituent symbol, units required per ETF share) pairs
    """
    etf_symbol: str
    constituents: Tuple[Tuple[str, Decimal], ...]

    def __post_init__(self):
        if not self.etf_symbol or not self.etf_symbol.strip():
            raise ValueError("Composition etf_symbol cannot be empty")
        if not self.constituents:
            raise ValueError(f"Composition {self.etf_symbol} has no constituents")
        seen = set()
        for symbol, ratio in self.constituents:
            if symbol in seen:
                raise ValueError(f"Composition {self.etf_symbol} lists {symbol} twice")
            seen.add(symbol)
            if not isinstance(ratio, Decimal):
                raise ValueError(f"Ratio for {symbol} must be Decimal, got {type(ratio)}")
            if not ratio.is_finite() or ratio <= ZERO:
                raise ValueError(f"Ratio for {symbol} must be positive, got {ratio}")

    def requirements(self, quantity: Decimal) -> Dict[str, Decimal]:
        """Units of each constituent needed for quantity ETF shares, in composition order."""
        return {symbol: ratio * quantity for symbol, ratio in self.constituents}


# ============================================================================
# LEDGER OPERATIONS
# ============================================================================

class OperationKind(Enum):
    """State-changing calls accepted by the onchain ledger."""
    MINT = "mint"
    BURN = "burn"
    TRANSFER = "transfer"
    TRANSFER_FROM = "transfer_from"
    APPROVE = "approve"
    BIND_ADDRESS = "bind_address"


class ReceiptStatus(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"


@dataclass(frozen=True, slots=True)
class LedgerOperation:
    """
    A single state-changing call against the onchain ledger.

    Quantities are integer base units. Which address fields are meaningful
    depends on the kind:

        MINT           dest, quantity, asset_id
        BURN           source, quantity, asset_id
        TRANSFER       source, dest, quantity, asset_id
        TRANSFER_FROM  spender draws quantity of asset_id from source to dest
        APPROVE        source (owner) authorizes spender for quantity of asset_id
        BIND_ADDRESS   owner_id -> dest

    Attributes:
        signer: Identity on whose authority the call is made
    """
    kind: OperationKind
    signer: str
    asset_id: Optional[str] = None
    quantity: int = 0
    source: Optional[str] = None
    dest: Optional[str] = None
    spender: Optional[str] = None
    owner_id: Optional[str] = None

    def __post_init__(self):
        if not self.signer:
            raise ValueError("LedgerOperation signer cannot be empty")
        if not isinstance(self.quantity, int) or isinstance(self.quantity, bool):
            raise ValueError(f"LedgerOperation quantity must be int, got {type(self.quantity)}")
        if self.kind == OperationKind.BIND_ADDRESS:
            if not self.owner_id or not self.dest:
                raise ValueError("bind_address requires owner_id and address")
            return
        if not self.asset_id:
            raise ValueError(f"{self.kind.value} requires an asset_id")
        if self.quantity < 0:
            raise ValueError(f"{self.kind.value} quantity must be non-negative")

    def canonical(self) -> str:
        """Deterministic content string used for transaction hashing."""
        parts = [
            self.kind.value, self.signer, self.asset_id or "", str(self.quantity),
            self.source or "", self.dest or "", self.spender or "", self.owner_id or "",
        ]
        return "|".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation (quantities as decimal strings of base units)."""
        data = {
            "kind": self.kind.value,
            "signer": self.signer,
            "assetId": self.asset_id,
            "quantity": str(self.quantity),
            "source": self.source,
            "dest": self.dest,
            "spender": self.spender,
            "ownerId": self.owner_id,
        }
        return {k: v for k, v in data.items() if v is not None}

    def __repr__(self) -> str:
        if self.kind == OperationKind.BIND_ADDRESS:
            return f"LedgerOperation(bind {self.owner_id}→{self.dest})"
        return f"LedgerOperation({self.kind.value} {self.quantity} {self.asset_id})"


def mint(to_address: str, quantity: int, asset_id: str, signer: str) -> LedgerOperation:
    return LedgerOperation(OperationKind.MINT, signer, asset_id, quantity, dest=to_address)


def burn(from_address: str, quantity: int, asset_id: str, signer: str) -> LedgerOperation:
    return LedgerOperation(OperationKind.BURN, signer, asset_id, quantity, source=from_address)


def transfer(from_address: str, to_address: str, quantity: int, asset_id: str) -> LedgerOperation:
    """Plain transfer; the holder signs."""
    return LedgerOperation(
        OperationKind.TRANSFER, from_address, asset_id, quantity,
        source=from_address, dest=to_address,
    )


def transfer_from(
    spender: str, from_address: str, to_address: str, quantity: int, asset_id: str
) -> LedgerOperation:
    """Spender draws against an allowance granted by from_address; the spender signs."""
    return LedgerOperation(
        OperationKind.TRANSFER_FROM, spender, asset_id, quantity,
        source=from_address, dest=to_address, spender=spender,
    )


def approve(owner_address: str, spender_address: str, quantity: int, asset_id: str) -> LedgerOperation:
    """Owner authorizes spender to draw up to quantity; the owner signs."""
    return LedgerOperation(
        OperationKind.APPROVE, owner_address, asset_id, quantity,
        source=owner_address, spender=spender_address,
    )


def bind_address(owner_id: str, address: str, signer: str) -> LedgerOperation:
    return LedgerOperation(OperationKind.BIND_ADDRESS, signer, owner_id=owner_id, dest=address)


def compute_tx_hash(operation: LedgerOperation, nonce: int) -> str:
    """Content hash of an operation plus the submitting client's nonce."""
    content = f"{operation.canonical()}|nonce:{nonce}"
    return "0x" + hashlib.sha256(content.encode()).hexdigest()


@dataclass(frozen=True, slots=True)
class PendingHandle:
    """A submitted, not yet confirmed, ledger operation."""
    tx_hash: str
    operation: LedgerOperation
    submitted_at: datetime


@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Final outcome of a ledger operation.

    A REVERTED receipt is a definite negative: the operation changed nothing.
    """
    tx_hash: str
    block_number: int
    status: ReceiptStatus
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == ReceiptStatus.SUCCESS


# ============================================================================
# SUCCESS RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class CreateETFResult:
    owner_id: str
    etf_symbol: str
    quantity: Decimal
    new_etf_balance: Decimal
    deducted: Mapping[str, Decimal]

    def to_dict(self) -> Dict[str, Any]:
        return _json_safe({
            "ownerId": self.owner_id,
            "etfSymbol": self.etf_symbol,
            "quantity": self.quantity,
            "newETFBalance": self.new_etf_balance,
            "deductedStocks": dict(self.deducted),
        })


@dataclass(frozen=True, slots=True)
class BridgeResult:
    """
    Outcome of a Tokenize or Redeem.

    Attributes:
        quantity: Offchain quantity moved (already truncated to token precision)
        base_units: Onchain quantity minted or burned
        new_offchain_balance: Registry ETF balance after the operation
        new_onchain_balance: Token balance at owner_address after the operation, in base units
    """
    operation: str
    owner_id: str
    symbol: str
    asset_id: str
    quantity: Decimal
    base_units: int
    owner_address: str
    tx_hash: str
    block_number: int
    new_offchain_balance: Decimal
    new_onchain_balance: int

    def to_dict(self) -> Dict[str, Any]:
        return _json_safe({
            "operation": self.operation,
            "ownerId": self.owner_id,
            "symbol": self.symbol,
            "assetId": self.asset_id,
            "quantity": self.quantity,
            "baseUnits": str(self.base_units),
            "ownerAddress": self.owner_address,
            "transactionHash": self.tx_hash,
            "blockNumber": self.block_number,
            "newOffchainBalance": self.new_offchain_balance,
            "newOnchainBalance": str(self.new_onchain_balance),
        })


@dataclass(frozen=True, slots=True)
class SwapStep:
    """One confirmed step of an AtomicSwap."""
    step: int
    description: str
    tx_hash: str
    block_number: int


@dataclass(frozen=True, slots=True)
class SwapResult:
    party_a: str
    party_b: str
    token_sell: str
    token_buy: str
    sell_quantity: int
    buy_quantity: int
    steps: Tuple[SwapStep, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partyA": self.party_a,
            "partyB": self.party_b,
            "tokenSell": self.token_sell,
            "tokenBuy": self.token_buy,
            "sellQuantity": str(self.sell_quantity),
            "buyQuantity": str(self.buy_quantity),
            "steps": [
                {"step": s.step, "description": s.description,
                 "transactionHash": s.tx_hash, "blockNumber": s.block_number}
                for s in self.steps
            ],
        }


@dataclass(frozen=True, slots=True)
class LedgerCallResult:
    """Outcome of a single-call ledger operation (CreateWallet, Onramp)."""
    operation: str
    owner_id: str
    address: str
    tx_hash: str
    block_number: int
    asset_id: Optional[str] = None
    base_units: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "operation": self.operation,
            "ownerId": self.owner_id,
            "address": self.address,
            "transactionHash": self.tx_hash,
            "blockNumber": self.block_number,
        }
        if self.asset_id:
            data["assetId"] = self.asset_id
            data["baseUnits"] = str(self.base_units)
        return data


def holdings_from_mapping(raw: Optional[Mapping[str, Any]]) -> Holdings:
    """Parse a {symbol: quantity} document section, rejecting negative entries."""
    result: Holdings = {}
    for symbol, qty in (raw or {}).items():
        d = to_decimal(qty)
        if d < ZERO:
            raise ValueError(f"Negative quantity for {symbol}: {qty}")
        result[str(symbol)] = d
    return result


def sorted_owner_ids(owner_ids) -> List[str]:
    """Owner ids in the order locks must be taken."""
    return sorted(set(owner_ids))

