"""
coordinator.py - Request entry point with per-owner serialization

Callers (CLI, API, UI) hand the Coordinator a request object. The Coordinator
resolves owner aliases, takes an asyncio.Lock for every owner the request
touches (always in sorted order, so overlapping swaps cannot deadlock), runs
the one matching Settlement operation to completion and returns an
OperationResult. Two requests sharing an owner never interleave; requests on
disjoint owners run concurrently.

Taxonomy errors become FAILED or INDETERMINATE results. Anything else is a
bug and propagates.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Optional, Tuple

from .core import (
    BridgeError, Indeterminate, PartialSwapFailure,
    OP_ATOMIC_SWAP, OP_CREATE_ETF, OP_CREATE_WALLET, OP_ONRAMP, OP_REDEEM, OP_TOKENIZE,
    sorted_owner_ids,
)
from .settlement import Settlement

logger = logging.getLogger(__name__)

OP_BUY_ASSET = "BuyAsset"
OP_SELL_ASSET = "SellAsset"


def _request_id() -> str:
    return uuid.uuid4().hex[:12]


# ============================================================================
# REQUESTS
# ============================================================================

@dataclass(frozen=True)
class CreateETFRequest:
    owner_id: str
    etf_symbol: str
    quantity: Any
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_CREATE_ETF
    owner_fields: ClassVar[Tuple[str, ...]] = ("owner_id",)


@dataclass(frozen=True)
class TokenizeRequest:
    owner_id: str
    symbol: str
    quantity: Any
    acting_identity: str
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_TOKENIZE
    owner_fields: ClassVar[Tuple[str, ...]] = ("owner_id",)


@dataclass(frozen=True)
class RedeemRequest:
    owner_id: str
    symbol: str
    quantity: Any
    acting_identity: str
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_REDEEM
    owner_fields: ClassVar[Tuple[str, ...]] = ("owner_id",)


@dataclass(frozen=True)
class AtomicSwapRequest:
    party_a: str
    party_b: str
    token_sell: str
    token_buy: str
    sell_quantity: Any
    buy_quantity: Any
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_ATOMIC_SWAP
    owner_fields: ClassVar[Tuple[str, ...]] = ("party_a", "party_b")


@dataclass(frozen=True)
class BuyAssetRequest:
    buyer: str
    seller: str
    asset_id: str
    quantity: Any
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_BUY_ASSET
    owner_fields: ClassVar[Tuple[str, ...]] = ("buyer", "seller")


@dataclass(frozen=True)
class SellAssetRequest:
    seller: str
    buyer: str
    asset_id: str
    quantity: Any
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_SELL_ASSET
    owner_fields: ClassVar[Tuple[str, ...]] = ("seller", "buyer")


@dataclass(frozen=True)
class CreateWalletRequest:
    owner_id: str
    address: str
    acting_identity: str
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_CREATE_WALLET
    owner_fields: ClassVar[Tuple[str, ...]] = ("owner_id",)


@dataclass(frozen=True)
class OnrampRequest:
    owner_id: str
    quantity: Any
    acting_identity: str
    request_id: str = field(default_factory=_request_id)

    operation: ClassVar[str] = OP_ONRAMP
    owner_fields: ClassVar[Tuple[str, ...]] = ("owner_id",)


def request_owners(request) -> List[str]:
    """Owner ids a request touches, in lock order."""
    return sorted_owner_ids(getattr(request, f) for f in request.owner_fields)


# ============================================================================
# RESULTS
# ============================================================================

class OperationStatus(Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    INDETERMINATE = "INDETERMINATE"


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of one request.

    Attributes:
        value: The operation's success record (None unless SUCCEEDED)
        error_kind: Taxonomy kind of the failure (None if SUCCEEDED)
        details: Structured failure context (symbol, required, step, ...)
    """
    request_id: str
    operation: str
    status: OperationStatus
    value: Any = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == OperationStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "requestId": self.request_id,
            "operation": self.operation,
            "status": self.status.value,
        }
        if self.value is not None:
            data["result"] = self.value.to_dict()
        if self.error_kind:
            data["error"] = {"kind": self.error_kind, "message": self.error_message,
                             "details": self.details}
        return data


Listener = Callable[[OperationResult], Any]


# ============================================================================
# COORDINATOR
# ============================================================================

class Coordinator:
    """
    Serializes settlement requests per owner.

    Example:
        coordinator = Coordinator(settlement)
        result = await coordinator.execute(CreateETFRequest("AP", "ES3", 100))
        result.status  # OperationStatus.SUCCEEDED
    """

    def __init__(self, settlement: Settlement):
        self.settlement = settlement
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a callback for successful operations. Returns an unsubscribe function.

        Callbacks run after the owner locks are released. A callback that
        raises is logged and does not affect the result.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def lock_for(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = self._locks[owner_id] = asyncio.Lock()
        return lock

    def _claim(self, owners: Iterable[str]) -> None:
        for owner_id in owners:
            self._users[owner_id] = self._users.get(owner_id, 0) + 1

    def _release(self, owners: Iterable[str]) -> None:
        """Forget the locks of owners no request is holding or waiting on."""
        for owner_id in owners:
            self._users[owner_id] -= 1
            if self._users[owner_id] == 0:
                del self._users[owner_id]
                lock = self._locks.get(owner_id)
                if lock is not None and not lock.locked():
                    del self._locks[owner_id]

    async def execute(self, request) -> OperationResult:
        request = self._resolve_aliases(request)
        owners = request_owners(request)

        self._claim(owners)
        try:
            async with AsyncExitStack() as stack:
                for owner_id in owners:
                    await stack.enter_async_context(self.lock_for(owner_id))
                result = await self._run(request)
        finally:
            self._release(owners)

        if result.succeeded:
            await self._notify(result)
        return result

    async def execute_many(self, requests: Iterable) -> List[OperationResult]:
        """Run requests concurrently; results are in request order."""
        return list(await asyncio.gather(*(self.execute(r) for r in requests)))

    async def _run(self, request) -> OperationResult:
        try:
            value = await self._dispatch(request)
        except PartialSwapFailure as e:
            status = (OperationStatus.INDETERMINATE if e.cause == Indeterminate.kind
                      else OperationStatus.FAILED)
            return self._failure(request, status, e)
        except Indeterminate as e:
            return self._failure(request, OperationStatus.INDETERMINATE, e)
        except BridgeError as e:
            return self._failure(request, OperationStatus.FAILED, e)
        return OperationResult(request.request_id, request.operation, OperationStatus.SUCCEEDED, value)

    async def _dispatch(self, request):
        s = self.settlement
        if isinstance(request, CreateETFRequest):
            return s.create_etf(request.owner_id, request.etf_symbol, request.quantity)
        if isinstance(request, TokenizeRequest):
            return await s.tokenize(request.owner_id, request.symbol, request.quantity,
                                    request.acting_identity)
        if isinstance(request, RedeemRequest):
            return await s.redeem(request.owner_id, request.symbol, request.quantity,
                                  request.acting_identity)
        if isinstance(request, AtomicSwapRequest):
            return await s.atomic_swap(request.party_a, request.party_b, request.token_sell,
                                       request.token_buy, request.sell_quantity, request.buy_quantity)
        if isinstance(request, BuyAssetRequest):
            return await s.buy_asset(request.buyer, request.seller, request.asset_id, request.quantity)
        if isinstance(request, SellAssetRequest):
            return await s.sell_asset(request.seller, request.buyer, request.asset_id, request.quantity)
        if isinstance(request, CreateWalletRequest):
            return await s.create_wallet(request.owner_id, request.address, request.acting_identity)
        if isinstance(request, OnrampRequest):
            return await s.onramp(request.owner_id, request.quantity, request.acting_identity)
        raise TypeError(f"Unsupported request type {type(request).__name__}")

    def _resolve_aliases(self, request):
        config = self.settlement.config
        resolved = {f: config.resolve_owner(getattr(request, f)) for f in request.owner_fields}
        return replace(request, **resolved)

    @staticmethod
    def _failure(request, status: OperationStatus, error: BridgeError) -> OperationResult:
        return OperationResult(
            request.request_id, request.operation, status,
            error_kind=error.kind, error_message=str(error), details=error.details(),
        )

    async def _notify(self, result: OperationResult) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Listener %r failed for %s %s",
                                 listener, result.operation, result.request_id)
