"""
ledger_client.py - Ledger Client boundary

The settlement layer reaches the onchain ledger only through the LedgerClient
protocol: submit a state-changing operation, await its confirmation, and read
confirmed balances, allowances and owner bindings.

Two implementations are provided:

    InMemoryLedgerClient  drives a TokenLedger in-process; each submitted
                          operation is confirmed by a background task after
                          block_time seconds
    RpcLedgerClient       JSON-RPC 2.0 over HTTP (httpx) against a ledger gateway

Timeout semantics are shared: when await_confirmation gives up, the operation
is NOT cancelled and may still confirm. The caller receives Indeterminate,
never a negative result.
"""

from __future__ import annotations
import asyncio
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from .chain import TokenLedger
from .core import (
    LedgerOperation, PendingHandle, Receipt, ReceiptStatus,
    Indeterminate, InvalidAddress, LedgerUnavailable, OperationReverted,
    UnsupportedSymbol,
    ZERO_ADDRESS, compute_tx_hash, fingerprint,
)

logger = logging.getLogger(__name__)


# ============================================================================
# PROTOCOL
# ============================================================================

@runtime_checkable
class LedgerClient(Protocol):
    """
    Interface to the onchain ledger.

    Reads return confirmed state immediately; they never wait for pending
    operations. Quantities are integer base units.
    """

    async def submit(self, operation: LedgerOperation) -> PendingHandle:
        """Issue a state-changing call without waiting for finality."""
        ...

    async def await_confirmation(self, handle: PendingHandle, timeout: float) -> Receipt:
        """
        Suspend until the operation is final or timeout seconds elapse.

        Raises:
            Indeterminate: If the operation did not confirm in time
        """
        ...

    async def get_balance(self, token_id: str, address: str) -> int:
        """
        Confirmed balance of token_id at address (0 for unknown holders).

        Raises:
            InvalidAddress: If address belongs to a contract
        """
        ...

    async def get_allowance(self, token_id: str, owner: str, spender: str) -> int:
        ...

    async def resolve_address(self, owner_id: str) -> Optional[str]:
        """Address bound to owner_id, or None if unbound."""
        ...


# ============================================================================
# IN-MEMORY CLIENT
# ============================================================================

class InMemoryLedgerClient:
    """
    LedgerClient over an in-process TokenLedger.

    Attributes:
        chain: The ledger operations are applied to
        block_time: Seconds between submission and confirmation
        submitted: Every handle issued, in submission order
    """

    def __init__(self, chain: TokenLedger, block_time: float = 0.0):
        self.chain = chain
        self.block_time = block_time
        self.submitted: List[PendingHandle] = []
        self._nonce = itertools.count(1)
        self._pending: Dict[str, asyncio.Task] = {}

    async def submit(self, operation: LedgerOperation) -> PendingHandle:
        tx_hash = compute_tx_hash(operation, next(self._nonce))
        handle = PendingHandle(tx_hash, operation, datetime.now(timezone.utc))
        task = asyncio.get_running_loop().create_task(self._confirm(handle))
        self._pending[tx_hash] = task
        self.submitted.append(handle)
        logger.debug("Submitted %s as %s", operation, tx_hash[:10])
        return handle

    async def await_confirmation(self, handle: PendingHandle, timeout: float) -> Receipt:
        task = self._pending.get(handle.tx_hash)
        if task is None:
            raise ValueError(f"Unknown transaction {handle.tx_hash}")
        try:
            # shield: giving up on the wait must not cancel the confirmation
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            raise Indeterminate(
                f"{handle.operation!r} not confirmed within {timeout}s",
                tx_hash=handle.tx_hash, timeout=timeout,
            ) from None
        finally:
            # forget the task once it has landed, whether or not the wait saw it
            if task.done():
                self._pending.pop(handle.tx_hash, None)
            else:
                task.add_done_callback(lambda _: self._pending.pop(handle.tx_hash, None))

    async def get_balance(self, token_id: str, address: str) -> int:
        return self.chain.balance_of(address, token_id)

    async def get_allowance(self, token_id: str, owner: str, spender: str) -> int:
        return self.chain.allowance(owner, spender, token_id)

    async def resolve_address(self, owner_id: str) -> Optional[str]:
        return self.chain.resolve_address(owner_id)

    async def settle_pending(self) -> None:
        """Wait until every submitted operation has confirmed."""
        tasks = [t for t in self._pending.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks)
        for tx_hash in [h for h, t in self._pending.items() if t.done()]:
            del self._pending[tx_hash]

    def confirmation_delay(self, operation: LedgerOperation) -> float:
        return self.block_time

    def execute(self, handle: PendingHandle) -> Receipt:
        return self.chain.apply(handle.operation, handle.tx_hash)

    async def _confirm(self, handle: PendingHandle) -> Receipt:
        delay = self.confirmation_delay(handle.operation)
        if delay > 0:
            await asyncio.sleep(delay)
        return self.execute(handle)


# ============================================================================
# JSON-RPC CLIENT
# ============================================================================

# Gateway error codes with a taxonomy meaning.
RPC_EXECUTION_REVERTED = -32000
RPC_INVALID_ADDRESS = -32010
RPC_UNKNOWN_ASSET = -32011

# Failures raised before the request was written to the wire.
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.UnsupportedProtocol)


class RpcLedgerClient:
    """
    LedgerClient speaking JSON-RPC 2.0 to a ledger gateway.

    Methods called on the gateway:
        ledger_submit(operation)            -> {"txHash": "0x..."}
        ledger_getReceipt(txHash)           -> null | {"transactionHash", "blockNumber", "status", "reason"}
        ledger_balanceOf(address, assetId)  -> "<base units>"
        ledger_allowance(owner, spender, assetId) -> "<base units>"
        ledger_resolveAddress(ownerId)      -> "0x..." | null

    A missing endpoint, or a request that never left this process (connect
    failure, connect or pool timeout), raises LedgerUnavailable. Once a
    ledger_submit request has been sent, any failure to read a usable reply
    raises Indeterminate: the gateway may have accepted the operation. The
    same holds while awaiting a confirmation.
    """

    def __init__(
        self,
        url: Optional[str],
        poll_interval: float = 0.5,
        request_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> RpcLedgerClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport, timeout=self.request_timeout
            )
        return self._client

    async def _call(self, method: str, params: List[Any], mutating: bool = False) -> Any:
        """
        POST one JSON-RPC request and return its result.

        mutating marks a request whose delivery may change ledger state; a
        failure after it was sent raises Indeterminate instead of LedgerUnavailable.
        """
        if not self.url:
            raise LedgerUnavailable("No ledger RPC endpoint configured")
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._http().post(self.url, json=payload)
        except UNSENT_ERRORS as e:
            raise LedgerUnavailable(
                f"Ledger RPC {self.url} unreachable: {e}", url=self.url, method=method
            ) from e
        except httpx.HTTPError as e:
            raise self._no_reply(payload, mutating, e) from e
        try:
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._no_reply(payload, mutating, e) from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            code = error.get("code")
            message = error.get("message", "unknown error")
            if code == RPC_INVALID_ADDRESS:
                raise InvalidAddress(message, method=method)
            if code == RPC_UNKNOWN_ASSET:
                raise UnsupportedSymbol(message, method=method)
            if code == RPC_EXECUTION_REVERTED:
                raise OperationReverted(message, method=method)
            raise LedgerUnavailable(f"Ledger RPC error {code}: {message}", method=method)
        return body.get("result") if isinstance(body, dict) else None

    def _no_reply(self, payload: Dict[str, Any], mutating: bool, error: Exception) -> Exception:
        method = payload["method"]
        if not mutating:
            return LedgerUnavailable(
                f"Ledger RPC {self.url} failed on {method}: {error}", url=self.url, method=method
            )
        logger.error("Ledger RPC %s sent to %s without a usable reply: %s", method, self.url, error)
        return Indeterminate(
            f"Ledger RPC {method} was sent to {self.url} but no usable reply arrived: {error}",
            url=self.url, method=method, request=_redacted(payload),
        )

    async def submit(self, operation: LedgerOperation) -> PendingHandle:
        result = await self._call("ledger_submit", [operation.to_dict()], mutating=True)
        tx_hash = result.get("txHash") if isinstance(result, dict) else result
        if not tx_hash:
            raise Indeterminate(
                f"Ledger RPC accepted {operation!r} without a transaction hash",
                url=self.url, method="ledger_submit", operation=_redacted_operation(operation.to_dict()),
            )
        logger.debug("Submitted %s as %s", operation, tx_hash[:10])
        return PendingHandle(tx_hash, operation, datetime.now(timezone.utc))

    async def await_confirmation(self, handle: PendingHandle, timeout: float) -> Receipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                raw = await self._call("ledger_getReceipt", [handle.tx_hash])
            except LedgerUnavailable as e:
                raise Indeterminate(
                    f"Lost contact with ledger while awaiting {handle.tx_hash}: {e}",
                    tx_hash=handle.tx_hash,
                ) from e
            if raw:
                return _parse_receipt(handle.tx_hash, raw)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise Indeterminate(
                    f"{handle.operation!r} not confirmed within {timeout}s",
                    tx_hash=handle.tx_hash, timeout=timeout,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def get_balance(self, token_id: str, address: str) -> int:
        return _to_int(await self._call("ledger_balanceOf", [address, token_id]) or 0)

    async def get_allowance(self, token_id: str, owner: str, spender: str) -> int:
        return _to_int(await self._call("ledger_allowance", [owner, spender, token_id]) or 0)

    async def resolve_address(self, owner_id: str) -> Optional[str]:
        address = await self._call("ledger_resolveAddress", [owner_id])
        if not address or address.lower() == ZERO_ADDRESS:
            return None
        return address


def _parse_receipt(tx_hash: str, raw: Dict[str, Any]) -> Receipt:
    status = raw.get("status")
    succeeded = status in (1, "0x1", "success", True)
    return Receipt(
        tx_hash=raw.get("transactionHash", tx_hash),
        block_number=_to_int(raw.get("blockNumber", 0)),
        status=ReceiptStatus.SUCCESS if succeeded else ReceiptStatus.REVERTED,
        reason=raw.get("reason", "") or "",
    )


def _redacted_operation(operation: Dict[str, Any]) -> Dict[str, Any]:
    """Wire operation with the signing identity replaced by its fingerprint."""
    data = {k: v for k, v in operation.items() if k != "signer"}
    if operation.get("signer"):
        data["signerFingerprint"] = fingerprint(operation["signer"])
    return data


def _redacted(payload: Dict[str, Any]) -> Dict[str, Any]:
    params = [_redacted_operation(p) if isinstance(p, dict) else p for p in payload["params"]]
    return {**payload, "params": params}


def _to_int(value: Any) -> int:
    """Accept JSON numbers as well as decimal or 0x-prefixed hex strings."""
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    return int(value)
