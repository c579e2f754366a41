"""
registry.py - Offchain CDP Registry Store

The RegistryStore is the only component that holds offchain holdings. It owns
the registry document and exposes a narrow mutation contract:

    get_account / ensure_account   read (or implicitly create) an owner
    adjust_stock / adjust_etf      apply one signed delta
    apply                          apply several deltas to one owner at once

Every mutation is validated in full before anything changes, and the complete
document is durably written (temp file, fsync, atomic rename) before the
in-memory copy is replaced. A failed write leaves both the file and the
in-memory state exactly as they were.

Document format (data/cdp-registry.json):

    {
      "accounts": {
        "AP": {"stocks": {"A": "1000"}, "etfs": {"ES3": "0"}, "walletAddress": "0x..."}
      },
      "etf_compositions": {"ES3": {"constituents": {"A": 5, "B": 2}}}
    }

Quantities are written as canonical decimal strings. Numbers are accepted on load.
Sections other than "accounts" are preserved verbatim.
"""

from __future__ import annotations
import copy
import json
import logging
import os
import tempfile
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .core import (
    Account, Holdings, ZERO,
    InsufficientBalance, NotFound,
    holdings_from_mapping, normalize_decimal, to_decimal,
)

logger = logging.getLogger(__name__)

STOCKS = "stocks"
ETFS = "etfs"


class RegistryStore:
    """
    Durable owner -> holdings document with non-negativity enforcement.

    Thread Safety:
        Individual calls are serialized by an internal lock, so the document
        is never observed half-written. Read-then-write sequences spanning
        several calls must be serialized by the caller (the Coordinator's
        per-account locks).

    Example:
        registry = RegistryStore.load("data/cdp-registry.json")
        registry.adjust_stock("AP", "A", Decimal("-500"))
        registry.get_account("AP").stock("A")
    """

    def __init__(
        self,
        accounts: Optional[Mapping[str, Mapping[str, Any]]] = None,
        path: Optional[Union[str, Path]] = None,
        extra_sections: Optional[Dict[str, Any]] = None,
    ):
        """
        Create a registry.

        Args:
            accounts: Initial owner documents ({owner: {"stocks": ..., "etfs": ...}})
            path: File to persist to. None keeps the registry in memory only.
            extra_sections: Other top-level document sections to preserve on write
        """
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._extra: Dict[str, Any] = dict(extra_sections or {})
        self._accounts: Dict[str, Dict[str, Any]] = {}
        for owner_id, raw in (accounts or {}).items():
            self._accounts[owner_id] = _parse_account(owner_id, raw)

    @classmethod
    def load(cls, path: Union[str, Path]) -> RegistryStore:
        """
        Load a registry document from disk.

        A missing file yields an empty registry that will be created on first write.
        """
        path = Path(path)
        if not path.exists():
            logger.info("Registry %s does not exist yet, starting empty", path)
            return cls(path=path)
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f, parse_float=Decimal)
        if not isinstance(document, dict):
            raise ValueError(f"Registry document {path} must be a JSON object")
        accounts = document.get("accounts", {})
        extra = {k: v for k, v in document.items() if k != "accounts"}
        registry = cls(accounts=accounts, path=path, extra_sections=extra)
        logger.info("Loaded registry %s with %d accounts", path, len(registry._accounts))
        return registry

    # ========================================================================
    # READS
    # ========================================================================

    def has_account(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._accounts

    def list_owners(self) -> List[str]:
        with self._lock:
            return sorted(self._accounts)

    def get_account(self, owner_id: str) -> Account:
        """
        Return a snapshot of an owner's holdings.

        Raises:
            NotFound: If the owner has never been referenced
        """
        with self._lock:
            raw = self._accounts.get(owner_id)
            if raw is None:
                raise NotFound(f"Owner {owner_id} not found in CDP registry", owner_id=owner_id)
            return _snapshot(owner_id, raw)

    def document(self) -> Dict[str, Any]:
        """The full registry document as it would be written to disk."""
        with self._lock:
            return self._render(self._accounts)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def ensure_account(self, owner_id: str) -> Account:
        """Return the owner's account, creating an empty one on first reference."""
        with self._lock:
            if owner_id not in self._accounts:
                if not owner_id or not owner_id.strip():
                    raise ValueError("owner_id cannot be empty")
                updated = dict(self._accounts)
                updated[owner_id] = {STOCKS: {}, ETFS: {}, "walletAddress": None}
                self._commit(updated)
                logger.info("Created registry account %s", owner_id)
            return _snapshot(owner_id, self._accounts[owner_id])

    def adjust_stock(self, owner_id: str, symbol: str, delta: Decimal) -> Decimal:
        """
        Apply a signed delta to a stock holding and persist.

        Returns:
            The new quantity

        Raises:
            NotFound: If the owner does not exist
            InsufficientBalance: If the result would be negative
        """
        account = self.apply(owner_id, stock_deltas={symbol: delta})
        return account.stock(symbol)

    def adjust_etf(self, owner_id: str, symbol: str, delta: Decimal) -> Decimal:
        """Same contract as adjust_stock, for ETF share holdings."""
        account = self.apply(owner_id, etf_deltas={symbol: delta})
        return account.etf(symbol)

    def apply(
        self,
        owner_id: str,
        stock_deltas: Optional[Mapping[str, Decimal]] = None,
        etf_deltas: Optional[Mapping[str, Decimal]] = None,
    ) -> Account:
        """
        Apply several signed deltas to one owner as a single all-or-nothing write.

        Every delta is checked before any is applied; the first one that would
        go negative is reported and nothing changes. Symbols absent from the
        account are created at zero before the delta is applied.

        Returns:
            Snapshot of the account after the write

        Raises:
            NotFound: If the owner does not exist
            InsufficientBalance: Naming the first holding that would go negative
        """
        with self._lock:
            current = self._accounts.get(owner_id)
            if current is None:
                raise NotFound(f"Owner {owner_id} not found in CDP registry", owner_id=owner_id)

            new_account = {
                STOCKS: dict(current[STOCKS]),
                ETFS: dict(current[ETFS]),
                "walletAddress": current.get("walletAddress"),
            }
            for section, deltas in ((STOCKS, stock_deltas), (ETFS, etf_deltas)):
                for symbol, delta in (deltas or {}).items():
                    delta = to_decimal(delta)
                    have = new_account[section].get(symbol, ZERO)
                    proposed = have + delta
                    if proposed < ZERO:
                        raise InsufficientBalance(
                            symbol, required=-delta, available=have,
                            owner_id=owner_id, holding=section,
                        )
                    new_account[section][symbol] = proposed

            updated = dict(self._accounts)
            updated[owner_id] = new_account
            self._commit(updated)
            return _snapshot(owner_id, new_account)

    def record_wallet_address(self, owner_id: str, address: str) -> Account:
        """Remember the ledger address bound to an owner (informational only)."""
        with self._lock:
            current = self._accounts.get(owner_id)
            if current is None:
                raise NotFound(f"Owner {owner_id} not found in CDP registry", owner_id=owner_id)
            new_account = {**current, "walletAddress": address}
            updated = dict(self._accounts)
            updated[owner_id] = new_account
            self._commit(updated)
            return _snapshot(owner_id, new_account)

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def _render(self, accounts: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        document: Dict[str, Any] = {}
        rendered = {}
        for owner_id in sorted(accounts):
            raw = accounts[owner_id]
            entry: Dict[str, Any] = {
                STOCKS: {s: normalize_decimal(q) for s, q in raw[STOCKS].items()},
                ETFS: {s: normalize_decimal(q) for s, q in raw[ETFS].items()},
            }
            if raw.get("walletAddress"):
                entry["walletAddress"] = raw["walletAddress"]
            rendered[owner_id] = entry
        document["accounts"] = rendered
        for key, value in self._extra.items():
            document[key] = copy.deepcopy(value)
        return document

    def _commit(self, accounts: Dict[str, Dict[str, Any]]) -> None:
        """
        Durably write accounts, then make them the live state.

        If the write raises, the live state is untouched.
        """
        if self.path is not None:
            self._write(self._render(accounts))
        self._accounts = accounts

    def _write(self, document: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(document, indent=2, default=_encode_decimal)
        tmp = tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", delete=False, dir=str(self.path.parent),
            prefix=self.path.name + ".", suffix=".tmp",
        )
        tmp_path = Path(tmp.name)
        try:
            with tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            tmp_path.replace(self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise


def _parse_account(owner_id: str, raw: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Account {owner_id} must be an object")
    return {
        STOCKS: holdings_from_mapping(raw.get(STOCKS)),
        ETFS: holdings_from_mapping(raw.get(ETFS)),
        "walletAddress": raw.get("walletAddress"),
    }


def _snapshot(owner_id: str, raw: Mapping[str, Any]) -> Account:
    stocks: Holdings = dict(raw[STOCKS])
    etfs: Holdings = dict(raw[ETFS])
    return Account(owner_id, stocks, etfs, raw.get("walletAddress"))


def _encode_decimal(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return normalize_decimal(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
