"""
reconciliation.py - Offchain / onchain reconciliation report

Read-only. Lists journal entries that did not reach a clean end (ledger
confirmed without a registry write, outcome unknown, partially executed
swaps) and, per owner and tokenized symbol, the registry ETF balance next to
the token balance at the owner's bound address.

Nothing here repairs anything: the report is the input to a manual or
scripted fix.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .core import TOKEN_DECIMALS, _json_safe, from_base_units
from .journal import JournalEntry, SettlementJournal
from .ledger_client import LedgerClient
from .registry import RegistryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HoldingRow:
    """
    One owner's position in one tokenized symbol.

    Attributes:
        offchain: ETF shares held in the registry
        onchain: Tokens at the bound address (whole-token decimal), None if unbound
    """
    owner_id: str
    symbol: str
    asset_id: str
    address: Optional[str]
    offchain: Decimal
    onchain: Optional[Decimal]

    @property
    def total(self) -> Decimal:
        return self.offchain + (self.onchain or Decimal(0))


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    attention: Tuple[JournalEntry, ...]
    holdings: Tuple[HoldingRow, ...]

    @property
    def clean(self) -> bool:
        return not self.attention

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clean": self.clean,
            "attention": [
                {
                    "entryId": e.entry_id,
                    "operation": e.operation,
                    "ownerId": e.owner_id,
                    "state": e.state.value,
                    **_json_safe(dict(e.fields)),
                }
                for e in self.attention
            ],
            "holdings": [
                _json_safe({
                    "ownerId": r.owner_id,
                    "symbol": r.symbol,
                    "assetId": r.asset_id,
                    "address": r.address,
                    "offchain": r.offchain,
                    "onchain": r.onchain,
                })
                for r in self.holdings
            ],
        }


def needs_attention(entry: JournalEntry) -> bool:
    """Open entries, plus swaps that stopped after some steps confirmed."""
    return entry.is_open or bool(entry.fields.get("partial"))


async def reconcile(
    registry: RegistryStore,
    client: LedgerClient,
    journal: SettlementJournal,
    tokens: Mapping[str, str],
    decimals: int = TOKEN_DECIMALS,
) -> ReconciliationReport:
    """
    Build a reconciliation report.

    Args:
        tokens: Tokenized ETF symbol -> onchain asset id
    """
    attention = tuple(e for e in journal.entries() if needs_attention(e))

    rows: List[HoldingRow] = []
    for owner_id in registry.list_owners():
        account = registry.get_account(owner_id)
        address = await client.resolve_address(owner_id)
        for symbol in sorted(tokens):
            asset_id = tokens[symbol]
            onchain = None
            if address:
                units = await client.get_balance(asset_id, address)
                onchain = from_base_units(units, decimals)
            rows.append(HoldingRow(owner_id, symbol, asset_id, address, account.etf(symbol), onchain))

    if attention:
        logger.warning("%d journal entries need attention", len(attention))
    return ReconciliationReport(attention, tuple(rows))
