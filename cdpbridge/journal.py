"""
journal.py - Settlement Journal

Append-only record of every state transition of a bridging operation
(Tokenize, Redeem, CreateWallet, Onramp, AtomicSwap steps). A record is
flushed and fsynced before settlement moves to the next step, so after a
crash the journal shows exactly how far each operation got:

    BEGIN -> SUBMITTED -> LEDGER_CONFIRMED -> COMPLETED
                      +-> FAILED            (definite: nothing changed)
                      +-> INDETERMINATE     (outcome unknown)

Entries whose last state is not COMPLETED or FAILED are open and are what
reconciliation reports.
"""

from __future__ import annotations
import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .core import _json_safe

logger = logging.getLogger(__name__)


class JournalState(Enum):
    BEGIN = "BEGIN"
    SUBMITTED = "SUBMITTED"
    LEDGER_CONFIRMED = "LEDGER_CONFIRMED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    INDETERMINATE = "INDETERMINATE"


TERMINAL_STATES = frozenset({JournalState.COMPLETED, JournalState.FAILED})


@dataclass(frozen=True, slots=True)
class JournalEntry:
    """
    Latest view of one journaled operation.

    Attributes:
        entry_id: Identifier shared by all records of the operation
        operation: Settlement operation name (e.g., "Tokenize")
        owner_id: Primary owner the operation acts for
        state: Most recent state
        fields: Merged context from all records (symbol, quantity, txHash, ...)
        history: States in the order they were recorded
    """
    entry_id: str
    operation: str
    owner_id: str
    state: JournalState
    fields: Mapping[str, Any]
    history: Tuple[JournalState, ...]

    @property
    def is_open(self) -> bool:
        return self.state not in TERMINAL_STATES


class SettlementJournal:
    """
    Durable, append-only journal of settlement progress.

    Args:
        path: JSON-lines file to append to. None keeps records in memory only.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._records: List[Dict[str, Any]] = []
        if self.path is not None and self.path.exists():
            self._records = self._read(self.path)

    def begin(self, operation: str, owner_id: str, **fields: Any) -> str:
        """Open a new entry and return its id."""
        entry_id = uuid.uuid4().hex[:16]
        self._append({
            "entryId": entry_id,
            "operation": operation,
            "ownerId": owner_id,
            "state": JournalState.BEGIN.value,
            **fields,
        })
        return entry_id

    def record(self, entry_id: str, state: JournalState, **fields: Any) -> None:
        self._append({"entryId": entry_id, "state": state.value, **fields})

    def entries(self) -> List[JournalEntry]:
        """All entries, in the order they were begun."""
        merged: Dict[str, Dict[str, Any]] = {}
        history: Dict[str, List[JournalState]] = {}
        for rec in self._records:
            entry_id = rec.get("entryId")
            if entry_id is None:
                continue
            merged.setdefault(entry_id, {}).update(rec)
            history.setdefault(entry_id, []).append(JournalState(rec["state"]))

        result = []
        for entry_id, data in merged.items():
            fields = {
                k: v for k, v in data.items()
                if k not in ("entryId", "operation", "ownerId", "state", "ts")
            }
            result.append(JournalEntry(
                entry_id=entry_id,
                operation=data.get("operation", ""),
                owner_id=data.get("ownerId", ""),
                state=JournalState(data["state"]),
                fields=fields,
                history=tuple(history[entry_id]),
            ))
        return result

    def get(self, entry_id: str) -> Optional[JournalEntry]:
        for entry in self.entries():
            if entry.entry_id == entry_id:
                return entry
        return None

    def open_entries(self) -> List[JournalEntry]:
        return [e for e in self.entries() if e.is_open]

    def _append(self, record: Dict[str, Any]) -> None:
        record = {**_json_safe(record), "ts": datetime.now(timezone.utc).isoformat()}
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(record, ensure_ascii=False) + "\n"
            with open(self.path, "ab") as f:
                f.write(line.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
        self._records.append(record)

    @staticmethod
    def _read(path: Path) -> List[Dict[str, Any]]:
        records = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    # a torn final line after a crash is expected; anything else is not
                    logger.warning("Skipping unreadable journal line %s:%d: %s", path, lineno, e)
        return records
