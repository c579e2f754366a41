"""
compositions.py - ETF Composition Table

Static mapping from ETF symbol to its constituents and per-share ratios,
loaded once at start-up and read-only afterwards.

Document format (the "etf_compositions" section of the registry document,
or a standalone document with the same shape):

    {"ES3": {"constituents": {"A": 5, "B": 2}}}
"""

from __future__ import annotations
import json
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Union

from .core import Composition, UnknownETF, to_decimal

COMPOSITIONS_SECTION = "etf_compositions"


class CompositionTable:
    """Read-only ETF symbol -> Composition lookup."""

    def __init__(self, compositions: Iterable[Composition] = ()):
        table = {}
        for comp in compositions:
            if comp.etf_symbol in table:
                raise ValueError(f"Duplicate composition for {comp.etf_symbol}")
            table[comp.etf_symbol] = comp
        self._table: Mapping[str, Composition] = MappingProxyType(table)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> CompositionTable:
        """
        Build from a composition document.

        Accepts either the bare {etf: {"constituents": {...}}} mapping or a full
        registry document containing an "etf_compositions" section.
        """
        section = document.get(COMPOSITIONS_SECTION, document)
        compositions = []
        for etf_symbol, entry in section.items():
            if not isinstance(entry, Mapping) or "constituents" not in entry:
                raise ValueError(f"Composition {etf_symbol} has no constituents section")
            constituents = tuple(
                (str(symbol), to_decimal(ratio))
                for symbol, ratio in entry["constituents"].items()
            )
            compositions.append(Composition(str(etf_symbol), constituents))
        return cls(compositions)

    @classmethod
    def load(cls, path: Union[str, Path]) -> CompositionTable:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f, parse_float=Decimal)
        return cls.from_document(document)

    def get_composition(self, etf_symbol: str) -> Composition:
        """
        Raises:
            UnknownETF: If no composition is configured for etf_symbol
        """
        comp = self._table.get(etf_symbol)
        if comp is None:
            raise UnknownETF(f"ETF {etf_symbol} composition not found", etf_symbol=etf_symbol)
        return comp

    def is_etf(self, symbol: str) -> bool:
        return symbol in self._table

    def symbols(self) -> List[str]:
        return sorted(self._table)

    def __len__(self) -> int:
        return len(self._table)
