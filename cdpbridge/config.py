"""
config.py - Bridge configuration

BridgeConfig is a frozen pydantic model. load_config() reads an optional JSON
file and then applies environment overrides, so the ledger endpoint and data
paths can be supplied without a config file:

    BRIDGE_RPC_URL (falls back to RPC_URL)
    BRIDGE_REGISTRY_PATH
    BRIDGE_JOURNAL_PATH
    BRIDGE_CONFIRMATION_TIMEOUT
"""

from __future__ import annotations
import json
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .core import DEFAULT_CONFIRMATION_TIMEOUT, TOKEN_DECIMALS

logger = logging.getLogger(__name__)


class BridgeConfig(BaseModel):
    """
    Settings shared by the CLI, the Coordinator and Settlement.

    Attributes:
        rpc_url: Ledger gateway endpoint. None means the ledger is unavailable.
        registry_path: Registry document
        compositions_path: Composition document. None reads the
                           "etf_compositions" section of the registry document.
        journal_path: Settlement journal (JSON lines). None keeps it in memory.
        confirmation_timeout: Seconds to await each ledger confirmation
        poll_interval: Seconds between receipt polls (RPC client)
        token_decimals: Fractional digits of the ledger's fixed-point quantities
        tokens: Tokenizable ETF symbol -> onchain asset id
        stablecoin: Asset id minted by Onramp and used to price swaps
        prices: Asset id -> price in stablecoin per whole token
        owner_aliases: Alternative identifiers resolved to owner ids
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    rpc_url: Optional[str] = None
    registry_path: Path = Field(default=Path("data/cdp-registry.json"))
    compositions_path: Optional[Path] = None
    journal_path: Optional[Path] = None
    confirmation_timeout: float = Field(default=DEFAULT_CONFIRMATION_TIMEOUT, gt=0)
    poll_interval: float = Field(default=0.5, gt=0)
    token_decimals: int = Field(default=TOKEN_DECIMALS, ge=0, le=36)
    tokens: Dict[str, str] = Field(default_factory=lambda: {"ES3": "TES3"})
    stablecoin: str = "SGDC"
    prices: Dict[str, Decimal] = Field(default_factory=lambda: {"TES3": Decimal("100")})
    owner_aliases: Dict[str, str] = Field(default_factory=dict)

    @field_validator("rpc_url")
    @classmethod
    def blank_url_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("prices")
    @classmethod
    def prices_positive(cls, v):
        for asset_id, price in v.items():
            if not price.is_finite() or price <= 0:
                raise ValueError(f"Price of {asset_id} must be positive, got {price}")
        return v

    @model_validator(mode="after")
    def stablecoin_not_tokenized(self):
        if self.stablecoin in self.tokens.values():
            raise ValueError(f"Stablecoin {self.stablecoin} cannot also be a tokenized ETF asset")
        return self

    def asset_for(self, symbol: str) -> Optional[str]:
        """Onchain asset id for a tokenizable ETF symbol, or None."""
        return self.tokens.get(symbol)

    def resolve_owner(self, identifier: str) -> str:
        return self.owner_aliases.get(identifier, identifier)


_ENV_OVERRIDES = (
    ("BRIDGE_REGISTRY_PATH", "registry_path"),
    ("BRIDGE_JOURNAL_PATH", "journal_path"),
    ("BRIDGE_CONFIRMATION_TIMEOUT", "confirmation_timeout"),
)


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """
    Build a BridgeConfig from an optional JSON file plus environment overrides.

    Raises:
        ValueError: If the file is unreadable or a value fails validation
    """
    env = os.environ if env is None else env
    data: Dict[str, object] = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Cannot read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Config {path} must be a JSON object")

    rpc_url = env.get("BRIDGE_RPC_URL") or env.get("RPC_URL")
    if rpc_url:
        data["rpc_url"] = rpc_url
    for var, key in _ENV_OVERRIDES:
        if env.get(var):
            data[key] = env[var]

    try:
        config = BridgeConfig(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid bridge configuration: {e}") from e
    logger.debug("Loaded config: registry=%s rpc=%s", config.registry_path,
                 "set" if config.rpc_url else "unset")
    return config
