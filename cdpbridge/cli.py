"""
cli.py - Command-line interface

    cdp-bridge createETF AP ES3 100
    cdp-bridge tokenize AP ES3 50 $ADMIN_KEY
    cdp-bridge redeem AP ES3 50 $ADMIN_KEY
    cdp-bridge create-wallet THOMAS 0x3C44... $ADMIN_KEY
    cdp-bridge onramp THOMAS 10000 $ADMIN_KEY
    cdp-bridge swap THOMAS AP SGDC TES3 5000 50
    cdp-bridge balances AP
    cdp-bridge reconcile

Success prints the JSON result on stdout and exits 0. Any failure prints
"Error (<kind>): <message>" on stderr and exits 1.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .compositions import CompositionTable
from .config import BridgeConfig, load_config
from .coordinator import (
    AtomicSwapRequest, Coordinator, CreateETFRequest, CreateWalletRequest,
    OnrampRequest, OperationStatus, RedeemRequest, TokenizeRequest,
)
from .core import BridgeError, _json_safe, from_base_units
from .journal import SettlementJournal
from .ledger_client import LedgerClient, RpcLedgerClient
from .logging_config import configure_logging
from .reconciliation import reconcile
from .registry import RegistryStore
from .settlement import Settlement

logger = logging.getLogger(__name__)


class CommandFailed(Exception):
    """A coordinated operation finished FAILED or INDETERMINATE."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cdp-bridge",
        description="Move holdings between the CDP registry and the token ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("\n\n")[1],
    )
    parser.add_argument("--config", help="JSON config file (environment variables override it)")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    p = subparsers.add_parser("createETF", help="Convert constituent stocks into ETF shares")
    p.add_argument("owner_id")
    p.add_argument("etf_symbol")
    p.add_argument("quantity")

    for name, help_text in (("tokenize", "Move ETF shares onchain"),
                            ("redeem", "Move tokens back to ETF shares")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("owner_id")
        p.add_argument("symbol")
        p.add_argument("quantity")
        p.add_argument("signing_key")

    p = subparsers.add_parser("create-wallet", help="Bind an owner to a ledger address")
    p.add_argument("owner_id")
    p.add_argument("address")
    p.add_argument("signing_key")

    p = subparsers.add_parser("onramp", help="Mint stablecoin to an owner's wallet")
    p.add_argument("owner_id")
    p.add_argument("quantity")
    p.add_argument("signing_key")

    p = subparsers.add_parser("swap", help="Exchange two tokens between two owners")
    p.add_argument("party_a")
    p.add_argument("party_b")
    p.add_argument("token_sell")
    p.add_argument("token_buy")
    p.add_argument("sell_quantity")
    p.add_argument("buy_quantity")

    p = subparsers.add_parser("balances", help="Show an owner's offchain and onchain holdings")
    p.add_argument("owner_id")

    subparsers.add_parser("reconcile", help="Report offchain/onchain discrepancies")
    return parser


def _request(args: argparse.Namespace):
    cmd = args.command
    if cmd == "createETF":
        return CreateETFRequest(args.owner_id, args.etf_symbol, args.quantity)
    if cmd == "tokenize":
        return TokenizeRequest(args.owner_id, args.symbol, args.quantity, args.signing_key)
    if cmd == "redeem":
        return RedeemRequest(args.owner_id, args.symbol, args.quantity, args.signing_key)
    if cmd == "create-wallet":
        return CreateWalletRequest(args.owner_id, args.address, args.signing_key)
    if cmd == "onramp":
        return OnrampRequest(args.owner_id, args.quantity, args.signing_key)
    if cmd == "swap":
        return AtomicSwapRequest(args.party_a, args.party_b, args.token_sell, args.token_buy,
                                 args.sell_quantity, args.buy_quantity)
    return None


async def _balances(settlement: Settlement, owner_id: str) -> Dict[str, Any]:
    config = settlement.config
    owner_id = config.resolve_owner(owner_id)
    account = settlement.registry.get_account(owner_id)
    address = await settlement.client.resolve_address(owner_id)
    onchain = {}
    if address:
        for asset_id in sorted(set(config.tokens.values()) | {config.stablecoin}):
            units = await settlement.client.get_balance(asset_id, address)
            onchain[asset_id] = from_base_units(units, config.token_decimals)
    return _json_safe({
        "ownerId": owner_id,
        "stocks": dict(account.stocks),
        "etfs": dict(account.etfs),
        "address": address,
        "onchain": onchain,
    })


async def run(args: argparse.Namespace, settlement: Settlement) -> Dict[str, Any]:
    """
    Execute one parsed command.

    Raises:
        BridgeError: For a failed read (balances, reconcile)
        CommandFailed: For any failed or indeterminate operation
    """
    if args.command == "balances":
        return await _balances(settlement, args.owner_id)
    if args.command == "reconcile":
        report = await reconcile(settlement.registry, settlement.client, settlement.journal,
                                 settlement.config.tokens, settlement.config.token_decimals)
        return report.to_dict()

    result = await Coordinator(settlement).execute(_request(args))
    if result.status != OperationStatus.SUCCEEDED:
        raise CommandFailed(result.error_kind or result.status.value, result.error_message or "")
    return result.value.to_dict()


def build_settlement(config: BridgeConfig, client: Optional[LedgerClient] = None) -> Settlement:
    registry = RegistryStore.load(config.registry_path)
    compositions = CompositionTable.load(config.compositions_path or config.registry_path)
    journal = SettlementJournal(config.journal_path)
    if client is None:
        client = RpcLedgerClient(config.rpc_url, poll_interval=config.poll_interval)
    return Settlement(registry, compositions, client, config, journal)


def main(argv: Optional[List[str]] = None, client: Optional[LedgerClient] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        config = load_config(args.config)
        settlement = build_settlement(config, client)
    except (OSError, ValueError) as e:
        print(f"Error (Configuration): {e}", file=sys.stderr)
        return 1

    async def _main() -> Dict[str, Any]:
        try:
            return await run(args, settlement)
        finally:
            if isinstance(settlement.client, RpcLedgerClient):
                await settlement.client.aclose()

    try:
        output = asyncio.run(_main())
    except (BridgeError, CommandFailed) as e:
        print(f"Error ({e.kind}): {e}", file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
