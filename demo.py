#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: The CDP Tokenization Bridge Step by Step

Walks an authorized participant (AP) and an investor (THOMAS) through the
whole bridge against an in-process token ledger. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Offchain      - The registry, CreateETF, all-or-nothing rejection
  4-6:  Bridging      - Wallet binding, Tokenize, stablecoin onramp
  7-8:  Onchain       - Buying tokens with an atomic swap, Redeem
  9:    Verification  - Reconciliation and supply conservation

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

import asyncio
import sys
from dataclasses import dataclass
from decimal import Decimal

from cdpbridge import (
    BridgeConfig, BuyAssetRequest, CompositionTable, Coordinator,
    CreateETFRequest, CreateWalletRequest, InMemoryLedgerClient, OnrampRequest,
    RedeemRequest, RegistryStore, Settlement, SettlementJournal, TokenAsset,
    TokenizeRequest, TokenLedger, from_base_units, reconcile,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    admin_key: str = "demo-admin-key"
    ap_address: str = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
    thomas_address: str = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
    depository_address: str = "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"

    create_quantity: Decimal = Decimal("100")
    overdraw_quantity: Decimal = Decimal("200")
    tokenize_quantity: Decimal = Decimal("50")
    onramp_quantity: Decimal = Decimal("10000")
    buy_quantity: Decimal = Decimal("20")
    redeem_quantity: Decimal = Decimal("30")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


def show_holdings(bridge: "DemoBridge", owner_id: str):
    account = bridge.registry.get_account(owner_id)
    address = bridge.chain.resolve_address(owner_id)
    print(f"{owner_id:<8} stocks={dict(account.stocks)} etfs={dict(account.etfs)}")
    if address:
        onchain = {a: from_base_units(bridge.chain.balance_of(address, a))
                   for a in ("TES3", "SGDC")}
        print(f"{'':<8} onchain={onchain} @ {address[:10]}...")


@dataclass
class DemoBridge:
    registry: RegistryStore
    chain: TokenLedger
    settlement: Settlement
    coordinator: Coordinator


async def execute(bridge: DemoBridge, request):
    """Run a request through the coordinator and print its outcome."""
    result = await bridge.coordinator.execute(request)
    print(f">>> {type(request).__name__}: {result.status.value}")
    if not result.succeeded:
        print(f"    Error ({result.error_kind}): {result.error_message}")
    return result


# ============================================================================
# PHASE 1: OFFCHAIN (Steps 1-3)
# ============================================================================

def step_01_registry() -> DemoBridge:
    """Build the registry, composition table and in-process ledger."""
    step_header(1, "The CDP Registry",
        "See the offchain holdings the bridge starts from.")

    print("""
    The registry records who holds which stocks and ETF shares offchain.
    The composition table says ES3 is made of 5 A and 2 B per share.
    The token ledger starts with the tokenized ES3 (TES3) and the
    stablecoin (SGDC) registered and no balances.
    """)

    registry = RegistryStore({
        "AP": {"stocks": {"A": "1000", "B": "500"}, "etfs": {}},
        "THOMAS": {"stocks": {}, "etfs": {}},
    })
    compositions = CompositionTable.from_document({"ES3": {"constituents": {"A": 5, "B": 2}}})
    chain = TokenLedger("demo", minters=[CONFIG.admin_key],
                        contract_addresses=[CONFIG.depository_address])
    chain.register_asset(TokenAsset("TES3", "Tokenized ES3", "0x5FC8d32690cc91D4c39d9d3abcBD16989F875707"))
    chain.register_asset(TokenAsset("SGDC", "Singapore Dollar Coin", "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"))

    config = BridgeConfig(confirmation_timeout=5)
    settlement = Settlement(registry, compositions, InMemoryLedgerClient(chain), config,
                            SettlementJournal())
    bridge = DemoBridge(registry, chain, settlement, Coordinator(settlement))

    section_header("Initial Holdings")
    show_holdings(bridge, "AP")
    show_holdings(bridge, "THOMAS")
    return bridge


async def step_02_create_etf(bridge: DemoBridge):
    step_header(2, "CreateETF",
        "Convert constituent stocks into ETF shares in one write.")
    await execute(bridge, CreateETFRequest("AP", "ES3", CONFIG.create_quantity))

    section_header("After CreateETF")
    show_holdings(bridge, "AP")
    print("""
    500 A and 200 B were deducted and 100 ES3 credited, all at once.
    """)


async def step_03_rejected_create(bridge: DemoBridge):
    step_header(3, "All-or-Nothing Rejection",
        "A short constituent rejects the whole operation.")
    before = bridge.registry.document()
    await execute(bridge, CreateETFRequest("AP", "ES3", CONFIG.overdraw_quantity))

    section_header("Registry Unchanged")
    show_holdings(bridge, "AP")
    print(f"Document identical: {bridge.registry.document() == before}")


# ============================================================================
# PHASE 2: BRIDGING (Steps 4-6)
# ============================================================================

async def step_04_wallets(bridge: DemoBridge):
    step_header(4, "Binding Wallets",
        "Only owners with a bound ledger address can hold tokens.")
    await execute(bridge, TokenizeRequest("AP", "ES3", 1, CONFIG.admin_key))
    await execute(bridge, CreateWalletRequest("AP", CONFIG.ap_address, CONFIG.admin_key))
    await execute(bridge, CreateWalletRequest("THOMAS", CONFIG.depository_address, CONFIG.admin_key))
    await execute(bridge, CreateWalletRequest("THOMAS", CONFIG.thomas_address, CONFIG.admin_key))
    print("""
    Tokenize failed before any wallet existed, and a contract address was
    refused as a holder.
    """)


async def step_05_tokenize(bridge: DemoBridge):
    step_header(5, "Tokenize",
        "Mint first, wait for confirmation, then debit the registry.")
    result = await execute(bridge, TokenizeRequest("AP", "ES3", CONFIG.tokenize_quantity,
                                                   CONFIG.admin_key))
    if result.succeeded:
        print(f"    minted {result.value.base_units} base units in block {result.value.block_number}")

    section_header("After Tokenize")
    show_holdings(bridge, "AP")


async def step_06_onramp(bridge: DemoBridge):
    step_header(6, "Stablecoin Onramp",
        "Give the investor stablecoin to pay with.")
    await execute(bridge, OnrampRequest("THOMAS", CONFIG.onramp_quantity, CONFIG.admin_key))
    show_holdings(bridge, "THOMAS")


# ============================================================================
# PHASE 3: ONCHAIN (Steps 7-8)
# ============================================================================

async def step_07_buy(bridge: DemoBridge):
    step_header(7, "Atomic Swap",
        "Exchange stablecoin for tokens in four confirmed steps.")
    result = await execute(bridge, BuyAssetRequest("THOMAS", "AP", "TES3", CONFIG.buy_quantity))
    if result.succeeded:
        for step in result.value.steps:
            print(f"    {step.step}. {step.description} ({step.tx_hash[:10]}...)")

    section_header("After Swap")
    show_holdings(bridge, "AP")
    show_holdings(bridge, "THOMAS")


async def step_08_redeem(bridge: DemoBridge):
    step_header(8, "Redeem",
        "Burn first, wait for confirmation, then credit the registry.")
    await execute(bridge, RedeemRequest("AP", "ES3", CONFIG.redeem_quantity, CONFIG.admin_key))
    show_holdings(bridge, "AP")


# ============================================================================
# PHASE 4: VERIFICATION (Step 9)
# ============================================================================

async def step_09_reconcile(bridge: DemoBridge):
    step_header(9, "Reconciliation",
        "Compare both sides and prove nothing was created or destroyed.")
    s = bridge.settlement
    report = await reconcile(s.registry, s.client, s.journal, s.config.tokens)
    print(f"Clean: {report.clean}")
    for row in report.holdings:
        print(f"{row.owner_id:<8} {row.symbol}: offchain={row.offchain} "
              f"onchain={row.onchain} total={row.total}")

    supply = bridge.chain.verify_supply()
    print(f"\nSupply conserved: {supply['valid']}")
    total_es3 = sum(row.total for row in report.holdings)
    print(f"ES3 offchain + onchain: {total_es3} (created {CONFIG.create_quantity})")
    return report


async def run_tutorial() -> DemoBridge:
    bridge = step_01_registry()
    wait_for_enter()
    for step in (step_02_create_etf, step_03_rejected_create, step_04_wallets,
                 step_05_tokenize, step_06_onramp, step_07_buy, step_08_redeem,
                 step_09_reconcile):
        await step(bridge)
        wait_for_enter()
    return bridge


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       CDP TOKENIZATION BRIDGE - INTERACTIVE TUTORIAL")
    print("=" * 70)
    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    asyncio.run(run_tutorial())

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    You've learned:
      - CreateETF is all-or-nothing and purely offchain
      - Tokenize and Redeem touch the registry only after confirmation
      - Swaps move two tokens through approvals and transfers
      - Reconciliation shows where both sides stand

    Next steps:
      - cdp-bridge --help
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
