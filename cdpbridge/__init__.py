"""
cdpbridge - CDP Registry <-> Token Ledger Settlement Bridge

Moves holdings between an offchain registry of traditional securities and ETF
shares and an onchain token ledger, with explicit confirmation ordering and
per-owner serialization.

Usage:
    from cdpbridge import (
        RegistryStore, CompositionTable, TokenLedger, TokenAsset,
        InMemoryLedgerClient, Settlement, Coordinator, CreateETFRequest,
    )

    registry = RegistryStore({"AP": {"stocks": {"A": 1000, "B": 500}}})
    compositions = CompositionTable.from_document({"ES3": {"constituents": {"A": 5, "B": 2}}})
    chain = TokenLedger("local")
    chain.register_asset(TokenAsset("TES3", "Tokenized ES3", "0x5FC8d32690cc91D4c39d9d3abcBD16989F875707"))

    settlement = Settlement(registry, compositions, InMemoryLedgerClient(chain))
    coordinator = Coordinator(settlement)
    result = await coordinator.execute(CreateETFRequest("AP", "ES3", 100))
"""

# Core types
from .core import (
    Account,
    Composition,
    Holdings,
    LedgerOperation,
    OperationKind,
    PendingHandle,
    Receipt,
    ReceiptStatus,
    CreateETFResult,
    BridgeResult,
    SwapResult,
    SwapStep,
    LedgerCallResult,
    BridgeError,
    NotFound,
    UnknownETF,
    UnsupportedSymbol,
    InsufficientBalance,
    WalletNotBound,
    InvalidAddress,
    LedgerUnavailable,
    Indeterminate,
    OperationReverted,
    PartialSwapFailure,
    InvalidRequest,
    ReconciliationRequired,
    StorageError,
    mint,
    burn,
    transfer,
    transfer_from,
    approve,
    bind_address,
    to_decimal,
    to_base_units,
    from_base_units,
    settled_quantity,
    TOKEN_DECIMALS,
    ZERO_ADDRESS,
)

# Stores
from .registry import RegistryStore
from .compositions import CompositionTable

# Ledger
from .chain import TokenLedger, TokenAsset, ChainTransaction
from .ledger_client import LedgerClient, InMemoryLedgerClient, RpcLedgerClient

# Settlement
from .journal import SettlementJournal, JournalEntry, JournalState
from .settlement import Settlement
from .reconciliation import ReconciliationReport, HoldingRow, reconcile
from .coordinator import (
    Coordinator,
    OperationResult,
    OperationStatus,
    CreateETFRequest,
    TokenizeRequest,
    RedeemRequest,
    AtomicSwapRequest,
    BuyAssetRequest,
    SellAssetRequest,
    CreateWalletRequest,
    OnrampRequest,
)

# Configuration
from .config import BridgeConfig, load_config
from .logging_config import configure_logging


__all__ = [
    # Core
    'Account', 'Composition', 'Holdings', 'LedgerOperation', 'OperationKind',
    'PendingHandle', 'Receipt', 'ReceiptStatus',
    'CreateETFResult', 'BridgeResult', 'SwapResult', 'SwapStep', 'LedgerCallResult',
    'mint', 'burn', 'transfer', 'transfer_from', 'approve', 'bind_address',
    'to_decimal', 'to_base_units', 'from_base_units', 'settled_quantity',
    'TOKEN_DECIMALS', 'ZERO_ADDRESS',
    # Errors
    'BridgeError', 'NotFound', 'UnknownETF', 'UnsupportedSymbol', 'InsufficientBalance',
    'WalletNotBound', 'InvalidAddress', 'LedgerUnavailable', 'Indeterminate',
    'OperationReverted', 'PartialSwapFailure', 'InvalidRequest', 'ReconciliationRequired', 'StorageError',
    # Stores
    'RegistryStore', 'CompositionTable',
    # Ledger
    'TokenLedger', 'TokenAsset', 'ChainTransaction',
    'LedgerClient', 'InMemoryLedgerClient', 'RpcLedgerClient',
    # Settlement
    'SettlementJournal', 'JournalEntry', 'JournalState',
    'Settlement', 'ReconciliationReport', 'HoldingRow', 'reconcile',
    # Coordinator
    'Coordinator', 'OperationResult', 'OperationStatus',
    'CreateETFRequest', 'TokenizeRequest', 'RedeemRequest', 'AtomicSwapRequest',
    'BuyAssetRequest', 'SellAssetRequest', 'CreateWalletRequest', 'OnrampRequest',
    # Configuration
    'BridgeConfig', 'load_config', 'configure_logging',
]

__version__ = '1.0.0'
