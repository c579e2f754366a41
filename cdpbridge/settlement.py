"""
settlement.py - Settlement Operations

Every operation that changes offchain holdings, onchain balances or both:

    create_etf      offchain only: constituent stocks -> ETF shares
    tokenize        offchain ETF shares -> onchain tokens (mint, then registry)
    redeem          onchain tokens -> offchain ETF shares (burn, then registry)
    atomic_swap     onchain only: approve, approve, transferFrom, transferFrom
    create_wallet   bind an owner to a ledger address
    onramp          mint stablecoin to an owner's address
    buy_asset / sell_asset   atomic_swap priced in stablecoin

Ordering rules:
    - All preconditions are checked before the first mutating call. A
      precondition failure changes nothing, anywhere.
    - A ledger call is confirmed before the registry is written. If the
      confirmation times out the registry is left alone and Indeterminate
      is raised; no compensating call is ever issued.
    - A registry write failing after a confirmed ledger call raises
      ReconciliationRequired and leaves the journal entry at LEDGER_CONFIRMED.
    - Journal writes follow the same split. Failing before submission raises
      StorageError. Failing after submission raises Indeterminate, and after
      confirmation ReconciliationRequired (the registry is then not written).
      A swap keeps going past an unjournaled confirmation, and a failed
      COMPLETED write is logged; either way the entry stays open for reconcile.

Settlement does not lock. Callers serialize operations on overlapping owners
(see coordinator.Coordinator).
"""

from __future__ import annotations
import logging
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from .compositions import CompositionTable
from .config import BridgeConfig
from .core import (
    BridgeError, InsufficientBalance, Indeterminate, InvalidAddress, InvalidRequest,
    OperationReverted, PartialSwapFailure, ReconciliationRequired, StorageError,
    UnsupportedSymbol, WalletNotBound,
    BridgeResult, CreateETFResult, LedgerCallResult, LedgerOperation, Receipt,
    SwapResult, SwapStep,
    OP_ATOMIC_SWAP, OP_CREATE_WALLET, OP_ONRAMP, OP_REDEEM, OP_TOKENIZE,
    ZERO, ZERO_ADDRESS,
    approve, bind_address, burn, fingerprint, from_base_units, mint,
    to_base_units, to_decimal, transfer_from,
)
from .journal import JournalState, SettlementJournal
from .ledger_client import LedgerClient
from .registry import RegistryStore

logger = logging.getLogger(__name__)


class Settlement:
    """
    Settlement operations over one registry, composition table and ledger client.

    Example:
        settlement = Settlement(registry, compositions, client)
        settlement.create_etf("AP", "ES3", Decimal("100"))
        await settlement.tokenize("AP", "ES3", Decimal("50"), admin_key)
    """

    def __init__(
        self,
        registry: RegistryStore,
        compositions: CompositionTable,
        client: LedgerClient,
        config: Optional[BridgeConfig] = None,
        journal: Optional[SettlementJournal] = None,
    ):
        self.registry = registry
        self.compositions = compositions
        self.client = client
        self.config = config or BridgeConfig()
        self.journal = journal if journal is not None else SettlementJournal()

    @property
    def decimals(self) -> int:
        return self.config.token_decimals

    # ========================================================================
    # CREATE ETF
    # ========================================================================

    def create_etf(self, owner_id: str, etf_symbol: str, quantity: Any) -> CreateETFResult:
        """
        Convert constituent stocks into ETF shares, all or nothing.

        Raises:
            InvalidRequest: If quantity is not positive
            NotFound: If the owner has no registry account
            UnknownETF: If etf_symbol has no composition
            InsufficientBalance: Naming the first short constituent. Nothing is deducted.
        """
        try:
            q = _positive(quantity)
            account = self.registry.get_account(owner_id)
            composition = self.compositions.get_composition(etf_symbol)
            required = composition.requirements(q)
            for symbol, need in required.items():
                have = account.stock(symbol)
                if have < need:
                    raise InsufficientBalance(symbol, need, have, owner_id=owner_id)
        except BridgeError as e:
            logger.warning("CreateETF %s %s %s rejected: %s", owner_id, etf_symbol, quantity, e)
            raise

        try:
            updated = self.registry.apply(
                owner_id,
                stock_deltas={symbol: -need for symbol, need in required.items()},
                etf_deltas={etf_symbol: q},
            )
        except OSError as e:
            logger.error("CreateETF %s %s %s not persisted: %s", owner_id, etf_symbol, q, e)
            raise StorageError(f"Registry write failed: {e}", owner_id=owner_id) from e
        logger.info("CreateETF %s: %s %s from %s", owner_id, q, etf_symbol,
                    {s: str(n) for s, n in required.items()})
        return CreateETFResult(owner_id, etf_symbol, q, updated.etf(etf_symbol), required)

    # ========================================================================
    # TOKENIZE / REDEEM
    # ========================================================================

    async def tokenize(
        self, owner_id: str, symbol: str, quantity: Any, acting_identity: str
    ) -> BridgeResult:
        """
        Move ETF shares onchain: mint tokens to the owner's address, then debit the registry.

        The amount moved is quantity truncated to token precision, so the
        offchain debit always equals exactly what was minted.

        Raises:
            InvalidRequest, NotFound, UnsupportedSymbol, InsufficientBalance,
            WalletNotBound, LedgerUnavailable: Before anything changes
            OperationReverted: The mint was rejected; nothing changed
            Indeterminate: The mint did not confirm in time; registry unchanged
            ReconciliationRequired: Mint confirmed, registry or journal write failed
        """
        try:
            q = _positive(quantity)
            account = self.registry.get_account(owner_id)
            asset_id = self._asset_for(symbol)
            settled, units = self._settle(q)
            have = account.etf(symbol)
            if have < q:
                raise InsufficientBalance(symbol, q, have, owner_id=owner_id)
            address = await self._require_address(owner_id)
            onchain_before = await self.client.get_balance(asset_id, address)
        except BridgeError as e:
            logger.warning("Tokenize %s %s %s rejected: %s", owner_id, symbol, quantity, e)
            raise

        logger.info("Tokenize %s: minting %s %s to %s (signer %s)",
                    owner_id, settled, asset_id, address, fingerprint(acting_identity))
        entry_id = self._begin(
            OP_TOKENIZE, owner_id, symbol=symbol, assetId=asset_id,
            quantity=settled, baseUnits=str(units), address=address,
        )
        receipt = await self._run_ledger_call(
            entry_id, OP_TOKENIZE, owner_id, mint(address, units, asset_id, acting_identity)
        )

        try:
            new_offchain = self.registry.adjust_etf(owner_id, symbol, -settled)
        except (OSError, BridgeError) as e:
            raise self._reconciliation_required(entry_id, OP_TOKENIZE, owner_id, receipt, e)

        self._complete(entry_id, OP_TOKENIZE, owner_id)
        logger.info("Tokenize %s complete: %s %s offchain, tx %s",
                    owner_id, new_offchain, symbol, receipt.tx_hash[:10])
        return BridgeResult(
            OP_TOKENIZE, owner_id, symbol, asset_id, settled, units, address,
            receipt.tx_hash, receipt.block_number, new_offchain, onchain_before + units,
        )

    async def redeem(
        self, owner_id: str, symbol: str, quantity: Any, acting_identity: str
    ) -> BridgeResult:
        """
        Move tokens offchain: burn from the owner's address, then credit the registry.

        The onchain balance is the precondition; the registry has no record of
        token holdings.
        """
        try:
            q = _positive(quantity)
            self.registry.get_account(owner_id)
            asset_id = self._asset_for(symbol)
            settled, units = self._settle(q)
            address = await self._require_address(owner_id)
            onchain_before = await self.client.get_balance(asset_id, address)
            if onchain_before < units:
                raise InsufficientBalance(
                    asset_id, settled, from_base_units(onchain_before, self.decimals),
                    owner_id=owner_id, address=address,
                )
        except BridgeError as e:
            logger.warning("Redeem %s %s %s rejected: %s", owner_id, symbol, quantity, e)
            raise

        logger.info("Redeem %s: burning %s %s from %s (signer %s)",
                    owner_id, settled, asset_id, address, fingerprint(acting_identity))
        entry_id = self._begin(
            OP_REDEEM, owner_id, symbol=symbol, assetId=asset_id,
            quantity=settled, baseUnits=str(units), address=address,
        )
        receipt = await self._run_ledger_call(
            entry_id, OP_REDEEM, owner_id, burn(address, units, asset_id, acting_identity)
        )

        try:
            new_offchain = self.registry.adjust_etf(owner_id, symbol, settled)
        except (OSError, BridgeError) as e:
            raise self._reconciliation_required(entry_id, OP_REDEEM, owner_id, receipt, e)

        self._complete(entry_id, OP_REDEEM, owner_id)
        logger.info("Redeem %s complete: %s %s offchain, tx %s",
                    owner_id, new_offchain, symbol, receipt.tx_hash[:10])
        return BridgeResult(
            OP_REDEEM, owner_id, symbol, asset_id, settled, units, address,
            receipt.tx_hash, receipt.block_number, new_offchain, onchain_before - units,
        )

    # ========================================================================
    # ATOMIC SWAP
    # ========================================================================

    async def atomic_swap(
        self,
        party_a: str,
        party_b: str,
        token_sell: str,
        token_buy: str,
        sell_quantity: Any,
        buy_quantity: Any,
    ) -> SwapResult:
        """
        Exchange sell_quantity of token_sell (from party_a) for buy_quantity of
        token_buy (from party_b). Quantities are whole-token decimals.

        Four ledger calls, each confirmed before the next is submitted:

            1. party_a approves party_b for sell_quantity of token_sell
            2. party_b approves party_a for buy_quantity of token_buy
            3. party_b draws sell_quantity of token_sell from party_a
            4. party_a draws buy_quantity of token_buy from party_b

        Raises:
            OperationReverted / Indeterminate: Step 1 failed (nothing else was submitted)
            PartialSwapFailure: A later step failed; names the step, the
                                confirmed steps and the approvals left outstanding
        """
        try:
            sell_units = self._units(_positive(sell_quantity))
            buy_units = self._units(_positive(buy_quantity))
        except BridgeError as e:
            logger.warning("AtomicSwap %s/%s rejected: %s", party_a, party_b, e)
            raise
        return await self.swap_units(party_a, party_b, token_sell, token_buy, sell_units, buy_units)

    async def swap_units(
        self,
        party_a: str,
        party_b: str,
        token_sell: str,
        token_buy: str,
        sell_units: int,
        buy_units: int,
    ) -> SwapResult:
        """atomic_swap with quantities already in base units."""
        try:
            if party_a == party_b:
                raise InvalidRequest(f"Cannot swap {party_a} with itself", owner_id=party_a)
            if sell_units <= 0 or buy_units <= 0:
                raise InvalidRequest("Swap quantities must be positive")
            addr_a = await self._require_address(party_a)
            addr_b = await self._require_address(party_b)
            if addr_a.lower() == addr_b.lower():
                raise InvalidRequest(f"{party_a} and {party_b} share address {addr_a}")
            for owner_id, address, asset_id, units in (
                (party_a, addr_a, token_sell, sell_units),
                (party_b, addr_b, token_buy, buy_units),
            ):
                have = await self.client.get_balance(asset_id, address)
                if have < units:
                    raise InsufficientBalance(
                        asset_id, from_base_units(units, self.decimals),
                        from_base_units(have, self.decimals),
                        owner_id=owner_id, address=address,
                    )
        except BridgeError as e:
            logger.warning("AtomicSwap %s/%s rejected: %s", party_a, party_b, e)
            raise

        steps = (
            (f"{party_a} approves {party_b} for {token_sell}",
             approve(addr_a, addr_b, sell_units, token_sell)),
            (f"{party_b} approves {party_a} for {token_buy}",
             approve(addr_b, addr_a, buy_units, token_buy)),
            (f"{party_b} draws {token_sell} from {party_a}",
             transfer_from(addr_b, addr_a, addr_b, sell_units, token_sell)),
            (f"{party_a} draws {token_buy} from {party_b}",
             transfer_from(addr_a, addr_b, addr_a, buy_units, token_buy)),
        )

        logger.info("AtomicSwap %s -> %s: %s %s for %s %s", party_a, party_b,
                    sell_units, token_sell, buy_units, token_buy)
        entry_id = self._begin(
            OP_ATOMIC_SWAP, party_a, counterparty=party_b,
            tokenSell=token_sell, tokenBuy=token_buy,
            sellUnits=str(sell_units), buyUnits=str(buy_units),
        )
        done: List[SwapStep] = []
        for number, (description, operation) in enumerate(steps, 1):
            try:
                receipt = await self._ledger_call(entry_id, operation, step=number)
            except BridgeError as e:
                if not done:
                    self._close_failed(entry_id, OP_ATOMIC_SWAP, e, step=number)
                    raise
                raise self._partial_swap(
                    entry_id, number, description, done, e,
                    (party_a, party_b, token_sell), (party_b, party_a, token_buy),
                ) from e
            done.append(SwapStep(number, description, receipt.tx_hash, receipt.block_number))
            try:
                self._confirmed(entry_id, receipt, step=number)
            except OSError as e:
                # later steps still run so the approvals are drawn down
                logger.error("AtomicSwap step %d confirmed in tx %s but not journaled: %s",
                             number, receipt.tx_hash, e)
            logger.info("AtomicSwap step %d/4 confirmed: %s (tx %s)",
                        number, description, receipt.tx_hash[:10])

        self._complete(entry_id, OP_ATOMIC_SWAP, party_a)
        return SwapResult(party_a, party_b, token_sell, token_buy, sell_units, buy_units, tuple(done))

    async def buy_asset(self, buyer: str, seller: str, asset_id: str, quantity: Any) -> SwapResult:
        """buyer pays stablecoin at the configured price for quantity of asset_id from seller."""
        units, cost = self._priced(asset_id, quantity)
        return await self.swap_units(buyer, seller, self.config.stablecoin, asset_id, cost, units)

    async def sell_asset(self, seller: str, buyer: str, asset_id: str, quantity: Any) -> SwapResult:
        units, cost = self._priced(asset_id, quantity)
        return await self.swap_units(seller, buyer, asset_id, self.config.stablecoin, units, cost)

    # ========================================================================
    # WALLETS AND ONRAMP
    # ========================================================================

    async def create_wallet(self, owner_id: str, address: str, acting_identity: str) -> LedgerCallResult:
        """
        Bind owner_id to a ledger address, then record it in the registry.

        The owner's registry account is created if it does not exist yet.

        Raises:
            InvalidAddress: Zero address, or an address belonging to a contract
            InvalidRequest: The owner is already bound
        """
        try:
            if not owner_id or not owner_id.strip():
                raise InvalidRequest("owner_id cannot be empty")
            if not address or address.lower() == ZERO_ADDRESS:
                raise InvalidAddress(f"Cannot bind {owner_id} to the zero address", owner_id=owner_id)
            existing = await self.client.resolve_address(owner_id)
            if existing:
                raise InvalidRequest(
                    f"Wallet already exists for {owner_id}: {existing}",
                    owner_id=owner_id, address=existing,
                )
            # contract addresses are refused by the balance read
            await self.client.get_balance(self.config.stablecoin, address)
        except BridgeError as e:
            logger.warning("CreateWallet %s rejected: %s", owner_id, e)
            raise

        logger.info("CreateWallet %s -> %s (signer %s)", owner_id, address, fingerprint(acting_identity))
        entry_id = self._begin(OP_CREATE_WALLET, owner_id, address=address)
        receipt = await self._run_ledger_call(
            entry_id, OP_CREATE_WALLET, owner_id, bind_address(owner_id, address, acting_identity)
        )
        try:
            self.registry.ensure_account(owner_id)
            self.registry.record_wallet_address(owner_id, address)
        except (OSError, ValueError, BridgeError) as e:
            raise self._reconciliation_required(entry_id, OP_CREATE_WALLET, owner_id, receipt, e)

        self._complete(entry_id, OP_CREATE_WALLET, owner_id)
        return LedgerCallResult(OP_CREATE_WALLET, owner_id, address, receipt.tx_hash, receipt.block_number)

    async def onramp(self, owner_id: str, quantity: Any, acting_identity: str) -> LedgerCallResult:
        """Mint quantity of the stablecoin to the owner's bound address."""
        asset_id = self.config.stablecoin
        try:
            units = self._units(_positive(quantity))
            address = await self._require_address(owner_id)
        except BridgeError as e:
            logger.warning("Onramp %s %s rejected: %s", owner_id, quantity, e)
            raise

        logger.info("Onramp %s: minting %s %s to %s (signer %s)", owner_id,
                    from_base_units(units, self.decimals), asset_id, address,
                    fingerprint(acting_identity))
        entry_id = self._begin(
            OP_ONRAMP, owner_id, assetId=asset_id, baseUnits=str(units), address=address
        )
        receipt = await self._run_ledger_call(
            entry_id, OP_ONRAMP, owner_id, mint(address, units, asset_id, acting_identity)
        )
        self._complete(entry_id, OP_ONRAMP, owner_id)
        return LedgerCallResult(
            OP_ONRAMP, owner_id, address, receipt.tx_hash, receipt.block_number, asset_id, units
        )

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _asset_for(self, symbol: str) -> str:
        asset_id = self.config.asset_for(symbol)
        if asset_id is None or not self.compositions.is_etf(symbol):
            raise UnsupportedSymbol(
                f"{symbol} is not tokenizable (supported: {', '.join(sorted(self.config.tokens)) or 'none'})",
                symbol=symbol,
            )
        return asset_id

    def _units(self, quantity: Decimal) -> int:
        units = to_base_units(quantity, self.decimals)
        if units <= 0:
            raise InvalidRequest(
                f"Quantity {quantity} is below token precision (10^-{self.decimals})",
                quantity=quantity,
            )
        return units

    def _settle(self, quantity: Decimal) -> Tuple[Decimal, int]:
        units = self._units(quantity)
        return from_base_units(units, self.decimals), units

    def _priced(self, asset_id: str, quantity: Any) -> Tuple[int, int]:
        """(asset units, stablecoin cost in units) for quantity of asset_id at the configured price."""
        price = self.config.prices.get(asset_id)
        if price is None:
            raise UnsupportedSymbol(f"No {self.config.stablecoin} price for {asset_id}", asset_id=asset_id)
        units = self._units(_positive(quantity))
        cost = units * to_base_units(price, self.decimals) // 10 ** self.decimals
        if cost <= 0:
            raise InvalidRequest(f"Cost of {quantity} {asset_id} rounds to zero", asset_id=asset_id)
        return units, cost

    async def _require_address(self, owner_id: str) -> str:
        address = await self.client.resolve_address(owner_id)
        if not address:
            raise WalletNotBound(f"No wallet bound for {owner_id}", owner_id=owner_id)
        return address

    # Journal writes. A write failing before submission aborts with StorageError;
    # after submission the operation is in flight and the failure is mapped
    # onto the outcome taxonomy instead of escaping as OSError.

    def _begin(self, operation: str, owner_id: str, **fields: Any) -> str:
        try:
            return self.journal.begin(operation, owner_id, **fields)
        except OSError as e:
            logger.error("%s %s not started, journal write failed: %s", operation, owner_id, e)
            raise StorageError(f"Journal write failed: {e}", owner_id=owner_id) from e

    def _confirmed(self, entry_id: str, receipt: Receipt, **fields: Any) -> None:
        self.journal.record(
            entry_id, JournalState.LEDGER_CONFIRMED,
            txHash=receipt.tx_hash, blockNumber=receipt.block_number, **fields,
        )

    def _complete(self, entry_id: str, op_name: str, owner_id: str) -> None:
        """
        Close a finished entry.

        Both stores already agree, so a failed write is logged rather than
        raised; the entry stays open and reconcile reports it.
        """
        try:
            self.journal.record(entry_id, JournalState.COMPLETED)
        except OSError as e:
            logger.error("%s %s completed but journal entry %s was not closed: %s",
                         op_name, owner_id, entry_id, e)

    def _close(self, entry_id: str, state: JournalState, **fields: Any) -> None:
        try:
            self.journal.record(entry_id, state, **fields)
        except OSError as e:
            logger.error("Journal entry %s not closed as %s: %s", entry_id, state.value, e)

    async def _ledger_call(self, entry_id: str, operation: LedgerOperation, **fields: Any) -> Receipt:
        """
        Submit, journal, and await one ledger call.

        Returns the receipt of a confirmed, successful call without recording
        the confirmation. Any other outcome raises; the caller decides how to
        close the journal entry.
        """
        handle = await self.client.submit(operation)
        try:
            self.journal.record(entry_id, JournalState.SUBMITTED, txHash=handle.tx_hash, **fields)
        except OSError as e:
            raise Indeterminate(
                f"{operation!r} submitted as {handle.tx_hash} but the journal write failed: {e}",
                tx_hash=handle.tx_hash, journal_entry=entry_id,
            ) from e
        receipt = await self.client.await_confirmation(handle, self.config.confirmation_timeout)
        if not receipt.succeeded:
            raise OperationReverted(
                f"{operation!r} reverted: {receipt.reason or 'no reason given'}",
                tx_hash=receipt.tx_hash, reason=receipt.reason,
            )
        return receipt

    async def _run_ledger_call(
        self, entry_id: str, op_name: str, owner_id: str, operation: LedgerOperation
    ) -> Receipt:
        """_ledger_call for single-call operations: close the entry on failure."""
        try:
            receipt = await self._ledger_call(entry_id, operation)
        except BridgeError as e:
            self._close_failed(entry_id, op_name, e)
            raise
        try:
            self._confirmed(entry_id, receipt)
        except OSError as e:
            raise self._reconciliation_required(entry_id, op_name, owner_id, receipt, e) from e
        return receipt

    def _close_failed(self, entry_id: str, op_name: str, error: BridgeError, **fields: Any) -> None:
        if isinstance(error, Indeterminate):
            self._close(entry_id, JournalState.INDETERMINATE, error=str(error), **fields)
            logger.error("%s outcome unknown: %s", op_name, error)
        else:
            self._close(entry_id, JournalState.FAILED, errorKind=error.kind,
                        error=str(error), **fields)
            logger.error("%s failed at ledger: %s", op_name, error)

    def _reconciliation_required(
        self, entry_id: str, op_name: str, owner_id: str, receipt: Receipt, cause: Exception
    ) -> ReconciliationRequired:
        logger.error("%s %s: ledger confirmed in tx %s but registry not updated: %s",
                     op_name, owner_id, receipt.tx_hash, cause)
        return ReconciliationRequired(
            f"{op_name} for {owner_id} confirmed onchain (tx {receipt.tx_hash}) "
            f"but the registry was not updated: {cause}",
            owner_id=owner_id, tx_hash=receipt.tx_hash, journal_entry=entry_id,
        )

    def _partial_swap(
        self,
        entry_id: str,
        failed_step: int,
        description: str,
        done: List[SwapStep],
        error: BridgeError,
        first_approval: Tuple[str, str, str],
        second_approval: Tuple[str, str, str],
    ) -> PartialSwapFailure:
        completed = {s.step for s in done}
        outstanding = []
        # an approval is outstanding until the matching draw has confirmed
        if 1 in completed and 3 not in completed:
            outstanding.append(first_approval)
        if 2 in completed and 4 not in completed:
            outstanding.append(second_approval)

        state = JournalState.INDETERMINATE if isinstance(error, Indeterminate) else JournalState.FAILED
        self._close(
            entry_id, state, step=failed_step, partial=True,
            errorKind=error.kind, error=str(error),
        )
        logger.error("AtomicSwap failed at step %d (%s) after %d confirmed steps: %s",
                     failed_step, description, len(done), error)
        return PartialSwapFailure(
            f"AtomicSwap failed at step {failed_step} ({description}): {error}",
            failed_step=failed_step,
            completed=tuple((s.step, s.tx_hash) for s in done),
            cause=error.kind,
            outstanding=tuple(outstanding),
        )


def _positive(quantity: Any) -> Decimal:
    q = to_decimal(quantity)
    if q <= ZERO:
        raise InvalidRequest(f"Quantity must be positive, got {quantity}", quantity=quantity)
    return q
