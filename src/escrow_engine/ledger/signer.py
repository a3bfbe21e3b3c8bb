"""
Transaction signer: builds, broadcasts and confirms fund movements out of a
custodial wallet.

Every call to the ledger is bounded by a timeout; a timeout surfaces as a
retryable ExternalFailure. Building a transaction and re-sending an already
signed payload have no extra effect on the ledger, so both are retried.
Callers that must survive a crash between signing and confirmation pass
``on_signed`` to persist the signed payload before it is broadcast.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence, TypeVar

from ..constants import LedgerDefaults
from ..exceptions import ExternalFailure, ValidationError
from ..models import Asset, ReleaseType, TransferInstruction
from ..retry import RPC_RETRY_CONFIG, RetryConfig, retry_async
from .base import AccountInfo, LedgerClient, SignedTransfer

if TYPE_CHECKING:
    from ..custody import Keypair

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnSigned = Callable[[SignedTransfer], Awaitable[None]]


class TransactionSigner:
    """Moves funds from custodial wallets through a LedgerClient."""

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        timeout: float = LedgerDefaults.RPC_TIMEOUT_SECONDS,
        poll_interval: float = LedgerDefaults.CONFIRMATION_POLL_INTERVAL,
        max_polls: int = LedgerDefaults.CONFIRMATION_MAX_POLLS,
        retry_config: RetryConfig = RPC_RETRY_CONFIG,
    ) -> None:
        self.ledger = ledger
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._retry = retry_config

    async def _bounded(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ExternalFailure(
                f"Ledger {operation} timed out after {self._timeout}s", operation=operation
            ) from e

    async def _read(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(self._bounded, operation, call, config=self._retry)

    async def get_balance(self, address: str, asset: Asset) -> Decimal:
        return await self._read("get_balance", lambda: self.ledger.get_balance(address, asset))

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        return await self._read("get_account_info", lambda: self.ledger.get_account_info(address))

    async def check_balance(self, address: str, asset: Asset, required: Decimal) -> Decimal:
        """Return the balance, raising ValidationError if it is below ``required``."""
        balance = await self.get_balance(address, asset)
        if balance < required:
            raise ValidationError(
                f"Insufficient balance in {address}: {balance} {asset.symbol} available, "
                f"{required} {asset.symbol} required",
                field="amount",
            )
        return balance

    async def sign(
        self,
        keypair: "Keypair",
        transfers: Sequence[TransferInstruction],
        asset: Asset,
    ) -> SignedTransfer:
        if not transfers:
            raise ValidationError("At least one transfer is required", field="transfers")
        for t in transfers:
            if t.amount <= 0:
                raise ValidationError(
                    f"Transfer amount to {t.recipient} must be positive", field="amount"
                )
            if not t.recipient:
                raise ValidationError("Transfer recipient is required", field="recipient")

        total = sum((t.amount for t in transfers), Decimal("0"))
        await self.check_balance(keypair.address, asset, total)
        return await self._read(
            "build_transfer", lambda: self.ledger.build_transfer(keypair, transfers, asset)
        )

    async def broadcast(self, signed: SignedTransfer) -> str:
        return await self._read("broadcast", lambda: self.ledger.broadcast(signed))

    async def wait_for_confirmation(self, tx_ref: str) -> None:
        """Poll until confirmed. LedgerRejectedError propagates if the tx failed."""
        for attempt in range(self._max_polls):
            confirmed = await self._read(
                "confirm_transaction", lambda: self.ledger.confirm_transaction(tx_ref)
            )
            if confirmed:
                logger.info("Transaction %s confirmed after %d polls", tx_ref, attempt + 1)
                return
            await asyncio.sleep(self._poll_interval)
        raise ExternalFailure(
            f"Transaction {tx_ref} not confirmed after {self._max_polls} polls",
            operation="confirm_transaction",
        )

    async def transfer_to_multiple(
        self,
        keypair: "Keypair",
        transfers: Sequence[TransferInstruction],
        asset: Asset,
        *,
        on_signed: Optional[OnSigned] = None,
    ) -> str:
        """
        Pay several recipients from one custodial wallet in one transaction.

        Args:
            keypair: Custodial keypair owning the funds
            transfers: Destinations and amounts, all in ``asset``
            asset: Asset being moved
            on_signed: Awaited with the signed transaction before broadcast

        Returns:
            Confirmed transaction reference
        """
        signed = await self.sign(keypair, transfers, asset)
        if on_signed is not None:
            await on_signed(signed)
        logger.info(
            "Broadcasting %s transfer %s from %s to %d recipients",
            asset.symbol, signed.tx_ref, keypair.address, len(transfers),
        )
        await self.broadcast(signed)
        await self.wait_for_confirmation(signed.tx_ref)
        return signed.tx_ref

    async def transfer(
        self,
        keypair: "Keypair",
        recipient: str,
        amount: Decimal,
        asset: Asset,
        purpose: ReleaseType = ReleaseType.FULL_RELEASE,
    ) -> str:
        return await self.transfer_to_multiple(
            keypair, [TransferInstruction(recipient, amount, purpose)], asset
        )

    async def resume(self, signed: SignedTransfer) -> str:
        """Finish a transaction that was signed earlier but never confirmed."""
        confirmed = await self._read(
            "confirm_transaction", lambda: self.ledger.confirm_transaction(signed.tx_ref)
        )
        if not confirmed:
            logger.info("Rebroadcasting previously signed transaction %s", signed.tx_ref)
            await self.broadcast(signed)
            await self.wait_for_confirmation(signed.tx_ref)
        return signed.tx_ref

    async def verify_transaction(
        self, tx_ref: str, recipient: str, asset: Asset, expected_amount: Decimal
    ) -> bool:
        """True if ``tx_ref`` paid at least ``expected_amount`` of ``asset`` to ``recipient``."""
        received = await self._read(
            "get_transaction",
            lambda: self.ledger.get_received_amount(tx_ref, recipient, asset),
        )
        if received is None:
            logger.warning("Transaction %s not found on ledger", tx_ref)
            return False
        if received < expected_amount:
            logger.warning(
                "Transaction %s paid %s %s to %s, expected %s",
                tx_ref, received, asset.symbol, recipient, expected_amount,
            )
            return False
        return True

    async def is_confirmed(self, tx_ref: str) -> bool:
        return await self._read(
            "confirm_transaction", lambda: self.ledger.confirm_transaction(tx_ref)
        )
