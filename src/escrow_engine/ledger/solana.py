"""Solana JSON-RPC ledger client."""
from __future__ import annotations

import base64
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional, Sequence

import httpx

from ..constants import LedgerDefaults
from ..exceptions import ExternalFailure, LedgerRejectedError
from ..models import Asset, TransferInstruction
from .base import AccountInfo, SignedTransfer
from .transactions import compile_message, sign_message, system_transfer, token_transfer

if TYPE_CHECKING:
    from ..custody import Keypair

logger = logging.getLogger(__name__)

# RPC errors meaning the transaction already landed; rebroadcasts are fine
_ALREADY_PROCESSED = ("already been processed", "AlreadyProcessed")


class SolanaRPCError(ExternalFailure):
    """Solana RPC returned a JSON-RPC error object."""

    error_code = "SOLANA_RPC_ERROR"

    def __init__(self, message: str, error_data: dict[str, Any] | None = None, retryable: bool = True):
        super().__init__(message, operation="rpc", retryable=retryable)
        self.error_data = error_data or {}


class SolanaLedgerClient:
    """Async Solana JSON-RPC client.

    Uses raw httpx instead of solana-py to minimize dependencies.
    All Solana RPC methods are called via JSON-RPC 2.0.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: str = "confirmed",
        timeout: float = LedgerDefaults.RPC_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings) -> "SolanaLedgerClient":
        return cls(
            settings.rpc_url,
            commitment=settings.commitment,
            timeout=settings.rpc_timeout_seconds,
        )

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Make a JSON-RPC call to Solana."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise ExternalFailure(f"Solana RPC {method} timed out", operation=method) from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            raise ExternalFailure(
                f"Solana RPC {method} returned HTTP {code}",
                operation=method,
                retryable=code == 429 or code >= 500,
            ) from e
        except httpx.TransportError as e:
            raise ExternalFailure(f"Solana RPC {method} unreachable: {e}", operation=method) from e

        data = resp.json()
        if "error" in data:
            error = data["error"]
            raise SolanaRPCError(error.get("message", "Unknown RPC error"), error)
        return data.get("result")

    # -- reads ---------------------------------------------------------------

    async def get_balance(self, address: str, asset: Asset) -> Decimal:
        if asset.is_native:
            result = await self._rpc("getBalance", [address, {"commitment": self.commitment}])
            return asset.from_base_units(result["value"])

        accounts = await self._token_accounts(address, asset.mint)
        units = sum(
            int(a["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"]) for a in accounts
        )
        return asset.from_base_units(units)

    async def _token_accounts(self, owner: str, mint: str) -> list[dict[str, Any]]:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        return result.get("value", [])

    async def _token_account(self, owner: str, mint: str) -> str:
        accounts = await self._token_accounts(owner, mint)
        if not accounts:
            raise LedgerRejectedError(
                f"No token account found for owner={owner}, mint={mint}",
                operation="build_transfer",
            )
        return accounts[0]["pubkey"]

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        result = await self._rpc(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}]
        )
        value = result.get("value") if result else None
        if value is None:
            return None
        raw = value.get("data") or ["", "base64"]
        return AccountInfo(
            owner=value["owner"],
            lamports=value["lamports"],
            data_length=len(base64.b64decode(raw[0])) if raw[0] else 0,
            executable=value.get("executable", False),
        )

    async def get_latest_blockhash(self) -> str:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    # -- writes --------------------------------------------------------------

    async def build_transfer(
        self,
        keypair: "Keypair",
        transfers: Sequence[TransferInstruction],
        asset: Asset,
    ) -> SignedTransfer:
        sender = keypair.address
        if asset.is_native:
            instructions = [
                system_transfer(sender, t.recipient, asset.to_base_units(t.amount))
                for t in transfers
            ]
        else:
            source = await self._token_account(sender, asset.mint)
            instructions = []
            for t in transfers:
                dest = await self._token_account(t.recipient, asset.mint)
                instructions.append(token_transfer(source, dest, sender, asset.to_base_units(t.amount)))

        blockhash = await self.get_latest_blockhash()
        tx_ref, payload = sign_message(compile_message(sender, instructions, blockhash), keypair)
        logger.debug("Built %s transfer %s with %d instructions", asset.symbol, tx_ref, len(instructions))
        return SignedTransfer(tx_ref=tx_ref, payload=payload)

    async def broadcast(self, signed: SignedTransfer) -> str:
        try:
            result = await self._rpc(
                "sendTransaction",
                [signed.payload, {"encoding": "base64", "skipPreflight": False}],
            )
        except SolanaRPCError as e:
            if any(marker in e.message for marker in _ALREADY_PROCESSED):
                logger.info("Solana tx %s already processed", signed.tx_ref)
                return signed.tx_ref
            raise LedgerRejectedError(
                f"Transaction rejected: {e.message}", tx_ref=signed.tx_ref, operation="broadcast"
            ) from e
        logger.info("Solana tx sent: %s", result)
        return result

    async def confirm_transaction(self, tx_ref: str) -> bool:
        """Confirm a transaction has reached the desired commitment level."""
        result = await self._rpc(
            "getSignatureStatuses", [[tx_ref], {"searchTransactionHistory": True}]
        )
        statuses = result.get("value", [])
        if not statuses or statuses[0] is None:
            return False
        status = statuses[0]
        if status.get("err"):
            raise LedgerRejectedError(
                f"Transaction failed: {status['err']}", tx_ref=tx_ref, operation="confirm"
            )
        confirmation = status.get("confirmationStatus", "")
        if self.commitment == "finalized":
            return confirmation == "finalized"
        return confirmation in ("confirmed", "finalized")

    async def get_received_amount(
        self, tx_ref: str, recipient: str, asset: Asset
    ) -> Optional[Decimal]:
        result = await self._rpc(
            "getTransaction",
            [
                tx_ref,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            return None
        meta = result.get("meta") or {}
        if meta.get("err"):
            return Decimal("0")

        if asset.is_native:
            keys = [
                k["pubkey"] if isinstance(k, dict) else k
                for k in result["transaction"]["message"]["accountKeys"]
            ]
            if recipient not in keys:
                return Decimal("0")
            i = keys.index(recipient)
            return asset.from_base_units(meta["postBalances"][i] - meta["preBalances"][i])

        def owned(balances: list[dict[str, Any]]) -> int:
            return sum(
                int(b["uiTokenAmount"]["amount"])
                for b in balances
                if b.get("owner") == recipient and b.get("mint") == asset.mint
            )

        delta = owned(meta.get("postTokenBalances") or []) - owned(meta.get("preTokenBalances") or [])
        return asset.from_base_units(delta)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
