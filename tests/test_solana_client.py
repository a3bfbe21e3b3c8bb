"""Tests for the Solana JSON-RPC client and transaction encoding."""
from __future__ import annotations

import base64
import json
from decimal import Decimal

import base58
import httpx
import pytest
from nacl.signing import VerifyKey

from escrow_engine.custody import Keypair
from escrow_engine.exceptions import ExternalFailure, LedgerRejectedError
from escrow_engine.ledger.base import SignedTransfer
from escrow_engine.ledger.solana import SolanaLedgerClient, SolanaRPCError
from escrow_engine.ledger.transactions import (
    SYSTEM_PROGRAM_ID,
    compile_message,
    encode_length,
    system_transfer,
)
from escrow_engine.models import SOL, USDC, ReleaseType, TransferInstruction

RPC_URL = "https://rpc.test"
BLOCKHASH = Keypair.generate().address


def make_client(responses: dict, calls: list | None = None) -> SolanaLedgerClient:
    """Client whose RPC answers come from ``responses`` keyed by method name.

    A value may be a result, an ``{"error": ...}`` envelope, or an
    httpx.Response to return as is.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        answer = responses[body["method"]]
        if isinstance(answer, httpx.Response):
            return answer
        if isinstance(answer, dict) and "error" in answer:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **answer})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": answer})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaLedgerClient(RPC_URL, http_client=http)


class TestRPC:
    """Tests for the JSON-RPC envelope and error mapping."""

    @pytest.mark.asyncio
    async def test_native_balance(self):
        calls = []
        client = make_client({"getBalance": {"value": 1_500_000_000}}, calls)

        balance = await client.get_balance("Wallet1", SOL)

        assert balance == Decimal("1.5")
        assert calls[0]["jsonrpc"] == "2.0"
        assert calls[0]["params"] == ["Wallet1", {"commitment": "confirmed"}]

    @pytest.mark.asyncio
    async def test_token_balance_sums_accounts(self):
        def account(amount):
            return {"pubkey": "Ata", "account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": amount}}}}}}

        client = make_client({"getTokenAccountsByOwner": {"value": [account("2500000"), account("500000")]}})

        assert await client.get_balance("Wallet1", USDC) == Decimal("3")

    @pytest.mark.asyncio
    async def test_rpc_error_object(self):
        client = make_client({"getBalance": {"error": {"code": -32602, "message": "Invalid param"}}})

        with pytest.raises(SolanaRPCError, match="Invalid param") as exc_info:
            await client.get_balance("bad", SOL)
        assert exc_info.value.error_data["code"] == -32602

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(429, True), (503, True), (400, False)])
    async def test_http_errors(self, status, retryable):
        client = make_client({"getBalance": httpx.Response(status)})

        with pytest.raises(ExternalFailure) as exc_info:
            await client.get_balance("Wallet1", SOL)
        assert exc_info.value.retryable is retryable
        assert f"HTTP {status}" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = SolanaLedgerClient(RPC_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(ExternalFailure, match="unreachable"):
            await client.get_balance("Wallet1", SOL)


class TestAccountsAndConfirmation:
    """Tests for account info, confirmation and received amounts."""

    @pytest.mark.asyncio
    async def test_account_info(self):
        data = base64.b64encode(b"\x00" * 512).decode()
        client = make_client({
            "getAccountInfo": {"value": {"owner": "SQDS4ep65T869zMMBKyuUq6aD6EgTu8psMjkvj52pCf", "lamports": 10, "data": [data, "base64"]}}
        })

        info = await client.get_account_info("Vault")

        assert info.owner == "SQDS4ep65T869zMMBKyuUq6aD6EgTu8psMjkvj52pCf"
        assert info.data_length == 512

    @pytest.mark.asyncio
    async def test_missing_account(self):
        client = make_client({"getAccountInfo": {"value": None}})

        assert await client.get_account_info("Nobody") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (None, False),
        ({"confirmationStatus": "processed"}, False),
        ({"confirmationStatus": "confirmed"}, True),
        ({"confirmationStatus": "finalized"}, True),
    ])
    async def test_confirm_transaction(self, status, expected):
        client = make_client({"getSignatureStatuses": {"value": [status]}})

        assert await client.confirm_transaction("5ig") is expected

    @pytest.mark.asyncio
    async def test_failed_transaction(self):
        client = make_client({
            "getSignatureStatuses": {"value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}}]}
        })

        with pytest.raises(LedgerRejectedError, match="Transaction failed"):
            await client.confirm_transaction("5ig")

    @pytest.mark.asyncio
    async def test_received_native_amount(self):
        client = make_client({
            "getTransaction": {
                "transaction": {"message": {"accountKeys": [{"pubkey": "Buyer"}, {"pubkey": "Escrow"}]}},
                "meta": {"err": None, "preBalances": [5_000_000_000, 0], "postBalances": [2_999_995_000, 2_000_000_000]},
            }
        })

        assert await client.get_received_amount("5ig", "Escrow", SOL) == Decimal("2")
        assert await client.get_received_amount("5ig", "Other", SOL) == 0

    @pytest.mark.asyncio
    async def test_received_token_amount(self):
        def balance(owner, amount):
            return {"owner": owner, "mint": USDC.mint, "uiTokenAmount": {"amount": amount}}

        client = make_client({
            "getTransaction": {
                "transaction": {"message": {"accountKeys": []}},
                "meta": {
                    "err": None,
                    "preTokenBalances": [balance("Escrow", "0")],
                    "postTokenBalances": [balance("Escrow", "100000000")],
                },
            }
        })

        assert await client.get_received_amount("5ig", "Escrow", USDC) == Decimal("100")

    @pytest.mark.asyncio
    async def test_unknown_transaction(self):
        client = make_client({"getTransaction": None})

        assert await client.get_received_amount("5ig", "Escrow", SOL) is None


class TestBroadcast:
    """Tests for building and sending transfers."""

    @pytest.mark.asyncio
    async def test_native_transfer_is_signed_by_custodial_key(self):
        keypair = Keypair.generate()
        recipient = Keypair.generate().address
        client = make_client({"getLatestBlockhash": {"value": {"blockhash": BLOCKHASH}}})

        signed = await client.build_transfer(
            keypair, [TransferInstruction(recipient, Decimal("1.5"), ReleaseType.FULL_RELEASE)], SOL
        )

        wire = base64.b64decode(signed.payload)
        signature, message = wire[1:65], wire[65:]
        assert wire[0] == 1
        assert base58.b58encode(signature).decode() == signed.tx_ref
        VerifyKey(keypair.public_key).verify(message, signature)

    @pytest.mark.asyncio
    async def test_token_transfer_needs_token_accounts(self):
        client = make_client({"getTokenAccountsByOwner": {"value": []}})

        with pytest.raises(LedgerRejectedError, match="No token account"):
            await client.build_transfer(
                Keypair.generate(),
                [TransferInstruction("Seller", Decimal("1"), ReleaseType.FULL_RELEASE)],
                USDC,
            )

    @pytest.mark.asyncio
    async def test_already_processed_is_success(self):
        client = make_client({"sendTransaction": {"error": {"code": -32002, "message": "This transaction has already been processed"}}})

        assert await client.broadcast(SignedTransfer("5ig", "AAAA")) == "5ig"

    @pytest.mark.asyncio
    async def test_rejection(self):
        client = make_client({"sendTransaction": {"error": {"code": -32002, "message": "insufficient lamports"}}})

        with pytest.raises(LedgerRejectedError, match="insufficient lamports"):
            await client.broadcast(SignedTransfer("5ig", "AAAA"))


class TestEncoding:
    """Tests for message serialization."""

    @pytest.mark.parametrize("n,encoded", [
        (0, b"\x00"),
        (127, b"\x7f"),
        (128, b"\x80\x01"),
        (16384, b"\x80\x80\x01"),
    ])
    def test_compact_u16(self, n, encoded):
        assert encode_length(n) == encoded

    def test_compact_u16_range(self):
        with pytest.raises(ValueError):
            encode_length(0x10000)

    def test_system_transfer_message_layout(self):
        payer = Keypair.generate().address
        recipient = Keypair.generate().address

        message = compile_message(payer, [system_transfer(payer, recipient, 1_000)], BLOCKHASH)

        assert message[:3] == bytes([1, 0, 1])
        assert message[3] == 3
        keys = [message[4 + 32 * i: 36 + 32 * i] for i in range(3)]
        assert keys == [base58.b58decode(payer), base58.b58decode(recipient), base58.b58decode(SYSTEM_PROGRAM_ID)]
        assert message[100:132] == base58.b58decode(BLOCKHASH)
