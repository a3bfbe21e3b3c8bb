"""Solana legacy transaction serialization.

Only what the escrow engine needs: system-program SOL transfers and SPL
token ``Transfer`` instructions, signed by a single custodial keypair that
is both fee payer and owner of the source funds.

Wire layout (legacy message):
    header (3 bytes) | compact-u16 key count | 32-byte keys
    | 32-byte recent blockhash | compact-u16 instruction count | instructions
"""
from __future__ import annotations

import base64
import struct
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

import base58

if TYPE_CHECKING:
    from ..custody import Keypair

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

_SYSTEM_TRANSFER = 2
_TOKEN_TRANSFER = 3


@dataclass(frozen=True, slots=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True, slots=True)
class Instruction:
    program_id: str
    accounts: tuple[AccountMeta, ...]
    data: bytes = field(repr=False)


def encode_length(n: int) -> bytes:
    """Solana compact-u16 encoding."""
    if n < 0 or n > 0xFFFF:
        raise ValueError(f"Length {n} out of compact-u16 range")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def system_transfer(sender: str, recipient: str, lamports: int) -> Instruction:
    return Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        accounts=(
            AccountMeta(sender, True, True),
            AccountMeta(recipient, False, True),
        ),
        data=struct.pack("<IQ", _SYSTEM_TRANSFER, lamports),
    )


def token_transfer(source_account: str, dest_account: str, owner: str, amount: int) -> Instruction:
    return Instruction(
        program_id=TOKEN_PROGRAM_ID,
        accounts=(
            AccountMeta(source_account, False, True),
            AccountMeta(dest_account, False, True),
            AccountMeta(owner, True, False),
        ),
        data=struct.pack("<BQ", _TOKEN_TRANSFER, amount),
    )


def compile_message(payer: str, instructions: Sequence[Instruction], recent_blockhash: str) -> bytes:
    """Serialize a legacy message with the payer as the first signer."""
    # pubkey -> [is_signer, is_writable], insertion ordered
    metas: dict[str, list[bool]] = {payer: [True, True]}
    for ix in instructions:
        for meta in ix.accounts:
            flags = metas.setdefault(meta.pubkey, [False, False])
            flags[0] = flags[0] or meta.is_signer
            flags[1] = flags[1] or meta.is_writable
        metas.setdefault(ix.program_id, [False, False])

    keys = [payer] + sorted(
        (k for k in metas if k != payer),
        key=lambda k: (not metas[k][0], not metas[k][1]),
    )
    index = {k: i for i, k in enumerate(keys)}

    num_signers = sum(1 for k in keys if metas[k][0])
    readonly_signed = sum(1 for k in keys if metas[k][0] and not metas[k][1])
    readonly_unsigned = sum(1 for k in keys if not metas[k][0] and not metas[k][1])

    out = bytearray([num_signers, readonly_signed, readonly_unsigned])
    out += encode_length(len(keys))
    for k in keys:
        out += base58.b58decode(k)
    out += base58.b58decode(recent_blockhash)
    out += encode_length(len(instructions))
    for ix in instructions:
        out.append(index[ix.program_id])
        out += encode_length(len(ix.accounts))
        out += bytes(index[m.pubkey] for m in ix.accounts)
        out += encode_length(len(ix.data))
        out += ix.data
    return bytes(out)


def sign_message(message: bytes, keypair: "Keypair") -> tuple[str, str]:
    """Sign a compiled message.

    Returns:
        Tuple of (base58 signature used as tx ref, base64 wire transaction)
    """
    signature = keypair.sign(message)
    wire = encode_length(1) + signature + message
    return base58.b58encode(signature).decode(), base64.b64encode(wire).decode()
