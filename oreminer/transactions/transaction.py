"""
Solana legacy transaction encoding.

Builds the wire format accepted by Solana RPC nodes and the Jito block
engine: a compiled message (header, account keys, recent blockhash,
instructions) prefixed by one ed25519 signature per required signer.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence, Tuple

import base58

from ..crypto.keys import Pubkey

SIGNATURE_SIZE = 64
PACKET_DATA_SIZE = 1232

# Signs ``message`` on behalf of ``pubkey`` and returns the 64-byte signature
SignFn = Callable[[Pubkey, bytes], bytes]


def encode_length(n: int) -> bytes:
    """Compact-u16 ("shortvec") encoding."""
    if not 0 <= n <= 0xFFFF:
        raise ValueError(f"Length {n} does not fit a compact-u16")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


@dataclass(frozen=True)
class AccountMeta:
    pubkey: Pubkey
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    program_id: Pubkey
    accounts: Tuple[AccountMeta, ...]
    data: bytes


@dataclass
class Message:
    """A compiled legacy message."""

    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: List[Pubkey]
    recent_blockhash: bytes
    instructions: List[Tuple[int, List[int], bytes]]

    @classmethod
    def compile(cls, instructions: Sequence[Instruction], payer: Pubkey, recent_blockhash: bytes) -> "Message":
        if len(recent_blockhash) != 32:
            raise ValueError("Recent blockhash must be 32 bytes")

        # pubkey -> [is_signer, is_writable], insertion ordered
        metas: Dict[Pubkey, List[bool]] = {payer: [True, True]}
        for ix in instructions:
            for meta in ix.accounts:
                flags = metas.setdefault(meta.pubkey, [False, False])
                flags[0] |= meta.is_signer
                flags[1] |= meta.is_writable
            metas.setdefault(ix.program_id, [False, False])

        def bucket(signer: bool, writable: bool) -> List[Pubkey]:
            return [
                key for key, (s, w) in metas.items()
                if key != payer and s == signer and w == writable
            ]

        writable_signed = [payer] + bucket(True, True)
        readonly_signed = bucket(True, False)
        writable_unsigned = bucket(False, True)
        readonly_unsigned = bucket(False, False)
        keys = writable_signed + readonly_signed + writable_unsigned + readonly_unsigned
        index = {key: i for i, key in enumerate(keys)}

        compiled = [
            (index[ix.program_id], [index[m.pubkey] for m in ix.accounts], bytes(ix.data))
            for ix in instructions
        ]

        return cls(
            num_required_signatures=len(writable_signed) + len(readonly_signed),
            num_readonly_signed=len(readonly_signed),
            num_readonly_unsigned=len(readonly_unsigned),
            account_keys=keys,
            recent_blockhash=bytes(recent_blockhash),
            instructions=compiled,
        )

    @property
    def signer_keys(self) -> List[Pubkey]:
        return self.account_keys[:self.num_required_signatures]

    def serialize(self) -> bytes:
        out = bytearray([
            self.num_required_signatures,
            self.num_readonly_signed,
            self.num_readonly_unsigned,
        ])
        out += encode_length(len(self.account_keys))
        for key in self.account_keys:
            out += key.raw
        out += self.recent_blockhash
        out += encode_length(len(self.instructions))
        for program_index, account_indices, data in self.instructions:
            out.append(program_index)
            out += encode_length(len(account_indices))
            out += bytes(account_indices)
            out += encode_length(len(data))
            out += data
        return bytes(out)


@dataclass
class Transaction:
    message: Message
    signatures: List[bytes] = field(default_factory=list)

    @classmethod
    def new_signed(
        cls,
        instructions: Sequence[Instruction],
        payer: Pubkey,
        recent_blockhash: bytes,
        sign: SignFn,
    ) -> "Transaction":
        """Compile and sign; *sign* is called once per required signer."""
        message = Message.compile(instructions, payer, recent_blockhash)
        payload = message.serialize()
        signatures = []
        for key in message.signer_keys:
            signature = sign(key, payload)
            if len(signature) != SIGNATURE_SIZE:
                raise ValueError(f"Signature for {key} is not {SIGNATURE_SIZE} bytes")
            signatures.append(signature)
        return cls(message=message, signatures=signatures)

    @property
    def signature(self) -> str:
        """The transaction id: base58 of the fee payer's signature."""
        return base58.b58encode(self.signatures[0]).decode("ascii")

    @property
    def signers(self) -> List[Pubkey]:
        return self.message.signer_keys

    @property
    def fee_payer(self) -> Pubkey:
        return self.message.account_keys[0]

    @property
    def recent_blockhash(self) -> bytes:
        return self.message.recent_blockhash

    def serialize(self) -> bytes:
        out = bytearray(encode_length(len(self.signatures)))
        for signature in self.signatures:
            out += signature
        out += self.message.serialize()
        if len(out) > PACKET_DATA_SIZE:
            raise ValueError(f"Transaction too large: {len(out)} > {PACKET_DATA_SIZE} bytes")
        return bytes(out)

    def to_base58(self) -> str:
        return base58.b58encode(self.serialize()).decode("ascii")
