"""
Raw transaction serialization
=============================
Encoder and decoder for the simplified legacy transaction layout used by the
tally transaction: no witness data and empty input scripts. All outputs are
P2PKH. Pure functions, no I/O.
"""

import hashlib
import re
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from utils.errors import ValidationError
from utils.utils import double_sha256

OP_DUP = 0x76
OP_HASH160 = 0xa9
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xac

MAX_VARINT = 2 ** 64 - 1
DEFAULT_SEQUENCE = 0xffffffff

_HEX40 = re.compile(r'^[0-9a-fA-F]{40}$')
_HEX64 = re.compile(r'^[0-9a-fA-F]{64}$')

ADDRESS_PATTERNS = {
    'testnet': re.compile(
        r'^(tb1[a-zA-HJ-NP-Z0-9]{25,87}|[mn][a-km-zA-HJ-NP-Z1-9]{25,34}|2[a-km-zA-HJ-NP-Z1-9]{25,34})$'),
    'mainnet': re.compile(
        r'^(bc1[a-zA-HJ-NP-Z0-9]{25,87}|[13][a-km-zA-HJ-NP-Z1-9]{25,34})$'),
}


@dataclass
class TxInput:
    prev_txid: str  # big-endian hex as displayed by explorers
    vout: int
    amount: int = 0
    address: Optional[str] = None
    sequence: int = DEFAULT_SEQUENCE


@dataclass
class TxOutput:
    value: int
    address: Optional[str] = None
    script_pubkey: Optional[bytes] = None
    vote_weight: int = 1
    candidate_id: Optional[str] = None

    def script(self) -> bytes:
        if self.script_pubkey is not None:
            return self.script_pubkey
        if not self.address:
            raise ValidationError("Output has neither an address nor a script")
        return p2pkh_script(address_to_hash160(self.address))


@dataclass
class RawTransaction:
    version: int = 2
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    lock_time: int = 0


def encode_varint(value: int) -> bytes:
    if not isinstance(value, int) or value < 0 or value > MAX_VARINT:
        raise ValidationError(f"VarInt out of range: {value}")
    if value < 0xfd:
        return bytes([value])
    if value <= 0xffff:
        return b'\xfd' + struct.pack('<H', value)
    if value <= 0xffffffff:
        return b'\xfe' + struct.pack('<I', value)
    return b'\xff' + struct.pack('<Q', value)


def decode_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Returns (value, offset just past the VarInt)"""
    if offset >= len(data):
        raise ValidationError("Truncated VarInt")
    prefix = data[offset]
    if prefix < 0xfd:
        return prefix, offset + 1
    size, fmt = {0xfd: (2, '<H'), 0xfe: (4, '<I'), 0xff: (8, '<Q')}[prefix]
    end = offset + 1 + size
    if end > len(data):
        raise ValidationError("Truncated VarInt")
    return struct.unpack(fmt, data[offset + 1:end])[0], end


def address_to_hash160(address: str) -> bytes:
    """
    20-byte hash for a P2PKH script. A 40-hex-char string is taken as the hash
    itself; anything else is hashed (sha256, truncated) since base58/bech32
    decoding is not performed here.
    """
    if not address:
        raise ValidationError("Empty destination address")
    if _HEX40.match(address):
        return bytes.fromhex(address)
    return hashlib.sha256(address.encode('utf-8')).digest()[:20]


def p2pkh_script(hash160: bytes) -> bytes:
    if len(hash160) != 20:
        raise ValidationError("P2PKH hash must be 20 bytes")
    return bytes([OP_DUP, OP_HASH160, 0x14]) + hash160 + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def hash160_from_script(script: bytes) -> Optional[str]:
    if (len(script) == 25 and script[0] == OP_DUP and script[1] == OP_HASH160
            and script[2] == 0x14 and script[23] == OP_EQUALVERIFY and script[24] == OP_CHECKSIG):
        return script[3:23].hex()
    return None


def is_valid_address(address: str, network: str = 'testnet') -> bool:
    pattern = ADDRESS_PATTERNS.get(network)
    if pattern is None or not isinstance(address, str):
        return False
    return bool(pattern.match(address))


def compute_txid(raw: Union[bytes, str]) -> str:
    if isinstance(raw, str):
        raw = bytes.fromhex(raw)
    return double_sha256(raw)[::-1].hex()


def estimate_size(num_inputs: int, num_outputs: int) -> int:
    """Exact byte size of a transaction in this layout"""
    input_size = 32 + 4 + 1 + 4
    output_size = 8 + 1 + 25
    return (4 + len(encode_varint(num_inputs)) + num_inputs * input_size
            + len(encode_varint(num_outputs)) + num_outputs * output_size + 4)


class TransactionSerializer:
    """Binary encoder/decoder for RawTransaction"""

    @staticmethod
    def encode(tx: RawTransaction) -> bytes:
        parts = [struct.pack('<I', tx.version), encode_varint(len(tx.inputs))]

        for tx_in in tx.inputs:
            if not isinstance(tx_in.prev_txid, str) or not _HEX64.match(tx_in.prev_txid):
                raise ValidationError(f"Invalid previous txid: {tx_in.prev_txid!r}")
            parts.append(bytes.fromhex(tx_in.prev_txid)[::-1])
            parts.append(struct.pack('<I', tx_in.vout))
            parts.append(b'\x00')  # empty scriptSig
            parts.append(struct.pack('<I', tx_in.sequence))

        parts.append(encode_varint(len(tx.outputs)))
        for tx_out in tx.outputs:
            if tx_out.value < 0:
                raise ValidationError(f"Negative output value: {tx_out.value}")
            script = tx_out.script()
            parts.append(struct.pack('<Q', tx_out.value))
            parts.append(encode_varint(len(script)))
            parts.append(script)

        parts.append(struct.pack('<I', tx.lock_time))
        return b''.join(parts)

    @classmethod
    def encode_hex(cls, tx: RawTransaction) -> str:
        return cls.encode(tx).hex()

    @staticmethod
    def decode(raw: Union[bytes, str]) -> RawTransaction:
        if isinstance(raw, str):
            try:
                raw = bytes.fromhex(raw)
            except ValueError:
                raise ValidationError("Transaction payload is not valid hex")

        def take(offset: int, size: int) -> bytes:
            if offset + size > len(raw):
                raise ValidationError("Truncated transaction payload")
            return raw[offset:offset + size]

        version = struct.unpack('<I', take(0, 4))[0]
        offset = 4

        num_inputs, offset = decode_varint(raw, offset)
        inputs = []
        for _ in range(num_inputs):
            prev_txid = take(offset, 32)[::-1].hex()
            vout = struct.unpack('<I', take(offset + 32, 4))[0]
            offset += 36
            script_len, offset = decode_varint(raw, offset)
            take(offset, script_len)
            offset += script_len
            sequence = struct.unpack('<I', take(offset, 4))[0]
            offset += 4
            inputs.append(TxInput(prev_txid=prev_txid, vout=vout, sequence=sequence))

        num_outputs, offset = decode_varint(raw, offset)
        outputs = []
        for _ in range(num_outputs):
            value = struct.unpack('<Q', take(offset, 8))[0]
            offset += 8
            script_len, offset = decode_varint(raw, offset)
            script = take(offset, script_len)
            offset += script_len
            outputs.append(TxOutput(value=value, address=hash160_from_script(script),
                                    script_pubkey=script))

        lock_time = struct.unpack('<I', take(offset, 4))[0]
        offset += 4
        if offset != len(raw):
            raise ValidationError(f"{len(raw) - offset} trailing bytes after lock time")

        return RawTransaction(version=version, inputs=inputs, outputs=outputs, lock_time=lock_time)
