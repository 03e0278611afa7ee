"""
Tests for VarInt and raw transaction serialization
"""

import hashlib

import pytest

from chain.serializer import (
    RawTransaction,
    TransactionSerializer,
    TxInput,
    TxOutput,
    address_to_hash160,
    compute_txid,
    decode_varint,
    encode_varint,
    estimate_size,
    is_valid_address,
    p2pkh_script,
)
from utils.errors import ValidationError

VARINT_VECTORS = [
    (0, "00"),
    (0xfc, "fc"),
    (0xfd, "fdfd00"),
    (300, "fd2c01"),
    (0xffff, "fdffff"),
    (0x10000, "fe00000100"),
    (0xffffffff, "feffffffff"),
    (0x100000000, "ff0000000001000000"),
    (2 ** 64 - 1, "ff" + "ff" * 8),
]


@pytest.mark.parametrize("value,expected", VARINT_VECTORS)
def test_varint_vectors(value, expected):
    encoded = encode_varint(value)
    assert encoded.hex() == expected
    assert decode_varint(encoded) == (value, len(encoded))


@pytest.mark.parametrize("value", [-1, 2 ** 64])
def test_varint_out_of_range(value):
    with pytest.raises(ValidationError):
        encode_varint(value)


def test_decode_varint_with_offset_and_truncation():
    data = b"\xaa" + encode_varint(300) + b"\xbb"
    assert decode_varint(data, 1) == (300, 4)

    with pytest.raises(ValidationError):
        decode_varint(bytes.fromhex("fd2c"))


def _sample_tx():
    inputs = [
        TxInput(prev_txid=hashlib.sha256(f"input-{i}".encode()).hexdigest(), vout=i)
        for i in range(2)
    ]
    outputs = [
        TxOutput(value=546, address="mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn"),
        TxOutput(value=1000, address="ab" * 20),
        TxOutput(value=2 ** 40, address="mzBc4XEFSdzCDcTxAgf6EZXgsZWpztRhef"),
    ]
    return RawTransaction(version=2, inputs=inputs, outputs=outputs, lock_time=650000)


def test_transaction_decode_recovers_structure():
    tx = _sample_tx()
    raw = TransactionSerializer.encode(tx)
    decoded = TransactionSerializer.decode(raw)

    assert decoded.version == 2
    assert len(decoded.inputs) == 2
    assert len(decoded.outputs) == 3
    assert [o.value for o in decoded.outputs] == [546, 1000, 2 ** 40]
    assert decoded.lock_time == 650000
    assert [i.prev_txid for i in decoded.inputs] == [i.prev_txid for i in tx.inputs]
    assert [i.vout for i in decoded.inputs] == [0, 1]
    assert all(i.sequence == 0xffffffff for i in decoded.inputs)
    assert decoded.outputs[1].address == "ab" * 20


def test_transaction_layout():
    tx = _sample_tx()
    raw = TransactionSerializer.encode(tx)

    assert raw[:4] == bytes.fromhex("02000000")
    assert raw[4] == 2
    # Previous txid is written byte-reversed
    assert raw[5:37] == bytes.fromhex(tx.inputs[0].prev_txid)[::-1]
    assert raw[37:41] == bytes.fromhex("00000000")
    assert raw[41] == 0
    assert raw[-4:] == (650000).to_bytes(4, 'little')
    assert len(raw) == estimate_size(2, 3)
    assert TransactionSerializer.encode_hex(tx) == raw.hex()


def test_p2pkh_script_for_hex_hash():
    script = p2pkh_script(address_to_hash160("ab" * 20))
    assert script.hex() == "76a914" + "ab" * 20 + "88ac"


def test_address_hash_is_stable():
    address = "mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn"
    assert address_to_hash160(address) == hashlib.sha256(address.encode()).digest()[:20]
    with pytest.raises(ValidationError):
        address_to_hash160("")


def test_compute_txid():
    raw = TransactionSerializer.encode(_sample_tx())
    expected = hashlib.sha256(hashlib.sha256(raw).digest()).digest()[::-1].hex()

    assert compute_txid(raw) == expected
    assert compute_txid(raw.hex()) == expected


def test_invalid_prev_txid_rejected():
    tx = RawTransaction(inputs=[TxInput(prev_txid="xyz", vout=0)],
                        outputs=[TxOutput(value=1, address="ab" * 20)])
    with pytest.raises(ValidationError):
        TransactionSerializer.encode(tx)


def test_truncated_payload_rejected():
    raw = TransactionSerializer.encode(_sample_tx())
    with pytest.raises(ValidationError):
        TransactionSerializer.decode(raw[:-2])
    with pytest.raises(ValidationError):
        TransactionSerializer.decode(raw + b"\x00")
    with pytest.raises(ValidationError):
        TransactionSerializer.decode("zz")


@pytest.mark.parametrize("address,network,expected", [
    ("mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn", 'testnet', True),
    ("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", 'testnet', True),
    ("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", 'mainnet', True),
    ("bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq", 'mainnet', True),
    ("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", 'testnet', False),
    ("mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn", 'mainnet', False),
    ("not-an-address", 'testnet', False),
    ("mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn", 'regtest', False),
])
def test_is_valid_address(address, network, expected):
    assert is_valid_address(address, network) is expected
