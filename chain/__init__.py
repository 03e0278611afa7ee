"""
Blockchain layer: transaction serialization, broadcast and confirmation tracking
"""

from .serializer import (
    TransactionSerializer,
    RawTransaction,
    TxInput,
    TxOutput,
    encode_varint,
    decode_varint,
    compute_txid,
    address_to_hash160,
    p2pkh_script,
    estimate_size,
    is_valid_address,
)
from .broadcast import (
    BroadcastGateway,
    BroadcastResult,
    ConfirmationStatus,
    CircuitBreaker,
    BroadcastBackend,
    RPCBackend,
    EsploraBackend,
    BlockCypherBackend,
    MockBackend,
    BackendError,
)
from .monitor import ConfirmationMonitor

__all__ = [
    # Serialization
    'TransactionSerializer',
    'RawTransaction',
    'TxInput',
    'TxOutput',
    'encode_varint',
    'decode_varint',
    'compute_txid',
    'address_to_hash160',
    'p2pkh_script',
    'estimate_size',
    'is_valid_address',

    # Broadcast
    'BroadcastGateway',
    'BroadcastResult',
    'ConfirmationStatus',
    'CircuitBreaker',
    'BroadcastBackend',
    'RPCBackend',
    'EsploraBackend',
    'BlockCypherBackend',
    'MockBackend',
    'BackendError',

    # Monitoring
    'ConfirmationMonitor',
]
