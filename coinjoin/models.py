"""
Data model for CoinJoin vote aggregation
========================================
Persisted rows (credentials, votes, sessions, candidates, elections,
transactions) and the in-memory CoinJoinRun that lives for one aggregation.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from utils.errors import StateError


def new_id() -> str:
    return str(uuid.uuid4())


class VoteStatus(Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SessionStatus(Enum):
    """Session states, listed in protocol order"""
    PREPARING = "preparing"
    INPUT_REGISTRATION = "input_registration"
    OUTPUT_REGISTRATION = "output_registration"
    SIGNING = "signing"
    BROADCASTING = "broadcasting"
    COMPLETED = "completed"
    FAILED = "failed"


# Sessions in these states still admit new votes
OPEN_SESSION_STATUSES = (SessionStatus.PREPARING, SessionStatus.INPUT_REGISTRATION)

TERMINAL_SESSION_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED)

_SESSION_ORDER = [
    SessionStatus.PREPARING,
    SessionStatus.INPUT_REGISTRATION,
    SessionStatus.OUTPUT_REGISTRATION,
    SessionStatus.SIGNING,
    SessionStatus.BROADCASTING,
    SessionStatus.COMPLETED,
]

_VOTE_TRANSITIONS = {
    VoteStatus.PENDING: {VoteStatus.PROCESSED, VoteStatus.FAILED},
    VoteStatus.PROCESSED: {VoteStatus.CONFIRMED, VoteStatus.PENDING, VoteStatus.FAILED},
    VoteStatus.CONFIRMED: {VoteStatus.PENDING},
    VoteStatus.FAILED: set(),
}


class ElectionStatus(Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransactionType(Enum):
    COINJOIN = "coinjoin"
    TALLY = "tally"
    FUNDING = "funding"


@dataclass
class Credential:
    """Single-use anonymous credential (KVAC-style)"""
    serial_number: str
    signature: str
    nonce: str
    election_id: str
    timestamp: int  # milliseconds, part of the signed message
    issued_at: float = field(default_factory=time.time)
    validation_proof: str = ""
    algorithm: str = "sha256"
    is_used: bool = False
    used_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'serialNumber': self.serial_number,
            'signature': self.signature,
            'nonce': self.nonce,
            'electionId': self.election_id,
            'timestamp': self.timestamp,
            'issuedAt': self.issued_at,
            'validationProof': self.validation_proof,
            'algorithm': self.algorithm,
        }


@dataclass
class Election:
    id: str
    title: str
    status: ElectionStatus = ElectionStatus.ACTIVE
    coinjoin_enabled: bool = True
    coinjoin_trigger: int = 2
    blockchain_network: str = "testnet"
    final_tally_transaction_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_collecting(self) -> bool:
        return self.status == ElectionStatus.ACTIVE and self.coinjoin_enabled


@dataclass
class Candidate:
    id: str
    election_id: str
    name: str
    vote_encoding: int
    bitcoin_address: str
    total_votes_received: int = 0


@dataclass
class Vote:
    id: str
    election_id: str
    serial_number: str
    commitment: str
    session_id: Optional[str] = None
    destination_address: Optional[str] = None
    status: VoteStatus = VoteStatus.PENDING
    transaction_id: Optional[str] = None
    submitted_at: float = field(default_factory=time.time)
    processed_at: Optional[float] = None
    confirmed_at: Optional[float] = None

    def transition(self, new_status: VoteStatus):
        if new_status == self.status:
            return
        if new_status not in _VOTE_TRANSITIONS[self.status]:
            raise StateError(
                f"Illegal vote transition {self.status.value} -> {new_status.value}",
                {'vote_id': self.id})
        self.status = new_status


@dataclass
class VotingSession:
    id: str
    election_id: str
    status: SessionStatus = SessionStatus.INPUT_REGISTRATION
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    min_participants: int = 2
    max_participants: int = 100
    current_participants: int = 0
    transaction_count: int = 0
    final_tally_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SESSION_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def advance(self, new_status: SessionStatus):
        """Move forward in protocol order, or into the absorbing failed state"""
        if new_status == self.status:
            return
        if self.is_terminal:
            raise StateError(
                f"Session {self.id} is already {self.status.value}",
                {'requested': new_status.value})
        if new_status != SessionStatus.FAILED and \
                _SESSION_ORDER.index(new_status) < _SESSION_ORDER.index(self.status):
            raise StateError(
                f"Session status cannot move back from {self.status.value} to {new_status.value}",
                {'session_id': self.id})
        self.status = new_status


@dataclass
class TransactionRecord:
    """Persisted ledger row for a broadcast transaction"""
    txid: str
    election_id: str
    session_id: str
    type: TransactionType
    raw_data: str
    metadata: str  # JSON text
    id: str = field(default_factory=new_id)
    confirmations: int = 0
    block_height: Optional[int] = None
    block_hash: Optional[str] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class SignatureRecord:
    input_index: int
    signature: str
    signer: str = "coordinator"


@dataclass
class CoinJoinRun:
    """Ephemeral state of one aggregation, one per active session"""
    session_id: str
    election_id: str
    participants: List[Vote] = field(default_factory=list)
    inputs: List[Any] = field(default_factory=list)
    outputs: List[Any] = field(default_factory=list)
    round: int = 1
    status: SessionStatus = SessionStatus.INPUT_REGISTRATION
    tx_id: Optional[str] = None
    raw_tx: Optional[str] = None
    signatures: List[SignatureRecord] = field(default_factory=list)
    anonymized_commitments: List[str] = field(default_factory=list)
    outputs_per_candidate: Dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    error: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'election_id': self.election_id,
            'round': self.round,
            'status': self.status.value,
            'participants': len(self.participants),
            'inputs': len(self.inputs),
            'outputs': len(self.outputs),
            'tx_id': self.tx_id,
            'error': self.error,
        }
