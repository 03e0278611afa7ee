"""
CoinJoin vote aggregation: data model, store, sessions, engine and scheduler
"""

from .models import (
    Credential,
    Vote,
    VotingSession,
    Candidate,
    Election,
    TransactionRecord,
    CoinJoinRun,
    SignatureRecord,
    VoteStatus,
    SessionStatus,
    ElectionStatus,
    TransactionType,
)
from .store import VotingStore, InMemoryVotingStore
from .session import SessionCoordinator
from .engine import CoinJoinEngine, RunRegistry
from .scheduler import CoinJoinTriggerScheduler

__all__ = [
    # Data model
    'Credential',
    'Vote',
    'VotingSession',
    'Candidate',
    'Election',
    'TransactionRecord',
    'CoinJoinRun',
    'SignatureRecord',
    'VoteStatus',
    'SessionStatus',
    'ElectionStatus',
    'TransactionType',

    # Components
    'VotingStore',
    'InMemoryVotingStore',
    'SessionCoordinator',
    'CoinJoinEngine',
    'RunRegistry',
    'CoinJoinTriggerScheduler',
]
