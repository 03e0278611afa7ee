"""
Persistence boundary for the voting system.

VotingStore is the CRUD surface the protocol needs; InMemoryVotingStore backs
it with dicts. Multi-row units of work (vote acceptance, rollback, finalize)
must run inside ``async with store.atomic():``. Individual store calls never
take that lock themselves, so they can be composed inside one atomic block.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from .models import (
    Candidate,
    Credential,
    Election,
    SessionStatus,
    TransactionRecord,
    Vote,
    VoteStatus,
    VotingSession,
)

logger = logging.getLogger(__name__)


class VotingStore(ABC):
    """Abstract async store for credentials, votes, sessions, candidates, elections and transactions"""

    @abstractmethod
    def atomic(self):
        """Async context manager guarding a multi-row unit of work"""

    # Credentials
    @abstractmethod
    async def add_credential(self, credential: Credential): ...

    @abstractmethod
    async def get_credential(self, serial_number: str) -> Optional[Credential]: ...

    @abstractmethod
    async def claim_credential(self, serial_number: str) -> bool:
        """Compare-and-set is_used False -> True; returns False if already used or unknown"""

    # Elections and candidates
    @abstractmethod
    async def add_election(self, election: Election): ...

    @abstractmethod
    async def get_election(self, election_id: str) -> Optional[Election]: ...

    @abstractmethod
    async def list_elections(self) -> List[Election]: ...

    @abstractmethod
    async def save_election(self, election: Election): ...

    @abstractmethod
    async def add_candidate(self, candidate: Candidate): ...

    @abstractmethod
    async def list_candidates(self, election_id: str) -> List[Candidate]: ...

    @abstractmethod
    async def find_candidate_by_address(self, address: str) -> Optional[Candidate]: ...

    @abstractmethod
    async def save_candidate(self, candidate: Candidate): ...

    # Votes
    @abstractmethod
    async def add_vote(self, vote: Vote): ...

    @abstractmethod
    async def get_vote(self, vote_id: str) -> Optional[Vote]: ...

    @abstractmethod
    async def get_vote_by_serial(self, serial_number: str) -> Optional[Vote]: ...

    @abstractmethod
    async def list_votes(self, election_id: Optional[str] = None,
                         session_id: Optional[str] = None,
                         status: Optional[VoteStatus] = None) -> List[Vote]: ...

    @abstractmethod
    async def save_vote(self, vote: Vote): ...

    # Sessions
    @abstractmethod
    async def add_session(self, session: VotingSession): ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[VotingSession]: ...

    @abstractmethod
    async def list_sessions(self, election_id: Optional[str] = None,
                            statuses: Optional[Iterable[SessionStatus]] = None) -> List[VotingSession]: ...

    @abstractmethod
    async def save_session(self, session: VotingSession): ...

    # Transactions
    @abstractmethod
    async def add_transaction(self, record: TransactionRecord): ...

    @abstractmethod
    async def get_transaction(self, txid: str) -> Optional[TransactionRecord]: ...

    @abstractmethod
    async def list_transactions(self, session_id: Optional[str] = None) -> List[TransactionRecord]: ...

    @abstractmethod
    async def save_transaction(self, record: TransactionRecord): ...

    @abstractmethod
    async def delete_transaction(self, txid: str) -> bool: ...


class InMemoryVotingStore(VotingStore):
    """Dict-backed store; rows are kept by reference like an ORM identity map"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.credentials: Dict[str, Credential] = {}
        self.elections: Dict[str, Election] = {}
        self.candidates: Dict[str, Candidate] = {}
        self.votes: Dict[str, Vote] = {}
        self.sessions: Dict[str, VotingSession] = {}
        self.transactions: Dict[str, TransactionRecord] = {}

    def atomic(self):
        return self._lock

    async def add_credential(self, credential: Credential):
        if credential.serial_number in self.credentials:
            raise KeyError(f"Duplicate serial number {credential.serial_number[:8]}...")
        self.credentials[credential.serial_number] = credential

    async def get_credential(self, serial_number: str) -> Optional[Credential]:
        return self.credentials.get(serial_number)

    async def claim_credential(self, serial_number: str) -> bool:
        # No await between the check and the write
        credential = self.credentials.get(serial_number)
        if credential is None or credential.is_used:
            return False
        credential.is_used = True
        credential.used_at = time.time()
        return True

    async def add_election(self, election: Election):
        self.elections[election.id] = election

    async def get_election(self, election_id: str) -> Optional[Election]:
        return self.elections.get(election_id)

    async def list_elections(self) -> List[Election]:
        return list(self.elections.values())

    async def save_election(self, election: Election):
        self.elections[election.id] = election

    async def add_candidate(self, candidate: Candidate):
        self.candidates[candidate.id] = candidate

    async def list_candidates(self, election_id: str) -> List[Candidate]:
        return sorted(
            (c for c in self.candidates.values() if c.election_id == election_id),
            key=lambda c: c.vote_encoding)

    async def find_candidate_by_address(self, address: str) -> Optional[Candidate]:
        for candidate in self.candidates.values():
            if candidate.bitcoin_address == address:
                return candidate
        return None

    async def save_candidate(self, candidate: Candidate):
        self.candidates[candidate.id] = candidate

    async def add_vote(self, vote: Vote):
        self.votes[vote.id] = vote

    async def get_vote(self, vote_id: str) -> Optional[Vote]:
        return self.votes.get(vote_id)

    async def get_vote_by_serial(self, serial_number: str) -> Optional[Vote]:
        for vote in self.votes.values():
            if vote.serial_number == serial_number:
                return vote
        return None

    async def list_votes(self, election_id: Optional[str] = None,
                         session_id: Optional[str] = None,
                         status: Optional[VoteStatus] = None) -> List[Vote]:
        votes = [
            v for v in self.votes.values()
            if (election_id is None or v.election_id == election_id)
            and (session_id is None or v.session_id == session_id)
            and (status is None or v.status == status)
        ]
        return sorted(votes, key=lambda v: v.submitted_at)

    async def save_vote(self, vote: Vote):
        self.votes[vote.id] = vote

    async def add_session(self, session: VotingSession):
        self.sessions[session.id] = session

    async def get_session(self, session_id: str) -> Optional[VotingSession]:
        return self.sessions.get(session_id)

    async def list_sessions(self, election_id: Optional[str] = None,
                            statuses: Optional[Iterable[SessionStatus]] = None) -> List[VotingSession]:
        wanted = set(statuses) if statuses is not None else None
        return [
            s for s in self.sessions.values()
            if (election_id is None or s.election_id == election_id)
            and (wanted is None or s.status in wanted)
        ]

    async def save_session(self, session: VotingSession):
        self.sessions[session.id] = session

    async def add_transaction(self, record: TransactionRecord):
        self.transactions[record.txid] = record

    async def get_transaction(self, txid: str) -> Optional[TransactionRecord]:
        return self.transactions.get(txid)

    async def list_transactions(self, session_id: Optional[str] = None) -> List[TransactionRecord]:
        return [
            t for t in self.transactions.values()
            if session_id is None or t.session_id == session_id
        ]

    async def save_transaction(self, record: TransactionRecord):
        self.transactions[record.txid] = record

    async def delete_transaction(self, txid: str) -> bool:
        return self.transactions.pop(txid, None) is not None
