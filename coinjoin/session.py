"""
Per-election batching of accepted votes into CoinJoin sessions.
"""

import logging
from typing import Dict, List, Optional

from config.config import CoinJoinConfig
from utils.errors import StateError
from utils.utils import short_id

from .models import (
    OPEN_SESSION_STATUSES,
    SessionStatus,
    Vote,
    VoteStatus,
    VotingSession,
    new_id,
)
from .store import VotingStore

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """
    Assigns votes to the election's open session and decides when a batch is
    ready. Methods without ``atomic`` in their contract must be called inside
    ``store.atomic()``; prepare_retry_batch takes the lock itself.
    """

    def __init__(self, store: VotingStore, config: Optional[CoinJoinConfig] = None):
        self.store = store
        self.config = config or CoinJoinConfig()

    async def threshold_for(self, election_id: str) -> int:
        election = await self.store.get_election(election_id)
        if election is not None and election.coinjoin_trigger:
            return election.coinjoin_trigger
        return self.config.default_threshold

    async def _find_session_with_room(self, election_id: str) -> Optional[VotingSession]:
        """Oldest session of the election that still admits votes and has room"""
        for session in sorted(await self.store.list_sessions(election_id, OPEN_SESSION_STATUSES),
                              key=lambda s: s.start_time):
            if session.current_participants < session.max_participants:
                return session
        return None

    async def _new_session(self, election_id: str) -> VotingSession:
        session = VotingSession(
            id=new_id(),
            election_id=election_id,
            status=SessionStatus.INPUT_REGISTRATION,
            min_participants=self.config.min_participants,
            max_participants=self.config.max_participants,
        )
        await self.store.add_session(session)
        logger.info(f"Opened session {short_id(session.id)} for election {election_id}")
        return session

    async def _open_session(self, election_id: str) -> VotingSession:
        session = await self._find_session_with_room(election_id)
        if session is not None:
            return session
        return await self._new_session(election_id)

    async def assign(self, election_id: str, vote: Vote) -> str:
        """Put the vote in the open session, creating one if needed"""
        if vote.session_id is not None:
            raise StateError("Vote is already assigned to a session",
                             {'vote_id': vote.id, 'session_id': vote.session_id})
        session = await self._open_session(election_id)
        vote.session_id = session.id
        session.current_participants += 1
        await self.store.save_vote(vote)
        await self.store.save_session(session)
        return session.id

    async def pending_count(self, session_id: str) -> int:
        votes = await self.store.list_votes(session_id=session_id, status=VoteStatus.PENDING)
        return len(votes)

    async def should_trigger(self, session_id: str) -> bool:
        session = await self.store.get_session(session_id)
        if session is None or not session.is_open:
            return False
        threshold = await self.threshold_for(session.election_id)
        return await self.pending_count(session_id) >= threshold

    async def close(self, session_id: str):
        """Stop admissions; later votes for the election open a new session"""
        session = await self.store.get_session(session_id)
        if session is None:
            raise StateError(f"Unknown session {session_id}")
        session.advance(SessionStatus.OUTPUT_REGISTRATION)
        await self.store.save_session(session)
        logger.info(
            f"Session {short_id(session.id)} closed with "
            f"{session.current_participants} participants")

    async def trigger_if_ready(self, session_id: str) -> bool:
        if not await self.should_trigger(session_id):
            return False
        await self.close(session_id)
        return True

    @staticmethod
    def _reachable(target: VotingSession, eligible: List[Vote]) -> int:
        """Pending votes the target session would hold after taking what fits"""
        held = sum(1 for vote in eligible if vote.session_id == target.id)
        room = max(0, target.max_participants - target.current_participants)
        return held + min(room, len(eligible) - held)

    async def prepare_retry_batch(self, election_id: str) -> Optional[str]:
        """
        Gather pending votes that no running batch owns (those in open
        sessions or left behind by a failed one) and, if they reach the
        threshold, close a session holding them. Returns its id or None.
        A new session is only opened when it can reach the threshold.
        Takes ``store.atomic()`` itself.
        """
        async with self.store.atomic():
            threshold = await self.threshold_for(election_id)
            pending = await self.store.list_votes(election_id=election_id,
                                                  status=VoteStatus.PENDING)
            eligible: List[Vote] = []
            sources: Dict[str, VotingSession] = {}
            for vote in pending:
                session = await self.store.get_session(vote.session_id) if vote.session_id else None
                if session is None or session.is_open or session.status == SessionStatus.FAILED:
                    eligible.append(vote)
                    if session is not None:
                        sources[session.id] = session

            if len(eligible) < threshold:
                return None

            target = await self._find_session_with_room(election_id)
            if target is None or self._reachable(target, eligible) < threshold:
                if self.config.max_participants < threshold:
                    logger.warning(
                        f"Election {election_id} needs {threshold} votes per batch but "
                        f"sessions hold at most {self.config.max_participants}")
                    return None
                target = await self._new_session(election_id)

            moved = 0
            for vote in eligible:
                if vote.session_id == target.id:
                    continue
                if target.current_participants >= target.max_participants:
                    break
                source = sources.get(vote.session_id)
                if source is not None and source.is_open:
                    source.current_participants -= 1
                    await self.store.save_session(source)
                vote.session_id = target.id
                target.current_participants += 1
                await self.store.save_vote(vote)
                moved += 1
            await self.store.save_session(target)

            if moved:
                logger.info(
                    f"Moved {moved} pending votes into session {short_id(target.id)}")
            await self.close(target.id)
            return target.id
