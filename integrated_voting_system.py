#!/usr/bin/env python3
"""
Integrated CoinJoin Voting System
=================================
Anonymous credentials + vote proofs + CoinJoin tally transactions.

Vote flow:
1. Voter requests a single-use credential for an election
2. Voter submits commitment + proof + credential serial number
3. Accepted votes are batched per election into sessions
4. When a session reaches its threshold, the CoinJoin engine builds one
   transaction with an output per vote to the chosen candidate's address
5. The transaction is broadcast, tracked to finality and tallies are updated
"""

import asyncio
import json
import logging
import os
import secrets
import time
from typing import Any, Dict, List, Optional, Set

from chain.broadcast import BroadcastGateway
from chain.monitor import ConfirmationMonitor
from chain.serializer import is_valid_address
from coinjoin.engine import CoinJoinEngine
from coinjoin.models import (
    Candidate,
    Credential,
    Election,
    ElectionStatus,
    Vote,
    VoteStatus,
    new_id,
)
from coinjoin.scheduler import CoinJoinTriggerScheduler
from coinjoin.session import SessionCoordinator
from coinjoin.store import InMemoryVotingStore, VotingStore
from config.config import SystemConfig
from kvac.credentials import CredentialIssuer
from utils.errors import CryptoError, StateError, ValidationError
from utils.utils import PerformanceMonitor, compute_hash, short_id
from zk.proof_verifier import ProofVerifier, build_vote_proof, generate_vote_commitment

logger = logging.getLogger(__name__)

# ============================================================================
# INTEGRATED VOTING SYSTEM
# ============================================================================


class IntegratedVotingSystem:
    """
    Inbound interface of the voting system:
    credentials, vote submission, status queries, receipts and results.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        store: Optional[VotingStore] = None,
        gateway: Optional[BroadcastGateway] = None,
    ):
        self.config = config or SystemConfig()
        self.store = store or InMemoryVotingStore()
        self.performance_monitor = PerformanceMonitor()

        logger.info("Initializing CoinJoin voting system...")

        self.issuer = CredentialIssuer(self.config.credential_config)
        self.verifier = ProofVerifier(self.config.credential_config)
        self.gateway = gateway or BroadcastGateway(self.config.broadcast_config)
        self.monitor = ConfirmationMonitor(self.gateway, self.store, self.config.monitor_config)
        self.coordinator = SessionCoordinator(self.store, self.config.coinjoin_config)
        self.engine = CoinJoinEngine(
            self.store,
            self.gateway,
            self.monitor,
            signer=self.issuer.sign_bytes,
            config=self.config.coinjoin_config,
            performance_monitor=self.performance_monitor,
        )
        self.scheduler = CoinJoinTriggerScheduler(
            self.store, self.coordinator, self.engine,
            interval=self.config.coinjoin_config.scheduler_interval)

        self._background_tasks: Set[asyncio.Task] = set()
        logger.info(
            f"Voting system ready (network={self.config.broadcast_config.network}, "
            f"broadcast={'on' if self.config.broadcast_config.enabled else 'mock'})")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self.scheduler.start()

    async def drain(self):
        """Wait for every scheduled CoinJoin run to finish"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self):
        await self.scheduler.stop()
        await self.drain()
        await self.monitor.stop()
        logger.info("Voting system shut down")

    def _spawn_run(self, session_id: str) -> asyncio.Task:
        task = self.engine.start(session_id)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Elections and candidates
    # ------------------------------------------------------------------

    async def create_election(
        self,
        title: str,
        coinjoin_trigger: Optional[int] = None,
        coinjoin_enabled: bool = True,
        network: Optional[str] = None,
        status: ElectionStatus = ElectionStatus.ACTIVE,
    ) -> Election:
        if not title:
            raise ValidationError("Election title is required")
        cj = self.config.coinjoin_config
        trigger = cj.default_threshold if coinjoin_trigger is None else coinjoin_trigger
        if trigger < 1:
            raise ValidationError("CoinJoin trigger must be at least 1")
        if trigger > cj.max_participants:
            raise ValidationError(
                f"CoinJoin trigger {trigger} exceeds the session limit of "
                f"{cj.max_participants} participants")

        election = Election(
            id=new_id(),
            title=title,
            status=status,
            coinjoin_enabled=coinjoin_enabled,
            coinjoin_trigger=trigger,
            blockchain_network=network or self.config.broadcast_config.network,
        )
        await self.store.add_election(election)
        logger.info(f"Created election '{title}' ({election.id}), trigger={trigger}")
        return election

    async def _require_election(self, election_id: str) -> Election:
        election = await self.store.get_election(election_id)
        if election is None:
            raise ValidationError(f"Unknown election {election_id}")
        return election

    async def add_candidate(self, election_id: str, name: str, bitcoin_address: str,
                            vote_encoding: Optional[int] = None) -> Candidate:
        election = await self._require_election(election_id)
        if not name:
            raise ValidationError("Candidate name is required")
        if not is_valid_address(bitcoin_address, election.blockchain_network):
            raise ValidationError(
                f"Invalid {election.blockchain_network} address for candidate {name}")

        async with self.store.atomic():
            if await self.store.find_candidate_by_address(bitcoin_address) is not None:
                raise ValidationError("Bitcoin address already assigned to a candidate")

            existing = await self.store.list_candidates(election_id)
            if vote_encoding is None:
                vote_encoding = len(existing) + 1
            if any(c.vote_encoding == vote_encoding for c in existing):
                raise ValidationError(f"Vote encoding {vote_encoding} already in use")

            candidate = Candidate(
                id=new_id(),
                election_id=election_id,
                name=name,
                vote_encoding=vote_encoding,
                bitcoin_address=bitcoin_address,
            )
            await self.store.add_candidate(candidate)

        logger.info(f"Added candidate {name} (encoding {vote_encoding}) to {election_id}")
        return candidate

    # ------------------------------------------------------------------
    # Credentials and votes
    # ------------------------------------------------------------------

    async def request_credential(self, user_id: str, election_id: str,
                                 nonce: Optional[str] = None) -> Credential:
        election = await self._require_election(election_id)
        if election.status != ElectionStatus.ACTIVE:
            raise StateError(f"Election {election_id} is {election.status.value}")

        credential = self.issuer.issue(user_id, election_id, nonce)
        await self.store.add_credential(credential)
        return credential

    @staticmethod
    def _validate_submission(election_id, commitment, proof, serial_number, destination_address):
        if not election_id or not isinstance(election_id, str):
            raise ValidationError("election_id is required")
        if not commitment or not isinstance(commitment, str):
            raise ValidationError("commitment must be a non-empty string")
        if not isinstance(proof, dict):
            raise ValidationError("proof must be an object")
        if not serial_number or not isinstance(serial_number, str):
            raise ValidationError("serial_number is required")
        if destination_address is not None and not isinstance(destination_address, str):
            raise ValidationError("destination_address must be a string")

    async def submit_vote(
        self,
        election_id: str,
        commitment: str,
        proof: Dict[str, Any],
        serial_number: str,
        destination_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Accept a vote. Raises ValidationError, AuthorizationError, CryptoError
        or StateError synchronously; aggregation runs in the background.
        """
        with self.performance_monitor.start_operation('submit_vote'):
            self._validate_submission(election_id, commitment, proof, serial_number,
                                      destination_address)
            election = await self._require_election(election_id)
            if not election.is_collecting:
                raise StateError(f"Election {election_id} is not accepting CoinJoin votes")
            if destination_address and not is_valid_address(
                    destination_address, election.blockchain_network):
                raise ValidationError("Invalid destination address")

            verification = self.verifier.verify(proof, commitment, serial_number)
            if not verification.valid:
                raise CryptoError(f"Vote proof rejected: {verification.error}",
                                  verification.to_dict())

            async with self.store.atomic():
                await self.issuer.authorize(self.store, serial_number, election_id)
                await self.issuer.consume(self.store, serial_number)

                vote = Vote(
                    id=new_id(),
                    election_id=election_id,
                    serial_number=serial_number,
                    commitment=commitment,
                    destination_address=destination_address,
                )
                await self.store.add_vote(vote)
                session_id = await self.coordinator.assign(election_id, vote)
                pending = await self.coordinator.pending_count(session_id)
                triggered = await self.coordinator.trigger_if_ready(session_id)

        logger.info(
            f"Accepted vote {short_id(vote.id)} into session {short_id(session_id)} "
            f"({pending} pending)")
        if triggered:
            self._spawn_run(session_id)

        return {
            'vote_id': vote.id,
            'session_id': session_id,
            'pending_count': pending,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query_vote_status(self, vote_id: str) -> Dict[str, Any]:
        vote = await self.store.get_vote(vote_id)
        if vote is None:
            raise ValidationError(f"Unknown vote {vote_id}")

        confirmations = None
        if vote.transaction_id:
            record = await self.store.get_transaction(vote.transaction_id)
            if record is not None:
                confirmations = record.confirmations
        return {
            'status': vote.status.value,
            'transaction_id': vote.transaction_id,
            'confirmations': confirmations,
        }

    async def query_session_stats(self, session_id: str) -> Dict[str, Any]:
        session = await self.store.get_session(session_id)
        if session is None:
            raise ValidationError(f"Unknown session {session_id}")

        votes = await self.store.list_votes(session_id=session_id)
        by_status = {status.value: 0 for status in VoteStatus}
        for vote in votes:
            by_status[vote.status.value] += 1

        transactions = [
            {
                'txid': t.txid,
                'type': t.type.value,
                'confirmations': t.confirmations,
                'block_height': t.block_height,
                'metadata': json.loads(t.metadata),
            }
            for t in await self.store.list_transactions(session_id=session_id)
        ]
        return {
            'status': session.status.value,
            'participant_counts': {
                'current': session.current_participants,
                'min': session.min_participants,
                'max': session.max_participants,
                **by_status,
            },
            'transactions': transactions,
            'final_tally_transaction_id': session.final_tally_transaction_id,
        }

    async def get_receipt(self, serial_number: str) -> Dict[str, Any]:
        """Anonymous receipt for the vote cast with this serial number"""
        vote = await self.store.get_vote_by_serial(serial_number)
        if vote is None:
            raise ValidationError("No vote recorded for this serial number")
        receipt_id = compute_hash(f"{vote.id}{serial_number}")[:16]
        return {
            'receipt_id': receipt_id,
            'election_id': vote.election_id,
            'status': vote.status.value,
            'transaction_id': vote.transaction_id if vote.status == VoteStatus.CONFIRMED else None,
            'submitted_at': vote.submitted_at,
        }

    async def get_election_results(self, election_id: str) -> Dict[str, Any]:
        election = await self._require_election(election_id)
        candidates = await self.store.list_candidates(election_id)
        total = sum(c.total_votes_received for c in candidates)
        return {
            'election_id': election_id,
            'title': election.title,
            'status': election.status.value,
            'total_votes': total,
            'final_tally_transaction_id': election.final_tally_transaction_id,
            'results': [
                {
                    'candidate_id': c.id,
                    'name': c.name,
                    'vote_encoding': c.vote_encoding,
                    'bitcoin_address': c.bitcoin_address,
                    'total_votes_received': c.total_votes_received,
                    'percentage': round(100.0 * c.total_votes_received / total, 2) if total else 0.0,
                }
                for c in candidates
            ],
        }

    def get_system_metrics(self) -> Dict[str, Any]:
        """Get comprehensive system metrics"""
        return {
            'environment': self.config.environment,
            'credentials': self.issuer.get_security_stats(),
            'engine': self.engine.get_status(),
            'broadcast': self.gateway.get_status(),
            'confirmation_tasks': self.monitor.active_count,
            'scheduler_running': self.scheduler.is_running,
            'performance': self.performance_monitor.get_summary(),
        }

# ============================================================================
# DEMONSTRATION
# ============================================================================


DEMO_CANDIDATES = [
    ("Alice", "mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn"),
    ("Bob", "mzBc4XEFSdzCDcTxAgf6EZXgsZWpztRhef"),
    ("Carol", "n3ZLBWCZQHfXGWSPKmUrXX3sNeozxWxdqs"),
]


async def demonstrate_integrated_system(num_voters: int = 6, threshold: int = 3,
                                        config: Optional[SystemConfig] = None) -> Dict[str, Any]:
    """Run one election end to end against the mock broadcast backend"""
    print("\n" + "=" * 80)
    print("🗳️  COINJOIN ANONYMOUS VOTING DEMONSTRATION")
    print("=" * 80 + "\n")

    config = config or SystemConfig()
    config.broadcast_config.enabled = False
    if not config.credential_config.coordinator_secret:
        # Demo only; services must configure COORDINATOR_SECRET_KEY
        config.credential_config.coordinator_secret = os.environ.get(
            'COORDINATOR_SECRET_KEY') or secrets.token_hex(32)
        logger.warning("Using a throwaway coordinator secret for the demo")

    system = IntegratedVotingSystem(config)
    election = await system.create_election("Demo Election", coinjoin_trigger=threshold)
    candidates = [
        await system.add_candidate(election.id, name, address)
        for name, address in DEMO_CANDIDATES
    ]
    print(f"📋 Election {election.title}: {len(candidates)} candidates, trigger {threshold}\n")

    vote_ids: List[str] = []
    for i in range(num_voters):
        candidate = candidates[i % len(candidates)]
        credential = await system.request_credential(f"voter_{i:03d}", election.id)
        commitment = generate_vote_commitment(candidate.vote_encoding)
        proof = build_vote_proof(credential.serial_number, commitment.commitment)
        ack = await system.submit_vote(election.id, commitment.commitment, proof,
                                       credential.serial_number)
        vote_ids.append(ack['vote_id'])
        print(f"  ✓ voter_{i:03d}: vote queued in session {ack['session_id'][:8]}... "
              f"({ack['pending_count']} pending)")

    await system.drain()
    # Votes left below the threshold are picked up by a scheduler pass
    await system.scheduler.tick()

    results = await system.get_election_results(election.id)
    print("\n" + "=" * 80)
    print(" ELECTION RESULTS")
    print("=" * 80)
    for row in results['results']:
        print(f"  {row['name']:10s} {row['total_votes_received']:3d} votes "
              f"({row['percentage']:.1f}%)")

    statuses = [await system.query_vote_status(vote_id) for vote_id in vote_ids]
    confirmed = sum(1 for s in statuses if s['status'] == VoteStatus.CONFIRMED.value)
    print(f"\nConfirmed votes: {confirmed}/{len(vote_ids)}")

    await system.shutdown()
    print("\n" + "=" * 80)
    print(" DEMONSTRATION COMPLETE")
    print("=" * 80 + "\n")
    return results


if __name__ == "__main__":
    asyncio.run(demonstrate_integrated_system())
