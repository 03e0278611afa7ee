"""
CoinJoin Aggregation Engine
===========================
Runs the four-round protocol over one closed session:

1. Input registration  - one synthesized input per participant vote
2. Output registration - one output per vote to the chosen candidate's address
3. Signing             - serialize, derive the txid, one signature per input
4. Broadcasting        - publish, persist, confirm votes and finalize tallies

Any failure marks the session failed and returns its votes to pending so the
scheduler can batch them again. Errors never propagate out of ``run``.
"""

import asyncio
import hashlib
import json
import logging
import secrets
import time
from collections import Counter
from typing import Callable, Dict, List, Optional

from chain.broadcast import BroadcastGateway, BroadcastResult
from chain.monitor import ConfirmationMonitor
from chain.serializer import RawTransaction, TransactionSerializer, TxInput, TxOutput, compute_txid
from config.config import CoinJoinConfig
from utils.errors import StateError
from utils.utils import PerformanceMonitor, format_duration, short_id
from zk.proof_verifier import (
    aggregate_commitments,
    anonymize_commitment,
    decode_vote_encoding,
    fallback_vote_encoding,
)

from .models import (
    CoinJoinRun,
    SessionStatus,
    SignatureRecord,
    TransactionRecord,
    TransactionType,
    VoteStatus,
)
from .store import VotingStore

logger = logging.getLogger(__name__)


class RunRegistry:
    """Active runs keyed by session id; the reentrancy guard for the engine"""

    def __init__(self):
        self._runs: Dict[str, CoinJoinRun] = {}
        self._lock = asyncio.Lock()

    async def try_register(self, session_id: str, run: CoinJoinRun) -> bool:
        async with self._lock:
            if session_id in self._runs:
                return False
            self._runs[session_id] = run
            return True

    async def release(self, session_id: str):
        async with self._lock:
            self._runs.pop(session_id, None)

    def get(self, session_id: str) -> Optional[CoinJoinRun]:
        return self._runs.get(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._runs

    def active_ids(self) -> List[str]:
        return list(self._runs)

    def __len__(self):
        return len(self._runs)


class CoinJoinEngine:
    """Drives CoinJoinRuns through the four rounds"""

    def __init__(
        self,
        store: VotingStore,
        gateway: BroadcastGateway,
        monitor: ConfirmationMonitor,
        signer: Callable[[bytes], str],
        config: Optional[CoinJoinConfig] = None,
        performance_monitor: Optional[PerformanceMonitor] = None,
        registry: Optional[RunRegistry] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.monitor = monitor
        self.signer = signer
        self.config = config or CoinJoinConfig()
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self.registry = registry or RunRegistry()

        self.completed_runs = 0
        self.failed_runs = 0

    def start(self, session_id: str) -> asyncio.Task:
        """Schedule a run without waiting for it"""
        return asyncio.create_task(self.run(session_id), name=f"coinjoin-{session_id[:8]}")

    async def run(self, session_id: str) -> Optional[CoinJoinRun]:
        """
        Execute all rounds for a session. Returns the finished (or failed) run,
        or None when the session is unknown or already being processed.
        """
        session = await self.store.get_session(session_id)
        if session is None:
            logger.error(f"CoinJoin requested for unknown session {session_id}")
            return None

        run = CoinJoinRun(session_id=session_id, election_id=session.election_id)
        if not await self.registry.try_register(session_id, run):
            logger.info(f"Session {short_id(session_id)} already has an active run, skipping")
            return None

        logger.info(f"Starting CoinJoin for session {short_id(session_id)}")
        try:
            with self.performance_monitor.start_operation('coinjoin_run'):
                with self.performance_monitor.start_operation('round_1_input_registration'):
                    await self._register_inputs(run)
                with self.performance_monitor.start_operation('round_2_output_registration'):
                    await self._register_outputs(run)
                with self.performance_monitor.start_operation('round_3_signing'):
                    await self._sign(run)
                with self.performance_monitor.start_operation('round_4_broadcasting'):
                    await self._begin_broadcast(run)
                    result = await self.gateway.broadcast(run.raw_tx)
                    await self._finalize(run, result)
        except asyncio.CancelledError:
            run.error = "cancelled"
            await self._rollback(run)
            raise
        except Exception as e:
            run.error = str(e) or e.__class__.__name__
            logger.error(
                f"CoinJoin for session {short_id(session_id)} failed in round "
                f"{run.round}: {run.error}", exc_info=True)
            await self._rollback(run)
            return run
        finally:
            await self.registry.release(session_id)

        self.monitor.track(run.tx_id)
        self.completed_runs += 1
        logger.info(
            f"CoinJoin for session {short_id(session_id)} completed: "
            f"tx {short_id(run.tx_id, 16)}, {len(run.outputs)} outputs, "
            f"{format_duration(time.time() - run.started_at)}")
        return run

    async def _set_session_status(self, run: CoinJoinRun, status: SessionStatus):
        session = await self.store.get_session(run.session_id)
        if session is None:
            raise StateError(f"Session {run.session_id} disappeared")
        session.advance(status)
        await self.store.save_session(session)
        run.status = status

    async def _register_inputs(self, run: CoinJoinRun):
        run.round = 1
        run.status = SessionStatus.INPUT_REGISTRATION
        async with self.store.atomic():
            session = await self.store.get_session(run.session_id)
            if session.is_terminal:
                raise StateError(f"Session {run.session_id} is already {session.status.value}")
            # A run may start on a session that was never closed (direct invocation)
            session.advance(SessionStatus.OUTPUT_REGISTRATION)
            await self.store.save_session(session)

            votes = await self.store.list_votes(session_id=run.session_id,
                                                status=VoteStatus.PENDING)
            if not votes:
                raise StateError(f"Session {run.session_id} has no pending votes")

            now = time.time()
            for vote in votes:
                prev_txid = hashlib.sha256(
                    f"{vote.serial_number}{run.session_id}".encode()).hexdigest()
                run.inputs.append(TxInput(
                    prev_txid=prev_txid,
                    vout=0,
                    amount=self.config.input_value_sats,
                    address=vote.destination_address,
                    sequence=self.config.sequence,
                ))
                vote.transition(VoteStatus.PROCESSED)
                vote.processed_at = now
                await self.store.save_vote(vote)
                run.participants.append(vote)

        logger.info(f"Round 1: registered {len(run.inputs)} inputs")

    async def _register_outputs(self, run: CoinJoinRun):
        run.round = 2
        async with self.store.atomic():
            await self._set_session_status(run, SessionStatus.OUTPUT_REGISTRATION)

            candidates = await self.store.list_candidates(run.election_id)
            if not candidates:
                raise StateError(f"Election {run.election_id} has no candidates")
            by_encoding = {c.vote_encoding: c for c in candidates}

            kept_votes, kept_inputs = [], []
            for vote, tx_in in zip(run.participants, run.inputs):
                encoding = decode_vote_encoding(vote.commitment)
                if encoding is None:
                    encoding = fallback_vote_encoding(vote.commitment, list(by_encoding))
                candidate = by_encoding.get(encoding)
                if candidate is None:
                    logger.warning(
                        f"Vote {short_id(vote.id)} decodes to unknown encoding {encoding}, "
                        f"dropping it from the batch")
                    vote.transition(VoteStatus.FAILED)
                    await self.store.save_vote(vote)
                    continue

                run.outputs.append(TxOutput(
                    value=self.config.output_value_sats,
                    address=candidate.bitcoin_address,
                    vote_weight=self.config.vote_weight,
                    candidate_id=candidate.id,
                ))
                run.anonymized_commitments.append(anonymize_commitment(vote.commitment))
                kept_votes.append(vote)
                kept_inputs.append(tx_in)

            if not run.outputs:
                raise StateError("No votes in the batch decode to a known candidate")

            run.participants = kept_votes
            run.inputs = kept_inputs
            run.outputs_per_candidate = dict(Counter(o.candidate_id for o in run.outputs))

        # Canonical ordering so output position reveals nothing about input position
        run.inputs.sort(key=lambda i: (i.prev_txid, i.vout))
        run.outputs.sort(key=lambda o: (o.value, o.script().hex()))
        secrets.SystemRandom().shuffle(run.anonymized_commitments)

        logger.info(
            f"Round 2: {len(run.outputs)} outputs across "
            f"{len(run.outputs_per_candidate)} candidates")

    async def _sign(self, run: CoinJoinRun):
        run.round = 3
        async with self.store.atomic():
            await self._set_session_status(run, SessionStatus.SIGNING)

        tx = RawTransaction(
            version=self.config.tx_version,
            inputs=run.inputs,
            outputs=run.outputs,
            lock_time=self.config.lock_time,
        )
        raw = TransactionSerializer.encode(tx)
        run.raw_tx = raw.hex()
        run.tx_id = compute_txid(raw)
        run.signatures = [
            SignatureRecord(input_index=index,
                            signature=self.signer(raw + index.to_bytes(4, 'little')))
            for index in range(len(run.inputs))
        ]
        logger.info(
            f"Round 3: built {len(raw)} byte transaction {short_id(run.tx_id, 16)} "
            f"with {len(run.signatures)} signatures")

    async def _begin_broadcast(self, run: CoinJoinRun):
        run.round = 4
        async with self.store.atomic():
            await self._set_session_status(run, SessionStatus.BROADCASTING)

    async def _finalize(self, run: CoinJoinRun, result: BroadcastResult):
        if result.tx_id != run.tx_id:
            logger.debug(
                f"Backend {result.backend} reported txid {short_id(result.tx_id, 16)}, "
                f"computed {short_id(run.tx_id, 16)}")
        run.tx_id = result.tx_id

        async with self.store.atomic():
            total_weight = sum(o.vote_weight for o in run.outputs)
            metadata = {
                'participants': len(run.participants),
                'input_count': len(run.inputs),
                'output_count': len(run.outputs),
                'total_vote_weight': total_weight,
                'outputs_per_candidate': run.outputs_per_candidate,
                'aggregate_commitment': aggregate_commitments(
                    run.anonymized_commitments)['aggregated_commitment'],
                'backend': result.backend,
                'simulated': result.simulated,
                'network': result.network,
            }
            raw_data = {
                'raw_tx': run.raw_tx,
                'signatures': [
                    {'input_index': s.input_index, 'signature': s.signature}
                    for s in run.signatures
                ],
                'anonymized_commitments': run.anonymized_commitments,
            }
            await self.store.add_transaction(TransactionRecord(
                txid=run.tx_id,
                election_id=run.election_id,
                session_id=run.session_id,
                type=TransactionType.COINJOIN,
                raw_data=json.dumps(raw_data),
                metadata=json.dumps(metadata),
            ))

            now = time.time()
            for vote in run.participants:
                vote.transition(VoteStatus.CONFIRMED)
                vote.transaction_id = run.tx_id
                vote.confirmed_at = now
                await self.store.save_vote(vote)

            session = await self.store.get_session(run.session_id)
            session.advance(SessionStatus.COMPLETED)
            session.end_time = now
            session.final_tally_transaction_id = run.tx_id
            session.transaction_count += 1
            await self.store.save_session(session)
            run.status = SessionStatus.COMPLETED

            for candidate in await self.store.list_candidates(run.election_id):
                received = run.outputs_per_candidate.get(candidate.id, 0)
                if received:
                    candidate.total_votes_received += received
                    await self.store.save_candidate(candidate)

            election = await self.store.get_election(run.election_id)
            if election is not None:
                election.final_tally_transaction_id = run.tx_id
                await self.store.save_election(election)

    async def _rollback(self, run: CoinJoinRun):
        """Fail the session and hand its votes back to the pending pool"""
        self.failed_runs += 1
        run.status = SessionStatus.FAILED
        try:
            async with self.store.atomic():
                session = await self.store.get_session(run.session_id)
                if session is not None and not session.is_terminal:
                    session.failure_reason = run.error
                    session.end_time = time.time()
                    session.advance(SessionStatus.FAILED)
                    await self.store.save_session(session)

                released = 0
                for vote in await self.store.list_votes(session_id=run.session_id):
                    if vote.status in (VoteStatus.PROCESSED, VoteStatus.CONFIRMED):
                        vote.transition(VoteStatus.PENDING)
                        vote.transaction_id = None
                        vote.processed_at = None
                        vote.confirmed_at = None
                        await self.store.save_vote(vote)
                        released += 1

                for record in await self.store.list_transactions(session_id=run.session_id):
                    await self.store.delete_transaction(record.txid)
        except Exception:
            logger.exception(f"Rollback of session {short_id(run.session_id)} failed")
            return

        logger.warning(
            f"Session {short_id(run.session_id)} failed ({run.error}); "
            f"{released} votes returned to pending")

    def get_status(self) -> Dict[str, object]:
        return {
            'active_runs': [
                self.registry.get(sid).summary() for sid in self.registry.active_ids()
            ],
            'completed_runs': self.completed_runs,
            'failed_runs': self.failed_runs,
        }
