import secrets
import sys
from pathlib import Path

import pytest
import requests

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from chain.broadcast import BroadcastBackend, ConfirmationStatus  # noqa: E402
from chain.serializer import compute_txid  # noqa: E402
from config.config import (  # noqa: E402
    BroadcastConfig,
    CoinJoinConfig,
    CredentialConfig,
    MonitorConfig,
    SystemConfig,
)
from zk.proof_verifier import build_vote_proof, generate_vote_commitment  # noqa: E402

TESTNET_ADDRESSES = [
    "mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn",
    "mzBc4XEFSdzCDcTxAgf6EZXgsZWpztRhef",
    "n3ZLBWCZQHfXGWSPKmUrXX3sNeozxWxdqs",
]


class RecordingBackend(BroadcastBackend):
    """In-process backend: records payloads, can fail on demand, scripted confirmations"""

    def __init__(self, name="recording", always_fail=False, fail_times=0, confirmations=6):
        self.name = name
        self.always_fail = always_fail
        self.fail_times = fail_times
        self.confirmations = confirmations
        self.calls = []
        self.polls = 0

    def _maybe_fail(self):
        if self.always_fail:
            raise requests.ConnectionError(f"{self.name} unreachable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise requests.ConnectionError(f"{self.name} unreachable")

    def broadcast(self, raw_tx):
        self.calls.append(raw_tx)
        self._maybe_fail()
        return compute_txid(raw_tx)

    def get_confirmations(self, tx_id):
        self.polls += 1
        self._maybe_fail()
        return ConfirmationStatus(tx_id=tx_id, confirmations=self.confirmations,
                                  block_height=100, block_hash="00" * 32, backend=self.name)

    def get_tip_height(self):
        self._maybe_fail()
        return 100


class FakeResponse:
    def __init__(self, status_code=200, text="", json_data=None):
        self.status_code = status_code
        self.text = text
        self._json = json_data

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Stands in for requests.Session; routes by (method, url)"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def _dispatch(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        handler = self.routes[(method, url)]
        return handler(**kwargs) if callable(handler) else handler

    def get(self, url, **kwargs):
        return self._dispatch('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch('POST', url, **kwargs)


@pytest.fixture
def config(tmp_path):
    return SystemConfig(
        credential_config=CredentialConfig(coordinator_secret="test-coordinator-secret"),
        broadcast_config=BroadcastConfig(network='testnet', enabled=False),
        monitor_config=MonitorConfig(poll_interval=0, finality_confirmations=6, max_attempts=20),
        coinjoin_config=CoinJoinConfig(scheduler_interval=0.01),
        log_dir=tmp_path / "logs",
        environment='test',
    )


@pytest.fixture
def addresses():
    return list(TESTNET_ADDRESSES)


@pytest.fixture
def recording_backend():
    return RecordingBackend


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


async def _cast_vote(system, election_id, vote_encoding, user_id=None):
    credential = await system.request_credential(
        user_id or f"user-{secrets.token_hex(4)}", election_id)
    commitment = generate_vote_commitment(vote_encoding)
    proof = build_vote_proof(credential.serial_number, commitment.commitment)
    return await system.submit_vote(election_id, commitment.commitment, proof,
                                    credential.serial_number)


@pytest.fixture
def cast_vote():
    return _cast_vote
