"""
Tests for the broadcast gateway, its backends and circuit breakers
"""

import asyncio
import hashlib

import pytest

from chain.broadcast import (
    BlockCypherBackend,
    BroadcastGateway,
    CircuitBreaker,
    EsploraBackend,
    MAX_REQUESTS_PER_CALL,
    MockBackend,
    RPCBackend,
    build_backends,
)
from chain.serializer import RawTransaction, TransactionSerializer, TxInput, TxOutput, compute_txid
from config.config import BroadcastConfig
from utils.errors import NetworkError, ValidationError


@pytest.fixture
def raw_tx():
    tx = RawTransaction(
        inputs=[TxInput(prev_txid=hashlib.sha256(b"in").hexdigest(), vout=0)],
        outputs=[TxOutput(value=546, address="ab" * 20)],
    )
    return TransactionSerializer.encode_hex(tx)


@pytest.fixture
def broadcast_config():
    return BroadcastConfig(network='testnet', enabled=True, request_timeout=5,
                           failure_threshold=2, recovery_timeout=60)


@pytest.mark.parametrize("payload", [
    "",
    "zz" * 100,
    "abc",
    "00" * 10,
    "00" * 100_001,
])
def test_invalid_payload_rejected_before_any_backend(broadcast_config, recording_backend, payload):
    backend = recording_backend()
    gateway = BroadcastGateway(broadcast_config, backends=[backend])

    with pytest.raises(ValidationError):
        asyncio.run(gateway.broadcast(payload))
    assert backend.calls == []


def test_falls_back_to_next_backend(broadcast_config, recording_backend, raw_tx):
    first = recording_backend("node", always_fail=True)
    second = recording_backend("public")
    gateway = BroadcastGateway(broadcast_config, backends=[first, second])

    result = asyncio.run(gateway.broadcast(raw_tx))

    assert result.success
    assert result.backend == "public"
    assert result.tx_id == compute_txid(raw_tx)
    assert result.simulated is False
    assert first.calls == [raw_tx]
    assert second.calls == [raw_tx]
    assert gateway.breakers[0].failure_count == 1


def test_first_success_stops_iteration(broadcast_config, recording_backend, raw_tx):
    first = recording_backend("node")
    second = recording_backend("public")
    gateway = BroadcastGateway(broadcast_config, backends=[first, second])

    asyncio.run(gateway.broadcast(raw_tx))

    assert len(first.calls) == 1
    assert second.calls == []


def test_all_backends_failing_raises_network_error(broadcast_config, recording_backend, raw_tx):
    gateway = BroadcastGateway(broadcast_config, backends=[
        recording_backend("node", always_fail=True),
        recording_backend("public", always_fail=True),
    ])

    with pytest.raises(NetworkError) as excinfo:
        asyncio.run(gateway.broadcast(raw_tx))

    assert [f['backend'] for f in excinfo.value.failures] == ["node", "public"]


def test_open_circuit_skips_backend(broadcast_config, recording_backend, raw_tx):
    broadcast_config.failure_threshold = 1
    failing = recording_backend("node", always_fail=True)
    healthy = recording_backend("public")
    gateway = BroadcastGateway(broadcast_config, backends=[failing, healthy])

    asyncio.run(gateway.broadcast(raw_tx))
    asyncio.run(gateway.broadcast(raw_tx))

    assert len(failing.calls) == 1
    assert len(healthy.calls) == 2
    assert gateway.get_status()['backends'][0]['circuit'] == "OPEN"


def test_circuit_breaker_recovers():
    breaker = CircuitBreaker("node", failure_threshold=2, recovery_timeout=0)
    breaker.record_failure()
    assert breaker.state == "CLOSED"
    breaker.record_failure()
    assert breaker.state == "OPEN"

    breaker.last_failure_time -= 1
    assert breaker.can_attempt()
    assert breaker.state == "HALF_OPEN"
    breaker.record_success()
    assert breaker.state == "CLOSED"
    assert breaker.failure_count == 0


def test_disabled_broadcast_uses_mock(raw_tx):
    config = BroadcastConfig(network='testnet', enabled=False)
    gateway = BroadcastGateway(config)

    result = asyncio.run(gateway.broadcast(raw_tx))
    payload = result.to_dict()

    assert isinstance(gateway.backends[0], MockBackend)
    assert result.simulated is True
    assert len(result.tx_id) == 64
    assert set(payload) == {'success', 'txId', 'network', 'backend', 'broadcastedAt', 'simulated'}
    assert payload['success'] is True
    assert payload['network'] == 'testnet'


def test_mock_is_deterministic_for_a_fixed_clock(raw_tx):
    backend = MockBackend(clock=lambda: 1700000000.0)
    expected = hashlib.sha256(f"mock:{raw_tx}:1700000000000".encode()).hexdigest()

    assert backend.broadcast(raw_tx) == expected
    assert backend.get_confirmations(expected).confirmations == 1
    assert backend.get_confirmations(expected).confirmations == 2
    assert backend.get_confirmations("unknown").confirmations == 0


def test_build_backends_order(broadcast_config):
    backends = build_backends(broadcast_config)
    assert [b.name for b in backends] == ["rpc", "esplora", "blockcypher"]

    broadcast_config.use_local_node = False
    assert [b.name for b in build_backends(broadcast_config)] == ["esplora", "blockcypher"]


def test_esplora_backend(fake_session, fake_response, raw_tx):
    base = "https://esplora.test/api"
    session = fake_session({
        ('POST', f"{base}/tx"): fake_response(200, text="ab" * 32 + "\n"),
        ('GET', f"{base}/tx/{'ab' * 32}"): fake_response(json_data={
            'status': {'confirmed': True, 'block_height': 95, 'block_hash': "cd" * 32}}),
        ('GET', f"{base}/blocks/tip/height"): fake_response(200, text="100"),
    })
    backend = EsploraBackend(base, session=session)

    assert backend.broadcast(raw_tx) == "ab" * 32
    status = backend.get_confirmations("ab" * 32)
    assert status.confirmations == 6
    assert status.block_height == 95
    assert status.block_hash == "cd" * 32
    assert session.requests[0][2]['headers'] == {'Content-Type': 'text/plain'}


def test_blockcypher_backend(fake_session, fake_response, raw_tx):
    base = "https://blockcypher.test/v1/btc/test3"
    session = fake_session({
        ('POST', f"{base}/txs/push"): fake_response(201, json_data={'tx': {'hash': "ef" * 32}}),
        ('GET', f"{base}/txs/{'ef' * 32}"): fake_response(json_data={
            'confirmations': 0, 'block_height': -1}),
    })
    backend = BlockCypherBackend(base, session=session)

    assert backend.broadcast(raw_tx) == "ef" * 32
    status = backend.get_confirmations("ef" * 32)
    assert status.confirmations == 0
    assert status.block_height is None


def test_rpc_backend(fake_session, fake_response):
    url = "http://localhost:18332"

    def rpc(json=None, **kwargs):
        results = {
            'sendrawtransaction': "12" * 32,
            'getrawtransaction': {'confirmations': 3, 'blockhash': "34" * 32},
            'getblock': {'height': 2000},
            'getblockcount': 2002,
        }
        return fake_response(json_data={'result': results[json['method']], 'error': None})

    backend = RPCBackend(url, "user", "pass", session=fake_session({('POST', url): rpc}))

    assert backend.broadcast("00") == "12" * 32
    status = backend.get_confirmations("12" * 32)
    assert status.confirmations == 3
    assert status.block_height == 2000
    assert backend.get_tip_height() == 2002


def test_rpc_error_is_network_error(fake_session, fake_response):
    url = "http://localhost:18332"
    session = fake_session({('POST', url): fake_response(
        500, json_data={'result': None, 'error': {'code': -26, 'message': 'bad-txns'}})})
    backend = RPCBackend(url, "user", "pass", session=session)

    with pytest.raises(NetworkError):
        backend.broadcast("00")


def test_test_connection_reports_each_backend(broadcast_config, recording_backend):
    gateway = BroadcastGateway(broadcast_config, backends=[
        recording_backend("node", always_fail=True),
        recording_backend("public"),
    ])

    report = asyncio.run(gateway.test_connection())

    assert report['connected'] is True
    assert report['backends']['node']['connected'] is False
    assert report['backends']['public'] == {'connected': True, 'tip_height': 100}


def test_mock_history_is_bounded():
    backend = MockBackend(clock=lambda: 1700000000.0, history=2)
    first, second, third = (backend.broadcast(raw) for raw in ("aa", "bb", "cc"))

    assert list(backend.broadcasts) == [second, third]
    assert backend.get_confirmations(first).confirmations == 0
    assert backend.get_confirmations(third).confirmations == 1


def test_call_timeout_outlasts_backend_requests(broadcast_config, recording_backend):
    gateway = BroadcastGateway(broadcast_config, backends=[recording_backend()])

    assert gateway.call_timeout > broadcast_config.request_timeout * MAX_REQUESTS_PER_CALL
