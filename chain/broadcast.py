"""
Broadcast gateway
=================
Submits raw transactions to an ordered list of interchangeable backends
(local node JSON-RPC, public Esplora and BlockCypher APIs, deterministic mock)
and queries confirmation depth from the same list. Backends are tried one at a
time, each attempt bounded by a timeout and guarded by a circuit breaker.
"""

import asyncio
import hashlib
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from config.config import BroadcastConfig
from utils.errors import NetworkError, ValidationError
from utils.utils import short_id

logger = logging.getLogger(__name__)

_HEX = re.compile(r'^[0-9a-fA-F]*$')

MOCK_TIP_HEIGHT = 2_500_000
MOCK_HISTORY = 1_000

# Most HTTP requests a single backend call makes (status lookup plus tip height)
MAX_REQUESTS_PER_CALL = 2
EXECUTOR_GRACE_SECONDS = 5.0


class BackendError(NetworkError):
    """A single backend answered with an error"""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend


@dataclass
class BroadcastResult:
    success: bool
    tx_id: str
    network: str
    backend: str
    broadcasted_at: float = field(default_factory=time.time)
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'txId': self.tx_id,
            'network': self.network,
            'backend': self.backend,
            'broadcastedAt': self.broadcasted_at,
            'simulated': self.simulated,
        }


@dataclass
class ConfirmationStatus:
    tx_id: str
    confirmations: int
    block_height: Optional[int] = None
    block_hash: Optional[str] = None
    backend: str = ""


class CircuitBreaker:
    """Circuit breaker for network failure handling"""

    def __init__(self, name: str = "backend", failure_threshold=5, recovery_timeout=60):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def record_failure(self):
        """Record a failure and update state"""
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning(
                    f"Circuit breaker for {self.name} opened after {self.failure_count} failures")
            self.state = "OPEN"

    def record_success(self):
        """Record a success and reset if appropriate"""
        if self.state == "HALF_OPEN":
            self.state = "CLOSED"
            self.failure_count = 0
            logger.info(f"Circuit breaker for {self.name} closed after successful operation")
        elif self.state == "CLOSED":
            self.failure_count = max(0, self.failure_count - 1)

    def can_attempt(self) -> bool:
        """Check if operation can be attempted"""
        if self.state == "CLOSED":
            return True
        elif self.state == "OPEN":
            if time.time() - self.last_failure_time > self.recovery_timeout:
                self.state = "HALF_OPEN"
                return True
            return False
        elif self.state == "HALF_OPEN":
            return True
        return False


class BroadcastBackend(ABC):
    """Blocking backend interface; the gateway runs calls in an executor"""

    name = "backend"

    @abstractmethod
    def broadcast(self, raw_tx: str) -> str: ...

    @abstractmethod
    def get_confirmations(self, tx_id: str) -> ConfirmationStatus: ...

    @abstractmethod
    def get_tip_height(self) -> int: ...


class RPCBackend(BroadcastBackend):
    """Local full node over JSON-RPC"""

    name = "rpc"

    def __init__(self, url: str, user: str, password: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.auth = (user, password)
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request_id = 0

    def _call(self, method: str, *params) -> Any:
        self._request_id += 1
        response = self.session.post(
            self.url,
            json={'jsonrpc': '1.0', 'id': self._request_id, 'method': method, 'params': list(params)},
            auth=self.auth,
            timeout=self.timeout,
        )
        try:
            payload = response.json()
        except ValueError:
            response.raise_for_status()
            raise BackendError(self.name, f"non-JSON response to {method}")
        if payload.get('error'):
            error = payload['error']
            message = error.get('message') if isinstance(error, dict) else str(error)
            raise BackendError(self.name, f"{method} failed: {message}")
        response.raise_for_status()
        return payload.get('result')

    def broadcast(self, raw_tx: str) -> str:
        return self._call('sendrawtransaction', raw_tx)

    def get_confirmations(self, tx_id: str) -> ConfirmationStatus:
        info = self._call('getrawtransaction', tx_id, True) or {}
        block_hash = info.get('blockhash')
        block_height = None
        if block_hash:
            block = self._call('getblock', block_hash) or {}
            block_height = block.get('height')
        return ConfirmationStatus(
            tx_id=tx_id,
            confirmations=int(info.get('confirmations') or 0),
            block_height=block_height,
            block_hash=block_hash,
            backend=self.name,
        )

    def get_tip_height(self) -> int:
        return int(self._call('getblockcount'))


class EsploraBackend(BroadcastBackend):
    """Esplora-style public API (blockstream.info)"""

    name = "esplora"

    def __init__(self, base_url: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def broadcast(self, raw_tx: str) -> str:
        response = self.session.post(f"{self.base_url}/tx", data=raw_tx,
                                     headers={'Content-Type': 'text/plain'},
                                     timeout=self.timeout)
        if response.status_code != 200:
            raise BackendError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")
        return response.text.strip()

    def get_confirmations(self, tx_id: str) -> ConfirmationStatus:
        response = self.session.get(f"{self.base_url}/tx/{tx_id}", timeout=self.timeout)
        response.raise_for_status()
        status = response.json().get('status') or {}
        if not status.get('confirmed'):
            return ConfirmationStatus(tx_id=tx_id, confirmations=0, backend=self.name)
        block_height = status.get('block_height')
        confirmations = 0
        if block_height is not None:
            confirmations = max(0, self.get_tip_height() - int(block_height) + 1)
        return ConfirmationStatus(
            tx_id=tx_id,
            confirmations=confirmations,
            block_height=block_height,
            block_hash=status.get('block_hash'),
            backend=self.name,
        )

    def get_tip_height(self) -> int:
        response = self.session.get(f"{self.base_url}/blocks/tip/height", timeout=self.timeout)
        response.raise_for_status()
        return int(response.text.strip())


class BlockCypherBackend(BroadcastBackend):
    """BlockCypher public API"""

    name = "blockcypher"

    def __init__(self, base_url: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def broadcast(self, raw_tx: str) -> str:
        response = self.session.post(f"{self.base_url}/txs/push", json={'tx': raw_tx},
                                     timeout=self.timeout)
        if response.status_code not in (200, 201):
            raise BackendError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")
        tx_id = (response.json().get('tx') or {}).get('hash')
        if not tx_id:
            raise BackendError(self.name, "response did not contain a transaction hash")
        return tx_id

    def get_confirmations(self, tx_id: str) -> ConfirmationStatus:
        response = self.session.get(f"{self.base_url}/txs/{tx_id}", timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        block_height = data.get('block_height')
        if block_height is not None and block_height < 0:
            block_height = None
        return ConfirmationStatus(
            tx_id=tx_id,
            confirmations=int(data.get('confirmations') or 0),
            block_height=block_height,
            block_hash=data.get('block_hash'),
            backend=self.name,
        )

    def get_tip_height(self) -> int:
        response = self.session.get(self.base_url, timeout=self.timeout)
        response.raise_for_status()
        return int(response.json()['height'])


class MockBackend(BroadcastBackend):
    """
    Deterministic stand-in used when broadcasting is disabled. Ids are the hash
    of the payload plus a timestamp; each confirmation poll adds one block.
    """

    name = "mock"

    def __init__(self, clock: Callable[[], float] = time.time, history: int = MOCK_HISTORY):
        self.clock = clock
        self.history = history
        self.broadcasts: Dict[str, str] = {}
        self._polls: Dict[str, int] = {}

    def broadcast(self, raw_tx: str) -> str:
        timestamp_ms = int(self.clock() * 1000)
        tx_id = hashlib.sha256(f"mock:{raw_tx}:{timestamp_ms}".encode()).hexdigest()
        self.broadcasts[tx_id] = raw_tx
        self._polls[tx_id] = 0
        while len(self.broadcasts) > self.history:
            oldest = next(iter(self.broadcasts))
            del self.broadcasts[oldest]
            self._polls.pop(oldest, None)
        return tx_id

    def get_confirmations(self, tx_id: str) -> ConfirmationStatus:
        if tx_id not in self._polls:
            return ConfirmationStatus(tx_id=tx_id, confirmations=0, backend=self.name)
        self._polls[tx_id] += 1
        confirmations = self._polls[tx_id]
        block_height = MOCK_TIP_HEIGHT - confirmations + 1
        return ConfirmationStatus(
            tx_id=tx_id,
            confirmations=confirmations,
            block_height=block_height,
            block_hash=hashlib.sha256(f"mock-block:{block_height}".encode()).hexdigest(),
            backend=self.name,
        )

    def get_tip_height(self) -> int:
        return MOCK_TIP_HEIGHT


def build_backends(config: BroadcastConfig,
                   session: Optional[requests.Session] = None) -> List[BroadcastBackend]:
    """Ordered backend list: local node first, then public services"""
    if not config.enabled:
        return [MockBackend()]

    backends: List[BroadcastBackend] = []
    if config.use_local_node and config.rpc_url:
        backends.append(RPCBackend(config.rpc_url, config.rpc_user, config.rpc_password,
                                   timeout=config.request_timeout, session=session))

    for api in config.public_apis:
        kind, url = api.get('kind'), api.get('url')
        if kind == 'esplora':
            backends.append(EsploraBackend(url, timeout=config.request_timeout, session=session))
        elif kind == 'blockcypher':
            backends.append(BlockCypherBackend(url, timeout=config.request_timeout, session=session))
        else:
            logger.warning(f"Ignoring unknown public API kind: {kind}")
    return backends


# Per-attempt failures the gateway falls through on
_BACKEND_FAILURES = (asyncio.TimeoutError, requests.RequestException, NetworkError,
                     ValueError, KeyError)


class BroadcastGateway:
    """Validates payloads and walks the backend list until one succeeds"""

    def __init__(self, config: Optional[BroadcastConfig] = None,
                 backends: Optional[List[BroadcastBackend]] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or BroadcastConfig()
        self.backends = backends if backends is not None else build_backends(self.config, session)
        if not self.backends:
            raise NetworkError("No broadcast backends configured")
        self.breakers = [
            CircuitBreaker(backend.name,
                           failure_threshold=self.config.failure_threshold,
                           recovery_timeout=self.config.recovery_timeout)
            for backend in self.backends
        ]
        logger.info(
            f"Broadcast gateway on {self.config.network}: "
            f"{[b.name for b in self.backends]}")

    @property
    def call_timeout(self) -> float:
        """
        Bound on one backend call. It exceeds the sum of the per-request
        timeouts, so a backend whose requests time out has already given up by
        the time the caller stops waiting for it.
        """
        return self.config.request_timeout * MAX_REQUESTS_PER_CALL + EXECUTOR_GRACE_SECONDS

    def validate_raw_transaction(self, raw_tx: str):
        if not isinstance(raw_tx, str) or not raw_tx:
            raise ValidationError("Raw transaction must be a non-empty hex string")
        if not _HEX.match(raw_tx):
            raise ValidationError("Raw transaction is not valid hex")
        if len(raw_tx) % 2 != 0:
            raise ValidationError("Raw transaction hex has odd length")
        size = len(raw_tx) // 2
        if size < self.config.min_tx_bytes or size > self.config.max_tx_bytes:
            raise ValidationError(
                f"Raw transaction size {size} bytes outside "
                f"[{self.config.min_tx_bytes}, {self.config.max_tx_bytes}]")

    async def _attempt(self, operation: str, call: Callable[[BroadcastBackend], Any]) -> Any:
        loop = asyncio.get_running_loop()
        failures: List[Dict[str, str]] = []

        for backend, breaker in zip(self.backends, self.breakers):
            if not breaker.can_attempt():
                failures.append({'backend': backend.name, 'error': 'circuit open'})
                continue
            try:
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, call, backend),
                    timeout=self.call_timeout)
            except _BACKEND_FAILURES as e:
                breaker.record_failure()
                reason = str(e) or e.__class__.__name__
                failures.append({'backend': backend.name, 'error': reason})
                logger.warning(f"{operation} via {backend.name} failed: {reason}")
                continue
            breaker.record_success()
            return backend, result

        raise NetworkError(f"All backends failed for {operation}", failures)

    async def broadcast(self, raw_tx: str) -> BroadcastResult:
        self.validate_raw_transaction(raw_tx)
        backend, tx_id = await self._attempt('broadcast', lambda b: b.broadcast(raw_tx))
        simulated = isinstance(backend, MockBackend)
        logger.info(
            f"Broadcast {short_id(tx_id, 16)} via {backend.name}"
            f"{' (simulated)' if simulated else ''}")
        return BroadcastResult(success=True, tx_id=tx_id, network=self.config.network,
                               backend=backend.name, simulated=simulated)

    async def get_confirmations(self, tx_id: str) -> ConfirmationStatus:
        _, status = await self._attempt('get_confirmations',
                                        lambda b: b.get_confirmations(tx_id))
        return status

    async def test_connection(self) -> Dict[str, Any]:
        """Which backends answer, and the tip height each one reports"""
        loop = asyncio.get_running_loop()
        report: Dict[str, Any] = {'network': self.config.network, 'backends': {}}
        for backend in self.backends:
            try:
                height = await asyncio.wait_for(
                    loop.run_in_executor(None, backend.get_tip_height),
                    timeout=self.config.request_timeout)
            except _BACKEND_FAILURES as e:
                report['backends'][backend.name] = {'connected': False, 'error': str(e)}
                continue
            report['backends'][backend.name] = {'connected': True, 'tip_height': height}
        report['connected'] = any(b['connected'] for b in report['backends'].values())
        return report

    def get_status(self) -> Dict[str, Any]:
        return {
            'network': self.config.network,
            'enabled': self.config.enabled,
            'backends': [
                {'name': b.name, 'circuit': breaker.state}
                for b, breaker in zip(self.backends, self.breakers)
            ],
        }
