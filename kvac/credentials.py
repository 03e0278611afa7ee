"""
Single-use anonymous credentials (KVAC-style)
=============================================
The coordinator signs a canonical message built from a random serial number
with a keyed MAC. Voters later spend the serial number exactly once; the
signature proves the coordinator issued it without linking it to the voter.
"""

import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import constant_time, hashes, hmac

from config.config import CredentialConfig
from coinjoin.models import Credential
from utils.errors import AuthorizationError, ConfigError, CryptoError, ValidationError
from utils.utils import short_id

logger = logging.getLogger(__name__)

MESSAGE_PREFIX = "WABISABI_CREDENTIAL"

_HASH_ALGORITHMS = {
    'sha256': hashes.SHA256,
    'sha384': hashes.SHA384,
    'sha512': hashes.SHA512,
}


class CredentialIssuer:
    """Issues, verifies and consumes single-use credentials"""

    def __init__(self, config: CredentialConfig):
        if not config.coordinator_secret:
            raise ConfigError(
                "Coordinator secret is not configured (set COORDINATOR_SECRET_KEY)")
        if config.signature_algorithm not in _HASH_ALGORITHMS:
            raise ConfigError(
                f"Unsupported signature algorithm: {config.signature_algorithm}",
                {'supported': sorted(_HASH_ALGORITHMS)})

        self.config = config
        self._key = config.coordinator_secret.encode('utf-8')
        self._hash = _HASH_ALGORITHMS[config.signature_algorithm]
        self.issued_count = 0
        self.consumed_count = 0

        logger.info(
            f"Credential issuer ready (algorithm={config.signature_algorithm}, "
            f"ttl={config.credential_ttl_seconds}s)")

    @staticmethod
    def canonical_message(serial_number: str, nonce: str, election_id: str, timestamp: int) -> str:
        return f"{MESSAGE_PREFIX}:{serial_number}:{nonce}:{election_id}:{timestamp}"

    def _mac(self) -> hmac.HMAC:
        return hmac.HMAC(self._key, self._hash())

    def sign_bytes(self, data: bytes) -> str:
        """Keyed MAC over arbitrary bytes, hex encoded"""
        h = self._mac()
        h.update(data)
        return h.finalize().hex()

    def _digest(self, text: str) -> str:
        return hashlib.new(self.config.signature_algorithm, text.encode('utf-8')).hexdigest()

    def issue(self, user_id: str, election_id: str, nonce: Optional[str] = None) -> Credential:
        if not user_id or not election_id:
            raise ValidationError("user_id and election_id are required")
        if nonce is None:
            nonce = secrets.token_hex(self.config.nonce_length // 2)
        elif not isinstance(nonce, str) or not nonce:
            raise ValidationError("nonce must be a non-empty string")

        timestamp = int(time.time() * 1000)
        random_part = secrets.token_hex(16)
        serial_number = self._digest(
            f"{user_id}:{election_id}:{timestamp}:{random_part}"
        )[:self.config.serial_number_length]

        message = self.canonical_message(serial_number, nonce, election_id, timestamp)
        signature = self.sign_bytes(message.encode('utf-8'))
        validation_proof = self._digest(f"{serial_number}:{election_id}:{signature}")

        self.issued_count += 1
        logger.debug(f"Issued credential {short_id(serial_number)} for election {election_id}")

        return Credential(
            serial_number=serial_number,
            signature=signature,
            nonce=nonce,
            election_id=election_id,
            timestamp=timestamp,
            validation_proof=validation_proof,
            algorithm=self.config.signature_algorithm,
        )

    def verify(self, serial_number: str, signature: str, nonce: str,
               election_id: str, timestamp: int) -> bool:
        """Recompute the MAC and compare in constant time. Pure."""
        try:
            provided = bytes.fromhex(signature)
        except (TypeError, ValueError):
            return False

        message = self.canonical_message(serial_number, nonce, election_id, timestamp)
        h = self._mac()
        h.update(message.encode('utf-8'))
        try:
            h.verify(provided)
        except InvalidSignature:
            return False
        return True

    def verify_credential(self, credential: Credential) -> bool:
        return self.verify(credential.serial_number, credential.signature,
                           credential.nonce, credential.election_id, credential.timestamp)

    def verify_validation_proof(self, credential: Credential) -> bool:
        expected = self._digest(
            f"{credential.serial_number}:{credential.election_id}:{credential.signature}")
        return constant_time.bytes_eq(expected.encode(), credential.validation_proof.encode())

    def is_expired(self, credential: Credential, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - credential.issued_at > self.config.credential_ttl_seconds

    async def authorize(self, store, serial_number: str, election_id: str) -> Credential:
        """
        Look up a stored credential and check it may be spent for this election.

        Raises AuthorizationError for unknown, foreign, used or expired credentials
        and CryptoError when the stored signature does not verify.
        """
        credential = await store.get_credential(serial_number)
        if credential is None:
            raise AuthorizationError("Unknown credential",
                                     {'serial': short_id(serial_number)})
        if credential.election_id != election_id:
            raise AuthorizationError("Credential was issued for a different election",
                                     {'serial': short_id(serial_number)})
        if credential.is_used:
            raise AuthorizationError("Credential already used",
                                     {'serial': short_id(serial_number)})
        if self.is_expired(credential):
            raise AuthorizationError("Credential expired",
                                     {'serial': short_id(serial_number)})
        if not self.verify_credential(credential):
            raise CryptoError("Credential signature mismatch",
                              {'serial': short_id(serial_number)})
        return credential

    async def consume(self, store, serial_number: str) -> Credential:
        """Mark the credential used; exactly one concurrent caller succeeds"""
        if not await store.claim_credential(serial_number):
            raise AuthorizationError("Credential already used or unknown",
                                     {'serial': short_id(serial_number)})
        self.consumed_count += 1
        logger.debug(f"Consumed credential {short_id(serial_number)}")
        return await store.get_credential(serial_number)

    def get_security_stats(self) -> Dict[str, Any]:
        return {
            'algorithm': self.config.signature_algorithm,
            'serial_number_length': self.config.serial_number_length,
            'nonce_length': self.config.nonce_length,
            'credential_ttl_seconds': self.config.credential_ttl_seconds,
            'coordinator_key_configured': bool(self._key),
            'issued': self.issued_count,
            'consumed': self.consumed_count,
        }
