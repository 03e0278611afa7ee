"""
Vote proof verification and commitment helpers
==============================================
The proof attached to a vote is a structural/freshness check: it must carry
public inputs binding it to the credential's serial number and must be recent.
It is NOT a sound zero-knowledge opening of the commitment.

Commitments are partially cleartext JSON blobs: a hash over the opening plus
the candidate encoding that output registration reads back.
"""

import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config.config import CredentialConfig
from utils.utils import short_id

logger = logging.getLogger(__name__)

# Proof timestamps may run slightly ahead of the verifier clock
MAX_CLOCK_SKEW_MS = 60_000


@dataclass
class VerificationResult:
    valid: bool
    serial_number: str
    commitment_hash: str = ""
    proof_hash: str = ""
    serial_included: bool = False
    timestamp_valid: bool = False
    proof_age_ms: Optional[int] = None
    error: Optional[str] = None
    verified_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'commitmentHash': self.commitment_hash,
            'proofHash': self.proof_hash,
            'details': {
                'serialIncluded': self.serial_included,
                'timestampValid': self.timestamp_valid,
                'proofAge': self.proof_age_ms,
            },
            'error': self.error,
            'verifiedAt': self.verified_at,
        }


@dataclass
class VoteCommitment:
    commitment: str  # blob submitted with the vote
    commitment_hash: str
    opening: Dict[str, Any]


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(',', ':'))


class ProofVerifier:
    """Checks that a vote proof is well formed, bound to its credential and fresh"""

    def __init__(self, config: Optional[CredentialConfig] = None):
        config = config or CredentialConfig()
        self.max_age_ms = int(config.proof_max_age_seconds * 1000)
        self.prefix_length = config.serial_prefix_length

    def verify(self, proof: Any, commitment: str, serial_number: str,
               now_ms: Optional[int] = None) -> VerificationResult:
        if not isinstance(proof, dict) or not proof.get('proof') or not proof.get('publicInputs'):
            return VerificationResult(valid=False, serial_number=serial_number,
                                      error="Malformed proof")
        public_inputs = proof['publicInputs']
        if not isinstance(public_inputs, (list, tuple)):
            return VerificationResult(valid=False, serial_number=serial_number,
                                      error="publicInputs must be a list")
        if not serial_number:
            return VerificationResult(valid=False, serial_number=serial_number,
                                      error="Missing serial number")

        commitment_hash = _sha256(commitment or "")
        proof_hash = _sha256(_canonical(proof))

        prefix = serial_number[:self.prefix_length]
        serial_included = any(
            isinstance(item, str) and prefix in item for item in public_inputs)

        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        try:
            proof_ts = int(proof.get('timestamp') or 0)
        except (TypeError, ValueError):
            proof_ts = 0
        proof_age = now_ms - proof_ts
        timestamp_valid = -MAX_CLOCK_SKEW_MS <= proof_age < self.max_age_ms

        valid = serial_included and timestamp_valid and bool(commitment)
        error = None
        if not valid:
            if not commitment:
                error = "Empty commitment"
            elif not serial_included:
                error = "Proof is not bound to the credential serial number"
            else:
                error = "Proof timestamp outside the freshness window"

        logger.debug(
            f"Proof for {short_id(serial_number)}: valid={valid} "
            f"serial_included={serial_included} age={proof_age}ms")

        return VerificationResult(
            valid=valid,
            serial_number=serial_number,
            commitment_hash=commitment_hash,
            proof_hash=proof_hash,
            serial_included=serial_included,
            timestamp_valid=timestamp_valid,
            proof_age_ms=proof_age,
            error=error,
        )


def generate_vote_commitment(vote_encoding: int, randomness: Optional[str] = None,
                             vote_value: int = 1) -> VoteCommitment:
    """Commit to a candidate encoding; the blob keeps the encoding readable for tallying"""
    opening = {
        'voteEncoding': int(vote_encoding),
        'voteValue': vote_value,
        'randomness': randomness or secrets.token_hex(32),
        'timestamp': int(time.time() * 1000),
    }
    commitment_hash = _sha256(_canonical(opening))
    blob = _canonical({
        'commitmentHash': commitment_hash,
        'voteEncoding': opening['voteEncoding'],
        'voteValue': vote_value,
    })
    return VoteCommitment(commitment=blob, commitment_hash=commitment_hash, opening=opening)


def verify_commitment(commitment_hash: str, opening: Dict[str, Any]) -> bool:
    return secrets.compare_digest(_sha256(_canonical(opening)), commitment_hash)


def decode_vote_encoding(commitment: str) -> Optional[int]:
    """Candidate encoding carried in a commitment blob, or None if there is none"""
    try:
        data = json.loads(commitment)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    for key in ('voteEncoding', 'candidateValue'):
        value = data.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def fallback_vote_encoding(commitment: str, encodings: Sequence[int]) -> int:
    """Deterministic hash-based round robin over the available encodings"""
    if not encodings:
        raise ValueError("No candidate encodings to choose from")
    ordered = sorted(encodings)
    return ordered[int(_sha256(commitment or ""), 16) % len(ordered)]


def aggregate_commitments(commitments: List[str]) -> Dict[str, Any]:
    aggregated_hash = _sha256("".join(commitments))
    return {
        'aggregated_commitment': _sha256(_canonical({
            'totalCommitments': len(commitments),
            'aggregatedHash': aggregated_hash,
        })),
        'total_votes': len(commitments),
    }


def anonymize_commitment(commitment: str, salt: Optional[str] = None) -> str:
    return _sha256(f"{commitment}:{salt or secrets.token_hex(16)}")


def build_vote_proof(serial_number: str, commitment: str,
                     timestamp_ms: Optional[int] = None,
                     prefix_length: int = 16) -> Dict[str, Any]:
    """Client-side proof accepted by ProofVerifier"""
    timestamp_ms = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    return {
        'proof': _sha256(f"{serial_number}:{commitment}:{timestamp_ms}"),
        'publicInputs': [serial_number[:prefix_length], _sha256(commitment)],
        'timestamp': timestamp_ms,
    }
