"""
Tests for vote proof verification and commitment helpers
"""

import json
import time

import pytest

from zk.proof_verifier import (
    ProofVerifier,
    aggregate_commitments,
    build_vote_proof,
    decode_vote_encoding,
    fallback_vote_encoding,
    generate_vote_commitment,
    verify_commitment,
)

SERIAL = "0123456789abcdef0123456789abcdef"


@pytest.fixture
def verifier(config):
    return ProofVerifier(config.credential_config)


@pytest.fixture
def commitment():
    return generate_vote_commitment(2).commitment


def test_valid_proof(verifier, commitment):
    proof = build_vote_proof(SERIAL, commitment)
    result = verifier.verify(proof, commitment, SERIAL)

    assert result.valid
    assert result.serial_included
    assert result.timestamp_valid
    assert len(result.commitment_hash) == 64
    assert len(result.proof_hash) == 64
    assert result.error is None


@pytest.mark.parametrize("proof", [
    None,
    {},
    {'proof': 'abc'},
    {'publicInputs': [SERIAL[:16]], 'timestamp': 1},
    {'proof': 'abc', 'publicInputs': []},
])
def test_malformed_proof_rejected(verifier, commitment, proof):
    result = verifier.verify(proof, commitment, SERIAL)
    assert not result.valid
    assert result.error == "Malformed proof"


def test_proof_must_bind_serial(verifier, commitment):
    proof = build_vote_proof("ffffffffffffffffffffffffffffffff", commitment)
    result = verifier.verify(proof, commitment, SERIAL)

    assert not result.valid
    assert not result.serial_included


def test_stale_proof_rejected(verifier, commitment):
    now_ms = int(time.time() * 1000)
    proof = build_vote_proof(SERIAL, commitment, timestamp_ms=now_ms - 11 * 60 * 1000)
    result = verifier.verify(proof, commitment, SERIAL, now_ms=now_ms)

    assert not result.valid
    assert not result.timestamp_valid
    assert result.proof_age_ms > 10 * 60 * 1000


def test_proof_just_inside_window(verifier, commitment):
    now_ms = int(time.time() * 1000)
    proof = build_vote_proof(SERIAL, commitment, timestamp_ms=now_ms - 9 * 60 * 1000)
    assert verifier.verify(proof, commitment, SERIAL, now_ms=now_ms).valid


def test_empty_commitment_rejected(verifier):
    proof = build_vote_proof(SERIAL, "")
    result = verifier.verify(proof, "", SERIAL)

    assert not result.valid
    assert result.error == "Empty commitment"


def test_commitment_carries_encoding():
    commitment = generate_vote_commitment(3, randomness="ab" * 32)

    assert decode_vote_encoding(commitment.commitment) == 3
    assert verify_commitment(commitment.commitment_hash, commitment.opening)

    tampered = dict(commitment.opening, voteEncoding=1)
    assert not verify_commitment(commitment.commitment_hash, tampered)


@pytest.mark.parametrize("blob,expected", [
    (json.dumps({'candidateValue': 2}), 2),
    (json.dumps({'voteEncoding': "4"}), 4),
    (json.dumps({'voteEncoding': True}), None),
    (json.dumps([1, 2]), None),
    ("deadbeef", None),
])
def test_decode_vote_encoding(blob, expected):
    assert decode_vote_encoding(blob) == expected


def test_fallback_encoding_is_deterministic():
    encodings = [3, 1, 2]
    first = fallback_vote_encoding("opaque-commitment", encodings)

    assert first in encodings
    assert fallback_vote_encoding("opaque-commitment", [1, 2, 3]) == first

    with pytest.raises(ValueError):
        fallback_vote_encoding("opaque-commitment", [])


def test_aggregate_commitments():
    aggregate = aggregate_commitments(["a", "b", "c"])

    assert aggregate['total_votes'] == 3
    assert aggregate['aggregated_commitment'] == aggregate_commitments(["a", "b", "c"])['aggregated_commitment']
    assert aggregate['aggregated_commitment'] != aggregate_commitments(["a", "b"])['aggregated_commitment']
