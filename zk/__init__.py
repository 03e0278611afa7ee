"""
Vote proof verification module for the CoinJoin voting system
"""

from .proof_verifier import (
    # Core classes
    ProofVerifier,
    VerificationResult,
    VoteCommitment,

    # Commitment helpers
    generate_vote_commitment,
    verify_commitment,
    decode_vote_encoding,
    fallback_vote_encoding,
    aggregate_commitments,
    anonymize_commitment,
    build_vote_proof,
)

__all__ = [
    # Classes
    'ProofVerifier',
    'VerificationResult',
    'VoteCommitment',

    # Helpers
    'generate_vote_commitment',
    'verify_commitment',
    'decode_vote_encoding',
    'fallback_vote_encoding',
    'aggregate_commitments',
    'anonymize_commitment',
    'build_vote_proof',
]
