"""
Tests for single-use credential issuance, verification and consumption
"""

import asyncio
import time

import pytest

from coinjoin.store import InMemoryVotingStore
from config.config import CredentialConfig
from kvac.credentials import CredentialIssuer
from utils.errors import AuthorizationError, ConfigError, CryptoError, ValidationError


@pytest.fixture
def issuer(config):
    return CredentialIssuer(config.credential_config)


def test_verify_after_issue_is_true_and_pure(issuer):
    credential = issuer.issue("alice", "election-1", "nonce-1")
    fields = (credential.serial_number, credential.signature, credential.nonce,
              credential.election_id, credential.timestamp)

    assert issuer.verify(*fields)
    assert issuer.verify(*fields)
    assert issuer.verify_credential(credential)
    assert credential.is_used is False


def test_serial_number_shape(issuer):
    first = issuer.issue("alice", "election-1")
    second = issuer.issue("alice", "election-1")

    assert len(first.serial_number) == 32
    assert first.serial_number != second.serial_number
    assert len(first.nonce) == 32
    assert first.algorithm == "sha256"


def test_tampered_fields_do_not_verify(issuer):
    c = issuer.issue("alice", "election-1", "nonce-1")

    assert not issuer.verify(c.serial_number, c.signature, "nonce-2", c.election_id, c.timestamp)
    assert not issuer.verify(c.serial_number, c.signature, c.nonce, "election-2", c.timestamp)
    assert not issuer.verify(c.serial_number, c.signature, c.nonce, c.election_id, c.timestamp + 1)
    assert not issuer.verify(c.serial_number, "not-hex", c.nonce, c.election_id, c.timestamp)


def test_other_secret_rejects_signature(issuer):
    credential = issuer.issue("alice", "election-1")
    other = CredentialIssuer(CredentialConfig(coordinator_secret="another-secret"))
    assert not other.verify_credential(credential)


def test_missing_secret_fails_fast():
    with pytest.raises(ConfigError):
        CredentialIssuer(CredentialConfig(coordinator_secret=""))


def test_unknown_algorithm_rejected():
    with pytest.raises(ConfigError):
        CredentialIssuer(CredentialConfig(coordinator_secret="s", signature_algorithm="md5"))


def test_issue_requires_identifiers(issuer):
    with pytest.raises(ValidationError):
        issuer.issue("", "election-1")


def test_validation_proof(issuer):
    credential = issuer.issue("alice", "election-1")
    assert issuer.verify_validation_proof(credential)
    credential.validation_proof = "0" * 64
    assert not issuer.verify_validation_proof(credential)


def test_concurrent_consume_yields_exactly_one_success(issuer):
    async def scenario():
        store = InMemoryVotingStore()
        credential = issuer.issue("alice", "election-1")
        await store.add_credential(credential)

        results = await asyncio.gather(
            *[issuer.consume(store, credential.serial_number) for _ in range(5)],
            return_exceptions=True)
        return credential, results

    credential, results = asyncio.run(scenario())

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, AuthorizationError)]
    assert len(successes) == 1
    assert len(failures) == 4
    assert credential.is_used is True
    assert credential.used_at is not None


def test_authorize_rejections(issuer):
    async def scenario():
        store = InMemoryVotingStore()
        fresh = issuer.issue("alice", "election-1")
        expired = issuer.issue("bob", "election-1")
        expired.issued_at = time.time() - issuer.config.credential_ttl_seconds - 5
        forged = issuer.issue("carol", "election-1")
        forged.signature = "00" * 32
        for credential in (fresh, expired, forged):
            await store.add_credential(credential)

        errors = {}
        for label, serial, election in (
            ('unknown', "f" * 32, "election-1"),
            ('wrong_election', fresh.serial_number, "election-2"),
            ('expired', expired.serial_number, "election-1"),
            ('forged', forged.serial_number, "election-1"),
        ):
            try:
                await issuer.authorize(store, serial, election)
            except (AuthorizationError, CryptoError) as e:
                errors[label] = e

        await issuer.consume(store, fresh.serial_number)
        try:
            await issuer.authorize(store, fresh.serial_number, "election-1")
        except AuthorizationError as e:
            errors['used'] = e
        return errors

    errors = asyncio.run(scenario())

    assert isinstance(errors['unknown'], AuthorizationError)
    assert isinstance(errors['wrong_election'], AuthorizationError)
    assert isinstance(errors['expired'], AuthorizationError)
    assert isinstance(errors['forged'], CryptoError)
    assert isinstance(errors['used'], AuthorizationError)


def test_security_stats(issuer):
    issuer.issue("alice", "election-1")
    stats = issuer.get_security_stats()

    assert stats['algorithm'] == "sha256"
    assert stats['coordinator_key_configured'] is True
    assert stats['issued'] == 1
    assert stats['serial_number_length'] == 32
