"""
Tests for the content vault, key issuer and kill switch.
"""

import threading
from datetime import timedelta

import pytest

from vaultgate.errors import Conflict, Forbidden, InvalidInput, NotFound
from vaultgate.vault import (
    MAX_KEY_TTL,
    MIN_KEY_TTL,
    ContentVault,
    KeyIssuer,
    KillSwitch,
    clamp_ttl,
    decrypt_blob,
)
from vaultgate.vault.content import KEY_SIZE, NONCE_SIZE, TAG_SIZE, encrypt_payload


def principal_for(services, login, username):
    return services.credentials.validate(login(username).token)


class TestContentVault:

    def test_no_content(self):
        vault = ContentVault()
        with pytest.raises(NotFound) as exc_info:
            vault.current_ciphertext()
        assert exc_info.value.code == "NoContent"

    def test_upload_encrypts(self):
        vault = ContentVault()
        blob = vault.upload("Write-Host 'hello'")

        data = vault.current_ciphertext()
        assert len(blob.content_key) == 32
        assert data[:NONCE_SIZE] == blob.nonce
        assert data[NONCE_SIZE:NONCE_SIZE + TAG_SIZE] == blob.auth_tag
        assert b"hello" not in data

    def test_decrypt_reproduces_plaintext(self):
        vault = ContentVault()
        vault.upload("line one\nline two é")
        key, _ = vault.current_key()

        assert decrypt_blob(key, vault.current_ciphertext()) == "line one\nline two é".encode()

    def test_second_upload_supersedes_first(self):
        vault = ContentVault()
        first = vault.upload("first")
        second = vault.upload("second")

        assert second.generation == first.generation + 1
        assert first.content_key != second.content_key
        with pytest.raises(InvalidInput):
            decrypt_blob(first.content_key, vault.current_ciphertext())

    def test_empty_payload_rejected(self):
        with pytest.raises(InvalidInput) as exc_info:
            ContentVault().upload("")
        assert exc_info.value.code == "MissingPayload"

    def test_concurrent_upload_conflicts(self):
        vault = ContentVault()
        vault._upload_lock.acquire()
        try:
            with pytest.raises(Conflict) as exc_info:
                vault.upload("data")
            assert exc_info.value.code == "ContentBusy"
        finally:
            vault._upload_lock.release()

    def test_encrypt_payload_generates_fresh_key(self):
        first_key, nonce, tag, ciphertext = encrypt_payload(b"data")
        second_key = encrypt_payload(b"data")[0]

        assert len(first_key) == KEY_SIZE
        assert first_key != second_key
        assert decrypt_blob(first_key, nonce + tag + ciphertext) == b"data"


class TestClampTtl:

    def test_default(self):
        assert clamp_ttl(None) == 15

    @pytest.mark.parametrize("requested, expected", [
        (1, MIN_KEY_TTL),
        (-50, MIN_KEY_TTL),
        (60, 60),
        (10_000, MAX_KEY_TTL),
        ("30", 30),
    ])
    def test_bounds(self, requested, expected):
        assert clamp_ttl(requested) == expected

    @pytest.mark.parametrize("requested", ["soon", True, [5]])
    def test_malformed(self, requested):
        with pytest.raises(InvalidInput) as exc_info:
            clamp_ttl(requested)
        assert exc_info.value.code == "InvalidTtl"


class TestKeyIssuer:

    def test_no_content(self, services, login):
        with pytest.raises(NotFound):
            services.key_issuer.issue_key(principal_for(services, login, "mary"))

    def test_issue_records_grant(self, services, login):
        services.vault.upload("payload")
        principal = principal_for(services, login, "mary")

        grant = services.key_issuer.issue_key(principal, 60)

        assert grant.key == services.vault.current_key()[0]
        assert services.key_issuer.has_valid_grant(principal.credential_id)

    def test_grant_expires(self, services, login, clock):
        services.vault.upload("payload")
        principal = principal_for(services, login, "mary")
        services.key_issuer.issue_key(principal, 10)

        clock.advance(11)
        assert not services.key_issuer.has_valid_grant(principal.credential_id)
        assert services.key_issuer.sweep_expired() == 1

    def test_upload_invalidates_every_grant(self, services, login):
        services.vault.upload("v1")
        mary = principal_for(services, login, "mary")
        paul = principal_for(services, login, "paul")
        services.key_issuer.issue_key(mary)
        services.key_issuer.issue_key(paul)

        services.vault.upload("v2")

        assert len(services.key_issuer) == 0
        assert not services.key_issuer.has_valid_grant(mary.credential_id)
        assert not services.key_issuer.has_valid_grant(paul.credential_id)

    def test_two_sessions_same_key_independent_expiry(self, services, login, clock):
        services.vault.upload("payload")
        mary = principal_for(services, login, "mary")
        paul = principal_for(services, login, "paul")

        first = services.key_issuer.issue_key(mary, 10)
        clock.advance(5)
        second = services.key_issuer.issue_key(paul, 10)

        assert first.key == second.key
        assert second.expires_at > first.expires_at
        clock.advance(6)
        assert not services.key_issuer.has_valid_grant(mary.credential_id)
        assert services.key_issuer.has_valid_grant(paul.credential_id)

    def test_concurrent_issue_from_threads(self, services, login):
        services.vault.upload("payload")
        principals = [principal_for(services, login, name) for name in ("mary", "paul")]
        results = []

        def fetch(principal):
            results.append(services.key_issuer.issue_key(principal))

        threads = [threading.Thread(target=fetch, args=(p,)) for p in principals]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 2
        assert results[0].key == results[1].key
        assert len(services.key_issuer) == 2

    def test_banned_user_refused(self, services, users, login):
        services.vault.upload("payload")
        principal = principal_for(services, login, "mary")
        users.set_banned("mary")

        with pytest.raises(Forbidden) as exc_info:
            services.key_issuer.issue_key(principal)
        assert exc_info.value.code == "Banned"

    def test_suspended_user_refused(self, services, users, login, clock):
        services.vault.upload("payload")
        principal = principal_for(services, login, "mary")
        users.set_suspended_until("mary", clock() + timedelta(seconds=30))

        with pytest.raises(Forbidden) as exc_info:
            services.key_issuer.issue_key(principal)
        assert exc_info.value.code == "Suspended"


class TestKillSwitch:

    def test_enable_blocks_non_owner_and_clears_grants(self, services, login):
        services.vault.upload("payload")
        mary = principal_for(services, login, "mary")
        mona = principal_for(services, login, "mona")
        services.key_issuer.issue_key(mary)

        services.kill_switch.set(True, actor="olivia")

        assert len(services.key_issuer) == 0
        for principal in (mary, mona):
            with pytest.raises(Forbidden) as exc_info:
                services.key_issuer.issue_key(principal)
            assert exc_info.value.code == "KillSwitchActive"

    def test_owner_unaffected(self, services, login):
        services.vault.upload("payload")
        services.kill_switch.set(True)
        olivia = principal_for(services, login, "olivia")
        assert services.key_issuer.issue_key(olivia).key

    def test_disable_does_not_restore_grants(self, services, login):
        services.vault.upload("payload")
        mary = principal_for(services, login, "mary")
        services.key_issuer.issue_key(mary)

        services.kill_switch.set(True)
        services.kill_switch.set(False)

        assert not services.key_issuer.has_valid_grant(mary.credential_id)
        services.key_issuer.issue_key(mary)
        assert services.key_issuer.has_valid_grant(mary.credential_id)

    def test_issuer_requires_shared_lock(self, users):
        vault = ContentVault()
        with pytest.raises(ValueError):
            KeyIssuer(vault, users, KillSwitch())
