"""
Tests for backend/sltp_service/services/credential_vault.py

Covers the (user, exchange) uniqueness rules, decryption, the cached
active-trading view and key rotation.
"""

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

import sltp_service.encryption as enc_module
from sltp_service.config import settings
from sltp_service.exceptions import InternalError, NotFoundError, ValidationError
from sltp_service.models import ExchangeCredential
from sltp_service.schemas.credentials import CredentialSummary
from sltp_service.services.credential_vault import normalize_exchange


class TestNormalizeExchange:
    def test_case_insensitive(self):
        assert normalize_exchange("BINANCE") == "binance"

    def test_unknown_exchange_rejected(self):
        with pytest.raises(ValidationError, match="Unsupported exchange"):
            normalize_exchange("kraken")


class TestUpsertCredential:
    """Tests for CredentialVault.upsert_credential()."""

    @pytest.mark.asyncio
    async def test_stores_ciphertext_only(self, vault, db_session):
        """Happy path: plaintext never lands in the row."""
        cred = await vault.upsert_credential("user-1", "binance", "api-key-AAAA", "secret-BBBB")

        row = (await db_session.execute(select(ExchangeCredential))).scalar_one()
        assert row.id == cred.id
        assert row.encrypted_api_key != "api-key-AAAA"
        assert row.encrypted_secret_key != "secret-BBBB"
        assert row.encrypted_api_key.startswith("gAAAAA")
        assert row.key_version == 1
        assert row.is_active is True
        assert row.active_trading is True

    @pytest.mark.asyncio
    async def test_second_upsert_overwrites_single_row(self, vault, db_session):
        """Edge case: reconnecting keeps exactly one row with the new keys."""
        await vault.upsert_credential("user-1", "binance", "old-key", "old-secret")
        await vault.upsert_credential("user-1", "binance", "new-key", "new-secret")

        rows = (await db_session.execute(select(ExchangeCredential))).scalars().all()
        assert len(rows) == 1

        plain = await vault.get_decrypted_credential("user-1", "binance")
        assert plain.api_key == "new-key"
        assert plain.secret_key == "new-secret"

    @pytest.mark.asyncio
    async def test_reconnect_reactivates(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.toggle_active(cred.id, "user-1")

        updated = await vault.upsert_credential("user-1", "binance", "k2", "s2")
        assert updated.is_active is True

    @pytest.mark.asyncio
    async def test_active_trading_only_changed_when_given(self, vault):
        await vault.upsert_credential("user-1", "binance", "k", "s", active_trading=False)

        updated = await vault.upsert_credential("user-1", "binance", "k2", "s2")
        assert updated.active_trading is False

        updated = await vault.upsert_credential("user-1", "binance", "k3", "s3", active_trading=True)
        assert updated.active_trading is True

    @pytest.mark.asyncio
    async def test_same_user_different_exchanges(self, vault, db_session):
        await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.upsert_credential("user-1", "bitget", "k", "s", passphrase="pp")

        rows = (await db_session.execute(select(ExchangeCredential))).scalars().all()
        assert len(rows) == 2
        assert await vault.get_user_exchanges("user-1") == ["binance", "bitget"]

    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self, vault):
        """Failure case: both keys are required."""
        with pytest.raises(ValidationError):
            await vault.upsert_credential("user-1", "binance", "k", "")

    @pytest.mark.asyncio
    async def test_summary_never_carries_secrets(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s", label="Main")
        summary = CredentialSummary.model_validate(cred)
        dumped = summary.model_dump()
        assert summary.label == "Main"
        assert "encrypted_api_key" not in dumped
        assert "api_key" not in dumped


class TestGetDecryptedCredential:
    """Tests for CredentialVault.get_decrypted_credential()."""

    @pytest.mark.asyncio
    async def test_roundtrip_with_passphrase(self, vault):
        """Happy path: returns the exact triple that was stored."""
        await vault.upsert_credential("user-1", "bitget", "api", "secret", passphrase="phrase")

        plain = await vault.get_decrypted_credential("user-1", "BITGET")
        assert (plain.api_key, plain.secret_key, plain.passphrase) == ("api", "secret", "phrase")

    @pytest.mark.asyncio
    async def test_other_users_credentials_invisible(self, vault):
        await vault.upsert_credential("user-1", "binance", "k", "s")
        assert await vault.get_decrypted_credential("user-2", "binance") is None

    @pytest.mark.asyncio
    async def test_inactive_returns_none(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.toggle_active(cred.id, "user-1")
        assert await vault.get_decrypted_credential("user-1", "binance") is None

    @pytest.mark.asyncio
    async def test_require_active_trading(self, vault):
        await vault.upsert_credential("user-1", "binance", "k", "s", active_trading=False)

        assert await vault.get_decrypted_credential("user-1", "binance") is not None
        assert await vault.get_decrypted_credential("user-1", "binance", require_active_trading=True) is None

    @pytest.mark.asyncio
    async def test_read_does_not_write(self, vault, db_session):
        """Edge case: decrypting for a dispatch leaves the row untouched."""
        await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.get_decrypted_credential("user-1", "binance")

        row = (await db_session.execute(select(ExchangeCredential))).scalar_one()
        assert row.last_used_at is None

    @pytest.mark.asyncio
    async def test_key_mismatch_fails_loudly(self, vault, monkeypatch):
        """Failure case: a swapped key raises InternalError instead of returning garbage."""
        await vault.upsert_credential("user-1", "binance", "k", "s")

        monkeypatch.setattr(settings, "encryption_keys", f"1:{Fernet.generate_key().decode()}")
        enc_module.reset_key_ring()

        with pytest.raises(InternalError):
            await vault.get_decrypted_credential("user-1", "binance")

    @pytest.mark.asyncio
    async def test_repr_masks_secrets(self, vault):
        await vault.upsert_credential("user-1", "binance", "api-key-123456789", "top-secret-value")
        plain = await vault.get_decrypted_credential("user-1", "binance")

        text = repr(plain) + str(plain)
        assert "top-secret-value" not in text
        assert "api-key-123456789" not in text


class TestActiveTradingView:
    """Tests for list_active_trading_credentials() and active_trading_keys()."""

    @pytest.mark.asyncio
    async def test_lists_only_active_trading(self, vault):
        await vault.upsert_credential("user-1", "binance", "k1", "s1")
        await vault.upsert_credential("user-2", "binance", "k2", "s2", active_trading=False)
        cred3 = await vault.upsert_credential("user-3", "mexc", "k3", "s3")
        await vault.toggle_active(cred3.id, "user-3")

        creds = await vault.list_active_trading_credentials()
        assert [(c.user_id, c.exchange, c.api_key) for c in creds] == [("user-1", "binance", "k1")]
        assert await vault.active_trading_keys() == {("user-1", "binance")}

    @pytest.mark.asyncio
    async def test_removed_credential_leaves_view_immediately(self, vault):
        """Edge case: the cached view never serves a deleted row."""
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        assert ("user-1", "binance") in await vault.active_trading_keys()

        await vault.remove_credential(cred.id, "user-1")

        assert ("user-1", "binance") not in await vault.active_trading_keys()
        assert await vault.list_active_trading_credentials() == []

    @pytest.mark.asyncio
    async def test_update_invalidates_view(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        assert await vault.active_trading_keys() == {("user-1", "binance")}

        await vault.update_credential(cred.id, "user-1", active_trading=False)
        assert await vault.active_trading_keys() == set()

    @pytest.mark.asyncio
    async def test_cached_view_is_a_copy(self, vault):
        await vault.upsert_credential("user-1", "binance", "k", "s")
        keys = await vault.active_trading_keys()
        keys.clear()
        assert await vault.active_trading_keys() == {("user-1", "binance")}


class TestMutators:
    """Tests for update/toggle/remove ownership rules."""

    @pytest.mark.asyncio
    async def test_update_rotates_secret(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.update_credential(cred.id, "user-1", secret_key="s-new", label="Renamed")

        plain = await vault.get_decrypted_credential("user-1", "binance")
        assert plain.api_key == "k"
        assert plain.secret_key == "s-new"

    @pytest.mark.asyncio
    async def test_update_clears_passphrase(self, vault):
        cred = await vault.upsert_credential("user-1", "bitget", "k", "s", passphrase="pp")
        await vault.update_credential(cred.id, "user-1", passphrase=None)

        plain = await vault.get_decrypted_credential("user-1", "bitget")
        assert plain.passphrase is None

    @pytest.mark.asyncio
    async def test_toggle_flips(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        assert (await vault.toggle_active(cred.id, "user-1")).is_active is False
        assert (await vault.toggle_active(cred.id, "user-1")).is_active is True

    @pytest.mark.asyncio
    async def test_other_user_cannot_touch_row(self, vault):
        """Failure case: mutators are scoped by user_id."""
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")

        with pytest.raises(NotFoundError):
            await vault.toggle_active(cred.id, "user-2")
        with pytest.raises(NotFoundError):
            await vault.remove_credential(cred.id, "user-2")
        with pytest.raises(NotFoundError):
            await vault.update_credential(cred.id, "user-2", label="x")

    @pytest.mark.asyncio
    async def test_list_user_credentials(self, vault):
        await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.upsert_credential("user-1", "gateio", "k", "s")
        await vault.upsert_credential("user-2", "binance", "k", "s")

        rows = await vault.list_user_credentials("user-1")
        assert {r.exchange for r in rows} == {"binance", "gateio"}


class TestRotateCredentials:
    """Tests for CredentialVault.rotate_credentials()."""

    @pytest.mark.asyncio
    async def test_rotation_roundtrip(self, vault, fernet_key, monkeypatch, db_session):
        """Happy path: rows move to the new key version and still decrypt."""
        await vault.upsert_credential("user-1", "binance", "api-1", "secret-1")
        await vault.upsert_credential("user-2", "bitget", "api-2", "secret-2", passphrase="pp")

        new_key = Fernet.generate_key().decode()
        monkeypatch.setattr(settings, "encryption_keys", f"1:{fernet_key},2:{new_key}")
        enc_module.reset_key_ring()

        assert await vault.rotate_credentials() == 2
        assert await vault.rotate_credentials() == 0

        rows = (await db_session.execute(select(ExchangeCredential))).scalars().all()
        assert {r.key_version for r in rows} == {2}

        # Old key gone: everything must decrypt with version 2 alone
        monkeypatch.setattr(settings, "encryption_keys", f"2:{new_key}")
        enc_module.reset_key_ring()

        plain = await vault.get_decrypted_credential("user-2", "bitget")
        assert (plain.api_key, plain.secret_key, plain.passphrase) == ("api-2", "secret-2", "pp")

    @pytest.mark.asyncio
    async def test_new_writes_use_active_version(self, vault, fernet_key, monkeypatch):
        monkeypatch.setattr(settings, "encryption_keys", f"1:{fernet_key},3:{Fernet.generate_key().decode()}")
        enc_module.reset_key_ring()

        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        assert cred.key_version == 3


class TestMarkUsed:
    @pytest.mark.asyncio
    async def test_stamps_only_given_pairs(self, vault, db_session):
        await vault.upsert_credential("user-1", "binance", "k", "s")
        await vault.upsert_credential("user-1", "mexc", "k", "s")
        await vault.upsert_credential("user-2", "binance", "k", "s")

        stamped = await vault.mark_used([("user-1", "binance"), ("user-2", "binance"), ("user-2", "binance")])

        assert stamped == 2
        rows = (await db_session.execute(select(ExchangeCredential))).scalars().all()
        used = {(r.user_id, r.exchange) for r in rows if r.last_used_at is not None}
        assert used == {("user-1", "binance"), ("user-2", "binance")}

    @pytest.mark.asyncio
    async def test_nothing_to_stamp(self, vault):
        assert await vault.mark_used([]) == 0


class TestHealthAndKeyRing:
    @pytest.mark.asyncio
    async def test_reconnect_clears_quarantine(self, vault):
        """Happy path: new keys for a quarantined credential get a clean slate."""
        await vault.upsert_credential("user-1", "binance", "old", "s")
        vault.health.record_failure("user-1", "binance", "Invalid API-key")
        assert vault.health.is_healthy("user-1", "binance") is False

        await vault.upsert_credential("user-1", "binance", "new", "s")

        assert vault.health.get_health("user-1", "binance") is None

    @pytest.mark.asyncio
    async def test_label_update_keeps_health(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        vault.health.record_failure("user-1", "binance", "Invalid API-key")

        await vault.update_credential(cred.id, "user-1", label="Main")

        assert vault.health.is_healthy("user-1", "binance") is False

    @pytest.mark.asyncio
    async def test_remove_clears_health(self, vault):
        cred = await vault.upsert_credential("user-1", "binance", "k", "s")
        vault.health.record_failure("user-1", "binance", "timeout")

        await vault.remove_credential(cred.id, "user-1")

        assert vault.health.get_health("user-1", "binance") is None

    @pytest.mark.asyncio
    async def test_check_key_ring(self, vault):
        assert vault.check_key_ring() == 1

    @pytest.mark.asyncio
    async def test_check_key_ring_without_keys(self, vault, monkeypatch):
        """Failure case: no configured key is a vault-wide InternalError."""
        monkeypatch.setattr(settings, "encryption_keys", "")
        monkeypatch.setattr(settings, "encryption_key", "")
        enc_module.reset_key_ring()

        with pytest.raises(InternalError, match="ENCRYPTION_KEY not set"):
            vault.check_key_ring()
