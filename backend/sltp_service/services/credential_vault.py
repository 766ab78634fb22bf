"""
Credential Vault

Owns the encrypted exchange credentials: one row per (user, exchange),
Fernet ciphertext with a key version per row, and the cached view of which
tenants are enabled for active trading.

Plaintext only leaves this module inside DecryptedCredential objects that
the caller is expected to drop as soon as its exchange call is done.
Nothing here logs key material.

Every operation opens its own session from the session maker, so the vault
can be shared by concurrently running tenant dispatches.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sltp_service.database import async_session_maker
from sltp_service.encryption import current_key_version, decrypt_value, encrypt_value
from sltp_service.exceptions import NotFoundError, ValidationError
from sltp_service.models import ExchangeCredential, ExchangeType
from sltp_service.schemas.credentials import ActiveTradingCredential, DecryptedCredential
from sltp_service.services.credential_health import CredentialHealthTracker

logger = logging.getLogger(__name__)

_UNSET = object()


def normalize_exchange(exchange) -> str:
    """Validate an exchange name against ExchangeType and return its value."""
    if isinstance(exchange, ExchangeType):
        return exchange.value
    try:
        return ExchangeType(str(exchange).strip().lower()).value
    except ValueError:
        raise ValidationError(f"Unsupported exchange: {exchange}")


def _decrypt_row(cred: ExchangeCredential) -> DecryptedCredential:
    version = cred.key_version or 1
    return DecryptedCredential(
        api_key=decrypt_value(cred.encrypted_api_key, version),
        secret_key=decrypt_value(cred.encrypted_secret_key, version),
        passphrase=decrypt_value(cred.encrypted_passphrase, version) if cred.encrypted_passphrase else None,
    )


class CredentialVault:
    """
    Encrypted credential store keyed uniquely by (user_id, exchange).

    Usage:
        vault = CredentialVault()
        await vault.upsert_credential("user-1", "binance", api_key, secret_key)
        cred = await vault.get_decrypted_credential("user-1", "binance")
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        health: Optional[CredentialHealthTracker] = None,
    ):
        self._session_maker = session_maker or async_session_maker
        self.health = health or CredentialHealthTracker()
        # (user_id, exchange) pairs with is_active and active_trading set.
        # Identities only; rebuilt lazily after any mutation.
        self._active_trading_cache: Optional[Set[Tuple[str, str]]] = None

    def invalidate_cache(self):
        self._active_trading_cache = None

    def check_key_ring(self) -> int:
        """
        Fail fast on vault misconfiguration.

        Returns:
            The active key version

        Raises:
            InternalError: No keys configured, a malformed key, or an
                active version that is not in the ring
        """
        return current_key_version()

    async def _get_owned(self, db: AsyncSession, credential_id: int, user_id: str) -> ExchangeCredential:
        result = await db.execute(
            select(ExchangeCredential).where(
                ExchangeCredential.id == credential_id,
                ExchangeCredential.user_id == user_id,
            )
        )
        credential = result.scalar_one_or_none()
        if not credential:
            raise NotFoundError("Credential not found")
        return credential

    # =========================================================================
    # Writes
    # =========================================================================

    async def upsert_credential(
        self,
        user_id: str,
        exchange,
        api_key: str,
        secret_key: str,
        passphrase: Optional[str] = None,
        label: Optional[str] = None,
        active_trading: Optional[bool] = None,
    ) -> ExchangeCredential:
        """
        Create the credential for (user, exchange), or overwrite it on reconnect.

        A reconnect re-encrypts every secret with the active key version,
        reactivates the row, and changes active_trading only when given.
        New rows default to active_trading=True so trading works immediately.

        Returns:
            The stored row (ciphertext, never decrypted)
        """
        exchange = normalize_exchange(exchange)
        if not api_key or not secret_key:
            raise ValidationError("API key and secret key are required")

        version = current_key_version()
        enc_api_key = encrypt_value(api_key, version)
        enc_secret_key = encrypt_value(secret_key, version)
        enc_passphrase = encrypt_value(passphrase, version) if passphrase else None

        # Two attempts: a concurrent first connect can win the insert race,
        # in which case the unique constraint fires and we overwrite instead.
        for attempt in range(2):
            try:
                async with self._session_maker() as db:
                    result = await db.execute(
                        select(ExchangeCredential).where(
                            ExchangeCredential.user_id == user_id,
                            ExchangeCredential.exchange == exchange,
                        )
                    )
                    credential = result.scalar_one_or_none()

                    if credential:
                        credential.encrypted_api_key = enc_api_key
                        credential.encrypted_secret_key = enc_secret_key
                        credential.encrypted_passphrase = enc_passphrase
                        credential.key_version = version
                        credential.is_active = True
                        if label is not None:
                            credential.label = label
                        if active_trading is not None:
                            credential.active_trading = active_trading
                        credential.updated_at = datetime.utcnow()
                        action = "updated"
                    else:
                        credential = ExchangeCredential(
                            user_id=user_id,
                            exchange=exchange,
                            encrypted_api_key=enc_api_key,
                            encrypted_secret_key=enc_secret_key,
                            encrypted_passphrase=enc_passphrase,
                            key_version=version,
                            label=label,
                            is_active=True,
                            active_trading=True if active_trading is None else active_trading,
                        )
                        db.add(credential)
                        action = "created"

                    await db.commit()
                    await db.refresh(credential)
                    self.invalidate_cache()
                    self.health.reset(user_id, exchange)
                    logger.info(f"🔐 Credential {action} {credential.get_user_label()}")
                    return credential
            except IntegrityError:
                if attempt == 1:
                    raise
                logger.warning(f"Concurrent insert for user {user_id[:8]}... on {exchange}, retrying as update")

        raise RuntimeError("Unexpected: upsert fell through")

    async def update_credential(
        self,
        credential_id: int,
        user_id: str,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        passphrase=_UNSET,
        label=_UNSET,
        is_active: Optional[bool] = None,
        active_trading: Optional[bool] = None,
    ) -> ExchangeCredential:
        """Partial update of a credential owned by user_id. passphrase=None clears it."""
        async with self._session_maker() as db:
            credential = await self._get_owned(db, credential_id, user_id)
            version = credential.key_version or 1

            if api_key:
                credential.encrypted_api_key = encrypt_value(api_key, version)
            if secret_key:
                credential.encrypted_secret_key = encrypt_value(secret_key, version)
            if passphrase is not _UNSET:
                credential.encrypted_passphrase = encrypt_value(passphrase, version) if passphrase else None
            if label is not _UNSET:
                credential.label = label
            if is_active is not None:
                credential.is_active = is_active
            if active_trading is not None:
                credential.active_trading = active_trading
            credential.updated_at = datetime.utcnow()

            await db.commit()
            await db.refresh(credential)

        self.invalidate_cache()
        if api_key or secret_key or passphrase is not _UNSET:
            self.health.reset(user_id, credential.exchange)
        logger.info(f"Credential {credential_id} updated for user {user_id[:8]}...")
        return credential

    async def toggle_active(self, credential_id: int, user_id: str) -> ExchangeCredential:
        """Flip is_active on a credential owned by user_id."""
        async with self._session_maker() as db:
            credential = await self._get_owned(db, credential_id, user_id)
            credential.is_active = not credential.is_active
            credential.updated_at = datetime.utcnow()
            await db.commit()
            await db.refresh(credential)

        self.invalidate_cache()
        logger.info(f"Credential {credential_id} {'enabled' if credential.is_active else 'disabled'}")
        return credential

    async def remove_credential(self, credential_id: int, user_id: str):
        """Hard-delete a credential. It drops out of the active trading view immediately."""
        async with self._session_maker() as db:
            credential = await self._get_owned(db, credential_id, user_id)
            # Invalidated on both sides of the commit: a read racing the
            # delete may have repopulated the cache in between.
            self.invalidate_cache()
            exchange = credential.exchange
            await db.delete(credential)
            await db.commit()

        self.invalidate_cache()
        self.health.reset(user_id, exchange)
        logger.info(f"🗑️ Credential {credential_id} deleted for user {user_id[:8]}...")

    async def rotate_credentials(self, target_version: Optional[int] = None) -> int:
        """
        Re-encrypt every row not yet on the target key version.

        Returns:
            Number of rows re-encrypted
        """
        target = target_version or current_key_version()
        rotated = 0
        async with self._session_maker() as db:
            result = await db.execute(
                select(ExchangeCredential).where(ExchangeCredential.key_version != target)
            )
            for credential in result.scalars().all():
                plain = _decrypt_row(credential)
                credential.encrypted_api_key = encrypt_value(plain.api_key, target)
                credential.encrypted_secret_key = encrypt_value(plain.secret_key, target)
                credential.encrypted_passphrase = (
                    encrypt_value(plain.passphrase, target) if plain.passphrase else None
                )
                credential.key_version = target
                del plain
                rotated += 1
            await db.commit()

        if rotated:
            logger.info(f"🔑 Re-encrypted {rotated} credential(s) with key version {target}")
        return rotated

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_decrypted_credential(
        self,
        user_id: str,
        exchange,
        require_active_trading: bool = False,
    ) -> Optional[DecryptedCredential]:
        """
        Get the decrypted key triple for making exchange calls.

        Returns:
            DecryptedCredential, or None if no active credential exists

        Raises:
            InternalError: The row exists but cannot be decrypted with the
                configured keys. Never returns garbage keys.
        """
        exchange = normalize_exchange(exchange)
        async with self._session_maker() as db:
            query = select(ExchangeCredential).where(
                ExchangeCredential.user_id == user_id,
                ExchangeCredential.exchange == exchange,
                ExchangeCredential.is_active.is_(True),
            )
            if require_active_trading:
                query = query.where(ExchangeCredential.active_trading.is_(True))
            result = await db.execute(query)
            credential = result.scalar_one_or_none()

            if not credential:
                return None

        try:
            return _decrypt_row(credential)
        except Exception:
            logger.error(f"❌ Decryption failed for credential {credential.id} {credential.get_user_label()}")
            raise

    async def mark_used(self, keys: Iterable[Tuple[str, str]]) -> int:
        """
        Stamp last_used_at on many (user_id, exchange) credentials in one write.

        Called once per trigger after dispatch so concurrent tenant
        dispatches never queue on the database write lock.
        """
        keys = set(keys)
        if not keys:
            return 0

        async with self._session_maker() as db:
            result = await db.execute(
                update(ExchangeCredential)
                .where(or_(*(
                    and_(ExchangeCredential.user_id == user_id, ExchangeCredential.exchange == exchange)
                    for user_id, exchange in keys
                )))
                .values(last_used_at=datetime.utcnow())
            )
            await db.commit()
        return result.rowcount

    async def list_active_trading_credentials(self) -> List[ActiveTradingCredential]:
        """
        Decrypt every credential with is_active and active_trading set.

        Used once at start-up to warm up order monitoring connections.
        Callers should consume and drop the list right away.
        """
        async with self._session_maker() as db:
            result = await db.execute(
                select(ExchangeCredential).where(
                    ExchangeCredential.is_active.is_(True),
                    ExchangeCredential.active_trading.is_(True),
                ).order_by(ExchangeCredential.id)
            )
            credentials = result.scalars().all()

        decrypted = []
        for cred in credentials:
            plain = _decrypt_row(cred)
            decrypted.append(
                ActiveTradingCredential(
                    user_id=cred.user_id,
                    exchange=cred.exchange,
                    api_key=plain.api_key,
                    secret_key=plain.secret_key,
                    passphrase=plain.passphrase,
                )
            )
        return decrypted

    async def active_trading_keys(self) -> Set[Tuple[str, str]]:
        """Cached set of (user_id, exchange) eligible for trigger dispatch."""
        if self._active_trading_cache is not None:
            return set(self._active_trading_cache)

        async with self._session_maker() as db:
            result = await db.execute(
                select(ExchangeCredential.user_id, ExchangeCredential.exchange).where(
                    ExchangeCredential.is_active.is_(True),
                    ExchangeCredential.active_trading.is_(True),
                )
            )
            keys = {(row.user_id, row.exchange) for row in result.all()}

        self._active_trading_cache = keys
        return set(keys)

    async def list_user_credentials(self, user_id: str) -> List[ExchangeCredential]:
        """All credentials for a user, newest first (ciphertext only)."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(ExchangeCredential)
                .where(ExchangeCredential.user_id == user_id)
                .order_by(ExchangeCredential.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_user_exchanges(self, user_id: str) -> List[str]:
        """Exchanges a user has an active credential for."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(ExchangeCredential.exchange).where(
                    ExchangeCredential.user_id == user_id,
                    ExchangeCredential.is_active.is_(True),
                ).order_by(ExchangeCredential.exchange)
            )
            return [row[0] for row in result.all()]
