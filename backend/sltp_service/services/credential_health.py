"""
Credential Health Tracker

In-memory success/failure bookkeeping per (user, exchange). A credential
that fails several dispatches in a row, or fails once with an error that
can only mean a bad key, is quarantined: trigger dispatch skips it without
calling the exchange. Once the quarantine window has passed the next
trigger tries it again, and a success clears the quarantine.

State is process-local and starts empty; unknown credentials are healthy.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sltp_service.config import settings

logger = logging.getLogger(__name__)

# Errors that mean the key itself is unusable. Generic 401s are not listed:
# they can be a missing endpoint permission on an otherwise valid key.
AUTH_ERROR_PATTERNS = (
    "invalid api-key",
    "invalid access_key",
    "-2015",  # Binance: invalid API-key, IP, or permissions for action
    "30011",  # Bitget: invalid ACCESS_KEY
    "30012",  # Bitget: invalid signature
    "30013",  # Bitget: invalid passphrase
    "apikey_invalid",
    "apikey does not exist",
    "api-key format invalid",
    "ip not whitelisted",
)


def is_authentication_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in AUTH_ERROR_PATTERNS)


@dataclass
class CredentialHealth:
    user_id: str
    exchange: str
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_error: Optional[str] = None
    quarantined_at: Optional[float] = None
    quarantine_reason: Optional[str] = None

    @property
    def is_quarantined(self) -> bool:
        return self.quarantined_at is not None


class CredentialHealthTracker:
    """
    Quarantines credentials that keep failing.

    Usage:
        health = CredentialHealthTracker()
        if health.is_healthy(user_id, exchange):
            ...
            health.record_success(user_id, exchange)
    """

    def __init__(
        self,
        quarantine_threshold: Optional[int] = None,
        quarantine_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.quarantine_threshold = max(1, quarantine_threshold or settings.credential_quarantine_threshold)
        self.quarantine_seconds = (
            settings.credential_quarantine_seconds if quarantine_seconds is None else quarantine_seconds
        )
        self._clock = clock or time.monotonic
        self._health: Dict[Tuple[str, str], CredentialHealth] = {}

    def _key(self, user_id: str, exchange: str) -> Tuple[str, str]:
        return user_id, exchange.lower()

    def _get_or_create(self, user_id: str, exchange: str) -> CredentialHealth:
        key = self._key(user_id, exchange)
        health = self._health.get(key)
        if health is None:
            health = CredentialHealth(user_id=user_id, exchange=key[1])
            self._health[key] = health
        return health

    def get_health(self, user_id: str, exchange: str) -> Optional[CredentialHealth]:
        return self._health.get(self._key(user_id, exchange))

    def record_success(self, user_id: str, exchange: str):
        health = self._get_or_create(user_id, exchange)
        health.consecutive_failures = 0
        health.total_successes += 1
        health.last_error = None
        if health.is_quarantined:
            health.quarantined_at = None
            health.quarantine_reason = None
            logger.info(f"✅ [User {user_id[:8]}...][{exchange.upper()}] Credential healed, quarantine lifted")

    def record_failure(self, user_id: str, exchange: str, error: str):
        health = self._get_or_create(user_id, exchange)
        health.consecutive_failures += 1
        health.total_failures += 1
        health.last_error = (error or "")[:200]

        auth_error = is_authentication_error(error)
        label = f"[User {user_id[:8]}...][{exchange.upper()}]"
        if auth_error or health.consecutive_failures >= self.quarantine_threshold:
            # A failed retry after the window restarts the quarantine
            health.quarantined_at = self._clock()
            health.quarantine_reason = (
                f"Authentication error: {health.last_error[:100]}"
                if auth_error
                else f"{health.consecutive_failures} consecutive failures"
            )
            logger.warning(f"🚨 {label} Credential QUARANTINED ({health.quarantine_reason})")
        else:
            logger.warning(
                f"⚠️ {label} Failure {health.consecutive_failures}/{self.quarantine_threshold}: "
                f"{health.last_error[:100]}"
            )

    def is_healthy(self, user_id: str, exchange: str) -> bool:
        """False only while a quarantine is in force; expired quarantines get a retry."""
        health = self.get_health(user_id, exchange)
        if health is None or not health.is_quarantined:
            return True
        return self._clock() - health.quarantined_at >= self.quarantine_seconds

    def quarantined(self) -> List[CredentialHealth]:
        return [h for h in self._health.values() if h.is_quarantined]

    def reset(self, user_id: str, exchange: str):
        """Forget a credential's history (its keys were replaced)."""
        if self._health.pop(self._key(user_id, exchange), None) is not None:
            logger.info(f"🔄 Health reset for [User {user_id[:8]}...][{exchange.upper()}]")

    def summary(self) -> dict:
        records = list(self._health.values())
        credentials = []
        for health in records:
            entry = asdict(health)
            entry.pop("quarantined_at")
            entry["quarantined"] = health.is_quarantined
            credentials.append(entry)

        quarantined = sum(1 for h in records if h.is_quarantined)
        return {
            "total": len(records),
            "healthy": len(records) - quarantined,
            "quarantined": quarantined,
            "credentials": credentials,
        }
