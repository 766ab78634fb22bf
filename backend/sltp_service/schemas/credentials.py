"""Credential schemas returned by CredentialVault"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DecryptedCredential(BaseModel):
    """Plaintext key triple. Lives only for the duration of one dispatch call."""
    api_key: str
    secret_key: str
    passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return f"DecryptedCredential(api_key='{mask_secret(self.api_key)}', secret_key='***')"

    __str__ = __repr__


class ActiveTradingCredential(DecryptedCredential):
    """Decrypted credential plus the tenant it belongs to (start-up warm-up)."""
    user_id: str
    exchange: str

    def __repr__(self) -> str:
        return (
            f"ActiveTradingCredential(user_id='{self.user_id}', exchange='{self.exchange}', "
            f"api_key='{mask_secret(self.api_key)}', secret_key='***')"
        )

    __str__ = __repr__


class CredentialSummary(BaseModel):
    """Stored credential without any secret material"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    exchange: str
    label: Optional[str] = None
    is_active: bool
    active_trading: bool
    key_version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


def mask_secret(value: Optional[str]) -> str:
    """Safe preview of a secret (last 4 chars)."""
    if not value or len(value) <= 8:
        return "..."
    return f"...{value[-4:]}"
