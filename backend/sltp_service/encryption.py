"""
Encryption utilities for storing exchange credentials at rest.

Uses Fernet symmetric encryption (AES-128-CBC with HMAC-SHA256). Every
token carries its own random IV, so encrypting the same API key twice
yields different ciphertexts.

Keys are versioned: rows record the version that encrypted them, new
ciphertext is written with the active version, and older versions stay
configured until CredentialVault.rotate_credentials() has re-encrypted
everything written under them.
"""

import logging
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from sltp_service.config import settings
from sltp_service.exceptions import InternalError

logger = logging.getLogger(__name__)

_fernets: Optional[Dict[int, Fernet]] = None


def _get_fernets() -> Dict[int, Fernet]:
    """Get or build the {version: Fernet} key ring from settings."""
    global _fernets
    if _fernets is None:
        try:
            keys = settings.get_encryption_keys()
        except ValueError as e:
            raise InternalError(str(e))
        if not keys:
            raise InternalError(
                "ENCRYPTION_KEY not set in .env. "
                "Generate one with Fernet.generate_key() and set ENCRYPTION_KEY or ENCRYPTION_KEYS."
            )
        ring = {}
        for version, key in keys.items():
            try:
                ring[version] = Fernet(key.encode() if isinstance(key, str) else key)
            except (ValueError, TypeError):
                raise InternalError(f"Encryption key version {version} is not a valid Fernet key")
        _fernets = ring
    return _fernets


def reset_key_ring():
    """Drop the cached key ring (tests and key reloads)."""
    global _fernets
    _fernets = None


def current_key_version() -> int:
    """Version used for newly written ciphertext."""
    ring = _get_fernets()
    version = settings.active_encryption_key_version or max(ring)
    if version not in ring:
        raise InternalError(f"Active encryption key version {version} is not configured")
    return version


def _fernet_for(version: int) -> Fernet:
    ring = _get_fernets()
    fernet = ring.get(version)
    if fernet is None:
        raise InternalError(f"Encryption key version {version} is not configured")
    return fernet


def encrypt_value(plaintext: str, key_version: Optional[int] = None) -> str:
    """
    Encrypt a plaintext string and return the ciphertext as a string.

    Args:
        plaintext: The value to encrypt (e.g., an API key)
        key_version: Key version to use (defaults to the active version)

    Returns:
        Encrypted string (Fernet token, starts with 'gAAAAA')
    """
    if not plaintext:
        return plaintext
    version = key_version if key_version is not None else current_key_version()
    f = _fernet_for(version)
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, key_version: int = 1) -> str:
    """
    Decrypt a ciphertext string and return the plaintext.

    Args:
        ciphertext: The encrypted value to decrypt
        key_version: Version of the key that produced the ciphertext

    Returns:
        Decrypted plaintext string

    Raises:
        InternalError: wrong key, tampered ciphertext, or unknown key version
    """
    if not ciphertext:
        return ciphertext
    f = _fernet_for(key_version)
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error(f"Failed to decrypt value with key version {key_version}: invalid token or wrong encryption key")
        raise InternalError("Credential decryption failed: key/ciphertext mismatch")
