"""Encryption utilities for OAuth tokens at rest."""

from cryptography.fernet import Fernet, InvalidToken

from replyready.core.config import Settings

_fernets: dict[str, Fernet] = {}


def get_fernet(settings: Settings) -> Fernet:
    """Get or create the Fernet instance for the configured key."""
    key = settings.FERNET_KEY
    if not key:
        raise RuntimeError(
            "FERNET_KEY not configured. "
            'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
        )
    fernet = _fernets.get(key)
    if fernet is None:
        fernet = Fernet(key.encode())
        _fernets[key] = fernet
    return fernet


def encrypt_token(settings: Settings, token: str | None) -> str | None:
    """Encrypt a token for storage."""
    if not token:
        return None
    return get_fernet(settings).encrypt(token.encode()).decode()


def decrypt_token(settings: Settings, encrypted: str | None) -> str | None:
    """Decrypt a stored token."""
    if not encrypted:
        return None
    try:
        return get_fernet(settings).decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")
