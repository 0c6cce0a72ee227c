"""Encryption of outbound webhook signing secrets at rest."""

from cryptography.fernet import Fernet, InvalidToken

from intake_crm.core.config import settings


_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet
    if _fernet is None:
        if not settings.WEBHOOK_SECRET_ENCRYPTION_KEY:
            raise RuntimeError(
                "WEBHOOK_SECRET_ENCRYPTION_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.WEBHOOK_SECRET_ENCRYPTION_KEY.encode())
    return _fernet


def encrypt_secret(secret: str) -> str:
    """Encrypt a signing secret for storage."""
    if not secret:
        return ""
    return get_fernet().encrypt(secret.encode()).decode()


def decrypt_secret(encrypted: str) -> str:
    """Decrypt a stored signing secret."""
    if not encrypted:
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted secret")


def is_encryption_configured() -> bool:
    return bool(settings.WEBHOOK_SECRET_ENCRYPTION_KEY)
