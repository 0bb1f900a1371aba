import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet

from config import settings
from errors import ConfigurationError

_fernet: Optional[Fernet] = None


def _derive_key(secret: str) -> bytes:
    """
    Dowolny sekret z ENCRYPTION_KEY -> 32-bajtowy klucz Fernet (SHA-256).
    """
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        if not settings.encryption_key:
            # bez stałego klucza tokeny sklepów nie dałyby się odczytać po restarcie
            raise ConfigurationError("ENCRYPTION_KEY environment variable must be set")
        _fernet = Fernet(_derive_key(settings.encryption_key))
    return _fernet


def encrypt_token(token: str) -> str:
    return get_fernet().encrypt(token.encode("utf-8")).decode("ascii")


def decrypt_token(encrypted: str) -> str:
    """
    Rzuca cryptography.fernet.InvalidToken, gdy token zaszyfrowano innym kluczem.
    """
    return get_fernet().decrypt(encrypted.encode("ascii")).decode("utf-8")
