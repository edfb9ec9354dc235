import base64
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import JWTError, jwt

from lightcrl.config import settings


# ============================================
# AES-256-GCM key custody
# ============================================

_KDF_SALT = b"lightcrl_salt"
_KDF_ITERATIONS = 100000
_NONCE_SIZE = 12


def _derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
        backend=default_backend(),
    )
    return kdf.derive(secret.encode())


def encrypt_data(plaintext: str, key: str) -> str:
    """Encrypt with AES-256-GCM; returns base64(nonce + ciphertext + tag)"""
    nonce = secrets.token_bytes(_NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(key)).encrypt(nonce, plaintext.encode(), None)
    return base64.b64encode(nonce + ciphertext).decode()


def decrypt_data(ciphertext: str, key: str) -> str:
    """Decrypt output of encrypt_data; raises InvalidTag on a wrong key"""
    raw = base64.b64decode(ciphertext)
    nonce, body = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    return AESGCM(_derive_key(key)).decrypt(nonce, body, None).decode()


def _custody_key(password: Optional[str]) -> str:
    return settings.MASTER_KEY + password if password else settings.MASTER_KEY


def encrypt_private_key(private_key_pem: str, password: Optional[str] = None) -> str:
    """Encrypt a CA private key PEM under the master key (and optional password)"""
    return encrypt_data(private_key_pem, _custody_key(password))


def decrypt_private_key(encrypted_key: str, password: Optional[str] = None) -> str:
    return decrypt_data(encrypted_key, _custody_key(password))


def encrypt_key_password(password: str) -> str:
    return encrypt_data(password, settings.MASTER_KEY)


def decrypt_key_password(encrypted_password: str) -> str:
    return decrypt_data(encrypted_password, settings.MASTER_KEY)


# ============================================
# Operator credentials (bcrypt + JWT)
# ============================================


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode(), hashed_password.encode())


def is_bcrypt_hash(password: str) -> bool:
    if not isinstance(password, str):
        return False
    return password.startswith(("$2b$", "$2a$")) and len(password) >= 60


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.MASTER_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.MASTER_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
