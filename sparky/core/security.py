import base64
import binascii
import hashlib
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jose import JWTError, jwt
from passlib.context import CryptContext

# pbkdf2_sha256 is broadly compatible across Python versions.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
API_ENCRYPTION_KEY_HEX = os.getenv("SPARKY_FITNESS_API_ENCRYPTION_KEY", "").strip()

IV_BYTES = 12


class DecryptionError(ValueError):
    """Stored ciphertext, IV and process key do not fit together."""


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    iv: str


def _load_encryption_key(raw_hex: str) -> bytes:
    if not raw_hex:
        # Dev fallback: derive a stable 256-bit key from SECRET_KEY.
        return hashlib.sha256(SECRET_KEY.encode("utf-8")).digest()
    if len(raw_hex) != 64:
        raise RuntimeError(
            "SPARKY_FITNESS_API_ENCRYPTION_KEY must be 64 hex characters (32 bytes for AES-256-GCM)."
        )
    try:
        return bytes.fromhex(raw_hex)
    except ValueError as exc:
        raise RuntimeError("SPARKY_FITNESS_API_ENCRYPTION_KEY is not valid hex.") from exc


ENCRYPTION_KEY = _load_encryption_key(API_ENCRYPTION_KEY_HEX)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> str:
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    subject = payload.get("sub")
    if not subject:
        raise JWTError("Missing subject")
    return subject


def encrypt_api_key(api_key: str, key: bytes = ENCRYPTION_KEY) -> EncryptedSecret:
    """Encrypt with AES-256-GCM under a fresh random 12-byte IV.

    The GCM tag is appended to the ciphertext; both values are base64 text so
    they can be stored in plain columns.
    """
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, api_key.encode("utf-8"), None)
    return EncryptedSecret(
        ciphertext=base64.b64encode(sealed).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
    )


def decrypt_api_key(ciphertext: str, iv: str, key: bytes = ENCRYPTION_KEY) -> str:
    try:
        raw_iv = base64.b64decode(iv, validate=True)
        sealed = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, TypeError) as exc:
        raise DecryptionError("Stored API key is not valid base64") from exc
    if len(raw_iv) != IV_BYTES:
        raise DecryptionError("Stored API key IV has the wrong length")
    try:
        return AESGCM(key).decrypt(raw_iv, sealed, None).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        raise DecryptionError("Invalid encrypted key") from exc
