"""
Bot token encryption.

Stored format is ``salt:iv:tag:ciphertext`` in hex. The key is derived with
scrypt (N=16384, r=8, p=1) from the service encryption key and the salt, and
the token is sealed with AES-256-GCM. The older three-part ``iv:tag:ciphertext``
format used the literal salt ``b"salt"`` and is still accepted on decrypt.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from flowrouter.exceptions import DecryptionError

IV_LENGTH = 16
SALT_LENGTH = 64
TAG_LENGTH = 16
MIN_KEY_LENGTH = 32
LEGACY_SALT = b"salt"


def _require_key(encryption_key: str) -> None:
    if not encryption_key or len(encryption_key) < MIN_KEY_LENGTH:
        raise DecryptionError(f"Encryption key must be at least {MIN_KEY_LENGTH} characters long")


def derive_key(encryption_key: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
    return kdf.derive(encryption_key.encode("utf-8"))


def encrypt_token(token: str, encryption_key: str) -> str:
    _require_key(encryption_key)
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(derive_key(encryption_key, salt)).encrypt(iv, token.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(part.hex() for part in (salt, iv, tag, ciphertext))


def decrypt_token(encrypted_token: str, encryption_key: str) -> str:
    _require_key(encryption_key)

    parts = (encrypted_token or "").split(":")
    if len(parts) == 4:
        salt_hex, iv_hex, tag_hex, ciphertext_hex = parts
    elif len(parts) == 3:
        salt_hex = None
        iv_hex, tag_hex, ciphertext_hex = parts
    else:
        raise DecryptionError("Failed to decrypt token: invalid encrypted token format")

    try:
        salt = bytes.fromhex(salt_hex) if salt_hex is not None else LEGACY_SALT
        iv = bytes.fromhex(iv_hex)
        tag = bytes.fromhex(tag_hex)
        ciphertext = bytes.fromhex(ciphertext_hex)
        plain = AESGCM(derive_key(encryption_key, salt)).decrypt(iv, ciphertext + tag, None)
        return plain.decode("utf-8")
    except (ValueError, InvalidTag, UnicodeDecodeError) as exc:
        raise DecryptionError(f"Failed to decrypt token: {type(exc).__name__}") from exc
