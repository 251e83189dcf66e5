import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from flowrouter.exceptions import DecryptionError
from flowrouter.services.encryption import LEGACY_SALT, decrypt_token, derive_key, encrypt_token

KEY = "0123456789abcdef0123456789abcdef"


class TestTokenEncryption:
    def test_encrypt_then_decrypt(self):
        encrypted = encrypt_token("123456:ABC-DEF", KEY)

        assert len(encrypted.split(":")) == 4
        assert "123456" not in encrypted
        assert decrypt_token(encrypted, KEY) == "123456:ABC-DEF"

    def test_salt_is_random(self):
        assert encrypt_token("token", KEY) != encrypt_token("token", KEY)

    def test_legacy_three_part_format(self):
        iv = bytes(range(16))
        sealed = AESGCM(derive_key(KEY, LEGACY_SALT)).encrypt(iv, b"legacy-token", None)
        encrypted = ":".join([iv.hex(), sealed[-16:].hex(), sealed[:-16].hex()])

        assert decrypt_token(encrypted, KEY) == "legacy-token"

    def test_wrong_key(self):
        encrypted = encrypt_token("token", KEY)
        with pytest.raises(DecryptionError):
            decrypt_token(encrypted, "f" * 32)

    def test_tampered_ciphertext(self):
        salt, iv, tag, ciphertext = encrypt_token("token", KEY).split(":")
        tampered = ":".join([salt, iv, tag, ("00" if ciphertext[:2] != "00" else "11") + ciphertext[2:]])
        with pytest.raises(DecryptionError):
            decrypt_token(tampered, KEY)

    def test_malformed(self):
        with pytest.raises(DecryptionError):
            decrypt_token("not-encrypted", KEY)
        with pytest.raises(DecryptionError):
            decrypt_token("zz:zz:zz", KEY)

    def test_short_key_rejected(self):
        with pytest.raises(DecryptionError):
            encrypt_token("token", "short")
