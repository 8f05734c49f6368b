"""
Key Custody - password-encrypted storage of the single hot key.

Blob format: base64(salt[16] || nonce[12] || ciphertext+tag)
"""
import base64
import binascii
import json
import logging
import os
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import DEFAULT_KEYSTORE_PATH
from .errors import InvalidKeyFormat, InvalidPassword

logger = logging.getLogger(__name__)

SALT_SIZE = 16
NONCE_SIZE = 12
KDF_ITERATIONS = 100000
STORAGE_KEY = "encrypted_wallet"

PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def validate_private_key(raw_key: str) -> str:
    """
    Check the key shape before any crypto work.

    Returns:
        The key with surrounding whitespace removed

    Raises:
        InvalidKeyFormat: not 64 hex characters, optionally 0x-prefixed
    """
    if not isinstance(raw_key, str):
        raise InvalidKeyFormat("Private key must be a string")
    key = raw_key.strip()
    if not PRIVATE_KEY_RE.match(key):
        raise InvalidKeyFormat("Private key must be 64 hex characters (optionally 0x-prefixed)")
    return key


class KeyCustody:
    """
    Encrypts the signing key with a password and keeps the blob in a
    JSON keystore file.

    Usage:
        custody = KeyCustody()
        custody.persist(custody.encrypt(private_key, password))
        raw_key = custody.decrypt(custody.load(), password)
    """

    def __init__(self, keystore_path: Optional[str] = None):
        self.keystore_path = keystore_path or DEFAULT_KEYSTORE_PATH

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive the 256-bit AES key from a password"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    def encrypt(self, raw_key: str, password: str) -> str:
        """
        Encrypt a private key with AES-256-GCM.

        The key string is stored exactly as given; only its shape is checked.
        """
        validate_private_key(raw_key)

        salt = secrets.token_bytes(SALT_SIZE)
        nonce = secrets.token_bytes(NONCE_SIZE)
        aesgcm = AESGCM(self._derive_key(password, salt))
        ciphertext = aesgcm.encrypt(nonce, raw_key.encode("utf-8"), None)

        return base64.b64encode(salt + nonce + ciphertext).decode("ascii")

    def decrypt(self, blob: str, password: str) -> str:
        """
        Decrypt a blob produced by `encrypt`.

        Raises:
            InvalidPassword: wrong password, tampered or malformed blob
        """
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise InvalidPassword("Encrypted wallet data is malformed") from e

        # 16 bytes of GCM tag at minimum after salt and nonce
        if len(data) < SALT_SIZE + NONCE_SIZE + 16:
            raise InvalidPassword("Encrypted wallet data is malformed")

        salt = data[:SALT_SIZE]
        nonce = data[SALT_SIZE:SALT_SIZE + NONCE_SIZE]
        ciphertext = data[SALT_SIZE + NONCE_SIZE:]

        try:
            plaintext = AESGCM(self._derive_key(password, salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise InvalidPassword("Invalid password") from None

        return plaintext.decode("utf-8")

    # =========================================================================
    # Keystore file
    # =========================================================================

    def _read_store(self) -> dict:
        if not os.path.exists(self.keystore_path):
            return {}
        try:
            with open(self.keystore_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Keystore unreadable, ignoring: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_store(self, data: dict):
        directory = os.path.dirname(self.keystore_path)
        if directory:
            os.makedirs(directory, mode=0o700, exist_ok=True)

        tmp_path = f"{self.keystore_path}.tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.keystore_path)

    def persist(self, blob: str):
        """Store the encrypted blob, replacing any previous one"""
        store = self._read_store()
        store[STORAGE_KEY] = blob
        self._write_store(store)
        logger.info("Encrypted wallet saved")

    def load(self) -> Optional[str]:
        """Stored blob, or None"""
        blob = self._read_store().get(STORAGE_KEY)
        return blob if isinstance(blob, str) and blob else None

    def exists(self) -> bool:
        return self.load() is not None

    def clear(self):
        """Forget the stored wallet"""
        store = self._read_store()
        if STORAGE_KEY not in store:
            return
        del store[STORAGE_KEY]
        if store:
            self._write_store(store)
        else:
            os.remove(self.keystore_path)
        logger.info("Encrypted wallet removed")
