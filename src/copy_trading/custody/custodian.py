"""Custodial signing keys, one per user, encrypted at rest."""

from __future__ import annotations

import base64
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from copy_trading.db.engine import Database
from copy_trading.db.models import CustodialKeyRow, utcnow
from copy_trading.errors import CustodianUnavailable, InvalidParameters, KeyNotFound
from copy_trading.types import Signer
from copy_trading.utils.logging import get_logger

_SALT_LENGTH = 16
_NONCE_LENGTH = 12
_ITERATIONS = 100_000
_KEY_LENGTH = 32


class KeyCipher:
    """AES-256-GCM with a PBKDF2-derived key per record.

    Blob layout: base64(salt || nonce || ciphertext+tag).
    """

    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise InvalidParameters("wallet_encryption_key_not_set")
        self._passphrase = passphrase.encode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(_SALT_LENGTH)
        nonce = os.urandom(_NONCE_LENGTH)
        ciphertext = AESGCM(self._derive(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(salt + nonce + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        raw = base64.b64decode(blob)
        salt = raw[:_SALT_LENGTH]
        nonce = raw[_SALT_LENGTH : _SALT_LENGTH + _NONCE_LENGTH]
        ciphertext = raw[_SALT_LENGTH + _NONCE_LENGTH :]
        return AESGCM(self._derive(salt)).decrypt(nonce, ciphertext, None).decode("utf-8")

    def _derive(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=_KEY_LENGTH,
            salt=salt,
            iterations=_ITERATIONS,
        )
        return kdf.derive(self._passphrase)


class WalletCustodian:
    """Hands out a fresh, immutable ``Signer`` per request."""

    def __init__(self, database: Database, cipher: KeyCipher) -> None:
        self._db = database
        self._cipher = cipher
        self._logger = get_logger("copy_trading.custody")

    def store_key(self, user_id: str, private_key: str, address: str | None = None) -> None:
        if not user_id or not private_key:
            raise InvalidParameters("user_id_and_private_key_required")
        encrypted = self._cipher.encrypt(private_key)
        with self._db.session() as session:
            row = session.get(CustodialKeyRow, user_id)
            if row is None:
                session.add(
                    CustodialKeyRow(
                        user_id=user_id,
                        address=address,
                        encrypted_key=encrypted,
                        created_at=utcnow(),
                    )
                )
            else:
                row.encrypted_key = encrypted
                row.address = address
        self._logger.info("custodial_key_stored", user_id=user_id, address=address)

    def generate_key(self, user_id: str) -> str:
        """Create and store a random 32-byte key; returns its hex form."""
        private_key = "0x" + secrets.token_hex(32)
        self.store_key(user_id, private_key)
        return private_key

    def has_key(self, user_id: str) -> bool:
        with self._db.session() as session:
            return session.get(CustodialKeyRow, user_id) is not None

    def get_signer(self, user_id: str) -> Signer:
        """Decrypt the user's key into a new ``Signer``.

        Raises ``KeyNotFound`` when nothing is stored and
        ``CustodianUnavailable`` when the stored blob cannot be decrypted.
        """
        with self._db.session() as session:
            row = session.get(CustodialKeyRow, user_id)
            if row is None:
                raise KeyNotFound(f"no_custodial_key: {user_id}")
            blob = row.encrypted_key
            address = row.address
        try:
            private_key = self._cipher.decrypt(blob)
        except (InvalidTag, ValueError) as exc:
            self._logger.error("custodial_key_decrypt_failed", user_id=user_id)
            raise CustodianUnavailable(f"cannot_decrypt_key: {user_id}") from exc
        return Signer(user_id=user_id, private_key=private_key, address=address)
