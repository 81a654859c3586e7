"""
Symmetric encryption for stored private keys and seeds.

Format is ``ivhex:cipherhex`` using AES-256-CBC with PKCS7 padding. The
AES key is SHA-256 of the configured secret, padded with "0" to 32
characters and truncated to 32, so ciphertexts written by the existing
wallet backend decrypt unchanged.
"""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import KeyVaultError

logger = logging.getLogger(__name__)

IV_SIZE = 16


@dataclass(frozen=True)
class SigningMaterial:
    """Decrypted key material; never rendered by repr or str."""

    secret: str = field(repr=False)

    def __str__(self) -> str:
        return "SigningMaterial(***)"


def derive_key(secret: str) -> bytes:
    normalized = secret.ljust(32, "0")[:32]
    return hashlib.sha256(normalized.encode("utf-8")).digest()


class KeyVault:
    """AES-256-CBC wrapper around the configured encryption secret."""

    def __init__(self, secret: Optional[str] = None):
        if secret is None:
            from .config import load_settings

            secret = load_settings().encryption_key
        self._key = derive_key(secret)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """Return plaintext key material.

        Raises:
            KeyVaultError: If the ciphertext is malformed or the key is wrong
        """
        try:
            iv_hex, body_hex = ciphertext.split(":", 1)
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
        except (AttributeError, ValueError) as e:
            raise KeyVaultError("Malformed ciphertext") from e

        if len(iv) != IV_SIZE or not body or len(body) % IV_SIZE:
            raise KeyVaultError("Malformed ciphertext")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            # Do not include any decrypted bytes in the message
            raise KeyVaultError("Unable to decrypt key material") from e

    def open(self, ciphertext: str) -> SigningMaterial:
        return SigningMaterial(self.decrypt(ciphertext))
