"""
Encryption Codec

Symmetric encryption of connection credentials at rest.

Values are serialised to compact JSON, encrypted with AES-256-CBC (PKCS7
padding) under a fresh 16-byte IV, and stored as hex in an EncryptedObject:

    {"iv": "<32 hex>", "data": "<hex ciphertext>", "tag": "<64 hex>"}

`tag` is an HMAC-SHA256 over `iv || ciphertext` keyed with a MAC key derived
from the master key through HKDF. Objects written before the tag existed
carry only `iv` and `data`; they still decrypt unless the codec is built with
`require_tag=True`. A tag that is present is always verified.
"""

import binascii
import json
import logging
import os
import base64
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, ValidationError

from tech.remotemcp.auth.errors import DecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
KEY_LENGTH = 32
MAC_KEY_INFO = b"remotemcp-connection-mac"


class EncryptedObject(BaseModel):
    iv: str
    data: str
    tag: Optional[str] = None

    def to_json(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)


def load_key(value: Union[str, bytes]) -> bytes:
    """
    Turn a configured key into 32 raw bytes.

    Accepted forms, tried in order: 64 hex characters, a raw 32-character
    string (taken byte for byte, the legacy form), or base64 of 32 bytes.
    """
    if isinstance(value, bytes):
        if len(value) != KEY_LENGTH:
            raise ValueError("encryption key must be 32 bytes")
        return value

    value = value.strip()
    if len(value) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(value)
        except ValueError:
            pass

    if len(value) == KEY_LENGTH:
        try:
            return value.encode("latin-1")
        except UnicodeEncodeError:
            pass

    try:
        decoded = base64.b64decode(value, validate=True)
    except binascii.Error:
        decoded = b""
    if len(decoded) == KEY_LENGTH:
        return decoded

    raise ValueError(
        "encryption key must be 64 hex characters, 32 raw characters, or base64 of 32 bytes"
    )


class EncryptionCodec:
    def __init__(self, key: Union[str, bytes], require_tag: bool = False) -> None:
        self._key = load_key(key)
        self._mac_key = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=None,
            info=MAC_KEY_INFO,
        ).derive(self._key)
        self._require_tag = require_tag

    def encrypt(self, obj: Any) -> EncryptedObject:
        return self.encrypt_string(json.dumps(obj, separators=(",", ":")))

    def encrypt_string(self, value: str) -> EncryptedObject:
        iv = os.urandom(IV_LENGTH)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(value.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return EncryptedObject(
            iv=iv.hex(), data=ciphertext.hex(), tag=self._sign(iv, ciphertext).hex()
        )

    def decrypt(self, encrypted: Union[EncryptedObject, Dict[str, Any]]) -> Any:
        plaintext = self.decrypt_to_string(encrypted)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError("error-codec-3004 Plaintext is not valid JSON") from e

    def decrypt_to_string(
        self, encrypted: Union[EncryptedObject, Dict[str, Any]]
    ) -> str:
        if not isinstance(encrypted, EncryptedObject):
            try:
                encrypted = EncryptedObject.model_validate(encrypted)
            except ValidationError as e:
                raise DecryptionError(
                    "error-codec-3000 Value is not an encrypted object"
                ) from e

        try:
            iv = bytes.fromhex(encrypted.iv)
            ciphertext = bytes.fromhex(encrypted.data)
            tag = bytes.fromhex(encrypted.tag) if encrypted.tag is not None else None
        except ValueError as e:
            raise DecryptionError("error-codec-3001 Malformed hex encoding") from e

        if len(iv) != IV_LENGTH:
            raise DecryptionError("error-codec-3001 Malformed initialization vector")

        if tag is None:
            if self._require_tag:
                raise DecryptionError("error-codec-3002 Missing authentication tag")
        else:
            try:
                self._verify(iv, ciphertext, tag)
            except InvalidSignature as e:
                raise DecryptionError(
                    "error-codec-3002 Authentication tag mismatch"
                ) from e

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            # Bad padding, or ciphertext not a multiple of the block size.
            raise DecryptionError("error-codec-3003 Unable to decrypt value") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("error-codec-3003 Plaintext is not valid UTF-8") from e

    def _sign(self, iv: bytes, ciphertext: bytes) -> bytes:
        h = hmac.HMAC(self._mac_key, hashes.SHA256())
        h.update(iv + ciphertext)
        return h.finalize()

    def _verify(self, iv: bytes, ciphertext: bytes, tag: bytes) -> None:
        h = hmac.HMAC(self._mac_key, hashes.SHA256())
        h.update(iv + ciphertext)
        h.verify(tag)
