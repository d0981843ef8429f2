"""Envelope encryption for document bytes and names.

Ciphertext layout::

    version (1 byte) | nonce (12 bytes) | AES-256-GCM ciphertext + tag (16 bytes)

Every document gets a fresh data key from the key service. The plaintext key
lives only inside a ``DataKey`` scope and is wiped when the scope exits.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from docvault.errors import DecryptionFailed, InvalidInputError, KeyServiceDenied

from .key_service import DATA_KEY_BYTES, KeyServiceClient, wipe

LOG = logging.getLogger(__name__)

FORMAT_VERSION = 1
NONCE_BYTES = 12
TAG_BYTES = 16
HEADER_BYTES = 1 + NONCE_BYTES
CIPHER_LABEL = "AES-256-GCM"

DOCUMENT_CONTEXT = "docvault:document"
NAME_CONTEXT = "docvault:name"
_AAD = b"docvault:v1"


class DataKey:
    """Plaintext data key plus its wrapped form, usable only inside ``with``.

    A ``bytearray`` is adopted as is, so the buffer handed in is the one wiped.
    Cannot be copied, pickled or printed.
    """

    __slots__ = ("_material", "wrapped", "_closed")

    def __init__(self, plaintext: bytes | bytearray, wrapped: bytes) -> None:
        self._material = plaintext if isinstance(plaintext, bytearray) else bytearray(plaintext)
        self.wrapped = wrapped
        self._closed = False

    @property
    def material(self) -> bytearray:
        if self._closed:
            raise RuntimeError("data key has been wiped")
        return self._material

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            wipe(self._material)
            self._closed = True

    def __enter__(self) -> "DataKey":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"DataKey(closed={self._closed})"

    def __copy__(self):
        raise TypeError("DataKey cannot be copied")

    def __deepcopy__(self, _memo):
        raise TypeError("DataKey cannot be copied")

    def __reduce_ex__(self, _protocol):
        raise TypeError("DataKey cannot be pickled")


class EncryptionEngine:
    def __init__(self, keys: KeyServiceClient) -> None:
        self._keys = keys

    async def encrypt_document(self, plaintext: bytes | bytearray) -> tuple[bytes, bytes]:
        """Encrypt ``plaintext`` under a fresh data key.

        Returns ``(ciphertext, wrapped_key)``. A ``bytearray`` input is zeroed
        on every exit path, including failures.
        """
        try:
            if not isinstance(plaintext, (bytes, bytearray)):
                raise InvalidInputError("document content must be bytes")
            raw_key, wrapped = await self._keys.generate_data_key(context=DOCUMENT_CONTEXT)
            with DataKey(raw_key, wrapped) as key:
                nonce = os.urandom(NONCE_BYTES)
                sealed = AESGCM(key.material).encrypt(nonce, plaintext, _AAD)
            return bytes([FORMAT_VERSION]) + nonce + sealed, wrapped
        finally:
            if isinstance(plaintext, bytearray):
                wipe(plaintext)

    async def decrypt_document(self, ciphertext: bytes, wrapped_key: bytes) -> bytes:
        if len(ciphertext) < HEADER_BYTES + TAG_BYTES:
            raise DecryptionFailed("ciphertext is truncated")
        if ciphertext[0] != FORMAT_VERSION:
            raise DecryptionFailed(f"unsupported ciphertext version {ciphertext[0]}")
        if not wrapped_key:
            raise DecryptionFailed("wrapped data key is missing")
        try:
            raw_key = await self._keys.unwrap_data_key(wrapped_key, context=DOCUMENT_CONTEXT)
        except KeyServiceDenied as exc:
            raise DecryptionFailed("key service refused to unwrap the data key") from exc
        with DataKey(raw_key, wrapped_key) as key:
            if len(key.material) != DATA_KEY_BYTES:
                raise DecryptionFailed("unwrapped data key has the wrong length")
            nonce = ciphertext[1:HEADER_BYTES]
            try:
                return AESGCM(key.material).decrypt(nonce, ciphertext[HEADER_BYTES:], _AAD)
            except InvalidTag:
                raise DecryptionFailed("ciphertext failed authentication") from None

    async def encrypt_name(self, name: str) -> str:
        """Wrap a short string (file name, identifier) via the key service directly."""
        if not name:
            raise InvalidInputError("name must not be empty")
        wrapped = await self._keys.encrypt(name.encode("utf-8"), context=NAME_CONTEXT)
        return base64.b64encode(wrapped).decode("ascii")

    async def decrypt_name(self, encrypted: str) -> str:
        try:
            wrapped = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed("encrypted name is not valid base64") from exc
        try:
            plaintext = await self._keys.decrypt(wrapped, context=NAME_CONTEXT)
        except KeyServiceDenied as exc:
            raise DecryptionFailed("key service refused to decrypt the name") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailed("decrypted name is not valid UTF-8") from exc


__all__ = [
    "CIPHER_LABEL",
    "DataKey",
    "EncryptionEngine",
    "FORMAT_VERSION",
    "wipe",
]
