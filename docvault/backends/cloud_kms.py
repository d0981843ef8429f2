"""Cloud KMS key management backend.

Cloud KMS has no data-key primitive, so a data key is drawn from the OS CSPRNG
and wrapped with the configured symmetric key. ``context`` is sent as
additional authenticated data and must match on decrypt.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from google.api_core import exceptions as gexc
from google.cloud import kms

from docvault.errors import (
    ConfigurationError,
    DecryptionFailed,
    InvalidInputError,
    KeyServiceDenied,
    KeyServiceUnavailable,
)

_LOG = logging.getLogger("docvault.kms")

_TRANSIENT = (
    gexc.TooManyRequests,
    gexc.ResourceExhausted,
    gexc.InternalServerError,
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.Aborted,
    gexc.RetryError,
)


class CloudKmsKeyManagement:
    def __init__(self, key_name: str, *, client: Any | None = None) -> None:
        if not key_name:
            raise ConfigurationError("KMS key name is required")
        self.key_name = key_name
        self._client = client or kms.KeyManagementServiceAsyncClient()

    async def generate_data_key(self, *, context: str) -> tuple[bytearray, bytes]:
        plaintext = bytearray(os.urandom(32))
        return plaintext, await self.encrypt(plaintext, context=context)

    async def encrypt(self, plaintext: bytes, *, context: str) -> bytes:
        try:
            response = await self._client.encrypt(
                request={
                    "name": self.key_name,
                    "plaintext": bytes(plaintext),
                    "additional_authenticated_data": context.encode("utf-8"),
                }
            )
        except gexc.InvalidArgument as exc:
            raise InvalidInputError(f"kms rejected encrypt request: {exc.message}") from exc
        except (gexc.GoogleAPICallError, gexc.RetryError) as exc:
            raise _translate(exc, "encrypt") from exc
        return bytes(response.ciphertext)

    async def decrypt(self, wrapped: bytes, *, context: str) -> bytes:
        try:
            response = await self._client.decrypt(
                request={
                    "name": self.key_name,
                    "ciphertext": bytes(wrapped),
                    "additional_authenticated_data": context.encode("utf-8"),
                }
            )
        except gexc.InvalidArgument as exc:
            raise DecryptionFailed("kms could not decrypt the wrapped payload") from exc
        except (gexc.GoogleAPICallError, gexc.RetryError) as exc:
            raise _translate(exc, "decrypt") from exc
        return bytes(response.plaintext)


def _translate(exc: gexc.GoogleAPIError, operation: str) -> Exception:
    if isinstance(exc, (gexc.PermissionDenied, gexc.Unauthenticated)):
        _LOG.error("kms_access_denied", extra={"operation": operation, "error_type": type(exc).__name__})
        return KeyServiceDenied(f"kms {operation} denied: {exc.message}")
    if isinstance(exc, gexc.NotFound):
        return ConfigurationError(f"kms key not found: {exc.message}")
    if isinstance(exc, gexc.FailedPrecondition):
        # Disabled or destroyed key version.
        return KeyServiceDenied(f"kms key unusable: {exc.message}")
    if isinstance(exc, _TRANSIENT):
        return KeyServiceUnavailable(f"kms {operation} failed: {exc.message}")
    return KeyServiceUnavailable(f"kms {operation} failed unexpectedly: {exc}")


__all__ = ["CloudKmsKeyManagement"]
