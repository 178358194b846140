"""Encrypt-then-upload primitives shared by recurring sync and backfill.

``BatchUploader`` — seals each record (blind indexes + per-field encryption)
and posts one JSON batch.

``FileUploader`` — seals a single binary item (CTXE frame) and posts it as
multipart/form-data; a page of files is sent one request per file.

Exporters and the backfill engine only see the ``PageUploader`` side.

Both raise ``TransportError`` on any failure and return only after the server
has confirmed the upload, so callers can advance counters and watermarks
strictly after a successful return.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Protocol

from src.sync.base import utc_now
from src.sync.encryption import EncryptionService
from src.sync.errors import TransportError

logger = logging.getLogger("contexter.sync.upload")

ENCRYPTED_MIME_TYPE = "application/octet-stream"
ENCRYPTED_EXTENSION = ".enc"


class Transport(Protocol):
    async def upload_json(self, path: str, body: Any) -> Any: ...

    async def upload_multipart(
        self,
        path: str,
        files: dict[str, tuple[str, bytes, str]],
        data: dict[str, str] | None = None,
    ) -> Any: ...


class PageUploader(Protocol):
    async def upload_page(self, items: list[dict[str, Any]]) -> int:
        """Upload one page of items.  Returns the number confirmed."""
        ...


@dataclass(frozen=True)
class UploadTarget:
    """Where and how a record batch is uploaded.

    Attributes:
        path:             API path, e.g. ``/api/whatsapp-messages``.
        body_key:         JSON key holding the record list.
        count_key:        JSON key holding the record count.
        encrypted_fields: Record fields encrypted when a passphrase is set.
        index_fields:     Record fields that also get a blind index.
    """

    path: str
    body_key: str = "messages"
    count_key: str = "messageCount"
    encrypted_fields: tuple[str, ...] = ()
    index_fields: tuple[str, ...] = ()


class BatchUploader:
    """Seal and upload JSON record batches."""

    def __init__(
        self,
        transport: Transport,
        encryption: EncryptionService,
        target: UploadTarget,
        device_id: str,
    ) -> None:
        self._transport = transport
        self._encryption = encryption
        self._target = target
        self._device_id = device_id

    @property
    def target(self) -> UploadTarget:
        return self._target

    def seal(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            self._encryption.seal_record(
                r, self._target.encrypted_fields, self._target.index_fields
            )
            for r in records
        ]

    async def upload_page(self, records: list[dict[str, Any]]) -> int:
        """Upload one batch.  Returns the number of records confirmed.

        Raises:
            TransportError: On a network failure or a non-2xx response.
        """
        if not records:
            return 0

        body = {
            self._target.body_key: self.seal(records),
            "syncTime": utc_now().isoformat(),
            "deviceId": self._device_id,
            self._target.count_key: len(records),
        }
        result = await self._transport.upload_json(self._target.path, body)
        if getattr(result, "error", None) is not None:
            raise TransportError(
                f"Upload to {self._target.path} failed: {result.error}",
                status=getattr(result, "status", None),
            )
        logger.debug("Uploaded %d records to %s", len(records), self._target.path)
        return len(records)


class FileUploader:
    """Seal and upload one binary item per request.

    Items are dicts with ``content`` (bytes), ``filename`` and ``mime_type``;
    every other scalar key is sent as a form field.
    """

    def __init__(
        self,
        transport: Transport,
        encryption: EncryptionService,
        path: str,
        field_name: str = "file",
    ) -> None:
        self._transport = transport
        self._encryption = encryption
        self._path = path
        self._field_name = field_name

    async def upload(self, item: dict[str, Any]) -> bool:
        """Upload one file.  Returns True if the payload was encrypted.

        Raises:
            TransportError: On a network failure or a non-2xx response.
        """
        content: bytes = item["content"]
        payload, encrypted = self._encryption.seal_bytes(content)

        filename = str(item.get("filename") or "upload.bin")
        mime_type = str(item.get("mime_type") or "application/octet-stream")
        if encrypted:
            filename = PurePath(filename).stem + ENCRYPTED_EXTENSION
            mime_type = ENCRYPTED_MIME_TYPE

        form = {
            key: str(value)
            for key, value in item.items()
            if key not in ("content", "filename", "mime_type") and value is not None
        }
        form["encrypted"] = "true" if encrypted else "false"

        await self._transport.upload_multipart(
            self._path,
            files={self._field_name: (filename, payload, mime_type)},
            data=form,
        )
        logger.debug("Uploaded %s to %s (encrypted: %s)", filename, self._path, encrypted)
        return encrypted

    async def upload_page(self, items: list[dict[str, Any]]) -> int:
        """Upload files one by one.  Stops at the first failure.

        Raises:
            TransportError: On a network failure or a non-2xx response.
        """
        for item in items:
            await self.upload(item)
            await asyncio.sleep(0)
        return len(items)
