"""HTTP transport to the user's context server.

Every request carries the device credentials::

    x-device-id:   <device id>
    Authorization: Bearer <device secret>

Each call is recorded in the store's rolling request log (method, path,
status, duration) so the settings window can show recent traffic.

Two upload shapes:

- ``upload_json``      — returns ``UploadResult`` with either ``data`` or
                         ``error`` + ``status``.  A network failure (no
                         response at all) raises ``TransportError``.
- ``upload_multipart`` — returns the decoded JSON body (or None) and raises
                         ``TransportError`` on any failure.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from src.config import Settings, get_settings
from src.models.sync import RequestLogEntry
from src.sync.errors import ConfigurationError, TransportError

logger = logging.getLogger("contexter.transport")


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a JSON upload that reached the server.

    Attributes:
        data:   Decoded JSON body on success.
        error:  Response text on an HTTP error.
        status: HTTP status code.
    """

    data: Any = None
    error: str | None = None
    status: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TransportClient:
    """Authenticated httpx client shared by the scheduler and backfill engine.

    Usage::

        transport = TransportClient(settings, device_id=store.device_id,
                                    on_request=store.add_request_log)
        result = await transport.upload_json("/api/messages", {"messages": batch})
        if not result.ok:
            ...
        await transport.aclose()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        device_id: str | None = None,
        on_request: Callable[[RequestLogEntry], None] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            settings:    App settings (server URL, device secret, timeout).
            device_id:   Device id; ``settings.device_id`` wins if set.
            on_request:  Callback receiving a RequestLogEntry per request.
            http_client: Optional pre-configured httpx client (for testing).
        """
        self._settings = settings or get_settings()
        self._device_id = self._settings.device_id or device_id
        self._on_request = on_request
        self._http_client = http_client
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _base_url(self) -> str:
        if not self._settings.server_url:
            raise ConfigurationError("Server URL is not set")
        return self._settings.server_url.rstrip("/")

    def _auth_headers(self) -> dict[str, str]:
        if not self._settings.device_secret:
            raise ConfigurationError("Device secret is not set")
        if not self._device_id:
            raise ConfigurationError("Device ID is not set")
        return {
            "x-device-id": self._device_id,
            "Authorization": f"Bearer {self._settings.device_secret}",
        }

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._settings.request_timeout_seconds,
            )
        return self._http_client

    def _record(
        self,
        method: str,
        path: str,
        started: float,
        status_code: int | None = None,
        error: str | None = None,
    ) -> None:
        if self._on_request is None:
            return
        entry = RequestLogEntry(
            method=method,
            path=path,
            status="error" if error else "success",
            status_code=status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error,
        )
        try:
            self._on_request(entry)
        except Exception as exc:
            logger.warning("Could not record request log for %s %s: %s", method, path, exc)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url()}{path}"
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        started = time.monotonic()
        try:
            response = await self._client().request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            message = str(exc) or exc.__class__.__name__
            self._record(method, path, started, error=message)
            logger.warning("%s %s failed: %s", method, path, message)
            raise TransportError(f"Network error calling {path}: {message}") from exc

        if response.is_error:
            self._record(
                method, path, started,
                status_code=response.status_code,
                error=f"{response.status_code} {response.reason_phrase}",
            )
        else:
            self._record(method, path, started, status_code=response.status_code)
        return response

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload_json(self, path: str, body: Any, method: str = "POST") -> UploadResult:
        """Send a JSON body.

        Returns:
            UploadResult with ``data`` on 2xx, or ``error`` + ``status`` otherwise.

        Raises:
            ConfigurationError: Server URL or device secret missing.
            TransportError:     No response (DNS, connect, timeout).
        """
        response = await self._send(method, path, json=body)
        if response.is_error:
            return UploadResult(error=response.text, status=response.status_code)
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text
        return UploadResult(data=data, status=response.status_code)

    async def upload_multipart(
        self,
        path: str,
        files: dict[str, tuple[str, bytes, str]],
        data: dict[str, str] | None = None,
    ) -> Any:
        """Send a multipart/form-data upload.

        Args:
            path:  API path, e.g. ``/api/screenshots``.
            files: Field name → (filename, content, mime type).
            data:  Extra form fields.

        Returns:
            Decoded JSON body if the server returned JSON, else None.

        Raises:
            ConfigurationError: Server URL or device secret missing.
            TransportError:     Network failure or non-2xx status.
        """
        response = await self._send("POST", path, files=files, data=data or {})
        if response.is_error:
            raise TransportError(
                f"Request failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )
        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return None

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
