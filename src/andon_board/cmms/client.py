"""Signed JSON-RPC style client for the Fiix CMMS API."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from typing import Any, Mapping, Sequence
from urllib.parse import urlencode

import httpx

from andon_board.config import CMMSSettings
from andon_board.errors import ExternalIntegrationError
from andon_board.utils.masking import redact_query_params
from andon_board.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)

CLIENT_VERSION = {"major": 2, "minor": 8, "patch": 1}

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def build_request_url(base_url: str, *, app_key: str, access_key: str, timestamp: int) -> str:
    query = urlencode(
        [
            ("service", "cmms"),
            ("timestamp", str(timestamp)),
            ("appKey", app_key),
            ("accessKey", access_key),
            ("signatureMethod", "HmacSHA256"),
            ("signatureVersion", "1"),
        ]
    )
    return f"{base_url.rstrip('/')}/api/?{query}"


def sign_url(url: str, secret_key: str) -> str:
    """Lowercase hex HMAC-SHA256 of ``url`` without its scheme."""
    message = _SCHEME.sub("", url, count=1)
    return hmac.new(
        secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        return str(error.get("message") or "Fiix API error")
    if isinstance(error, str):
        return error
    return "Fiix API error"


class FiixClient:
    """Thin async wrapper around the Fiix ``/api/`` endpoint.

    Every call is a POST of a JSON command (``FindRequest``, ``AddRequest``
    or ``ChangeRequest``) to a freshly signed URL. Transport failures,
    timeouts, non-JSON bodies and bodies carrying an ``error`` field all
    raise :class:`ExternalIntegrationError`.
    """

    def __init__(
        self,
        settings: CMMSSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._client = httpx.AsyncClient(
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def settings(self) -> CMMSSettings:
        return self._settings

    async def aclose(self) -> None:
        await self._client.aclose()

    async def call(self, command: Mapping[str, Any]) -> dict[str, Any]:
        settings = self._settings
        url = build_request_url(
            settings.base_url,
            app_key=settings.app_key,
            access_key=settings.access_key,
            timestamp=self._clock(),
        )
        if settings.debug:
            logger.info(
                "[fiix] %s %s -> %s",
                command.get("_maCn"),
                command.get("className"),
                redact_query_params(url),
            )
        try:
            response = await self._client.post(
                url,
                content=json.dumps(command),
                headers={
                    "Content-Type": "text/plain",
                    "Authorization": sign_url(url, settings.secret_key),
                },
            )
        except httpx.TimeoutException as exc:
            raise ExternalIntegrationError(
                f"Fiix request timed out after {settings.timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalIntegrationError(f"Fiix request failed: {exc}") from exc

        text = response.text.strip()
        if not text.startswith(("{", "[")):
            raise ExternalIntegrationError(f"Fiix non-JSON response: {text[:200]}")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ExternalIntegrationError(f"Fiix returned malformed JSON: {exc}") from exc
        if isinstance(data, dict) and data.get("error"):
            raise ExternalIntegrationError(_error_message(data["error"]))
        return data if isinstance(data, dict) else {"objects": data}

    async def find(
        self,
        class_name: str,
        *,
        fields: str,
        filters: Sequence[Mapping[str, Any]] = (),
        max_objects: int = 1,
    ) -> list[dict[str, Any]]:
        data = await self.call(
            {
                "_maCn": "FindRequest",
                "clientVersion": CLIENT_VERSION,
                "className": class_name,
                "fields": fields,
                "filters": list(filters),
                "maxObjects": max_objects,
            }
        )
        objects = data.get("objects")
        return list(objects) if isinstance(objects, list) else []

    async def add(
        self, class_name: str, obj: Mapping[str, Any], *, fields: str = "id"
    ) -> dict[str, Any]:
        data = await self.call(
            {
                "_maCn": "AddRequest",
                "clientVersion": CLIENT_VERSION,
                "className": class_name,
                "fields": fields,
                "object": {"className": class_name, **obj},
            }
        )
        created = data.get("object")
        return created if isinstance(created, dict) else {}

    async def change(
        self,
        class_name: str,
        object_id: int,
        changes: Mapping[str, Any],
        *,
        fields: str = "id",
    ) -> dict[str, Any]:
        return await self.call(
            {
                "_maCn": "ChangeRequest",
                "clientVersion": CLIENT_VERSION,
                "className": class_name,
                "id": int(object_id),
                "changeFields": ",".join(changes),
                "object": {"className": class_name, "id": int(object_id), **changes},
                "fields": fields,
            }
        )
