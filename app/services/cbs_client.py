"""Thin async client for the Fineract REST API used as the core banking system.

Each :class:`CbsClient` carries its own credentials and HTTP connection pool;
nothing is cached at module level, so callers open one per unit of work::

    async with CbsClient() as cbs:
        await cbs.get_loan(loan_id)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable

import httpx

from app.core.errors import CbsRetryableError, CbsTerminalError
from app.core.settings import Settings, settings as app_settings

logger = logging.getLogger(__name__)

DATE_FORMAT = "yyyy-MM-dd"
LOCALE = "en"

_RETRYABLE_STATUS = {408, 429}
# Methods the CBS treats as safe to repeat; anything else is re-sent only
# when the first attempt never reached it.
_IDEMPOTENT_METHODS = {"GET", "HEAD"}
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] or {}
            message = first.get("defaultUserMessage") or first.get("developerMessage")
            if message:
                return str(message)
        for key in ("defaultUserMessage", "developerMessage", "message"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase or f"HTTP {response.status_code}"


def classify_response(response: httpx.Response, *, operation: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    reason = _error_reason(response)
    details = {"path": response.request.url.path if response.request else None}
    if status >= 500 or status in _RETRYABLE_STATUS:
        raise CbsRetryableError(
            reason,
            operation=operation,
            status_code=status,
            details=details,
            request_sent=status != 429,
        )
    raise CbsTerminalError(reason, operation=operation, status_code=status, details=details)


def _first_item(body: dict[str, Any]) -> dict[str, Any] | None:
    items = body.get("pageItems") or body.get("items") or []
    return items[0] if items else None


class CbsClient:
    def __init__(
        self,
        *,
        cfg: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cfg = cfg or app_settings
        self.cfg = cfg
        self.max_retries = max(0, cfg.cbs_max_retries)
        self.backoff_base = cfg.cbs_backoff_base_seconds
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=cfg.cbs_base_url.rstrip("/"),
            auth=(cfg.cbs_username, cfg.cbs_password),
            headers={
                "Fineract-Platform-TenantId": cfg.cbs_tenant_id,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=cfg.cbs_timeout_seconds,
            verify=cfg.cbs_verify_tls,
            transport=transport,
        )

    async def __aenter__(self) -> "CbsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except _NOT_SENT as exc:
            raise CbsRetryableError(
                f"CBS unreachable: {exc}", operation=operation, request_sent=False
            ) from exc
        except httpx.TimeoutException as exc:
            raise CbsRetryableError(f"CBS timeout: {exc}", operation=operation) from exc
        except httpx.TransportError as exc:
            raise CbsRetryableError(f"CBS unreachable: {exc}", operation=operation) from exc
        classify_response(response, operation=operation)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise CbsRetryableError(
                "CBS returned a non-JSON body", operation=operation, status_code=response.status_code
            ) from exc
        return body if isinstance(body, dict) else {"items": body}

    async def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one call, retrying with exponential backoff while it is safe to.

        Reads are retried on any retryable failure. Writes are retried only
        when the CBS never received them; a write whose outcome is unknown
        is raised straight away so the caller can look at live state first.
        """
        idempotent = method.upper() in _IDEMPOTENT_METHODS
        attempt = 0
        while True:
            try:
                return await self._send(method, path, operation=operation, params=params, json=json)
            except CbsRetryableError as exc:
                if not idempotent and exc.request_sent:
                    logger.warning("CBS %s outcome unknown (%s); not re-sending", operation, exc)
                    raise
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff_base * (2**attempt)
                logger.warning(
                    "CBS %s failed (%s); retry %s/%s in %.2fs",
                    operation,
                    exc,
                    attempt + 1,
                    self.max_retries,
                    delay,
                )
                attempt += 1
                await self._sleep(delay)

    async def find_client_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        body = await self.request(
            "GET", "/clients", operation="find_client", params={"externalId": external_id}
        )
        return _first_item(body)

    async def find_loan_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        body = await self.request(
            "GET", "/loans", operation="find_loan", params={"externalId": external_id}
        )
        return _first_item(body)

    async def create_client(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/clients", operation="create_client", json=payload)

    async def create_loan(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/loans", operation="create_loan", json=payload)

    async def _loan_command(self, loan_id: str, command: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.request(
            "POST",
            f"/loans/{loan_id}",
            operation=f"{command}_loan",
            params={"command": command},
            json={"dateFormat": DATE_FORMAT, "locale": LOCALE, **payload},
        )

    async def approve_loan(self, loan_id: str, on: date, *, note: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"approvedOnDate": on.isoformat()}
        if note:
            payload["note"] = note
        return await self._loan_command(loan_id, "approve", payload)

    async def disburse_loan(self, loan_id: str, on: date, *, amount=None) -> dict[str, Any]:
        payload: dict[str, Any] = {"actualDisbursementDate": on.isoformat()}
        if amount is not None:
            payload["transactionAmount"] = str(amount)
        return await self._loan_command(loan_id, "disburse", payload)

    async def reject_loan(self, loan_id: str, on: date, *, note: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"rejectedOnDate": on.isoformat()}
        if note:
            payload["note"] = note
        return await self._loan_command(loan_id, "reject", payload)

    async def get_loan(self, loan_id: str, *, associations: str | None = None) -> dict[str, Any]:
        params = {"associations": associations} if associations else None
        return await self.request("GET", f"/loans/{loan_id}", operation="get_loan", params=params)
