from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

import httpx
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import signing
from app.core.errors import (
    ApplicationNotFoundError,
    DeliveryError,
    IllegalTransitionError,
    MalformedMessageError,
)
from app.core.logging import get_audit_logger
from app.core.settings import Settings, settings as app_settings
from app.models.loan_application import LoanApplication
from app.models.outbound_message import OutboundMessage
from app.schemas.loan import LoanEventKey, OutboundMessageStatus
from app.schemas.messages import Message, ResponseCode
from app.services import message_codec
from app.services.application_events import record_event

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

_MAX_STORED_BODY = 4000


@dataclass(frozen=True)
class DeliveryOutcome:
    status: OutboundMessageStatus
    message_id: str
    attempts: int
    response_code: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status in {OutboundMessageStatus.SENT, OutboundMessageStatus.RESENT}


def ack_code(body: bytes) -> str | None:
    """``ResponseCode`` from an ESS acknowledgment, or ``None`` if it is not one."""
    try:
        message = message_codec.decode(body)
    except MalformedMessageError:
        return None
    return message.get("ResponseCode")


class CallbackDispatcher:
    """Signs and POSTs notifications to ESS.

    Only transport failures are retried. An HTTP error or a non-8000
    acknowledgment means ESS saw the message and refused it, so it is
    recorded as ``REJECTED`` instead. Messages that never got through are
    left ``UNDELIVERED`` for :meth:`resend_undelivered`.
    """

    def __init__(
        self,
        *,
        cfg: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cfg = cfg or app_settings
        self.url = cfg.ess_callback_url
        self.timeout = cfg.callback_timeout_seconds
        self.max_retries = max(0, cfg.callback_max_retries)
        self.backoff_base = cfg.callback_backoff_base_seconds
        self.backoff_max = cfg.callback_backoff_max_seconds
        self.claim_timeout = cfg.callback_claim_timeout_seconds
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2**attempt), self.backoff_max)

    async def _post(self, payload: str) -> httpx.Response:
        try:
            return await self._http().post(
                self.url,
                content=payload.encode("utf-8"),
                headers={"Content-Type": "application/xml"},
            )
        except httpx.TransportError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc

    def _apply_response(
        self, record: OutboundMessage, response: httpx.Response, *, success: OutboundMessageStatus
    ) -> None:
        code = ack_code(response.content) if response.content else None
        record.response_code = code
        record.response_body = response.text[:_MAX_STORED_BODY]
        if response.is_success and code in (None, ResponseCode.SUCCESS.value):
            record.status = success.value
            record.last_error = None
            record.delivered_at = datetime.now(timezone.utc)
            return
        record.status = OutboundMessageStatus.REJECTED.value
        record.last_error = f"HTTP {response.status_code} ResponseCode={code or '-'}"
        logger.warning(
            "ESS rejected %s %s: %s",
            record.message_type,
            record.message_id,
            record.last_error,
        )

    async def _send(self, record: OutboundMessage, *, success: OutboundMessageStatus) -> None:
        attempt = 0
        while True:
            record.attempts = (record.attempts or 0) + 1
            try:
                response = await self._post(record.payload)
            except DeliveryError as exc:
                record.last_error = str(exc)
                if attempt >= self.max_retries:
                    record.status = OutboundMessageStatus.UNDELIVERED.value
                    logger.error(
                        "Giving up on %s %s after %s attempts: %s",
                        record.message_type,
                        record.message_id,
                        record.attempts,
                        exc,
                    )
                    return
                delay = self.backoff(attempt)
                logger.warning(
                    "Callback %s failed (%s); retrying in %.2fs", record.message_id, exc, delay
                )
                attempt += 1
                await self._sleep(delay)
                continue
            self._apply_response(record, response, success=success)
            return

    @staticmethod
    def _outcome(record: OutboundMessage) -> DeliveryOutcome:
        return DeliveryOutcome(
            status=OutboundMessageStatus(record.status),
            message_id=record.message_id,
            attempts=record.attempts,
            response_code=record.response_code,
            error=record.last_error,
        )

    async def deliver(
        self,
        db: AsyncSession,
        message: Message,
        *,
        application: LoanApplication | None = None,
    ) -> DeliveryOutcome:
        payload = signing.build_signed_document(message)
        record = OutboundMessage(
            message_id=message.msg_id,
            message_type=message.message_type,
            application_number=application.ess_application_number if application else message.application_number,
            payload=payload.decode("utf-8"),
            status=OutboundMessageStatus.PENDING.value,
            attempts=0,
        )
        db.add(record)
        await db.commit()

        await self._send(record, success=OutboundMessageStatus.SENT)
        db.add(record)
        if application is not None:
            record_event(
                db,
                application,
                LoanEventKey.NOTIFICATION,
                {
                    "message_type": record.message_type,
                    "status": record.status,
                    "attempts": record.attempts,
                    "response_code": record.response_code,
                    "error": record.last_error,
                },
                source=record.message_type,
                message_id=record.message_id,
            )
        await db.commit()
        audit_logger.info(
            "outbound.%s message_id=%s status=%s attempts=%s",
            record.message_type,
            record.message_id,
            record.status,
            record.attempts,
        )
        return self._outcome(record)

    async def resend(self, db: AsyncSession, record: OutboundMessage) -> DeliveryOutcome:
        """Re-post a stored payload unchanged; the signature still covers it."""
        await self._send(record, success=OutboundMessageStatus.RESENT)
        db.add(record)
        await db.commit()
        logger.info("Resent %s %s -> %s", record.message_type, record.message_id, record.status)
        return self._outcome(record)

    async def resend_by_id(self, db: AsyncSession, outbound_id: UUID) -> DeliveryOutcome:
        record = await db.get(OutboundMessage, outbound_id, with_for_update=True)
        if record is None:
            raise ApplicationNotFoundError(
                f"No outbound message {outbound_id}", details={"id": str(outbound_id)}
            )
        if record.status == OutboundMessageStatus.PENDING.value and not self._claim_expired(record):
            raise IllegalTransitionError(record.status, OutboundMessageStatus.RESENT.value, trigger="resend")
        await self._claim(db, [record])
        return await self.resend(db, record)

    def _claim_expired(self, record: OutboundMessage) -> bool:
        if record.updated_at is None:
            return True
        return record.updated_at < datetime.now(timezone.utc) - timedelta(seconds=self.claim_timeout)

    @staticmethod
    async def _claim(db: AsyncSession, records: list[OutboundMessage]) -> None:
        """Mark rows in flight and commit, so other batches skip them once the row locks are gone."""
        now = datetime.now(timezone.utc)
        for record in records:
            record.status = OutboundMessageStatus.PENDING.value
            record.updated_at = now
        await db.commit()

    async def resend_undelivered(self, db: AsyncSession, *, limit: int = 50) -> list[DeliveryOutcome]:
        """Resend UNDELIVERED rows, and PENDING rows whose sender died mid-flight.

        The batch is claimed in its own transaction before anything is posted;
        each resend commits on its own, which would otherwise release the
        locks on the rows not yet sent.
        """
        stale = datetime.now(timezone.utc) - timedelta(seconds=self.claim_timeout)
        stmt = (
            select(OutboundMessage)
            .where(
                or_(
                    OutboundMessage.status == OutboundMessageStatus.UNDELIVERED.value,
                    and_(
                        OutboundMessage.status == OutboundMessageStatus.PENDING.value,
                        OutboundMessage.updated_at < stale,
                    ),
                )
            )
            .order_by(OutboundMessage.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await db.execute(stmt)
        records = list(result.scalars().all())
        if not records:
            return []
        await self._claim(db, records)
        logger.info("Claimed %s outbound messages for resend", len(records))
        outcomes = []
        for record in records:
            outcomes.append(await self.resend(db, record))
        return outcomes
