from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import CbsError, CbsRetryableError, CbsTerminalError
from app.core.settings import Settings, settings as app_settings
from app.models.loan_application import LoanApplication
from app.schemas.loan import LoanEventKey
from app.services.application_events import record_event
from app.services.cbs_client import DATE_FORMAT, LOCALE, CbsClient
from app.services.loan_applications import to_date, to_decimal

logger = logging.getLogger(__name__)

REPAYMENT_STRATEGY = "mifos-standard-strategy"


@dataclass(frozen=True)
class DisbursementResult:
    account_number: str | None
    disbursed_on: date
    total_amount_to_pay: Decimal | None
    already_disbursed: bool = False


@dataclass(frozen=True)
class PayoffBalance:
    principal_outstanding: Decimal
    total_payoff: Decimal
    last_repayment_on: date | None
    maturity_on: date | None


def _resource_id(body: dict[str, Any], *keys: str) -> str | None:
    for key in (*keys, "resourceId"):
        value = body.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _fineract_date(value: Any) -> date | None:
    """Fineract returns dates as ``[year, month, day]``."""
    if isinstance(value, (list, tuple)) and len(value) == 3:
        try:
            return date(*(int(part) for part in value))
        except (TypeError, ValueError):
            return None
    if isinstance(value, str):
        return to_date(value)
    return None


def _numeric_id(value: str | None) -> int | str | None:
    return int(value) if value and str(value).isdigit() else value


def _loan_status(body: dict[str, Any]) -> dict[str, Any]:
    status = body.get("status")
    return status if isinstance(status, dict) else {}


def _is_disbursed(status: dict[str, Any]) -> bool:
    return bool(status.get("active") or status.get("closed") or status.get("closedObligationsMet"))


def _needs_approval(status: dict[str, Any]) -> bool:
    if _is_disbursed(status) or status.get("waitingForDisbursal"):
        return False
    return bool(status.get("pendingApproval", True))


def _outcome_unknown(exc: CbsError) -> bool:
    return isinstance(exc, CbsRetryableError) and exc.request_sent


class CbsOrchestrator:
    """Idempotent-intent wrappers around :class:`CbsClient`.

    Each operation first looks at what is already recorded on the
    application and skips the CBS call when the resource exists. Every
    call that does go out leaves a ``cbs_call`` or ``cbs_error`` event,
    committed with the caller's next transition.
    """

    def __init__(
        self,
        db: AsyncSession,
        cbs: CbsClient,
        *,
        cfg: Settings | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.db = db
        self.cbs = cbs
        self.cfg = cfg or app_settings
        self.today = today

    async def _call(
        self,
        application: LoanApplication,
        operation: str,
        call: Callable[..., Awaitable[dict[str, Any]]],
        *args: Any,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            body = await call(*args, **kwargs)
        except CbsError as exc:
            record_event(
                self.db,
                application,
                LoanEventKey.CBS_ERROR,
                {
                    "operation": operation,
                    "retryable": not isinstance(exc, CbsTerminalError),
                    "status_code": exc.status_code,
                    "reason": exc.message,
                },
                source="cbs",
            )
            logger.warning("CBS %s failed for %s: %s", operation, application.ess_application_number, exc)
            raise
        record_event(
            self.db,
            application,
            LoanEventKey.CBS_CALL,
            {
                "operation": operation,
                "ok": True,
                "resource_id": _resource_id(body or {}, "clientId", "loanId", "id"),
            },
            source="cbs",
        )
        return body

    def client_payload(self, application: LoanApplication) -> dict[str, Any]:
        on = self.today().isoformat()
        gender_id = (
            self.cfg.cbs_gender_female_id
            if (application.borrower_sex or "").upper().startswith("F")
            else self.cfg.cbs_gender_male_id
        )
        payload: dict[str, Any] = {
            "officeId": self.cfg.cbs_office_id,
            "firstname": application.borrower_first_name,
            "lastname": application.borrower_last_name,
            "externalId": application.borrower_national_id,
            "mobileNo": application.borrower_mobile_number,
            "dateFormat": DATE_FORMAT,
            "locale": LOCALE,
            "active": True,
            "activationDate": on,
            "submittedOnDate": on,
            "genderId": gender_id,
            "clientTypeId": self.cfg.cbs_client_type_id,
            "legalFormId": self.cfg.cbs_legal_form_id,
        }
        if application.borrower_middle_name:
            payload["middlename"] = application.borrower_middle_name
        if application.borrower_date_of_birth:
            payload["dateOfBirth"] = application.borrower_date_of_birth.isoformat()
        return {key: value for key, value in payload.items() if value is not None}

    def loan_payload(self, application: LoanApplication) -> dict[str, Any]:
        on = self.today().isoformat()
        tenure = application.tenure_months or self.cfg.loan_max_tenure_months
        return {
            "clientId": _numeric_id(application.cbs_client_id),
            "productId": self.cfg.cbs_loan_product_id,
            "externalId": application.ess_application_number,
            "principal": str(application.requested_amount),
            "loanTermFrequency": tenure,
            "loanTermFrequencyType": 2,
            "numberOfRepayments": tenure,
            "repaymentEvery": 1,
            "repaymentFrequencyType": 2,
            "interestRatePerPeriod": self.cfg.loan_interest_rate_percent,
            "interestRateFrequencyType": 3,
            "amortizationType": 1,
            "interestType": 0,
            "interestCalculationPeriodType": 1,
            "transactionProcessingStrategyCode": REPAYMENT_STRATEGY,
            "loanType": "individual",
            "expectedDisbursementDate": on,
            "submittedOnDate": on,
            "dateFormat": DATE_FORMAT,
            "locale": LOCALE,
            "charges": [],
        }

    async def create_client(self, application: LoanApplication) -> str:
        if application.cbs_client_id:
            logger.info("CBS client already recorded for %s", application.ess_application_number)
            return application.cbs_client_id

        national_id = application.borrower_national_id
        if national_id:
            existing = await self._find_client(application, national_id)
            if existing:
                logger.info("Reusing CBS client %s for %s", existing, application.ess_application_number)
                return existing

        try:
            body = await self._call(
                application, "create_client", self.cbs.create_client, self.client_payload(application)
            )
        except CbsError as exc:
            if not (national_id and _outcome_unknown(exc)):
                raise
            existing = await self._find_client(application, national_id)
            if existing is None:
                raise
            logger.info("CBS client %s was created despite %s", existing, exc)
            return existing
        client_id = _resource_id(body, "clientId")
        if client_id is None:
            raise CbsTerminalError("CBS did not return a client id", operation="create_client")
        return client_id

    async def _find_client(self, application: LoanApplication, national_id: str) -> str | None:
        found = await self._call(application, "find_client", self.cbs.find_client_by_external_id, national_id)
        return str(found["id"]) if found and found.get("id") is not None else None

    async def _find_loan(self, application: LoanApplication) -> str | None:
        found = await self._call(
            application, "find_loan", self.cbs.find_loan_by_external_id, application.ess_application_number
        )
        return str(found["id"]) if found and found.get("id") is not None else None

    async def create_loan(self, application: LoanApplication) -> str:
        """Create the CBS loan keyed by the ESS application number as its external id.

        A loan already carrying that external id is reused, so a create whose
        response was lost is never repeated.
        """
        if application.cbs_loan_id:
            logger.info("CBS loan already recorded for %s", application.ess_application_number)
            return application.cbs_loan_id
        if not application.cbs_client_id:
            raise CbsTerminalError("Cannot create a loan before the client", operation="create_loan")

        existing = await self._find_loan(application)
        if existing:
            logger.info("Reusing CBS loan %s for %s", existing, application.ess_application_number)
            return existing

        try:
            body = await self._call(
                application, "create_loan", self.cbs.create_loan, self.loan_payload(application)
            )
        except CbsError as exc:
            if not _outcome_unknown(exc):
                raise
            existing = await self._find_loan(application)
            if existing is None:
                raise
            logger.info("CBS loan %s was created despite %s", existing, exc)
            return existing
        loan_id = _resource_id(body, "loanId")
        if loan_id is None:
            raise CbsTerminalError("CBS did not return a loan id", operation="create_loan")
        return loan_id

    async def disburse(self, application: LoanApplication) -> DisbursementResult:
        """Approve (when pending) and disburse; a loan the CBS already shows as active is left alone."""
        if not application.cbs_loan_id:
            raise CbsTerminalError("Cannot disburse without a CBS loan", operation="disburse")
        loan_id = application.cbs_loan_id
        on = self.today()

        loan = await self._call(application, "get_loan", self.cbs.get_loan, loan_id)
        status = _loan_status(loan)
        if _is_disbursed(status):
            logger.info("CBS loan %s already disbursed; skipping", loan_id)
            return self._disbursement_result(loan, on, already_disbursed=True)

        if _needs_approval(status):
            await self._loan_command(
                application,
                "approve_loan",
                self.cbs.approve_loan,
                loan_id,
                on,
                applied=lambda current: not _needs_approval(current),
            )
        await self._loan_command(
            application, "disburse_loan", self.cbs.disburse_loan, loan_id, on, applied=_is_disbursed
        )

        loan = await self._call(application, "get_loan", self.cbs.get_loan, loan_id)
        return self._disbursement_result(loan, on)

    async def _loan_command(
        self,
        application: LoanApplication,
        operation: str,
        call: Callable[..., Awaitable[dict[str, Any]]],
        loan_id: str,
        on: date,
        *,
        applied: Callable[[dict[str, Any]], bool],
    ) -> None:
        """Run a loan state command; when its outcome is unknown, trust the loan's live status."""
        try:
            await self._call(application, operation, call, loan_id, on)
        except CbsError as exc:
            if not _outcome_unknown(exc):
                raise
            loan = await self._call(application, "get_loan", self.cbs.get_loan, loan_id)
            if not applied(_loan_status(loan)):
                raise
            logger.info("CBS %s on loan %s was applied despite %s", operation, loan_id, exc)

    @staticmethod
    def _disbursement_result(loan: dict[str, Any], on: date, *, already_disbursed: bool = False) -> DisbursementResult:
        summary = loan.get("summary") or {}
        total = summary.get("totalExpectedRepayment") or summary.get("totalOutstanding")
        return DisbursementResult(
            account_number=str(loan["accountNo"]) if loan.get("accountNo") else None,
            disbursed_on=on,
            total_amount_to_pay=to_decimal(total, default=None),
            already_disbursed=already_disbursed,
        )

    async def fetch_loan_summary(self, application: LoanApplication) -> dict[str, Any]:
        if not application.cbs_loan_id:
            raise CbsTerminalError("No CBS loan recorded", operation="fetch_loan_summary")
        return await self._call(
            application,
            "fetch_loan_summary",
            self.cbs.get_loan,
            application.cbs_loan_id,
            associations="repaymentSchedule,transactions",
        )

    async def fetch_outstanding(self, application: LoanApplication) -> Decimal:
        """Live ``principalOutstanding``; never served from anything cached locally."""
        loan = await self.fetch_loan_summary(application)
        summary = loan.get("summary") or {}
        outstanding = to_decimal(summary.get("principalOutstanding"), default=None)
        if outstanding is None:
            raise CbsTerminalError("CBS loan summary has no principalOutstanding", operation="fetch_outstanding")
        return outstanding

    async def fetch_payoff(self, application: LoanApplication) -> PayoffBalance:
        """Live payoff: principal plus fees and penalties already charged, never future interest."""
        loan = await self.fetch_loan_summary(application)
        summary = loan.get("summary") or {}
        principal = to_decimal(summary.get("principalOutstanding"), default=None)
        if principal is None:
            raise CbsTerminalError("CBS loan summary has no principalOutstanding", operation="fetch_payoff")
        charges = to_decimal(summary.get("feeChargesOutstanding")) + to_decimal(
            summary.get("penaltyChargesOutstanding")
        )
        repaid_on = [
            _fineract_date(item.get("date"))
            for item in loan.get("transactions") or []
            if (item.get("type") or {}).get("repayment")
        ]
        repaid_on = [day for day in repaid_on if day is not None]
        timeline = loan.get("timeline") or {}
        return PayoffBalance(
            principal_outstanding=principal,
            total_payoff=principal + charges,
            last_repayment_on=max(repaid_on) if repaid_on else _fineract_date(timeline.get("actualDisbursementDate")),
            maturity_on=_fineract_date(timeline.get("expectedMaturityDate")),
        )

    async def reject_loan(self, application: LoanApplication, *, reason: str | None = None) -> dict[str, Any]:
        if not application.cbs_loan_id:
            return {}
        return await self._call(
            application,
            "reject_loan",
            self.cbs.reject_loan,
            application.cbs_loan_id,
            self.today(),
            note=reason,
        )
