"""Forward/reverse affordability for payroll-deduction loans.

Everything here is pure. Intermediate values stay as ``float`` at full
precision; only :class:`AffordabilityResult` rounds, to 2 places, so that
EMI -> principal -> EMI round-trips do not drift.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any

from app.core.errors import MalformedMessageError
from app.core.settings import Settings, settings as app_settings

TWOPLACES = Decimal("0.01")


class AffordabilityMode(str, Enum):
    FORWARD = "FORWARD"
    REVERSE = "REVERSE"


@dataclass(frozen=True)
class LoanProductTerms:
    annual_interest_rate: float
    max_tenure_months: int
    min_loan_amount: float
    processing_fee_rate: float = 0.0
    insurance_rate: float = 0.0
    other_charges: float = 0.0

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> "LoanProductTerms":
        cfg = cfg or app_settings
        return cls(
            annual_interest_rate=cfg.loan_interest_rate_percent,
            max_tenure_months=cfg.loan_max_tenure_months,
            min_loan_amount=cfg.loan_min_amount,
            processing_fee_rate=cfg.loan_processing_fee_rate,
            insurance_rate=cfg.loan_insurance_rate,
            other_charges=cfg.loan_other_charges,
        )


@dataclass(frozen=True)
class AffordabilityRequest:
    requested_amount: float = 0.0
    tenure_requested: int | None = None
    desired_deductible_amount: float = 0.0
    deductible_amount_ceiling: float = 0.0
    months_until_retirement: int | None = None


@dataclass(frozen=True)
class LoanCharges:
    processing_fee: Decimal
    insurance: Decimal
    other_charges: Decimal
    total_interest: Decimal
    net_loan_amount: Decimal
    total_amount_to_pay: Decimal


@dataclass(frozen=True)
class AffordabilityResult:
    mode: AffordabilityMode
    tenure_months: int
    desirable_emi: Decimal
    max_affordable_loan: Decimal
    eligible_amount: Decimal
    monthly_return_amount: Decimal
    charges: LoanCharges

    def charges_response_details(self) -> dict[str, Any]:
        """``MessageDetails`` for a ``LOAN_CHARGES_RESPONSE``."""
        return {
            "DesiredDeductibleAmount": self.monthly_return_amount,
            "TotalInsurance": self.charges.insurance,
            "TotalProcessingFees": self.charges.processing_fee,
            "TotalInterestRateAmount": self.charges.total_interest,
            "OtherCharges": self.charges.other_charges,
            "NetLoanAmount": self.charges.net_loan_amount,
            "TotalAmountToPay": self.charges.total_amount_to_pay,
            "Tenure": self.tenure_months,
            "EligibleAmount": self.eligible_amount,
            "MonthlyReturnAmount": self.monthly_return_amount,
        }


def _money(value: float) -> Decimal:
    return Decimal(repr(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def monthly_rate(annual_rate_percent: float) -> float:
    return annual_rate_percent / 100.0 / 12.0


def emi(principal: float, annual_rate_percent: float, tenure_months: int) -> float:
    if tenure_months <= 0:
        return 0.0
    rate = monthly_rate(annual_rate_percent)
    if rate == 0:
        return principal / tenure_months
    factor = (1.0 + rate) ** tenure_months
    return principal * rate * factor / (factor - 1.0)


def max_loan_from_emi(installment: float, annual_rate_percent: float, tenure_months: int) -> float:
    """Present value of ``tenure_months`` payments of ``installment``; inverse of :func:`emi`."""
    if tenure_months <= 0 or installment <= 0:
        return 0.0
    rate = monthly_rate(annual_rate_percent)
    if rate == 0:
        return installment * tenure_months
    factor = (1.0 + rate) ** tenure_months
    return installment * (factor - 1.0) / (rate * factor)


def months_until_retirement(value: Any, *, today: date | None = None) -> int | None:
    """Accepts a month count or an ISO date; ``None`` when nothing usable was given."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(Decimal(text))
    except (ArithmeticError, ValueError):
        pass
    try:
        retirement = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None
    today = today or date.today()
    months = (retirement.year - today.year) * 12 + (retirement.month - today.month)
    if retirement.day < today.day:
        months -= 1
    return max(months, 0)


def resolve_tenure(request: AffordabilityRequest, terms: LoanProductTerms) -> int:
    tenure = request.tenure_requested if request.tenure_requested and request.tenure_requested > 0 else 0
    if tenure <= 0:
        tenure = terms.max_tenure_months
    if request.months_until_retirement is not None:
        tenure = min(tenure, request.months_until_retirement)
    return tenure


def calculate_charges(principal: float, tenure_months: int, terms: LoanProductTerms) -> LoanCharges:
    processing_fee = principal * terms.processing_fee_rate
    insurance = principal * terms.insurance_rate
    total_interest = emi(principal, terms.annual_interest_rate, tenure_months) * tenure_months - principal
    if tenure_months <= 0:
        total_interest = 0.0
    deductions = processing_fee + insurance + terms.other_charges
    return LoanCharges(
        processing_fee=_money(processing_fee),
        insurance=_money(insurance),
        other_charges=_money(terms.other_charges),
        total_interest=_money(total_interest),
        net_loan_amount=_money(principal - deductions),
        total_amount_to_pay=_money(principal + total_interest),
    )


def calculate_affordability(
    request: AffordabilityRequest, terms: LoanProductTerms | None = None
) -> AffordabilityResult:
    terms = terms or LoanProductTerms.from_settings()
    rate = terms.annual_interest_rate
    tenure = resolve_tenure(request, terms)

    ceiling = request.deductible_amount_ceiling
    if request.desired_deductible_amount > 0:
        desirable_emi = min(request.desired_deductible_amount, ceiling)
    else:
        desirable_emi = ceiling

    if request.requested_amount == 0 or tenure <= 0:
        mode = AffordabilityMode.REVERSE
    else:
        mode = AffordabilityMode.FORWARD

    max_affordable = max_loan_from_emi(desirable_emi, rate, tenure)
    if mode is AffordabilityMode.FORWARD:
        eligible = min(request.requested_amount, max_affordable)
        monthly = emi(eligible, rate, tenure)
    else:
        eligible = max_affordable
        monthly = desirable_emi

    eligible = max(eligible, terms.min_loan_amount)

    return AffordabilityResult(
        mode=mode,
        tenure_months=max(tenure, 0),
        desirable_emi=_money(desirable_emi),
        max_affordable_loan=_money(max_affordable),
        eligible_amount=_money(eligible),
        monthly_return_amount=_money(monthly),
        charges=calculate_charges(eligible, tenure, terms),
    )


def _as_float(value: Any, field: str) -> float:
    """Amounts may be absent; one that is present must be a finite number."""
    if value is None or value == "":
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError(f"{field} is not a number: {value!r}") from exc
    if not math.isfinite(number):
        raise MalformedMessageError(f"{field} is not a finite amount: {value!r}")
    return number


def _as_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    return int(_as_float(value, field))


def request_from_details(details: dict[str, Any], *, today: date | None = None) -> AffordabilityRequest:
    """Build a request from ``LOAN_CHARGES_REQUEST`` / ``LOAN_OFFER_REQUEST`` fields.

    Raises :class:`MalformedMessageError` for an amount or tenure that is
    present but not a finite number.
    """
    amount_field = "RequestedAmount" if details.get("RequestedAmount") else "LoanAmount"
    tenure_field = "Tenure" if details.get("Tenure") else "RequestedTenure"
    return AffordabilityRequest(
        requested_amount=_as_float(details.get(amount_field), amount_field),
        tenure_requested=_as_int(details.get(tenure_field), tenure_field),
        desired_deductible_amount=_as_float(details.get("DesiredDeductibleAmount"), "DesiredDeductibleAmount"),
        deductible_amount_ceiling=_as_float(details.get("DeductibleAmount"), "DeductibleAmount"),
        months_until_retirement=months_until_retirement(details.get("RetirementDate"), today=today),
    )
