from datetime import date
from decimal import Decimal

import pytest

from app.core.errors import MalformedMessageError
from app.services.affordability import (
    AffordabilityMode,
    AffordabilityRequest,
    LoanProductTerms,
    _money,
    calculate_affordability,
    emi,
    max_loan_from_emi,
    months_until_retirement,
    request_from_details,
    resolve_tenure,
)

TERMS = LoanProductTerms(
    annual_interest_rate=15.0,
    max_tenure_months=96,
    min_loan_amount=100_000.0,
    processing_fee_rate=0.02,
    insurance_rate=0.015,
    other_charges=50_000.0,
)


@pytest.mark.parametrize(
    "installment, rate, tenure",
    [
        (266667.0, 15.0, 96),
        (333333.0, 15.0, 96),
        (10_000.0, 18.5, 12),
        (125_000.55, 9.0, 60),
        (50_000.0, 0.0, 36),
        (1.0, 27.0, 1),
    ],
)
def test_emi_and_principal_are_inverse(installment, rate, tenure):
    principal = max_loan_from_emi(installment, rate, tenure)
    assert _money(emi(principal, rate, tenure)) == _money(installment)


def test_reverse_mode_uses_desired_deduction():
    request = request_from_details(
        {
            "RequestedAmount": "0",
            "DesiredDeductibleAmount": "266667",
            "DeductibleAmount": "333333",
            "Tenure": "96",
        }
    )
    result = calculate_affordability(request, TERMS)

    assert result.mode is AffordabilityMode.REVERSE
    assert result.tenure_months == 96
    assert result.eligible_amount == _money(max_loan_from_emi(266667, 15.0, 96))
    assert result.monthly_return_amount == Decimal("266667.00")
    assert result.desirable_emi == Decimal("266667.00")


def test_forward_mode_caps_request_at_affordable_amount():
    request = AffordabilityRequest(
        requested_amount=20_000_000.0,
        tenure_requested=96,
        deductible_amount_ceiling=333333.0,
    )
    result = calculate_affordability(request, TERMS)

    cap = max_loan_from_emi(333333.0, 15.0, 96)
    assert cap < 20_000_000.0
    assert result.mode is AffordabilityMode.FORWARD
    assert result.eligible_amount == _money(cap)
    assert result.max_affordable_loan == _money(cap)
    assert result.monthly_return_amount == Decimal("333333.00")


def test_forward_mode_keeps_affordable_request():
    request = AffordabilityRequest(
        requested_amount=5_000_000.0,
        tenure_requested=24,
        deductible_amount_ceiling=400_000.0,
    )
    result = calculate_affordability(request, TERMS)

    assert result.eligible_amount == Decimal("5000000.00")
    assert result.monthly_return_amount == _money(emi(5_000_000.0, 15.0, 24))


def test_desired_deduction_never_exceeds_ceiling():
    request = AffordabilityRequest(desired_deductible_amount=500_000.0, deductible_amount_ceiling=300_000.0)
    result = calculate_affordability(request, TERMS)
    assert result.desirable_emi == Decimal("300000.00")
    assert result.monthly_return_amount == Decimal("300000.00")


def test_eligible_amount_is_floored_at_product_minimum():
    request = AffordabilityRequest(
        requested_amount=50_000.0,
        tenure_requested=12,
        deductible_amount_ceiling=200_000.0,
    )
    result = calculate_affordability(request, TERMS)
    assert result.eligible_amount == Decimal("100000.00")


def test_missing_tenure_uses_product_maximum():
    assert resolve_tenure(AffordabilityRequest(tenure_requested=None), TERMS) == 96
    assert resolve_tenure(AffordabilityRequest(tenure_requested=-3), TERMS) == 96


def test_tenure_is_clamped_to_retirement():
    request = AffordabilityRequest(
        requested_amount=0.0,
        tenure_requested=96,
        deductible_amount_ceiling=300_000.0,
        months_until_retirement=24,
    )
    result = calculate_affordability(request, TERMS)
    assert result.tenure_months == 24
    assert result.eligible_amount == _money(max_loan_from_emi(300_000.0, 15.0, 24))


def test_no_tenure_left_falls_back_to_reverse_with_floor():
    request = AffordabilityRequest(
        requested_amount=1_000_000.0,
        deductible_amount_ceiling=300_000.0,
        months_until_retirement=0,
    )
    result = calculate_affordability(request, TERMS)

    assert result.mode is AffordabilityMode.REVERSE
    assert result.tenure_months == 0
    assert result.max_affordable_loan == Decimal("0.00")
    assert result.eligible_amount == Decimal("100000.00")
    assert result.charges.total_interest == Decimal("0.00")


def test_zero_interest_rate_is_straight_line():
    assert emi(1200.0, 0.0, 12) == 100.0
    assert max_loan_from_emi(100.0, 0.0, 12) == 1200.0


def test_non_positive_tenure_or_installment():
    assert emi(1000.0, 15.0, 0) == 0.0
    assert max_loan_from_emi(1000.0, 15.0, 0) == 0.0
    assert max_loan_from_emi(0.0, 15.0, 12) == 0.0


def test_charges_breakdown():
    request = AffordabilityRequest(
        requested_amount=1_000_000.0,
        tenure_requested=12,
        deductible_amount_ceiling=500_000.0,
    )
    charges = calculate_affordability(request, TERMS).charges

    assert charges.processing_fee == Decimal("20000.00")
    assert charges.insurance == Decimal("15000.00")
    assert charges.other_charges == Decimal("50000.00")
    assert charges.net_loan_amount == Decimal("915000.00")
    expected_interest = emi(1_000_000.0, 15.0, 12) * 12 - 1_000_000.0
    assert charges.total_interest == _money(expected_interest)
    assert charges.total_amount_to_pay == _money(1_000_000.0 + expected_interest)


def test_charges_response_details_are_complete():
    result = calculate_affordability(AffordabilityRequest(deductible_amount_ceiling=200_000.0), TERMS)
    details = result.charges_response_details()
    assert details["Tenure"] == 96
    assert details["EligibleAmount"] == result.eligible_amount
    assert details["MonthlyReturnAmount"] == details["DesiredDeductibleAmount"]


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        ("", None),
        ("36", 36),
        ("36.0", 36),
        ("2028-01-15", 24),
        ("2028-01-14", 23),
        ("2028-01-15T00:00:00Z", 24),
        ("2020-01-01", 0),
        ("NaN", None),
        ("not a date", None),
    ],
)
def test_months_until_retirement(value, expected):
    assert months_until_retirement(value, today=date(2026, 1, 15)) == expected


def test_request_from_details_treats_absent_amounts_as_zero():
    request = request_from_details({"RequestedAmount": "", "DeductibleAmount": None})
    assert request.requested_amount == 0.0
    assert request.tenure_requested is None
    assert request.deductible_amount_ceiling == 0.0


@pytest.mark.parametrize(
    "details",
    [
        {"RequestedAmount": "abc"},
        {"DesiredDeductibleAmount": "1,000"},
        {"DeductibleAmount": "inf"},
        {"RequestedAmount": "NaN"},
        {"LoanAmount": "-inf"},
        {"Tenure": "x"},
        {"Tenure": "inf"},
    ],
)
def test_request_from_details_rejects_non_numeric_values(details):
    with pytest.raises(MalformedMessageError):
        request_from_details(details)


def test_request_from_details_names_the_bad_field():
    with pytest.raises(MalformedMessageError, match="DesiredDeductibleAmount"):
        request_from_details({"DesiredDeductibleAmount": "abc", "DeductibleAmount": "333333"})
