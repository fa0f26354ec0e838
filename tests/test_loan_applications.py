from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.errors import IllegalTransitionError, MalformedMessageError
from app.services.loan_applications import APPLICATION_NUMBER_INDEX, create_application
from conftest import FakeAsyncSession, make_message


class _RejectingSession(FakeAsyncSession):
    def __init__(self, violation: str) -> None:
        super().__init__()
        self.violation = violation

    async def flush(self) -> None:
        raise IntegrityError("INSERT INTO loan_applications ...", {}, Exception(self.violation))


def _offer():
    return make_message("LOAN_OFFER_REQUEST", {"ApplicationNumber": "ESS1700000000001"})


@pytest.mark.asyncio
async def test_negative_requested_amount_is_malformed():
    db = FakeAsyncSession()

    with pytest.raises(MalformedMessageError, match="negative"):
        await create_application(db, _offer(), fields={"requested_amount": Decimal("-1.00")})

    assert db.added == []


@pytest.mark.asyncio
async def test_concurrent_creation_is_a_duplicate():
    db = _RejectingSession(f'duplicate key value violates unique constraint "{APPLICATION_NUMBER_INDEX}"')

    with pytest.raises(IllegalTransitionError):
        await create_application(db, _offer(), fields={"requested_amount": Decimal("100.00")})

    assert db.rollbacks == 1


@pytest.mark.asyncio
async def test_other_constraint_violations_propagate():
    db = _RejectingSession('new row violates check constraint "ck_loan_app_tenure_nonneg"')

    with pytest.raises(IntegrityError):
        await create_application(db, _offer(), fields={"requested_amount": Decimal("100.00"), "tenure_months": -1})

    assert db.rollbacks == 1
