from decimal import Decimal

import httpx
import pytest

from app.core.errors import ApplicationNotFoundError, IllegalTransitionError
from app.core.settings import settings
from app.schemas.loan import LoanApplicationStatus as S
from app.services.background import BackgroundRunner
from app.services.loan_lifecycle import LoanLifecycle
from app.services.loan_state import Trigger
from conftest import make_application, no_sleep, with_borrower

TRIGGER = Trigger(source="LOAN_FINAL_APPROVAL_NOTIFICATION", message_id="ESS_MSG_0002")
OPERATOR = Trigger.operator("ops-1", "test")


@pytest.fixture
def approved(store):
    store.application = with_borrower(
        make_application(status="FINAL_APPROVAL_RECEIVED", ess_loan_number_alias="ESSLOAN77")
    )
    return store.application


@pytest.mark.asyncio
async def test_pipeline_disburses_and_notifies(signing_keys, lifecycle, approved, cbs, ess, store):
    status = await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)

    assert status is S.DISBURSED
    assert approved.status == "DISBURSED"
    assert approved.cbs_client_id == "501"
    assert approved.cbs_loan_id == "901"
    assert approved.cbs_loan_account_number == "000000901"
    assert [key for key, _, _ in cbs.calls] == ["GET", "POST", "GET", "POST", "GET", "POST", "POST", "GET"]

    [notice] = ess.messages()
    assert notice.message_type == "LOAN_DISBURSEMENT_NOTIFICATION"
    assert notice.get("LoanNumber") == "ESSLOAN77"
    assert notice.get("TotalAmountToPay") == "5818000.00"
    assert notice.get("DisbursementDate") == "2026-01-15"

    transitions = [event.value["to"] for event in store.events if event.key == "transition"]
    assert transitions == ["CLIENT_CREATED", "LOAN_CREATED", "DISBURSED"]
    assert "notification" in store.event_keys()


@pytest.mark.asyncio
async def test_pipeline_runs_cbs_steps_once(signing_keys, lifecycle, approved, cbs, ess):
    await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)
    again = await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)

    assert again is S.DISBURSED
    assert cbs.count("POST", "/clients") == 1
    assert cbs.count("POST", "/loans") == 1
    assert len(ess.requests) == 1


@pytest.mark.asyncio
async def test_retryable_error_keeps_last_confirmed_state(signing_keys, lifecycle, approved, cbs, ess, store):
    cbs.route("POST", "/loans", httpx.Response(503))

    status = await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)

    assert status is S.CLIENT_CREATED
    assert approved.status == "CLIENT_CREATED"
    assert ess.requests == []
    assert "cbs_error" in store.event_keys()

    cbs.route("POST", "/loans", httpx.Response(200, json={"loanId": 902}))
    status = await lifecycle.retry(approved.ess_application_number, trigger=OPERATOR)

    assert status is S.DISBURSED
    assert approved.cbs_loan_id == "902"
    assert cbs.count("POST", "/clients") == 1
    assert ess.message_types() == ["LOAN_DISBURSEMENT_NOTIFICATION"]


@pytest.mark.asyncio
async def test_terminal_error_fails_and_notifies(signing_keys, lifecycle, approved, cbs, ess):
    cbs.route(
        "POST",
        "/clients",
        httpx.Response(400, json={"errors": [{"defaultUserMessage": "Mobile number already exists"}]}),
    )

    status = await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)

    assert status is S.FAILED
    assert approved.status == "FAILED"
    [notice] = ess.messages()
    assert notice.message_type == "LOAN_DISBURSEMENT_FAILURE_NOTIFICATION"
    assert notice.get("Reason") == "Mobile number already exists"
    assert cbs.count("POST", "/loans") == 0


@pytest.mark.asyncio
async def test_disburse_response_lost_after_cbs_applied_it(signing_keys, lifecycle, approved, cbs, ess):
    cbs.route(
        "POST",
        "/loans/901",
        cbs.applied_then(httpx.ReadTimeout("read timed out")),
        httpx.Response(403, json={"defaultUserMessage": "Loan is already active"}),
        command="disburse",
    )

    status = await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)

    assert status is S.DISBURSED
    assert cbs.count("POST", "/loans/901", "disburse") == 1
    assert ess.message_types() == ["LOAN_DISBURSEMENT_NOTIFICATION"]


@pytest.mark.asyncio
async def test_create_loan_response_lost_after_cbs_created_it(signing_keys, lifecycle, approved, cbs, ess):
    cbs.route("POST", "/loans", cbs.applied_then(httpx.ReadTimeout("read timed out")))

    status = await lifecycle.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)

    assert status is S.DISBURSED
    assert approved.cbs_loan_id == "901"
    assert cbs.count("POST", "/loans") == 1
    assert ess.message_types() == ["LOAN_DISBURSEMENT_NOTIFICATION"]


def _lifecycle_with_runner(lifecycle: LoanLifecycle, runner: BackgroundRunner, max_attempts: int) -> LoanLifecycle:
    return LoanLifecycle(
        session_factory=lifecycle.session_factory,
        cbs_factory=lifecycle.cbs_factory,
        dispatcher=lifecycle.dispatcher,
        locks=lifecycle.locks,
        today=lifecycle.today,
        runner=runner,
        cfg=settings.model_copy(update={"pipeline_max_attempts": max_attempts}),
        sleep=no_sleep,
    )


@pytest.mark.asyncio
async def test_unavailable_cbs_is_retried_later_then_succeeds(signing_keys, lifecycle, approved, cbs, ess, store):
    runner = BackgroundRunner()
    retrying = _lifecycle_with_runner(lifecycle, runner, max_attempts=3)
    cbs.route("POST", "/clients", httpx.Response(503), httpx.Response(200, json={"clientId": 501}))

    status = await retrying.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)
    assert status is S.FINAL_APPROVAL_RECEIVED

    await runner.drain()

    assert approved.status == "DISBURSED"
    assert cbs.count("POST", "/clients") == 2
    [deferred] = [event for event in store.events if event.key == "pipeline_deferred"]
    assert deferred.value["attempt"] == 1
    assert deferred.value["operation"] == "create_client"
    assert ess.message_types() == ["LOAN_DISBURSEMENT_NOTIFICATION"]


@pytest.mark.asyncio
async def test_unavailable_cbs_fails_application_once_attempts_run_out(
    signing_keys, lifecycle, approved, cbs, ess, store
):
    runner = BackgroundRunner()
    retrying = _lifecycle_with_runner(lifecycle, runner, max_attempts=3)
    cbs.route("POST", "/clients", httpx.Response(503, json={"defaultUserMessage": "Service Unavailable"}))

    await retrying.run_disbursement_pipeline(approved.ess_application_number, trigger=TRIGGER)
    await runner.drain()

    assert approved.status == "FAILED"
    assert cbs.count("POST", "/clients") == 3
    assert [event.value["attempt"] for event in store.events if event.key == "pipeline_deferred"] == [1, 2]
    [notice] = ess.messages()
    assert notice.message_type == "LOAN_DISBURSEMENT_FAILURE_NOTIFICATION"
    assert notice.get("Reason") == "CBS unavailable after 3 attempts: Service Unavailable"
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_pipeline_ignores_application_outside_pipeline(lifecycle, store, cbs):
    store.application = make_application(status="RECEIVED")
    status = await lifecycle.run_disbursement_pipeline("ESS1700000000001", trigger=TRIGGER)
    assert status is S.RECEIVED
    assert cbs.calls == []


@pytest.mark.asyncio
async def test_pipeline_for_unknown_application(lifecycle, cbs):
    assert await lifecycle.run_disbursement_pipeline("ESS404", trigger=TRIGGER) is None
    assert cbs.calls == []


@pytest.mark.asyncio
async def test_retry_outside_pipeline_is_illegal(lifecycle, store):
    store.application = make_application(status="DISBURSED", cbs_loan_id="901")
    with pytest.raises(IllegalTransitionError):
        await lifecycle.retry("ESS1700000000001", trigger=OPERATOR)


@pytest.mark.asyncio
async def test_retry_unknown_application(lifecycle):
    with pytest.raises(ApplicationNotFoundError):
        await lifecycle.retry("ESS404", trigger=OPERATOR)


@pytest.mark.asyncio
async def test_liquidate_uses_live_outstanding(signing_keys, lifecycle, store, cbs, ess):
    store.application = with_borrower(
        make_application(status="DISBURSED", cbs_client_id="501", cbs_loan_id="901", cbs_loan_account_number="000000901")
    )

    outcome = await lifecycle.liquidate("ESS1700000000001", trigger=OPERATOR, reason="Early payoff")

    assert outcome.amount == Decimal("4875000.50")
    assert outcome.application.status == "LIQUIDATED"
    assert outcome.delivery.delivered
    assert cbs.count("GET", "/loans/901") == 1
    [notice] = ess.messages()
    assert notice.message_type == "LOAN_LIQUIDATION_NOTIFICATION"
    assert notice.get("LiquidationAmount") == "4875000.50"
    assert notice.get("LoanNumber") == "000000901"
    assert notice.get("Reason") == "Early payoff"


@pytest.mark.asyncio
async def test_liquidate_before_disbursement_is_illegal(lifecycle, store, cbs):
    store.application = make_application(status="LOAN_CREATED", cbs_loan_id="901")
    with pytest.raises(IllegalTransitionError):
        await lifecycle.liquidate("ESS1700000000001", trigger=OPERATOR)
    assert cbs.calls == []
    assert store.application.status == "LOAN_CREATED"


@pytest.mark.asyncio
async def test_liquidate_is_refused_when_cbs_is_down(lifecycle, store, cbs, ess):
    from app.core.errors import CbsRetryableError

    store.application = make_application(status="DISBURSED", cbs_loan_id="901")
    cbs.route("GET", "/loans/901", httpx.Response(503))

    with pytest.raises(CbsRetryableError):
        await lifecycle.liquidate("ESS1700000000001", trigger=OPERATOR)
    assert store.application.status == "DISBURSED"
    assert ess.requests == []


@pytest.mark.asyncio
async def test_mark_default_then_liquidate(signing_keys, lifecycle, store):
    store.application = make_application(status="DISBURSED", cbs_loan_id="901")

    application = await lifecycle.mark_default("ESS1700000000001", trigger=OPERATOR, reason="3 missed deductions")
    assert application.status == "DEFAULTED"

    outcome = await lifecycle.liquidate("ESS1700000000001", trigger=OPERATOR)
    assert outcome.application.status == "LIQUIDATED"


@pytest.mark.asyncio
async def test_cancel_rejects_cbs_loan_first(lifecycle, store, cbs):
    store.application = make_application(status="LOAN_CREATED", cbs_client_id="501", cbs_loan_id="901")
    trigger = Trigger(source="LOAN_CANCELLATION_NOTIFICATION", message_id="ESS_MSG_0003")

    async with store.session() as db:
        await lifecycle.cancel(db, store.application, trigger=trigger, reason="Employee withdrew")

    assert store.application.status == "CANCELLED"
    assert cbs.count("POST", "/loans/901", "reject") == 1
    [compensation] = [event for event in store.events if event.key == "compensation"]
    assert compensation.value["ok"] is True


@pytest.mark.asyncio
async def test_cancel_completes_even_if_compensation_fails(lifecycle, store, cbs):
    store.application = make_application(status="LOAN_CREATED", cbs_client_id="501", cbs_loan_id="901")
    cbs.route("POST", "/loans/901", httpx.Response(403, json={"defaultUserMessage": "Loan locked"}), command="reject")

    async with store.session() as db:
        await lifecycle.cancel(db, store.application, trigger=OPERATOR, reason=None)

    assert store.application.status == "CANCELLED"
    [compensation] = [event for event in store.events if event.key == "compensation"]
    assert compensation.value == {
        "action": "reject_loan",
        "ok": False,
        "reason": "Loan locked",
        "cbs_loan_id": "901",
    }


@pytest.mark.asyncio
async def test_cancel_without_cbs_loan_skips_compensation(lifecycle, store, cbs):
    store.application = make_application(status="RECEIVED")
    async with store.session() as db:
        await lifecycle.cancel(db, store.application, trigger=OPERATOR, reason="x")
    assert store.application.status == "CANCELLED"
    assert cbs.calls == []


@pytest.mark.asyncio
async def test_cancel_after_disbursement_is_illegal(lifecycle, store):
    store.application = make_application(status="DISBURSED", cbs_loan_id="901")
    async with store.session() as db:
        with pytest.raises(IllegalTransitionError):
            await lifecycle.cancel(db, store.application, trigger=OPERATOR, reason=None)
    assert store.application.status == "DISBURSED"


@pytest.mark.asyncio
async def test_initial_approval_sent_only_while_received(signing_keys, lifecycle, store, ess):
    store.application = make_application(status="RECEIVED")
    outcome = await lifecycle.send_initial_approval(
        "ESS1700000000001",
        loan_number="LOAN1700000000001001",
        total_amount_to_pay=Decimal("6000000.00"),
        other_charges=Decimal("50000.00"),
    )
    assert outcome.delivered
    [notice] = ess.messages()
    assert notice.message_type == "LOAN_INITIAL_APPROVAL_NOTIFICATION"
    assert notice.get("Approval") == "APPROVED"
    assert notice.get("FSPReferenceNumber") == "FSP1700000000001123"

    store.application.status = "CANCELLED"
    skipped = await lifecycle.send_initial_approval(
        "ESS1700000000001",
        loan_number="LOAN1700000000001001",
        total_amount_to_pay=Decimal("6000000.00"),
        other_charges=Decimal("50000.00"),
    )
    assert skipped is None
    assert len(ess.requests) == 1
