from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.callbacks import CallbackDispatcher
from app.services.ess_bridge import EssBridge
from app.services.loan_lifecycle import LoanLifecycle


@dataclass(slots=True)
class OperatorContext:
    """Who is acting on an operator route; passed explicitly into every action."""

    operator_id: str


async def get_operator_context(
    operator_id: str | None = Header(default=None, alias="X-Operator-Id"),
) -> OperatorContext:
    candidate = (operator_id or "").strip()
    if not candidate:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator identity required: provide X-Operator-Id header",
        )
    return OperatorContext(operator_id=candidate)


async def get_db_session(db: AsyncSession = Depends(get_db)) -> AsyncSession:
    return db


def get_bridge(request: Request) -> EssBridge:
    return request.app.state.bridge


def get_lifecycle(request: Request) -> LoanLifecycle:
    return request.app.state.lifecycle


def get_dispatcher(request: Request) -> CallbackDispatcher:
    return request.app.state.dispatcher
