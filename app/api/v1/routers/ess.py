from fastapi import APIRouter, Depends, Request, Response

from app.api import deps
from app.core.limiter import limiter
from app.core.settings import settings
from app.services.ess_bridge import EssBridge

router = APIRouter(prefix="/ess", tags=["ess"])

XML_MEDIA_TYPE = "application/xml"


@router.post(
    "/messages",
    summary="Receive a signed ESS message",
    response_class=Response,
    responses={200: {"content": {XML_MEDIA_TYPE: {}}}},
)
@router.post("/loan", include_in_schema=False, response_class=Response)
@limiter.limit(settings.ess_rate_limit)
async def receive_message(
    request: Request,
    bridge: EssBridge = Depends(deps.get_bridge),
) -> Response:
    body = await request.body()
    reply = await bridge.handle(body)
    return Response(content=reply.body, status_code=reply.status_code, media_type=XML_MEDIA_TYPE)
