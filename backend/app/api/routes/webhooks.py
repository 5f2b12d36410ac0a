import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_webhook_service
from app.core.config import settings
from app.core.logging_setup import get_logger
from app.services.webhooks import WebhookService, verify_autentique_signature, verify_vindi_token

logger = get_logger("webhooks.api")

router = APIRouter(tags=["webhooks"])


def _parse_body(raw: bytes) -> Any:
    if not raw:
        raise ValueError("Corpo vazio")
    return json.loads(raw)


@router.post("/autentique")
async def autentique_webhook(
    request: Request,
    service: Annotated[WebhookService, Depends(get_webhook_service)],
    x_autentique_signature: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    """Eventos de assinatura da Autentique (document.finished, signature.*)."""
    raw = await request.body()
    if not verify_autentique_signature(raw, x_autentique_signature, settings.autentique_webhook_secret):
        logger.warning("[autentique-webhook] assinatura HMAC inválida")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "Assinatura inválida"})
    try:
        payload = _parse_body(raw)
    except ValueError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": f"JSON inválido: {exc}"})

    try:
        outcome = await run_in_threadpool(service.handle_autentique, payload)
    except Exception as exc:
        logger.exception("[autentique-webhook] falha inesperada")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/vindi")
async def vindi_webhook(
    request: Request,
    service: Annotated[WebhookService, Depends(get_webhook_service)],
    x_webhook_secret: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    """Eventos de cobrança da Vindi, no envelope nativo ou no formato ``{charge_id, status}``."""
    token = request.query_params.get("token")
    if not verify_vindi_token([token, x_webhook_secret], settings.vindi_webhook_token):
        logger.warning("[vindi-webhook] token inválido")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "Token inválido"})

    raw = await request.body()
    try:
        payload = _parse_body(raw)
    except ValueError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": f"JSON inválido: {exc}"})

    try:
        outcome = await run_in_threadpool(service.handle_vindi, payload)
    except Exception as exc:
        logger.exception("[vindi-webhook] falha inesperada")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
