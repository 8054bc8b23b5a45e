"""Provider webhook receivers. Always 200 {"ok": true}; see WebhookService."""

from fastapi import APIRouter, Depends, Request

from flint.dependencies import get_webhook_service
from flint.services.webhook_service import WebhookService

router = APIRouter()


def _headers(request: Request) -> dict[str, str]:
    return {key.lower(): value for key, value in request.headers.items()}


@router.post("/snaptrade")
async def snaptrade_webhook(
    request: Request, service: WebhookService = Depends(get_webhook_service)
) -> dict[str, bool]:
    return await service.handle_snaptrade(await request.body(), _headers(request))


@router.post("/teller")
async def teller_webhook(
    request: Request, service: WebhookService = Depends(get_webhook_service)
) -> dict[str, bool]:
    return await service.handle_teller(await request.body(), _headers(request))
