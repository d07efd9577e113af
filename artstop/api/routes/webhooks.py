"""Gateway webhook ingress. Authenticated by body signature, not bearer token."""

from fastapi import APIRouter, Depends, Request

from artstop.api.dependencies import get_webhook_processor
from artstop.api.responses import send_response
from artstop.pipeline.webhooks import WebhookProcessor
from artstop.schemas.orders import utcnow

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-gateway-signature"


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    # Signature covers the raw bytes; read before any JSON parsing
    raw_body = await request.body()
    result = await processor.process(raw_body, request.headers.get(SIGNATURE_HEADER))
    return send_response(result)


@router.get("/health")
async def webhook_health():
    return {"status": "OK", "timestamp": utcnow().isoformat()}
