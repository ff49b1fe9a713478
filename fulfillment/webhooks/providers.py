"""Provider webhook handlers"""

from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from fulfillment.dependencies import get_webhook_ingestor
from fulfillment.errors import InvalidSignature
from fulfillment.providers.food import SIGNATURE_HEADER as FOOD_SIGNATURE_HEADER
from fulfillment.providers.grocery import SIGNATURE_HEADER as GROCERY_SIGNATURE_HEADER
from fulfillment.schemas.catalog import ProviderKind
from fulfillment.schemas.webhook import WebhookAck
from fulfillment.services.webhooks import WebhookIngestor

router = APIRouter()
logger = structlog.get_logger()

SIGNATURE_HEADERS = {
    ProviderKind.FOOD: FOOD_SIGNATURE_HEADER,
    ProviderKind.GROCERY: GROCERY_SIGNATURE_HEADER,
}


@router.post("/{provider}", response_model=WebhookAck)
async def handle_provider_webhook(
    provider: ProviderKind,
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """
    Receive a provider status callback.
    Non-2xx responses make the provider redeliver the event.
    """
    raw_body = await request.body()
    header = SIGNATURE_HEADERS.get(provider)
    signature = request.headers.get(header) if header else None

    try:
        return await ingestor.receive(provider, raw_body, signature)
    except InvalidSignature as e:
        raise HTTPException(status_code=401, detail=e.reason)
    except Exception as e:
        logger.error("Webhook request failed", provider=provider.value, error=str(e))
        raise HTTPException(status_code=500, detail="Webhook processing failed")
