from typing import Any, Dict
import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.exceptions import UnresolvedWebhookEventError
from ..services.gateway_client import gateway_client
from ..services.webhook_reconciler import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhooks/gateway", response_model=Dict[str, Any])
async def handle_gateway_webhook(
    request: Request,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """
    Handle payment gateway webhook events.

    200 on success, duplicate delivery or unresolved ownership (retrying will
    not help); 400 on a bad signature; 500 on processing errors so the gateway
    retries.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature", "")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing webhook signature"
        )

    try:
        gateway_client.construct_event(body, signature)
    except stripe.SignatureVerificationError:
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed webhook payload"
        )

    # The verified payload is re-read as plain JSON so handlers see dicts
    event = json.loads(body)

    try:
        return await WebhookReconciler(db).process_event(event)
    except UnresolvedWebhookEventError as e:
        return {"status": "unresolved", "event_id": e.event_id, "reason": e.reason}
    except Exception as e:
        logger.error(f"Error processing webhook {event.get('id')}: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )
