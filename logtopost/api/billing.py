"""
Billing API routes.

- GET  /api/billing/plans: Plan descriptors
- GET  /api/billing/subscription: Current status, plan and usage
- POST /api/billing/checkout-session: Create checkout session
- POST /api/billing/end-trial-early: Upgrade from trial now
- POST /api/billing/portal-session: Create portal session
- POST /api/billing/cancel-subscription: Cancel immediately
- POST /api/billing/restart-subscription: Restart a cancelled subscription
- POST /api/billing/webhook: Handle Stripe webhooks (raw body, signed)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from logtopost.core.auth import require_user_id
from logtopost.core.errors import BillingDisabledError, SignatureInvalidError
from logtopost.core.logging import get_request_id
from logtopost.features.billing.provider import BillingWebhookError
from logtopost.features.billing.service import BillingService, list_plans


logger = logging.getLogger("logtopost")

router = APIRouter(prefix="/api/billing", tags=["billing"])


class PlanRequest(BaseModel):
    """Only ``plan`` is read; any other client-supplied field is ignored."""
    plan: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


def get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.")
    return service


@router.get("/plans")
def get_plans(request: Request):
    return list_plans(request.app.state.entitlement_config)


@router.get("/subscription")
def get_subscription(request: Request, user_id: str = Depends(require_user_id)):
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        entitlement = request.app.state.entitlement_store.require(user_id)
        return {
            "status": entitlement.status.value,
            "plan": entitlement.plan.value,
            "has_access": entitlement.has_access,
            "usage": request.app.state.usage_ledger.usage_snapshot(entitlement),
        }
    return service.get_subscription(user_id)


@router.post("/checkout-session", response_model=UrlResponse)
def create_checkout_session(
    body: PlanRequest,
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
):
    result = service.start_checkout(user_id, body.plan)
    return {"url": result.url}


@router.post("/end-trial-early")
def end_trial_early(
    body: PlanRequest,
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
):
    result = service.upgrade_now(user_id, body.plan)
    return {"url": result.url, "status": result.status}


@router.post("/portal-session", response_model=UrlResponse)
def create_portal_session(
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
):
    return {"url": service.open_portal(user_id)}


@router.post("/cancel-subscription")
def cancel_subscription(
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
):
    cancelled_at = service.cancel_subscription(user_id)
    return {"success": True, "cancelled_at": cancelled_at.isoformat()}


@router.post("/restart-subscription")
def restart_subscription(
    body: PlanRequest,
    user_id: str = Depends(require_user_id),
    service: BillingService = Depends(get_billing_service),
):
    return service.restart_subscription(user_id, body.plan)


@router.post("/webhook")
async def handle_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload
        500: Transient failure (the provider redelivers)
        503: Billing disabled
    """
    processor = getattr(request.app.state, "webhook_processor", None)
    provider = getattr(request.app.state, "billing_provider", None)
    if processor is None or provider is None:
        raise BillingDisabledError("Stripe is not configured.")

    # Raw body, required for signature verification
    body = await request.body()
    try:
        event = provider.construct_event(body, stripe_signature)
    except BillingWebhookError as e:
        logger.warning("[webhook] signature verification failed", extra={"error_code": "signature_invalid"})
        raise SignatureInvalidError(str(e))

    try:
        result = await run_in_threadpool(processor.process, event)
    except Exception as e:
        # Already recorded as failed by the processor; 5xx makes the provider redeliver
        return JSONResponse(
            status_code=500,
            content={
                "received": False,
                "error": {
                    "code": getattr(e, "code", "internal_error"),
                    "message": "Webhook processing failed",
                    "request_id": get_request_id(),
                },
            },
        )
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome.value}
