"""
Tenant lifecycle webhooks.

Internal endpoints called by the billing/tenant side carry X-Internal-Token.
The Stripe endpoint verifies the Stripe-Signature header and maps
subscription events onto the same lifecycle events.
"""
import json
import logging

import stripe
from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from scraper.api.dependencies import get_lifecycle_controller
from scraper.core.api_version import create_versioned_router
from scraper.core.config import get_settings
from scraper.core.security import verify_internal_token
from scraper.db.database import get_db
from scraper.integrations.constants import TargetType, parse_target_type
from scraper.services.subscription_lifecycle import (
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionLifecycleController,
    SubscriptionUpdated,
    TargetAdded,
    TargetRemoved,
    lifecycle_event_from_stripe,
)

logger = logging.getLogger(__name__)

router = create_versioned_router(
    prefix="/lifecycle",
    tags=["lifecycle"],
    dependencies=[Depends(verify_internal_token)],
)
stripe_router = create_versioned_router(prefix="/webhooks/stripe", tags=["lifecycle"], unversioned=True)


class TenantEventRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, description="Tenant identifier")


class TargetEventRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, description="Tenant identifier")
    target_type: TargetType = Field(..., description="Review source (google, facebook, tripadvisor, booking)")
    external_identifier: str = Field(..., min_length=1, description="Place id or profile URL")

    @field_validator("target_type", mode="before")
    @classmethod
    def _parse_target_type(cls, value):
        return parse_target_type(value)


@router.post("/subscription-created")
def subscription_created(
    request: TenantEventRequest,
    db: Session = Depends(get_db),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    return controller.dispatch(db, SubscriptionCreated(tenant_id=request.tenant_id)).to_dict()


@router.post("/subscription-updated")
def subscription_updated(
    request: TenantEventRequest,
    db: Session = Depends(get_db),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    return controller.dispatch(db, SubscriptionUpdated(tenant_id=request.tenant_id)).to_dict()


@router.post("/subscription-cancelled")
def subscription_cancelled(
    request: TenantEventRequest,
    db: Session = Depends(get_db),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    return controller.dispatch(db, SubscriptionCanceled(tenant_id=request.tenant_id)).to_dict()


@router.post("/target-added")
def target_added(
    request: TargetEventRequest,
    db: Session = Depends(get_db),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    event = TargetAdded(
        tenant_id=request.tenant_id,
        target_type=request.target_type,
        external_identifier=request.external_identifier,
    )
    return controller.dispatch(db, event).to_dict()


@router.post("/target-removed")
def target_removed(
    request: TargetEventRequest,
    db: Session = Depends(get_db),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    event = TargetRemoved(
        tenant_id=request.tenant_id,
        target_type=request.target_type,
        external_identifier=request.external_identifier,
    )
    return controller.dispatch(db, event).to_dict()


@stripe_router.post("")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    controller: SubscriptionLifecycleController = Depends(get_lifecycle_controller),
):
    """Verify and dispatch customer.subscription.* events."""
    webhook_secret = get_settings().stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured, rejecting Stripe webhook")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server configuration error")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, webhook_secret)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Rejected Stripe webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    stripe_event = json.loads(payload)
    event = lifecycle_event_from_stripe(db, stripe_event)
    if event is None:
        return {"received": True, "handled": False}

    report = controller.dispatch(db, event)
    return {"received": True, "handled": True, "report": report.to_dict()}
