from __future__ import annotations
from fastapi import FastAPI, HTTPException, Header, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Union
from functools import lru_cache
import logging
import os

from payfast_sdk.gateway import FormSubmission, GatewayCancellationHandler, RecurringPayfastGateway
from payfast_sdk.main import PAYFAST_GATEWAY_ID, SubscriptionRef, ValidationError

API_TITLE = "Payfast Recurring Gateway API"
API_VERSION = "1.0.0"

logger = logging.getLogger("payfast_api")

app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    description=(
        "Entry points the donation host calls when a Payfast subscription is cancelled "
        "or a donation form is saved.\n"
        "Authentication: header `X-API-Key` when PAYFAST_WRAPPER_API_KEY is set."
    ),
)


# ---- Auth dependency ---------------------------------------------------------
def require_api_key(x_api_key: Optional[str] = Header(None)):
    expected = os.getenv("PAYFAST_WRAPPER_API_KEY")
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return True


# ---- Gateway registry --------------------------------------------------------
@lru_cache(maxsize=1)
def get_gateways() -> Dict[str, GatewayCancellationHandler]:
    gateway = RecurringPayfastGateway.from_env()
    return {gateway.id: gateway}


# ---- Pydantic schemas --------------------------------------------------------

class SubscriptionPayload(BaseModel):
    """Subscription record carried by the cancel events."""
    profile_id: str = Field(..., description="Payfast subscription token, e.g. 'payfast-abc123'.")
    gateway: Optional[str] = Field(None, description="Gateway tag of the subscription. Default: None (payfast).")
    status: Optional[str] = Field(None, description="Host status, e.g. 'active'. Default: None.")


class CancelResponse(BaseModel):
    subscription_id: Union[int, str]
    status: str
    cancelled: bool
    code: Optional[str] = None
    detail: Optional[str] = None


class DonationLevel(BaseModel):
    period: Optional[str] = Field(None, alias="_give_period")

    model_config = ConfigDict(populate_by_name=True)


class FormSavePayload(BaseModel):
    """Raw fields posted by the donation form editor."""
    recurring: str = Field("no", alias="_give_recurring")
    price_option: str = Field("", alias="_give_price_option")
    period: Optional[str] = Field(None, alias="_give_period")
    levels: List[DonationLevel] = Field(default_factory=list, alias="_give_donation_levels")
    post_type: Optional[str] = "give_forms"
    autosave: bool = False
    ajax: bool = False
    bulk_edit: bool = False
    can_edit: bool = True

    model_config = ConfigDict(populate_by_name=True)

    def to_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "_give_recurring": self.recurring,
            "_give_price_option": self.price_option,
            "_give_period": self.period,
            "_give_donation_levels": [{"_give_period": level.period} for level in self.levels],
        }
        if self.bulk_edit:
            fields["bulk_edit"] = "1"
        return fields


class FormValidationResponse(BaseModel):
    form_id: int
    valid: bool


# ---- Endpoints ---------------------------------------------------------------
@app.get("/health")
def health():
    return {"status": "ok", "version": API_VERSION}


@app.post("/subscriptions/{subscription_id}/cancel", response_model=CancelResponse, tags=["subscriptions"])
def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionPayload,
    auth: bool = Depends(require_api_key),
    gateways: Dict[str, GatewayCancellationHandler] = Depends(get_gateways),
):
    subscription = SubscriptionRef.from_api_dict(payload.model_dump())
    # unknown gateways still go to payfast, which reports them as skipped
    handler = gateways.get(subscription.gateway or PAYFAST_GATEWAY_ID) or gateways.get(PAYFAST_GATEWAY_ID)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"No gateway registered for '{subscription.gateway}'")

    result = handler.cancel_subscription(subscription_id, subscription)
    return CancelResponse(subscription_id=subscription_id, **result.to_dict())


@app.post("/forms/{form_id}/validate-recurring-period", response_model=FormValidationResponse, tags=["forms"])
def validate_recurring_period(
    form_id: int,
    payload: FormSavePayload,
    auth: bool = Depends(require_api_key),
    gateways: Dict[str, GatewayCancellationHandler] = Depends(get_gateways),
):
    gateway = gateways.get(PAYFAST_GATEWAY_ID)
    if not isinstance(gateway, RecurringPayfastGateway):
        return FormValidationResponse(form_id=form_id, valid=True)

    submission = FormSubmission.from_request(
        form_id,
        payload.to_fields(),
        post_type=payload.post_type,
        is_autosave=payload.autosave,
        is_ajax=payload.ajax,
        can_edit=payload.can_edit,
    )
    try:
        gateway.validate_recurring_period(submission)
    except ValidationError as exc:
        logger.warning("Validation failed: %s", exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return FormValidationResponse(form_id=form_id, valid=True)
