"""
gateway.py

Recurring Payfast gateway for the donation host:
1) assigns the synthetic profile id at signup
2) cancels subscriptions at Payfast through PayfastClient
3) rejects donation forms that pick a billing period Payfast cannot run

The host calls these methods directly (GatewayCancellationHandler),
there is no event bus in between.

Typical use (inside FastAPI):
    gateway = RecurringPayfastGateway.from_env()
    gateway.cancel(subscription_id, SubscriptionRef.from_api_dict(payload))
    gateway.validate_recurring_period(FormSubmission.from_request(form_id, fields))
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Union
import logging
import os

from .main import (
    PAYFAST_GATEWAY_ID,
    CancelResult,
    PayfastClient,
    RecurringPeriodError,
    SubscriptionRef,
    _coerce_bool,
    _maybe_strip,
)


DISALLOWED_PERIODS: FrozenSet[str] = frozenset({"day", "week"})
DONATION_FORM_POST_TYPE = "give_forms"
REVISION_POST_TYPE = "revision"
PROFILE_ID_PREFIX = "payfast-"
RECURRING_PERIOD_MESSAGE = (
    "Payfast Only allows for Monthly and Yearly recurring donations. Please revise your selection."
)


# --------------------------------------------------------------------------------------
# Form submission (raw admin fields -> typed)
# --------------------------------------------------------------------------------------
@dataclass(frozen=True)
class FormSubmission:
    """
    A donation form save as seen by the gateway.

    recurring_option: "no" | "yes_donor" | "yes_admin"
    price_option:     "set" | "multi"
    period:           single-level period ("day", "week", "month", "year", ...)
    level_periods:    one period per donation level (multi-level forms)
    """
    form_id: int
    recurring_option: str = "no"
    price_option: str = ""
    period: Optional[str] = None
    level_periods: List[Optional[str]] = field(default_factory=list)
    post_type: Optional[str] = DONATION_FORM_POST_TYPE
    is_autosave: bool = False
    is_ajax: bool = False
    is_bulk_edit: bool = False
    can_edit: bool = True

    @property
    def is_multi_admin(self) -> bool:
        return self.recurring_option == "yes_admin" and self.price_option == "multi"

    @staticmethod
    def from_request(
        form_id: int,
        fields: Dict[str, Any],
        *,
        post_type: Optional[str] = DONATION_FORM_POST_TYPE,
        is_autosave: bool = False,
        is_ajax: bool = False,
        can_edit: bool = True,
    ) -> "FormSubmission":
        """Reads the `_give_*` fields posted by the form editor."""
        levels = fields.get("_give_donation_levels") or []
        if isinstance(levels, dict):
            levels = list(levels.values())
        level_periods = [
            _maybe_strip(level.get("_give_period")) if isinstance(level, dict) else None
            for level in levels
        ]
        return FormSubmission(
            form_id=int(form_id),
            recurring_option=_maybe_strip(fields.get("_give_recurring")) or "no",
            price_option=_maybe_strip(fields.get("_give_price_option")) or "",
            period=_maybe_strip(fields.get("_give_period")),
            level_periods=level_periods,
            post_type=post_type,
            is_autosave=is_autosave,
            is_ajax=is_ajax,
            is_bulk_edit="bulk_edit" in fields,
            can_edit=can_edit,
        )


# --------------------------------------------------------------------------------------
# Handler interface
# --------------------------------------------------------------------------------------
class GatewayCancellationHandler:
    """What the host needs from a gateway to cancel a subscription."""

    id: str = ""

    def can_cancel(self, subscription: SubscriptionRef) -> bool:
        raise NotImplementedError

    def cancel_subscription(self, subscription_id: Union[int, str], subscription: SubscriptionRef) -> CancelResult:
        raise NotImplementedError

    def cancel(self, subscription_id: Union[int, str], subscription: SubscriptionRef) -> bool:
        return self.cancel_subscription(subscription_id, subscription).cancelled


# --------------------------------------------------------------------------------------
# Gateway
# --------------------------------------------------------------------------------------
class RecurringPayfastGateway(GatewayCancellationHandler):
    id = PAYFAST_GATEWAY_ID
    # subscriptions are created pending, the donor completes payment on Payfast
    offsite = True

    def __init__(
        self,
        client: PayfastClient,
        *,
        active: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.active = active
        self.log = logger or logging.getLogger("payfast_gateway")

    @classmethod
    def from_env(cls, *, logger: Optional[logging.Logger] = None) -> "RecurringPayfastGateway":
        """
        Optional:
          - PAYFAST_GATEWAY_ACTIVE (default true)
        Plus everything PayfastClient.from_env() reads.
        """
        active = _coerce_bool(os.getenv("PAYFAST_GATEWAY_ACTIVE", "true"))
        return cls(PayfastClient.from_env(logger=logger), active=active is not False, logger=logger)

    # ----------------------------- Signup -----------------------------
    @staticmethod
    def create_payment_profile(purchase_key: str) -> str:
        return PROFILE_ID_PREFIX + purchase_key

    # ----------------------------- Cancellation -----------------------------
    def can_cancel(self, subscription: SubscriptionRef) -> bool:
        return subscription.status == "active"

    def cancel_subscription(self, subscription_id: Union[int, str], subscription: SubscriptionRef) -> CancelResult:
        result = self.client.cancel_subscription(subscription)
        self.log.info(
            "subscription %s (%s): %s",
            subscription_id,
            subscription.profile_id,
            result.status,
        )
        return result

    # ----------------------------- Form validation -----------------------------
    def _should_validate(self, submission: FormSubmission) -> bool:
        if submission.recurring_option == "no":
            return False
        if submission.is_autosave or submission.is_ajax or submission.is_bulk_edit:
            return False
        if submission.post_type == REVISION_POST_TYPE:
            return False
        if submission.post_type != DONATION_FORM_POST_TYPE:
            return False
        if not submission.can_edit:
            return False
        return self.active

    def validate_recurring_period(self, submission: FormSubmission) -> int:
        """
        Raises RecurringPeriodError (HTTP 400) when a daily or weekly period is
        selected. Returns the form id otherwise, like the host's save hook.
        """
        if not self._should_validate(submission):
            return submission.form_id

        if submission.is_multi_admin:
            periods = submission.level_periods
        else:
            periods = [submission.period]

        for period in periods:
            if period in DISALLOWED_PERIODS:
                self.log.warning("form %s rejected: period=%s", submission.form_id, period)
                raise RecurringPeriodError(RECURRING_PERIOD_MESSAGE, status_code=400)
        return submission.form_id
