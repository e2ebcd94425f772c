"""
Pydantic schemas for inbound subscription change pushes.

The realtime/webhook layer delivers rows either as {previous, current} or
in the database-change shape {old, new}; both camelCase and snake_case
column names are accepted.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from .models import Subscription, SubscriptionChangeEvent, SubscriptionStatus, Tier


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionPayload(BaseModel):
    """One subscription row as pushed by the provider."""

    user_id: str = Field(
        ...,
        validation_alias=AliasChoices("userId", "user_id"),
        description="Owner of the subscription",
    )
    tier: Tier = Field(Tier.FREE, description="Purchased tier: Free, Premium or Elite")
    status: SubscriptionStatus = Field(..., description="Billing status as reported by the processor")
    current_period_end: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("currentPeriodEnd", "current_period_end"),
        description="End of the paid period",
    )
    trial_end: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("trialEnd", "trial_end"),
        description="End of the trial, when trialing",
    )
    cancel_at_period_end: bool = Field(
        False,
        validation_alias=AliasChoices("cancelAtPeriodEnd", "cancel_at_period_end"),
        description="Whether cancellation takes effect at period end",
    )

    def to_subscription(self) -> Subscription:
        return Subscription(
            user_id=self.user_id,
            tier=self.tier,
            status=self.status,
            current_period_end=_aware(self.current_period_end),
            trial_end=_aware(self.trial_end),
            cancel_at_period_end=self.cancel_at_period_end,
        )


class SubscriptionChangePayload(BaseModel):
    """A subscription change push: previous row (if any) and current row."""

    event_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("eventId", "event_id", "id"),
        description="Provider-assigned id used for de-duplication",
    )
    previous: Optional[SubscriptionPayload] = Field(
        None,
        validation_alias=AliasChoices("previous", "old"),
        description="Subscription before the change",
    )
    current: SubscriptionPayload = Field(
        ...,
        validation_alias=AliasChoices("current", "new"),
        description="Subscription after the change",
    )

    @field_validator("previous", mode="before")
    @classmethod
    def _empty_previous_is_none(cls, value: Any) -> Any:
        # inserts arrive with an empty "old" row
        if isinstance(value, dict) and not value:
            return None
        return value

    def to_event(self) -> SubscriptionChangeEvent:
        return SubscriptionChangeEvent(
            current=self.current.to_subscription(),
            previous=self.previous.to_subscription() if self.previous else None,
            event_id=self.event_id,
        )


def parse_change_event(raw: Any) -> SubscriptionChangeEvent:
    """Coerce a push into a SubscriptionChangeEvent. Raises pydantic.ValidationError."""
    if isinstance(raw, SubscriptionChangeEvent):
        return raw
    return SubscriptionChangePayload.model_validate(raw).to_event()
