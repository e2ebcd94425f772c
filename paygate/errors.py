"""
Paygate error hierarchy.

Provides:
- PaygateError: base for all engine failures
- SubscriptionLookupError: subscription fetch failed (fail-closed)
- UsageLookupError: usage count query failed (fail-closed)
- ConfigurationError: plans.json or a trigger definition is malformed

None of these escape a public engine operation; they are converted into
degraded results at the seam where they are caught.
"""

from typing import Optional


class PaygateError(Exception):
    """Base exception for entitlement and paywall failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SubscriptionLookupError(PaygateError):
    """
    Raised when the subscription provider cannot be reached.

    Callers treat the user as Free and deny access.
    """

    def __init__(
        self,
        user_id: str,
        detail: str,
        cause: Optional[Exception] = None,
    ):
        self.user_id = user_id
        self.detail = detail
        self.cause = cause
        self.error_code = "SUBSCRIPTION_LOOKUP_FAILED"
        super().__init__(f"Subscription lookup failed for {user_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "user_id": self.user_id,
        }


class UsageLookupError(PaygateError):
    """Raised when usage events cannot be counted for the current window."""

    def __init__(self, user_id: str, counter_type: str, detail: str):
        self.user_id = user_id
        self.counter_type = counter_type
        self.detail = detail
        self.error_code = "USAGE_LOOKUP_FAILED"
        super().__init__(f"Usage lookup failed for {user_id}/{counter_type}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "counter_type": self.counter_type,
            "message": self.detail,
            "user_id": self.user_id,
        }


class ConfigurationError(PaygateError):
    """Raised when plan or trigger configuration fails validation."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.error_code = "CONFIGURATION_INVALID"
        super().__init__(message)

    def to_dict(self) -> dict:
        d: dict = {"error": self.error_code, "message": str(self)}
        if self.field is not None:
            d["field"] = self.field
        return d
