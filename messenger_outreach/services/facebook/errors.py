"""Classification of Facebook Graph API errors."""

from dataclasses import dataclass
from typing import Any

from messenger_outreach.core.exceptions import GraphAPIError
from messenger_outreach.models import DeliveryErrorType

RATE_LIMIT_CODES = frozenset({4, 17, 613})
RATE_LIMIT_SUBCODES = frozenset({2446079})
TEMPORARY_CODES = frozenset({1, 2})
TOKEN_EXPIRED_CODE = 190
PERMISSION_CODES = frozenset({10, 200, 368})
INVALID_PARAMETER_CODE = 100
INVALID_RECIPIENT_SUBCODES = frozenset({2018001})
USER_UNAVAILABLE_CODE = 551
POLICY_WINDOW_SUBCODE = 2018278

BASE_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 32.0


@dataclass
class GraphErrorInfo:
    """Parsed ``error`` object from a Graph API response."""

    message: str
    code: int | None = None
    subcode: int | None = None
    type: str | None = None
    fbtrace_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "GraphErrorInfo":
        error = (payload or {}).get("error") or {}
        return cls(
            message=error.get("message") or "Facebook API request failed",
            code=error.get("code"),
            subcode=error.get("error_subcode"),
            type=error.get("type"),
            fbtrace_id=error.get("fbtrace_id"),
        )


def is_rate_limit_error(code: int | None, subcode: int | None = None) -> bool:
    return code in RATE_LIMIT_CODES or subcode in RATE_LIMIT_SUBCODES


def is_temporary_error(code: int | None) -> bool:
    return code in TEMPORARY_CODES


def is_policy_window_error(code: int | None, subcode: int | None) -> bool:
    """The 24-hour messaging window rejected the message tag."""
    return code == 10 and subcode == POLICY_WINDOW_SUBCODE


def classify(code: int | None, subcode: int | None = None) -> DeliveryErrorType:
    """Map a Graph error code/subcode to a delivery error type."""
    if is_rate_limit_error(code, subcode):
        return DeliveryErrorType.RATE_LIMIT
    if code == TOKEN_EXPIRED_CODE:
        return DeliveryErrorType.ACCESS_TOKEN
    if code in PERMISSION_CODES:
        return DeliveryErrorType.PERMISSION
    if code == USER_UNAVAILABLE_CODE or (
        code == INVALID_PARAMETER_CODE and subcode in INVALID_RECIPIENT_SUBCODES
    ):
        return DeliveryErrorType.INVALID_RECIPIENT
    if is_temporary_error(code):
        return DeliveryErrorType.NETWORK
    return DeliveryErrorType.OTHER


def is_retryable(code: int | None, subcode: int | None = None) -> bool:
    return is_rate_limit_error(code, subcode) or is_temporary_error(code)


def user_friendly_message(code: int | None, message: str | None = None) -> str:
    """Message suitable for showing to a page admin."""
    if code in RATE_LIMIT_CODES:
        return "Facebook API rate limit reached. Please try again in a few minutes."
    if code == TOKEN_EXPIRED_CODE:
        return "Your Facebook token has expired. Please reconnect your Facebook account."
    if code == INVALID_PARAMETER_CODE:
        return "Invalid Facebook request. Please try again or contact support."
    if code == 200:
        return (
            "Insufficient permissions. Please reconnect your Facebook account "
            "with the required permissions."
        )
    if code == 368:
        return (
            "You have been temporarily blocked from accessing this Facebook feature. "
            "Please try again later."
        )
    return message or "An error occurred while communicating with Facebook. Please try again."


def delivery_error_message(info: GraphErrorInfo) -> str:
    """Error text stored on a failed delivery."""
    if info.code == TOKEN_EXPIRED_CODE:
        return (
            "TOKEN_EXPIRED: Your Facebook session has expired. "
            "Please logout and login again to refresh your access token."
        )
    if is_policy_window_error(info.code, info.subcode):
        return (
            "24-HOUR_POLICY: Message tag rejected. Make sure your Facebook app "
            "has permission to use the selected message tag."
        )
    return info.message


def retry_delay(
    attempt: int,
    retry_after: str | float | None = None,
    base_delay: float = BASE_RETRY_DELAY,
    max_delay: float = MAX_RETRY_DELAY,
) -> float:
    """Seconds to wait before retry ``attempt`` (0-based).

    A numeric Retry-After value wins over exponential backoff; both are capped.
    """
    if retry_after is not None:
        try:
            return min(float(retry_after), max_delay)
        except (TypeError, ValueError):
            pass
    return min(base_delay * (2**attempt), max_delay)


def to_exception(
    payload: dict[str, Any] | None,
    status_code: int | None = None,
    retry_after: str | None = None,
) -> GraphAPIError:
    """Build a GraphAPIError from an error response body."""
    info = GraphErrorInfo.from_payload(payload)
    retryable = is_retryable(info.code, info.subcode) or (status_code or 0) >= 500
    retry_seconds: float | None = None
    if retry_after is not None:
        try:
            retry_seconds = float(retry_after)
        except ValueError:
            retry_seconds = None
    return GraphAPIError(
        delivery_error_message(info),
        fb_code=info.code,
        fb_subcode=info.subcode,
        error_type=classify(info.code, info.subcode).value,
        retryable=retryable,
        retry_after=retry_seconds,
    )
