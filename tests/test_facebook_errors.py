"""Tests for Graph API error classification."""

import pytest

from messenger_outreach.models import DeliveryErrorType
from messenger_outreach.services.facebook import errors


@pytest.mark.parametrize(
    ("code", "subcode", "expected"),
    [
        (4, None, DeliveryErrorType.RATE_LIMIT),
        (613, None, DeliveryErrorType.RATE_LIMIT),
        (100, 2446079, DeliveryErrorType.RATE_LIMIT),
        (190, None, DeliveryErrorType.ACCESS_TOKEN),
        (10, None, DeliveryErrorType.PERMISSION),
        (200, None, DeliveryErrorType.PERMISSION),
        (551, None, DeliveryErrorType.INVALID_RECIPIENT),
        (100, 2018001, DeliveryErrorType.INVALID_RECIPIENT),
        (2, None, DeliveryErrorType.NETWORK),
        (100, None, DeliveryErrorType.OTHER),
        (None, None, DeliveryErrorType.OTHER),
    ],
)
def test_classify(code, subcode, expected):
    assert errors.classify(code, subcode) == expected


def test_permanent_error_types():
    assert DeliveryErrorType.INVALID_RECIPIENT.is_permanent
    assert DeliveryErrorType.PERMISSION.is_permanent
    assert not DeliveryErrorType.RATE_LIMIT.is_permanent
    assert not DeliveryErrorType.ACCESS_TOKEN.is_permanent


def test_retry_delay_backoff_and_cap():
    assert errors.retry_delay(0) == 1.0
    assert errors.retry_delay(3) == 8.0
    assert errors.retry_delay(10) == errors.MAX_RETRY_DELAY
    assert errors.retry_delay(0, retry_after="5") == 5.0
    assert errors.retry_delay(2, retry_after="soon") == 4.0


def test_to_exception_token_expired():
    exc = errors.to_exception({"error": {"message": "Session expired", "code": 190}}, status_code=400)

    assert exc.error_type == "access_token"
    assert exc.retryable is False
    assert exc.message.startswith("TOKEN_EXPIRED")


def test_to_exception_server_error_is_retryable():
    exc = errors.to_exception({}, status_code=503, retry_after="2")

    assert exc.retryable is True
    assert exc.retry_after == 2.0
    assert exc.message == "Facebook API request failed"


def test_policy_window_message():
    info = errors.GraphErrorInfo(message="raw", code=10, subcode=2018278)
    assert errors.delivery_error_message(info).startswith("24-HOUR_POLICY")


def test_user_friendly_message():
    assert "rate limit" in errors.user_friendly_message(17)
    assert errors.user_friendly_message(999, "Something odd") == "Something odd"
