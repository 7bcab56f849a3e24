"""Tests for the Web Push transport."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import requests
from pywebpush import WebPushException

from alo.services.push_transport import PushTarget, WebPushTransport, classify_status
from alo.utils.exceptions import (
    EngineExecutionFailure,
    PermanentDeliveryFailure,
    TransientDeliveryError,
)

TARGET = PushTarget(
    subscriber_id=7,
    endpoint="https://fcm.googleapis.com/fcm/send/abc",
    p256dh="p256dh-key",
    auth="auth-secret",
)


@pytest.fixture()
def transport() -> WebPushTransport:
    return WebPushTransport(vapid_private_key="private-key", vapid_subject="mailto:ops@example.com")


@pytest.mark.parametrize("status_code", [404, 410])
def test_gone_statuses_are_permanent_and_flag_endpoint(status_code) -> None:
    error = classify_status(status_code, "Gone")

    assert isinstance(error, PermanentDeliveryFailure)
    assert error.endpoint_gone is True


@pytest.mark.parametrize("status_code", [None, 408, 429, 500, 503])
def test_retryable_statuses_are_transient(status_code) -> None:
    assert isinstance(classify_status(status_code, "busy"), TransientDeliveryError)


def test_other_client_errors_are_permanent() -> None:
    error = classify_status(400, "Bad payload")

    assert isinstance(error, PermanentDeliveryFailure)
    assert error.endpoint_gone is False


def test_missing_vapid_key_is_a_configuration_error() -> None:
    with pytest.raises(EngineExecutionFailure):
        WebPushTransport(vapid_private_key="", vapid_subject="mailto:ops@example.com").check_configuration()


def test_send_posts_signed_request(transport) -> None:
    with patch("alo.services.push_transport.webpush") as webpush:
        transport.send(TARGET, '{"title":"Hi"}')

    kwargs = webpush.call_args.kwargs
    assert kwargs["subscription_info"] == {
        "endpoint": TARGET.endpoint,
        "keys": {"p256dh": "p256dh-key", "auth": "auth-secret"},
    }
    assert kwargs["vapid_private_key"] == "private-key"
    assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}


def test_send_maps_push_service_rejection(transport) -> None:
    failure = WebPushException("Push failed: 410 Gone", response=SimpleNamespace(status_code=410))

    with patch("alo.services.push_transport.webpush", side_effect=failure):
        with pytest.raises(PermanentDeliveryFailure) as excinfo:
            transport.send(TARGET, "{}")

    assert excinfo.value.endpoint_gone is True


def test_send_retries_connection_errors_before_succeeding(transport) -> None:
    with patch(
        "alo.services.push_transport.webpush",
        side_effect=[requests.ConnectionError("reset"), None],
    ) as webpush:
        transport.send(TARGET, "{}")

    assert webpush.call_count == 2


def test_timeouts_surface_as_transient(transport) -> None:
    with patch("alo.services.push_transport.webpush", side_effect=requests.Timeout("slow")):
        with pytest.raises(TransientDeliveryError):
            transport.send(TARGET, "{}")
