"""Web Push transport used by the delivery engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import requests
from loguru import logger
from pywebpush import WebPushException, webpush
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from alo.config import settings
from alo.utils.exceptions import (
    EngineExecutionFailure,
    PermanentDeliveryFailure,
    TransientDeliveryError,
)

GONE_STATUS_CODES = frozenset({404, 410})
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class PushTarget:
    """Endpoint credentials of one recipient, detached from the ORM session."""

    subscriber_id: int
    endpoint: str
    p256dh: str
    auth: str

    def subscription_info(self) -> dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class PushTransport(Protocol):
    """Sends one payload to one recipient.

    ``send`` returns on success and raises
    :class:`~alo.utils.exceptions.TransientDeliveryError` or
    :class:`~alo.utils.exceptions.PermanentDeliveryFailure` otherwise.
    Implementations are called from several worker threads at once.
    """

    def check_configuration(self) -> None:  # pragma: no cover - interface definition
        """Raise ``EngineExecutionFailure`` when sending cannot work at all."""

    def send(self, target: PushTarget, payload: str) -> None:  # pragma: no cover - interface definition
        """Deliver ``payload`` to ``target``."""


def classify_status(status_code: int | None, reason: str) -> Exception:
    """Map a push service HTTP status to the delivery error it represents."""

    if status_code in GONE_STATUS_CODES:
        return PermanentDeliveryFailure(
            f"Subscription gone ({status_code})",
            endpoint_gone=True,
            details={"status_code": status_code},
        )
    if status_code is None or status_code in RETRYABLE_STATUS_CODES:
        return TransientDeliveryError(
            f"Push service unavailable ({status_code}): {reason}",
            {"status_code": status_code},
        )
    return PermanentDeliveryFailure(
        f"Push service rejected message ({status_code}): {reason}",
        details={"status_code": status_code},
    )


def _log_connection_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Push connection failed, retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


class WebPushTransport:
    """VAPID-signed Web Push delivery through :mod:`pywebpush`."""

    def __init__(
        self,
        *,
        vapid_private_key: str | None = None,
        vapid_subject: str | None = None,
        ttl_seconds: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.vapid_private_key = vapid_private_key or settings.VAPID_PRIVATE_KEY
        self.vapid_subject = vapid_subject or settings.VAPID_SUBJECT
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.PUSH_TTL_SECONDS
        self.timeout_seconds = timeout_seconds or settings.PUSH_REQUEST_TIMEOUT_SECONDS

    def check_configuration(self) -> None:
        if not self.vapid_private_key:
            raise EngineExecutionFailure("VAPID private key is not configured")
        if not self.vapid_subject:
            raise EngineExecutionFailure("VAPID subject is not configured")

    def send(self, target: PushTarget, payload: str) -> None:
        try:
            self._post(target, payload)
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            status_code = getattr(response, "status_code", None)
            raise classify_status(status_code, str(exc)) from exc
        except requests.RequestException as exc:
            raise TransientDeliveryError(
                f"Push request failed: {exc}", {"error": type(exc).__name__}
            ) from exc

    @retry(
        stop=stop_after_attempt(settings.PUSH_CONNECT_RETRIES),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(requests.ConnectionError),
        before_sleep=_log_connection_retry,
        reraise=True,
    )
    def _post(self, target: PushTarget, payload: str) -> None:
        # pywebpush adds "aud" and "exp" to the claims dict it is given.
        claims = {"sub": self.vapid_subject}
        webpush(
            subscription_info=target.subscription_info(),
            data=payload,
            vapid_private_key=self.vapid_private_key,
            vapid_claims=claims,
            ttl=self.ttl_seconds,
            timeout=self.timeout_seconds,
        )


__all__ = [
    "GONE_STATUS_CODES",
    "PushTarget",
    "PushTransport",
    "RETRYABLE_STATUS_CODES",
    "WebPushTransport",
    "classify_status",
]
