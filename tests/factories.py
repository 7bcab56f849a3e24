"""Shared test doubles and constants."""
from __future__ import annotations

import threading
from datetime import datetime, timezone

from alo.services.push_transport import PushTarget
from alo.utils.exceptions import (
    EngineExecutionFailure,
    PermanentDeliveryFailure,
    TransientDeliveryError,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedTransport:
    """Push transport answering from a per-endpoint script.

    Each script entry is one of ``"ok"``, ``"transient"``, ``"gone"`` or
    ``"rejected"``; once a script runs out the last entry repeats. Endpoints
    without a script always succeed.
    """

    def __init__(self, scripts: dict[str, list[str]] | None = None, *, configured: bool = True):
        self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
        self.configured = configured
        self.calls: list[tuple[int, str]] = []
        self._lock = threading.Lock()

    def check_configuration(self) -> None:
        if not self.configured:
            raise EngineExecutionFailure("VAPID private key is not configured")

    def send(self, target: PushTarget, payload: str) -> None:
        with self._lock:
            self.calls.append((target.subscriber_id, payload))
            script = self.scripts.get(target.endpoint)
            if not script:
                step = "ok"
            elif len(script) > 1:
                step = script.pop(0)
            else:
                step = script[0]

        if step == "transient":
            raise TransientDeliveryError("Push service unavailable (503)", {"status_code": 503})
        if step == "gone":
            raise PermanentDeliveryFailure(
                "Subscription gone (410)", endpoint_gone=True, details={"status_code": 410}
            )
        if step == "rejected":
            raise PermanentDeliveryFailure(
                "Push service rejected message (400)", details={"status_code": 400}
            )

    def calls_for(self, subscriber_id: int) -> int:
        return sum(1 for called_id, _ in self.calls if called_id == subscriber_id)
