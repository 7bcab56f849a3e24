"""Delivery engine: drain a queued campaign to its resolved audience."""
from __future__ import annotations

import json
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from alo.config import settings
from alo.core.segments import SegmentCatalog, default_catalog
from alo.db.models.campaign import BODY_MAX_LENGTH, TITLE_MAX_LENGTH, Campaign, CampaignStatus
from alo.db.models.delivery import DeliveryOutcome, DeliveryStatus
from alo.db.models.subscriber import Subscriber
from alo.services.audience import AudienceResolver
from alo.services.campaign_state import touch, transition
from alo.services.campaigns import campaign_filters
from alo.services.push_transport import PushTarget, PushTransport
from alo.utils.cache import cache_backend
from alo.utils.clock import Clock, as_utc, utcnow
from alo.utils.exceptions import (
    AloException,
    EngineExecutionFailure,
    InvalidSegmentFilters,
    PermanentDeliveryFailure,
    SchedulerRaceLost,
    TransientDeliveryError,
    UnknownDimension,
)

# Push services reject bodies above 4 KB once encrypted; leave room for padding.
MAX_PAYLOAD_BYTES = 3800

_OPEN_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.FAILED_TRANSIENT.value)
ABANDONED = "abandoned"


@dataclass
class DeliveryReport:
    """Summary of one engine run for a campaign."""

    campaign_id: int
    status: str
    audience_count: int = 0
    sent: int = 0
    failed: int = 0
    dispatched: int = 0
    already_done: int = 0
    deactivated: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before retry number ``attempt`` (1-based), doubling up to a cap."""

    if attempt < 1:
        return 0.0
    return min(max_seconds, base_seconds * 2 ** (attempt - 1))


def build_payload(campaign: Campaign) -> str:
    """Serialize the notification shown by the service worker.

    Raises :class:`EngineExecutionFailure` when the campaign cannot produce a
    valid notification; nothing has been dispatched at that point.
    """

    problems: list[str] = []
    title = (campaign.title or "").strip()
    body = (campaign.body or "").strip()
    if not title:
        problems.append("title is empty")
    elif len(title) > TITLE_MAX_LENGTH:
        problems.append(f"title exceeds {TITLE_MAX_LENGTH} characters")
    if not body:
        problems.append("body is empty")
    elif len(body) > BODY_MAX_LENGTH:
        problems.append(f"body exceeds {BODY_MAX_LENGTH} characters")
    for field in ("url", "image", "icon", "badge"):
        value = getattr(campaign, field)
        if value and not value.lower().startswith("https://"):
            problems.append(f"{field} must be an https:// URL")
    if problems:
        raise EngineExecutionFailure(
            "Campaign payload is invalid",
            {"campaign_id": campaign.id, "problems": problems},
        )

    payload = {
        "title": title,
        "body": body,
        "url": campaign.url,
        "image": campaign.image,
        "icon": campaign.icon,
        "badge": campaign.badge,
        "requireInteraction": bool(campaign.require_interaction),
        "renotify": bool(campaign.renotify),
        "silent": bool(campaign.silent),
        "tag": f"campaign-{campaign.id}",
        "data": {"campaign_id": campaign.id, "url": campaign.url},
    }
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    size = len(encoded.encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise EngineExecutionFailure(
            "Campaign payload is too large",
            {"campaign_id": campaign.id, "bytes": size, "limit": MAX_PAYLOAD_BYTES},
        )
    return encoded


class DeliveryEngine:
    """Take one campaign from ``queued`` to ``completed`` or ``failed``.

    Recipients are visited in keyset batches. Outbound requests run on a
    bounded thread pool; the session is only ever used from the calling
    thread. A recipient whose outcome is already ``sent`` or
    ``failed_permanent`` is never dispatched again, which makes re-running a
    campaign after a crash safe.
    """

    def __init__(
        self,
        db: Session,
        transport: PushTransport,
        *,
        resolver: AudienceResolver | None = None,
        catalog: SegmentCatalog = default_catalog,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        batch_size: int | None = None,
        max_workers: int | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        stale_after_seconds: int | None = None,
    ) -> None:
        self.db = db
        self.transport = transport
        self.catalog = catalog
        self.clock = clock
        self.sleep = sleep
        self.resolver = resolver or AudienceResolver(db, catalog=catalog, clock=clock)
        self.batch_size = batch_size or settings.DELIVERY_BATCH_SIZE
        self.max_workers = max_workers or settings.DELIVERY_MAX_WORKERS
        self.max_attempts = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
        self.backoff_base_seconds = (
            settings.DELIVERY_BACKOFF_BASE_SECONDS
            if backoff_base_seconds is None
            else backoff_base_seconds
        )
        self.backoff_max_seconds = (
            settings.DELIVERY_BACKOFF_MAX_SECONDS
            if backoff_max_seconds is None
            else backoff_max_seconds
        )
        self.stale_after = timedelta(
            seconds=stale_after_seconds or settings.DELIVERY_STALE_AFTER_SECONDS
        )
        self.claim_token: str | None = None
        self._last_beat: datetime | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self, campaign_id: int) -> DeliveryReport:
        if not self._claim(campaign_id):
            logger.info("Campaign not claimable, skipping", campaign_id=campaign_id)
            return DeliveryReport(campaign_id=campaign_id, status="skipped")

        campaign = self.db.get(Campaign, campaign_id)
        try:
            payload = build_payload(campaign)
            self.transport.check_configuration()
            audience = self.resolver.resolve(campaign_filters(campaign))
        except (EngineExecutionFailure, UnknownDimension, InvalidSegmentFilters) as exc:
            return self._fail(campaign_id, exc)

        report = DeliveryReport(campaign_id=campaign_id, status=CampaignStatus.SENDING.value)
        logger.info("Campaign delivery started", campaign_id=campaign_id, claim=self.claim_token)
        try:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix=f"campaign-{campaign_id}"
            ) as pool:
                for batch in audience.batches(self.batch_size):
                    self._deliver_batch(campaign_id, batch, payload, pool, report)
                self._drain_retries(campaign_id, payload, pool, report)
        except SchedulerRaceLost as exc:
            self.db.rollback()
            logger.warning(
                "Campaign taken over by another sender, stopping",
                campaign_id=campaign_id,
                dispatched=report.dispatched,
                error=exc.message,
            )
            report.status = ABANDONED
            return report
        return self._finalize(campaign_id, report)

    # ------------------------------------------------------------------
    # Claiming and campaign-level transitions
    # ------------------------------------------------------------------
    def _claim(self, campaign_id: int) -> bool:
        """Take ownership of the campaign under a fresh claim token."""

        now = self.clock()
        token = uuid.uuid4().hex
        claimed = transition(
            self.db,
            campaign_id,
            CampaignStatus.QUEUED,
            CampaignStatus.SENDING,
            now=now,
            started_at=now,
            heartbeat_at=now,
            claimed_by=token,
        )
        if not claimed:
            cutoff = now - self.stale_after
            claimed = touch(
                self.db,
                campaign_id,
                CampaignStatus.SENDING,
                conditions=(
                    or_(Campaign.heartbeat_at.is_(None), Campaign.heartbeat_at < cutoff),
                ),
                heartbeat_at=now,
                claimed_by=token,
            )
            if claimed:
                logger.warning("Reclaimed stalled campaign", campaign_id=campaign_id)
        if claimed:
            self.claim_token = token
            self._last_beat = now
        return claimed

    def _owned(self):
        return Campaign.claimed_by == self.claim_token

    def _heartbeat(self, campaign_id: int) -> None:
        """Refresh the heartbeat; raise ``SchedulerRaceLost`` once the claim is gone."""

        now = self.clock()
        if not touch(
            self.db,
            campaign_id,
            CampaignStatus.SENDING,
            conditions=(self._owned(),),
            heartbeat_at=now,
        ):
            raise SchedulerRaceLost(
                f"Campaign {campaign_id} is no longer claimed by this sender",
                {"campaign_id": campaign_id, "claim": self.claim_token},
            )
        self._last_beat = now

    def _beat_if_due(self, campaign_id: int) -> None:
        if self._last_beat is None or self.clock() - self._last_beat >= self.stale_after / 3:
            self._heartbeat(campaign_id)

    def _fail(self, campaign_id: int, exc: AloException) -> DeliveryReport:
        logger.error(
            "Campaign cannot be executed",
            campaign_id=campaign_id,
            error=exc.message,
            details=exc.details,
        )
        now = self.clock()
        transition(
            self.db,
            campaign_id,
            CampaignStatus.SENDING,
            CampaignStatus.FAILED,
            now=now,
            conditions=(self._owned(),),
            completed_at=now,
            error_message=exc.message,
        )
        return DeliveryReport(
            campaign_id=campaign_id, status=CampaignStatus.FAILED.value, error=exc.message
        )

    def _finalize(self, campaign_id: int, report: DeliveryReport) -> DeliveryReport:
        now = self.clock()
        # Recipients deactivated after being visited can no longer be reached.
        self.db.execute(
            update(DeliveryOutcome)
            .where(DeliveryOutcome.campaign_id == campaign_id)
            .where(DeliveryOutcome.status.in_(_OPEN_STATUSES))
            .where(
                DeliveryOutcome.subscriber_id.in_(
                    select(Subscriber.id).where(Subscriber.active.is_(False))
                )
            )
            .values(
                status=DeliveryStatus.FAILED_PERMANENT.value,
                last_error="Subscriber is no longer active",
                next_attempt_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        counts = dict(
            self.db.execute(
                select(DeliveryOutcome.status, func.count(DeliveryOutcome.id))
                .where(DeliveryOutcome.campaign_id == campaign_id)
                .group_by(DeliveryOutcome.status)
            ).all()
        )
        open_count = sum(counts.get(status, 0) for status in _OPEN_STATUSES)
        report.sent = counts.get(DeliveryStatus.SENT.value, 0)
        report.failed = counts.get(DeliveryStatus.FAILED_PERMANENT.value, 0)
        report.audience_count = report.sent + report.failed + open_count

        if open_count:
            logger.warning(
                "Campaign still has open recipients, leaving it in sending",
                campaign_id=campaign_id,
                open=open_count,
            )
            return report

        completed = transition(
            self.db,
            campaign_id,
            CampaignStatus.SENDING,
            CampaignStatus.COMPLETED,
            now=now,
            conditions=(self._owned(),),
            completed_at=now,
            audience_count=report.audience_count,
            sent_count=report.sent,
            failed_count=report.failed,
            error_message=None,
        )
        if completed:
            report.status = CampaignStatus.COMPLETED.value
        logger.info(
            "Campaign delivery finished",
            campaign_id=campaign_id,
            status=report.status,
            audience=report.audience_count,
            sent=report.sent,
            failed=report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # Recipient handling
    # ------------------------------------------------------------------
    def _deliver_batch(
        self,
        campaign_id: int,
        subscriber_ids: Sequence[int],
        payload: str,
        pool: ThreadPoolExecutor,
        report: DeliveryReport,
    ) -> None:
        now = self.clock()
        subscribers = self.db.scalars(
            select(Subscriber)
            .where(Subscriber.id.in_(subscriber_ids))
            .where(Subscriber.active.is_(True))
            .order_by(Subscriber.id)
        ).all()
        outcomes = {
            outcome.subscriber_id: outcome
            for outcome in self.db.scalars(
                select(DeliveryOutcome)
                .where(DeliveryOutcome.campaign_id == campaign_id)
                .where(DeliveryOutcome.subscriber_id.in_(subscriber_ids))
            )
        }

        work: list[tuple[PushTarget, DeliveryOutcome]] = []
        for subscriber in subscribers:
            outcome = outcomes.get(subscriber.id)
            if outcome is None:
                outcome = DeliveryOutcome(
                    campaign_id=campaign_id,
                    subscriber_id=subscriber.id,
                    status=DeliveryStatus.PENDING.value,
                    attempts=0,
                )
                self.db.add(outcome)
            elif outcome.is_terminal:
                report.already_done += 1
                continue
            elif outcome.next_attempt_at is not None and as_utc(outcome.next_attempt_at) > now:
                # Waiting for its backoff; the retry rounds pick it up.
                continue
            work.append((_target_for(subscriber), outcome))
        self.db.commit()

        self._dispatch(campaign_id, work, payload, pool, report)
        self._heartbeat(campaign_id)

    def _drain_retries(
        self,
        campaign_id: int,
        payload: str,
        pool: ThreadPoolExecutor,
        report: DeliveryReport,
    ) -> None:
        """Redispatch open outcomes until every recipient is terminal.

        Each redispatch consumes an attempt and attempts are capped, so the
        loop always ends.
        """

        while True:
            rows = self.db.execute(
                select(DeliveryOutcome, Subscriber)
                .join(Subscriber, Subscriber.id == DeliveryOutcome.subscriber_id)
                .where(DeliveryOutcome.campaign_id == campaign_id)
                .where(DeliveryOutcome.status.in_(_OPEN_STATUSES))
                .where(Subscriber.active.is_(True))
                .order_by(DeliveryOutcome.next_attempt_at.asc().nulls_first(), DeliveryOutcome.id)
                .limit(self.batch_size)
            ).all()
            if not rows:
                return

            now = self.clock()
            waiting = [
                as_utc(outcome.next_attempt_at)
                for outcome, _ in rows
                if outcome.next_attempt_at is not None and as_utc(outcome.next_attempt_at) > now
            ]
            if len(waiting) == len(rows):
                earliest = min(waiting)
                delay = (earliest - now).total_seconds()
                # Sleep in slices so the heartbeat never looks stale.
                pause = min(delay, self.stale_after.total_seconds() / 2)
                logger.debug(
                    "Waiting for retry backoff", campaign_id=campaign_id, seconds=round(pause, 3)
                )
                self.sleep(pause)
                self._heartbeat(campaign_id)
                if pause < delay:
                    continue
                now = max(self.clock(), earliest)

            work = [
                (_target_for(subscriber), outcome)
                for outcome, subscriber in rows
                if outcome.next_attempt_at is None or as_utc(outcome.next_attempt_at) <= now
            ]
            self._dispatch(campaign_id, work, payload, pool, report)
            self._heartbeat(campaign_id)

    def _dispatch(
        self,
        campaign_id: int,
        work: Sequence[tuple[PushTarget, DeliveryOutcome]],
        payload: str,
        pool: ThreadPoolExecutor,
        report: DeliveryReport,
    ) -> None:
        if not work:
            return
        self._heartbeat(campaign_id)
        futures = {pool.submit(self._send_one, target, payload): outcome for target, outcome in work}
        gone: list[int] = []
        try:
            for future in as_completed(futures):
                outcome = futures[future]
                if self._record(outcome, future.result(), report):
                    gone.append(outcome.subscriber_id)
                self._beat_if_due(campaign_id)
        except SchedulerRaceLost:
            for future in futures:
                future.cancel()
            raise

        if gone:
            now = self.clock()
            result = self.db.execute(
                update(Subscriber)
                .where(Subscriber.id.in_(gone))
                .where(Subscriber.active.is_(True))
                .values(active=False, deactivated_at=now)
                .execution_options(synchronize_session=False)
            )
            report.deactivated += int(result.rowcount or 0)
        self.db.commit()

        if gone:
            self.catalog.invalidate_values()
            cache_backend.invalidate(AudienceResolver.COUNT_NAMESPACE)
            logger.info("Subscribers deactivated", count=len(gone))

    def _send_one(self, target: PushTarget, payload: str) -> AloException | None:
        """Runs on a worker thread; never touches the session."""

        try:
            self.transport.send(target, payload)
        except (TransientDeliveryError, PermanentDeliveryFailure) as exc:
            return exc
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Unexpected push transport error",
                subscriber_id=target.subscriber_id,
                error=repr(exc),
            )
            return TransientDeliveryError(f"Unexpected transport error: {exc!r}")
        return None

    def _record(
        self, outcome: DeliveryOutcome, error: AloException | None, report: DeliveryReport
    ) -> bool:
        """Apply one dispatch result; returns True when the endpoint is gone."""

        now = self.clock()
        outcome.attempts = (outcome.attempts or 0) + 1
        outcome.last_attempt_at = now
        report.dispatched += 1

        if error is None:
            outcome.status = DeliveryStatus.SENT.value
            outcome.next_attempt_at = None
            outcome.last_error = None
            return False

        outcome.last_error = error.message[:1000]
        if isinstance(error, PermanentDeliveryFailure):
            outcome.status = DeliveryStatus.FAILED_PERMANENT.value
            outcome.next_attempt_at = None
            outcome.endpoint_gone = error.endpoint_gone
            return error.endpoint_gone

        if outcome.attempts >= self.max_attempts:
            outcome.status = DeliveryStatus.FAILED_PERMANENT.value
            outcome.next_attempt_at = None
            outcome.last_error = f"Gave up after {outcome.attempts} attempts: {error.message}"[:1000]
            return False

        outcome.status = DeliveryStatus.FAILED_TRANSIENT.value
        outcome.next_attempt_at = now + timedelta(
            seconds=backoff_delay(
                outcome.attempts, self.backoff_base_seconds, self.backoff_max_seconds
            )
        )
        return False


def _target_for(subscriber: Subscriber) -> PushTarget:
    return PushTarget(
        subscriber_id=subscriber.id,
        endpoint=subscriber.endpoint,
        p256dh=subscriber.p256dh,
        auth=subscriber.auth,
    )


__all__ = [
    "DeliveryEngine",
    "DeliveryReport",
    "MAX_PAYLOAD_BYTES",
    "backoff_delay",
    "build_payload",
]
