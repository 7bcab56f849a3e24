"""Campaign lifecycle table and conditional status transitions.

Every status change is an ``UPDATE ... WHERE status = :expected``. Whichever
writer sees a rowcount of one owns the transition; everyone else lost the race.
This is the only mechanism that keeps two schedulers or two senders from
acting on the same campaign.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import update
from sqlalchemy.orm import Session

from alo.db.models.campaign import Campaign, CampaignStatus
from alo.utils.clock import utcnow
from alo.utils.exceptions import CampaignStateError, SchedulerRaceLost

ALLOWED_TRANSITIONS: dict[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset(
        {CampaignStatus.SCHEDULED, CampaignStatus.QUEUED, CampaignStatus.CANCELLED}
    ),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.QUEUED, CampaignStatus.CANCELLED}),
    CampaignStatus.CANCELLED: frozenset(
        {CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.QUEUED}
    ),
    CampaignStatus.QUEUED: frozenset({CampaignStatus.SENDING}),
    CampaignStatus.SENDING: frozenset({CampaignStatus.COMPLETED, CampaignStatus.FAILED}),
    CampaignStatus.COMPLETED: frozenset(),
    CampaignStatus.FAILED: frozenset(),
}


def can_transition(current: CampaignStatus | str, target: CampaignStatus | str) -> bool:
    return CampaignStatus(target) in ALLOWED_TRANSITIONS[CampaignStatus(current)]


def transition(
    db: Session,
    campaign_id: int,
    expected: CampaignStatus,
    target: CampaignStatus,
    *,
    now: datetime | None = None,
    conditions: tuple[Any, ...] = (),
    **values: Any,
) -> bool:
    """Move a campaign from ``expected`` to ``target`` if nobody else did.

    Extra ``conditions`` narrow the guard further (for example a heartbeat
    value). ``now`` stamps ``updated_at`` and defaults to the wall clock.
    Commits and returns whether this writer won.
    """

    if not can_transition(expected, target):
        raise CampaignStateError(
            f"Cannot move campaign from {expected.value} to {target.value}",
            {"campaign_id": campaign_id, "from": expected.value, "to": target.value},
        )

    stmt = (
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .where(Campaign.status == expected.value)
        .where(*conditions)
        .values(status=target.value, updated_at=now or utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    _expire_cached(db, campaign_id)

    won = result.rowcount == 1
    if won:
        logger.info(
            "Campaign status changed",
            campaign_id=campaign_id,
            from_status=expected.value,
            to_status=target.value,
        )
    return won


def require_transition(
    db: Session,
    campaign_id: int,
    expected: CampaignStatus,
    target: CampaignStatus,
    *,
    now: datetime | None = None,
    conditions: tuple[Any, ...] = (),
    **values: Any,
) -> None:
    """Like :func:`transition` but raise :class:`SchedulerRaceLost` on a lost race."""

    if not transition(
        db, campaign_id, expected, target, now=now, conditions=conditions, **values
    ):
        raise SchedulerRaceLost(
            f"Campaign {campaign_id} is no longer {expected.value}",
            {"campaign_id": campaign_id, "expected": expected.value, "target": target.value},
        )


def touch(
    db: Session,
    campaign_id: int,
    expected: CampaignStatus,
    *,
    conditions: tuple[Any, ...] = (),
    **values: Any,
) -> bool:
    """Update bookkeeping columns without changing status, guarded the same way."""

    stmt = (
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .where(Campaign.status == expected.value)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    _expire_cached(db, campaign_id)
    return result.rowcount == 1


def _expire_cached(db: Session, campaign_id: int) -> None:
    cached = db.identity_map.get(Session.identity_key(Campaign, campaign_id))
    if cached is not None:
        db.expire(cached)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "require_transition",
    "touch",
    "transition",
]
