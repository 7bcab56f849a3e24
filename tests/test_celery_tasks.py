"""Tests for Celery background tasks."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from alo.celery_app import celery_app
from alo.db.models import Campaign
from alo.tasks.campaigns import (
    cleanup_draft_campaigns,
    dispatch_queued_campaigns,
    queue_due_campaigns,
    send_campaign,
)
from alo.utils.clock import utcnow
from tests.factories import ScriptedTransport


@pytest.fixture()
def task_session_factory(session_factory):
    sessions: list = []

    def create_session():
        session = session_factory()
        sessions.append(session)
        return session

    try:
        yield create_session
    finally:
        for session in sessions:
            session.close()


def test_beat_schedule_covers_campaign_lifecycle() -> None:
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

    assert tasks == {
        "alo.tasks.campaigns.queue_due_campaigns",
        "alo.tasks.campaigns.dispatch_queued_campaigns",
        "alo.tasks.campaigns.cleanup_draft_campaigns",
    }


def test_queue_due_campaigns_promotes_and_dispatches(
    db_session, task_session_factory, make_campaign
) -> None:
    now = utcnow()
    due = make_campaign(status="scheduled", send_at=now - timedelta(minutes=2))
    make_campaign(status="scheduled", send_at=now + timedelta(hours=2))

    with patch("alo.tasks.campaigns.SessionLocal", side_effect=task_session_factory), patch.object(
        send_campaign, "delay"
    ) as delay:
        result = queue_due_campaigns()

    assert result["promoted"] == [due.id]
    delay.assert_called_once_with(due.id)
    db_session.expire_all()
    assert db_session.get(Campaign, due.id).status == "queued"


def test_dispatch_queued_campaigns_includes_stalled_senders(
    task_session_factory, make_campaign
) -> None:
    queued = make_campaign(status="queued", queued_at=utcnow())
    stalled = make_campaign(status="sending", heartbeat_at=utcnow() - timedelta(days=1))
    make_campaign(status="sending", heartbeat_at=utcnow())

    with patch("alo.tasks.campaigns.SessionLocal", side_effect=task_session_factory), patch.object(
        send_campaign, "delay"
    ) as delay:
        result = dispatch_queued_campaigns()

    assert result == {"queued": [queued.id], "stale": [stalled.id]}
    assert [call.args[0] for call in delay.call_args_list] == [queued.id, stalled.id]


def test_send_campaign_runs_delivery_engine(
    db_session, task_session_factory, make_campaign, make_subscriber
) -> None:
    make_subscriber()
    make_subscriber()
    campaign = make_campaign()
    transport = ScriptedTransport()

    with patch("alo.tasks.campaigns.SessionLocal", side_effect=task_session_factory), patch(
        "alo.tasks.campaigns.WebPushTransport", return_value=transport
    ):
        report = send_campaign(campaign.id)

    assert report["status"] == "completed"
    assert report["sent"] == 2
    assert len(transport.calls) == 2


def test_cleanup_draft_campaigns(db_session, task_session_factory, make_campaign) -> None:
    stale = make_campaign(status="draft", updated_at=utcnow() - timedelta(days=60))
    stale_id = stale.id
    recent = make_campaign(status="draft")

    with patch("alo.tasks.campaigns.SessionLocal", side_effect=task_session_factory):
        result = cleanup_draft_campaigns()

    assert result == {"deleted": 1, "retention_days": 31}
    db_session.expire_all()
    assert db_session.get(Campaign, stale_id) is None
    assert db_session.get(Campaign, recent.id) is not None
