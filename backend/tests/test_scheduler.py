from datetime import datetime, timedelta, timezone
from decimal import Decimal

from graindesk import models
from graindesk.models.domain import JobRunStatus, ListingState, PositionType
from graindesk.services import resale_workflow as rw
from graindesk.services.events import EventType
from graindesk.services.market_prices import latest_prices
from graindesk.services.scheduler import (
    JobRunner,
    ScheduledJob,
    last_run,
    refresh_prices,
    run_job,
    slot_key_for,
    sweep_expired_validations,
)

NOW = datetime(2025, 3, 3, 10, 17, tzinfo=timezone.utc)


def _counting_job(calls, interval=15):
    def func(db, now):
        calls.append(now)
        return {"n": len(calls)}

    return ScheduledJob(name="count", interval_minutes=interval, func=func)


def test_slot_key_for():
    assert slot_key_for(NOW, 15) == "2025-03-03T10:15"
    assert slot_key_for(NOW, 60) == "2025-03-03T10:00"
    # naive datetimes are read as UTC
    assert slot_key_for(datetime(2025, 3, 3, 10, 29), 15) == "2025-03-03T10:15"


def test_run_job_runs_once_per_slot(db_session, session_factory):
    calls = []
    job = _counting_job(calls)

    first = run_job(job, now=NOW, session_factory=session_factory)
    again = run_job(job, now=NOW + timedelta(minutes=5), session_factory=session_factory)
    later = run_job(job, now=NOW + timedelta(minutes=15), session_factory=session_factory)

    assert first.outcome == "succeeded"
    assert first.result == {"n": 1}
    assert again.outcome == "skipped_done"
    assert later.outcome == "succeeded"
    assert len(calls) == 2

    run = last_run(db=db_session, job_name="count")
    assert run.slot_key == "2025-03-03T10:30"
    assert run.status == JobRunStatus.succeeded
    assert run.result_json == {"n": 2}
    assert run.finished_at is not None


def test_failed_job_is_recorded_and_not_retried_in_slot(db_session, session_factory):
    def explode(db, now):
        raise RuntimeError("upstream down")

    job = ScheduledJob(name="explode", interval_minutes=15, func=explode)
    res = run_job(job, now=NOW, session_factory=session_factory)
    assert res.outcome == "failed"
    assert res.result == {"error": "upstream down"}

    run = last_run(db=db_session, job_name="explode")
    assert run.status == JobRunStatus.failed
    assert run.error == "upstream down"

    assert run_job(job, now=NOW, session_factory=session_factory).outcome == "skipped_done"


def test_sweep_notifies_each_expired_listing_once(db_session, desk, published):
    listing = rw.create_listing(
        db=db_session,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=PositionType.uncovered,
        volume=Decimal("100"),
        requested_price=Decimal("190"),
        now=NOW,
    )
    del published[:]

    assert sweep_expired_validations(db_session, NOW + timedelta(minutes=10))["count"] == 0
    first = sweep_expired_validations(db_session, NOW + timedelta(minutes=31))
    second = sweep_expired_validations(db_session, NOW + timedelta(minutes=45))

    assert first == {"notified": [listing.id], "count": 1}
    assert second["count"] == 0
    assert [e.type for e in published] == [EventType.LISTING_VALIDATION_EXPIRED]

    db_session.expire_all()
    stored = db_session.get(models.ResaleListing, listing.id)
    assert stored.state == ListingState.pending_validation
    assert stored.expiry_notified_at is not None


def test_refresh_prices_records_quotes_from_the_source(db_session, desk, published):
    result = refresh_prices(
        db_session, NOW, lambda: {"zcu5": Decimal("455.25"), "ZCN5": Decimal("452")}
    )
    assert result == {"instruments": ["ZCN5", "ZCU5"], "count": 2}

    prices = latest_prices(db=db_session)
    assert prices["ZCU5"] == Decimal("455.25")
    assert prices["ZCN5"] == Decimal("452")
    assert [e.type for e in published] == [EventType.PRICES_REFRESHED]


def test_refresh_prices_with_nothing_to_record(db_session, published):
    assert refresh_prices(db_session, NOW, lambda: {}) == {"instruments": [], "count": 0}
    assert published == []


def test_runner_runs_due_jobs_once_per_slot(session_factory):
    calls = []
    runner = JobRunner(session_factory=session_factory)
    runner.register(_counting_job(calls))

    assert [r.outcome for r in runner.run_due(NOW)] == ["succeeded"]
    assert runner.run_due(NOW + timedelta(minutes=1)) == []
    assert [r.job_name for r in runner.run_due(NOW + timedelta(minutes=15))] == ["count"]
    assert len(calls) == 2

