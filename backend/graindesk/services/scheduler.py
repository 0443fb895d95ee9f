from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.config import settings
from graindesk.core.timeutils import as_utc, utc_now
from graindesk.database import SessionLocal
from graindesk.models.domain import JobRunStatus, ListingState
from graindesk.services.events import EventType, bus
from graindesk.services.market_prices import record_prices

logger = logging.getLogger("graindesk.scheduler")

PRICE_REFRESH = "price_refresh"
EXPIRY_SWEEP = "expiry_sweep"

# Stable advisory-lock keys, one per job.
LOCK_KEYS = {PRICE_REFRESH: 913001, EXPIRY_SWEEP: 913002}

# Upstream quote oracle: returns {instrument: price}.
PriceSource = Callable[[], Mapping[str, Decimal]]
JobFunc = Callable[[Session, datetime], dict[str, Any]]


def _on_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def _try_advisory_lock(db: Session, key: int) -> bool:
    """Cross-worker lock on Postgres; other databases always get the lock."""

    if not _on_postgres(db):
        return True
    try:
        return bool(db.execute(text("SELECT pg_try_advisory_lock(:k)"), {"k": key}).scalar())
    except SQLAlchemyError:
        # The per-slot run row still prevents a double run.
        logger.warning("advisory_lock_unavailable", extra={"key": key})
        return True


def _release_advisory_lock(db: Session, key: int) -> None:
    if not _on_postgres(db):
        return
    try:
        db.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": key})
    except SQLAlchemyError:
        logger.warning("advisory_unlock_failed", extra={"key": int(key)})


def slot_key_for(now: datetime, interval_minutes: int) -> str:
    """Start of the interval slot containing ``now``, e.g. ``2025-03-01T10:15``."""

    now = as_utc(now)
    epoch_minutes = int(now.timestamp() // 60)
    start = epoch_minutes - epoch_minutes % int(interval_minutes)
    return datetime.fromtimestamp(start * 60, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M")


@dataclass(frozen=True)
class JobResult:
    job_name: str
    slot_key: str
    # succeeded | failed | skipped_locked | skipped_done
    outcome: str
    result: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduledJob:
    name: str
    interval_minutes: int
    func: JobFunc


def refresh_prices(db: Session, now: datetime, source: PriceSource) -> dict[str, Any]:
    quotes = dict(source() or {})
    rows = record_prices(db=db, prices=quotes, as_of=now, source=PRICE_REFRESH)
    db.commit()
    instruments = sorted(r.instrument for r in rows)
    if instruments:
        bus.publish(
            EventType.PRICES_REFRESHED, {"instruments": instruments, "as_of": now.isoformat()}
        )
    return {"instruments": instruments, "count": len(instruments)}


def sweep_expired_validations(db: Session, now: datetime) -> dict[str, Any]:
    """Notify once per pending listing past its validation window.

    Advisory only: the listing stays ``pending_validation`` until an admin acts.
    """

    candidates = (
        db.query(models.ResaleListing.id, models.ResaleListing.validation_expiry)
        .filter(models.ResaleListing.state == ListingState.pending_validation)
        .filter(models.ResaleListing.expiry_notified_at.is_(None))
        .all()
    )
    notified: list[int] = []
    for listing_id, expiry in candidates:
        if as_utc(expiry) >= now:
            continue
        stamped = (
            db.query(models.ResaleListing)
            .filter(models.ResaleListing.id == listing_id)
            .filter(models.ResaleListing.expiry_notified_at.is_(None))
            .update({"expiry_notified_at": now}, synchronize_session=False)
        )
        if stamped:
            notified.append(int(listing_id))
    db.commit()

    for listing_id in notified:
        bus.publish(EventType.LISTING_VALIDATION_EXPIRED, {"listing_id": listing_id})
    return {"notified": notified, "count": len(notified)}


def run_job(
    job: ScheduledJob,
    *,
    now: datetime | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> JobResult:
    """Run ``job`` for the slot containing ``now`` at most once.

    The unique (job_name, slot_key) row is claimed before the work starts; a
    second worker or a restart inside the same slot finds it and skips.
    """

    now = as_utc(now or utc_now())
    slot = slot_key_for(now, job.interval_minutes)
    lock_key = LOCK_KEYS.get(job.name, 913000)

    db = session_factory()
    got_lock = _try_advisory_lock(db, lock_key)
    if not got_lock:
        logger.info("job_skipped_locked", extra={"job": job.name, "slot_key": slot})
        db.close()
        return JobResult(job_name=job.name, slot_key=slot, outcome="skipped_locked")

    try:
        run = models.ScheduledJobRun(
            job_name=job.name, slot_key=slot, status=JobRunStatus.running, started_at=now
        )
        db.add(run)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("job_skipped_done", extra={"job": job.name, "slot_key": slot})
            return JobResult(job_name=job.name, slot_key=slot, outcome="skipped_done")
        run_id = run.id

        try:
            result = job.func(db, now)
        except Exception as exc:
            db.rollback()
            failed = db.get(models.ScheduledJobRun, run_id)
            failed.status = JobRunStatus.failed
            failed.error = str(exc)
            failed.finished_at = utc_now()
            db.commit()
            logger.exception("job_failed", extra={"job": job.name, "slot_key": slot})
            return JobResult(
                job_name=job.name, slot_key=slot, outcome="failed", result={"error": str(exc)}
            )

        done = db.get(models.ScheduledJobRun, run_id)
        done.status = JobRunStatus.succeeded
        done.result_json = result
        done.finished_at = utc_now()
        db.commit()
        logger.info("job_ok", extra={"job": job.name, "slot_key": slot, "result": result})
        return JobResult(job_name=job.name, slot_key=slot, outcome="succeeded", result=result)
    finally:
        _release_advisory_lock(db, lock_key)
        db.close()


def last_run(*, db: Session, job_name: str) -> models.ScheduledJobRun | None:
    return (
        db.query(models.ScheduledJobRun)
        .filter(models.ScheduledJobRun.job_name == job_name)
        .order_by(models.ScheduledJobRun.started_at.desc(), models.ScheduledJobRun.id.desc())
        .first()
    )


class JobRunner:
    """
    Interval scheduler on a daemon thread.
    NOTE: In multi-worker setups, each worker will start this thread.
    Duplicate runs are prevented by the advisory lock plus the per-slot run row.
    """

    def __init__(
        self,
        tick_seconds: float = 30.0,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.tick_seconds = float(tick_seconds)
        self.session_factory = session_factory
        self.jobs: dict[str, ScheduledJob] = {}
        self._last_slot: dict[str, str] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def register(self, job: ScheduledJob) -> None:
        self.jobs[job.name] = job

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="graindesk-jobs", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def run_due(self, now: datetime | None = None) -> list[JobResult]:
        now = now or utc_now()
        results = []
        for job in list(self.jobs.values()):
            slot = slot_key_for(now, job.interval_minutes)
            if self._last_slot.get(job.name) == slot:
                continue
            try:
                results.append(run_job(job, now=now, session_factory=self.session_factory))
            except Exception as exc:
                # DB unreachable and the like; the next tick retries the slot.
                logger.exception("job_run_error", extra={"job": job.name, "error": str(exc)})
                continue
            self._last_slot[job.name] = slot
        return results

    def _loop(self) -> None:
        logger.info("scheduler_started", extra={"jobs": sorted(self.jobs)})
        while not self._stop.is_set():
            self.run_due()
            if self._stop.wait(self.tick_seconds):
                break


def build_runner(price_source: PriceSource | None = None) -> JobRunner:
    runner = JobRunner()
    runner.register(
        ScheduledJob(
            name=EXPIRY_SWEEP,
            interval_minutes=settings.expiry_sweep_interval_minutes,
            func=sweep_expired_validations,
        )
    )
    if price_source is not None:
        runner.register(
            ScheduledJob(
                name=PRICE_REFRESH,
                interval_minutes=settings.price_refresh_interval_minutes,
                func=lambda db, now: refresh_prices(db, now, price_source),
            )
        )
    return runner
