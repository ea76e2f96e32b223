"""Leased run-locks keeping two runs of the same scheduled job apart."""

from __future__ import annotations

import logging
import os
import socket
from contextlib import contextmanager
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import JobLock
from services.errors import JobAlreadyRunning
from utils import utc_now

logger = logging.getLogger(__name__)


def _holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def acquire(job_name: str, cycle_key: str, ttl: timedelta) -> bool:
    """Take the lease for (*job_name*, *cycle_key*); False if someone holds it."""
    now = utc_now()
    holder = _holder()
    lock = JobLock.query.filter_by(job_name=job_name, cycle_key=cycle_key).first()
    if lock is None:
        db.session.add(JobLock(
            job_name=job_name,
            cycle_key=cycle_key,
            holder=holder,
            acquired_at=now,
            expires_at=now + ttl,
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True

    was_released = lock.released_at is not None

    # Released or expired leases can be taken over; the filter makes it atomic.
    taken = JobLock.query.filter(
        JobLock.id == lock.id,
        or_(JobLock.released_at.isnot(None), JobLock.expires_at <= now),
    ).update(
        {
            JobLock.holder: holder,
            JobLock.acquired_at: now,
            JobLock.expires_at: now + ttl,
            JobLock.released_at: None,
        },
        synchronize_session=False,
    )
    db.session.commit()
    if taken and not was_released:
        logger.warning("Took over expired lease of %s/%s", job_name, cycle_key)
    return taken == 1


def release(job_name: str, cycle_key: str) -> None:
    JobLock.query.filter_by(
        job_name=job_name, cycle_key=cycle_key, holder=_holder(), released_at=None
    ).update({JobLock.released_at: utc_now()}, synchronize_session=False)
    db.session.commit()


@contextmanager
def job_lock(job_name: str, cycle_key: str):
    """Run the block under the lease or raise :class:`JobAlreadyRunning`."""
    ttl = timedelta(minutes=current_app.config["BILLING_CONFIG"].job_lock_ttl_minutes)
    if not acquire(job_name, cycle_key, ttl):
        raise JobAlreadyRunning(f"{job_name} for {cycle_key} is already running")
    try:
        yield
    finally:
        db.session.rollback()
        release(job_name, cycle_key)
