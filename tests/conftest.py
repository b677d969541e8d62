import uuid
from datetime import date, datetime, time, timedelta

import pytest
import pytz
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldtime.auth.security import create_access_token
from fieldtime.db import Base, get_db
from fieldtime.main import app
from fieldtime.models.models import Job, JobStatus, PropertySite, TimeEntry, TimeEntryStatus
from fieldtime.services.permissions import CallerContext, Role
from fieldtime.services.time_rules import billable_minutes, minutes_between

SYDNEY = (-33.8688, 151.2093)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=pytz.UTC)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def admin():
    return CallerContext(user_id=uuid.uuid4(), role=Role.ADMIN)


@pytest.fixture
def staff():
    return CallerContext(user_id=uuid.uuid4(), role=Role.STAFF)


@pytest.fixture
def other_staff():
    return CallerContext(user_id=uuid.uuid4(), role=Role.STAFF)


@pytest.fixture
def make_site(db):
    def _make(lat=SYDNEY[0], lng=SYDNEY[1], radius=100, name="Harbour View"):
        site = PropertySite(name=name, address="1 Macquarie St", location_lat=lat, location_lng=lng, geofence_radius_meters=radius)
        db.add(site)
        db.commit()
        return site

    return _make


@pytest.fixture
def make_job(db):
    def _make(staff_id, site=None, status=JobStatus.SCHEDULED, start_time=None,
              scheduled_date=date(2024, 6, 3), scheduled_time=time(9, 0)):
        job = Job(
            property_id=site.id if site is not None else None,
            location="1 Macquarie St",
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            status=status.value,
            start_time=start_time,
            assigned_staff_id=staff_id,
        )
        db.add(job)
        db.commit()
        return job

    return _make


@pytest.fixture
def make_entry(db, make_job):
    def _make(staff_id, clock_in, minutes=None, status=TimeEntryStatus.COMPLETED, break_minutes=0, job=None):
        job = job or make_job(staff_id, status=JobStatus.COMPLETED, start_time=clock_in)
        clock_out = clock_in + timedelta(minutes=minutes) if minutes is not None else None
        total = minutes_between(clock_in, clock_out) if clock_out else None
        entry = TimeEntry(
            job_id=job.id,
            staff_id=staff_id,
            clock_in=clock_in,
            clock_out=clock_out,
            total_minutes=total,
            break_minutes=break_minutes,
            billable_minutes=billable_minutes(total, break_minutes),
            status=status.value,
        )
        db.add(entry)
        db.commit()
        return entry

    return _make


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(caller: CallerContext) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(caller.user_id), caller.role.value)}"}
