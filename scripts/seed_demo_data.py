"""
Seed the local database with demo properties, jobs and pay rates.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times will upsert the same
records based on stable ids derived from their names. It prints bearer
tokens for the demo admin and staff member.
"""

import uuid
from datetime import date, time, timedelta
from decimal import Decimal

from fieldtime.db import SessionLocal, Base, engine
from fieldtime.models.models import Job, JobStatus, PropertySite, StaffPayRate
from fieldtime.services.pay_rates import get_open_rate, set_rate
from fieldtime.auth.security import create_access_token
from fieldtime.services.permissions import CallerContext, Role
from fieldtime.services.time_rules import local_today

DEMO_NAMESPACE = uuid.UUID("6f1c2d8e-3b7a-4e55-9a51-2c0d4b7e9f10")


def demo_id(name: str) -> uuid.UUID:
    return uuid.uuid5(DEMO_NAMESPACE, name)


def ensure_property(session, name: str, address: str, lat=None, lng=None, radius: int = 100) -> PropertySite:
    site = session.query(PropertySite).filter(PropertySite.id == demo_id(name)).first()
    if site:
        site.address = address
        site.location_lat = lat
        site.location_lng = lng
        site.geofence_radius_meters = radius
        session.add(site)
        return site
    site = PropertySite(id=demo_id(name), name=name, address=address, location_lat=lat, location_lng=lng, geofence_radius_meters=radius)
    session.add(site)
    session.flush()
    return site


def ensure_job(session, key: str, site: PropertySite, staff_id: uuid.UUID, scheduled_date: date, scheduled_time: time) -> Job:
    job = session.query(Job).filter(Job.id == demo_id(key)).first()
    if job:
        # Leave jobs that were already worked alone
        return job
    job = Job(
        id=demo_id(key),
        property_id=site.id,
        location=site.address,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        status=JobStatus.SCHEDULED.value,
        assigned_staff_id=staff_id,
    )
    session.add(job)
    session.flush()
    return job


def ensure_open_rate(session, staff_id: uuid.UUID, hourly_rate: Decimal, effective_from: date, admin: CallerContext) -> StaffPayRate:
    rate = get_open_rate(session, staff_id)
    if rate:
        return rate
    # set_rate commits, so anything staged before this call is saved with it
    return set_rate(session, staff_id, hourly_rate, admin, effective_date=effective_from)


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    admin_id = demo_id("admin.user")
    staff_id = demo_id("sam.staff")
    today = local_today()

    session = SessionLocal()
    try:
        harbour = ensure_property(session, "Harbour View Apartments", "1 Macquarie St, Sydney NSW", lat=-33.8688, lng=151.2093, radius=100)
        terrace = ensure_property(session, "Glebe Terrace", "12 Glebe Point Rd, Glebe NSW")  # no coordinates: unverified check-ins

        ensure_job(session, "job.harbour.am", harbour, staff_id, today, time(9, 0))
        ensure_job(session, "job.terrace.pm", terrace, staff_id, today, time(14, 30))
        ensure_job(session, "job.harbour.tomorrow", harbour, staff_id, today + timedelta(days=1), time(9, 0))

        admin = CallerContext(user_id=admin_id, role=Role.ADMIN)
        ensure_open_rate(session, staff_id, Decimal("32.50"), today - timedelta(days=90), admin)

        session.commit()
        print("Seed completed: properties, jobs and pay rates upserted.")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    print(f"Admin token ({admin_id}):\n  {create_access_token(str(admin_id), Role.ADMIN.value)}")
    print(f"Staff token ({staff_id}):\n  {create_access_token(str(staff_id), Role.STAFF.value)}")


if __name__ == "__main__":
    main()
