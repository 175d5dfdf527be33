#!/usr/bin/env python3
"""
Seed a development database with one hospital, its admin, a few donors and
tested units, then print a bearer token for the admin.
Usage: python scripts/seed_demo_data.py
"""
import asyncio
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta
from sqlalchemy import select

from hemobank.core.security import Actor, Role, create_access_token
from hemobank.database import async_session_factory, init_db, utcnow
from hemobank.models import Assay, AssayResult, BloodGroup, Donor, Hospital, User
from hemobank.services.audit_service import audit_service
from hemobank.services.unit_store import unit_store


async def seed():
    await init_db()

    async with async_session_factory() as db:
        existing = await db.scalar(select(Hospital).where(Hospital.name == "Demo General Hospital"))
        if existing:
            print("✅ Demo data already exists")
            return

        hospital = Hospital(name="Demo General Hospital", is_approved=True, latitude=12.9716, longitude=77.5946,
                            blood_thresholds={"O-": 6})
        db.add(hospital)
        await db.flush()
        admin = User(email="admin@hemobank.local", first_name="Demo", last_name="Admin",
                     role=Role.HOSPITAL_ADMIN, hospital_id=hospital.id)
        db.add(admin)
        await db.flush()
        hospital.admin_id = admin.id

        donors = [
            Donor(hospital_id=hospital.id, first_name="Asha", last_name="Rao", phone="+910000000001",
                  blood_group=BloodGroup.O_POSITIVE, latitude=12.98, longitude=77.60),
            Donor(hospital_id=hospital.id, first_name="Ravi", last_name="Kumar", phone="+910000000002",
                  blood_group=BloodGroup.A_POSITIVE, latitude=13.02, longitude=77.55),
        ]
        db.add_all(donors)
        await db.commit()

        actor = Actor(id=admin.id, role=Role.HOSPITAL_ADMIN, hospital_id=hospital.id)
        for donor in donors:
            for days_ago in (1, 3, 5):
                unit = await unit_store.create(
                    db, actor, donor.id, donor.blood_group,
                    collection_date=utcnow() - timedelta(days=days_ago),
                    storage_location="Main fridge",
                )
                await unit_store.record_tests(db, actor, unit.id, {assay: AssayResult.NEGATIVE for assay in Assay})

        await audit_service.flush()
        print("✅ Demo data created")
        print(f"🏥 Hospital: {hospital.id}")
        print(f"🔑 Admin token: {create_access_token(actor, expires_delta=timedelta(days=1))}")


if __name__ == "__main__":
    asyncio.run(seed())
