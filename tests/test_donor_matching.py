from datetime import timedelta

import pytest

from hemobank.core.exceptions import InvalidInputError, NotFoundError
from hemobank.database import utcnow
from hemobank.models import BloodGroup
from hemobank.services.donor_matching import (
    find_donors_near_hospital, find_nearest_eligible_donors, haversine_km,
)
from tests.helpers import make_donor, make_hospital


def test_haversine():
    assert haversine_km(0, 0, 0, 0) == 0
    assert haversine_km(0, 0, 0, 1) == pytest.approx(111.19, abs=0.01)
    # London to Paris
    assert haversine_km(51.5074, -0.1278, 48.8566, 2.3522) == pytest.approx(343.5, abs=1.0)


def test_nearest_eligible_donors_in_order(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, _ = await make_hospital(db, latitude=40.0, longitude=-74.0)
            far = await make_donor(db, hospital, latitude=40.2, longitude=-74.0)
            near = await make_donor(db, hospital, latitude=40.05, longitude=-74.0,
                                    last_donation_date=utcnow() - timedelta(days=120))
            # excluded: deferred, ineligible, wrong group, no location, out of radius
            await make_donor(db, hospital, latitude=40.01, longitude=-74.0,
                             last_donation_date=utcnow() - timedelta(days=30))
            await make_donor(db, hospital, latitude=40.01, longitude=-74.0, is_eligible=False)
            await make_donor(db, hospital, blood_group=BloodGroup.B_NEGATIVE, latitude=40.01, longitude=-74.0)
            await make_donor(db, hospital)
            await make_donor(db, hospital, latitude=41.0, longitude=-74.0)

            matches = await find_nearest_eligible_donors(db, BloodGroup.O_POSITIVE, 40.0, -74.0, radius_km=50)
            assert [m.donor.id for m in matches] == [near.id, far.id]
            assert matches[0].distance_km == 5.6
            assert matches[1].distance_km == 22.2
            assert matches[0].to_dict()["donor_id"] == str(near.id)

            limited = await find_nearest_eligible_donors(db, BloodGroup.O_POSITIVE, 40.0, -74.0, limit=1)
            assert [m.donor.id for m in limited] == [near.id]

    run_db(scenario)


def test_invalid_points_and_radius(run_db):
    async def scenario(sf):
        async with sf() as db:
            with pytest.raises(InvalidInputError, match="coordinates are required"):
                await find_nearest_eligible_donors(db, BloodGroup.O_POSITIVE, None, -74.0)
            with pytest.raises(InvalidInputError):
                await find_nearest_eligible_donors(db, BloodGroup.O_POSITIVE, 91.0, 0.0)
            with pytest.raises(InvalidInputError):
                await find_nearest_eligible_donors(db, BloodGroup.O_POSITIVE, 40.0, -74.0, radius_km=0)

    run_db(scenario)


def test_near_hospital(run_db):
    async def scenario(sf):
        async with sf() as db:
            located, _ = await make_hospital(db, name="Located", latitude=10.0, longitude=10.0)
            unlocated, _ = await make_hospital(db, name="Unlocated")
            donor = await make_donor(db, located, latitude=10.01, longitude=10.0)

            matches = await find_donors_near_hospital(db, located.id, BloodGroup.O_POSITIVE)
            assert [m.donor.id for m in matches] == [donor.id]
            with pytest.raises(InvalidInputError):
                await find_donors_near_hospital(db, unlocated.id, BloodGroup.O_POSITIVE)
            with pytest.raises(NotFoundError):
                await find_donors_near_hospital(db, donor.id, BloodGroup.O_POSITIVE)

    run_db(scenario)
