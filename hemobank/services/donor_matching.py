"""
Donor matching: nearest eligible donors of a blood group around a point.

Distances are great-circle (haversine) on a 6371 km sphere. A donor is
eligible when flagged eligible and their last donation is more than the
deferral period ago (or they never donated).
"""
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hemobank.core.config import settings
from hemobank.core.exceptions import InvalidInputError, NotFoundError
from hemobank.database import utcnow
from hemobank.models import BloodGroup, Donor, Hospital

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.32


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass
class DonorMatch:
    donor: Donor
    distance_km: float  # rounded to 0.1 km

    def to_dict(self) -> dict:
        return {
            "donor_id": str(self.donor.id),
            "first_name": self.donor.first_name,
            "last_name": self.donor.last_name,
            "phone": self.donor.phone,
            "email": self.donor.email,
            "blood_group": self.donor.blood_group.value,
            "distance_km": self.distance_km,
        }


def _validate_point(latitude: Optional[float], longitude: Optional[float]) -> None:
    if latitude is None or longitude is None:
        raise InvalidInputError("Hospital location coordinates are required")
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise InvalidInputError("Coordinates are out of range")


def _bounding_box(latitude: float, longitude: float, radius_km: float):
    """Coarse SQL prefilter; the exact distance check happens in Python."""
    d_lat = radius_km / KM_PER_DEGREE
    conditions = [Donor.latitude.between(latitude - d_lat, latitude + d_lat)]
    cos_lat = math.cos(math.radians(latitude))
    if cos_lat > 0.01:
        d_lon = radius_km / (KM_PER_DEGREE * cos_lat)
        # skip the longitude filter when the box wraps the antimeridian
        if longitude - d_lon >= -180 and longitude + d_lon <= 180:
            conditions.append(Donor.longitude.between(longitude - d_lon, longitude + d_lon))
    return conditions


async def find_nearest_eligible_donors(
    db: AsyncSession,
    blood_group: BloodGroup,
    latitude: Optional[float],
    longitude: Optional[float],
    radius_km: Optional[float] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[DonorMatch]:
    """
    Eligible donors of `blood_group` within `radius_km`, nearest first.

    Raises:
        InvalidInputError: missing or out-of-range coordinates, or a
            non-positive radius
    """
    _validate_point(latitude, longitude)
    radius_km = settings.DONOR_MATCH_RADIUS_KM if radius_km is None else radius_km
    limit = settings.DONOR_MATCH_LIMIT if limit is None else limit
    if radius_km <= 0:
        raise InvalidInputError("Radius must be positive")

    now = now or utcnow()
    deferral_cutoff = now - timedelta(days=settings.DONOR_DEFERRAL_DAYS)
    result = await db.execute(
        select(Donor).where(
            Donor.blood_group == blood_group,
            Donor.is_eligible.is_(True),
            or_(Donor.last_donation_date.is_(None), Donor.last_donation_date < deferral_cutoff),
            Donor.latitude.is_not(None),
            Donor.longitude.is_not(None),
            *_bounding_box(latitude, longitude, radius_km),
        )
    )

    candidates = []
    for donor in result.scalars().all():
        distance = haversine_km(latitude, longitude, donor.latitude, donor.longitude)
        if distance <= radius_km:
            candidates.append((distance, donor))
    candidates.sort(key=lambda pair: pair[0])

    matches = [DonorMatch(donor=donor, distance_km=round(distance, 1)) for distance, donor in candidates[:limit]]
    logger.debug(f"{len(matches)} {blood_group.value} donors within {radius_km} km of ({latitude}, {longitude})")
    return matches


async def find_donors_near_hospital(
    db: AsyncSession,
    hospital_id: uuid.UUID,
    blood_group: BloodGroup,
    radius_km: Optional[float] = None,
    limit: Optional[int] = None,
) -> list[DonorMatch]:
    hospital = await db.get(Hospital, hospital_id)
    if not hospital:
        raise NotFoundError("Hospital not found")
    return await find_nearest_eligible_donors(
        db, blood_group, hospital.latitude, hospital.longitude, radius_km=radius_km, limit=limit,
    )
