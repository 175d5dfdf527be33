from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from hemobank.api.v1.deps import get_current_actor, get_db
from hemobank.core.exceptions import InvalidInputError
from hemobank.core.security import Actor
from hemobank.models.enums import BloodGroup
from hemobank.schemas.monitor import DonorMatchResponse
from hemobank.services.donor_matching import find_donors_near_hospital, find_nearest_eligible_donors

router = APIRouter()


@router.get("/nearby", response_model=List[DonorMatchResponse])
async def nearby_donors(
    blood_group: BloodGroup,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = Query(None, gt=0),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Eligible donors near an explicit point, or near the caller's hospital when none is given."""
    if latitude is None and longitude is None:
        if actor.hospital_id is None:
            raise InvalidInputError("Hospital location coordinates are required")
        matches = await find_donors_near_hospital(db, actor.hospital_id, blood_group, radius_km=radius_km)
    else:
        matches = await find_nearest_eligible_donors(db, blood_group, latitude, longitude, radius_km=radius_km)
    return [match.to_dict() for match in matches]
