"""
services/hospital/router.py
Hospital directory lookup with optional geo-radius filtering.
The directory is cached whole in Redis; radius and nearest queries go through a Redis GEO set.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import RequestContext, require_admin
from shared.models.models import Hospital, HospitalType
from shared.schemas.schemas import HospitalCreateRequest, HospitalResponse
from shared.utils.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hospitals", tags=["Hospitals"])

CACHE_KEY = "hospitals:all"
NEAREST_MAX_DISTANCE_KM = 50.0


# ── Helpers ───────────────────────────────────────────────────

def _to_response(hospital: Hospital) -> HospitalResponse:
    return HospitalResponse.model_validate(hospital)


async def _load_directory(db: AsyncSession, cache: RedisCache) -> List[HospitalResponse]:
    """Read-through cache of the whole directory, name order."""
    cached = await cache.get(CACHE_KEY)
    if cached:
        return [HospitalResponse(**h) for h in cached]

    result = await db.execute(select(Hospital).order_by(Hospital.name))
    hospitals = [_to_response(h) for h in result.scalars()]
    await cache.set(CACHE_KEY, [h.model_dump(mode="json") for h in hospitals])
    return hospitals


async def _search_nearby(
    db: AsyncSession,
    cache: RedisCache,
    lat: float,
    lng: float,
    radius_km: float,
    count: Optional[int] = None,
) -> List[HospitalResponse]:
    """Hospitals within `radius_km`, nearest first, with distanceKm filled in."""
    directory = await _load_directory(db, cache)
    if not await cache.has_hospital_index():
        await cache.index_hospitals(
            (str(h.id), h.location.lng, h.location.lat) for h in directory
        )

    by_id = {str(h.id): h for h in directory}
    nearby = []
    for hit in await cache.get_nearby_hospitals(lat, lng, radius_km, count=count):
        hospital = by_id.get(hit["hospital_id"])
        # GEO set may briefly outlive a directory entry
        if hospital is not None:
            nearby.append(hospital.model_copy(update={"distance_km": round(hit["distance_km"], 2)}))
    return nearby


# ── Endpoints ─────────────────────────────────────────────────

@router.get("", response_model=List[HospitalResponse])
async def list_hospitals(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: Optional[float] = Query(None, alias="radiusKm", gt=0, le=1000),
    type_: Optional[str] = Query(None, alias="type", pattern="^(public|private)$"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Whole directory by name, or, when `lat`/`lng` are given, hospitals within
    `radiusKm` sorted by distance.
    """
    if (lat is None) != (lng is None):
        raise ValidationError("Both lat and lng are required for a radius search")

    cache = RedisCache(redis)
    if lat is not None:
        hospitals = await _search_nearby(
            db, cache, lat, lng, radius_km or settings.HOSPITAL_DEFAULT_RADIUS_KM
        )
    else:
        hospitals = await _load_directory(db, cache)
    if type_ is not None:
        hospitals = [h for h in hospitals if h.type == type_]
    return hospitals


@router.get("/nearest", response_model=HospitalResponse)
async def nearest_hospital(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    max_distance_km: float = Query(NEAREST_MAX_DISTANCE_KM, alias="maxDistanceKm", gt=0, le=1000),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    hospitals = await _search_nearby(db, RedisCache(redis), lat, lng, max_distance_km, count=1)
    if not hospitals:
        raise NotFoundError(f"No hospital within {max_distance_km:g} km")
    return hospitals[0]


@router.post("", response_model=HospitalResponse, status_code=status.HTTP_201_CREATED)
async def create_hospital(
    data: HospitalCreateRequest,
    ctx: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    hospital = Hospital(
        name=data.name,
        address=data.address,
        lat=data.location.lat,
        lng=data.location.lng,
        phone=data.phone,
        type=HospitalType(data.type),
        services=data.services,
    )
    db.add(hospital)
    await db.commit()
    cache = RedisCache(redis)
    await cache.delete(CACHE_KEY)
    await cache.add_hospital_location(str(hospital.id), hospital.lng, hospital.lat)
    logger.info(f"Hospital {hospital.id} ({hospital.name}) added by admin {ctx.user_id}")
    return _to_response(hospital)
