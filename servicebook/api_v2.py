from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .api import unprocessable, to_service_point_out
from .db import get_db
from .schemas import ServicePointCreate, ServicePointOut, ServicePointStatusUpdate, ServicePointUpdate
from .services import (
    create_service_point,
    delete_service_point,
    get_partner,
    get_service_point,
    list_cities,
    list_regions,
    list_service_points,
    set_service_point_status,
    update_service_point,
)

router = APIRouter(prefix="/api/v2")


@router.get("/service-points", response_model=List[ServicePointOut])
def service_points_index(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
):
    rows = list_service_points(db, include_inactive=True, status_filter=status_filter)
    return [to_service_point_out(db, p) for p in rows]


@router.post("/service-points", response_model=ServicePointOut, status_code=status.HTTP_201_CREATED)
def service_points_store(payload: ServicePointCreate, db: Session = Depends(get_db)):
    try:
        point = create_service_point(db, payload.model_dump())
    except ValueError as exc:
        raise unprocessable(exc)
    return to_service_point_out(db, point)


@router.get("/service-points/filter", response_model=List[ServicePointOut])
def service_points_filter(
    region: Optional[str] = Query(default=None),
    city: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    rows = list_service_points(db, region=region, city=city)
    return [to_service_point_out(db, p) for p in rows]


@router.get("/service-points/{service_point_id}", response_model=ServicePointOut)
def service_points_show(service_point_id: int, db: Session = Depends(get_db)):
    point = get_service_point(db, service_point_id)
    if not point:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return to_service_point_out(db, point)


@router.put("/service-points/{service_point_id}", response_model=ServicePointOut)
def service_points_update(
    service_point_id: int,
    payload: ServicePointUpdate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        point = update_service_point(
            db, service_point_id, payload.model_dump(exclude_unset=True), actor=x_actor_email
        )
    except ValueError as exc:
        raise unprocessable(exc)
    if not point:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return to_service_point_out(db, point)


@router.patch("/service-points/{service_point_id}/status", response_model=ServicePointOut)
def service_points_update_status(
    service_point_id: int,
    payload: ServicePointStatusUpdate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    point = set_service_point_status(db, service_point_id, payload.status, actor=x_actor_email)
    if not point:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return to_service_point_out(db, point)


@router.delete("/service-points/{service_point_id}", status_code=status.HTTP_204_NO_CONTENT)
def service_points_destroy(service_point_id: int, db: Session = Depends(get_db)):
    if not delete_service_point(db, service_point_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/partners/{partner_id}/service-points", response_model=List[ServicePointOut])
def partner_service_points(partner_id: int, db: Session = Depends(get_db)):
    if not get_partner(db, partner_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    rows = list_service_points(db, include_inactive=True, partner_id=partner_id)
    return [to_service_point_out(db, p) for p in rows]


@router.get("/regions", response_model=List[str])
def regions_index(db: Session = Depends(get_db)):
    return list_regions(db)


@router.get("/regions/{region}/cities", response_model=List[str])
def region_cities(region: str, db: Session = Depends(get_db)):
    return list_cities(db, region=region)


@router.get("/cities", response_model=List[str])
def cities_index(db: Session = Depends(get_db)):
    return list_cities(db)
