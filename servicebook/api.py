from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .core.statuses import is_active_status, normalize_status
from .db import get_db
from .models import Booking, Partner, Schedule, ServicePoint
from .schemas import (
    AvailableDayOut,
    BookingCreate,
    BookingOut,
    BookingStatusEventOut,
    BookingUpdate,
    NextSlotOut,
    PartnerCreate,
    PartnerOut,
    PartnerUpdate,
    ScheduleCreate,
    ScheduleGenerate,
    ScheduleGenerateOut,
    ScheduleOut,
    ScheduleUpdate,
    ServiceComment,
    ServiceCreate,
    ServiceOut,
    ServicePointCreate,
    ServicePointOut,
    ServicePointStatusUpdate,
    ServicePointUpdate,
    ServiceUpdate,
    SlotPreviewOut,
)
from .services import (
    available_days,
    create_booking,
    create_next_slot,
    create_partner,
    create_schedule,
    create_service,
    create_service_point,
    delete_booking,
    delete_partner,
    delete_schedule,
    delete_service,
    delete_service_point,
    format_time,
    generate_schedule,
    get_booking,
    get_partner,
    get_schedule,
    get_service,
    get_service_point,
    list_available_slots,
    list_booking_status_events,
    list_bookings,
    list_partners,
    list_point_services,
    list_schedules,
    list_service_points,
    list_services,
    local_now,
    next_slot_info,
    set_service_point_services,
    set_service_point_status,
    slot_preview,
    transition_schedule,
    update_booking,
    update_partner,
    update_schedule,
    update_service,
    update_service_point,
)

router = APIRouter(prefix="/api")


def unprocessable(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=422, detail=str(exc))


def _to_partner_out(p: Partner) -> PartnerOut:
    return PartnerOut(
        id=p.id,
        user_id=p.user_id,
        company_name=p.company_name,
        contact_person=p.contact_person,
        phone=p.phone,
        address=p.address,
        email=p.user.email if p.user else None,
        status=normalize_status(p.status),
        is_active=is_active_status(p.status),
        created_at=p.created_at,
    )


def to_service_point_out(db: Session, p: ServicePoint) -> ServicePointOut:
    attached = list_point_services(db, p)
    return ServicePointOut(
        id=p.id,
        partner_id=p.partner_id,
        name=p.name,
        region=p.region,
        city=p.city,
        address=p.address,
        lat=p.lat,
        lng=p.lng,
        description=p.description,
        contact_info=p.contact_info,
        notes=p.notes,
        working_hours=p.working_hours or {},
        service_posts=p.service_posts or [],
        num_posts=p.num_posts,
        status=normalize_status(p.status),
        is_active=is_active_status(p.status),
        services=[service.id for service, _ in attached],
        service_comments=[ServiceComment(service_id=service.id, comment=comment) for service, comment in attached],
        created_at=p.created_at,
    )


def _to_schedule_out(s: Schedule) -> ScheduleOut:
    return ScheduleOut(
        id=s.id,
        service_point_id=s.service_point_id,
        post_number=s.post_number,
        date=s.date,
        start_time=format_time(s.start_time),
        end_time=format_time(s.end_time),
        status=s.status,
    )


def _to_booking_out(b: Booking) -> BookingOut:
    slot = b.schedule
    start = format_time(slot.start_time) if slot else None
    end = format_time(slot.end_time) if slot else None
    return BookingOut(
        id=b.id,
        schedule_id=b.schedule_id,
        service_point_id=b.service_point_id,
        client_id=b.client_id,
        full_name=b.full_name,
        phone=b.phone,
        car_number=b.car_number,
        vehicle_brand=b.vehicle_brand,
        vehicle_type=b.vehicle_type,
        notes=b.notes,
        status=b.status,
        date=slot.date if slot else None,
        time=start,
        time_slot=f"{start} - {end}" if slot else None,
        schedule_status=slot.status if slot else None,
        created_at=b.created_at,
        updated_at=b.updated_at,
    )


def _point_or_404(db: Session, service_point_id: int) -> ServicePoint:
    point = get_service_point(db, service_point_id)
    if not point:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return point


@router.get("/partners", response_model=List[PartnerOut])
def partners_index(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
):
    return [_to_partner_out(p) for p in list_partners(db, status_filter=status_filter)]


@router.post("/partners", response_model=PartnerOut, status_code=status.HTTP_201_CREATED)
def partners_store(payload: PartnerCreate, db: Session = Depends(get_db)):
    try:
        partner = create_partner(
            db=db,
            email=payload.email,
            company_name=payload.company_name,
            contact_person=payload.contact_person,
            phone=payload.phone,
            address=payload.address,
            status=payload.status,
        )
    except ValueError as exc:
        raise unprocessable(exc)
    return _to_partner_out(partner)


@router.get("/partners/{partner_id}", response_model=PartnerOut)
def partners_show(partner_id: int, db: Session = Depends(get_db)):
    partner = get_partner(db, partner_id)
    if not partner:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    return _to_partner_out(partner)


@router.put("/partners/{partner_id}", response_model=PartnerOut)
@router.patch("/partners/{partner_id}", response_model=PartnerOut)
def partners_update(partner_id: int, payload: PartnerUpdate, db: Session = Depends(get_db)):
    partner = update_partner(db, partner_id, payload.model_dump(exclude_unset=True))
    if not partner:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    return _to_partner_out(partner)


@router.delete("/partners/{partner_id}", status_code=status.HTTP_204_NO_CONTENT)
def partners_destroy(partner_id: int, db: Session = Depends(get_db)):
    outcome = delete_partner(db, partner_id)
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    if outcome == "deactivated":
        raise HTTPException(
            status_code=422,
            detail="Partner has bookings and cannot be deleted; the partner and its service points were suspended",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/partners/{partner_id}/service-points", response_model=List[ServicePointOut])
def partners_service_points(
    partner_id: int,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    if not get_partner(db, partner_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Partner not found")
    rows = list_service_points(db, include_inactive=include_inactive, partner_id=partner_id)
    return [to_service_point_out(db, p) for p in rows]


@router.get("/services", response_model=List[ServiceOut])
def services_index(
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
):
    return [
        ServiceOut(id=s.id, name=s.name, description=s.description, is_active=s.is_active)
        for s in list_services(db, include_inactive=include_inactive)
    ]


@router.post("/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def services_store(payload: ServiceCreate, db: Session = Depends(get_db)):
    try:
        s = create_service(db, payload.name, description=payload.description, is_active=payload.is_active)
    except ValueError as exc:
        raise unprocessable(exc)
    return ServiceOut(id=s.id, name=s.name, description=s.description, is_active=s.is_active)


@router.get("/services/{service_id}", response_model=ServiceOut)
def services_show(service_id: int, db: Session = Depends(get_db)):
    s = get_service(db, service_id)
    if not s:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return ServiceOut(id=s.id, name=s.name, description=s.description, is_active=s.is_active)


@router.put("/services/{service_id}", response_model=ServiceOut)
@router.patch("/services/{service_id}", response_model=ServiceOut)
def services_update(service_id: int, payload: ServiceUpdate, db: Session = Depends(get_db)):
    try:
        s = update_service(db, service_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise unprocessable(exc)
    if not s:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return ServiceOut(id=s.id, name=s.name, description=s.description, is_active=s.is_active)


@router.delete("/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
def services_destroy(service_id: int, db: Session = Depends(get_db)):
    if not delete_service(db, service_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/service-points", response_model=List[ServicePointOut])
def service_points_index(
    include_inactive: bool = Query(default=False),
    partner_id: Optional[int] = Query(default=None),
    region: Optional[str] = Query(default=None),
    city: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    rows = list_service_points(
        db,
        include_inactive=include_inactive,
        partner_id=partner_id,
        region=region,
        city=city,
    )
    return [to_service_point_out(db, p) for p in rows]


@router.post("/service-points", response_model=ServicePointOut, status_code=status.HTTP_201_CREATED)
def service_points_store(payload: ServicePointCreate, db: Session = Depends(get_db)):
    try:
        point = create_service_point(db, payload.model_dump())
    except ValueError as exc:
        raise unprocessable(exc)
    return to_service_point_out(db, point)


@router.get("/service-points/{service_point_id}", response_model=ServicePointOut)
def service_points_show(service_point_id: int, db: Session = Depends(get_db)):
    return to_service_point_out(db, _point_or_404(db, service_point_id))


@router.put("/service-points/{service_point_id}", response_model=ServicePointOut)
@router.patch("/service-points/{service_point_id}", response_model=ServicePointOut)
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


@router.get("/service-points/{service_point_id}/services", response_model=List[ServiceOut])
def service_points_services(service_point_id: int, db: Session = Depends(get_db)):
    point = _point_or_404(db, service_point_id)
    return [
        ServiceOut(
            id=service.id,
            name=service.name,
            description=service.description,
            is_active=service.is_active,
            comment=comment,
        )
        for service, comment in list_point_services(db, point)
    ]


@router.put("/service-points/{service_point_id}/services", response_model=ServicePointOut)
def service_points_replace_services(
    service_point_id: int,
    payload: List[ServiceComment],
    db: Session = Depends(get_db),
):
    try:
        point = set_service_point_services(db, service_point_id, [item.model_dump() for item in payload])
    except ValueError as exc:
        raise unprocessable(exc)
    if not point:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return to_service_point_out(db, point)


@router.post(
    "/service-points/{service_point_id}/schedule",
    response_model=ScheduleGenerateOut,
    status_code=status.HTTP_201_CREATED,
)
def service_points_generate_schedule(
    service_point_id: int,
    payload: ScheduleGenerate,
    db: Session = Depends(get_db),
):
    try:
        result = generate_schedule(
            db=db,
            service_point_id=service_point_id,
            day=payload.date,
            post_number=payload.post_number,
            slot_duration=payload.slot_duration,
        )
    except ValueError as exc:
        raise unprocessable(exc)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service point not found")
    return ScheduleGenerateOut(
        service_point_id=result["service_point_id"],
        date=result["date"],
        post_number=result["post_number"],
        slot_duration=result["slot_duration"],
        created=[_to_schedule_out(s) for s in result["created"]],
        skipped=result["skipped"],
    )


@router.get("/service-points/{service_point_id}/slots", response_model=List[ScheduleOut])
def service_points_slots(
    service_point_id: int,
    day: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
):
    point = _point_or_404(db, service_point_id)
    rows = list_available_slots(db, point.id, day or local_now().date())
    return [_to_schedule_out(s) for s in rows]


@router.get("/service-points/{service_point_id}/slots-preview", response_model=SlotPreviewOut)
def service_points_slots_preview(service_point_id: int, db: Session = Depends(get_db)):
    point = _point_or_404(db, service_point_id)
    return SlotPreviewOut(service_point_id=point.id, slots=slot_preview(point))


@router.get("/service-points/{service_point_id}/available-days", response_model=List[AvailableDayOut])
def service_points_available_days(
    service_point_id: int,
    days: Optional[int] = Query(default=None, ge=1, le=90),
    db: Session = Depends(get_db),
):
    point = _point_or_404(db, service_point_id)
    try:
        rows = available_days(point, days=days)
    except ValueError as exc:
        raise unprocessable(exc)
    return [AvailableDayOut(**row) for row in rows]


@router.get("/schedules", response_model=List[ScheduleOut])
def schedules_index(
    service_point_id: Optional[int] = Query(default=None),
    day: Optional[date] = Query(default=None, alias="date"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    post_number: Optional[int] = Query(default=None, ge=1),
    limit: int = Query(default=500, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    rows = list_schedules(
        db,
        service_point_id=service_point_id,
        day=day,
        status_filter=status_filter,
        post_number=post_number,
        limit=limit,
    )
    return [_to_schedule_out(s) for s in rows]


@router.post("/schedules", response_model=ScheduleOut, status_code=status.HTTP_201_CREATED)
def schedules_store(payload: ScheduleCreate, db: Session = Depends(get_db)):
    try:
        row = create_schedule(
            db,
            service_point_id=payload.service_point_id,
            day=payload.date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            post_number=payload.post_number,
        )
    except ValueError as exc:
        raise unprocessable(exc)
    return _to_schedule_out(row)


@router.get("/schedules/{schedule_id}", response_model=ScheduleOut)
def schedules_show(schedule_id: int, db: Session = Depends(get_db)):
    row = get_schedule(db, schedule_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(row)


@router.put("/schedules/{schedule_id}", response_model=ScheduleOut)
def schedules_update(schedule_id: int, payload: ScheduleUpdate, db: Session = Depends(get_db)):
    try:
        row = update_schedule(db, schedule_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise unprocessable(exc)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(row)


@router.delete("/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
def schedules_destroy(schedule_id: int, db: Session = Depends(get_db)):
    try:
        ok = delete_schedule(db, schedule_id)
    except ValueError as exc:
        raise unprocessable(exc)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _transition(db: Session, schedule_id: int, action: str, actor: Optional[str]) -> ScheduleOut:
    try:
        row = transition_schedule(db, schedule_id, action, actor=actor)
    except ValueError as exc:
        raise unprocessable(exc)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(row)


@router.post("/schedules/{schedule_id}/book", response_model=ScheduleOut)
def schedules_book(
    schedule_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    return _transition(db, schedule_id, "book", x_actor_email)


@router.post("/schedules/{schedule_id}/complete", response_model=ScheduleOut)
def schedules_complete(
    schedule_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    return _transition(db, schedule_id, "complete", x_actor_email)


@router.post("/schedules/{schedule_id}/cancel", response_model=ScheduleOut)
def schedules_cancel(
    schedule_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    return _transition(db, schedule_id, "cancel", x_actor_email)


@router.post("/schedules/{schedule_id}/reopen", response_model=ScheduleOut)
def schedules_reopen(
    schedule_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    return _transition(db, schedule_id, "reopen", x_actor_email)


@router.get("/schedules/{schedule_id}/next", response_model=NextSlotOut)
def schedules_can_iterate(schedule_id: int, db: Session = Depends(get_db)):
    row = get_schedule(db, schedule_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    try:
        info = next_slot_info(db, row)
    except ValueError as exc:
        raise unprocessable(exc)
    return NextSlotOut(**info)


@router.post("/schedules/{schedule_id}/next", response_model=ScheduleOut, status_code=status.HTTP_201_CREATED)
def schedules_create_next(schedule_id: int, db: Session = Depends(get_db)):
    try:
        row = create_next_slot(db, schedule_id)
    except ValueError as exc:
        raise unprocessable(exc)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return _to_schedule_out(row)


@router.get("/bookings", response_model=List[BookingOut])
def bookings_index(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    service_point_id: Optional[int] = Query(default=None),
    day: Optional[date] = Query(default=None, alias="date"),
    limit: int = Query(default=500, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    rows = list_bookings(
        db,
        status_filter=status_filter,
        service_point_id=service_point_id,
        day=day,
        limit=limit,
    )
    return [_to_booking_out(b) for b in rows]


@router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def bookings_store(
    payload: BookingCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        booking = create_booking(
            db=db,
            schedule_id=payload.schedule_id,
            service_point_id=payload.service_point_id,
            client_id=payload.client_id,
            full_name=payload.full_name,
            phone=payload.phone,
            car_number=payload.car_number,
            vehicle_brand=payload.vehicle_brand,
            vehicle_type=payload.vehicle_type,
            notes=payload.notes,
            status=payload.status,
            idempotency_key=idempotency_key,
            actor=x_actor_email,
        )
    except ValueError as exc:
        raise unprocessable(exc)
    return _to_booking_out(booking)


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def bookings_show(booking_id: int, db: Session = Depends(get_db)):
    booking = get_booking(db, booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return _to_booking_out(booking)


@router.put("/bookings/{booking_id}", response_model=BookingOut)
@router.patch("/bookings/{booking_id}", response_model=BookingOut)
def bookings_update(
    booking_id: int,
    payload: BookingUpdate,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        booking = update_booking(db, booking_id, payload.model_dump(exclude_unset=True), actor=x_actor_email)
    except ValueError as exc:
        raise unprocessable(exc)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return _to_booking_out(booking)


@router.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def bookings_destroy(booking_id: int, db: Session = Depends(get_db)):
    if not delete_booking(db, booking_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/bookings/{booking_id}/history", response_model=list[BookingStatusEventOut])
def bookings_history(booking_id: int, db: Session = Depends(get_db)):
    if not get_booking(db, booking_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return [
        BookingStatusEventOut(
            id=row.id,
            booking_id=row.booking_id,
            from_status=row.from_status,
            to_status=row.to_status,
            action=row.action,
            actor=row.actor,
            note=row.note,
            created_at=row.created_at,
        )
        for row in list_booking_status_events(db, booking_id)
    ]
