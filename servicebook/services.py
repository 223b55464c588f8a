from datetime import date, datetime, time

import structlog
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.availability import PointAvailability
from .core.slots import (
    calculate_slot_preview,
    day_window,
    format_minutes,
    generate_slots,
    minutes_to_time,
    parse_hhmm,
)
from .core.statuses import STATUS_ACTIVE, STATUS_SUSPENDED, aliases_of, normalize_status
from .models import (
    Booking,
    BookingStatusEvent,
    Partner,
    Schedule,
    Service,
    ServicePoint,
    ServicePointService,
    User,
    utc_now_naive,
)

logger = structlog.get_logger("servicebook.services")

SCHEDULE_ACTIONS = {
    # action: (required current status, resulting status, error message)
    "complete": ("booked", "completed", "Schedule must be booked before completing"),
    "cancel": ("booked", "cancelled", "Only booked schedules can be cancelled"),
    "reopen": ("cancelled", "available", "Only cancelled schedules can be reopened"),
}

BOOKING_STATUSES = {"pending", "confirmed", "completed", "cancelled"}
ACTIVE_BOOKING_STATUSES = {"pending", "confirmed"}
BOOKING_TO_SCHEDULE_STATUS = {
    "pending": "booked",
    "confirmed": "booked",
    "completed": "completed",
    "cancelled": "available",
}
ALLOWED_BOOKING_STATUS_TRANSITIONS = {
    "pending": {"confirmed", "completed", "cancelled"},
    "confirmed": {"pending", "completed", "cancelled"},
    "cancelled": {"pending", "confirmed"},
    "completed": set(),
}


def local_now() -> datetime:
    return datetime.now()


def format_time(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def list_partners(db: Session, status_filter: str | None = None) -> list[Partner]:
    stmt = select(Partner).order_by(Partner.id.asc())
    rows = list(db.execute(stmt).scalars().all())
    if status_filter:
        wanted = normalize_status(status_filter)
        rows = [p for p in rows if normalize_status(p.status) == wanted]
    return rows


def get_partner(db: Session, partner_id: int) -> Partner | None:
    return db.get(Partner, partner_id)


def create_partner(
    db: Session,
    email: str,
    company_name: str,
    phone: str,
    contact_person: str | None = None,
    address: str | None = None,
    status: str = STATUS_ACTIVE,
) -> Partner:
    normalized_email = email.strip().lower()
    existing = db.execute(select(User).where(User.email == normalized_email)).scalar_one_or_none()
    if existing:
        raise ValueError("A user with this email already exists")

    company = company_name.strip()
    contact = _clean(contact_person) or company
    user = User(name=contact, email=normalized_email, role="partner")
    db.add(user)
    db.flush()

    partner = Partner(
        user_id=user.id,
        company_name=company,
        contact_person=contact,
        phone=_clean(phone),
        address=_clean(address),
        status=normalize_status(status),
    )
    db.add(partner)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("A user with this email already exists") from None
    db.refresh(partner)
    logger.info("partner_created", partner_id=partner.id, user_id=user.id)
    return partner


def update_partner(db: Session, partner_id: int, fields: dict) -> Partner | None:
    partner = get_partner(db, partner_id)
    if not partner:
        return None
    for key in ("company_name", "contact_person", "phone", "address"):
        if key in fields and fields[key] is not None:
            setattr(partner, key, fields[key].strip())
    if fields.get("status") is not None:
        partner.status = normalize_status(fields["status"])
    db.commit()
    db.refresh(partner)
    return partner


def delete_partner(db: Session, partner_id: int) -> str | None:
    """Delete a partner with its user account, or deactivate it when its points have bookings.

    Returns ``"deleted"``, ``"deactivated"`` or ``None`` when the partner does not exist.
    """
    partner = get_partner(db, partner_id)
    if not partner:
        return None

    point_ids = select(ServicePoint.id).where(ServicePoint.partner_id == partner.id)
    has_bookings = (
        db.execute(select(Booking.id).where(Booking.service_point_id.in_(point_ids))).first() is not None
    )
    if has_bookings:
        partner.status = STATUS_SUSPENDED
        db.execute(
            update(ServicePoint)
            .where(ServicePoint.partner_id == partner.id)
            .values(status=STATUS_SUSPENDED, updated_at=utc_now_naive())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info("partner_deactivated", partner_id=partner_id, reason="has_bookings")
        return "deactivated"

    db.execute(
        update(ServicePoint)
        .where(ServicePoint.partner_id == partner.id, ServicePoint.deleted_at.is_(None))
        .values(deleted_at=utc_now_naive())
        .execution_options(synchronize_session=False)
    )
    user = partner.user
    db.delete(partner)
    if user is not None:
        db.delete(user)
    db.commit()
    logger.info("partner_deleted", partner_id=partner_id)
    return "deleted"


def list_services(db: Session, include_inactive: bool = True) -> list[Service]:
    stmt = select(Service).where(Service.deleted_at.is_(None)).order_by(Service.name.asc())
    if not include_inactive:
        stmt = stmt.where(Service.is_active.is_(True))
    return list(db.execute(stmt).scalars().all())


def get_service(db: Session, service_id: int) -> Service | None:
    service = db.get(Service, service_id)
    if service is None or service.deleted_at is not None:
        return None
    return service


def _service_name_taken(db: Session, name: str, skip_id: int | None = None) -> bool:
    stmt = select(Service.id).where(Service.name == name)
    if skip_id is not None:
        stmt = stmt.where(Service.id != skip_id)
    return db.execute(stmt).first() is not None


def create_service(
    db: Session, name: str, description: str | None = None, is_active: bool = True
) -> Service:
    normalized_name = name.strip()
    if _service_name_taken(db, normalized_name):
        raise ValueError("Service with this name already exists")
    service = Service(name=normalized_name, description=_clean(description), is_active=bool(is_active))
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


def update_service(db: Session, service_id: int, fields: dict) -> Service | None:
    service = get_service(db, service_id)
    if not service:
        return None
    if fields.get("name") is not None:
        normalized_name = fields["name"].strip()
        if _service_name_taken(db, normalized_name, skip_id=service.id):
            raise ValueError("Service with this name already exists")
        service.name = normalized_name
    if "description" in fields:
        service.description = _clean(fields["description"])
    if fields.get("is_active") is not None:
        service.is_active = bool(fields["is_active"])
    db.commit()
    db.refresh(service)
    return service


def delete_service(db: Session, service_id: int) -> bool:
    service = get_service(db, service_id)
    if not service:
        return False
    service.deleted_at = utc_now_naive()
    db.execute(delete(ServicePointService).where(ServicePointService.service_id == service.id))
    db.commit()
    return True


def _points_query(include_inactive: bool = False):
    stmt = select(ServicePoint).where(ServicePoint.deleted_at.is_(None))
    if not include_inactive:
        stmt = stmt.where(ServicePoint.status.in_(aliases_of(STATUS_ACTIVE)))
    return stmt


def list_service_points(
    db: Session,
    include_inactive: bool = False,
    status_filter: str | None = None,
    partner_id: int | None = None,
    region: str | None = None,
    city: str | None = None,
) -> list[ServicePoint]:
    stmt = _points_query(include_inactive=include_inactive or bool(status_filter))
    if partner_id is not None:
        stmt = stmt.where(ServicePoint.partner_id == partner_id)
    if region:
        stmt = stmt.where(ServicePoint.region == region.strip())
    if city:
        stmt = stmt.where(ServicePoint.city == city.strip())
    rows = list(db.execute(stmt.order_by(ServicePoint.id.asc())).scalars().all())
    if status_filter:
        wanted = normalize_status(status_filter)
        rows = [p for p in rows if normalize_status(p.status) == wanted]
    return rows


def get_service_point(db: Session, service_point_id: int) -> ServicePoint | None:
    point = db.get(ServicePoint, service_point_id)
    if point is None or point.deleted_at is not None:
        return None
    return point


def _set_point_services(db: Session, point: ServicePoint, services: list[dict]) -> None:
    comments: dict[int, str | None] = {}
    for item in services:
        comments[int(item["service_id"])] = _clean(item.get("comment"))

    if comments:
        found = set(
            db.execute(
                select(Service.id).where(Service.id.in_(list(comments)), Service.deleted_at.is_(None))
            ).scalars()
        )
        missing = sorted(set(comments) - found)
        if missing:
            raise ValueError(f"Unknown service ids: {', '.join(str(x) for x in missing)}")

    existing = {link.service_id: link for link in point.service_links}
    for service_id, link in existing.items():
        if service_id not in comments:
            point.service_links.remove(link)
    for service_id, comment in comments.items():
        link = existing.get(service_id)
        if link is None:
            point.service_links.append(ServicePointService(service_id=service_id, comment=comment))
        else:
            link.comment = comment


_POINT_FIELDS = (
    "name",
    "region",
    "city",
    "address",
    "lat",
    "lng",
    "description",
    "contact_info",
    "notes",
    "working_hours",
    "service_posts",
    "num_posts",
)


def create_service_point(db: Session, fields: dict) -> ServicePoint:
    partner = get_partner(db, int(fields["partner_id"]))
    if not partner:
        raise ValueError("Partner not found")

    point = ServicePoint(
        partner_id=partner.id,
        status=normalize_status(fields.get("status")),
        **{key: fields.get(key) for key in _POINT_FIELDS},
    )
    if point.working_hours is None:
        point.working_hours = {}
    if point.service_posts is None:
        point.service_posts = []
    db.add(point)
    try:
        _set_point_services(db, point, fields.get("services") or [])
    except ValueError:
        db.rollback()
        raise
    db.commit()
    db.refresh(point)
    logger.info("service_point_created", service_point_id=point.id, partner_id=partner.id)
    return point


def update_service_point(
    db: Session, service_point_id: int, fields: dict, actor: str | None = None
) -> ServicePoint | None:
    point = get_service_point(db, service_point_id)
    if not point:
        return None
    old_status = normalize_status(point.status)

    if fields.get("partner_id") is not None and fields["partner_id"] != point.partner_id:
        if not get_partner(db, int(fields["partner_id"])):
            raise ValueError("Partner not found")
        point.partner_id = int(fields["partner_id"])
    for key in _POINT_FIELDS:
        if key in fields and fields[key] is not None:
            setattr(point, key, fields[key])
    if fields.get("status") is not None:
        point.status = normalize_status(fields["status"])
    if fields.get("services") is not None:
        try:
            _set_point_services(db, point, fields["services"])
        except ValueError:
            db.rollback()
            raise
    db.commit()
    db.refresh(point)
    if point.status != old_status:
        logger.info(
            "service_point_status_changed",
            service_point_id=point.id,
            old_status=old_status,
            new_status=point.status,
            actor=actor,
        )
    return point


def set_service_point_status(
    db: Session, service_point_id: int, status: str, actor: str | None = None
) -> ServicePoint | None:
    point = get_service_point(db, service_point_id)
    if not point:
        return None
    old_status = normalize_status(point.status)
    point.status = normalize_status(status)
    db.commit()
    db.refresh(point)
    logger.info(
        "service_point_status_changed",
        service_point_id=point.id,
        old_status=old_status,
        new_status=point.status,
        actor=actor,
    )
    return point


def set_service_point_services(
    db: Session, service_point_id: int, services: list[dict]
) -> ServicePoint | None:
    point = get_service_point(db, service_point_id)
    if not point:
        return None
    try:
        _set_point_services(db, point, services)
    except ValueError:
        db.rollback()
        raise
    db.commit()
    db.refresh(point)
    return point


def delete_service_point(db: Session, service_point_id: int) -> bool:
    point = get_service_point(db, service_point_id)
    if not point:
        return False
    point.deleted_at = utc_now_naive()
    db.commit()
    logger.info("service_point_deleted", service_point_id=service_point_id)
    return True


def list_point_services(db: Session, point: ServicePoint) -> list[tuple[Service, str | None]]:
    return [
        (link.service, link.comment)
        for link in point.service_links
        if link.service is not None and link.service.deleted_at is None
    ]


def list_regions(db: Session) -> list[str]:
    stmt = (
        select(ServicePoint.region)
        .where(
            ServicePoint.deleted_at.is_(None),
            ServicePoint.status.in_(aliases_of(STATUS_ACTIVE)),
            ServicePoint.region.is_not(None),
            ServicePoint.region != "",
        )
        .distinct()
        .order_by(ServicePoint.region.asc())
    )
    return list(db.execute(stmt).scalars().all())


def list_cities(db: Session, region: str | None = None) -> list[str]:
    stmt = select(ServicePoint.city).where(
        ServicePoint.deleted_at.is_(None),
        ServicePoint.status.in_(aliases_of(STATUS_ACTIVE)),
        ServicePoint.city.is_not(None),
        ServicePoint.city != "",
    )
    if region is not None:
        stmt = stmt.where(ServicePoint.region == region)
    stmt = stmt.distinct().order_by(ServicePoint.city.asc())
    return list(db.execute(stmt).scalars().all())


def slot_preview(point: ServicePoint) -> dict[str, int]:
    return calculate_slot_preview(point.service_posts or [])


def available_days(point: ServicePoint, start: date | None = None, days: int | None = None) -> list[dict]:
    availability = PointAvailability(point.working_hours, country=settings.HOLIDAYS_COUNTRY or None)
    return availability.available_days(
        start or local_now().date(),
        int(days if days is not None else settings.AVAILABLE_DAYS_AHEAD),
    )


def _post_count(point: ServicePoint) -> int | None:
    posts = point.service_posts or []
    if posts:
        return len(posts)
    return point.num_posts


def _resolve_post(point: ServicePoint, post_number: int) -> dict | None:
    count = _post_count(point)
    if post_number < 1 or (count is not None and post_number > count):
        raise ValueError(f"Post {post_number} does not exist at this service point")
    posts = point.service_posts or []
    if post_number <= len(posts):
        return posts[post_number - 1]
    return None


def _existing_start_times(db: Session, service_point_id: int, post_number: int, day: date) -> set[time]:
    stmt = select(Schedule.start_time).where(
        Schedule.service_point_id == service_point_id,
        Schedule.post_number == post_number,
        Schedule.date == day,
    )
    return set(db.execute(stmt).scalars().all())


def generate_schedule(
    db: Session,
    service_point_id: int,
    day: date,
    post_number: int = 1,
    slot_duration: int | None = None,
    today: date | None = None,
) -> dict | None:
    """Create one ``available`` slot per interval of the day's working window.

    Slots that already exist for the same post, date and start are skipped;
    everything else is inserted in a single commit.
    """
    point = get_service_point(db, service_point_id)
    if not point:
        return None

    if day < (today or local_now().date()):
        raise ValueError("Date must be today or later")

    post = _resolve_post(point, post_number)
    if slot_duration is not None:
        duration = slot_duration
    else:
        duration = (post or {}).get("service_time_minutes")
    if duration is None:
        raise ValueError("slot_duration is required when the post has no service time")
    duration = int(duration)
    if not settings.SLOT_DURATION_MIN <= duration <= settings.SLOT_DURATION_MAX:
        raise ValueError(
            f"Slot duration must be between {settings.SLOT_DURATION_MIN} "
            f"and {settings.SLOT_DURATION_MAX} minutes"
        )

    window = day_window(point.working_hours, day)
    if window is None:
        raise ValueError("Service point is closed on this day")
    open_min, close_min = window

    existing = _existing_start_times(db, point.id, post_number, day)
    created: list[Schedule] = []
    skipped = 0
    for start_min, end_min in generate_slots(open_min, close_min, duration):
        start = minutes_to_time(start_min)
        if start in existing:
            skipped += 1
            continue
        row = Schedule(
            service_point_id=point.id,
            post_number=post_number,
            date=day,
            start_time=start,
            end_time=minutes_to_time(end_min),
            status="available",
        )
        db.add(row)
        created.append(row)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("Schedule changed concurrently; retry the generation") from None

    logger.info(
        "schedule_generated",
        service_point_id=point.id,
        date=day.isoformat(),
        post_number=post_number,
        slot_duration=duration,
        created=len(created),
        skipped=skipped,
    )
    return {
        "service_point_id": point.id,
        "date": day,
        "post_number": post_number,
        "slot_duration": duration,
        "created": created,
        "skipped": skipped,
    }


def _not_started_clause(now: datetime):
    return or_(
        Schedule.date > now.date(),
        and_(Schedule.date == now.date(), Schedule.start_time > now.time()),
    )


def list_available_slots(
    db: Session, service_point_id: int, day: date, now: datetime | None = None
) -> list[Schedule]:
    stmt = (
        select(Schedule)
        .where(
            Schedule.service_point_id == service_point_id,
            Schedule.date == day,
            Schedule.status == "available",
            _not_started_clause(now or local_now()),
        )
        .order_by(Schedule.start_time.asc(), Schedule.post_number.asc())
    )
    return list(db.execute(stmt).scalars().all())


def list_schedules(
    db: Session,
    service_point_id: int | None = None,
    day: date | None = None,
    status_filter: str | None = None,
    post_number: int | None = None,
    limit: int = 500,
) -> list[Schedule]:
    stmt = select(Schedule)
    if service_point_id is not None:
        stmt = stmt.where(Schedule.service_point_id == service_point_id)
    if day is not None:
        stmt = stmt.where(Schedule.date == day)
    if status_filter:
        stmt = stmt.where(Schedule.status == status_filter.strip().lower())
    if post_number is not None:
        stmt = stmt.where(Schedule.post_number == post_number)
    stmt = stmt.order_by(
        Schedule.date.asc(), Schedule.start_time.asc(), Schedule.post_number.asc()
    ).limit(limit)
    return list(db.execute(stmt).scalars().all())


def get_schedule(db: Session, schedule_id: int) -> Schedule | None:
    return db.get(Schedule, schedule_id)


def _slot_taken(
    db: Session,
    service_point_id: int,
    post_number: int,
    day: date,
    start: time,
    skip_id: int | None = None,
) -> bool:
    stmt = select(Schedule.id).where(
        Schedule.service_point_id == service_point_id,
        Schedule.post_number == post_number,
        Schedule.date == day,
        Schedule.start_time == start,
    )
    if skip_id is not None:
        stmt = stmt.where(Schedule.id != skip_id)
    return db.execute(stmt).first() is not None


def create_schedule(
    db: Session,
    service_point_id: int,
    day: date,
    start_time: time,
    end_time: time,
    post_number: int = 1,
) -> Schedule:
    point = get_service_point(db, service_point_id)
    if not point:
        raise ValueError("Service point not found")
    _resolve_post(point, post_number)
    if end_time <= start_time:
        raise ValueError("end_time must be after start_time")
    start = start_time.replace(second=0, microsecond=0)
    if _slot_taken(db, point.id, post_number, day, start):
        raise ValueError("Time slot already exists")

    row = Schedule(
        service_point_id=point.id,
        post_number=post_number,
        date=day,
        start_time=start,
        end_time=end_time.replace(second=0, microsecond=0),
        status="available",
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def update_schedule(db: Session, schedule_id: int, fields: dict) -> Schedule | None:
    row = get_schedule(db, schedule_id)
    if not row:
        return None

    post_number = fields.get("post_number") or row.post_number
    day = fields.get("date") or row.date
    start = (fields.get("start_time") or row.start_time).replace(second=0, microsecond=0)
    end = (fields.get("end_time") or row.end_time).replace(second=0, microsecond=0)
    if end <= start:
        raise ValueError("end_time must be after start_time")
    if post_number != row.post_number:
        _resolve_post(row.service_point, post_number)
    if _slot_taken(db, row.service_point_id, post_number, day, start, skip_id=row.id):
        raise ValueError("Time slot already exists")

    row.post_number = post_number
    row.date = day
    row.start_time = start
    row.end_time = end
    db.commit()
    db.refresh(row)
    return row


def _active_booking_for_schedule(db: Session, schedule_id: int) -> Booking | None:
    return db.execute(
        select(Booking)
        .where(
            Booking.schedule_id == schedule_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
        .order_by(Booking.id.desc())
    ).scalars().first()


def delete_schedule(db: Session, schedule_id: int) -> bool:
    row = get_schedule(db, schedule_id)
    if not row:
        return False
    if db.execute(select(Booking.id).where(Booking.schedule_id == row.id)).first() is not None:
        raise ValueError("Schedule has bookings and cannot be deleted")
    db.delete(row)
    db.commit()
    return True


def _move_schedule_status(db: Session, schedule_id: int, to_status: str, *conditions) -> bool:
    """Conditional single-statement status write; True when the row matched."""
    result = db.execute(
        update(Schedule)
        .where(Schedule.id == schedule_id, *conditions)
        .values(status=to_status, updated_at=utc_now_naive())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _claim_schedule(db: Session, schedule_id: int, to_status: str = "booked", now: datetime | None = None) -> bool:
    conditions = [Schedule.status == "available"]
    if to_status == "booked":
        conditions.append(_not_started_clause(now or local_now()))
    return _move_schedule_status(db, schedule_id, to_status, *conditions)


def transition_schedule(
    db: Session,
    schedule_id: int,
    action: str,
    actor: str | None = None,
    now: datetime | None = None,
) -> Schedule | None:
    row = get_schedule(db, schedule_id)
    if not row:
        return None

    if action == "book":
        if not _claim_schedule(db, row.id, now=now):
            db.rollback()
            raise ValueError("Schedule is not available for booking")
        to_status = "booked"
    elif action in SCHEDULE_ACTIONS:
        from_status, to_status, message = SCHEDULE_ACTIONS[action]
        if not _move_schedule_status(db, row.id, to_status, Schedule.status == from_status):
            db.rollback()
            raise ValueError(message)
        if to_status in {"completed", "cancelled"}:
            booking = _active_booking_for_schedule(db, row.id)
            if booking is not None:
                previous = booking.status
                booking.status = to_status
                add_booking_status_event(
                    db,
                    booking_id=booking.id,
                    from_status=previous,
                    to_status=to_status,
                    action=f"schedule_{action}",
                    actor=actor,
                )
    else:
        raise ValueError(f"Unknown schedule action: {action}")

    db.commit()
    db.refresh(row)
    logger.info("schedule_status_changed", schedule_id=row.id, action=action, status=to_status, actor=actor)
    return row


def next_slot_info(db: Session, row: Schedule) -> dict:
    start_min = parse_hhmm(row.start_time)
    end_min = parse_hhmm(row.end_time)
    next_start = end_min
    next_end = next_start + (end_min - start_min)
    info = {"can_iterate": False, "next_slot": format_minutes(next_start), "reason": None}

    window = day_window(row.service_point.working_hours, row.date) if row.service_point else None
    if window is None:
        info["reason"] = "Service point is closed on this day"
        return info
    if next_end > window[1] or next_end >= 24 * 60:
        info["reason"] = "Cannot create next slot: end of working day reached"
        return info
    if _slot_taken(db, row.service_point_id, row.post_number, row.date, minutes_to_time(next_start)):
        info["reason"] = "Cannot create next slot: time slot already exists"
        return info
    info["can_iterate"] = True
    return info


def create_next_slot(db: Session, schedule_id: int) -> Schedule | None:
    row = get_schedule(db, schedule_id)
    if not row:
        return None
    info = next_slot_info(db, row)
    if not info["can_iterate"]:
        raise ValueError(info["reason"])

    start_min = parse_hhmm(row.end_time)
    duration = start_min - parse_hhmm(row.start_time)
    new_row = Schedule(
        service_point_id=row.service_point_id,
        post_number=row.post_number,
        date=row.date,
        start_time=minutes_to_time(start_min),
        end_time=minutes_to_time(start_min + duration),
        status="available",
    )
    db.add(new_row)
    db.commit()
    db.refresh(new_row)
    return new_row


def add_booking_status_event(
    db: Session,
    booking_id: int,
    from_status: str | None,
    to_status: str,
    action: str = "status_update",
    actor: str | None = None,
    note: str | None = None,
) -> BookingStatusEvent:
    event = BookingStatusEvent(
        booking_id=booking_id,
        from_status=from_status,
        to_status=to_status,
        action=action,
        actor=_clean(actor),
        note=_clean(note),
        created_at=utc_now_naive(),
    )
    db.add(event)
    db.flush()
    return event


def _booking_by_idempotency_key(db: Session, key: str) -> Booking | None:
    return db.execute(select(Booking).where(Booking.idempotency_key == key)).scalar_one_or_none()


def _hold_schedule(db: Session, schedule_id: int, booking_status: str, now: datetime | None = None) -> None:
    """Make a slot reflect a booking entering ``booking_status``."""
    target = BOOKING_TO_SCHEDULE_STATUS[booking_status]
    if target == "available":
        return
    if not _claim_schedule(db, schedule_id, to_status=target, now=now):
        raise ValueError("Schedule is not available for booking")


def create_booking(
    db: Session,
    schedule_id: int,
    full_name: str,
    phone: str,
    car_number: str,
    service_point_id: int | None = None,
    client_id: int | None = None,
    vehicle_brand: str | None = None,
    vehicle_type: str | None = None,
    notes: str | None = None,
    status: str = "confirmed",
    idempotency_key: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> Booking:
    key = _clean(idempotency_key)
    if key:
        existing = _booking_by_idempotency_key(db, key)
        if existing:
            return existing

    normalized_status = (status or "confirmed").strip().lower()
    if normalized_status not in BOOKING_STATUSES:
        raise ValueError("Invalid booking status")

    schedule = get_schedule(db, schedule_id)
    if not schedule:
        raise ValueError("Schedule not found")
    if service_point_id is not None and service_point_id != schedule.service_point_id:
        raise ValueError("Schedule does not belong to this service point")
    if client_id is not None and db.get(User, client_id) is None:
        raise ValueError("Client not found")

    try:
        _hold_schedule(db, schedule.id, normalized_status, now=now)
        booking = Booking(
            schedule_id=schedule.id,
            service_point_id=schedule.service_point_id,
            client_id=client_id,
            full_name=full_name.strip(),
            phone=phone.strip(),
            car_number=car_number.strip().upper(),
            vehicle_brand=_clean(vehicle_brand),
            vehicle_type=(_clean(vehicle_type) or settings.DEFAULT_VEHICLE_TYPE).lower(),
            notes=_clean(notes),
            status=normalized_status,
            idempotency_key=key,
        )
        db.add(booking)
        db.flush()
        add_booking_status_event(
            db,
            booking_id=booking.id,
            from_status=None,
            to_status=normalized_status,
            action="created",
            actor=actor,
        )
        db.commit()
    except ValueError:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        if key:
            existing = _booking_by_idempotency_key(db, key)
            if existing:
                return existing
        raise

    db.refresh(booking)
    logger.info(
        "booking_created",
        booking_id=booking.id,
        schedule_id=booking.schedule_id,
        service_point_id=booking.service_point_id,
        status=booking.status,
    )
    return booking


def list_bookings(
    db: Session,
    status_filter: str | None = None,
    service_point_id: int | None = None,
    day: date | None = None,
    limit: int = 500,
) -> list[Booking]:
    stmt = select(Booking).join(Booking.schedule)
    if status_filter:
        stmt = stmt.where(Booking.status == status_filter.strip().lower())
    if service_point_id is not None:
        stmt = stmt.where(Booking.service_point_id == service_point_id)
    if day is not None:
        stmt = stmt.where(Schedule.date == day)
    stmt = stmt.order_by(Schedule.date.asc(), Schedule.start_time.asc(), Booking.id.asc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def get_booking(db: Session, booking_id: int) -> Booking | None:
    return db.get(Booking, booking_id)


_BOOKING_TEXT_FIELDS = ("full_name", "phone", "car_number", "vehicle_brand", "vehicle_type", "notes")


def update_booking(
    db: Session,
    booking_id: int,
    fields: dict,
    actor: str | None = None,
    now: datetime | None = None,
) -> Booking | None:
    booking = get_booking(db, booking_id)
    if not booking:
        return None

    current_status = booking.status
    target_status = fields.get("status")
    if target_status is not None:
        target_status = target_status.strip().lower()
        if target_status not in BOOKING_STATUSES:
            raise ValueError("Invalid booking status")
        if target_status != current_status and target_status not in ALLOWED_BOOKING_STATUS_TRANSITIONS.get(
            current_status, set()
        ):
            raise ValueError(f"Invalid booking status transition: {current_status} -> {target_status}")
    effective_status = target_status or current_status

    new_schedule_id = fields.get("schedule_id")
    moving = new_schedule_id is not None and new_schedule_id != booking.schedule_id

    try:
        if moving:
            new_schedule = get_schedule(db, new_schedule_id)
            if not new_schedule:
                raise ValueError("Schedule not found")
            if effective_status == "completed":
                raise ValueError("Completed bookings cannot be moved to another slot")
            if BOOKING_TO_SCHEDULE_STATUS[current_status] == "booked":
                _move_schedule_status(db, booking.schedule_id, "available")
            _hold_schedule(db, new_schedule.id, effective_status, now=now)
            booking.schedule_id = new_schedule.id
            booking.service_point_id = new_schedule.service_point_id
        elif effective_status != current_status:
            old_slot_status = BOOKING_TO_SCHEDULE_STATUS[current_status]
            new_slot_status = BOOKING_TO_SCHEDULE_STATUS[effective_status]
            if new_slot_status != old_slot_status:
                if old_slot_status == "available":
                    # the slot was released when the booking was cancelled
                    _hold_schedule(db, booking.schedule_id, effective_status, now=now)
                else:
                    _move_schedule_status(db, booking.schedule_id, new_slot_status)

        for key in _BOOKING_TEXT_FIELDS:
            if key in fields and fields[key] is not None:
                value = fields[key].strip()
                if key == "car_number":
                    value = value.upper()
                elif key == "vehicle_type":
                    value = value.lower()
                setattr(booking, key, value)

        if effective_status != current_status:
            booking.status = effective_status
            add_booking_status_event(
                db,
                booking_id=booking.id,
                from_status=current_status,
                to_status=effective_status,
                actor=actor,
            )
        if moving:
            add_booking_status_event(
                db,
                booking_id=booking.id,
                from_status=effective_status,
                to_status=effective_status,
                action="rescheduled",
                actor=actor,
                note=f"moved to schedule #{booking.schedule_id}",
            )
        db.commit()
    except ValueError:
        db.rollback()
        raise

    db.refresh(booking)
    if effective_status != current_status:
        logger.info(
            "booking_status_changed",
            booking_id=booking.id,
            from_status=current_status,
            to_status=effective_status,
            schedule_id=booking.schedule_id,
            actor=actor,
        )
    return booking


def delete_booking(db: Session, booking_id: int) -> bool:
    booking = get_booking(db, booking_id)
    if not booking:
        return False
    if booking.status in ACTIVE_BOOKING_STATUSES:
        _move_schedule_status(db, booking.schedule_id, "available", Schedule.status == "booked")
    db.execute(delete(BookingStatusEvent).where(BookingStatusEvent.booking_id == booking.id))
    db.delete(booking)
    db.commit()
    logger.info("booking_deleted", booking_id=booking_id)
    return True


def list_booking_status_events(db: Session, booking_id: int) -> list[BookingStatusEvent]:
    stmt = (
        select(BookingStatusEvent)
        .where(BookingStatusEvent.booking_id == booking_id)
        .order_by(BookingStatusEvent.created_at.asc(), BookingStatusEvent.id.asc())
    )
    return list(db.execute(stmt).scalars().all())
