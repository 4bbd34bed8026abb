"""
Timetable service: period templates, entries, generation and conflict scans.

Loads rows into the solver's dataclasses, runs the pure algorithms in
`solver` and persists the outcome in the caller's session.
"""

import logging
import time
from typing import Optional

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from sqlalchemy import func
from sqlalchemy.orm import Session

from .audit import log_event
from .config import settings
from .models import (
    ConflictType,
    GenerationLog,
    Period,
    PeriodTemplate,
    SubjectClass,
    TemplateDay,
    TimetableConflict,
    TimetableEntry,
    utcnow,
)
from .solver import (
    DAYS,
    DEFAULT_DAYS,
    STRATEGIES,
    LessonRequest,
    Occupied,
    ScheduledLesson,
    Slot,
    compute_stats,
    day_index,
    detect_conflicts as scan_conflicts,
    generate_timetable,
)

logger = logging.getLogger(__name__)

PERIOD_TYPES = ("Lesson", "Break", "Assembly", "Sports", "Chapel", "Lunch")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def get_template_or_404(db: Session, template_id: int) -> PeriodTemplate:
    template = db.get(PeriodTemplate, template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


def _active_entries_query(db: Session, template_id: int):
    return db.query(TimetableEntry).filter(
        TimetableEntry.template_id == template_id,
        TimetableEntry.is_active.is_(True),
    )


def _template_summary(db: Session, template: PeriodTemplate) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "academic_year": template.academic_year,
        "term": template.term,
        "is_active": template.is_active,
        "created_by": template.created_by,
        "created_at": template.created_at,
        "day_count": sum(1 for d in template.days if d.is_active),
        "entry_count": _active_entries_query(db, template.id).count(),
    }


def list_templates(
    db: Session,
    *,
    academic_year: Optional[str] = None,
    term: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> list[dict]:
    query = db.query(PeriodTemplate)
    if academic_year:
        query = query.filter(PeriodTemplate.academic_year == academic_year)
    if term:
        query = query.filter(PeriodTemplate.term == term)
    if is_active is not None:
        query = query.filter(PeriodTemplate.is_active.is_(is_active))
    templates = query.order_by(PeriodTemplate.created_at.desc(), PeriodTemplate.id.desc()).all()
    return [_template_summary(db, t) for t in templates]


def get_template(db: Session, template_id: int) -> dict:
    template = get_template_or_404(db, template_id)
    days = []
    for day in sorted(template.days, key=lambda d: day_index(d.day_of_week)):
        days.append({
            "id": day.id,
            "day_of_week": day.day_of_week,
            "is_active": day.is_active,
            "periods": [_period_dict(p) for p in _ordered_periods(day)],
        })
    summary = _template_summary(db, template)
    summary["days"] = days
    summary["entries"] = list_entries(db, template_id)
    return summary


def _check_days(days: list[str]) -> list[str]:
    unknown = [d for d in days if d not in DAYS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Invalid days: {', '.join(unknown)}")
    return sorted(set(days), key=day_index)


def create_template(db: Session, *, data: dict, user_id: Optional[int] = None) -> dict:
    name = (data.get("name") or "").strip()
    academic_year = (data.get("academic_year") or "").strip()
    term = (data.get("term") or "").strip()
    if not name or not academic_year or not term:
        raise HTTPException(status_code=400, detail="Name, academic year, and term are required")

    duplicate = (
        db.query(PeriodTemplate)
        .filter(PeriodTemplate.name == name, PeriodTemplate.academic_year == academic_year, PeriodTemplate.term == term)
        .first()
    )
    if duplicate:
        raise HTTPException(status_code=400, detail="Template with this name already exists for the academic year and term")

    days = _check_days(data.get("days") or DEFAULT_DAYS)
    template = PeriodTemplate(
        name=name,
        description=data.get("description"),
        academic_year=academic_year,
        term=term,
        created_by=user_id,
        days=[TemplateDay(day_of_week=day) for day in days],
    )
    db.add(template)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="period_templates", record_id=template.id,
              new_values={"name": name, "academic_year": academic_year, "term": term, "days": days})
    db.commit()
    db.refresh(template)
    return _template_summary(db, template)


def update_template(db: Session, template_id: int, *, changes: dict, user_id: Optional[int] = None) -> dict:
    template = get_template_or_404(db, template_id)
    merged = {
        "name": changes.get("name") or template.name,
        "academic_year": changes.get("academic_year") or template.academic_year,
        "term": changes.get("term") or template.term,
    }
    duplicate = (
        db.query(PeriodTemplate)
        .filter(
            PeriodTemplate.name == merged["name"],
            PeriodTemplate.academic_year == merged["academic_year"],
            PeriodTemplate.term == merged["term"],
            PeriodTemplate.id != template.id,
        )
        .first()
    )
    if duplicate:
        raise HTTPException(status_code=400, detail="Template with this name already exists for the academic year and term")

    old = {key: getattr(template, key) for key in changes}
    for key, value in changes.items():
        setattr(template, key, value)
    log_event(db, user_id=user_id, action="UPDATE", table_name="period_templates", record_id=template.id,
              old_values=old, new_values=changes)
    db.commit()
    db.refresh(template)
    return _template_summary(db, template)


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------

def _period_dict(period: Period) -> dict:
    return {
        "id": period.id,
        "template_day_id": period.template_day_id,
        "day_of_week": period.template_day.day_of_week,
        "name": period.name,
        "start_time": period.start_time,
        "end_time": period.end_time,
        "period_type": period.period_type,
        "is_break": period.is_break,
        "sort_order": period.sort_order,
        "is_active": period.is_active,
    }


def _ordered_periods(day: TemplateDay) -> list[Period]:
    return sorted((p for p in day.periods if p.is_active), key=lambda p: (p.sort_order, p.start_time))


def _get_template_day(db: Session, template_id: int, day_of_week: str) -> TemplateDay:
    get_template_or_404(db, template_id)
    day = (
        db.query(TemplateDay)
        .filter(TemplateDay.template_id == template_id, TemplateDay.day_of_week == day_of_week)
        .first()
    )
    if not day or not day.is_active:
        raise HTTPException(status_code=404, detail="Day not configured for this template")
    return day


def _check_period_times(db: Session, template_day_id: int, start, end, exclude_id: Optional[int] = None) -> None:
    if end <= start:
        raise HTTPException(status_code=400, detail="End time must be after start time")
    query = db.query(Period).filter(
        Period.template_day_id == template_day_id,
        Period.is_active.is_(True),
        Period.start_time < end,
        Period.end_time > start,
    )
    if exclude_id is not None:
        query = query.filter(Period.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=400, detail="Period time overlaps with existing period")


def list_periods(db: Session, template_id: int, day_of_week: str) -> list[dict]:
    day = _get_template_day(db, template_id, day_of_week)
    return [_period_dict(p) for p in _ordered_periods(day)]


def create_period(db: Session, template_id: int, day_of_week: str, *, data: dict,
                  user_id: Optional[int] = None) -> dict:
    day = _get_template_day(db, template_id, day_of_week)
    if data.get("period_type", "Lesson") not in PERIOD_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid period type. Expected one of: {', '.join(PERIOD_TYPES)}")
    _check_period_times(db, day.id, data["start_time"], data["end_time"])

    period = Period(template_day_id=day.id, **data)
    db.add(period)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="periods", record_id=period.id, new_values=data)
    db.commit()
    db.refresh(period)
    return _period_dict(period)


def _get_period_or_404(db: Session, period_id: int) -> Period:
    period = db.get(Period, period_id)
    if not period or not period.is_active:
        raise HTTPException(status_code=404, detail="Period not found")
    return period


def update_period(db: Session, period_id: int, *, changes: dict, user_id: Optional[int] = None) -> dict:
    period = _get_period_or_404(db, period_id)
    if changes.get("period_type") and changes["period_type"] not in PERIOD_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid period type. Expected one of: {', '.join(PERIOD_TYPES)}")
    start = changes.get("start_time") or period.start_time
    end = changes.get("end_time") or period.end_time
    _check_period_times(db, period.template_day_id, start, end, exclude_id=period.id)

    old = {key: getattr(period, key) for key in changes}
    for key, value in changes.items():
        setattr(period, key, value)
    log_event(db, user_id=user_id, action="UPDATE", table_name="periods", record_id=period.id,
              old_values=old, new_values=changes)
    db.commit()
    db.refresh(period)
    return _period_dict(period)


def delete_period(db: Session, period_id: int, *, user_id: Optional[int] = None) -> None:
    period = _get_period_or_404(db, period_id)
    in_use = db.query(TimetableEntry.id).filter(
        TimetableEntry.period_id == period.id, TimetableEntry.is_active.is_(True)
    ).first()
    if in_use:
        raise HTTPException(status_code=400, detail="Cannot delete period with active timetable entries")
    period.is_active = False
    log_event(db, user_id=user_id, action="DELETE", table_name="periods", record_id=period.id,
              old_values={"name": period.name, "is_active": True})
    db.commit()


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

def _entry_dict(entry: TimetableEntry) -> dict:
    sc = entry.subject_class
    return {
        "id": entry.id,
        "template_id": entry.template_id,
        "subject_class_id": entry.subject_class_id,
        "day_of_week": entry.day_of_week,
        "period_id": entry.period_id,
        "period_name": entry.period.name,
        "start_time": entry.period.start_time,
        "end_time": entry.period.end_time,
        "subject_name": sc.subject_name,
        "employee_number": sc.employee_number,
        "teacher_name": sc.teacher_name,
        "gradelevel_class_id": sc.gradelevel_class_id,
        "class_name": sc.class_name,
    }


def list_entries(db: Session, template_id: int, day_of_week: Optional[str] = None) -> list[dict]:
    query = _active_entries_query(db, template_id).join(Period, TimetableEntry.period_id == Period.id)
    if day_of_week:
        query = query.filter(TimetableEntry.day_of_week == day_of_week)
    entries = query.order_by(Period.sort_order, Period.start_time, TimetableEntry.id).all()
    entries.sort(key=lambda e: day_index(e.day_of_week))
    return [_entry_dict(e) for e in entries]


def _validate_slot(
    db: Session,
    template_id: int,
    subject_class: SubjectClass,
    day_of_week: str,
    period: Period,
    exclude_id: Optional[int] = None,
) -> None:
    day = period.template_day
    if day.template_id != template_id or day.day_of_week != day_of_week:
        raise HTTPException(status_code=400, detail="Period does not belong to this template day")
    if period.is_break:
        raise HTTPException(status_code=400, detail="Cannot assign classes to break periods")

    same_slot = _active_entries_query(db, template_id).filter(
        TimetableEntry.day_of_week == day_of_week,
        TimetableEntry.period_id == period.id,
    )
    if exclude_id is not None:
        same_slot = same_slot.filter(TimetableEntry.id != exclude_id)

    for other in same_slot.all():
        other_sc = other.subject_class
        if other_sc.employee_number == subject_class.employee_number:
            raise HTTPException(
                status_code=400,
                detail={
                    "message": (
                        f"Teacher conflict: {other_sc.teacher_name} is already teaching "
                        f"{other_sc.subject_name} at this time"
                    ),
                    "conflict": jsonable_encoder(_entry_dict(other)),
                },
            )
        if subject_class.gradelevel_class_id is not None and \
                other_sc.gradelevel_class_id == subject_class.gradelevel_class_id:
            raise HTTPException(
                status_code=400,
                detail={
                    "message": (
                        f"Class conflict: {other_sc.class_name} already has "
                        f"{other_sc.subject_name} at this time"
                    ),
                    "conflict": jsonable_encoder(_entry_dict(other)),
                },
            )


def _load_slot_refs(db: Session, subject_class_id: int, period_id: int) -> tuple[SubjectClass, Period]:
    period = db.get(Period, period_id)
    if not period or not period.is_active:
        raise HTTPException(status_code=404, detail="Period not found")
    subject_class = db.get(SubjectClass, subject_class_id)
    if not subject_class:
        raise HTTPException(status_code=404, detail="Subject class not found")
    return subject_class, period


def create_entry(db: Session, template_id: int, *, data: dict, user_id: Optional[int] = None) -> dict:
    if not data.get("subject_class_id") or not data.get("day_of_week") or not data.get("period_id"):
        raise HTTPException(status_code=400, detail="Subject class, day of week, and period are required")
    get_template_or_404(db, template_id)
    subject_class, period = _load_slot_refs(db, data["subject_class_id"], data["period_id"])
    _validate_slot(db, template_id, subject_class, data["day_of_week"], period)

    entry = TimetableEntry(
        template_id=template_id,
        subject_class_id=subject_class.id,
        day_of_week=data["day_of_week"],
        period_id=period.id,
        created_by=user_id,
    )
    db.add(entry)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="timetable_entries", record_id=entry.id,
              new_values=data)
    db.commit()
    db.refresh(entry)
    return _entry_dict(entry)


def _get_active_entry(db: Session, entry_id: int) -> TimetableEntry:
    entry = db.get(TimetableEntry, entry_id)
    if not entry or not entry.is_active:
        raise HTTPException(status_code=404, detail="Timetable entry not found")
    return entry


def update_entry(db: Session, entry_id: int, *, changes: dict, user_id: Optional[int] = None) -> dict:
    entry = _get_active_entry(db, entry_id)
    merged = {
        "subject_class_id": changes.get("subject_class_id") or entry.subject_class_id,
        "day_of_week": changes.get("day_of_week") or entry.day_of_week,
        "period_id": changes.get("period_id") or entry.period_id,
    }
    subject_class, period = _load_slot_refs(db, merged["subject_class_id"], merged["period_id"])
    _validate_slot(db, entry.template_id, subject_class, merged["day_of_week"], period, exclude_id=entry.id)

    old = {key: getattr(entry, key) for key in merged}
    for key, value in merged.items():
        setattr(entry, key, value)
    entry.updated_by = user_id
    entry.updated_at = utcnow()
    log_event(db, user_id=user_id, action="UPDATE", table_name="timetable_entries", record_id=entry.id,
              old_values=old, new_values=merged)
    db.commit()
    db.refresh(entry)
    return _entry_dict(entry)


def delete_entry(db: Session, entry_id: int, *, user_id: Optional[int] = None) -> None:
    entry = _get_active_entry(db, entry_id)
    entry.is_active = False
    entry.updated_by = user_id
    entry.updated_at = utcnow()
    log_event(db, user_id=user_id, action="DELETE", table_name="timetable_entries", record_id=entry.id,
              old_values={"is_active": True})
    db.commit()


def _scheduled_counts(db: Session, template_id: int) -> dict[int, int]:
    rows = (
        _active_entries_query(db, template_id)
        .with_entities(TimetableEntry.subject_class_id, func.count(TimetableEntry.id))
        .group_by(TimetableEntry.subject_class_id)
        .all()
    )
    return {subject_class_id: count for subject_class_id, count in rows}


def available_subject_classes(db: Session, template_id: int) -> list[dict]:
    get_template_or_404(db, template_id)
    counts = _scheduled_counts(db, template_id)
    available = []
    for sc in db.query(SubjectClass).order_by(SubjectClass.id).all():
        scheduled = counts.get(sc.id, 0)
        if scheduled < sc.periods_per_week:
            available.append({
                "id": sc.id,
                "subject_name": sc.subject_name,
                "employee_number": sc.employee_number,
                "teacher_name": sc.teacher_name,
                "class_name": sc.class_name,
                "periods_per_week": sc.periods_per_week,
                "scheduled": scheduled,
                "remaining": sc.periods_per_week - scheduled,
            })
    return available


def teacher_availability(db: Session, template_id: int, day_of_week: str, period_id: int) -> list[dict]:
    get_template_or_404(db, template_id)
    busy = {}
    slot_entries = _active_entries_query(db, template_id).filter(
        TimetableEntry.day_of_week == day_of_week, TimetableEntry.period_id == period_id
    ).all()
    for entry in slot_entries:
        busy[entry.subject_class.employee_number] = entry

    teachers = {}
    for sc in db.query(SubjectClass).all():
        teachers.setdefault(sc.employee_number, sc.teacher_name)

    result = []
    for employee_number, name in sorted(teachers.items(), key=lambda item: item[1]):
        entry = busy.get(employee_number)
        result.append({
            "employee_number": employee_number,
            "teacher_name": name,
            "status": "busy" if entry else "available",
            "subject_name": entry.subject_class.subject_name if entry else None,
            "class_name": entry.subject_class.class_name if entry else None,
        })
    return result


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def _load_slots(template: PeriodTemplate) -> list[Slot]:
    slots = []
    for day in template.days:
        if not day.is_active:
            continue
        for period in _ordered_periods(day):
            slots.append(Slot(
                day=day.day_of_week,
                period_id=period.id,
                name=period.name,
                start_time=period.start_time,
                sort_order=period.sort_order,
                is_break=period.is_break,
                end_time=period.end_time,
                period_type=period.period_type,
            ))
    return slots


def _load_occupied(db: Session, template_id: int) -> tuple[list[Occupied], dict[int, set]]:
    occupied = []
    days_by_subject_class: dict[int, set] = {}
    for entry in _active_entries_query(db, template_id).all():
        sc = entry.subject_class
        occupied.append(Occupied(sc.employee_number, sc.gradelevel_class_id, entry.day_of_week, entry.period_id))
        days_by_subject_class.setdefault(sc.id, set()).add(entry.day_of_week)
    return occupied, days_by_subject_class


def _load_requests(db: Session, template_id: int, scheduled_days: dict[int, set]) -> list[LessonRequest]:
    counts = _scheduled_counts(db, template_id)
    requests = []
    for sc in db.query(SubjectClass).all():
        needed = sc.periods_per_week - counts.get(sc.id, 0)
        if needed <= 0:
            continue
        requests.append(LessonRequest(
            subject_class_id=sc.id,
            subject=sc.subject_name,
            teacher=sc.employee_number,
            teacher_name=sc.teacher_name,
            class_key=sc.gradelevel_class_id,
            class_name=sc.class_name or "",
            needed=needed,
            scheduled_days=set(scheduled_days.get(sc.id, set())),
        ))
    return requests


def generate(
    db: Session,
    template_id: int,
    *,
    strategy: str = "balanced",
    clear_existing: bool = False,
    user_id: Optional[int] = None,
) -> dict:
    """Auto-generate entries for every subject class still short of lessons."""
    start_time = time.time()
    template = db.get(PeriodTemplate, template_id)
    if not template or not template.is_active:
        raise HTTPException(status_code=404, detail="Template not found or inactive")
    if strategy not in STRATEGIES:
        raise HTTPException(status_code=400, detail=f"Invalid strategy. Expected one of: {', '.join(STRATEGIES)}")

    if clear_existing:
        cleared = _active_entries_query(db, template_id).update(
            {TimetableEntry.is_active: False, TimetableEntry.updated_by: user_id, TimetableEntry.updated_at: utcnow()},
            synchronize_session=False,
        )
        db.flush()
        logger.info(f"Cleared {cleared} existing entries from template {template_id}")

    slots = _load_slots(template)
    occupied, scheduled_days = _load_occupied(db, template_id)
    requests = _load_requests(db, template_id, scheduled_days)

    # Log request summary
    logger.info(
        f"=== GENERATE REQUEST === Template: {template_id}, Strategy: {strategy}, "
        f"Subject classes: {len(requests)}, Lessons: {sum(r.needed for r in requests)}, Slots: {len(slots)}"
    )
    if settings.debug_solver:
        for r in requests:
            logger.debug(f"  Subject class {r.subject_class_id}: {r.teacher_name} - {r.class_name} - {r.subject} x{r.needed}/wk")

    try:
        result = generate_timetable(requests, slots, occupied, strategy=strategy,
                                    time_limit=settings.solver_time_limit)
    except Exception as e:
        elapsed = time.time() - start_time
        db.rollback()
        logger.error(f"GENERATE ERROR: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={
                "status": "error",
                "message": str(e),
                "elapsedSeconds": elapsed,
            },
        ) from e

    created = []
    for placement in result["placements"]:
        entry = TimetableEntry(
            template_id=template_id,
            subject_class_id=placement.subject_class_id,
            day_of_week=placement.day,
            period_id=placement.period_id,
            created_by=user_id,
        )
        db.add(entry)
        created.append(entry)
    db.flush()

    conflicts = [
        {
            "subject_class_id": c.subject_class_id,
            "subject_name": c.subject,
            "teacher_name": c.teacher_name,
            "class_name": c.class_name,
            "error": c.error,
        }
        for c in result["conflicts"]
    ]
    status = {"success": "Success", "partial": "Partial", "failed": "Failed"}[result["status"]]
    elapsed = round(time.time() - start_time, 3)

    gen_log = GenerationLog(
        template_id=template_id,
        generation_type="Auto",
        status=status,
        strategy=result["strategy"],
        total_entries=len(created),
        conflicts_found=len(conflicts),
        generation_time_seconds=elapsed,
        generated_by=user_id,
        notes=f"Generated {len(created)} entries with {len(conflicts)} conflicts",
    )
    db.add(gen_log)
    db.flush()
    log_event(db, user_id=user_id, action="GENERATE", table_name="timetable_entries", record_id=template_id,
              new_values={"strategy": result["strategy"], "total_entries": len(created),
                          "conflicts_found": len(conflicts), "clear_existing": clear_existing})
    db.commit()

    # Log result summary
    logger.info(f"=== GENERATE RESULT === Status: {status}, Entries: {len(created)}, Conflicts: {len(conflicts)}, Time: {elapsed:.2f}s")
    if conflicts:
        logger.warning(f"{len(conflicts)} lessons could not be placed on template {template_id}")

    return {
        "status": status,
        "message": f"Generated {len(created)} entries with {len(conflicts)} conflicts",
        "template_id": template_id,
        "strategy": result["strategy"],
        "generation_log_id": gen_log.id,
        "total_entries": len(created),
        "conflicts_found": len(conflicts),
        "generation_time_seconds": elapsed,
        "entries": [_entry_dict(e) for e in created],
        "conflicts": conflicts,
    }


# ---------------------------------------------------------------------------
# Conflicts, statistics and history
# ---------------------------------------------------------------------------

def _scheduled_lessons(db: Session, template_id: int) -> list[ScheduledLesson]:
    lessons = []
    for entry in _active_entries_query(db, template_id).all():
        sc = entry.subject_class
        lessons.append(ScheduledLesson(
            entry_id=entry.id,
            day=entry.day_of_week,
            period_id=entry.period_id,
            period_name=entry.period.name,
            period_order=entry.period.sort_order,
            start_time=entry.period.start_time,
            subject=sc.subject_name,
            teacher=sc.employee_number,
            teacher_name=sc.teacher_name,
            class_key=sc.gradelevel_class_id,
            class_name=sc.class_name or "",
        ))
    return lessons


def _conflict_dict(conflict: TimetableConflict) -> dict:
    return {
        "id": conflict.id,
        "template_id": conflict.template_id,
        "conflict_type": conflict.conflict_type.value,
        "day_of_week": conflict.day_of_week,
        "period_id": conflict.period_id,
        "period_name": conflict.period.name,
        "entry1_id": conflict.entry1_id,
        "entry2_id": conflict.entry2_id,
        "description": conflict.description,
        "status": conflict.status,
        "resolved_by": conflict.resolved_by,
        "resolved_at": conflict.resolved_at,
        "resolution_notes": conflict.resolution_notes,
    }


def detect_conflicts(db: Session, template_id: int, *, user_id: Optional[int] = None) -> dict:
    get_template_or_404(db, template_id)
    db.query(TimetableConflict).filter(TimetableConflict.template_id == template_id).delete(synchronize_session=False)

    found = scan_conflicts(_scheduled_lessons(db, template_id))
    stored = []
    for c in found:
        row = TimetableConflict(
            template_id=template_id,
            conflict_type=ConflictType(c.conflict_type),
            day_of_week=c.day,
            period_id=c.period_id,
            entry1_id=c.entry1_id,
            entry2_id=c.entry2_id,
            description=c.description,
            status="Open",
        )
        db.add(row)
        stored.append(row)
    db.flush()
    db.commit()
    logger.info(f"Detected {len(stored)} conflicts on template {template_id}")

    by_type = {t.value: 0 for t in ConflictType}
    for row in stored:
        by_type[row.conflict_type.value] += 1
    return {
        "template_id": template_id,
        "total_conflicts": len(stored),
        "by_type": by_type,
        "conflicts": [_conflict_dict(row) for row in stored],
    }


def list_conflicts(db: Session, template_id: int, *, status: Optional[str] = None) -> list[dict]:
    get_template_or_404(db, template_id)
    query = db.query(TimetableConflict).filter(TimetableConflict.template_id == template_id)
    if status:
        query = query.filter(TimetableConflict.status == status)
    rows = query.all()
    rows.sort(key=lambda c: (day_index(c.day_of_week), c.period.sort_order, c.id))
    return [_conflict_dict(row) for row in rows]


def resolve_conflict(db: Session, conflict_id: int, *, user_id: Optional[int] = None,
                     resolution_notes: Optional[str] = None) -> dict:
    conflict = db.get(TimetableConflict, conflict_id)
    if not conflict:
        raise HTTPException(status_code=404, detail="Conflict not found")
    conflict.status = "Resolved"
    conflict.resolved_by = user_id
    conflict.resolved_at = utcnow()
    conflict.resolution_notes = resolution_notes
    log_event(db, user_id=user_id, action="UPDATE", table_name="timetable_conflicts", record_id=conflict.id,
              old_values={"status": "Open"}, new_values={"status": "Resolved", "resolution_notes": resolution_notes})
    db.commit()
    db.refresh(conflict)
    return _conflict_dict(conflict)


def template_stats(db: Session, template_id: int) -> dict:
    template = get_template_or_404(db, template_id)
    total_subject_classes = db.query(func.count(SubjectClass.id)).scalar() or 0
    return compute_stats(_scheduled_lessons(db, template_id), total_subject_classes, _load_slots(template))


def generation_history(db: Session, template_id: int) -> list[dict]:
    get_template_or_404(db, template_id)
    logs = (
        db.query(GenerationLog)
        .filter(GenerationLog.template_id == template_id)
        .order_by(GenerationLog.created_at.desc(), GenerationLog.id.desc())
        .limit(10)
        .all()
    )
    return [
        {
            "id": log.id,
            "template_id": log.template_id,
            "generation_type": log.generation_type,
            "status": log.status,
            "strategy": log.strategy,
            "total_entries": log.total_entries,
            "conflicts_found": log.conflicts_found,
            "generation_time_seconds": log.generation_time_seconds,
            "generated_by": log.generated_by,
            "notes": log.notes,
            "created_at": log.created_at,
        }
        for log in logs
    ]
