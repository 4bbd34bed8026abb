from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from . import timetable
from .auth import require_roles
from .database import get_db_session
from .models import User
from .schemas import (
    EntryCreate,
    EntryUpdate,
    GenerateRequest,
    PeriodIn,
    PeriodUpdate,
    ResolveConflictRequest,
    TemplateCreate,
    TemplateUpdate,
)

router = APIRouter(prefix="/api/timetable", tags=["Timetable"])

reader = require_roles("timetabler", "teacher")
editor = require_roles("timetabler")


# Templates

@router.get("/templates")
def list_templates(academic_year: Optional[str] = None, term: Optional[str] = None,
                   is_active: Optional[bool] = None, db: Session = Depends(get_db_session),
                   _: User = Depends(reader)):
    return timetable.list_templates(db, academic_year=academic_year, term=term, is_active=is_active)


@router.post("/templates", status_code=status.HTTP_201_CREATED)
def create_template(payload: TemplateCreate, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    return timetable.create_template(db, data=payload.model_dump(), user_id=user.id)


@router.get("/templates/{template_id}")
def get_template(template_id: int, db: Session = Depends(get_db_session), _: User = Depends(reader)):
    return timetable.get_template(db, template_id)


@router.put("/templates/{template_id}")
def update_template(template_id: int, payload: TemplateUpdate, db: Session = Depends(get_db_session),
                    user: User = Depends(editor)):
    return timetable.update_template(db, template_id, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


# Periods

@router.get("/templates/{template_id}/days/{day_of_week}/periods")
def list_periods(template_id: int, day_of_week: str, db: Session = Depends(get_db_session),
                 _: User = Depends(reader)):
    return timetable.list_periods(db, template_id, day_of_week)


@router.post("/templates/{template_id}/days/{day_of_week}/periods", status_code=status.HTTP_201_CREATED)
def create_period(template_id: int, day_of_week: str, payload: PeriodIn, db: Session = Depends(get_db_session),
                  user: User = Depends(editor)):
    return timetable.create_period(db, template_id, day_of_week, data=payload.model_dump(), user_id=user.id)


@router.put("/periods/{period_id}")
def update_period(period_id: int, payload: PeriodUpdate, db: Session = Depends(get_db_session),
                  user: User = Depends(editor)):
    return timetable.update_period(db, period_id, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/periods/{period_id}")
def delete_period(period_id: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    timetable.delete_period(db, period_id, user_id=user.id)
    return {"message": "Period deleted successfully"}


# Entries

@router.get("/templates/{template_id}/entries")
def list_entries(template_id: int, day_of_week: Optional[str] = None, db: Session = Depends(get_db_session),
                 _: User = Depends(reader)):
    return timetable.list_entries(db, template_id, day_of_week)


@router.post("/templates/{template_id}/entries", status_code=status.HTTP_201_CREATED)
def create_entry(template_id: int, payload: EntryCreate, db: Session = Depends(get_db_session),
                 user: User = Depends(editor)):
    return timetable.create_entry(db, template_id, data=payload.model_dump(), user_id=user.id)


@router.put("/entries/{entry_id}")
def update_entry(entry_id: int, payload: EntryUpdate, db: Session = Depends(get_db_session),
                 user: User = Depends(editor)):
    return timetable.update_entry(db, entry_id, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/entries/{entry_id}")
def delete_entry(entry_id: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    timetable.delete_entry(db, entry_id, user_id=user.id)
    return {"message": "Timetable entry deleted successfully"}


@router.get("/templates/{template_id}/available-subject-classes")
def available_subject_classes(template_id: int, db: Session = Depends(get_db_session), _: User = Depends(reader)):
    return timetable.available_subject_classes(db, template_id)


@router.get("/templates/{template_id}/teacher-availability")
def teacher_availability(template_id: int, day_of_week: str, period_id: int,
                         db: Session = Depends(get_db_session), _: User = Depends(reader)):
    return timetable.teacher_availability(db, template_id, day_of_week, period_id)


# Generation and analysis

@router.post("/templates/{template_id}/generate")
def generate(template_id: int, payload: GenerateRequest, db: Session = Depends(get_db_session),
             user: User = Depends(editor)):
    """
    Auto-generate entries for the template.

    Subject classes short of their weekly lessons are placed greedily (or with
    CP-SAT for the `optimal` strategy); lessons that fit nowhere come back as
    conflicts.
    """
    return timetable.generate(db, template_id, strategy=payload.strategy,
                              clear_existing=payload.clear_existing, user_id=user.id)


@router.post("/templates/{template_id}/conflicts/detect")
def detect_conflicts(template_id: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    return timetable.detect_conflicts(db, template_id, user_id=user.id)


@router.get("/templates/{template_id}/conflicts")
def list_conflicts(template_id: int, status: Optional[str] = None, db: Session = Depends(get_db_session),
                   _: User = Depends(reader)):
    return timetable.list_conflicts(db, template_id, status=status)


@router.put("/conflicts/{conflict_id}/resolve")
def resolve_conflict(conflict_id: int, payload: ResolveConflictRequest, db: Session = Depends(get_db_session),
                     user: User = Depends(editor)):
    return timetable.resolve_conflict(db, conflict_id, user_id=user.id, resolution_notes=payload.resolution_notes)


@router.get("/templates/{template_id}/stats")
def template_stats(template_id: int, db: Session = Depends(get_db_session), _: User = Depends(reader)):
    return timetable.template_stats(db, template_id)


@router.get("/templates/{template_id}/history")
def generation_history(template_id: int, db: Session = Depends(get_db_session), _: User = Depends(reader)):
    return timetable.generation_history(db, template_id)
