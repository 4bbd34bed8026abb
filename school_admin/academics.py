from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .audit import log_event
from .models import (
    Employee,
    GradelevelClass,
    Student,
    StudentTransaction,
    Subject,
    SubjectClass,
    TimetableConflict,
    TimetableEntry,
)


def _get_or_404(db: Session, model, record_id: int, label: str):
    record = db.get(model, record_id)
    if not record:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return record


def _apply_changes(db: Session, record, changes: dict, *, table_name: str, user_id: Optional[int]):
    old = {key: getattr(record, key) for key in changes}
    for key, value in changes.items():
        setattr(record, key, value)
    log_event(db, user_id=user_id, action="UPDATE", table_name=table_name, record_id=record.id,
              old_values=old, new_values=changes)
    db.commit()
    db.refresh(record)
    return record


# Employees

def list_employees(db: Session, *, is_active: Optional[bool] = None) -> list[Employee]:
    query = db.query(Employee)
    if is_active is not None:
        query = query.filter(Employee.is_active.is_(is_active))
    return query.order_by(Employee.full_name).all()


def get_employee(db: Session, employee_pk: int) -> Employee:
    return _get_or_404(db, Employee, employee_pk, "Employee")


def create_employee(db: Session, *, data: dict, user_id: Optional[int] = None) -> Employee:
    if db.query(Employee).filter(Employee.employee_id == data["employee_id"]).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Employee ID already exists")
    employee = Employee(**data)
    db.add(employee)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="employees", record_id=employee.id, new_values=data)
    db.commit()
    db.refresh(employee)
    return employee


def update_employee(db: Session, employee_pk: int, *, changes: dict, user_id: Optional[int] = None) -> Employee:
    employee = get_employee(db, employee_pk)
    return _apply_changes(db, employee, changes, table_name="employees", user_id=user_id)


def delete_employee(db: Session, employee_pk: int, *, user_id: Optional[int] = None) -> None:
    employee = get_employee(db, employee_pk)
    if db.query(SubjectClass.id).filter(SubjectClass.employee_number == employee.employee_id).first():
        raise HTTPException(status_code=400, detail="Employee is assigned to subject classes")
    log_event(db, user_id=user_id, action="DELETE", table_name="employees", record_id=employee.id,
              old_values={"employee_id": employee.employee_id, "full_name": employee.full_name})
    db.delete(employee)
    db.commit()


# Subjects

def list_subjects(db: Session) -> list[Subject]:
    return db.query(Subject).order_by(Subject.name).all()


def get_subject(db: Session, subject_id: int) -> Subject:
    return _get_or_404(db, Subject, subject_id, "Subject")


def create_subject(db: Session, *, data: dict, user_id: Optional[int] = None) -> Subject:
    if db.query(Subject).filter(Subject.code == data["code"]).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Subject code already exists")
    subject = Subject(**data)
    db.add(subject)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="subjects", record_id=subject.id, new_values=data)
    db.commit()
    db.refresh(subject)
    return subject


def update_subject(db: Session, subject_id: int, *, changes: dict, user_id: Optional[int] = None) -> Subject:
    subject = get_subject(db, subject_id)
    if changes.get("code") and changes["code"] != subject.code:
        if db.query(Subject).filter(Subject.code == changes["code"]).first():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Subject code already exists")
    return _apply_changes(db, subject, changes, table_name="subjects", user_id=user_id)


def delete_subject(db: Session, subject_id: int, *, user_id: Optional[int] = None) -> None:
    subject = get_subject(db, subject_id)
    if db.query(SubjectClass.id).filter(SubjectClass.subject_id == subject.id).first():
        raise HTTPException(status_code=400, detail="Subject is used by subject classes")
    log_event(db, user_id=user_id, action="DELETE", table_name="subjects", record_id=subject.id,
              old_values={"code": subject.code, "name": subject.name})
    db.delete(subject)
    db.commit()


# Gradelevel classes

def list_classes(db: Session) -> list[GradelevelClass]:
    return db.query(GradelevelClass).order_by(GradelevelClass.name, GradelevelClass.stream).all()


def get_class(db: Session, class_id: int) -> GradelevelClass:
    return _get_or_404(db, GradelevelClass, class_id, "Class")


def create_class(db: Session, *, data: dict, user_id: Optional[int] = None) -> GradelevelClass:
    duplicate = (
        db.query(GradelevelClass)
        .filter(GradelevelClass.name == data["name"], GradelevelClass.stream == data.get("stream"))
        .first()
    )
    if duplicate:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Class already exists")
    gradelevel_class = GradelevelClass(**data)
    db.add(gradelevel_class)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="gradelevel_classes",
              record_id=gradelevel_class.id, new_values=data)
    db.commit()
    db.refresh(gradelevel_class)
    return gradelevel_class


def update_class(db: Session, class_id: int, *, changes: dict, user_id: Optional[int] = None) -> GradelevelClass:
    gradelevel_class = get_class(db, class_id)
    return _apply_changes(db, gradelevel_class, changes, table_name="gradelevel_classes", user_id=user_id)


def delete_class(db: Session, class_id: int, *, user_id: Optional[int] = None) -> None:
    gradelevel_class = get_class(db, class_id)
    if db.query(SubjectClass.id).filter(SubjectClass.gradelevel_class_id == gradelevel_class.id).first():
        raise HTTPException(status_code=400, detail="Class is used by subject classes")
    if db.query(Student.reg_number).filter(Student.gradelevel_class_id == gradelevel_class.id).first():
        raise HTTPException(status_code=400, detail="Class has registered students")
    if db.query(StudentTransaction.id).filter(StudentTransaction.class_id == gradelevel_class.id).first():
        raise HTTPException(status_code=400, detail="Class is referenced by student transactions")
    log_event(db, user_id=user_id, action="DELETE", table_name="gradelevel_classes", record_id=gradelevel_class.id,
              old_values={"name": gradelevel_class.name, "stream": gradelevel_class.stream})
    db.delete(gradelevel_class)
    db.commit()


# Subject classes

def list_subject_classes(db: Session, *, employee_number: Optional[str] = None,
                         gradelevel_class_id: Optional[int] = None) -> list[SubjectClass]:
    query = db.query(SubjectClass)
    if employee_number:
        query = query.filter(SubjectClass.employee_number == employee_number)
    if gradelevel_class_id:
        query = query.filter(SubjectClass.gradelevel_class_id == gradelevel_class_id)
    return query.order_by(SubjectClass.id).all()


def get_subject_class(db: Session, subject_class_id: int) -> SubjectClass:
    return _get_or_404(db, SubjectClass, subject_class_id, "Subject class")


def _check_references(db: Session, *, subject_id=None, employee_number=None, gradelevel_class_id=None) -> None:
    if subject_id is not None and not db.get(Subject, subject_id):
        raise HTTPException(status_code=404, detail="Subject not found")
    if employee_number is not None and not db.query(Employee).filter(Employee.employee_id == employee_number).first():
        raise HTTPException(status_code=404, detail="Teacher not found")
    if gradelevel_class_id is not None and not db.get(GradelevelClass, gradelevel_class_id):
        raise HTTPException(status_code=404, detail="Class not found")


def create_subject_class(db: Session, *, data: dict, user_id: Optional[int] = None) -> SubjectClass:
    _check_references(db, subject_id=data["subject_id"], employee_number=data["employee_number"],
                      gradelevel_class_id=data.get("gradelevel_class_id"))
    subject_class = SubjectClass(**data)
    db.add(subject_class)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="subject_classes",
              record_id=subject_class.id, new_values=data)
    db.commit()
    db.refresh(subject_class)
    return subject_class


def update_subject_class(db: Session, subject_class_id: int, *, changes: dict,
                         user_id: Optional[int] = None) -> SubjectClass:
    subject_class = get_subject_class(db, subject_class_id)
    _check_references(db, employee_number=changes.get("employee_number"),
                      gradelevel_class_id=changes.get("gradelevel_class_id"))
    return _apply_changes(db, subject_class, changes, table_name="subject_classes", user_id=user_id)


def delete_subject_class(db: Session, subject_class_id: int, *, user_id: Optional[int] = None) -> None:
    subject_class = get_subject_class(db, subject_class_id)
    scheduled = (
        db.query(TimetableEntry.id)
        .filter(TimetableEntry.subject_class_id == subject_class.id, TimetableEntry.is_active.is_(True))
        .first()
    )
    if scheduled:
        raise HTTPException(status_code=400, detail="Subject class has active timetable entries")

    # Soft-deleted entries and the conflicts recorded against them go with it
    retired = [
        row.id for row in db.query(TimetableEntry.id).filter(TimetableEntry.subject_class_id == subject_class.id)
    ]
    if retired:
        db.query(TimetableConflict).filter(
            or_(TimetableConflict.entry1_id.in_(retired), TimetableConflict.entry2_id.in_(retired))
        ).delete(synchronize_session=False)
        db.query(TimetableEntry).filter(TimetableEntry.id.in_(retired)).delete(synchronize_session=False)

    log_event(db, user_id=user_id, action="DELETE", table_name="subject_classes", record_id=subject_class.id,
              old_values={"subject_id": subject_class.subject_id, "employee_number": subject_class.employee_number})
    db.delete(subject_class)
    db.commit()
