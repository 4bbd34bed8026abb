from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from . import academics
from .auth import get_current_user, require_roles
from .database import get_db_session
from .models import User
from .schemas import (
    EmployeeIn,
    EmployeeOut,
    EmployeeUpdate,
    GradelevelClassIn,
    GradelevelClassOut,
    GradelevelClassUpdate,
    SubjectClassIn,
    SubjectClassOut,
    SubjectClassUpdate,
    SubjectIn,
    SubjectOut,
    SubjectUpdate,
)

router = APIRouter(prefix="/api", tags=["Academics"])

editor = require_roles("registrar", "timetabler")


# Employees

@router.get("/employees", response_model=list[EmployeeOut])
def list_employees(is_active: Optional[bool] = None, db: Session = Depends(get_db_session),
                   _: User = Depends(get_current_user)):
    return academics.list_employees(db, is_active=is_active)


@router.post("/employees", response_model=EmployeeOut, status_code=status.HTTP_201_CREATED)
def create_employee(payload: EmployeeIn, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    return academics.create_employee(db, data=payload.model_dump(), user_id=user.id)


@router.get("/employees/{employee_pk}", response_model=EmployeeOut)
def get_employee(employee_pk: int, db: Session = Depends(get_db_session), _: User = Depends(get_current_user)):
    return academics.get_employee(db, employee_pk)


@router.put("/employees/{employee_pk}", response_model=EmployeeOut)
def update_employee(employee_pk: int, payload: EmployeeUpdate, db: Session = Depends(get_db_session),
                    user: User = Depends(editor)):
    return academics.update_employee(db, employee_pk, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/employees/{employee_pk}", status_code=status.HTTP_204_NO_CONTENT)
def delete_employee(employee_pk: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    academics.delete_employee(db, employee_pk, user_id=user.id)


# Subjects

@router.get("/subjects", response_model=list[SubjectOut])
def list_subjects(db: Session = Depends(get_db_session), _: User = Depends(get_current_user)):
    return academics.list_subjects(db)


@router.post("/subjects", response_model=SubjectOut, status_code=status.HTTP_201_CREATED)
def create_subject(payload: SubjectIn, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    return academics.create_subject(db, data=payload.model_dump(), user_id=user.id)


@router.get("/subjects/{subject_id}", response_model=SubjectOut)
def get_subject(subject_id: int, db: Session = Depends(get_db_session), _: User = Depends(get_current_user)):
    return academics.get_subject(db, subject_id)


@router.put("/subjects/{subject_id}", response_model=SubjectOut)
def update_subject(subject_id: int, payload: SubjectUpdate, db: Session = Depends(get_db_session),
                   user: User = Depends(editor)):
    return academics.update_subject(db, subject_id, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/subjects/{subject_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subject(subject_id: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    academics.delete_subject(db, subject_id, user_id=user.id)


# Gradelevel classes

@router.get("/classes", response_model=list[GradelevelClassOut])
def list_classes(db: Session = Depends(get_db_session), _: User = Depends(get_current_user)):
    return academics.list_classes(db)


@router.post("/classes", response_model=GradelevelClassOut, status_code=status.HTTP_201_CREATED)
def create_class(payload: GradelevelClassIn, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    return academics.create_class(db, data=payload.model_dump(), user_id=user.id)


@router.get("/classes/{class_id}", response_model=GradelevelClassOut)
def get_class(class_id: int, db: Session = Depends(get_db_session), _: User = Depends(get_current_user)):
    return academics.get_class(db, class_id)


@router.put("/classes/{class_id}", response_model=GradelevelClassOut)
def update_class(class_id: int, payload: GradelevelClassUpdate, db: Session = Depends(get_db_session),
                 user: User = Depends(editor)):
    return academics.update_class(db, class_id, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/classes/{class_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_class(class_id: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    academics.delete_class(db, class_id, user_id=user.id)


# Subject classes

@router.get("/subject-classes", response_model=list[SubjectClassOut])
def list_subject_classes(employee_number: Optional[str] = None, gradelevel_class_id: Optional[int] = None,
                         db: Session = Depends(get_db_session), _: User = Depends(get_current_user)):
    return academics.list_subject_classes(db, employee_number=employee_number,
                                          gradelevel_class_id=gradelevel_class_id)


@router.post("/subject-classes", response_model=SubjectClassOut, status_code=status.HTTP_201_CREATED)
def create_subject_class(payload: SubjectClassIn, db: Session = Depends(get_db_session),
                         user: User = Depends(editor)):
    return academics.create_subject_class(db, data=payload.model_dump(), user_id=user.id)


@router.get("/subject-classes/{subject_class_id}", response_model=SubjectClassOut)
def get_subject_class(subject_class_id: int, db: Session = Depends(get_db_session),
                      _: User = Depends(get_current_user)):
    return academics.get_subject_class(db, subject_class_id)


@router.put("/subject-classes/{subject_class_id}", response_model=SubjectClassOut)
def update_subject_class(subject_class_id: int, payload: SubjectClassUpdate, db: Session = Depends(get_db_session),
                         user: User = Depends(editor)):
    return academics.update_subject_class(db, subject_class_id, changes=payload.model_dump(exclude_unset=True),
                                          user_id=user.id)


@router.delete("/subject-classes/{subject_class_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subject_class(subject_class_id: int, db: Session = Depends(get_db_session), user: User = Depends(editor)):
    academics.delete_subject_class(db, subject_class_id, user_id=user.id)
