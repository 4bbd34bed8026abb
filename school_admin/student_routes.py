from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from . import students
from .auth import require_roles
from .database import get_db_session
from .models import User
from .schemas import (
    FeePaymentCreate,
    FeePaymentOut,
    RefundRequest,
    StudentIn,
    StudentOut,
    StudentUpdate,
    TransactionCreate,
    TransactionOut,
    TransactionReverseRequest,
    TransactionUpdate,
)

router = APIRouter(prefix="/api", tags=["Students"])

staff = require_roles("registrar", "accountant")


# Students

@router.get("/students", response_model=list[StudentOut])
def list_students(search: Optional[str] = None, class_id: Optional[int] = None, is_active: Optional[bool] = None,
                  db: Session = Depends(get_db_session), _: User = Depends(staff)):
    return students.list_students(db, search=search, class_id=class_id, is_active=is_active)


@router.post("/students", response_model=StudentOut, status_code=status.HTTP_201_CREATED)
def register_student(payload: StudentIn, db: Session = Depends(get_db_session), user: User = Depends(staff)):
    return students.register_student(db, data=payload.model_dump(), user_id=user.id)


@router.get("/students/{reg_number}", response_model=StudentOut)
def get_student(reg_number: str, db: Session = Depends(get_db_session), _: User = Depends(staff)):
    return students.get_student(db, reg_number)


@router.put("/students/{reg_number}", response_model=StudentOut)
def update_student(reg_number: str, payload: StudentUpdate, db: Session = Depends(get_db_session),
                   user: User = Depends(staff)):
    return students.update_student(db, reg_number, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/students/{reg_number}", response_model=StudentOut)
def deactivate_student(reg_number: str, db: Session = Depends(get_db_session), user: User = Depends(staff)):
    return students.deactivate_student(db, reg_number, user_id=user.id)


@router.get("/students/{reg_number}/balance")
def student_balance(reg_number: str, db: Session = Depends(get_db_session), _: User = Depends(staff)):
    return students.get_balance(db, reg_number)


@router.get("/students/{reg_number}/statement")
def student_statement(reg_number: str, db: Session = Depends(get_db_session), _: User = Depends(staff)):
    return students.get_statement(db, reg_number)


@router.get("/students/{reg_number}/transactions", response_model=list[TransactionOut])
def student_transactions(reg_number: str, transaction_type: Optional[str] = None, term: Optional[str] = None,
                         academic_year: Optional[str] = None, db: Session = Depends(get_db_session),
                         _: User = Depends(staff)):
    return students.list_transactions(db, reg_number, transaction_type=transaction_type, term=term,
                                      academic_year=academic_year)


@router.get("/students/{reg_number}/payments")
def student_payments(reg_number: str, db: Session = Depends(get_db_session), _: User = Depends(staff)):
    result = students.list_payments(db, reg_number)
    result["payments"] = [FeePaymentOut.model_validate(p) for p in result["payments"]]
    return result


# Transactions

@router.post("/transactions", response_model=TransactionOut, status_code=status.HTTP_201_CREATED)
def create_transaction(payload: TransactionCreate, db: Session = Depends(get_db_session),
                       user: User = Depends(staff)):
    return students.create_transaction(db, data=payload.model_dump(), user_id=user.id)


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db_session), _: User = Depends(staff)):
    return students.get_transaction(db, transaction_id)


@router.put("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(transaction_id: int, payload: TransactionUpdate, db: Session = Depends(get_db_session),
                       user: User = Depends(staff)):
    return students.update_transaction(db, transaction_id, description=payload.description, user_id=user.id)


@router.post("/transactions/{transaction_id}/reverse", response_model=TransactionOut,
             status_code=status.HTTP_201_CREATED)
def reverse_transaction(transaction_id: int, payload: TransactionReverseRequest,
                        db: Session = Depends(get_db_session), user: User = Depends(staff)):
    return students.reverse_transaction(db, transaction_id, reason=payload.reason, user_id=user.id)


# Fee payments

@router.post("/fees/payments", response_model=FeePaymentOut, status_code=status.HTTP_201_CREATED)
def process_payment(payload: FeePaymentCreate, db: Session = Depends(get_db_session), user: User = Depends(staff)):
    return students.process_payment(db, data=payload.model_dump(), user_id=user.id)


@router.get("/fees/payments/{payment_id}", response_model=FeePaymentOut)
def get_payment(payment_id: int, db: Session = Depends(get_db_session), _: User = Depends(staff)):
    return students.get_payment(db, payment_id)


@router.post("/fees/payments/{payment_id}/refund")
def refund_payment(payment_id: int, payload: RefundRequest, db: Session = Depends(get_db_session),
                   user: User = Depends(staff)):
    return students.refund_payment(db, payment_id, reason=payload.reason, refund_amount=payload.refund_amount,
                                   user_id=user.id)
