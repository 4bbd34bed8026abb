"""
Student accounts: registration, ledger-backed transactions and fee payments.

Every money movement on a student touches three things in one transaction:
the student transaction row, the running student balance and a journal
entry in the general ledger.
"""

import logging
from datetime import date, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .audit import log_event
from .config import settings
from .ledger import (
    BOARDING_REVENUE_CODE,
    CASH_CODE,
    SALARY_EXPENSE_CODE,
    TUITION_REVENUE_CODE,
    ZERO,
    first_account_of_type,
    get_account_by_code,
    post_journal_entry,
    reverse_journal_entry,
    to_money,
)
from .models import (
    Account,
    AccountType,
    FeePayment,
    GradelevelClass,
    Student,
    StudentBalance,
    StudentTransaction,
    utcnow,
)

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ("DEBIT", "CREDIT")
PAYMENT_METHODS = ("Cash", "Bank Transfer", "Cheque", "Mobile Money", "Other")
_METHOD_ALIASES = {
    "cash": "Cash",
    "bank": "Bank Transfer",
    "bank transfer": "Bank Transfer",
    "bank_transfer": "Bank Transfer",
    "cheque": "Cheque",
    "check": "Cheque",
    "mobile money": "Mobile Money",
    "mobile_money": "Mobile Money",
    "momo": "Mobile Money",
    "mpesa": "Mobile Money",
}


# ---------------------------------------------------------------------------
# Students
# ---------------------------------------------------------------------------

def get_student(db: Session, reg_number: str) -> Student:
    student = db.query(Student).filter(Student.reg_number == reg_number).first()
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return student


def list_students(
    db: Session,
    *,
    search: Optional[str] = None,
    class_id: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> list[Student]:
    query = db.query(Student)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Student.reg_number.ilike(pattern),
            Student.name.ilike(pattern),
            Student.surname.ilike(pattern),
        ))
    if class_id:
        query = query.filter(Student.gradelevel_class_id == class_id)
    if is_active is not None:
        query = query.filter(Student.is_active.is_(is_active))
    return query.order_by(Student.surname, Student.name).all()


def register_student(db: Session, *, data: dict, user_id: Optional[int] = None) -> Student:
    if db.query(Student).filter(Student.reg_number == data["reg_number"]).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Registration number already exists")
    if data.get("gradelevel_class_id") and not db.get(GradelevelClass, data["gradelevel_class_id"]):
        raise HTTPException(status_code=404, detail="Class not found")

    student = Student(**data)
    db.add(student)
    db.add(StudentBalance(student_reg_number=data["reg_number"], current_balance=ZERO))
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="students", record_id=student.reg_number,
              new_values=data)
    db.commit()
    db.refresh(student)
    return student


def update_student(db: Session, reg_number: str, *, changes: dict, user_id: Optional[int] = None) -> Student:
    student = get_student(db, reg_number)
    if changes.get("gradelevel_class_id") and not db.get(GradelevelClass, changes["gradelevel_class_id"]):
        raise HTTPException(status_code=404, detail="Class not found")
    old = {key: getattr(student, key) for key in changes}
    for key, value in changes.items():
        setattr(student, key, value)
    log_event(db, user_id=user_id, action="UPDATE", table_name="students", record_id=reg_number,
              old_values=old, new_values=changes)
    db.commit()
    db.refresh(student)
    return student


def deactivate_student(db: Session, reg_number: str, *, user_id: Optional[int] = None) -> Student:
    student = get_student(db, reg_number)
    student.is_active = False
    log_event(db, user_id=user_id, action="UPDATE", table_name="students", record_id=reg_number,
              old_values={"is_active": True}, new_values={"is_active": False})
    db.commit()
    db.refresh(student)
    return student


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------

def _balance_row(db: Session, reg_number: str) -> StudentBalance:
    row = db.query(StudentBalance).filter(StudentBalance.student_reg_number == reg_number).first()
    if not row:
        row = StudentBalance(student_reg_number=reg_number, current_balance=ZERO)
        db.add(row)
        db.flush()
    return row


def _apply_to_balance(db: Session, reg_number: str, transaction_type: str, amount: Decimal) -> StudentBalance:
    row = _balance_row(db, reg_number)
    delta = amount if transaction_type == "CREDIT" else -amount
    row.current_balance = to_money(Decimal(row.current_balance) + delta)
    row.last_updated = utcnow()
    return row


def get_balance(db: Session, reg_number: str) -> dict:
    student = get_student(db, reg_number)
    row = db.query(StudentBalance).filter(StudentBalance.student_reg_number == reg_number).first()
    balance = Decimal(row.current_balance) if row else ZERO
    return {
        "student_reg_number": student.reg_number,
        "student_name": student.full_name,
        "current_balance": float(balance),
        "last_updated": row.last_updated if row else None,
    }


def get_statement(db: Session, reg_number: str) -> dict:
    student = get_student(db, reg_number)
    transactions = (
        db.query(StudentTransaction)
        .filter(StudentTransaction.student_reg_number == reg_number)
        .order_by(StudentTransaction.transaction_date, StudentTransaction.id)
        .all()
    )
    running = ZERO
    lines = []
    for txn in transactions:
        amount = Decimal(txn.amount)
        running += amount if txn.transaction_type == "CREDIT" else -amount
        lines.append({
            "id": txn.id,
            "transaction_date": txn.transaction_date,
            "transaction_type": txn.transaction_type,
            "description": txn.description,
            "debit": float(amount) if txn.transaction_type == "DEBIT" else 0.0,
            "credit": float(amount) if txn.transaction_type == "CREDIT" else 0.0,
            "running_balance": float(running),
        })
    return {
        "student_reg_number": student.reg_number,
        "student_name": student.full_name,
        "transactions": lines,
        "closing_balance": float(running),
    }


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def _revenue_account_for(db: Session, description: str) -> Account:
    text = (description or "").lower()
    if "tuition" in text:
        return get_account_by_code(db, TUITION_REVENUE_CODE)
    if "boarding" in text:
        return get_account_by_code(db, BOARDING_REVENUE_CODE)
    return first_account_of_type(db, AccountType.REVENUE)


def _expense_account_for(db: Session, description: str) -> Account:
    text = (description or "").lower()
    if "salary" in text or "staff" in text:
        return get_account_by_code(db, SALARY_EXPENSE_CODE)
    return first_account_of_type(db, AccountType.EXPENSE)


def _transaction_lines(db: Session, transaction_type: str, amount: Decimal, description: str) -> list[dict]:
    cash = get_account_by_code(db, CASH_CODE)
    if transaction_type == "CREDIT":
        other = _revenue_account_for(db, description)
        return [
            {"account_id": cash.id, "debit": amount, "credit": 0},
            {"account_id": other.id, "debit": 0, "credit": amount},
        ]
    other = _expense_account_for(db, description)
    return [
        {"account_id": other.id, "debit": amount, "credit": 0},
        {"account_id": cash.id, "debit": 0, "credit": amount},
    ]


def _record_transaction(
    db: Session,
    *,
    reg_number: str,
    transaction_type: str,
    amount: Decimal,
    description: str,
    user_id: Optional[int],
    journal_entry_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    reversal_of_id: Optional[int] = None,
    term: Optional[str] = None,
    academic_year: Optional[str] = None,
    class_id: Optional[int] = None,
) -> StudentTransaction:
    txn = StudentTransaction(
        student_reg_number=reg_number,
        transaction_type=transaction_type,
        amount=amount,
        description=description,
        term=term,
        academic_year=academic_year,
        class_id=class_id,
        journal_entry_id=journal_entry_id,
        payment_id=payment_id,
        reversal_of_id=reversal_of_id,
        created_by=user_id,
    )
    db.add(txn)
    _apply_to_balance(db, reg_number, transaction_type, amount)
    db.flush()
    return txn


def create_transaction(db: Session, *, data: dict, user_id: Optional[int] = None) -> StudentTransaction:
    reg_number = data.get("student_reg_number")
    transaction_type = (data.get("transaction_type") or "").upper()
    description = (data.get("description") or "").strip()
    if not reg_number or not transaction_type or data.get("amount") is None or not description:
        raise HTTPException(status_code=400,
                            detail="Student, transaction type, amount, and description are required")
    if transaction_type not in TRANSACTION_TYPES:
        raise HTTPException(status_code=400, detail="Transaction type must be DEBIT or CREDIT")
    amount = to_money(data["amount"])
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be greater than zero")
    get_student(db, reg_number)

    entry = post_journal_entry(
        db,
        lines=_transaction_lines(db, transaction_type, amount, description),
        description=f"Student {transaction_type.lower()} - {reg_number}: {description}",
        reference=f"STXN-{reg_number}",
        source="student_transaction",
        user_id=user_id,
    )
    txn = _record_transaction(
        db,
        reg_number=reg_number,
        transaction_type=transaction_type,
        amount=amount,
        description=description,
        user_id=user_id,
        journal_entry_id=entry.id,
        term=data.get("term"),
        academic_year=data.get("academic_year"),
        class_id=data.get("class_id"),
    )
    log_event(db, user_id=user_id, action="CREATE", table_name="student_transactions", record_id=txn.id,
              new_values={"student_reg_number": reg_number, "transaction_type": transaction_type,
                          "amount": amount, "description": description})
    db.commit()
    db.refresh(txn)
    logger.info(f"{transaction_type} {amount} for student {reg_number} (journal #{entry.id})")
    return txn


def get_transaction(db: Session, transaction_id: int) -> StudentTransaction:
    txn = db.get(StudentTransaction, transaction_id)
    if not txn:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return txn


def list_transactions(
    db: Session,
    reg_number: str,
    *,
    transaction_type: Optional[str] = None,
    term: Optional[str] = None,
    academic_year: Optional[str] = None,
) -> list[StudentTransaction]:
    get_student(db, reg_number)
    query = db.query(StudentTransaction).filter(StudentTransaction.student_reg_number == reg_number)
    if transaction_type:
        query = query.filter(StudentTransaction.transaction_type == transaction_type.upper())
    if term:
        query = query.filter(StudentTransaction.term == term)
    if academic_year:
        query = query.filter(StudentTransaction.academic_year == academic_year)
    return query.order_by(StudentTransaction.transaction_date.desc(), StudentTransaction.id.desc()).all()


def update_transaction(db: Session, transaction_id: int, *, description: str,
                       user_id: Optional[int] = None) -> StudentTransaction:
    txn = get_transaction(db, transaction_id)
    old = txn.description
    txn.description = description.strip()
    txn.updated_at = utcnow()
    log_event(db, user_id=user_id, action="UPDATE", table_name="student_transactions", record_id=txn.id,
              old_values={"description": old}, new_values={"description": txn.description})
    db.commit()
    db.refresh(txn)
    return txn


def reverse_transaction(db: Session, transaction_id: int, *, reason: Optional[str] = None,
                        user_id: Optional[int] = None) -> StudentTransaction:
    """Post the opposite transaction and reverse its journal entry."""
    original = get_transaction(db, transaction_id)
    if original.is_reversed:
        raise HTTPException(status_code=400, detail="Transaction has already been reversed")
    if original.reversal_of_id:
        raise HTTPException(status_code=400, detail="Cannot reverse a reversal transaction")
    grace = timedelta(days=settings.reversal_grace_days)
    posted_at = original.transaction_date
    if posted_at.tzinfo is None:
        # SQLite hands back naive values
        posted_at = posted_at.replace(tzinfo=timezone.utc)
    if utcnow() - posted_at > grace:
        raise HTTPException(
            status_code=400,
            detail=f"Transactions older than {settings.reversal_grace_days} days cannot be reversed",
        )

    payment = db.get(FeePayment, original.payment_id) if original.payment_id else None
    if payment is not None:
        if original.transaction_type == "DEBIT":
            raise HTTPException(status_code=400, detail="Refund transactions cannot be reversed")
        if payment.status != "Completed":
            raise HTTPException(
                status_code=400,
                detail=f"Payment {payment.receipt_number} is {payment.status.lower()} and cannot be reversed",
            )
        payment.status = "Reversed"

    journal_entry_id = None
    if original.journal_entry_id:
        reversal_entry = reverse_journal_entry(db, original.journal_entry_id, user_id=user_id, reason=reason)
        journal_entry_id = reversal_entry.id

    opposite = "DEBIT" if original.transaction_type == "CREDIT" else "CREDIT"
    reversal = _record_transaction(
        db,
        reg_number=original.student_reg_number,
        transaction_type=opposite,
        amount=Decimal(original.amount),
        description=f"Reversal: {original.description} - {reason or 'Correction'}",
        user_id=user_id,
        journal_entry_id=journal_entry_id,
        reversal_of_id=original.id,
        term=original.term,
        academic_year=original.academic_year,
        class_id=original.class_id,
    )
    original.is_reversed = True
    original.updated_at = utcnow()
    log_event(db, user_id=user_id, action="REVERSE", table_name="student_transactions", record_id=original.id,
              old_values={"is_reversed": False},
              new_values={"is_reversed": True, "reversal_transaction_id": reversal.id, "reason": reason})
    db.commit()
    db.refresh(reversal)
    return reversal


# ---------------------------------------------------------------------------
# Fee payments
# ---------------------------------------------------------------------------

def normalize_payment_method(value: Optional[str]) -> str:
    incoming = (value or "").strip()
    alias = _METHOD_ALIASES.get(incoming.lower())
    if alias:
        return alias
    if incoming in PAYMENT_METHODS:
        return incoming
    return "Other"


def _next_receipt_number(db: Session, on_date: date) -> str:
    prefix = f"FP{on_date.strftime('%Y%m%d')}-"
    count = db.query(FeePayment).filter(FeePayment.receipt_number.like(f"{prefix}%")).count()
    while True:
        count += 1
        candidate = f"{prefix}{count:04d}"
        if not db.query(FeePayment.id).filter(FeePayment.receipt_number == candidate).first():
            return candidate


def process_payment(db: Session, *, data: dict, user_id: Optional[int] = None) -> FeePayment:
    reg_number = data.get("student_reg_number")
    if not reg_number or data.get("payment_amount") is None or not data.get("payment_method"):
        raise HTTPException(status_code=400, detail="Student, payment amount, and payment method are required")
    amount = to_money(data["payment_amount"])
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Payment amount must be greater than zero")
    currency = (data.get("payment_currency") or settings.base_currency).strip().upper()
    if len(currency) != 3:
        raise HTTPException(status_code=400, detail="Payment currency must be a three-letter code")
    rate = Decimal(str(data.get("exchange_rate") or 1))
    if rate <= 0:
        raise HTTPException(status_code=400, detail="Exchange rate must be greater than zero")
    student = get_student(db, reg_number)

    method = normalize_payment_method(data["payment_method"])
    payment_date = data.get("payment_date") or date.today()
    base_amount = to_money(amount * rate)
    receipt_number = data.get("reference_number") or _next_receipt_number(db, date.today())

    existing = db.query(FeePayment).filter(FeePayment.receipt_number == receipt_number).first()
    if existing and existing.student_reg_number == reg_number:
        raise HTTPException(
            status_code=400,
            detail=f"A payment with receipt number {receipt_number} already exists for this student",
        )
    if existing:
        # receipt numbers are unique across all students
        raise HTTPException(status_code=400, detail=f"Receipt number {receipt_number} is already in use")

    cash = get_account_by_code(db, CASH_CODE)
    tuition = get_account_by_code(db, TUITION_REVENUE_CODE)
    entry = post_journal_entry(
        db,
        lines=[
            {"account_id": cash.id, "debit": base_amount, "credit": 0},
            {"account_id": tuition.id, "debit": 0, "credit": base_amount},
        ],
        description=f"Tuition Fee Payment - {student.full_name} ({reg_number})",
        entry_date=payment_date,
        reference=receipt_number,
        journal_code="FEES",
        source="fee_payment",
        user_id=user_id,
    )

    payment = FeePayment(
        student_reg_number=reg_number,
        payment_amount=amount,
        payment_currency=currency,
        exchange_rate=rate,
        base_currency_amount=base_amount,
        payment_method=method,
        payment_date=payment_date,
        receipt_number=receipt_number,
        reference_number=data.get("reference_number"),
        notes=data.get("notes"),
        status="Completed",
        journal_entry_id=entry.id,
        created_by=user_id,
    )
    db.add(payment)
    db.flush()

    _record_transaction(
        db,
        reg_number=reg_number,
        transaction_type="CREDIT",
        amount=base_amount,
        description=f"Fee Payment - Receipt #{receipt_number}",
        user_id=user_id,
        journal_entry_id=entry.id,
        payment_id=payment.id,
        term=data.get("term"),
        academic_year=data.get("academic_year"),
    )
    log_event(db, user_id=user_id, action="CREATE", table_name="fee_payments", record_id=payment.id,
              new_values={"student_reg_number": reg_number, "payment_amount": amount,
                          "base_currency_amount": base_amount, "payment_method": method,
                          "receipt_number": receipt_number})
    db.commit()
    db.refresh(payment)
    logger.info(f"Fee payment {receipt_number}: {base_amount} from {reg_number} via {method}")
    return payment


def get_payment(db: Session, payment_id: int) -> FeePayment:
    payment = db.get(FeePayment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


def list_payments(db: Session, reg_number: str) -> dict:
    student = get_student(db, reg_number)
    payments = (
        db.query(FeePayment)
        .filter(FeePayment.student_reg_number == reg_number)
        .order_by(FeePayment.payment_date.desc(), FeePayment.id.desc())
        .all()
    )
    completed = [p for p in payments if p.status == "Completed"]
    refunded = [p for p in payments if p.status == "Refunded"]
    return {
        "student_reg_number": student.reg_number,
        "student_name": student.full_name,
        "payments": payments,
        "summary": {
            "total_payments": len(payments),
            "total_paid": float(sum((Decimal(p.base_currency_amount) for p in completed), ZERO)),
            "total_refunded": float(sum((Decimal(p.base_currency_amount) for p in refunded), ZERO)),
        },
    }


def refund_payment(db: Session, payment_id: int, *, reason: str, refund_amount=None,
                   user_id: Optional[int] = None) -> dict:
    payment = get_payment(db, payment_id)
    if payment.status == "Refunded":
        raise HTTPException(status_code=400, detail="Payment has already been refunded")
    reversed_txn = (
        db.query(StudentTransaction.id)
        .filter(
            StudentTransaction.payment_id == payment.id,
            StudentTransaction.transaction_type == "CREDIT",
            StudentTransaction.is_reversed.is_(True),
        )
        .first()
    )
    if payment.status == "Reversed" or reversed_txn:
        raise HTTPException(status_code=400, detail="Payment transaction has been reversed and cannot be refunded")
    amount = to_money(refund_amount) if refund_amount is not None else Decimal(payment.base_currency_amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Refund amount must be greater than zero")
    if amount > Decimal(payment.base_currency_amount):
        raise HTTPException(status_code=400, detail="Refund amount cannot exceed original payment amount")

    payment.status = "Refunded"
    cash = get_account_by_code(db, CASH_CODE)
    tuition = get_account_by_code(db, TUITION_REVENUE_CODE)
    entry = post_journal_entry(
        db,
        lines=[
            {"account_id": tuition.id, "debit": amount, "credit": 0},
            {"account_id": cash.id, "debit": 0, "credit": amount},
        ],
        description=f"Tuition Fee Refund - {payment.student_reg_number} - {reason}",
        reference=f"REFUND-{payment.receipt_number}",
        journal_code="FEES",
        source="refund",
        user_id=user_id,
    )
    txn = _record_transaction(
        db,
        reg_number=payment.student_reg_number,
        transaction_type="DEBIT",
        amount=amount,
        description=f"Payment Refund - Receipt #{payment.receipt_number} - {reason}",
        user_id=user_id,
        journal_entry_id=entry.id,
        payment_id=payment.id,
    )
    log_event(db, user_id=user_id, action="REFUND", table_name="fee_payments", record_id=payment.id,
              old_values={"status": "Completed"},
              new_values={"refund_amount": amount, "reason": reason, "status": "Refunded"})
    db.commit()
    logger.info(f"Refunded {amount} on receipt {payment.receipt_number}")
    return {
        "payment_id": payment.id,
        "receipt_number": payment.receipt_number,
        "refund_amount": float(amount),
        "status": "Refunded",
        "transaction_id": txn.id,
        "journal_entry_id": entry.id,
    }
