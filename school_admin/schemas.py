from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import AccountType


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Users and roles
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1)


class UserOut(ORMModel):
    id: int
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    is_active: bool
    role_names: list[str] = []


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut
    roles: list[str]


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=3, max_length=100)
    password: str = Field(min_length=8)
    email: Optional[str] = None
    full_name: Optional[str] = None
    roles: list[str] = []


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8)


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    description: Optional[str] = None


class RoleOut(ORMModel):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool


class AuditLogOut(ORMModel):
    id: int
    user_id: Optional[int] = None
    action: str
    table_name: str
    record_id: Optional[str] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Academics
# ---------------------------------------------------------------------------

class EmployeeIn(BaseModel):
    employee_id: str = Field(min_length=1, max_length=50)
    full_name: str = Field(min_length=1, max_length=255)
    email: Optional[str] = None
    department: Optional[str] = None
    is_active: bool = True


class EmployeeUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    is_active: Optional[bool] = None


class EmployeeOut(ORMModel):
    id: int
    employee_id: str
    full_name: str
    email: Optional[str] = None
    department: Optional[str] = None
    is_active: bool


class SubjectIn(BaseModel):
    code: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=100)


class SubjectUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None


class SubjectOut(ORMModel):
    id: int
    code: str
    name: str


class GradelevelClassIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    stream: Optional[str] = None
    capacity: Optional[int] = None


class GradelevelClassUpdate(BaseModel):
    name: Optional[str] = None
    stream: Optional[str] = None
    capacity: Optional[int] = None


class GradelevelClassOut(ORMModel):
    id: int
    name: str
    stream: Optional[str] = None
    capacity: Optional[int] = None


class SubjectClassIn(BaseModel):
    subject_id: int
    employee_number: str
    gradelevel_class_id: Optional[int] = None
    periods_per_week: int = Field(default=1, ge=1)


class SubjectClassUpdate(BaseModel):
    employee_number: Optional[str] = None
    gradelevel_class_id: Optional[int] = None
    periods_per_week: Optional[int] = Field(default=None, ge=1)


class SubjectClassOut(ORMModel):
    id: int
    subject_id: int
    employee_number: str
    gradelevel_class_id: Optional[int] = None
    periods_per_week: int
    subject_name: str
    teacher_name: str
    class_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Timetable
# ---------------------------------------------------------------------------

class TemplateCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    academic_year: Optional[str] = None
    term: Optional[str] = None
    days: Optional[list[str]] = None


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    academic_year: Optional[str] = None
    term: Optional[str] = None
    is_active: Optional[bool] = None


class PeriodIn(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    start_time: time
    end_time: time
    period_type: str = "Lesson"
    is_break: bool = False
    sort_order: int = 0


class PeriodUpdate(BaseModel):
    name: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    period_type: Optional[str] = None
    is_break: Optional[bool] = None
    sort_order: Optional[int] = None


class PeriodOut(ORMModel):
    id: int
    name: str
    start_time: time
    end_time: time
    period_type: str
    is_break: bool
    sort_order: int
    is_active: bool


class EntryCreate(BaseModel):
    subject_class_id: Optional[int] = None
    day_of_week: Optional[str] = None
    period_id: Optional[int] = None


class EntryUpdate(BaseModel):
    subject_class_id: Optional[int] = None
    day_of_week: Optional[str] = None
    period_id: Optional[int] = None


class GenerateRequest(BaseModel):
    strategy: str = "balanced"
    clear_existing: bool = False


class ResolveConflictRequest(BaseModel):
    resolution_notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class AccountCreate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    parent_id: Optional[int] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    subtype: Optional[str] = None
    parent_id: Optional[int] = None
    is_active: Optional[bool] = None


class AccountOut(ORMModel):
    id: int
    code: str
    name: str
    type: AccountType
    subtype: Optional[str] = None
    parent_id: Optional[int] = None
    is_active: bool


class OpeningBalanceRequest(BaseModel):
    amount: Decimal
    entry_date: Optional[date] = None
    description: Optional[str] = None


class JournalLineIn(BaseModel):
    account_id: Optional[int] = None
    account_code: Optional[str] = None
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    description: Optional[str] = None


class JournalEntryCreate(BaseModel):
    entry_date: Optional[date] = None
    description: str = Field(min_length=1)
    reference: Optional[str] = None
    journal_code: str = "GENERAL"
    lines: list[JournalLineIn]


class JournalLineOut(ORMModel):
    id: int
    account_id: int
    debit: float
    credit: float
    currency: str
    description: Optional[str] = None


class JournalEntryOut(ORMModel):
    id: int
    journal_id: int
    entry_date: date
    reference: Optional[str] = None
    description: str
    source: str
    reversal_of_id: Optional[int] = None
    reversed_by_id: Optional[int] = None
    created_by: Optional[int] = None
    total_debit: float
    total_credit: float
    lines: list[JournalLineOut]


class ReverseEntryRequest(BaseModel):
    reason: Optional[str] = None


class PeriodCreate(BaseModel):
    period_name: Optional[str] = None
    period_type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class AccountingPeriodOut(ORMModel):
    id: int
    period_name: str
    period_type: str
    start_date: date
    end_date: date
    status: str
    closed_at: Optional[datetime] = None
    closed_by: Optional[int] = None


# ---------------------------------------------------------------------------
# Students and fees
# ---------------------------------------------------------------------------

class StudentIn(BaseModel):
    reg_number: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    surname: str = Field(min_length=1, max_length=100)
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    gradelevel_class_id: Optional[int] = None
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None


class StudentUpdate(BaseModel):
    name: Optional[str] = None
    surname: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    gradelevel_class_id: Optional[int] = None
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None


class StudentOut(ORMModel):
    id: int
    reg_number: str
    name: str
    surname: str
    full_name: str
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    gradelevel_class_id: Optional[int] = None
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None
    is_active: bool


class TransactionCreate(BaseModel):
    student_reg_number: Optional[str] = None
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    term: Optional[str] = None
    academic_year: Optional[str] = None
    class_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    description: str = Field(min_length=1)


class TransactionReverseRequest(BaseModel):
    reason: Optional[str] = None


class TransactionOut(ORMModel):
    id: int
    student_reg_number: str
    transaction_type: str
    amount: float
    description: str
    term: Optional[str] = None
    academic_year: Optional[str] = None
    class_id: Optional[int] = None
    journal_entry_id: Optional[int] = None
    payment_id: Optional[int] = None
    reversal_of_id: Optional[int] = None
    is_reversed: bool
    transaction_date: datetime
    created_by: Optional[int] = None


class FeePaymentCreate(BaseModel):
    student_reg_number: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_currency: str = Field("USD", min_length=3, max_length=3)
    exchange_rate: Decimal = Decimal("1")
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    term: Optional[str] = None
    academic_year: Optional[str] = None


class RefundRequest(BaseModel):
    refund_amount: Optional[Decimal] = None
    reason: str = Field(min_length=1)


class FeePaymentOut(ORMModel):
    id: int
    student_reg_number: str
    payment_amount: float
    payment_currency: str
    exchange_rate: float
    base_currency_amount: float
    payment_method: str
    payment_date: date
    receipt_number: str
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    status: str
    journal_entry_id: Optional[int] = None
    created_by: Optional[int] = None
