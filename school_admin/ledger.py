"""
Double-entry ledger: chart of accounts, journal posting and running balances.

Posting helpers only add and flush; the operation that calls them owns the
transaction and commits once, so a failure anywhere leaves no partial entry,
balance update or audit row behind.
"""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .audit import log_event
from .config import settings
from .models import (
    Account,
    AccountBalance,
    AccountingPeriod,
    AccountType,
    Journal,
    JournalEntry,
    JournalEntryLine,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

CASH_CODE = "1000"
RETAINED_EARNINGS_CODE = "3998"
INCOME_SUMMARY_CODE = "3999"
TUITION_REVENUE_CODE = "4000"
BOARDING_REVENUE_CODE = "4100"
SALARY_EXPENSE_CODE = "5000"

SUBTYPES = (
    "cash", "receivable", "current_asset", "fixed_asset", "accumulated_depreciation",
    "current_liability", "long_term_liability", "equity", "retained_earnings",
    "income_summary", "revenue", "expense", "depreciation",
)

SOURCES = ("manual", "student_transaction", "fee_payment", "refund", "opening_balance", "closing", "reversal")

DEFAULT_CHART = [
    ("1000", "Cash on Hand", AccountType.ASSET, "cash"),
    ("1010", "Bank", AccountType.ASSET, "cash"),
    ("1100", "Accounts Receivable", AccountType.ASSET, "receivable"),
    ("1200", "Prepaid Expenses", AccountType.ASSET, "current_asset"),
    ("1500", "Equipment", AccountType.ASSET, "fixed_asset"),
    ("1590", "Accumulated Depreciation", AccountType.ASSET, "accumulated_depreciation"),
    ("2000", "Accounts Payable", AccountType.LIABILITY, "current_liability"),
    ("2100", "Loans Payable", AccountType.LIABILITY, "long_term_liability"),
    ("3000", "Capital", AccountType.EQUITY, "equity"),
    ("3998", "Retained Earnings", AccountType.EQUITY, "retained_earnings"),
    ("3999", "Income Summary", AccountType.EQUITY, "income_summary"),
    ("4000", "Tuition Fees Revenue", AccountType.REVENUE, "revenue"),
    ("4100", "Boarding Fees Revenue", AccountType.REVENUE, "revenue"),
    ("4200", "Other Income", AccountType.REVENUE, "revenue"),
    ("5000", "Salaries and Wages Expense", AccountType.EXPENSE, "expense"),
    ("5100", "General Expense", AccountType.EXPENSE, "expense"),
    ("5200", "Depreciation Expense", AccountType.EXPENSE, "depreciation"),
]

DEFAULT_JOURNALS = [
    ("GENERAL", "General Journal", "Manual and system postings"),
    ("FEES", "Fees Journal", "Student fee receipts and refunds"),
]


def to_money(value) -> Decimal:
    """Quantize any numeric input to cents."""
    if value is None:
        return ZERO
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise HTTPException(status_code=400, detail=f"Invalid amount: {value}") from exc


def parse_account_type(value: str) -> AccountType:
    for account_type in AccountType:
        if value and value.strip().lower() == account_type.value.lower():
            return account_type
    raise HTTPException(
        status_code=400,
        detail=f"Invalid account type '{value}'. Expected one of: {', '.join(t.value for t in AccountType)}",
    )


def normal_delta(account_type: AccountType, debit: Decimal, credit: Decimal) -> Decimal:
    """Change in balance on the account's normal side."""
    if account_type.is_debit_normal:
        return debit - credit
    return credit - debit


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

def seed_chart_of_accounts(db: Session) -> int:
    existing = {code for (code,) in db.query(Account.code).all()}
    created = 0
    for code, name, account_type, subtype in DEFAULT_CHART:
        if code in existing:
            continue
        db.add(Account(code=code, name=name, type=account_type, subtype=subtype))
        created += 1
    for code, name, description in DEFAULT_JOURNALS:
        if not db.query(Journal).filter(Journal.code == code).first():
            db.add(Journal(code=code, name=name, description=description))
    db.flush()
    if created:
        logger.info(f"Seeded {created} chart of accounts entries")
    return created


def get_journal(db: Session, code: str) -> Journal:
    journal = db.query(Journal).filter(Journal.code == code).first()
    if not journal:
        raise HTTPException(status_code=400, detail=f"Journal {code} is not configured")
    return journal


def get_account_by_code(db: Session, code: str) -> Account:
    account = db.query(Account).filter(Account.code == code).first()
    if not account:
        raise HTTPException(status_code=400, detail=f"Account {code} is not configured")
    return account


def ensure_account(db: Session, code: str, name: str, account_type: AccountType, subtype: str) -> Account:
    account = db.query(Account).filter(Account.code == code).first()
    if account:
        return account
    account = Account(code=code, name=name, type=account_type, subtype=subtype)
    db.add(account)
    db.flush()
    logger.info(f"Created missing account {code} {name}")
    return account


def first_account_of_type(db: Session, account_type: AccountType) -> Account:
    account = (
        db.query(Account)
        .filter(Account.type == account_type, Account.is_active.is_(True))
        .filter(or_(Account.subtype.is_(None), Account.subtype.notin_(["income_summary"])))
        .order_by(Account.code)
        .first()
    )
    if not account:
        raise HTTPException(status_code=400, detail=f"No active {account_type.value} account is configured")
    return account


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------

def find_closed_period(db: Session, on_date: date) -> Optional[AccountingPeriod]:
    return (
        db.query(AccountingPeriod)
        .filter(
            AccountingPeriod.status == "closed",
            AccountingPeriod.start_date <= on_date,
            AccountingPeriod.end_date >= on_date,
        )
        .first()
    )


def _resolve_line_account(db: Session, line: dict) -> Account:
    account = None
    if line.get("account_id") is not None:
        account = db.get(Account, line["account_id"])
        label = line["account_id"]
    elif line.get("account_code"):
        account = db.query(Account).filter(Account.code == line["account_code"]).first()
        label = line["account_code"]
    else:
        raise HTTPException(status_code=400, detail="Each line needs an account_id or account_code")
    if not account:
        raise HTTPException(status_code=400, detail=f"Account {label} does not exist")
    if not account.is_active:
        raise HTTPException(status_code=400, detail=f"Account {account.code} is inactive")
    return account


def _apply_to_balance(db: Session, account: Account, debit: Decimal, credit: Decimal, as_of: date) -> AccountBalance:
    row = (
        db.query(AccountBalance)
        .filter(AccountBalance.account_id == account.id, AccountBalance.currency == settings.base_currency)
        .first()
    )
    if not row:
        row = AccountBalance(account_id=account.id, currency=settings.base_currency, balance=ZERO, as_of_date=as_of)
        db.add(row)
        db.flush()
    row.balance = to_money(Decimal(row.balance or 0) + normal_delta(account.type, debit, credit))
    if row.as_of_date is None or as_of > row.as_of_date:
        row.as_of_date = as_of
    return row


def post_journal_entry(
    db: Session,
    *,
    lines: list[dict],
    description: str,
    entry_date: Optional[date] = None,
    reference: Optional[str] = None,
    journal_code: str = "GENERAL",
    source: str = "manual",
    user_id: Optional[int] = None,
    reversal_of_id: Optional[int] = None,
    allow_closed_period: bool = False,
) -> JournalEntry:
    """Validate and post a balanced entry, updating account balances.

    Each line dict carries `account_id` or `account_code`, `debit`, `credit`
    and an optional `description`. Raises 400 before anything is added when
    the entry is unbalanced, a line is malformed or an account is unusable.
    """
    entry_date = entry_date or date.today()
    if source not in SOURCES:
        raise HTTPException(status_code=400, detail=f"Invalid entry source '{source}'")
    if not description or not description.strip():
        raise HTTPException(status_code=400, detail="Journal entry description is required")
    if len(lines) < 2:
        raise HTTPException(status_code=400, detail="A journal entry needs at least two lines")

    prepared = []
    total_debit = ZERO
    total_credit = ZERO
    for index, line in enumerate(lines, start=1):
        debit = to_money(line.get("debit"))
        credit = to_money(line.get("credit"))
        if debit < 0 or credit < 0:
            raise HTTPException(status_code=400, detail=f"Line {index}: amounts cannot be negative")
        if (debit > 0) == (credit > 0):
            raise HTTPException(status_code=400, detail=f"Line {index}: exactly one of debit or credit must be positive")
        account = _resolve_line_account(db, line)
        prepared.append((account, debit, credit, line.get("description")))
        total_debit += debit
        total_credit += credit

    if total_debit != total_credit:
        raise HTTPException(
            status_code=400,
            detail=f"Journal entry is not balanced: debits {total_debit} != credits {total_credit}",
        )

    if not allow_closed_period:
        closed = find_closed_period(db, entry_date)
        if closed:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot post to closed accounting period {closed.period_name}",
            )

    journal = get_journal(db, journal_code)
    entry = JournalEntry(
        journal_id=journal.id,
        entry_date=entry_date,
        reference=reference,
        description=description.strip(),
        source=source,
        reversal_of_id=reversal_of_id,
        created_by=user_id,
    )
    for account, debit, credit, line_description in prepared:
        entry.lines.append(JournalEntryLine(
            account_id=account.id,
            debit=debit,
            credit=credit,
            currency=settings.base_currency,
            description=line_description,
        ))
    db.add(entry)
    db.flush()

    for account, debit, credit, _ in prepared:
        _apply_to_balance(db, account, debit, credit, entry_date)
    db.flush()

    logger.info(f"Posted journal entry #{entry.id} ({source}) {total_debit} on {entry_date}: {entry.description}")
    return entry


def reverse_journal_entry(
    db: Session,
    entry_id: int,
    *,
    user_id: Optional[int] = None,
    reason: Optional[str] = None,
    entry_date: Optional[date] = None,
    source: str = "reversal",
) -> JournalEntry:
    """Post the mirror image of an entry and link the two."""
    original = db.get(JournalEntry, entry_id)
    if not original:
        raise HTTPException(status_code=404, detail="Journal entry not found")
    if original.reversed_by_id:
        raise HTTPException(status_code=400, detail="Journal entry has already been reversed")
    if original.reversal_of_id:
        raise HTTPException(status_code=400, detail="Cannot reverse a reversal entry")

    lines = [
        {
            "account_id": line.account_id,
            "debit": line.credit,
            "credit": line.debit,
            "description": line.description,
        }
        for line in original.lines
    ]
    reversal = post_journal_entry(
        db,
        lines=lines,
        description=f"Reversal of entry #{original.id}: {original.description}" + (f" - {reason}" if reason else ""),
        entry_date=entry_date or date.today(),
        reference=original.reference,
        journal_code=original.journal.code,
        source=source,
        user_id=user_id,
        reversal_of_id=original.id,
    )
    original.reversed_by_id = reversal.id
    db.flush()
    return reversal


def recalculate_balances(db: Session) -> list[AccountBalance]:
    """Rebuild every account balance from journal lines."""
    totals: dict[int, list] = {}
    for line, entry_date in db.query(JournalEntryLine, JournalEntry.entry_date).join(JournalEntry).all():
        row = totals.setdefault(line.account_id, [ZERO, ZERO, entry_date])
        row[0] += Decimal(line.debit)
        row[1] += Decimal(line.credit)
        if entry_date > row[2]:
            row[2] = entry_date

    db.query(AccountBalance).delete(synchronize_session=False)
    rebuilt = []
    for account in db.query(Account).order_by(Account.code).all():
        if account.id not in totals:
            continue
        debit, credit, as_of = totals[account.id]
        balance = AccountBalance(
            account_id=account.id,
            currency=settings.base_currency,
            balance=to_money(normal_delta(account.type, debit, credit)),
            as_of_date=as_of,
        )
        db.add(balance)
        rebuilt.append(balance)
    db.flush()
    logger.info(f"Recalculated balances for {len(rebuilt)} accounts")
    return rebuilt


def list_balances(db: Session) -> list[dict]:
    rows = (
        db.query(AccountBalance, Account)
        .join(Account, AccountBalance.account_id == Account.id)
        .order_by(Account.code)
        .all()
    )
    return [
        {
            "account_id": account.id,
            "account_code": account.code,
            "account_name": account.name,
            "account_type": account.type.value,
            "currency": balance.currency,
            "balance": float(balance.balance),
            "as_of_date": balance.as_of_date,
        }
        for balance, account in rows
    ]


# ---------------------------------------------------------------------------
# Chart of accounts
# ---------------------------------------------------------------------------

def list_accounts(db: Session, *, account_type: Optional[str] = None, is_active: Optional[bool] = None) -> list[Account]:
    query = db.query(Account)
    if account_type:
        query = query.filter(Account.type == parse_account_type(account_type))
    if is_active is not None:
        query = query.filter(Account.is_active.is_(is_active))
    return query.order_by(Account.code).all()


def get_account(db: Session, account_id: int) -> Account:
    account = db.get(Account, account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


def create_account(
    db: Session,
    *,
    code: Optional[str],
    name: Optional[str],
    account_type: Optional[str],
    subtype: Optional[str] = None,
    parent_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> Account:
    if not code or not name or not account_type:
        raise HTTPException(status_code=400, detail="Code, name and type are required")
    parsed_type = parse_account_type(account_type)
    if subtype and subtype not in SUBTYPES:
        raise HTTPException(status_code=400, detail=f"Invalid account subtype '{subtype}'")
    if db.query(Account).filter(Account.code == code.strip()).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Account code already exists")
    if parent_id is not None:
        get_account(db, parent_id)

    account = Account(code=code.strip(), name=name.strip(), type=parsed_type, subtype=subtype, parent_id=parent_id)
    db.add(account)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="chart_of_accounts", record_id=account.id,
              new_values={"code": account.code, "name": account.name, "type": parsed_type})
    db.commit()
    db.refresh(account)
    return account


def update_account(db: Session, account_id: int, *, changes: dict, user_id: Optional[int] = None) -> Account:
    account = get_account(db, account_id)
    if changes.get("subtype") and changes["subtype"] not in SUBTYPES:
        raise HTTPException(status_code=400, detail=f"Invalid account subtype '{changes['subtype']}'")
    if changes.get("parent_id") == account.id:
        raise HTTPException(status_code=400, detail="An account cannot be its own parent")

    old = {key: getattr(account, key) for key in changes}
    for key, value in changes.items():
        setattr(account, key, value)
    log_event(db, user_id=user_id, action="UPDATE", table_name="chart_of_accounts", record_id=account.id,
              old_values=old, new_values=changes)
    db.commit()
    db.refresh(account)
    return account


def delete_account(db: Session, account_id: int, *, user_id: Optional[int] = None) -> None:
    account = get_account(db, account_id)
    in_use = db.query(JournalEntryLine.id).filter(JournalEntryLine.account_id == account.id).first()
    if in_use:
        raise HTTPException(status_code=400, detail="Cannot delete an account with journal entries")
    db.query(AccountBalance).filter(AccountBalance.account_id == account.id).delete(synchronize_session=False)
    log_event(db, user_id=user_id, action="DELETE", table_name="chart_of_accounts", record_id=account.id,
              old_values={"code": account.code, "name": account.name})
    db.delete(account)
    db.commit()


def post_opening_balance(
    db: Session,
    account_id: int,
    *,
    amount,
    entry_date: Optional[date] = None,
    description: Optional[str] = None,
    user_id: Optional[int] = None,
) -> JournalEntry:
    """Seed an account's balance against Retained Earnings.

    A positive amount increases the account on its normal side; a negative
    amount decreases it.
    """
    account = get_account(db, account_id)
    amount = to_money(amount)
    if amount == 0:
        raise HTTPException(status_code=400, detail="Opening balance amount cannot be zero")
    retained = get_account_by_code(db, RETAINED_EARNINGS_CODE)
    if account.id == retained.id:
        raise HTTPException(status_code=400, detail="Cannot post an opening balance to Retained Earnings itself")

    increase_on_debit = account.type.is_debit_normal == (amount > 0)
    value = abs(amount)
    if increase_on_debit:
        lines = [
            {"account_id": account.id, "debit": value, "credit": 0},
            {"account_id": retained.id, "debit": 0, "credit": value},
        ]
    else:
        lines = [
            {"account_id": retained.id, "debit": value, "credit": 0},
            {"account_id": account.id, "debit": 0, "credit": value},
        ]

    entry = post_journal_entry(
        db,
        lines=lines,
        description=description or f"Opening balance - {account.code} {account.name}",
        entry_date=entry_date,
        reference=f"OB-{account.code}",
        source="opening_balance",
        user_id=user_id,
    )
    log_event(db, user_id=user_id, action="CREATE", table_name="journal_entries", record_id=entry.id,
              new_values={"source": "opening_balance", "account": account.code, "amount": amount})
    db.commit()
    db.refresh(entry)
    return entry


# ---------------------------------------------------------------------------
# Journal entries
# ---------------------------------------------------------------------------

def create_journal_entry(db: Session, *, payload: dict, user_id: Optional[int] = None) -> JournalEntry:
    entry = post_journal_entry(
        db,
        lines=payload["lines"],
        description=payload["description"],
        entry_date=payload.get("entry_date"),
        reference=payload.get("reference"),
        journal_code=payload.get("journal_code") or "GENERAL",
        source="manual",
        user_id=user_id,
    )
    log_event(db, user_id=user_id, action="CREATE", table_name="journal_entries", record_id=entry.id,
              new_values={"description": entry.description, "total": entry.total_debit})
    db.commit()
    db.refresh(entry)
    return entry


def reverse_entry(db: Session, entry_id: int, *, user_id: Optional[int] = None, reason: Optional[str] = None) -> JournalEntry:
    reversal = reverse_journal_entry(db, entry_id, user_id=user_id, reason=reason)
    log_event(db, user_id=user_id, action="REVERSE", table_name="journal_entries", record_id=entry_id,
              new_values={"reversal_entry_id": reversal.id, "reason": reason})
    db.commit()
    db.refresh(reversal)
    return reversal


def get_journal_entry(db: Session, entry_id: int) -> JournalEntry:
    entry = db.get(JournalEntry, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Journal entry not found")
    return entry


def list_journal_entries(
    db: Session,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    source: Optional[str] = None,
    account_id: Optional[int] = None,
    limit: int = 100,
) -> list[JournalEntry]:
    query = db.query(JournalEntry)
    if start_date:
        query = query.filter(JournalEntry.entry_date >= start_date)
    if end_date:
        query = query.filter(JournalEntry.entry_date <= end_date)
    if source:
        query = query.filter(JournalEntry.source == source)
    if account_id:
        query = query.filter(JournalEntry.lines.any(JournalEntryLine.account_id == account_id))
    return query.order_by(JournalEntry.entry_date.desc(), JournalEntry.id.desc()).limit(limit).all()
