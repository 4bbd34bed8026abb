import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import and_
from sqlalchemy.orm import Session

from .audit import log_event
from .ledger import (
    INCOME_SUMMARY_CODE,
    RETAINED_EARNINGS_CODE,
    ZERO,
    ensure_account,
    normal_delta,
    post_journal_entry,
    reverse_journal_entry,
)
from .models import AccountingPeriod, AccountType, JournalEntry, PeriodClosingEntry, utcnow
from .reports import account_totals, trial_balance

logger = logging.getLogger(__name__)

PERIOD_TYPES = ("monthly", "quarterly", "yearly")


def list_periods(db: Session, *, status: Optional[str] = None) -> list[AccountingPeriod]:
    query = db.query(AccountingPeriod)
    if status:
        query = query.filter(AccountingPeriod.status == status)
    return query.order_by(AccountingPeriod.start_date.desc()).all()


def get_period(db: Session, period_id: int) -> AccountingPeriod:
    period = db.get(AccountingPeriod, period_id)
    if not period:
        raise HTTPException(status_code=404, detail="Accounting period not found")
    return period


def create_period(
    db: Session,
    *,
    period_name: Optional[str],
    period_type: Optional[str],
    start_date: Optional[date],
    end_date: Optional[date],
    user_id: Optional[int] = None,
) -> AccountingPeriod:
    if not period_name or not period_type or not start_date or not end_date:
        raise HTTPException(status_code=400, detail="Period name, type, start date and end date are required")
    if period_type not in PERIOD_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid period type. Expected one of: {', '.join(PERIOD_TYPES)}")
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="End date must be after start date")

    overlap = (
        db.query(AccountingPeriod)
        .filter(and_(AccountingPeriod.start_date <= end_date, AccountingPeriod.end_date >= start_date))
        .first()
    )
    if overlap:
        raise HTTPException(status_code=400, detail=f"Period overlaps with existing period {overlap.period_name}")

    period = AccountingPeriod(
        period_name=period_name.strip(),
        period_type=period_type,
        start_date=start_date,
        end_date=end_date,
        status="open",
    )
    db.add(period)
    db.flush()
    log_event(db, user_id=user_id, action="CREATE", table_name="accounting_periods", record_id=period.id,
              new_values={"period_name": period.period_name, "start_date": start_date, "end_date": end_date})
    db.commit()
    db.refresh(period)
    return period


def _closing_lines(rows: list[dict], account_type: AccountType) -> tuple[list[dict], Decimal]:
    """Lines that zero every account of one type, and the net moved."""
    lines = []
    net = ZERO
    for row in rows:
        account = row["account"]
        if account.type != account_type:
            continue
        balance = normal_delta(account.type, row["debit"], row["credit"])
        if balance == 0:
            continue
        net += balance
        # Post on the side opposite the account's normal balance
        closes_with_debit = (balance > 0) != account.type.is_debit_normal
        lines.append({
            "account_id": account.id,
            "debit": abs(balance) if closes_with_debit else 0,
            "credit": 0 if closes_with_debit else abs(balance),
        })
    return lines, net


def _summary_line(summary_id: int, amount: Decimal, debit: bool) -> dict:
    return {"account_id": summary_id, "debit": amount if debit else 0, "credit": 0 if debit else amount}


def close_period(db: Session, period_id: int, *, user_id: Optional[int] = None) -> dict:
    """Close revenue and expenses into Income Summary, then into Retained Earnings."""
    period = get_period(db, period_id)
    if period.status == "closed":
        raise HTTPException(status_code=400, detail="Period is already closed")

    tb = trial_balance(db, start_date=period.start_date, end_date=period.end_date)
    if not tb["is_balanced"]:
        raise HTTPException(
            status_code=400,
            detail=f"Trial balance is not balanced (difference {tb['totals']['difference']}); cannot close period",
        )

    summary = ensure_account(db, INCOME_SUMMARY_CODE, "Income Summary", AccountType.EQUITY, "income_summary")
    retained = ensure_account(db, RETAINED_EARNINGS_CODE, "Retained Earnings", AccountType.EQUITY, "retained_earnings")

    rows = list(account_totals(
        db, start_date=period.start_date, end_date=period.end_date, exclude_sources=("closing",)
    ).values())
    created = []

    def _post(entry_type: str, lines: list[dict], description: str) -> None:
        entry = post_journal_entry(
            db,
            lines=lines,
            description=description,
            entry_date=period.end_date,
            reference=f"CLOSE-{period.id}",
            source="closing",
            user_id=user_id,
            allow_closed_period=True,
        )
        db.add(PeriodClosingEntry(
            period_id=period.id,
            journal_entry_id=entry.id,
            entry_type=entry_type,
            description=description,
        ))
        created.append({"entry_type": entry_type, "journal_entry_id": entry.id, "description": description})

    revenue_lines, total_revenue = _closing_lines(rows, AccountType.REVENUE)
    if revenue_lines:
        if total_revenue != 0:
            revenue_lines.append(_summary_line(summary.id, abs(total_revenue), debit=total_revenue < 0))
        _post("revenue", revenue_lines, f"Close revenue accounts - {period.period_name}")

    expense_lines, total_expenses = _closing_lines(rows, AccountType.EXPENSE)
    if expense_lines:
        if total_expenses != 0:
            expense_lines.append(_summary_line(summary.id, abs(total_expenses), debit=total_expenses > 0))
        _post("expense", expense_lines, f"Close expense accounts - {period.period_name}")

    net_income = total_revenue - total_expenses
    if net_income != 0:
        value = abs(net_income)
        if net_income > 0:
            lines = [_summary_line(summary.id, value, debit=True), _summary_line(retained.id, value, debit=False)]
        else:
            lines = [_summary_line(retained.id, value, debit=True), _summary_line(summary.id, value, debit=False)]
        _post("income_summary", lines, f"Close income summary to retained earnings - {period.period_name}")

    period.status = "closed"
    period.closed_at = utcnow()
    period.closed_by = user_id
    log_event(db, user_id=user_id, action="CLOSE", table_name="accounting_periods", record_id=period.id,
              new_values={"net_income": net_income, "closing_entries": len(created)})
    db.commit()
    db.refresh(period)
    logger.info(f"Closed period {period.period_name}: net income {net_income}, {len(created)} closing entries")

    return {
        "period_id": period.id,
        "period_name": period.period_name,
        "status": period.status,
        "total_revenue": float(total_revenue),
        "total_expenses": float(total_expenses),
        "net_income": float(net_income),
        "closing_entries": created,
    }


def reopen_period(db: Session, period_id: int, *, user_id: Optional[int] = None) -> AccountingPeriod:
    """Reopen a closed period and reverse its closing entries."""
    period = get_period(db, period_id)
    if period.status != "closed":
        raise HTTPException(status_code=400, detail="Only closed periods can be reopened")

    period.status = "reopened"
    period.closed_at = None
    period.closed_by = None
    db.flush()

    closing_rows = db.query(PeriodClosingEntry).filter(PeriodClosingEntry.period_id == period.id).all()
    for row in closing_rows:
        entry = db.get(JournalEntry, row.journal_entry_id)
        if entry and not entry.reversed_by_id:
            reverse_journal_entry(db, entry.id, user_id=user_id, reason="Period reopened",
                                  entry_date=period.end_date, source="closing")
        db.delete(row)

    log_event(db, user_id=user_id, action="UPDATE", table_name="accounting_periods", record_id=period.id,
              old_values={"status": "closed"}, new_values={"status": "reopened"})
    db.commit()
    db.refresh(period)
    return period
