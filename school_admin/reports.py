"""
Financial reports computed from journal lines.

All arithmetic is in Decimal; values are rendered as floats only when the
report dict is built.
"""

import calendar
import logging
from collections import OrderedDict
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from .ledger import ZERO, get_account, normal_delta
from .models import Account, AccountingPeriod, AccountType, JournalEntry, JournalEntryLine

logger = logging.getLogger(__name__)

NON_FLOW_SOURCES = ("opening_balance", "closing")


def _f(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def month_range(month: int, year: int) -> tuple[date, date]:
    if month is None or year is None:
        raise HTTPException(status_code=400, detail="Month and year are required")
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Invalid month. Must be between 1 and 12")
    if year < 1900 or year > 2100:
        raise HTTPException(status_code=400, detail="Invalid year. Must be between 1900 and 2100")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def period_range(db: Session, period_id: int) -> tuple[date, date]:
    period = db.get(AccountingPeriod, period_id)
    if not period:
        raise HTTPException(status_code=404, detail="Accounting period not found")
    return period.start_date, period.end_date


def resolve_range(
    db: Session,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    period_id: Optional[int] = None,
) -> tuple[date, date]:
    """Pick the reporting range from a period, a month/year or explicit dates."""
    if period_id is not None:
        return period_range(db, period_id)
    if month is not None or year is not None:
        return month_range(month, year)
    if not start_date or not end_date:
        raise HTTPException(status_code=400, detail="Start date and end date are required")
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="End date must be on or after start date")
    return start_date, end_date


def account_totals(
    db: Session,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    exclude_sources: tuple = (),
) -> "OrderedDict[int, dict]":
    """Debit and credit totals per account, ordered by account code."""
    query = (
        db.query(JournalEntryLine, Account)
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .join(Account, JournalEntryLine.account_id == Account.id)
    )
    if start_date:
        query = query.filter(JournalEntry.entry_date >= start_date)
    if end_date:
        query = query.filter(JournalEntry.entry_date <= end_date)
    if exclude_sources:
        query = query.filter(JournalEntry.source.notin_(exclude_sources))

    totals: dict[int, dict] = {}
    for line, account in query.all():
        row = totals.setdefault(account.id, {"account": account, "debit": ZERO, "credit": ZERO})
        row["debit"] += Decimal(line.debit)
        row["credit"] += Decimal(line.credit)

    ordered = OrderedDict()
    for account_id in sorted(totals, key=lambda a: totals[a]["account"].code):
        ordered[account_id] = totals[account_id]
    return ordered


def _account_row(account: Account) -> dict:
    return {
        "account_id": account.id,
        "account_code": account.code,
        "account_name": account.name,
        "account_type": account.type.value,
    }


def trial_balance(
    db: Session,
    *,
    as_of_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> dict:
    if as_of_date and (start_date or end_date):
        raise HTTPException(status_code=400, detail="Use either as_of_date or a date range, not both")
    end = as_of_date or end_date
    totals = account_totals(db, start_date=start_date, end_date=end)

    accounts = []
    sum_debit_col = ZERO
    sum_credit_col = ZERO
    sum_debits = ZERO
    sum_credits = ZERO
    for row in totals.values():
        account = row["account"]
        balance = normal_delta(account.type, row["debit"], row["credit"])
        debit_col = ZERO
        credit_col = ZERO
        if account.type.is_debit_normal:
            if balance >= 0:
                debit_col = balance
            else:
                credit_col = -balance
        else:
            if balance >= 0:
                credit_col = balance
            else:
                debit_col = -balance
        sum_debit_col += debit_col
        sum_credit_col += credit_col
        sum_debits += row["debit"]
        sum_credits += row["credit"]
        accounts.append({
            **_account_row(account),
            "total_debits": _f(row["debit"]),
            "total_credits": _f(row["credit"]),
            "balance": _f(balance),
            "debit_balance": _f(debit_col),
            "credit_balance": _f(credit_col),
        })

    difference = sum_debit_col - sum_credit_col
    return {
        "as_of_date": as_of_date,
        "start_date": start_date,
        "end_date": end_date,
        "accounts": accounts,
        "totals": {
            "total_debits": _f(sum_debits),
            "total_credits": _f(sum_credits),
            "debit_balance": _f(sum_debit_col),
            "credit_balance": _f(sum_credit_col),
            "difference": _f(difference),
        },
        "is_balanced": difference == 0,
    }


def general_ledger(
    db: Session,
    account_id: int,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    account = get_account(db, account_id)
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="Page and limit must be positive")

    opening = ZERO
    if start_date:
        before = account_totals(db, end_date=start_date - timedelta(days=1)).get(account.id)
        if before:
            opening = normal_delta(account.type, before["debit"], before["credit"])

    query = (
        db.query(JournalEntryLine, JournalEntry)
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .filter(JournalEntryLine.account_id == account.id)
    )
    if start_date:
        query = query.filter(JournalEntry.entry_date >= start_date)
    if end_date:
        query = query.filter(JournalEntry.entry_date <= end_date)
    rows = query.order_by(JournalEntry.entry_date, JournalEntry.id, JournalEntryLine.id).all()

    running = opening
    lines = []
    for line, entry in rows:
        running += normal_delta(account.type, Decimal(line.debit), Decimal(line.credit))
        lines.append({
            "journal_entry_id": entry.id,
            "entry_date": entry.entry_date,
            "reference": entry.reference,
            "description": line.description or entry.description,
            "source": entry.source,
            "debit": _f(Decimal(line.debit)),
            "credit": _f(Decimal(line.credit)),
            "running_balance": _f(running),
        })

    offset = (page - 1) * limit
    return {
        "account": _account_row(account),
        "start_date": start_date,
        "end_date": end_date,
        "opening_balance": _f(opening),
        "closing_balance": _f(running),
        "lines": lines[offset:offset + limit],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": len(lines),
            "pages": (len(lines) + limit - 1) // limit,
        },
    }


def _net_income(totals: dict) -> tuple[list, list, Decimal, Decimal]:
    revenue, expenses = [], []
    total_revenue = ZERO
    total_expenses = ZERO
    for row in totals.values():
        account = row["account"]
        if account.type == AccountType.REVENUE:
            amount = row["credit"] - row["debit"]
            total_revenue += amount
            revenue.append({**_account_row(account), "amount": _f(amount)})
        elif account.type == AccountType.EXPENSE:
            amount = row["debit"] - row["credit"]
            total_expenses += amount
            expenses.append({**_account_row(account), "amount": _f(amount)})
    return revenue, expenses, total_revenue, total_expenses


def income_statement(db: Session, *, start_date: date, end_date: date) -> dict:
    totals = account_totals(db, start_date=start_date, end_date=end_date, exclude_sources=("closing",))
    revenue, expenses, total_revenue, total_expenses = _net_income(totals)
    return {
        "start_date": start_date,
        "end_date": end_date,
        "revenue": revenue,
        "expenses": expenses,
        "total_revenue": _f(total_revenue),
        "total_expenses": _f(total_expenses),
        "net_income": _f(total_revenue - total_expenses),
    }


def balance_sheet(db: Session, *, as_of_date: date) -> dict:
    totals = account_totals(db, end_date=as_of_date)
    assets, liabilities, equity = [], [], []
    total_assets = ZERO
    total_liabilities = ZERO
    total_equity = ZERO
    earnings = ZERO

    for row in totals.values():
        account = row["account"]
        balance = normal_delta(account.type, row["debit"], row["credit"])
        if account.type == AccountType.ASSET:
            assets.append({**_account_row(account), "balance": _f(balance)})
            total_assets += balance
        elif account.type == AccountType.LIABILITY:
            liabilities.append({**_account_row(account), "balance": _f(balance)})
            total_liabilities += balance
        elif account.type == AccountType.EQUITY:
            equity.append({**_account_row(account), "balance": _f(balance)})
            total_equity += balance
        elif account.type == AccountType.REVENUE:
            earnings += balance
        else:
            earnings -= balance

    # Revenue and expense not yet closed into retained earnings
    if earnings != 0:
        equity.append({
            "account_id": None,
            "account_code": None,
            "account_name": "Current Period Earnings",
            "account_type": AccountType.EQUITY.value,
            "balance": _f(earnings),
        })
        total_equity += earnings

    difference = total_assets - (total_liabilities + total_equity)
    return {
        "as_of_date": as_of_date,
        "assets": assets,
        "liabilities": liabilities,
        "equity": equity,
        "total_assets": _f(total_assets),
        "total_liabilities": _f(total_liabilities),
        "total_equity": _f(total_equity),
        "total_liabilities_and_equity": _f(total_liabilities + total_equity),
        "difference": _f(difference),
        "is_balanced": difference == 0,
    }


def _cash_balance(db: Session, *, start_date: Optional[date] = None, end_date: Optional[date] = None,
                  only_sources: tuple = ()) -> Decimal:
    query = (
        db.query(JournalEntryLine)
        .join(JournalEntry, JournalEntryLine.journal_entry_id == JournalEntry.id)
        .join(Account, JournalEntryLine.account_id == Account.id)
        .filter(Account.subtype == "cash")
    )
    if start_date:
        query = query.filter(JournalEntry.entry_date >= start_date)
    if end_date:
        query = query.filter(JournalEntry.entry_date <= end_date)
    if only_sources:
        query = query.filter(JournalEntry.source.in_(only_sources))
    return sum((Decimal(l.debit) - Decimal(l.credit) for l in query.all()), ZERO)


def cash_flow(db: Session, *, start_date: date, end_date: date) -> dict:
    """Indirect-method cash flow statement.

    Every non-cash line in the range is classified once, so net change in
    cash always equals the movement on the cash accounts.
    """
    totals = account_totals(db, start_date=start_date, end_date=end_date, exclude_sources=NON_FLOW_SOURCES)

    net_income = ZERO
    depreciation = ZERO
    working_capital = []
    equity_adjustments = ZERO
    investing = []
    financing = []
    total_working_capital = ZERO
    total_investing = ZERO
    total_financing = ZERO

    for row in totals.values():
        account = row["account"]
        subtype = account.subtype or ""
        # Cash effect of a non-cash line is credit minus debit
        effect = row["credit"] - row["debit"]
        if subtype == "cash":
            continue
        if account.type in (AccountType.REVENUE, AccountType.EXPENSE):
            net_income += effect
        elif subtype == "accumulated_depreciation":
            depreciation += effect
        elif subtype == "fixed_asset":
            investing.append({**_account_row(account), "amount": _f(effect)})
            total_investing += effect
        elif subtype == "long_term_liability":
            financing.append({**_account_row(account), "amount": _f(effect)})
            total_financing += effect
        elif account.type == AccountType.EQUITY and subtype in ("retained_earnings", "income_summary"):
            equity_adjustments += effect
        elif account.type == AccountType.EQUITY:
            financing.append({**_account_row(account), "amount": _f(effect)})
            total_financing += effect
        else:
            working_capital.append({**_account_row(account), "amount": _f(effect)})
            total_working_capital += effect

    operating = net_income + depreciation + total_working_capital + equity_adjustments
    net_change = operating + total_investing + total_financing

    beginning = _cash_balance(db, end_date=start_date - timedelta(days=1))
    beginning += _cash_balance(db, start_date=start_date, end_date=end_date, only_sources=("opening_balance",))
    ending = beginning + net_change

    actual = _cash_balance(db, end_date=end_date)
    if ending != actual:
        logger.warning(f"Cash flow does not reconcile: computed {ending} vs cash accounts {actual}")

    return {
        "start_date": start_date,
        "end_date": end_date,
        "operating_activities": {
            "net_income": _f(net_income),
            "depreciation": _f(depreciation),
            "working_capital_changes": working_capital,
            "retained_earnings_adjustments": _f(equity_adjustments),
            "total": _f(operating),
        },
        "investing_activities": {"items": investing, "total": _f(total_investing)},
        "financing_activities": {"items": financing, "total": _f(total_financing)},
        "net_change_in_cash": _f(net_change),
        "beginning_cash": _f(beginning),
        "ending_cash": _f(ending),
        "actual_cash_balance": _f(actual),
        "is_reconciled": ending == actual,
    }
