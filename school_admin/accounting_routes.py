from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from . import ledger, periods, reports
from .auth import require_roles
from .database import get_db_session
from .models import User
from .schemas import (
    AccountCreate,
    AccountingPeriodOut,
    AccountOut,
    AccountUpdate,
    JournalEntryCreate,
    JournalEntryOut,
    OpeningBalanceRequest,
    PeriodCreate,
    ReverseEntryRequest,
)

router = APIRouter(prefix="/api/accounting", tags=["Accounting"])

accountant = require_roles("accountant")


# Chart of accounts

@router.get("/accounts", response_model=list[AccountOut])
def list_accounts(type: Optional[str] = None, is_active: Optional[bool] = None,
                  db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    return ledger.list_accounts(db, account_type=type, is_active=is_active)


@router.post("/accounts", response_model=AccountOut, status_code=status.HTTP_201_CREATED)
def create_account(payload: AccountCreate, db: Session = Depends(get_db_session), user: User = Depends(accountant)):
    return ledger.create_account(
        db,
        code=payload.code,
        name=payload.name,
        account_type=payload.type,
        subtype=payload.subtype,
        parent_id=payload.parent_id,
        user_id=user.id,
    )


@router.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    return ledger.get_account(db, account_id)


@router.put("/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: int, payload: AccountUpdate, db: Session = Depends(get_db_session),
                   user: User = Depends(accountant)):
    return ledger.update_account(db, account_id, changes=payload.model_dump(exclude_unset=True), user_id=user.id)


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(account_id: int, db: Session = Depends(get_db_session), user: User = Depends(accountant)):
    ledger.delete_account(db, account_id, user_id=user.id)


@router.post("/accounts/{account_id}/opening-balance", response_model=JournalEntryOut,
             status_code=status.HTTP_201_CREATED)
def opening_balance(account_id: int, payload: OpeningBalanceRequest, db: Session = Depends(get_db_session),
                    user: User = Depends(accountant)):
    return ledger.post_opening_balance(
        db,
        account_id,
        amount=payload.amount,
        entry_date=payload.entry_date,
        description=payload.description,
        user_id=user.id,
    )


# Journal entries

@router.get("/journal-entries", response_model=list[JournalEntryOut])
def list_journal_entries(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    source: Optional[str] = None,
    account_id: Optional[int] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db_session),
    _: User = Depends(accountant),
):
    return ledger.list_journal_entries(db, start_date=start_date, end_date=end_date, source=source,
                                       account_id=account_id, limit=limit)


@router.post("/journal-entries", response_model=JournalEntryOut, status_code=status.HTTP_201_CREATED)
def create_journal_entry(payload: JournalEntryCreate, db: Session = Depends(get_db_session),
                         user: User = Depends(accountant)):
    data = payload.model_dump()
    return ledger.create_journal_entry(db, payload=data, user_id=user.id)


@router.get("/journal-entries/{entry_id}", response_model=JournalEntryOut)
def get_journal_entry(entry_id: int, db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    return ledger.get_journal_entry(db, entry_id)


@router.post("/journal-entries/{entry_id}/reverse", response_model=JournalEntryOut,
             status_code=status.HTTP_201_CREATED)
def reverse_journal_entry(entry_id: int, payload: ReverseEntryRequest, db: Session = Depends(get_db_session),
                          user: User = Depends(accountant)):
    return ledger.reverse_entry(db, entry_id, user_id=user.id, reason=payload.reason)


# Balances

@router.get("/balances")
def list_balances(db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    return ledger.list_balances(db)


@router.post("/balances/recalculate")
def recalculate_balances(db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    rebuilt = ledger.recalculate_balances(db)
    db.commit()
    return {"message": f"Recalculated balances for {len(rebuilt)} accounts", "balances": ledger.list_balances(db)}


# Accounting periods

@router.get("/periods", response_model=list[AccountingPeriodOut])
def list_periods(status: Optional[str] = None, db: Session = Depends(get_db_session),
                 _: User = Depends(accountant)):
    return periods.list_periods(db, status=status)


@router.post("/periods", response_model=AccountingPeriodOut, status_code=status.HTTP_201_CREATED)
def create_period(payload: PeriodCreate, db: Session = Depends(get_db_session), user: User = Depends(accountant)):
    return periods.create_period(
        db,
        period_name=payload.period_name,
        period_type=payload.period_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        user_id=user.id,
    )


@router.get("/periods/{period_id}", response_model=AccountingPeriodOut)
def get_period(period_id: int, db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    return periods.get_period(db, period_id)


@router.post("/periods/{period_id}/close")
def close_period(period_id: int, db: Session = Depends(get_db_session), user: User = Depends(accountant)):
    return periods.close_period(db, period_id, user_id=user.id)


@router.post("/periods/{period_id}/reopen", response_model=AccountingPeriodOut)
def reopen_period(period_id: int, db: Session = Depends(get_db_session), user: User = Depends(accountant)):
    return periods.reopen_period(db, period_id, user_id=user.id)


# Reports

@router.get("/reports/trial-balance")
def trial_balance(as_of_date: Optional[date] = None, start_date: Optional[date] = None,
                  end_date: Optional[date] = None, db: Session = Depends(get_db_session),
                  _: User = Depends(accountant)):
    return reports.trial_balance(db, as_of_date=as_of_date, start_date=start_date, end_date=end_date)


@router.get("/reports/general-ledger/{account_id}")
def general_ledger(account_id: int, start_date: Optional[date] = None, end_date: Optional[date] = None,
                   page: int = 1, limit: int = 50, db: Session = Depends(get_db_session),
                   _: User = Depends(accountant)):
    return reports.general_ledger(db, account_id, start_date=start_date, end_date=end_date, page=page, limit=limit)


@router.get("/reports/income-statement")
def income_statement(start_date: Optional[date] = None, end_date: Optional[date] = None,
                     month: Optional[int] = None, year: Optional[int] = None, period_id: Optional[int] = None,
                     db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    start, end = reports.resolve_range(db, start_date=start_date, end_date=end_date, month=month, year=year,
                                       period_id=period_id)
    return reports.income_statement(db, start_date=start, end_date=end)


@router.get("/reports/balance-sheet")
def balance_sheet(as_of_date: Optional[date] = None, month: Optional[int] = None, year: Optional[int] = None,
                  period_id: Optional[int] = None, db: Session = Depends(get_db_session),
                  _: User = Depends(accountant)):
    if as_of_date is None:
        if period_id is None and month is None and year is None:
            as_of_date = date.today()
        else:
            _, as_of_date = reports.resolve_range(db, month=month, year=year, period_id=period_id)
    return reports.balance_sheet(db, as_of_date=as_of_date)


@router.get("/reports/cash-flow")
def cash_flow(start_date: Optional[date] = None, end_date: Optional[date] = None,
              month: Optional[int] = None, year: Optional[int] = None, period_id: Optional[int] = None,
              db: Session = Depends(get_db_session), _: User = Depends(accountant)):
    start, end = reports.resolve_range(db, start_date=start_date, end_date=end_date, month=month, year=year,
                                       period_id=period_id)
    return reports.cash_flow(db, start_date=start, end_date=end)
