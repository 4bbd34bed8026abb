from datetime import date

import pytest
from fastapi import HTTPException

from . import ledger, periods, reports
from .models import Account


def code_id(db, code):
    return db.query(Account.id).filter(Account.code == code).scalar()


def entry(db, debit_code, credit_code, amount, on):
    ledger.post_journal_entry(
        db,
        lines=[
            {"account_code": debit_code, "debit": amount, "credit": 0},
            {"account_code": credit_code, "debit": 0, "credit": amount},
        ],
        description=f"{debit_code}/{credit_code}",
        entry_date=on,
    )


@pytest.fixture
def books(db):
    """January 2025 for a small school, plus one February receipt."""
    ledger.post_opening_balance(db, code_id(db, "1010"), amount=5000, entry_date=date(2025, 1, 1))
    entry(db, "1000", "4000", 1000, date(2025, 1, 10))  # tuition received
    entry(db, "5000", "1000", 400, date(2025, 1, 12))   # salaries
    entry(db, "1500", "1010", 600, date(2025, 1, 15))   # equipment
    entry(db, "1010", "2100", 2000, date(2025, 1, 20))  # loan drawn
    entry(db, "5100", "2000", 100, date(2025, 1, 25))   # supplies on credit
    entry(db, "5200", "1590", 50, date(2025, 1, 31))    # depreciation
    entry(db, "1000", "4100", 300, date(2025, 2, 3))
    db.commit()
    return db


JANUARY = {"start_date": date(2025, 1, 1), "end_date": date(2025, 1, 31)}


class TestRanges:
    def test_month_range(self):
        assert reports.month_range(2, 2024) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_invalid_month(self):
        with pytest.raises(HTTPException) as exc:
            reports.month_range(13, 2025)
        assert exc.value.detail == "Invalid month. Must be between 1 and 12"

    def test_invalid_year(self):
        with pytest.raises(HTTPException) as exc:
            reports.month_range(1, 1800)
        assert exc.value.detail == "Invalid year. Must be between 1900 and 2100"

    def test_period_range(self, db):
        period = periods.create_period(db, period_name="Q1", period_type="quarterly",
                                       start_date=date(2025, 1, 1), end_date=date(2025, 3, 31))
        assert reports.resolve_range(db, period_id=period.id) == (date(2025, 1, 1), date(2025, 3, 31))

    def test_unknown_period(self, db):
        with pytest.raises(HTTPException) as exc:
            reports.resolve_range(db, period_id=42)
        assert exc.value.status_code == 404

    def test_dates_required(self, db):
        with pytest.raises(HTTPException):
            reports.resolve_range(db, start_date=date(2025, 1, 1))


class TestTrialBalance:
    def test_balanced(self, books):
        tb = reports.trial_balance(books, as_of_date=date(2025, 1, 31))

        assert tb["is_balanced"] is True
        assert tb["totals"]["difference"] == 0.0
        assert tb["totals"]["debit_balance"] == tb["totals"]["credit_balance"]
        rows = {row["account_code"]: row for row in tb["accounts"]}
        assert rows["1010"]["debit_balance"] == 6400.0
        assert rows["1590"]["credit_balance"] == 50.0
        assert "4100" not in rows

    def test_as_of_and_range_together(self, books):
        with pytest.raises(HTTPException):
            reports.trial_balance(books, as_of_date=date(2025, 1, 31), start_date=date(2025, 1, 1))


def test_general_ledger_running_balance(books):
    gl = reports.general_ledger(books, code_id(books, "1010"), **JANUARY)

    assert gl["opening_balance"] == 0.0
    assert [line["running_balance"] for line in gl["lines"]] == [5000.0, 4400.0, 6400.0]
    assert gl["closing_balance"] == 6400.0


def test_general_ledger_opening_and_pages(books):
    gl = reports.general_ledger(books, code_id(books, "1000"), start_date=date(2025, 1, 11),
                                end_date=date(2025, 2, 28), page=2, limit=1)

    assert gl["opening_balance"] == 1000.0
    assert gl["closing_balance"] == 900.0
    assert gl["pagination"] == {"page": 2, "limit": 1, "total": 2, "pages": 2}
    assert gl["lines"][0]["running_balance"] == 900.0


def test_income_statement(books):
    statement = reports.income_statement(books, **JANUARY)

    assert statement["total_revenue"] == 1000.0
    assert statement["total_expenses"] == 550.0
    assert statement["net_income"] == 450.0


class TestBalanceSheet:
    def test_open_books(self, books):
        sheet = reports.balance_sheet(books, as_of_date=date(2025, 1, 31))

        assert sheet["total_assets"] == 7550.0
        assert sheet["total_liabilities"] == 2100.0
        assert sheet["total_equity"] == 5450.0
        assert sheet["is_balanced"] is True
        assert sheet["equity"][-1]["account_name"] == "Current Period Earnings"
        assert sheet["equity"][-1]["balance"] == 450.0

    def test_after_closing(self, books):
        period = periods.create_period(books, period_name="January 2025", period_type="monthly", **JANUARY)
        periods.close_period(books, period.id)

        sheet = reports.balance_sheet(books, as_of_date=date(2025, 1, 31))

        names = [row["account_name"] for row in sheet["equity"]]
        assert "Current Period Earnings" not in names
        retained = next(row for row in sheet["equity"] if row["account_code"] == "3998")
        assert retained["balance"] == 5450.0
        assert sheet["is_balanced"] is True
        # Closing entries do not change reported income
        assert reports.income_statement(books, **JANUARY)["net_income"] == 450.0


class TestCashFlow:
    def test_sections(self, books):
        flow = reports.cash_flow(books, **JANUARY)

        operating = flow["operating_activities"]
        assert operating["net_income"] == 450.0
        assert operating["depreciation"] == 50.0
        assert [row["account_code"] for row in operating["working_capital_changes"]] == ["2000"]
        assert operating["total"] == 600.0
        assert flow["investing_activities"]["total"] == -600.0
        assert flow["financing_activities"]["total"] == 2000.0

    def test_reconciles_to_cash_accounts(self, books):
        flow = reports.cash_flow(books, **JANUARY)

        assert flow["beginning_cash"] == 5000.0
        assert flow["net_change_in_cash"] == 2000.0
        assert flow["ending_cash"] == 7000.0
        assert flow["actual_cash_balance"] == 7000.0
        assert flow["is_reconciled"] is True

    def test_february_starts_from_january_close(self, books):
        flow = reports.cash_flow(books, start_date=date(2025, 2, 1), end_date=date(2025, 2, 28))

        assert flow["beginning_cash"] == 7000.0
        assert flow["ending_cash"] == 7300.0
        assert flow["is_reconciled"] is True

    def test_manual_retained_earnings_entry_still_reconciles(self, books):
        entry(books, "3998", "1000", 200, date(2025, 1, 28))  # dividend paid out of retained earnings
        books.commit()

        flow = reports.cash_flow(books, **JANUARY)

        assert flow["operating_activities"]["retained_earnings_adjustments"] == -200.0
        assert flow["is_reconciled"] is True


def test_report_endpoints(client, books, make_user):
    headers = make_user("acc", "accountant")

    income = client.get("/api/accounting/reports/income-statement", params={"month": 1, "year": 2025},
                        headers=headers)
    sheet = client.get("/api/accounting/reports/balance-sheet", params={"as_of_date": "2025-01-31"},
                       headers=headers)
    bad = client.get("/api/accounting/reports/cash-flow", params={"month": 13, "year": 2025}, headers=headers)

    assert income.status_code == 200
    assert income.json()["net_income"] == 450.0
    assert sheet.json()["is_balanced"] is True
    assert bad.status_code == 400
