from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from . import ledger, periods
from .audit import list_events
from .models import Account, AccountBalance, JournalEntry, PeriodClosingEntry


def account(db, code):
    return db.query(Account).filter(Account.code == code).one()


def balance(db, code):
    row = db.query(AccountBalance).filter(AccountBalance.account_id == account(db, code).id).first()
    return row.balance if row else Decimal("0.00")


def post(db, debit_code, credit_code, amount, on=date(2025, 1, 15), description="Test entry", source="manual"):
    entry = ledger.post_journal_entry(
        db,
        lines=[
            {"account_code": debit_code, "debit": amount, "credit": 0},
            {"account_code": credit_code, "debit": 0, "credit": amount},
        ],
        description=description,
        entry_date=on,
        source=source,
    )
    db.commit()
    return entry


class TestChart:
    def test_default_chart_is_seeded(self, db):
        codes = [a.code for a in ledger.list_accounts(db)]
        assert codes[:3] == ["1000", "1010", "1100"]
        assert "3998" in codes and "3999" in codes

    def test_seeding_twice_adds_nothing(self, db):
        assert ledger.seed_chart_of_accounts(db) == 0

    def test_filter_by_type(self, db):
        revenue = ledger.list_accounts(db, account_type="revenue")
        assert {a.code for a in revenue} == {"4000", "4100", "4200"}

    def test_create_account(self, db):
        created = ledger.create_account(db, code="1020", name="Petty Cash", account_type="Asset", subtype="cash")

        assert created.type.value == "Asset"
        assert created.subtype == "cash"

    def test_duplicate_code(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.create_account(db, code="1000", name="Again", account_type="Asset")
        assert exc.value.status_code == 409

    def test_invalid_type(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.create_account(db, code="9000", name="Odd", account_type="Income")
        assert exc.value.status_code == 400

    def test_missing_fields(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.create_account(db, code="9000", name=None, account_type="Asset")
        assert exc.value.status_code == 400

    def test_cannot_delete_account_with_lines(self, db):
        post(db, "1000", "3000", 100)

        with pytest.raises(HTTPException) as exc:
            ledger.delete_account(db, account(db, "1000").id)
        assert exc.value.status_code == 400

    def test_delete_unused_account(self, db):
        ledger.delete_account(db, account(db, "1200").id)
        assert db.query(Account).filter(Account.code == "1200").first() is None


class TestPosting:
    def test_balanced_entry_updates_balances(self, db):
        entry = post(db, "1000", "4000", Decimal("250.00"))

        assert entry.total_debit == entry.total_credit == Decimal("250.00")
        assert balance(db, "1000") == Decimal("250.00")
        assert balance(db, "4000") == Decimal("250.00")

    def test_expense_reduces_cash(self, db):
        post(db, "1000", "3000", 500)
        post(db, "5100", "1000", 120)

        assert balance(db, "1000") == Decimal("380.00")
        assert balance(db, "5100") == Decimal("120.00")

    def test_unbalanced_entry_is_rejected(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.post_journal_entry(db, description="Bad", lines=[
                {"account_code": "1000", "debit": 100, "credit": 0},
                {"account_code": "4000", "debit": 0, "credit": 90},
            ])
        assert exc.value.status_code == 400
        assert "not balanced" in exc.value.detail
        db.rollback()
        assert db.query(JournalEntry).count() == 0

    def test_single_line_is_rejected(self, db):
        with pytest.raises(HTTPException):
            ledger.post_journal_entry(db, description="Bad", lines=[{"account_code": "1000", "debit": 1}])

    def test_line_with_both_sides_is_rejected(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.post_journal_entry(db, description="Bad", lines=[
                {"account_code": "1000", "debit": 10, "credit": 10},
                {"account_code": "4000", "debit": 0, "credit": 0},
            ])
        assert "exactly one" in exc.value.detail

    def test_negative_amount_is_rejected(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.post_journal_entry(db, description="Bad", lines=[
                {"account_code": "1000", "debit": -10, "credit": 0},
                {"account_code": "4000", "debit": 0, "credit": -10},
            ])
        assert "negative" in exc.value.detail

    def test_unknown_account(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.post_journal_entry(db, description="Bad", lines=[
                {"account_code": "1000", "debit": 10, "credit": 0},
                {"account_code": "8888", "debit": 0, "credit": 10},
            ])
        assert exc.value.detail == "Account 8888 does not exist"

    def test_inactive_account(self, db):
        ledger.update_account(db, account(db, "4200").id, changes={"is_active": False})

        with pytest.raises(HTTPException) as exc:
            post(db, "1000", "4200", 10)
        assert "inactive" in exc.value.detail

    def test_amounts_are_rounded_to_cents(self, db):
        post(db, "1000", "4000", "10.005")
        assert balance(db, "1000") == Decimal("10.01")

    def test_create_journal_entry_writes_audit_row(self, db, admin):
        entry = ledger.create_journal_entry(db, user_id=admin.id, payload={
            "description": "Capital injection",
            "entry_date": date(2025, 1, 2),
            "lines": [
                {"account_code": "1010", "debit": Decimal("1000"), "credit": Decimal("0")},
                {"account_code": "3000", "debit": Decimal("0"), "credit": Decimal("1000")},
            ],
        })

        assert entry.created_by == admin.id
        events = list_events(db, table_name="journal_entries")
        assert events[0].record_id == str(entry.id)


class TestReversal:
    def test_reverse_restores_balances(self, db):
        entry = post(db, "1000", "4000", 300)

        reversal = ledger.reverse_entry(db, entry.id, reason="Posted twice")

        assert reversal.reversal_of_id == entry.id
        assert db.get(JournalEntry, entry.id).reversed_by_id == reversal.id
        assert balance(db, "1000") == Decimal("0.00")
        assert balance(db, "4000") == Decimal("0.00")
        assert reversal.source == "reversal"

    def test_cannot_reverse_twice(self, db):
        entry = post(db, "1000", "4000", 300)
        reversal = ledger.reverse_entry(db, entry.id)

        with pytest.raises(HTTPException):
            ledger.reverse_entry(db, entry.id)
        with pytest.raises(HTTPException) as exc:
            ledger.reverse_entry(db, reversal.id)
        assert exc.value.detail == "Cannot reverse a reversal entry"

    def test_unknown_entry(self, db):
        with pytest.raises(HTTPException) as exc:
            ledger.reverse_entry(db, 999)
        assert exc.value.status_code == 404


class TestOpeningBalance:
    def test_asset_opening_balance_credits_retained_earnings(self, db):
        entry = ledger.post_opening_balance(db, account(db, "1010").id, amount=Decimal("5000"),
                                            entry_date=date(2025, 1, 1))

        assert entry.source == "opening_balance"
        assert balance(db, "1010") == Decimal("5000.00")
        assert balance(db, "3998") == Decimal("5000.00")

    def test_liability_opening_balance(self, db):
        ledger.post_opening_balance(db, account(db, "2100").id, amount=2000, entry_date=date(2025, 1, 1))

        assert balance(db, "2100") == Decimal("2000.00")
        assert balance(db, "3998") == Decimal("-2000.00")

    def test_negative_amount_reduces_account(self, db):
        ledger.post_opening_balance(db, account(db, "1000").id, amount=-50, entry_date=date(2025, 1, 1))
        assert balance(db, "1000") == Decimal("-50.00")

    def test_zero_amount(self, db):
        with pytest.raises(HTTPException):
            ledger.post_opening_balance(db, account(db, "1000").id, amount=0)

    def test_not_on_retained_earnings(self, db):
        with pytest.raises(HTTPException):
            ledger.post_opening_balance(db, account(db, "3998").id, amount=10)


def test_recalculate_matches_incremental_balances(db):
    post(db, "1000", "3000", 1000)
    post(db, "5000", "1000", 400)
    before = {row["account_code"]: row["balance"] for row in ledger.list_balances(db)}

    db.query(AccountBalance).delete()
    db.commit()
    ledger.recalculate_balances(db)
    db.commit()

    after = {row["account_code"]: row["balance"] for row in ledger.list_balances(db)}
    assert after == before
    assert after["1000"] == 600.0


def test_list_journal_entries_filters(db):
    post(db, "1000", "4000", 10, on=date(2025, 1, 5))
    post(db, "1000", "4100", 20, on=date(2025, 2, 5))

    january = ledger.list_journal_entries(db, start_date=date(2025, 1, 1), end_date=date(2025, 1, 31))
    boarding = ledger.list_journal_entries(db, account_id=account(db, "4100").id)

    assert len(january) == 1
    assert [e.total_debit for e in boarding] == [Decimal("20.00")]


class TestAccountingPeriods:
    def make_january(self, db):
        return periods.create_period(db, period_name="January 2025", period_type="monthly",
                                     start_date=date(2025, 1, 1), end_date=date(2025, 1, 31))

    def test_overlap_rejected(self, db):
        self.make_january(db)

        with pytest.raises(HTTPException) as exc:
            periods.create_period(db, period_name="Q1", period_type="quarterly",
                                  start_date=date(2025, 1, 15), end_date=date(2025, 3, 31))
        assert exc.value.status_code == 400

    def test_invalid_type(self, db):
        with pytest.raises(HTTPException):
            periods.create_period(db, period_name="Week", period_type="weekly",
                                  start_date=date(2025, 1, 1), end_date=date(2025, 1, 7))

    def test_close_moves_net_income_to_retained_earnings(self, db):
        period = self.make_january(db)
        post(db, "1000", "4000", 1000)
        post(db, "5000", "1000", 300)

        result = periods.close_period(db, period.id)

        assert result["status"] == "closed"
        assert result["net_income"] == 700.0
        assert [c["entry_type"] for c in result["closing_entries"]] == ["revenue", "expense", "income_summary"]
        assert balance(db, "4000") == Decimal("0.00")
        assert balance(db, "5000") == Decimal("0.00")
        assert balance(db, "3999") == Decimal("0.00")
        assert balance(db, "3998") == Decimal("700.00")

    def test_net_loss(self, db):
        period = self.make_january(db)
        post(db, "1000", "3000", 1000)
        post(db, "5100", "1000", 250)

        result = periods.close_period(db, period.id)

        assert result["net_income"] == -250.0
        assert balance(db, "3998") == Decimal("-250.00")

    def test_posting_into_closed_period_is_rejected(self, db):
        period = self.make_january(db)
        periods.close_period(db, period.id)

        with pytest.raises(HTTPException) as exc:
            post(db, "1000", "4000", 10, on=date(2025, 1, 20))
        assert "closed accounting period" in exc.value.detail

    def test_cannot_close_twice(self, db):
        period = self.make_january(db)
        periods.close_period(db, period.id)

        with pytest.raises(HTTPException):
            periods.close_period(db, period.id)

    def test_reopen_reverses_closing_entries(self, db):
        period = self.make_january(db)
        post(db, "1000", "4000", 1000)
        periods.close_period(db, period.id)

        reopened = periods.reopen_period(db, period.id)

        assert reopened.status == "reopened"
        assert balance(db, "4000") == Decimal("1000.00")
        assert balance(db, "3998") == Decimal("0.00")
        assert db.query(PeriodClosingEntry).count() == 0
        post(db, "1000", "4000", 10, on=date(2025, 1, 20))

    def test_reclose_after_reopen(self, db):
        period = self.make_january(db)
        post(db, "1000", "4000", 1000)
        periods.close_period(db, period.id)
        periods.reopen_period(db, period.id)
        post(db, "1000", "4000", 200, on=date(2025, 1, 25))

        result = periods.close_period(db, period.id)

        assert result["net_income"] == 1200.0
        assert balance(db, "3998") == Decimal("1200.00")

    def test_only_closed_periods_reopen(self, db):
        period = self.make_january(db)
        with pytest.raises(HTTPException):
            periods.reopen_period(db, period.id)


class TestAccountingApi:
    def test_accountant_only(self, client, make_user):
        headers = make_user("reg", "registrar")
        assert client.get("/api/accounting/accounts", headers=headers).status_code == 403

    def test_post_and_fetch_entry(self, client, make_user):
        headers = make_user("acc", "accountant")

        response = client.post("/api/accounting/journal-entries", headers=headers, json={
            "description": "Stationery",
            "entry_date": "2025-03-01",
            "lines": [
                {"account_code": "5100", "debit": "45.50"},
                {"account_code": "1000", "credit": "45.50"},
            ],
        })

        assert response.status_code == 201
        body = response.json()
        assert body["total_debit"] == 45.5
        assert len(body["lines"]) == 2

        fetched = client.get(f"/api/accounting/journal-entries/{body['id']}", headers=headers)
        assert fetched.json()["description"] == "Stationery"

    def test_unbalanced_entry_returns_400(self, client, admin_headers):
        response = client.post("/api/accounting/journal-entries", headers=admin_headers, json={
            "description": "Broken",
            "lines": [
                {"account_code": "5100", "debit": "10"},
                {"account_code": "1000", "credit": "9"},
            ],
        })
        assert response.status_code == 400

    def test_close_period_endpoint(self, client, admin_headers):
        created = client.post("/api/accounting/periods", headers=admin_headers, json={
            "period_name": "March 2025", "period_type": "monthly",
            "start_date": "2025-03-01", "end_date": "2025-03-31",
        })
        assert created.status_code == 201

        closed = client.post(f"/api/accounting/periods/{created.json()['id']}/close", headers=admin_headers)

        assert closed.status_code == 200
        assert closed.json()["status"] == "closed"
