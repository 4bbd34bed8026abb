from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi import HTTPException

from . import students
from .models import Account, AccountBalance, FeePayment, GradelevelClass, JournalEntry, StudentTransaction, utcnow


def cash_balance(db):
    cash = db.query(Account).filter(Account.code == "1000").one()
    row = db.query(AccountBalance).filter(AccountBalance.account_id == cash.id).first()
    return row.balance if row else Decimal("0.00")


@pytest.fixture
def student(db):
    form1 = GradelevelClass(name="Form 1", stream="A")
    db.add(form1)
    db.commit()
    return students.register_student(db, data={
        "reg_number": "S001",
        "name": "Jane",
        "surname": "Doe",
        "gradelevel_class_id": form1.id,
    })


def credit(db, amount=500, description="Tuition fee Term 1"):
    return students.create_transaction(db, data={
        "student_reg_number": "S001",
        "transaction_type": "CREDIT",
        "amount": amount,
        "description": description,
        "term": "Term 1",
        "academic_year": "2025",
    })


def pay(db, amount="100", **extra):
    data = {"student_reg_number": "S001", "payment_amount": Decimal(amount), "payment_method": "cash"}
    data.update(extra)
    return students.process_payment(db, data=data)


class TestRegistration:
    def test_new_student_starts_at_zero(self, db, student):
        assert student.full_name == "Jane Doe"
        assert students.get_balance(db, "S001")["current_balance"] == 0.0

    def test_duplicate_reg_number(self, db, student):
        with pytest.raises(HTTPException) as exc:
            students.register_student(db, data={"reg_number": "S001", "name": "J", "surname": "D"})
        assert exc.value.status_code == 409

    def test_unknown_class(self, db):
        with pytest.raises(HTTPException) as exc:
            students.register_student(db, data={"reg_number": "S009", "name": "A", "surname": "B",
                                                "gradelevel_class_id": 99})
        assert exc.value.status_code == 404

    def test_search(self, db, student):
        assert [s.reg_number for s in students.list_students(db, search="doe")] == ["S001"]
        assert students.list_students(db, search="smith") == []

    def test_deactivate(self, db, student):
        students.deactivate_student(db, "S001")
        assert students.list_students(db, is_active=True) == []


class TestTransactions:
    def test_credit_posts_to_ledger(self, db, student):
        txn = credit(db)

        assert students.get_balance(db, "S001")["current_balance"] == 500.0
        entry = db.get(JournalEntry, txn.journal_entry_id)
        assert entry.source == "student_transaction"
        codes = {line.account.code: (line.debit, line.credit) for line in entry.lines}
        assert codes["1000"] == (Decimal("500.00"), Decimal("0.00"))
        assert codes["4000"] == (Decimal("0.00"), Decimal("500.00"))

    def test_boarding_credit_uses_boarding_revenue(self, db, student):
        txn = credit(db, 200, "Boarding fee")

        entry = db.get(JournalEntry, txn.journal_entry_id)
        assert "4100" in {line.account.code for line in entry.lines}

    def test_debit_reduces_balance_and_cash(self, db, student):
        credit(db, 500)
        students.create_transaction(db, data={
            "student_reg_number": "S001", "transaction_type": "debit", "amount": 120, "description": "Library fine",
        })

        assert students.get_balance(db, "S001")["current_balance"] == 380.0
        assert cash_balance(db) == Decimal("380.00")

    @pytest.mark.parametrize("data,status", [
        ({"transaction_type": "CREDIT", "amount": 10, "description": "x"}, 400),
        ({"student_reg_number": "S001", "transaction_type": "REFUND", "amount": 10, "description": "x"}, 400),
        ({"student_reg_number": "S001", "transaction_type": "CREDIT", "amount": 0, "description": "x"}, 400),
        ({"student_reg_number": "S404", "transaction_type": "CREDIT", "amount": 10, "description": "x"}, 404),
    ])
    def test_validation(self, db, student, data, status):
        with pytest.raises(HTTPException) as exc:
            students.create_transaction(db, data=data)
        assert exc.value.status_code == status
        db.rollback()
        assert db.query(StudentTransaction).count() == 0

    def test_statement_runs_balance(self, db, student):
        credit(db, 500)
        students.create_transaction(db, data={
            "student_reg_number": "S001", "transaction_type": "DEBIT", "amount": 200, "description": "Trip",
        })

        statement = students.get_statement(db, "S001")

        assert [line["running_balance"] for line in statement["transactions"]] == [500.0, 300.0]
        assert statement["closing_balance"] == 300.0

    def test_update_description_only(self, db, student):
        txn = credit(db)
        updated = students.update_transaction(db, txn.id, description="Tuition fee Term 1 (corrected)")

        assert updated.description == "Tuition fee Term 1 (corrected)"
        assert updated.amount == Decimal("500.00")


class TestReversal:
    def test_reversal_restores_balances(self, db, student):
        txn = credit(db, 500)

        reversal = students.reverse_transaction(db, txn.id, reason="Wrong student")

        assert reversal.transaction_type == "DEBIT"
        assert reversal.reversal_of_id == txn.id
        assert reversal.description == "Reversal: Tuition fee Term 1 - Wrong student"
        assert db.get(StudentTransaction, txn.id).is_reversed is True
        assert students.get_balance(db, "S001")["current_balance"] == 0.0
        assert cash_balance(db) == Decimal("0.00")
        assert db.get(JournalEntry, txn.journal_entry_id).reversed_by_id == reversal.journal_entry_id

    def test_default_reason(self, db, student):
        txn = credit(db)
        assert students.reverse_transaction(db, txn.id).description.endswith("- Correction")

    def test_cannot_reverse_twice(self, db, student):
        txn = credit(db)
        reversal = students.reverse_transaction(db, txn.id)

        with pytest.raises(HTTPException):
            students.reverse_transaction(db, txn.id)
        with pytest.raises(HTTPException):
            students.reverse_transaction(db, reversal.id)

    def test_outside_grace_period(self, db, student):
        txn = credit(db)
        txn.transaction_date = utcnow() - timedelta(days=45)
        db.commit()

        with pytest.raises(HTTPException) as exc:
            students.reverse_transaction(db, txn.id)
        assert "cannot be reversed" in exc.value.detail


class TestFeePayments:
    def test_payment_credits_student_and_ledger(self, db, student):
        payment = pay(db, "150")

        assert payment.payment_method == "Cash"
        assert payment.receipt_number == f"FP{date.today().strftime('%Y%m%d')}-0001"
        assert payment.status == "Completed"
        assert students.get_balance(db, "S001")["current_balance"] == 150.0
        entry = db.get(JournalEntry, payment.journal_entry_id)
        assert entry.journal.code == "FEES"
        assert entry.source == "fee_payment"
        txn = db.query(StudentTransaction).filter(StudentTransaction.payment_id == payment.id).one()
        assert txn.description == f"Fee Payment - Receipt #{payment.receipt_number}"

    def test_receipts_are_sequential(self, db, student):
        first = pay(db)
        second = pay(db)
        assert second.receipt_number.endswith("-0002")
        assert first.receipt_number != second.receipt_number

    def test_foreign_currency_uses_exchange_rate(self, db, student):
        payment = pay(db, "50", payment_currency="zar", exchange_rate=Decimal("13.5"))

        assert payment.payment_currency == "ZAR"
        assert payment.base_currency_amount == Decimal("675.00")
        assert students.get_balance(db, "S001")["current_balance"] == 675.0

    def test_duplicate_receipt(self, db, student):
        pay(db, reference_number="BANK-77")

        with pytest.raises(HTTPException) as exc:
            pay(db, reference_number="BANK-77")
        assert exc.value.status_code == 400

    @pytest.mark.parametrize("method,expected", [
        ("bank_transfer", "Bank Transfer"), ("MoMo", "Mobile Money"), ("Cheque", "Cheque"), ("bitcoin", "Other"),
    ])
    def test_method_normalization(self, method, expected):
        assert students.normalize_payment_method(method) == expected

    def test_invalid_amount(self, db, student):
        with pytest.raises(HTTPException):
            pay(db, "0")

    def test_full_refund(self, db, student):
        payment = pay(db, "200")

        result = students.refund_payment(db, payment.id, reason="Overpaid")

        assert result["refund_amount"] == 200.0
        assert students.get_payment(db, payment.id).status == "Refunded"
        assert students.get_balance(db, "S001")["current_balance"] == 0.0
        txn = db.get(StudentTransaction, result["transaction_id"])
        assert txn.transaction_type == "DEBIT"
        assert txn.description == f"Payment Refund - Receipt #{payment.receipt_number} - Overpaid"
        assert db.get(JournalEntry, result["journal_entry_id"]).source == "refund"

    def test_partial_refund(self, db, student):
        payment = pay(db, "200")
        students.refund_payment(db, payment.id, reason="Part", refund_amount=Decimal("50"))
        assert students.get_balance(db, "S001")["current_balance"] == 150.0

    def test_refund_limits(self, db, student):
        payment = pay(db, "200")

        with pytest.raises(HTTPException):
            students.refund_payment(db, payment.id, reason="Too much", refund_amount=Decimal("250"))
        db.rollback()
        students.refund_payment(db, payment.id, reason="Once")
        with pytest.raises(HTTPException) as exc:
            students.refund_payment(db, payment.id, reason="Twice")
        assert exc.value.detail == "Payment has already been refunded"

    def test_payment_summary(self, db, student):
        pay(db, "100")
        refunded = pay(db, "40")
        students.refund_payment(db, refunded.id, reason="Error")

        summary = students.list_payments(db, "S001")["summary"]

        assert summary == {"total_payments": 2, "total_paid": 100.0, "total_refunded": 40.0}


class TestStudentApi:
    def test_registrar_records_payment(self, client, make_user):
        headers = make_user("clerk", "registrar")

        created = client.post("/api/students", headers=headers,
                              json={"reg_number": "S100", "name": "Tom", "surname": "Ndlovu"})
        paid = client.post("/api/fees/payments", headers=headers,
                           json={"student_reg_number": "S100", "payment_amount": "80", "payment_method": "cash"})
        balance = client.get("/api/students/S100/balance", headers=headers)

        assert created.status_code == 201
        assert created.json()["full_name"] == "Tom Ndlovu"
        assert paid.status_code == 201
        assert paid.json()["base_currency_amount"] == 80.0
        assert balance.json()["current_balance"] == 80.0

    def test_teacher_is_forbidden(self, client, make_user):
        headers = make_user("teach", "teacher")
        assert client.get("/api/students", headers=headers).status_code == 403

    def test_unknown_student_is_404(self, client, admin_headers):
        assert client.get("/api/students/NOPE/balance", headers=admin_headers).status_code == 404


def payment_credit(db, payment):
    return (
        db.query(StudentTransaction)
        .filter(StudentTransaction.payment_id == payment.id, StudentTransaction.transaction_type == "CREDIT")
        .one()
    )


class TestReceiptNumbers:
    def test_prefix_of_existing_receipt_is_accepted(self, db, student):
        pay(db, reference_number="R10")
        second = pay(db, reference_number="R1")

        assert second.receipt_number == "R1"
        assert students.get_balance(db, "S001")["current_balance"] == 200.0

    def test_wildcards_are_literal(self, db, student):
        pay(db, reference_number="BANK-100")
        assert pay(db, reference_number="BANK-%").receipt_number == "BANK-%"
        assert pay(db, reference_number="BANK-1_0").receipt_number == "BANK-1_0"

    def test_receipt_used_by_another_student(self, db, student):
        students.register_student(db, data={"reg_number": "S002", "name": "John", "surname": "Roe"})
        pay(db, reference_number="BANK-9")

        with pytest.raises(HTTPException) as exc:
            students.process_payment(db, data={"student_reg_number": "S002", "payment_amount": Decimal("10"),
                                               "payment_method": "cash", "reference_number": "BANK-9"})
        assert exc.value.status_code == 400
        assert exc.value.detail == "Receipt number BANK-9 is already in use"

    def test_currency_must_be_three_letters(self, db, student):
        with pytest.raises(HTTPException) as exc:
            pay(db, payment_currency="DOLLARS")
        assert exc.value.status_code == 400
        db.rollback()
        assert db.query(FeePayment).count() == 0


class TestPaymentReversals:
    def test_reversed_payment_cannot_be_refunded(self, db, student):
        payment = pay(db, "100")
        students.reverse_transaction(db, payment_credit(db, payment).id, reason="Bounced cheque")

        assert students.get_payment(db, payment.id).status == "Reversed"
        with pytest.raises(HTTPException) as exc:
            students.refund_payment(db, payment.id, reason="Overpaid")
        assert exc.value.status_code == 400
        db.rollback()

        assert students.get_balance(db, "S001")["current_balance"] == 0.0
        assert cash_balance(db) == Decimal("0.00")

    def test_refunded_payment_cannot_be_reversed(self, db, student):
        payment = pay(db, "100")
        result = students.refund_payment(db, payment.id, reason="Overpaid")

        with pytest.raises(HTTPException) as exc:
            students.reverse_transaction(db, payment_credit(db, payment).id)
        assert exc.value.detail == f"Payment {payment.receipt_number} is refunded and cannot be reversed"
        db.rollback()
        with pytest.raises(HTTPException) as exc:
            students.reverse_transaction(db, result["transaction_id"])
        assert exc.value.detail == "Refund transactions cannot be reversed"
        db.rollback()

        assert students.get_balance(db, "S001")["current_balance"] == 0.0
        assert cash_balance(db) == Decimal("0.00")

    def test_reversed_payment_is_not_counted_as_paid(self, db, student):
        kept = pay(db, "100")
        bounced = pay(db, "30")
        students.reverse_transaction(db, payment_credit(db, bounced).id)

        summary = students.list_payments(db, "S001")["summary"]

        assert students.get_payment(db, kept.id).status == "Completed"
        assert summary == {"total_payments": 2, "total_paid": 100.0, "total_refunded": 0.0}


def test_recent_transaction_is_reversible_after_reload(db, student):
    txn = credit(db)
    txn.transaction_date = utcnow() - timedelta(days=29)
    db.commit()
    db.expire_all()

    reversal = students.reverse_transaction(db, txn.id)

    assert reversal.reversal_of_id == txn.id


def test_payment_currency_length_is_validated_by_api(client, student, admin_headers):
    response = client.post("/api/fees/payments", headers=admin_headers,
                           json={"student_reg_number": "S001", "payment_amount": "10", "payment_method": "cash",
                                 "payment_currency": "DOLLARS"})
    assert response.status_code == 422
