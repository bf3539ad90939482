"""Test ledger_service -- factures, paiements, soldes dérivés, concurrence."""
from __future__ import annotations

import random
import threading
from datetime import date
from decimal import Decimal

import pytest

from ledger.models.activity import PaymentActivity, activity_adapter
from ledger.services.errors import NotFoundError, ValidationError
from ledger.services.ledger_service import LedgerService


def _assert_invariants(ledger: LedgerService) -> None:
    payments = ledger.list_payments()
    for inv in ledger.list_invoices():
        assert Decimal("0") <= inv.remaining_balance <= inv.amount
        own = [p.amount for p in payments if p.invoice_id == inv.id]
        assert inv.total_paid == sum(own, Decimal("0"))


# ===================================================================
# Création de factures
# ===================================================================

class TestCreateInvoice:

    def test_returns_stored_record(self, ledger, make_invoice):
        inv = make_invoice("250.5", project_name="Tower_A", agreement_number="AG-7")
        assert inv.id
        assert inv.amount == Decimal("250.50")
        stored = ledger.get_invoice(inv.id)
        assert stored.invoice_number == inv.invoice_number
        assert stored.project_name == "Tower_A"
        assert stored.description == ""

    def test_accepts_string_fields(self, ledger):
        inv = ledger.create_invoice({
            "invoice_number": " INV-9 ",
            "investor_name": "Bob",
            "amount": "1 200,50",
            "invoice_date": "2024-03-01",
            "due_date": "04/01/2024",
        })
        assert inv.invoice_number == "INV-9"
        assert inv.amount == Decimal("1200.50")
        assert inv.due_date == date(2024, 4, 1)

    @pytest.mark.parametrize("field", ["invoice_number", "investor_name", "invoice_date", "due_date"])
    def test_blank_required_field(self, make_invoice, field):
        with pytest.raises(ValidationError) as exc:
            make_invoice(**{field: "  "})
        assert exc.value.field == field

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount(self, make_invoice, amount):
        with pytest.raises(ValidationError) as exc:
            make_invoice(amount)
        assert exc.value.field == "amount"

    def test_amount_beyond_decimal_precision(self, make_invoice, ledger):
        with pytest.raises(ValidationError) as exc:
            make_invoice("1" * 30)
        assert exc.value.field == "amount"
        assert ledger.list_invoices() == []

    def test_duplicate_number_is_case_sensitive(self, ledger, make_invoice):
        make_invoice(invoice_number="INV-A")
        with pytest.raises(ValidationError, match="already exists"):
            make_invoice(invoice_number="INV-A")
        make_invoice(invoice_number="inv-a")
        assert len(ledger.list_invoices()) == 2

    def test_closed_project_list(self):
        ledger = LedgerService(projects=["North", "South"])
        fields = dict(investor_name="X", amount="10", invoice_date="2024-01-01", due_date="2024-01-31")
        ledger.create_invoice(dict(fields, invoice_number="1", project_name="North"))
        ledger.create_invoice(dict(fields, invoice_number="2"))
        with pytest.raises(ValidationError) as exc:
            ledger.create_invoice(dict(fields, invoice_number="3", project_name="East"))
        assert exc.value.field == "project_name"

    def test_concurrent_duplicate_numbers(self, ledger):
        barrier = threading.Barrier(8)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                ledger.create_invoice({
                    "invoice_number": "SAME", "investor_name": "X", "amount": "10",
                    "invoice_date": "2024-01-01", "due_date": "2024-02-01",
                })
                outcomes.append("ok")
            except ValidationError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert len(ledger.list_invoices()) == 1


# ===================================================================
# Paiements et statut
# ===================================================================

class TestPayments:

    def test_status_progression(self, ledger, make_invoice):
        inv = make_invoice("100.00")
        view = ledger.get_invoice(inv.id)
        assert view.status == "PENDING"
        assert view.remaining_balance == Decimal("100.00")

        ledger.record_payment(inv.id, "40.00", date(2024, 1, 10), "wire")
        view = ledger.get_invoice(inv.id)
        assert view.status == "PARTIAL"
        assert view.remaining_balance == Decimal("60.00")

        with pytest.raises(ValidationError, match="exceeds remaining balance"):
            ledger.record_payment(inv.id, "61.00", date(2024, 1, 11), "wire")
        assert ledger.get_invoice(inv.id).remaining_balance == Decimal("60.00")

        ledger.record_payment(inv.id, "60.00", date(2024, 1, 12), "ach")
        view = ledger.get_invoice(inv.id)
        assert view.status == "FULLY_PAID"
        assert view.status_label == "Fully Paid"
        assert view.remaining_balance == Decimal("0.00")

    def test_unknown_invoice(self, ledger):
        with pytest.raises(NotFoundError) as exc:
            ledger.record_payment("missing", "10", date(2024, 1, 1), "check")
        assert exc.value.id == "missing"

    def test_unknown_ids_leave_no_lock_behind(self, ledger, make_invoice):
        for i in range(20):
            with pytest.raises(NotFoundError):
                ledger.record_payment(f"ghost-{i}", "10", date(2024, 1, 1), "check")
            with pytest.raises(NotFoundError):
                ledger.delete_invoice(f"ghost-{i}")
        assert ledger._invoice_locks == {}

        inv = make_invoice()
        ledger.record_payment(inv.id, "10", date(2024, 1, 1), "check")
        assert list(ledger._invoice_locks) == [inv.id]
        ledger.delete_invoice(inv.id)
        assert ledger._invoice_locks == {}

    @pytest.mark.parametrize("amount", ["0", "-1", "abc"])
    def test_rejects_non_positive(self, ledger, make_invoice, amount):
        inv = make_invoice()
        with pytest.raises(ValidationError):
            ledger.record_payment(inv.id, amount, date(2024, 1, 1), "check")
        assert ledger.list_payments() == []

    def test_unknown_method_preserved(self, ledger, make_invoice):
        inv = make_invoice()
        pay = ledger.record_payment(inv.id, "5", date(2024, 1, 1), "crypto", notes="  test  ")
        stored = ledger.get_payment(pay.id)
        assert stored.payment_method == "crypto"
        assert stored.method_label == "crypto"
        assert stored.notes == "test"
        assert ledger.record_payment(inv.id, "5", date(2024, 1, 1), "wire").method_label == "Wire Transfer"

    def test_delete_payment_recomputes(self, ledger, make_invoice):
        inv = make_invoice("100")
        p1 = ledger.record_payment(inv.id, "30", date(2024, 1, 1), "wire")
        ledger.record_payment(inv.id, "20", date(2024, 1, 2), "wire")
        assert ledger.get_invoice(inv.id).total_paid == Decimal("50.00")

        ledger.delete_payment(p1.id)
        view = ledger.get_invoice(inv.id)
        assert view.total_paid == Decimal("20.00")
        assert view.remaining_balance == Decimal("80.00")
        with pytest.raises(NotFoundError):
            ledger.delete_payment(p1.id)

    def test_list_by_invoice(self, ledger, make_invoice):
        a, b = make_invoice(), make_invoice()
        ledger.record_payment(a.id, "10", date(2024, 1, 1), "wire")
        ledger.record_payment(b.id, "10", date(2024, 1, 1), "wire")
        assert [p.invoice_id for p in ledger.list_payments_by_invoice(a.id)] == [a.id]
        with pytest.raises(NotFoundError):
            ledger.list_payments_by_invoice("nope")

    def test_concurrent_payments_single_winner(self, ledger, make_invoice):
        inv = make_invoice("100.00")
        barrier = threading.Barrier(2)
        outcomes = []

        def pay():
            barrier.wait()
            try:
                ledger.record_payment(inv.id, "60.00", date(2024, 1, 5), "wire")
                outcomes.append("ok")
            except ValidationError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected"]
        assert ledger.get_invoice(inv.id).remaining_balance == Decimal("40.00")

    def test_many_concurrent_small_payments(self, ledger, make_invoice):
        inv = make_invoice("100.00")
        barrier = threading.Barrier(16)

        def pay():
            barrier.wait()
            for _ in range(5):
                try:
                    ledger.record_payment(inv.id, "7.00", date(2024, 1, 5), "ach")
                except ValidationError:
                    pass

        threads = [threading.Thread(target=pay) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        view = ledger.get_invoice(inv.id)
        assert view.total_paid == Decimal("98.00")
        assert view.remaining_balance == Decimal("2.00")


# ===================================================================
# Suppression, lectures, agrégats
# ===================================================================

class TestLedgerReads:

    def test_delete_invoice_cascades(self, ledger, make_invoice):
        a, b = make_invoice(), make_invoice()
        ledger.record_payment(a.id, "10", date(2024, 1, 1), "wire")
        ledger.record_payment(b.id, "10", date(2024, 1, 1), "wire")

        ledger.delete_invoice(a.id)
        assert [p.invoice_id for p in ledger.list_payments()] == [b.id]
        with pytest.raises(NotFoundError):
            ledger.get_invoice(a.id)
        with pytest.raises(NotFoundError):
            ledger.delete_invoice(a.id)
        with pytest.raises(NotFoundError):
            ledger.record_payment(a.id, "1", date(2024, 1, 1), "wire")

    def test_find_by_number(self, ledger, make_invoice):
        inv = make_invoice(invoice_number="X-1")
        assert ledger.find_invoice_by_number("X-1").id == inv.id
        assert ledger.find_invoice_by_number("x-1") is None

    def test_idempotent_listing(self, ledger, make_invoice):
        inv = make_invoice()
        ledger.record_payment(inv.id, "25", date(2024, 1, 1), "check")
        assert ledger.list_invoices() == ledger.list_invoices()

    def test_summary(self, ledger, make_invoice):
        a = make_invoice("100")
        make_invoice("50.25")
        ledger.record_payment(a.id, "30", date(2024, 1, 1), "wire")
        s = ledger.summary()
        assert s.total_invoices == 2
        assert s.total_amount == Decimal("150.25")
        assert s.received_amount == Decimal("30.00")
        assert s.outstanding_amount == Decimal("120.25")

    def test_summary_empty(self, ledger):
        s = ledger.summary()
        assert s.total_invoices == 0
        assert s.total_amount == 0

    def test_recent_activity_is_tagged(self, ledger, make_invoice):
        inv = make_invoice()
        ledger.record_payment(inv.id, "10", date(2024, 1, 1), "wire")
        items = ledger.recent_activity(limit=5)
        assert {a.kind for a in items} == {"invoice", "payment"}
        assert ledger.recent_activity(limit=1)[0].timestamp == max(a.timestamp for a in items)

        pay = next(a for a in items if a.kind == "payment")
        parsed = activity_adapter.validate_python(pay.model_dump())
        assert isinstance(parsed, PaymentActivity)
        assert parsed.data.invoice_id == inv.id

    def test_random_sequences_keep_invariant(self, ledger):
        rng = random.Random(1234)
        ids = []
        for step in range(300):
            op = rng.random()
            if op < 0.15 or not ids:
                inv = ledger.create_invoice({
                    "invoice_number": f"R-{step}", "investor_name": "Inv",
                    "amount": f"{rng.randint(1, 500)}.{rng.randint(0, 99):02d}",
                    "invoice_date": "2024-01-01", "due_date": "2024-03-01",
                })
                ids.append(inv.id)
            elif op < 0.85:
                target = rng.choice(ids)
                before = ledger.get_invoice(target)
                amount = Decimal(rng.randint(1, 30000)) / 100
                try:
                    ledger.record_payment(target, amount, date(2024, 1, 2), "wire")
                    assert amount <= before.remaining_balance
                except ValidationError:
                    assert amount > before.remaining_balance
                    assert ledger.get_invoice(target).total_paid == before.total_paid
            else:
                payments = ledger.list_payments()
                if payments:
                    ledger.delete_payment(rng.choice(payments).id)
            _assert_invariants(ledger)
