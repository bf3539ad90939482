from __future__ import annotations

import io
from datetime import date
from decimal import Decimal

import pytest
from openpyxl import Workbook

from ledger.services.ledger_service import LedgerService

TODAY = date(2024, 6, 1)

HEADER = ["Invoice Number", "Investor", "Amount", "Invoice Date", "Due Date", "Description"]


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def ledger() -> LedgerService:
    return LedgerService()


@pytest.fixture
def make_invoice(ledger):
    counter = {"n": 0}

    def _make(amount="100.00", **overrides):
        counter["n"] += 1
        fields = {
            "invoice_number": f"INV-{counter['n']:03d}",
            "investor_name": "Alice Martin",
            "amount": Decimal(amount),
            "invoice_date": date(2024, 1, 1),
            "due_date": date(2024, 2, 1),
        }
        fields.update(overrides)
        return ledger.create_invoice(fields)

    return _make


def xlsx_bytes(rows) -> bytes:
    wb = Workbook()
    ws = wb.active
    for r in rows:
        ws.append(list(r))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
