from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Literal, Optional
from datetime import date, datetime
from decimal import Decimal
from .common import ZERO, gen_id, quantize, utcnow
from .payment import Payment

InvoiceStatus = Literal["PENDING", "PARTIAL", "FULLY_PAID"]

STATUS_LABELS = {
    "FULLY_PAID": "Fully Paid",
    "PARTIAL": "Partial Payment",
    "PENDING": "Pending",
}


class Invoice(BaseModel):
    model_config = ConfigDict(extra="ignore")  # tolère d'anciennes clés dans les JSON

    id: str = Field(default_factory=gen_id)
    invoice_number: str
    project_name: Optional[str] = None
    agreement_number: Optional[str] = None
    investor_name: str
    description: str = ""

    amount: Decimal
    invoice_date: date
    due_date: date

    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def _two_decimals(cls, v: Decimal) -> Decimal:
        return quantize(v)


class InvoiceCreate(BaseModel):
    """Champs saisis (formulaire ou import) avant validation par le store."""
    invoice_number: str = ""
    project_name: Optional[str] = None
    agreement_number: Optional[str] = None
    investor_name: str = ""
    description: Optional[str] = ""
    amount: Decimal = ZERO
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None


class InvoiceView(Invoice):
    """Facture + état dérivé, recalculé à chaque lecture (jamais stocké)."""
    payments: List[Payment] = Field(default_factory=list)
    total_paid: Decimal = ZERO
    remaining_balance: Decimal = ZERO
    status: InvoiceStatus = "PENDING"

    @classmethod
    def build(cls, inv: Invoice, payments: List[Payment]) -> "InvoiceView":
        total_paid = quantize(sum((p.amount for p in payments), ZERO))
        remaining = quantize(inv.amount - total_paid)
        if total_paid == 0:
            status: InvoiceStatus = "PENDING"
        elif remaining == 0:
            status = "FULLY_PAID"
        else:
            status = "PARTIAL"
        return cls(
            **inv.model_dump(),
            payments=list(payments),
            total_paid=total_paid,
            remaining_balance=remaining,
            status=status,
        )

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]

    def to_invoice(self) -> Invoice:
        return Invoice(**self.model_dump(exclude={"payments", "total_paid", "remaining_balance", "status"}))
