from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Iterable, List
from decimal import Decimal
from .common import ZERO, quantize
from .invoice import InvoiceView
from .payment import Payment


class Summary(BaseModel):
    total_invoices: int = 0
    total_amount: Decimal = ZERO
    received_amount: Decimal = ZERO
    outstanding_amount: Decimal = ZERO

    @classmethod
    def from_invoices(cls, views: Iterable[InvoiceView]) -> "Summary":
        views = list(views)
        return cls(
            total_invoices=len(views),
            total_amount=quantize(sum((v.amount for v in views), ZERO)),
            received_amount=quantize(sum((v.total_paid for v in views), ZERO)),
            outstanding_amount=quantize(sum((v.remaining_balance for v in views), ZERO)),
        )


class LedgerSnapshot(BaseModel):
    invoices: List[InvoiceView] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)


class InvoiceGroup(BaseModel):
    name: str
    invoices: List[InvoiceView] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.invoices)


class IncomeView(BaseModel):
    invoices: List[InvoiceView] = Field(default_factory=list)
    groups: List[InvoiceGroup] = Field(default_factory=list)


class StatusDistribution(BaseModel):
    fully_paid: int = 0
    partial: int = 0
    pending: int = 0


class InvestorTotal(BaseModel):
    name: str
    amount: Decimal = ZERO
    invoices: int = 0


class PaymentRow(BaseModel):
    """Paiement enrichi avec le numéro de facture et l'investisseur."""
    payment: Payment
    invoice_number: str
    investor_name: str


class Report(BaseModel):
    summary: Summary
    collection_rate: Decimal = ZERO
    average_invoice_amount: Decimal = ZERO
    distribution: StatusDistribution = Field(default_factory=StatusDistribution)
    top_investors: List[InvestorTotal] = Field(default_factory=list)
    overdue_count: int = 0
