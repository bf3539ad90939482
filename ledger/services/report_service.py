# ledger/services/report_service.py
from __future__ import annotations
import csv
import io
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Literal, Optional, Sequence

from ledger.models.common import ZERO, quantize
from ledger.models.invoice import InvoiceStatus, InvoiceView
from ledger.models.payment import Payment
from ledger.models.report import (
    IncomeView, InvestorTotal, InvoiceGroup, LedgerSnapshot, PaymentRow, Report,
    StatusDistribution, Summary,
)
from ledger.services.errors import ValidationError

StatusFilter = Literal["all", "paid", "partial", "pending"]

NO_PROJECT = "No Project"

EXPORT_HEADERS = [
    "Invoice Number", "Investor", "Invoice Amount", "Total Paid",
    "Remaining Balance", "Status", "Invoice Date", "Due Date",
]


# ---------- Filtres ----------

def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in str(value).lower()


def search_invoices(invoices: Iterable[InvoiceView], term: str = "") -> List[InvoiceView]:
    needle = (term or "").strip().lower()
    if not needle:
        return list(invoices)
    return [
        inv for inv in invoices
        if _contains(inv.invoice_number, needle)
        or _contains(inv.investor_name, needle)
        or _contains(inv.project_name, needle)
        or _contains(inv.agreement_number, needle)
    ]


def _matches_status(inv: InvoiceView, status_filter: str) -> bool:
    if status_filter == "paid":
        return inv.remaining_balance == 0
    if status_filter == "partial":
        return inv.total_paid > 0 and inv.remaining_balance > 0
    if status_filter == "pending":
        # "en attente" = aucun paiement, indépendamment de classify()
        return inv.total_paid == 0
    return True


def filter_by_status(invoices: Iterable[InvoiceView], status_filter: StatusFilter = "all") -> List[InvoiceView]:
    if status_filter not in ("all", "paid", "partial", "pending"):
        raise ValidationError(f"Unknown status filter: {status_filter}", field="status_filter")
    return [inv for inv in invoices if _matches_status(inv, status_filter)]


def classify(inv: InvoiceView) -> InvoiceStatus:
    return inv.status


def payable_invoices(invoices: Iterable[InvoiceView]) -> List[InvoiceView]:
    """Factures pouvant encore recevoir un paiement."""
    return [inv for inv in invoices if inv.remaining_balance > 0]


def group_by_project(invoices: Iterable[InvoiceView]) -> List[InvoiceGroup]:
    groups: Dict[str, InvoiceGroup] = {}
    for inv in invoices:
        name = inv.project_name or NO_PROJECT
        groups.setdefault(name, InvoiceGroup(name=name)).invoices.append(inv)
    return list(groups.values())


def build_view(snapshot: LedgerSnapshot, term: str = "", status_filter: StatusFilter = "all") -> IncomeView:
    selected = filter_by_status(search_invoices(snapshot.invoices, term), status_filter)
    return IncomeView(invoices=selected, groups=group_by_project(selected))


def search_payments(
    payments: Iterable[Payment],
    invoices: Iterable[InvoiceView],
    term: str = "",
) -> List[PaymentRow]:
    by_id = {inv.id: inv for inv in invoices}
    rows: List[PaymentRow] = []
    for p in payments:
        inv = by_id.get(p.invoice_id)
        rows.append(PaymentRow(
            payment=p,
            invoice_number=inv.invoice_number if inv else f"Invoice #{p.invoice_id}",
            investor_name=inv.investor_name if inv else "Unknown",
        ))
    needle = (term or "").strip().lower()
    if not needle:
        return rows
    return [r for r in rows if needle in r.invoice_number.lower() or needle in r.investor_name.lower()]


# ---------- Agrégats ----------

def collection_rate(summary: Summary) -> Decimal:
    """Part encaissée (0..1); 0 si rien n'a été facturé."""
    if summary.total_amount == 0:
        return ZERO
    return summary.received_amount / summary.total_amount


def average_invoice_amount(summary: Summary) -> Decimal:
    if summary.total_invoices == 0:
        return ZERO
    return quantize(summary.total_amount / summary.total_invoices)


def status_distribution(invoices: Iterable[InvoiceView]) -> StatusDistribution:
    dist = StatusDistribution()
    for inv in invoices:
        if inv.remaining_balance == 0:
            dist.fully_paid += 1
        if inv.total_paid > 0 and inv.remaining_balance > 0:
            dist.partial += 1
        if inv.total_paid == 0:
            dist.pending += 1
    return dist


def top_investors(invoices: Iterable[InvoiceView], limit: int = 5) -> List[InvestorTotal]:
    totals: Dict[str, InvestorTotal] = {}
    for inv in invoices:
        t = totals.setdefault(inv.investor_name, InvestorTotal(name=inv.investor_name))
        t.amount += inv.amount
        t.invoices += 1
    # tri stable: à montant égal, ordre de première apparition
    return sorted(totals.values(), key=lambda t: t.amount, reverse=True)[:limit]


def days_outstanding(inv: InvoiceView, today: Optional[date] = None) -> Optional[int]:
    days = ((today or date.today()) - inv.due_date).days
    return days if days > 0 else None


def is_overdue(inv: InvoiceView, today: Optional[date] = None) -> bool:
    return inv.due_date < (today or date.today()) and inv.remaining_balance > 0


def overdue_count(invoices: Iterable[InvoiceView], today: Optional[date] = None) -> int:
    return sum(1 for inv in invoices if is_overdue(inv, today))


def build_report(
    snapshot: LedgerSnapshot,
    summary: Summary,
    *,
    today: Optional[date] = None,
    top: int = 5,
) -> Report:
    return Report(
        summary=summary,
        collection_rate=collection_rate(summary),
        average_invoice_amount=average_invoice_amount(summary),
        distribution=status_distribution(snapshot.invoices),
        top_investors=top_investors(snapshot.invoices, top),
        overdue_count=overdue_count(snapshot.invoices, today),
    )


# ---------- Export ----------

def export_rows(invoices: Sequence[InvoiceView]) -> List[List[str]]:
    return [
        [
            inv.invoice_number,
            inv.investor_name,
            f"{inv.amount:.2f}",
            f"{inv.total_paid:.2f}",
            f"{inv.remaining_balance:.2f}",
            inv.status_label,
            inv.invoice_date.isoformat(),
            inv.due_date.isoformat(),
        ]
        for inv in invoices
    ]


def export_csv(invoices: Sequence[InvoiceView]) -> bytes:
    """CSV: en-tête fixe puis une ligne par facture, toutes les valeurs entre guillemets."""
    buf = io.StringIO()
    w = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    w.writerow(EXPORT_HEADERS)
    w.writerows(export_rows(invoices))
    return buf.getvalue().rstrip("\n").encode("utf-8")


def export_view(view: IncomeView) -> bytes:
    return export_csv(view.invoices)


def export_filename(today: Optional[date] = None) -> str:
    return f"income-table-{(today or date.today()).isoformat()}.csv"
