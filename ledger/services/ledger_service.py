# ledger/services/ledger_service.py
from __future__ import annotations
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from ledger.models.activity import Activity, InvoiceActivity, PaymentActivity
from ledger.models.common import ZERO, quantize
from ledger.models.invoice import Invoice, InvoiceCreate, InvoiceView
from ledger.models.payment import Payment
from ledger.models.report import LedgerSnapshot, Summary
from ledger.services.errors import NotFoundError, ValidationError
from ledger.services.normalize import parse_amount, parse_date
from ledger.services.settings import Settings
from ledger.storage.memory_repo import MemoryRepository
from ledger.storage.repo import JsonRepository, Record, Repository

log = logging.getLogger(__name__)

_REQUIRED = ("invoice_number", "investor_name")


def _blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


class LedgerService:
    """
    Store des factures et paiements.
    - Les soldes (payé / restant / statut) sont calculés à la lecture, jamais stockés
    - record_payment: contrôle du solde + insertion sérialisés par facture
    - create_invoice: unicité du numéro + insertion atomiques
    - Lectures protégées par le verrou de commit: jamais d'état à moitié appliqué
    - Suppression d'une facture = suppression de ses paiements (cascade)
    """

    def __init__(
        self,
        invoices_repo: Optional[Repository] = None,
        payments_repo: Optional[Repository] = None,
        *,
        projects: Sequence[str] = (),
    ) -> None:
        self.invoices_repo: Repository = invoices_repo or MemoryRepository("invoice")
        self.payments_repo: Repository = payments_repo or MemoryRepository("payment")
        self.projects = tuple(projects)

        self._commit_lock = threading.RLock()
        self._create_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._invoice_locks: Dict[str, threading.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerService":
        base = settings.data_dir
        opts = dict(backup_enabled=settings.backup_enabled, backup_keep=settings.backup_keep)
        return cls(
            JsonRepository(base / "invoices.json", entity_name="invoice", **opts),
            JsonRepository(base / "payments.json", entity_name="payment", **opts),
            projects=settings.projects,
        )

    # ---------- verrous ---------- #

    @contextmanager
    def _locked_invoice(self, invoice_id: str) -> Iterator[None]:
        # verrou créé seulement pour une facture existante
        with self._registry_lock:
            lock = self._invoice_locks.get(invoice_id)
            if lock is None:
                if self.invoices_repo.get_by_id(invoice_id) is None:
                    raise NotFoundError("Invoice", invoice_id)
                lock = self._invoice_locks[invoice_id] = threading.Lock()
        with lock:
            yield

    def _forget_lock(self, invoice_id: str) -> None:
        with self._registry_lock:
            self._invoice_locks.pop(invoice_id, None)

    # ---------- hydratation ---------- #

    def _hydrate_invoices(self, rows: List[Record]) -> List[Invoice]:
        out: List[Invoice] = []
        for d in rows:
            try:
                out.append(Invoice(**d))
            except PydanticValidationError as e:
                log.warning("Facture illisible ignorée (%s): %s", d.get("id"), e)
        return out

    def _hydrate_payments(self, rows: List[Record]) -> List[Payment]:
        out: List[Payment] = []
        for d in rows:
            try:
                out.append(Payment(**d))
            except PydanticValidationError as e:
                log.warning("Paiement illisible ignoré (%s): %s", d.get("id"), e)
        return out

    @staticmethod
    def _views(invoices: List[Invoice], payments: List[Payment]) -> List[InvoiceView]:
        by_invoice: Dict[str, List[Payment]] = defaultdict(list)
        for p in payments:
            by_invoice[p.invoice_id].append(p)
        return [InvoiceView.build(inv, by_invoice.get(inv.id, [])) for inv in invoices]

    def _load_invoice(self, invoice_id: str) -> Invoice:
        row = self.invoices_repo.get_by_id(invoice_id)
        if row is None:
            raise NotFoundError("Invoice", invoice_id)
        return Invoice(**row)

    def _payments_of(self, invoice_id: str) -> List[Payment]:
        return self._hydrate_payments(self.payments_repo.find(lambda d: d.get("invoice_id") == invoice_id))

    # ---------- factures ---------- #

    def _validate_invoice(self, fields: Union[InvoiceCreate, Mapping[str, Any]]) -> Invoice:
        data = fields.model_dump() if isinstance(fields, InvoiceCreate) else dict(fields)

        for name in _REQUIRED:
            if _blank(data.get(name)):
                raise ValidationError(f"{name} is required", field=name)

        amount = parse_amount(data.get("amount"))
        if amount is None or amount <= 0:
            raise ValidationError("amount must be greater than 0", field="amount")

        dates: Dict[str, date] = {}
        for name in ("invoice_date", "due_date"):
            if _blank(data.get(name)):
                raise ValidationError(f"{name} is required", field=name)
            d = parse_date(data.get(name))
            if d is None:
                raise ValidationError(f"{name} is not a valid date: {data.get(name)!r}", field=name)
            dates[name] = d

        project = None if _blank(data.get("project_name")) else str(data["project_name"]).strip()
        if project is not None and self.projects and project not in self.projects:
            raise ValidationError(f"Unknown project: {project}", field="project_name")

        agreement = None if _blank(data.get("agreement_number")) else str(data["agreement_number"]).strip()

        return Invoice(
            invoice_number=str(data["invoice_number"]).strip(),
            investor_name=str(data["investor_name"]).strip(),
            project_name=project,
            agreement_number=agreement,
            description=str(data.get("description") or "").strip(),
            amount=amount,
            **dates,
        )

    def create_invoice(self, fields: Union[InvoiceCreate, Mapping[str, Any]]) -> Invoice:
        inv = self._validate_invoice(fields)
        with self._create_lock:
            number = inv.invoice_number
            if self.invoices_repo.find_one(lambda d: d.get("invoice_number") == number):
                raise ValidationError(f"Invoice number {number} already exists", field="invoice_number")
            with self._commit_lock:
                self.invoices_repo.add(inv)
        log.info("Facture créée %s (%s, %s)", inv.invoice_number, inv.investor_name, inv.amount)
        return inv

    def delete_invoice(self, invoice_id: str) -> None:
        with self._locked_invoice(invoice_id):
            with self._commit_lock:
                if self.invoices_repo.get_by_id(invoice_id) is None:
                    raise NotFoundError("Invoice", invoice_id)
                removed = self.payments_repo.delete_where(lambda d: d.get("invoice_id") == invoice_id)
                self.invoices_repo.delete(invoice_id)
        self._forget_lock(invoice_id)
        log.info("Facture %s supprimée (%d paiement(s) en cascade)", invoice_id, removed)

    def get_invoice(self, invoice_id: str) -> InvoiceView:
        with self._commit_lock:
            inv = self._load_invoice(invoice_id)
            payments = self._payments_of(invoice_id)
        return InvoiceView.build(inv, payments)

    def find_invoice_by_number(self, invoice_number: str) -> Optional[InvoiceView]:
        with self._commit_lock:
            row = self.invoices_repo.find_one(lambda d: d.get("invoice_number") == invoice_number)
            if row is None:
                return None
            inv = Invoice(**row)
            payments = self._payments_of(inv.id)
        return InvoiceView.build(inv, payments)

    def list_invoices(self) -> List[InvoiceView]:
        return self.snapshot().invoices

    # ---------- paiements ---------- #

    def record_payment(
        self,
        invoice_id: str,
        amount: Union[Decimal, str, int, float],
        payment_date: Union[date, str],
        payment_method: str = "bank_transfer",
        notes: Optional[str] = None,
    ) -> Payment:
        value = parse_amount(amount)
        if value is None or value <= 0:
            raise ValidationError("Payment amount must be greater than 0", field="amount")
        paid_on = parse_date(payment_date)
        if paid_on is None:
            raise ValidationError(f"payment_date is not a valid date: {payment_date!r}", field="payment_date")
        method = (payment_method or "").strip()
        if not method:
            raise ValidationError("payment_method is required", field="payment_method")

        with self._locked_invoice(invoice_id):
            inv = self._load_invoice(invoice_id)
            paid = quantize(sum((p.amount for p in self._payments_of(invoice_id)), ZERO))
            remaining = inv.amount - paid
            if value > remaining:
                raise ValidationError(
                    f"Payment amount {value} exceeds remaining balance {remaining} "
                    f"of invoice {inv.invoice_number}",
                    field="amount",
                )
            pay = Payment(
                invoice_id=invoice_id,
                amount=value,
                payment_date=paid_on,
                payment_method=method,
                notes=(notes or "").strip() or None,
            )
            with self._commit_lock:
                self.payments_repo.add(pay)
        log.info("Paiement %s enregistré sur %s (reste %s)", value, inv.invoice_number, remaining - value)
        return pay

    def delete_payment(self, payment_id: str) -> None:
        with self._commit_lock:
            if not self.payments_repo.delete(payment_id):
                raise NotFoundError("Payment", payment_id)
        log.info("Paiement %s supprimé", payment_id)

    def get_payment(self, payment_id: str) -> Payment:
        row = self.payments_repo.get_by_id(payment_id)
        if row is None:
            raise NotFoundError("Payment", payment_id)
        return Payment(**row)

    def list_payments(self) -> List[Payment]:
        return self.snapshot().payments

    def list_payments_by_invoice(self, invoice_id: str) -> List[Payment]:
        with self._commit_lock:
            if self.invoices_repo.get_by_id(invoice_id) is None:
                raise NotFoundError("Invoice", invoice_id)
            return self._payments_of(invoice_id)

    # ---------- agrégats ---------- #

    def snapshot(self) -> LedgerSnapshot:
        with self._commit_lock:
            invoices = self._hydrate_invoices(self.invoices_repo.list_all())
            payments = self._hydrate_payments(self.payments_repo.list_all())
        return LedgerSnapshot(invoices=self._views(invoices, payments), payments=payments)

    def summary(self) -> Summary:
        return Summary.from_invoices(self.list_invoices())

    def recent_activity(self, limit: int = 5) -> List[Activity]:
        snap = self.snapshot()
        items: List[Activity] = [
            InvoiceActivity(data=v.to_invoice(), timestamp=v.created_at) for v in snap.invoices
        ]
        items += [PaymentActivity(data=p, timestamp=p.created_at) for p in snap.payments]
        items.sort(key=lambda a: a.timestamp, reverse=True)
        return items[:limit]
