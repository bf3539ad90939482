from __future__ import annotations
import threading
from datetime import date
from typing import List, Optional, Tuple

from ledger.models.activity import Activity
from ledger.models.report import IncomeView, Report, Summary
from ledger.services import report_service
from ledger.services.import_service import ImportResult, ImportService, ProgressCallback
from ledger.services.ledger_service import LedgerService
from ledger.services.settings import Settings, load_settings


class IncomeService:
    """Point d'entrée des écrans: tableau de bord, table des revenus, rapports, import."""

    def __init__(self, settings: Optional[Settings] = None, ledger: Optional[LedgerService] = None):
        self.settings = settings or load_settings()
        self.ledger = ledger or LedgerService.from_settings(self.settings)
        self.importer = ImportService(self.ledger, strict_dates=self.settings.strict_dates)

    # Tableau de bord
    def summary(self) -> Summary:
        return self.ledger.summary()

    def recent_activity(self) -> List[Activity]:
        return self.ledger.recent_activity(self.settings.recent_activity_limit)

    # Table des revenus
    def income_table(self, term: str = "", status_filter: str = "all") -> IncomeView:
        return report_service.build_view(self.ledger.snapshot(), term, status_filter)

    def export(self, term: str = "", status_filter: str = "all", *, today: Optional[date] = None) -> Tuple[str, bytes]:
        view = self.income_table(term, status_filter)
        return report_service.export_filename(today), report_service.export_view(view)

    # Rapports
    def report(self, *, today: Optional[date] = None) -> Report:
        snap = self.ledger.snapshot()
        return report_service.build_report(
            snap, Summary.from_invoices(snap.invoices), today=today, top=self.settings.top_investors
        )

    # Import
    def import_file(
        self,
        blob: bytes,
        filename: Optional[str] = None,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
        today: Optional[date] = None,
    ) -> ImportResult:
        return self.importer.import_blob(blob, filename, progress=progress, cancel=cancel, today=today)
