# ledger/services/import_service.py
from __future__ import annotations
import csv
import io
import logging
import struct
import threading
import zipfile
from datetime import date
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import xlrd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import BaseModel, Field
from xlrd.compdoc import CompDocError
from xlrd.xldate import XLDateError

from ledger.models.invoice import Invoice, InvoiceCreate
from ledger.services.errors import LedgerError, ParseError, ValidationError
from ledger.services.ledger_service import LedgerService
from ledger.services.normalize import amount_to_str, normalize_date, parse_amount

log = logging.getLogger(__name__)

# Contrat de colonnes: 0 n° facture, 1 investisseur, 2 montant, 3 date, 4 échéance, 5 description
COL_NUMBER, COL_INVESTOR, COL_AMOUNT, COL_INVOICE_DATE, COL_DUE_DATE, COL_DESCRIPTION = range(6)
MIN_COLUMNS = 5

_CSV_ENCODINGS = ("utf-8-sig", "utf-8", "cp1252", "latin-1")
# signature des classeurs Excel 97-2003 (conteneur OLE2)
_OLE_MAGIC = b"\xd0\xcf\x11\xe0"

ProgressCallback = Callable[[float], None]


class ImportCandidate(BaseModel):
    row: int  # numéro de ligne dans la feuille (1 = en-tête)
    invoice_number: str
    investor_name: str
    amount: str
    invoice_date: str
    due_date: str
    description: str = ""

    def to_create(self) -> InvoiceCreate:
        return InvoiceCreate(**self.model_dump(exclude={"row"}))


class RowFailure(BaseModel):
    row: int
    invoice_number: str = ""
    reason: str


class ImportResult(BaseModel):
    candidates: int = 0
    succeeded: List[Invoice] = Field(default_factory=list)
    failed: List[RowFailure] = Field(default_factory=list)
    submitted: int = 0  # lignes soumises au store (succès + refus)
    cancelled: bool = False

    @property
    def count(self) -> int:
        return self.submitted


class ParsedRows(BaseModel):
    candidates: List[ImportCandidate] = Field(default_factory=list)
    rejected: List[RowFailure] = Field(default_factory=list)


# ---------- Décodage ---------- #

def _sheet_format(blob: bytes, filename: Optional[str]) -> str:
    """"xlsx", "xls" ou "csv": l'extension prime, sinon la signature du contenu."""
    ext = Path(filename).suffix.lower() if filename else ""
    if ext in (".xlsx", ".xlsm"):
        return "xlsx"
    if ext == ".xls":
        return "xls"
    if ext:
        return "csv"
    if blob[:2] == b"PK":
        return "xlsx"
    if blob[:4] == _OLE_MAGIC:
        return "xls"
    return "csv"


def _read_xlsx(blob: bytes) -> List[List[Any]]:
    try:
        wb = load_workbook(io.BytesIO(blob), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as e:
        raise ParseError(f"Failed to parse Excel file. Please check the format. ({e})") from e
    try:
        ws = wb.worksheets[0]
        return [list(r) for r in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _xls_value(cell: xlrd.sheet.Cell, datemode: int) -> Any:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return xlrd.xldate_as_datetime(cell.value, datemode)
        except (XLDateError, ValueError, OverflowError):
            # laissé en numéro de série, parse_date tranchera
            return cell.value
    return cell.value


def _read_xls(blob: bytes) -> List[List[Any]]:
    try:
        book = xlrd.open_workbook(file_contents=blob)
        sheet = book.sheet_by_index(0)
    except (xlrd.XLRDError, CompDocError, struct.error, ValueError, IndexError) as e:
        raise ParseError(f"Failed to parse Excel file. Please check the format. ({e})") from e
    return [
        [_xls_value(sheet.cell(rx, cx), book.datemode) for cx in range(sheet.ncols)]
        for rx in range(sheet.nrows)
    ]


def _read_csv(blob: bytes) -> List[List[Any]]:
    for enc in _CSV_ENCODINGS:
        try:
            content = blob.decode(enc)
            break
        except UnicodeDecodeError:
            continue
    else:  # pragma: no cover - latin-1 décode tout
        raise ParseError("Failed to read file: unknown text encoding")
    if "\x00" in content:
        raise ParseError("Failed to parse file: binary content is not tabular text")
    try:
        dialect = csv.Sniffer().sniff(content[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    try:
        return [row for row in csv.reader(io.StringIO(content), dialect)]
    except csv.Error as e:
        raise ParseError(f"Failed to parse CSV file: {e}") from e


def read_rows(blob: bytes, filename: Optional[str] = None) -> List[List[Any]]:
    """Décode un classeur .xlsx / .xls (1re feuille) ou un texte délimité en lignes de cellules brutes."""
    if not blob:
        raise ParseError("Failed to read file: empty content")
    fmt = _sheet_format(blob, filename)
    if fmt == "xlsx":
        return _read_xlsx(blob)
    if fmt == "xls":
        return _read_xls(blob)
    return _read_csv(blob)


# ---------- Normalisation ---------- #

def _cell(row: Sequence[Any], idx: int) -> Any:
    return row[idx] if idx < len(row) else None


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _populated(row: Sequence[Any]) -> int:
    # une cellule vide en fin de ligne ne compte pas comme colonne
    n = len(row)
    while n and _text(row[n - 1]) == "":
        n -= 1
    return n


def parse_rows(
    rows: Sequence[Sequence[Any]],
    *,
    strict_dates: bool = False,
    today: Optional[date] = None,
) -> ParsedRows:
    out = ParsedRows()
    for idx, row in enumerate(rows[1:], start=2):
        if _populated(row) < MIN_COLUMNS or not _text(_cell(row, COL_NUMBER)):
            log.debug("Ligne %d ignorée: colonnes insuffisantes ou n° vide", idx)
            continue

        number = _text(_cell(row, COL_NUMBER))
        investor = _text(_cell(row, COL_INVESTOR))
        amount = amount_to_str(_cell(row, COL_AMOUNT), default="0")
        if not investor or (parse_amount(amount) or 0) <= 0:
            log.debug("Ligne %d ignorée: investisseur vide ou montant nul", idx)
            continue

        try:
            inv_date = normalize_date(_cell(row, COL_INVOICE_DATE), strict=strict_dates, today=today, field="invoice_date")
            due_date = normalize_date(_cell(row, COL_DUE_DATE), strict=strict_dates, today=today, field="due_date")
        except ValidationError as e:
            out.rejected.append(RowFailure(row=idx, invoice_number=number, reason=str(e)))
            log.warning("Ligne %d (%s) rejetée: %s", idx, number, e)
            continue

        out.candidates.append(ImportCandidate(
            row=idx,
            invoice_number=number,
            investor_name=investor,
            amount=amount,
            invoice_date=inv_date,
            due_date=due_date,
            description=_text(_cell(row, COL_DESCRIPTION)),
        ))
    return out


# ---------- Pipeline ---------- #

class ImportService:
    """
    Import séquentiel: une ligne à la fois, dans l'ordre de la feuille.
    Pas de transaction globale: une ligne refusée n'annule ni les précédentes
    ni les suivantes; chaque issue est consignée dans ImportResult.
    """

    def __init__(self, ledger: LedgerService, *, strict_dates: bool = False):
        self.ledger = ledger
        self.strict_dates = strict_dates

    def preview(self, blob: bytes, filename: Optional[str] = None, *, today: Optional[date] = None) -> ParsedRows:
        return parse_rows(read_rows(blob, filename), strict_dates=self.strict_dates, today=today)

    def import_blob(
        self,
        blob: bytes,
        filename: Optional[str] = None,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
        today: Optional[date] = None,
    ) -> ImportResult:
        parsed = self.preview(blob, filename, today=today)
        return self.submit(parsed, progress=progress, cancel=cancel)

    def submit(
        self,
        parsed: ParsedRows,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ImportResult:
        total = len(parsed.candidates)
        result = ImportResult(candidates=total, failed=list(parsed.rejected))

        for done, cand in enumerate(parsed.candidates, start=1):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                log.info("Import annulé après %d/%d ligne(s)", done - 1, total)
                break
            result.submitted += 1
            try:
                result.succeeded.append(self.ledger.create_invoice(cand.to_create()))
            except LedgerError as e:
                reason = getattr(e, "message", str(e))
                result.failed.append(RowFailure(row=cand.row, invoice_number=cand.invoice_number, reason=reason))
                log.warning("Ligne %d (%s) refusée: %s", cand.row, cand.invoice_number, reason)
            if progress:
                progress(done / total)

        if total == 0 and progress:
            progress(1.0)

        log.info(
            "Import terminé: %d candidat(s), %d créé(s), %d échec(s)%s",
            total, len(result.succeeded), len(result.failed),
            " (annulé)" if result.cancelled else "",
        )
        return result
