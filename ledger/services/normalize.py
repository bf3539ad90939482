"""
Normalisation des montants et des dates venant de sources hétérogènes
(saisie, CSV, cellules Excel). Fonctions pures, sans état.
"""
from __future__ import annotations
import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ledger.models.common import quantize
from ledger.services.errors import ValidationError

EXCEL_EPOCH = date(1899, 12, 30)
# 9999-12-31 en numéro de série Excel
_MAX_SERIAL = 2958465

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d.%m.%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)

_NOT_AMOUNT = re.compile(r"[^\d.,\-]")
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")


# ---------- Montants ----------

def _money(d: Decimal) -> Optional[Decimal]:
    if not d.is_finite():
        return None
    try:
        return quantize(d)
    except ValueError:
        # trop de chiffres pour la précision décimale
        return None


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Accepte Decimal / int / float / texte ("1 234,50 ₽", "$1,234.50", "100", "1.5E+3").
    Retourne un Decimal à 2 décimales, ou None si illisible.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return _money(value)
    if isinstance(value, int):
        return _money(Decimal(value))
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return _money(Decimal(str(value)))

    raw = str(value).strip()
    # texte déjà numérique (notation scientifique comprise)
    try:
        return _money(Decimal(raw))
    except InvalidOperation:
        pass

    s = _NOT_AMOUNT.sub("", raw)
    if not s:
        return None
    if "," in s and "." not in s and s.count(",") == 1:
        # virgule seule = séparateur décimal
        s = s.replace(",", ".")
    else:
        s = s.replace(",", "")
    try:
        return _money(Decimal(s))
    except InvalidOperation:
        return None


def amount_to_str(value: Any, default: str = "0") -> str:
    d = parse_amount(value)
    return default if d is None else str(d)


def format_amount(value: Any) -> str:
    d = parse_amount(value)
    return f"{d:.2f}" if d is not None else "0.00"


def format_number(value: Any) -> str:
    """Groupe les milliers avec des espaces: 1234567.00 -> '1 234 567.00'."""
    s = str(value)
    head, dot, tail = s.partition(".")
    head = re.sub(r"(\d)(?=(\d{3})+$)", r"\1 ", head)
    return f"{head}{dot}{tail}"


# ---------- Dates ----------

def excel_serial_to_date(serial: float) -> date:
    """Jour 0 = 30/12/1899; la partie fractionnaire (heure) est ignorée."""
    return EXCEL_EPOCH + timedelta(days=int(math.floor(serial)))


def _serial_or_none(n: float) -> Optional[date]:
    if not math.isfinite(n) or n < 0 or n > _MAX_SERIAL:
        return None
    return excel_serial_to_date(n)


def parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float, Decimal)):
        return _serial_or_none(float(value))

    s = str(value).strip()
    if not s:
        return None
    # cellule CSV contenant un numéro de série
    if _NUMERIC.match(s):
        return _serial_or_none(float(s))
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(
    value: Any,
    *,
    strict: bool = False,
    today: Optional[date] = None,
    field: str = "date",
) -> str:
    """
    Canonise en YYYY-MM-DD.
    Illisible: mode souple -> date du jour; mode strict -> ValidationError.
    """
    d = parse_date(value)
    if d is None:
        if strict:
            raise ValidationError(f"Unreadable {field}: {value!r}", field=field)
        d = today or date.today()
    return d.isoformat()
