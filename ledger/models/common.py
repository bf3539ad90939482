from __future__ import annotations
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import datetime, timezone
import uuid

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize(value: Decimal) -> Decimal:
    """Arrondi monétaire à 2 décimales (demi-supérieur).

    ValueError si le montant dépasse la précision du contexte décimal.
    """
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"amount out of range: {value}") from e
