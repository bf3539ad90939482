from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from datetime import date, datetime
from decimal import Decimal
from .common import gen_id, quantize, utcnow

# Enum ouvert: une valeur inconnue est conservée telle quelle pour l'affichage
KNOWN_METHODS = ("bank_transfer", "check", "wire", "ach")

METHOD_LABELS = {
    "bank_transfer": "Bank Transfer",
    "check": "Check",
    "wire": "Wire Transfer",
    "ach": "ACH",
}


def method_label(method: str) -> str:
    return METHOD_LABELS.get(method, method)


class Payment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    invoice_id: str
    amount: Decimal
    payment_date: date
    payment_method: str = "bank_transfer"
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def _two_decimals(cls, v: Decimal) -> Decimal:
        return quantize(v)

    @property
    def method_label(self) -> str:
        return method_label(self.payment_method)
