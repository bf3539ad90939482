from __future__ import annotations
from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Literal, Union
from datetime import datetime
from .invoice import Invoice
from .payment import Payment


class InvoiceActivity(BaseModel):
    kind: Literal["invoice"] = "invoice"
    data: Invoice
    timestamp: datetime


class PaymentActivity(BaseModel):
    kind: Literal["payment"] = "payment"
    data: Payment
    timestamp: datetime


# Union discriminée sur `kind` (flux "transactions récentes" du tableau de bord)
Activity = Annotated[Union[InvoiceActivity, PaymentActivity], Field(discriminator="kind")]

activity_adapter: TypeAdapter[Activity] = TypeAdapter(Activity)
