from __future__ import annotations
from typing import Optional


class LedgerError(Exception):
    """Base des erreurs du moteur de facturation."""


class ValidationError(LedgerError, ValueError):
    def __init__(self, message: str, *, field: Optional[str] = None, row: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.row = row

    def __str__(self) -> str:
        prefix = f"row {self.row}: " if self.row is not None else ""
        return f"{prefix}{self.message}"


class NotFoundError(LedgerError, LookupError):
    def __init__(self, entity: str, obj_id: str):
        super().__init__(f"{entity} {obj_id} not found")
        self.entity = entity
        self.id = obj_id

    def __str__(self) -> str:
        return f"{self.entity} {self.id} not found"


class ParseError(LedgerError, ValueError):
    """Le fichier importé n'est pas lisible comme un tableau."""
