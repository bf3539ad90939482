from __future__ import annotations
import copy, threading
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from ledger.storage.repo import Predicate, Record, to_record


class MemoryRepository:
    """Même interface que JsonRepository, sans fichier (tests, usage éphémère)."""

    def __init__(self, entity_name: str = "entity", key: str = "id"):
        self.entity_name = entity_name
        self.key = key
        self._lock = threading.Lock()
        self.data: List[Dict[str, Any]] = []

    def list_all(self) -> List[Record]:
        with self._lock:
            return copy.deepcopy(self.data)

    def get_by_id(self, obj_id: Any) -> Optional[Record]:
        return self.find_one(lambda d: str(d.get(self.key)) == str(obj_id))

    def find(self, pred: Predicate) -> List[Record]:
        return [d for d in self.list_all() if pred(d)]

    def find_one(self, pred: Predicate) -> Optional[Record]:
        for d in self.list_all():
            if pred(d):
                return d
        return None

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Record:
        record = to_record(item)
        if not record.get(self.key):
            record[self.key] = uuid4().hex
        with self._lock:
            if any(str(d.get(self.key)) == str(record[self.key]) for d in self.data):
                raise ValueError(f"{self.entity_name} with {self.key}={record[self.key]} already exists")
            self.data.append(copy.deepcopy(record))
        return record

    def delete(self, key_value: Any) -> bool:
        return self.delete_where(lambda d: str(d.get(self.key)) == str(key_value)) > 0

    def delete_where(self, pred: Predicate) -> int:
        with self._lock:
            before = len(self.data)
            self.data = [d for d in self.data if not pred(d)]
            return before - len(self.data)
