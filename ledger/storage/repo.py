from __future__ import annotations

import json
import logging
import shutil
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Union
from uuid import uuid4

from pydantic import BaseModel

log = logging.getLogger(__name__)

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    # Decimal et autres -> texte ("100.00")
    return str(o)


def to_record(item: Union[BaseModel, Mapping[str, Any]]) -> Record:
    if isinstance(item, BaseModel):
        return item.model_dump()
    return dict(item)


class Repository(Protocol):
    """Interface commune des backends de persistance (fichier JSON, mémoire)."""

    entity_name: str

    def list_all(self) -> List[Record]: ...
    def get_by_id(self, obj_id: Any) -> Optional[Record]: ...
    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Record: ...
    def delete(self, obj_id: Any) -> bool: ...
    def delete_where(self, predicate: Predicate) -> int: ...
    def find(self, predicate: Predicate) -> List[Record]: ...
    def find_one(self, predicate: Predicate) -> Optional[Record]: ...


class JsonRepository:
    """
    Collection d'enregistrements persistée dans un fichier JSON (liste d'objets).

    Chaque écriture remplace le fichier via un .tmp; l'ancienne version est
    gardée en `<nom>.<horodatage>.bak.json` (les `backup_keep` plus récentes).
    Une écriture sans changement ne touche pas au disque. Un fichier illisible
    est mis de côté en `<nom>.corrupt.json` et la collection repart vide.
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "entity",
        key: str = "id",
        *,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))
        # lecture-modification-écriture d'un seul tenant
        self._lock = threading.RLock()

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._store([])

    def _has_key(self, record: Mapping[str, Any], obj_id: Any) -> bool:
        return str(record.get(self.key)) == str(obj_id)

    # ---------- fichier ---------- #

    def _load(self) -> List[Record]:
        try:
            text = self.filepath.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            self._set_aside_corrupt()
            return []
        return data if isinstance(data, list) else []

    def _set_aside_corrupt(self) -> None:
        target = self.filepath.with_suffix(".corrupt.json")
        log.warning("%s: %s illisible, copie vers %s", self.entity_name, self.filepath, target)
        try:
            shutil.copy2(self.filepath, target)
        except OSError as e:
            log.warning("Copie de %s impossible: %s", self.filepath, e)

    def _backup_current(self) -> None:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        shutil.copy2(self.filepath, self.filepath.with_suffix(f".{stamp}.bak.json"))
        if self.backup_keep <= 0:
            return
        stem = self.filepath.with_suffix("").name
        backups = sorted(self.filepath.parent.glob(f"{stem}.*.bak.json"))
        for old in backups[: -self.backup_keep]:
            old.unlink(missing_ok=True)

    def _store(self, records: Iterable[Mapping[str, Any]]) -> None:
        payload = json.dumps(list(records), ensure_ascii=False, indent=2, default=_json_default)
        with self._lock:
            exists = self.filepath.exists()
            if exists and self.filepath.read_text(encoding="utf-8") == payload:
                return
            if exists and self.backup_enabled:
                self._backup_current()
            tmp = self.filepath.with_suffix(".tmp")
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self.filepath)

    # ---------- lecture ---------- #

    def list_all(self) -> List[Record]:
        with self._lock:
            return self._load()

    def get_by_id(self, obj_id: Any) -> Optional[Record]:
        return self.find_one(lambda r: self._has_key(r, obj_id))

    def find(self, predicate: Predicate) -> List[Record]:
        return [r for r in self.list_all() if predicate(r)]

    def find_one(self, predicate: Predicate) -> Optional[Record]:
        return next((r for r in self.list_all() if predicate(r)), None)

    # ---------- écriture ---------- #

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Record:
        record = to_record(item)
        if not record.get(self.key):
            record[self.key] = uuid4().hex
        with self._lock:
            records = self._load()
            if any(self._has_key(r, record[self.key]) for r in records):
                raise ValueError(f"{self.entity_name} with {self.key}={record[self.key]} already exists")
            records.append(record)
            self._store(records)
        return record

    def delete(self, obj_id: Any) -> bool:
        return self.delete_where(lambda r: self._has_key(r, obj_id)) > 0

    def delete_where(self, predicate: Predicate) -> int:
        with self._lock:
            records = self._load()
            kept = [r for r in records if not predicate(r)]
            if len(kept) != len(records):
                self._store(kept)
        return len(records) - len(kept)
