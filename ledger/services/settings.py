from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILENAME = "settings.json"

_TRUE = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    data_dir: Path = DATA_DIR
    # liste fermée de projets; vide = saisie libre
    projects: List[str] = Field(default_factory=list)
    strict_dates: bool = False
    top_investors: int = 5
    recent_activity_limit: int = 5
    backup_enabled: bool = True
    backup_keep: int = 5


def _load_json(path: Path):
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Réglages illisibles (%s): %s", path, e)
        return None


def load_settings(path: Optional[os.PathLike | str] = None) -> Settings:
    """
    Charge les réglages:
    - data/settings.json (ou `path`)
    - variables d'env LEDGER_DATA_DIR, LEDGER_STRICT_DATES, LEDGER_PROJECTS
    Un fichier absent ou invalide retombe sur les valeurs par défaut.
    """
    data_dir = Path(os.environ.get("LEDGER_DATA_DIR") or DATA_DIR)
    p = Path(path) if path else data_dir / SETTINGS_FILENAME

    raw = _load_json(p)
    s = raw if isinstance(raw, dict) else {}
    s.setdefault("data_dir", str(data_dir))

    if "LEDGER_DATA_DIR" in os.environ:
        s["data_dir"] = os.environ["LEDGER_DATA_DIR"]
    if "LEDGER_STRICT_DATES" in os.environ:
        s["strict_dates"] = os.environ["LEDGER_STRICT_DATES"].strip().lower() in _TRUE
    if "LEDGER_PROJECTS" in os.environ:
        s["projects"] = [x.strip() for x in os.environ["LEDGER_PROJECTS"].split(",") if x.strip()]

    try:
        return Settings(**s)
    except ValidationError as e:
        log.warning("Réglages invalides (%s), valeurs par défaut utilisées: %s", p, e)
        return Settings(data_dir=data_dir)
