"""
JSON-file backed collections.

Each collection is a list of dict records persisted to one JSON file, loaded
at startup and written back after every mutation.
"""

import datetime
import json
import logging
import os
import uuid
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class JsonStore:
    def __init__(self, name: str, path: str, id_prefix: str):
        self.name = name
        self.path = path
        self.id_prefix = id_prefix
        self.records: List[dict] = []

    def load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            self.records = loaded if isinstance(loaded, list) else []
        except FileNotFoundError:
            self.records = []
        except (OSError, ValueError) as e:
            logger.warning("Could not load %s from %s: %s", self.name, self.path, e)
            self.records = []

    def save(self) -> None:
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self.records, f, indent=2, default=str)
        except OSError as e:
            logger.warning("Could not save %s: %s", self.name, e)

    def count(self, **filters) -> int:
        return len(self.find(**filters))

    def get(self, record_id: str) -> Optional[dict]:
        return next((r for r in self.records if r["id"] == record_id), None)

    def find(self, **filters) -> List[dict]:
        """
        Records whose fields equal every filter value. A list or tuple value
        matches any of its members.
        """
        def matches(record):
            for key, expected in filters.items():
                actual = record.get(key)
                if isinstance(expected, (list, tuple, set, frozenset)):
                    if actual not in expected:
                        return False
                elif actual != expected:
                    return False
            return True
        return [r for r in self.records if matches(r)]

    def find_one(self, **filters) -> Optional[dict]:
        return next(iter(self.find(**filters)), None)

    def exists_other(self, field: str, value: Any, exclude_id: Optional[str] = None) -> bool:
        if value is None:
            return False
        needle = value.lower() if isinstance(value, str) else value
        for r in self.records:
            if r["id"] == exclude_id:
                continue
            current = r.get(field)
            if isinstance(current, str):
                current = current.lower()
            if current == needle:
                return True
        return False

    def next_code(self, field: str, prefix: str) -> str:
        """Sequential human-readable code, e.g. P000001."""
        highest = 0
        for r in self.records:
            code = str(r.get(field) or "")
            if code.startswith(prefix) and code[len(prefix):].isdigit():
                highest = max(highest, int(code[len(prefix):]))
        return f"{prefix}{highest + 1:06d}"

    def insert(self, data: Dict[str, Any]) -> dict:
        timestamp = now_iso()
        record = {"id": f"{self.id_prefix}-{uuid.uuid4().hex[:8]}", **data,
                  "createdAt": timestamp, "updatedAt": timestamp}
        self.records.append(record)
        self.save()
        return record

    def update(self, record_id: str, changes: Dict[str, Any]) -> Optional[dict]:
        record = self.get(record_id)
        if record is None:
            return None
        record.update(changes)
        record["id"] = record_id
        record["updatedAt"] = now_iso()
        self.save()
        return record

    def delete(self, record_id: str) -> bool:
        record = self.get(record_id)
        if record is None:
            return False
        self.records.remove(record)
        self.save()
        return True


def open_store(data_dir: str, name: str, id_prefix: str) -> JsonStore:
    return JsonStore(name, os.path.join(data_dir, f"{name}.json"), id_prefix)
