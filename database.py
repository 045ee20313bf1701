"""
Document store with MongoDB and a local JSON fallback.

- If a database URL and name are configured, records live in MongoDB.
- Otherwise they are kept in one JSONL file per collection under the local
  data directory.

Both backends expose the same small API used by the metadata routes:
insert, filtered listing, asset lookup and asset removal ($pull).
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lookup(doc: Dict[str, Any], dotted: str) -> List[Any]:
    """Resolve a dotted key, descending into lists the way MongoDB does."""
    values: List[Any] = [doc]
    for part in dotted.split("."):
        found: List[Any] = []
        for value in values:
            if isinstance(value, dict) and part in value:
                child = value[part]
                if isinstance(child, list):
                    found.extend(child)
                found.append(child)
        values = found
    return values


def _matches(doc: Dict[str, Any], filter_dict: Dict[str, Any]) -> bool:
    return all(v in _lookup(doc, k) for k, v in filter_dict.items())


class DocumentStore:
    """Metadata persistence for document groups and applications."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        database_name: Optional[str] = None,
        local_dir: str = os.path.join("data", "local_db"),
        db: Any = None,
    ):
        self.db = db
        self._client = None
        if self.db is None and database_url and database_name:
            self._client = MongoClient(database_url)
            self.db = self._client[database_name]
        self.local_dir = local_dir
        self._lock = threading.Lock()
        if self.db is None:
            os.makedirs(self.local_dir, exist_ok=True)

    @property
    def backend(self) -> str:
        return "mongodb" if self.db is not None else "local"

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    # ---------------------
    # Local JSONL backend
    # ---------------------

    def _local_path(self, collection_name: str) -> str:
        safe = "".join(ch for ch in collection_name if ch.isalnum() or ch in ("_", "-"))
        return os.path.join(self.local_dir, f"{safe}.jsonl")

    def _local_write(self, collection_name: str, doc: Dict[str, Any]) -> str:
        if "_id" not in doc:
            doc["_id"] = str(uuid.uuid4())
        with self._lock:
            with open(self._local_path(collection_name), "a", encoding="utf-8") as f:
                f.write(json.dumps(doc, default=str) + "\n")
        return str(doc["_id"])

    def _local_read_all(self, collection_name: str) -> List[Dict[str, Any]]:
        path = self._local_path(collection_name)
        if not os.path.exists(path):
            return []
        records: List[Dict[str, Any]] = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt line %s in %s", lineno, path)
        return records

    def _local_rewrite(self, collection_name: str, records: List[Dict[str, Any]]) -> None:
        path = self._local_path(collection_name)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            for doc in records:
                f.write(json.dumps(doc, default=str) + "\n")
        os.replace(tmp_path, path)

    # ---------------------
    # Public API
    # ---------------------

    def create_document(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        """Insert a single document with timestamps and return its id as a string."""
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)

        data_dict["created_at"] = _now()
        data_dict["updated_at"] = _now()

        if self.db is not None:
            result = self.db[collection_name].insert_one(data_dict)
            return str(result.inserted_id)
        return self._local_write(collection_name, data_dict)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        """Get documents from a collection.

        Supports equality filters; dotted keys match inside arrays of
        sub-documents (``{"files.public_id": "abc"}``).
        """
        filter_dict = filter_dict or {}

        if self.db is not None:
            cursor = self.db[collection_name].find(filter_dict)
            if newest_first:
                cursor = cursor.sort("created_at", DESCENDING)
            if limit:
                cursor = cursor.limit(limit)
            docs = list(cursor)
            for doc in docs:
                if "_id" in doc:
                    doc["_id"] = str(doc["_id"])
            return docs

        results = [d for d in self._local_read_all(collection_name) if _matches(d, filter_dict)]
        if newest_first:
            # file order is insertion order; reverse first so equal timestamps stay newest-first
            results.reverse()
            results.sort(key=lambda d: str(d.get("created_at", "")), reverse=True)
        if limit:
            results = results[:limit]
        return results

    def find_asset(self, collection_name: str, public_id: str) -> Optional[Dict[str, Any]]:
        """Return the first stored asset reference carrying this public id."""
        for doc in self.get_documents(collection_name, {"files.public_id": public_id}, limit=1):
            for item in doc.get("files") or []:
                if item.get("public_id") == public_id:
                    return item
        return None

    def pull_assets(self, collection_name: str, match: Dict[str, Any]) -> int:
        """Remove asset references matching ``match`` from every record.

        ``match`` holds asset fields, e.g. ``{"public_id": "x"}`` or
        ``{"url": "https://..."}``. Returns the number of modified records.
        """
        if self.db is not None:
            query = {f"files.{k}": v for k, v in match.items()}
            result = self.db[collection_name].update_many(
                query,
                {"$pull": {"files": match}, "$set": {"updated_at": _now()}},
            )
            return int(result.modified_count)

        modified = 0
        with self._lock:
            records = self._local_read_all(collection_name)
            for doc in records:
                files = doc.get("files") or []
                kept = [f for f in files if not all(f.get(k) == v for k, v in match.items())]
                if len(kept) != len(files):
                    doc["files"] = kept
                    doc["updated_at"] = _now()
                    modified += 1
            if modified:
                self._local_rewrite(collection_name, records)
        return modified
