"""
Persistence for the Library, the Product Library and resolved media.

Collections are lists of JSON rows keyed by `id`:
  - JsonFileBackend:  one `<collection>.json` document under the data dir
  - SupabaseBackend:  one table per collection, rows upserted by id

Resolved videos are written to `<data dir>/media/videos/<job id>.mp4` and
served by the app under `/media`.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from supabase import create_client, Client

logger = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/media"


class StorageBackend(Protocol):
    def load(self, collection: str) -> list[dict]: ...

    def upsert(self, collection: str, row: dict) -> None: ...

    def delete(self, collection: str, row_id: str) -> None: ...


# ── Local JSON documents ─────────────────────────────────────────────────────

class JsonFileBackend:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str) -> Path:
        return self.root / f"{collection}.json"

    def load(self, collection: str) -> list[dict]:
        path = self._path(collection)
        if not path.exists():
            return []
        try:
            rows = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt {path}, starting empty: {e}")
            return []
        if not isinstance(rows, list):
            logger.error(f"{path} is not a JSON array, starting empty")
            return []
        return rows

    def _write(self, collection: str, rows: list[dict]):
        path = self._path(collection)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(rows, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def upsert(self, collection: str, row: dict) -> None:
        rows = [r for r in self.load(collection) if r.get("id") != row["id"]]
        rows.append(row)
        self._write(collection, rows)

    def delete(self, collection: str, row_id: str) -> None:
        rows = self.load(collection)
        kept = [r for r in rows if r.get("id") != row_id]
        if len(kept) != len(rows):
            self._write(collection, kept)


# ── Supabase tables ──────────────────────────────────────────────────────────

class SupabaseBackend:
    """All mutations go through the service role client (bypasses RLS)."""

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_env(cls) -> "SupabaseBackend":
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(url, key))

    def load(self, collection: str) -> list[dict]:
        result = self.client.table(collection).select("*").execute()
        return list(result.data or [])

    def upsert(self, collection: str, row: dict) -> None:
        self.client.table(collection).upsert(row).execute()

    def delete(self, collection: str, row_id: str) -> None:
        self.client.table(collection).delete().eq("id", row_id).execute()


def get_backend(data_dir: Path) -> StorageBackend:
    """Supabase when it is configured, otherwise JSON files under `data_dir`."""
    if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        logger.info("Library persistence: Supabase")
        return SupabaseBackend.from_env()
    logger.info(f"Library persistence: JSON files in {data_dir}")
    return JsonFileBackend(data_dir)


# ── Media cache ──────────────────────────────────────────────────────────────

class MediaCache:
    """Local files addressable by URL under MEDIA_URL_PREFIX."""

    def __init__(self, root: Path, url_prefix: str = MEDIA_URL_PREFIX):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        (self.root / "videos").mkdir(parents=True, exist_ok=True)

    def store_video(self, name: str, data: bytes) -> str:
        path = self.root / "videos" / f"{name}.mp4"
        path.write_bytes(data)
        url = f"{self.url_prefix}/videos/{path.name}"
        logger.info(f"Cached video ({len(data)} bytes) → {url}")
        return url

    def path_for(self, url: str) -> Optional[Path]:
        if not url.startswith(self.url_prefix + "/"):
            return None
        return self.root / url[len(self.url_prefix) + 1:]
