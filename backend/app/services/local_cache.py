"""
Secondary fact cache — one JSON file per project.

Consulted only when the primary read throws or returns no citations.
Every successful load overwrites the project's file. Read failures are
treated as a cache miss.
"""
import json
import logging
import os
import re
from typing import List, Optional

from app.config import FACT_CACHE_DIR
from app.models.fact_schema import Citation, utc_now_iso

logger = logging.getLogger("buildunion-cache")

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class LocalFactCache:
    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = cache_dir or FACT_CACHE_DIR

    def path_for(self, project_id: str) -> str:
        return os.path.join(self.cache_dir, f"{_SAFE_NAME.sub('_', project_id)}.json")

    def load(self, project_id: str) -> List[dict]:
        """Raw cached records (normalized by the caller), [] on miss."""
        path = self.path_for(project_id)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Fact cache unreadable, treating as miss: {e}", extra={"project_id": project_id})
            return []
        records = payload.get("citations") if isinstance(payload, dict) else payload
        return records if isinstance(records, list) else []

    def save(self, project_id: str, citations: List[Citation]) -> bool:
        payload = {
            "project_id": project_id,
            "cached_at": utc_now_iso(),
            "citations": [c.model_dump(mode="json") for c in citations],
        }
        path = self.path_for(project_id)
        tmp = f"{path}.tmp"
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, path)
        except OSError as e:
            logger.warning(f"Fact cache refresh failed: {e}", extra={"project_id": project_id})
            return False
        return True

    def clear(self, project_id: str) -> None:
        try:
            os.remove(self.path_for(project_id))
        except FileNotFoundError:
            pass
