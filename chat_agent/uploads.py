"""Directory-backed object store for chat attachments."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from chat_agent.models import new_id

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class StoredObject:
    key: str
    data: bytes
    content_type: str


def upload_key(file_id: str, filename: str) -> str:
    return f"uploads/{file_id}/{filename}"


class FileStore:
    """Stores each object under ``<root>/objects/<key>`` with its metadata beside it."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._objects = root / "objects"
        self._metadata = root / "metadata"

    def put(self, filename: str, data: bytes, content_type: str | None) -> StoredObject:
        """Store bytes under a fresh key derived from a new id and the filename."""

        name = PurePosixPath(filename.replace("\\", "/")).name
        if not name or name in (".", ".."):
            raise ValueError(f"Invalid filename: {filename!r}")
        key = upload_key(new_id(), name)
        content_type = content_type or DEFAULT_CONTENT_TYPE

        object_path = self._resolve(self._objects, key)
        meta_path = self._resolve(self._metadata, f"{key}.json")
        object_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        object_path.write_bytes(data)
        meta_path.write_text(json.dumps({"contentType": content_type, "size": len(data)}), encoding="utf-8")
        LOGGER.info("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return StoredObject(key=key, data=data, content_type=content_type)

    def get(self, key: str) -> StoredObject | None:
        object_path = self._resolve(self._objects, key)
        if not object_path.is_file():
            return None
        content_type = DEFAULT_CONTENT_TYPE
        meta_path = self._resolve(self._metadata, f"{key}.json")
        if meta_path.is_file():
            content_type = json.loads(meta_path.read_text(encoding="utf-8")).get("contentType", content_type)
        return StoredObject(key=key, data=object_path.read_bytes(), content_type=content_type)

    def _resolve(self, base: Path, key: str) -> Path:
        path = (base / key).resolve()
        if not path.is_relative_to(base.resolve()):
            raise ValueError(f"Key escapes the store: {key!r}")
        return path
