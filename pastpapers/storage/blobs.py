"""Filesystem blob store addressed by storage key."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from pastpapers.core.errors import ValidationError

logger = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"


class LocalBlobStore:
    """Blobs under ``root/<prefix>/<key>`` with a JSON metadata sidecar.

    ``put`` returns ``public_base_url/<prefix>/<key>`` when a public base is
    configured, otherwise a ``file://`` URI.
    """

    def __init__(
        self,
        root: str | Path,
        prefix: str = "past-papers",
        public_base_url: str | None = None,
    ):
        self.root = Path(root)
        self.prefix = prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.root.mkdir(parents=True, exist_ok=True)

    # ── Addressing ───────────────────────────────────────────

    def full_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise ValidationError(f"Invalid storage key: {key!r}")
        return self.root / self.full_key(key)

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{self.full_key(key)}"
        return self._path(key).resolve().as_uri()

    # ── Operations ───────────────────────────────────────────

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/pdf",
        metadata: dict | None = None,
    ) -> str:
        """Write ``data`` at ``key`` and return its retrievable URL."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

        sidecar = {
            "content_type": content_type,
            "size": len(data),
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {},
        }
        path.with_name(path.name + _META_SUFFIX).write_text(json.dumps(sidecar, indent=2))

        logger.debug("Stored %s (%d bytes)", self.full_key(key), len(data))
        return self.url_for(key)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def head(self, key: str) -> dict | None:
        """Sidecar metadata plus size, or None when the blob is absent."""
        path = self._path(key)
        if not path.is_file():
            return None
        meta_path = path.with_name(path.name + _META_SUFFIX)
        info = json.loads(meta_path.read_text()) if meta_path.exists() else {}
        info["size"] = path.stat().st_size
        info["key"] = self.full_key(key)
        return info

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        path.with_name(path.name + _META_SUFFIX).unlink(missing_ok=True)
        return True
