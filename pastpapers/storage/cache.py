"""Advisory on-disk cache of downloaded PDFs, keyed by source URL.

Never consulted for dedup; only saves bandwidth when a run is retried.
"""

import hashlib
import logging
import threading
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class PdfCache:
    def __init__(
        self,
        cache_dir: str | Path,
        max_size_mb: float = 500.0,
        max_age_hours: float = 24.0,
    ):
        self.cache_dir = Path(cache_dir)
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)
        self.max_age_seconds = max_age_hours * 3600
        self._lock = threading.Lock()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.remove_expired()

    def _path(self, url: str) -> Path:
        return self.cache_dir / f"{hashlib.md5(url.encode()).hexdigest()}.pdf"

    def _expired(self, path: Path) -> bool:
        return time.time() - path.stat().st_mtime > self.max_age_seconds

    # ── Lookup ───────────────────────────────────────────────

    def has(self, url: str) -> bool:
        path = self._path(url)
        if not path.exists():
            return False
        if self._expired(path):
            path.unlink(missing_ok=True)
            return False
        return True

    def get(self, url: str) -> bytes | None:
        if not self.has(url):
            return None
        try:
            return self._path(url).read_bytes()
        except OSError as exc:
            logger.warning("Failed to read cached PDF for %s: %s", url, exc)
            return None

    def set(self, url: str, data: bytes) -> None:
        with self._lock:
            try:
                if self.size_bytes() + len(data) > self.max_size_bytes:
                    self.evict()
                self._path(url).write_bytes(data)
            except OSError as exc:
                logger.warning("Failed to cache PDF for %s: %s", url, exc)
                return
        logger.debug("Cached %s (%dKB)", url, len(data) // 1024)

    # ── Housekeeping ─────────────────────────────────────────

    def _files(self) -> list[Path]:
        return [p for p in self.cache_dir.glob("*.pdf") if p.is_file()]

    def size_bytes(self) -> int:
        return sum(p.stat().st_size for p in self._files())

    def remove_expired(self) -> int:
        removed = 0
        for path in self._files():
            if self._expired(path):
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Cleaned %d expired cache files", removed)
        return removed

    def evict(self) -> int:
        """Delete oldest files until the cache is at 80% of its limit."""
        files = sorted(self._files(), key=lambda p: p.stat().st_mtime)
        current = sum(p.stat().st_size for p in files)
        target = self.max_size_bytes * 0.8
        removed = 0
        for path in files:
            if current <= target:
                break
            current -= path.stat().st_size
            path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("Removed %d cache files to free space", removed)
        return removed

    def clear(self) -> None:
        for path in self._files():
            path.unlink(missing_ok=True)

    def stats(self) -> dict:
        files = self._files()
        return {
            "files": len(files),
            "size_mb": round(sum(p.stat().st_size for p in files) / 1024 / 1024, 2),
            "max_size_mb": round(self.max_size_bytes / 1024 / 1024, 2),
        }
