"""
Cache Purge Job

Sweeps CACHE_DIR with the cache policy. Files whose TTL is known and
elapsed are deleted when CACHE_PURGE_ENABLED is true, otherwise only
reported (dry-run). Files without a policy entry, or with a null TTL, are
never touched.

Writers may race the sweep: a file's mtime is re-read right before it is
deleted, and files that vanish mid-sweep are skipped.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.logging import get_logger
from ..models.jobs import JobParams
from ..services.disk_cache import DiskCache

logger = get_logger(__name__)

TEMP_SUFFIX = ".tmp"


class CachePurgeJob:
    def __init__(self, cache: DiskCache, delete_enabled: bool = False):
        self.cache = cache
        self.delete_enabled = delete_enabled

    async def run(self, params: Optional[JobParams] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(self.sweep)

    def _expired(self, path: Path, ttl_hours: float, now: float) -> bool:
        return now - path.stat().st_mtime >= ttl_hours * 3600

    def sweep(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = now if now is not None else time.time()
        mode = "delete" if self.delete_enabled else "dry-run"
        result: Dict[str, Any] = {
            "mode": mode,
            "scanned": 0,
            "purged": 0,
            "kept": 0,
            "errors": 0,
            "bytes_freed": 0,
            "files_to_delete": [],
        }
        root = self.cache.root
        if not root.exists():
            logger.debug("cache_dir_missing", path=str(root))
            return result

        logger.info("cache_purge_started", mode=mode, root=str(root))
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                if filename.endswith(TEMP_SUFFIX):
                    continue
                path = Path(dirpath) / filename
                relative = path.relative_to(root).as_posix()
                result["scanned"] += 1
                try:
                    ttl = self.cache.policy.ttl_for(relative)
                    if ttl is None or not self._expired(path, ttl, now):
                        result["kept"] += 1
                        continue

                    result["files_to_delete"].append(relative)
                    if not self.delete_enabled:
                        logger.debug("cache_file_would_purge", path=relative, ttl_hours=ttl)
                        continue

                    # mtime is re-read: a writer may have refreshed the file
                    size = path.stat().st_size
                    if not self._expired(path, ttl, now):
                        result["files_to_delete"].remove(relative)
                        result["kept"] += 1
                        continue
                    path.unlink()
                    result["purged"] += 1
                    result["bytes_freed"] += size
                    logger.debug("cache_file_purged", path=relative, ttl_hours=ttl)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    result["errors"] += 1
                    logger.error("cache_file_purge_failed", path=relative, error=str(e))

        if self.delete_enabled:
            self._remove_empty_dirs(root)

        logger.info(
            "cache_purge_completed",
            mode=mode,
            scanned=result["scanned"],
            purged=result["purged"],
            candidates=len(result["files_to_delete"]),
            errors=result["errors"],
        )
        return result

    def _remove_empty_dirs(self, root: Path):
        """Bottom-up; a directory is removed only if it is empty at that moment."""
        for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
            path = Path(dirpath)
            if path == root:
                continue
            try:
                path.rmdir()
                logger.debug("cache_dir_removed", path=str(path.relative_to(root)))
            except OSError:
                # Not empty (or recreated by a writer)
                continue
