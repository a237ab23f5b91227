"""
Disk Cache

Path-addressed response cache under CACHE_DIR. The filesystem is the index:
an entry's age is its mtime.

Layout: {cache_dir}/{category-path}/{fingerprint}.{ext}
e.g.    tmdb/movie/details/603.json
        px/movies/metadata/get_vod_streams.json
        tmdb/search/movie/3f2a...e1.json   (sha256 of the query params)

Freshness comes from the cache policy (cache-policy.json), the same table
the purge job sweeps with, so a read never trusts a file the sweeper would
consider expired.
"""

import hashlib
import json
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import ConfigInvalid
from ..core.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\{(providerId|tmdbId)\}")


def fingerprint(params: Optional[Dict[str, Any]]) -> str:
    """Stable sha256 of a parameter dict."""
    base = json.dumps(params or {}, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(base).hexdigest()


class CachePolicy:
    """
    Path pattern -> TTL hours.

    Patterns may contain {providerId} and {tmdbId}, each matching one path
    segment. Resolution: exact key first, then patterns in file order; the
    first match wins. No match means the entry never expires; a null TTL
    means the same, explicitly.
    """

    def __init__(self, rules: Dict[str, Optional[float]]):
        self.rules = dict(rules)
        self._patterns: List[Tuple[str, re.Pattern, Optional[float]]] = []
        for key, ttl in self.rules.items():
            if PLACEHOLDER_RE.search(key):
                regex = "^" + PLACEHOLDER_RE.sub("[^/]+", re.escape(key).replace(r"\{", "{").replace(r"\}", "}")) + "$"
                self._patterns.append((key, re.compile(regex), ttl))

    @classmethod
    def from_file(cls, path: str) -> "CachePolicy":
        """Load cache-policy.json. A missing file yields an empty (keep-all) policy."""
        if not os.path.exists(path):
            logger.warning("cache_policy_missing", path=path)
            return cls({})
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigInvalid(path, str(e)) from e
        return cls.validate(raw, source=path)

    @classmethod
    def validate(cls, raw: Any, source: str = "cache policy") -> "CachePolicy":
        if not isinstance(raw, dict):
            raise ConfigInvalid(source, "expected a JSON object of pattern -> hours")
        for key, ttl in raw.items():
            if ttl is None:
                continue
            if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl < 0:
                raise ConfigInvalid(source, f"TTL for '{key}' must be a non-negative number or null")
        return cls(raw)

    def _lookup(self, key: str) -> Tuple[bool, Optional[float]]:
        if key in self.rules:
            return True, self.rules[key]
        for _, regex, ttl in self._patterns:
            if regex.match(key):
                return True, ttl
        return False, None

    def ttl_for(self, relative_path: str) -> Optional[float]:
        """
        TTL in hours for a cache file, or None when it never expires.

        The directory key (leaf filename stripped) is tried first, then the
        full relative path.
        """
        relative_path = relative_path.replace(os.sep, "/").strip("/")
        dir_key = relative_path.rsplit("/", 1)[0] if "/" in relative_path else ""
        for candidate in (dir_key, relative_path):
            if not candidate:
                continue
            matched, ttl = self._lookup(candidate)
            if matched:
                return ttl
        return None


class DiskCache:
    """JSON / text / file cache rooted at CACHE_DIR."""

    def __init__(self, root: str, policy: Optional[CachePolicy] = None):
        self.root = Path(root)
        self.policy = policy or CachePolicy({})
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def key_for(category: str, params: Optional[Dict[str, Any]] = None, ext: str = "json") -> str:
        """Compose {category}/{fingerprint}.{ext}."""
        return f"{category.strip('/')}/{fingerprint(params)}.{ext}"

    def path_for(self, key: str) -> Path:
        return self.root / key

    def is_fresh(self, key: str, now: Optional[float] = None) -> bool:
        path = self.path_for(key)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return False
        ttl = self.policy.ttl_for(key)
        if ttl is None:
            return True
        return ((now or time.time()) - mtime) < ttl * 3600

    def get(self, key: str) -> Optional[Any]:
        """Cached body (parsed JSON for .json, text otherwise) or None on miss/expiry."""
        if not self.is_fresh(key):
            return None
        path = self.path_for(key)
        try:
            with path.open("r", encoding="utf-8") as f:
                if path.suffix == ".json":
                    return json.load(f)
                return f.read()
        except FileNotFoundError:
            return None
        except ValueError as e:
            logger.warning("cache_entry_corrupt", key=key, error=str(e))
            return None

    def set(self, key: str, value: Any):
        """Write atomically (temp file + rename)."""
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            if isinstance(value, str):
                f.write(value)
            else:
                json.dump(value, f, ensure_ascii=False)
        os.replace(tmp, path)

    def temp_path_for(self, key: str) -> Path:
        """Scratch path next to ``key``; rename it into place with ``commit``."""
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.with_name(path.name + ".tmp")

    def commit(self, key: str) -> Path:
        path = self.path_for(key)
        os.replace(self.temp_path_for(key), path)
        return path
