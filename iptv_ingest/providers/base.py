"""
Base IPTV Provider

Protocol-independent half of the ingestion pipeline: filtering, display
name cleanup and provider-title document assembly. Subclasses implement the
upstream calls (catalog, categories, extended info, live channels, EPG).
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from ..core.logging import get_logger
from ..models.provider import ProviderConfig
from ..models.titles import (
    IGNORED_BY_PROVIDER,
    IGNORED_EXTENDED_INFO,
    channel_key,
    provider_title_doc_id,
    title_key,
)
from ..services.fetcher import Fetcher

logger = get_logger(__name__)


class BaseIPTVProvider:
    """
    One configured upstream provider.

    A *candidate* is the normalized form of a catalog entry:
    {title_id, title, release_date, external_id, category_id, streams, raw}
    where ``streams`` may be empty until extended info is fetched.
    """

    provider_type = "base"
    supports_extended_info = False

    def __init__(self, config: ProviderConfig, fetcher: Fetcher, default_concurrency: int):
        self.config = config
        self.fetcher = fetcher
        self._cleanup_rules = []
        for pattern, replacement in config.cleanup.items():
            try:
                self._cleanup_rules.append((re.compile(pattern), replacement))
            except re.error as e:
                logger.warning("provider_cleanup_rule_invalid", provider_id=config.id, pattern=pattern, error=str(e))
        fetcher.configure(config.id, config.rate_limit.concurrent or default_concurrency)

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def concurrency(self) -> int:
        return self.fetcher.concurrency(self.id)

    @property
    def batch_size(self) -> int:
        return min(self.concurrency * 2, 100)

    def cache_key(self, media_type: str, endpoint: str, ext: str = "json") -> str:
        """{providerId}/{type}/metadata/{endpoint}.{ext}"""
        return f"{self.id}/{media_type}/metadata/{endpoint}.{ext}"

    # =========================================================================
    # UPSTREAM (implemented per protocol)
    # =========================================================================

    async def fetch_categories(self, media_type: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def fetch_catalog(self, media_type: str) -> List[Dict[str, Any]]:
        """Normalized candidates for one media type."""
        raise NotImplementedError

    async def fetch_extended_info(self, media_type: str, candidate: Dict[str, Any]) -> Dict[str, Any]:
        """Fields to merge into the candidate (at least ``streams``)."""
        return {}

    async def fetch_live_channels(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def fetch_epg(self) -> Optional[Path]:
        """Local path of the provider's XMLTV guide, or None when it has none."""
        return None

    # =========================================================================
    # FILTERING
    # =========================================================================

    def cleanup_title(self, name: Optional[str]) -> str:
        """Apply the provider's regex cleanup rules in order, then trim."""
        value = name or ""
        for regex, replacement in self._cleanup_rules:
            value = regex.sub(replacement, value)
        return value.strip()

    def filter_candidates(
        self,
        media_type: str,
        candidates: List[Dict[str, Any]],
        disabled_categories: Optional[Set[str]] = None,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Drop entries without an id, outside the enabled categories or in a
        category the operator switched off (provider_categories.enabled),
        clean display names, and split off operator-ignored titles.

        Returns (to_process, ignored).
        """
        allowed = set(self.config.enabled_categories.get(media_type) or [])
        excluded = set(self.config.ignored_titles.get(media_type) or [])
        to_process, ignored = [], []
        seen = set()

        for candidate in candidates:
            title_id = candidate.get("title_id")
            if title_id in (None, ""):
                continue
            title_id = str(title_id)
            if title_id in seen:
                continue
            category_id = str(candidate.get("category_id"))
            if allowed and category_id not in allowed:
                continue
            if disabled_categories and category_id in disabled_categories:
                continue
            seen.add(title_id)
            candidate = {**candidate, "title_id": title_id, "title": self.cleanup_title(candidate.get("title"))}
            if title_id in excluded:
                ignored.append(candidate)
            else:
                to_process.append(candidate)

        return to_process, ignored

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    def build_title_doc(
        self,
        media_type: str,
        candidate: Dict[str, Any],
        ignored_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Provider-title document without timestamps (the pipeline adds them)."""
        key = title_key(media_type, candidate["title_id"])
        return {
            "_id": provider_title_doc_id(self.id, key),
            "provider_id": self.id,
            "title_id": candidate["title_id"],
            "type": media_type,
            "title_key": key,
            "title": candidate.get("title") or "",
            "release_date": candidate.get("release_date"),
            "external_id": candidate.get("external_id"),
            "category_id": str(candidate["category_id"]) if candidate.get("category_id") is not None else None,
            "streams": {} if ignored_reason else dict(candidate.get("streams") or {}),
            "canonical_id": None,
            "ignored": ignored_reason is not None,
            "ignored_reason": ignored_reason,
        }

    async def process_candidate(self, media_type: str, candidate: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch extended info (when supported) and build the document; failures become ignored docs."""
        if self.supports_extended_info:
            try:
                extra = await self.fetch_extended_info(media_type, candidate)
            except Exception as e:
                logger.warning(
                    "provider_extended_info_failed",
                    provider_id=self.id,
                    media_type=media_type,
                    title_id=candidate.get("title_id"),
                    error=str(e),
                )
                return self.build_title_doc(media_type, candidate, IGNORED_EXTENDED_INFO)
            candidate = {**candidate, **{k: v for k, v in extra.items() if v is not None}}

        if not candidate.get("streams"):
            logger.debug("provider_title_without_streams", provider_id=self.id, title_id=candidate.get("title_id"))
            return self.build_title_doc(media_type, candidate, IGNORED_EXTENDED_INFO)
        return self.build_title_doc(media_type, candidate)

    def ignored_doc(self, media_type: str, candidate: Dict[str, Any]) -> Dict[str, Any]:
        return self.build_title_doc(media_type, candidate, IGNORED_BY_PROVIDER)

    def build_channel_doc(
        self,
        channel_id: str,
        name: Optional[str],
        url: str,
        tvg_id: Optional[str] = None,
        tvg_name: Optional[str] = None,
        tvg_logo: Optional[str] = None,
        group_title: Optional[str] = None,
    ) -> Dict[str, Any]:
        channel_id = str(channel_id)
        key = channel_key(self.id, channel_id)
        return {
            "_id": key,
            "provider_id": self.id,
            "channel_id": channel_id,
            "channel_key": key,
            "name": name or "Unknown",
            "url": url or "",
            "tvg_id": str(tvg_id) if tvg_id else None,
            "tvg_name": tvg_name,
            "tvg_logo": tvg_logo,
            "group_title": group_title,
        }

