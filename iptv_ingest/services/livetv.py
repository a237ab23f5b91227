"""
Live TV Ingestion

- Channels: diff the provider's current list against the channels
  collection by channel_key and apply it as one bulk write.
- Programs: parse the provider's XMLTV guide against its channel tvg_ids,
  then replace all of the provider's programs.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from ..core.logging import get_logger
from ..providers.base import BaseIPTVProvider
from .store import CHANNELS, PROGRAMS, DeleteOne, DocumentStore, UpdateOne, UpsertOne
from .xmltv import XMLTVParser

logger = get_logger(__name__)

# Fields refreshed on an existing channel when the upstream changes them
CHANNEL_FIELDS = ("url", "name", "tvg_id", "tvg_name", "tvg_logo", "group_title")


class LiveTVService:
    def __init__(self, store: DocumentStore, parser: XMLTVParser):
        self.channels = store.collection(CHANNELS)
        self.programs = store.collection(PROGRAMS)
        self.parser = parser

    async def sync_channels(self, provider_id: str, channels: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Insert new keys, update changed ones, delete keys the provider no
        longer lists. Returns {inserted, updated, removed}.
        """
        existing = {d["_id"]: d for d in await self.channels.find({"provider_id": provider_id})}
        now = datetime.now(timezone.utc)
        ops = []
        stats = {"inserted": 0, "updated": 0, "removed": 0}
        incoming = set()

        for channel in channels:
            key = channel["_id"]
            if key in incoming:
                continue
            incoming.add(key)
            current = existing.get(key)
            if current is None:
                ops.append(UpsertOne({**channel, "createdAt": now, "lastUpdated": now}))
                stats["inserted"] += 1
                continue
            changed = {f: channel.get(f) for f in CHANNEL_FIELDS if current.get(f) != channel.get(f)}
            if changed:
                ops.append(UpdateOne(key, {**changed, "lastUpdated": now}))
                stats["updated"] += 1

        for key in existing.keys() - incoming:
            ops.append(DeleteOne(key))
            stats["removed"] += 1

        if ops:
            await self.channels.bulk_write(ops)
        logger.info("live_channels_synced", provider_id=provider_id, **stats)
        return stats

    async def sync_programs(self, provider_id: str, epg_path: Path) -> int:
        """Rebuild the provider's programs from a local XMLTV file. Returns the stored count."""
        channels = await self.channels.find({"provider_id": provider_id})
        tvg_ids = {str(c["tvg_id"]) for c in channels if c.get("tvg_id")}
        if not tvg_ids:
            logger.info("live_programs_no_tvg_ids", provider_id=provider_id)

        result = await self.parser.parse(epg_path, provider_id, tvg_ids)
        now = datetime.now(timezone.utc)
        docs = [{**p, "createdAt": now, "lastUpdated": now} for p in result.programs]

        removed = await self.programs.delete_many({"provider_id": provider_id})
        inserted = await self.programs.insert_many(docs) if docs else 0
        logger.info("live_programs_replaced", provider_id=provider_id, removed=removed, inserted=inserted)
        return inserted

    async def sync_provider(self, provider: BaseIPTVProvider) -> Dict[str, Any]:
        """
        Channels then EPG for one provider. A guide failure is reported but
        does not fail the channel sync; a channel failure skips the guide.
        """
        result: Dict[str, Any] = {
            "provider_id": provider.id,
            "provider_name": provider.config.display_name,
            "success": False,
            "channels": {"inserted": 0, "updated": 0, "removed": 0},
            "programs": 0,
            "error": None,
        }
        try:
            channels = await provider.fetch_live_channels()
            result["channels"] = await self.sync_channels(provider.id, channels)
        except Exception as e:
            logger.error("live_channels_sync_failed", provider_id=provider.id, error=str(e))
            result["error"] = str(e)
            return result

        result["success"] = True
        try:
            epg_path = await provider.fetch_epg()
            if epg_path is not None:
                result["programs"] = await self.sync_programs(provider.id, epg_path)
        except Exception as e:
            logger.error("live_epg_sync_failed", provider_id=provider.id, error=str(e))
            result["error"] = f"EPG: {e}"
        return result
