"""
IPTV Provider Model

Provider documents live in the iptv_providers collection and are managed
by the settings UI; the ingestion core only reads them.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .titles import LIVE, MEDIA_TYPES

XTREAM = "xtream"
M3U = "m3u"
PROVIDER_TYPE_ALIASES = {"agtv": M3U, "m3u8": M3U}


class RateLimit(BaseModel):
    concurrent: Optional[int] = Field(None, ge=1)


class ProviderConfig(BaseModel):
    """Credentials, filters and limits of one upstream provider."""
    id: str = Field(..., alias="_id")
    name: Optional[str] = None
    type: str
    api_url: str
    username: str = ""
    password: str = ""
    epg_url: Optional[str] = None
    enabled: bool = True
    deleted: bool = False
    # media type -> allowed category ids (empty/missing = all)
    enabled_categories: Dict[str, List[str]] = Field(default_factory=dict)
    # regex -> replacement, applied in order to display names
    cleanup: Dict[str, str] = Field(default_factory=dict)
    # media type -> upstream title ids the operator excluded
    ignored_titles: Dict[str, List[str]] = Field(default_factory=dict)
    sync_media_types: Optional[Dict[str, bool]] = None
    rate_limit: RateLimit = Field(default_factory=RateLimit)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        value = str(value).lower()
        return PROVIDER_TYPE_ALIASES.get(value, value)

    @field_validator("enabled_categories", "ignored_titles", mode="before")
    @classmethod
    def _ids_as_strings(cls, value):
        if not value:
            return {}
        return {k: [str(v) for v in (ids or [])] for k, ids in value.items()}

    @field_validator("api_url")
    @classmethod
    def _strip_slash(cls, value):
        return value.rstrip("/")

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_active(self) -> bool:
        return self.enabled and not self.deleted

    def syncs(self, media_type: str) -> bool:
        """Providers without sync_media_types sync everything."""
        if self.sync_media_types is None:
            return True
        return bool(self.sync_media_types.get(media_type))

    def synced_media_types(self) -> List[str]:
        return [t for t in MEDIA_TYPES if self.syncs(t)]

    @property
    def syncs_live(self) -> bool:
        return self.syncs(LIVE)
