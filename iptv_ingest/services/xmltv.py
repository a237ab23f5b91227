"""
XMLTV Program Guide Parser

Small guides (< EPG_STREAMING_THRESHOLD_BYTES) are parsed as a DOM on a
worker thread. Larger or gzipped guides are streamed with
ElementTree.iterparse on a worker thread, under a wall-clock watchdog and
with periodic progress logs.

The streaming parse finishes through a single ParseCompletion; the first of
these wins and later signals are ignored:
- parser end (iterparse exhausted)
- stream end + grace window (input drained but the parser never returned)
- watchdog timeout (fails with EPGParseTimeout)

Programs are kept only when their channel is one of the provider's channel
tvg_ids and both timestamps are valid; duplicates within a pass are dropped.
"""

import asyncio
import gzip
import os
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ..config import Settings
from ..core.exceptions import EPGParseTimeout
from ..core.logging import get_logger

logger = get_logger(__name__)

XMLTV_TIME_RE = re.compile(
    r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(?:\s*([+-])(\d{2})(\d{2}))?$"
)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# Upper bound is exclusive: 2099-12-31T23:59:59Z is the last valid second
MAX_INSTANT = datetime(2100, 1, 1, tzinfo=timezone.utc)
MIN_OFFSET_MINUTES = -12 * 60
MAX_OFFSET_MINUTES = 14 * 60
GZIP_MAGIC = b"\x1f\x8b"
DEFAULT_PROGRAM_TITLE = "Unknown"
WORKER_JOIN_SECONDS = 5.0


# =============================================================================
# TIMESTAMPS
# =============================================================================

def parse_xmltv_time(value: Optional[str]) -> Optional[datetime]:
    """
    'YYYYMMDDhhmmss[ ±HHMM]' -> aware UTC datetime, or None when invalid.

    A missing offset means UTC.
    """
    if not value:
        return None
    match = XMLTV_TIME_RE.match(value.strip())
    if not match:
        return None

    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    if not (1 <= month <= 12 and hour <= 23 and minute <= 59 and second <= 59):
        return None
    try:
        wall = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    except ValueError:
        return None

    offset_minutes = 0
    if match.group(7):
        offset_hours, offset_mins = int(match.group(8)), int(match.group(9))
        if offset_mins > 59:
            return None
        offset_minutes = offset_hours * 60 + offset_mins
        if match.group(7) == "-":
            offset_minutes = -offset_minutes
        if not MIN_OFFSET_MINUTES <= offset_minutes <= MAX_OFFSET_MINUTES:
            return None

    try:
        instant = wall - timedelta(minutes=offset_minutes)
    except OverflowError:
        return None
    if instant < EPOCH or instant >= MAX_INSTANT:
        return None
    return instant


def format_xmltv_time(instant: datetime) -> str:
    """Aware datetime -> 'YYYYMMDDhhmmss +0000'."""
    return instant.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S +0000")


def to_unix_ms(instant: datetime) -> int:
    return (instant - EPOCH) // timedelta(milliseconds=1)


# =============================================================================
# PROGRAM COLLECTION
# =============================================================================

def _child_text(elem: ET.Element, tag: str) -> Optional[str]:
    child = elem.find(tag)
    if child is None or child.text is None:
        return None
    return child.text.strip() or None


class ProgramCollector:
    """Validates, filters and de-duplicates <programme> elements into program docs."""

    def __init__(self, provider_id: str, channel_ids: Set[str]):
        self.provider_id = provider_id
        self.channel_ids = channel_ids
        self.programs: List[Dict[str, Any]] = []
        self._seen: Set[tuple] = set()
        self.stats = {
            "seen": 0,
            "accepted": 0,
            "unknown_channel": 0,
            "invalid_time": 0,
            "duplicates": 0,
        }

    def add(self, elem: ET.Element) -> bool:
        self.stats["seen"] += 1
        channel_id = (elem.get("channel") or "").strip()
        if channel_id not in self.channel_ids:
            self.stats["unknown_channel"] += 1
            return False

        start = parse_xmltv_time(elem.get("start"))
        stop = parse_xmltv_time(elem.get("stop"))
        if start is None or stop is None or stop <= start:
            self.stats["invalid_time"] += 1
            return False

        start_ms, stop_ms = to_unix_ms(start), to_unix_ms(stop)
        fingerprint = (self.provider_id, channel_id, start_ms, stop_ms)
        if fingerprint in self._seen:
            self.stats["duplicates"] += 1
            return False
        self._seen.add(fingerprint)

        icon = elem.find("icon")
        self.programs.append({
            "_id": f"{self.provider_id}-{channel_id}-{start_ms}-{stop_ms}",
            "provider_id": self.provider_id,
            "channel_id": channel_id,
            "start": start,
            "stop": stop,
            "title": _child_text(elem, "title") or DEFAULT_PROGRAM_TITLE,
            "desc": _child_text(elem, "desc"),
            "category": _child_text(elem, "category"),
            "icon": icon.get("src") if icon is not None else None,
            "episode": _child_text(elem, "episode-num"),
        })
        self.stats["accepted"] += 1
        return True


@dataclass
class EPGParseResult:
    programs: List[Dict[str, Any]]
    stats: Dict[str, int]
    mode: str
    completed_by: str = "parser"
    extra: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# STREAMING SUPPORT
# =============================================================================

class ParseCompletion:
    """
    One-shot completion shared by the parser thread and loop-side timers.

    Must be resolved on the event loop; threads go through ``*_threadsafe``.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._future: asyncio.Future = loop.create_future()
        self.source: Optional[str] = None

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, source: str) -> bool:
        if self._future.done():
            return False
        self.source = source
        self._future.set_result(source)
        return True

    def reject(self, source: str, error: BaseException) -> bool:
        if self._future.done():
            return False
        self.source = source
        self._future.set_exception(error)
        return True

    def resolve_threadsafe(self, source: str):
        self._loop.call_soon_threadsafe(self.resolve, source)

    def reject_threadsafe(self, source: str, error: BaseException):
        self._loop.call_soon_threadsafe(self.reject, source, error)

    async def wait(self) -> str:
        return await self._future


class _TrackedReader:
    """File wrapper counting bytes read and reporting end of input once."""

    def __init__(self, raw, on_eof: Callable[[], None]):
        self._raw = raw
        self._on_eof = on_eof
        self._eof = False
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        data = self._raw.read(size)
        self.bytes_read += len(data)
        if not data and not self._eof:
            self._eof = True
            self._on_eof()
        return data


def _is_gzip(path: Path) -> bool:
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


def _open_xml(path: Path):
    return gzip.open(path, "rb") if _is_gzip(path) else open(path, "rb")


# =============================================================================
# PARSER
# =============================================================================

class XMLTVParser:
    def __init__(self, settings: Settings):
        self.streaming_threshold = settings.epg_streaming_threshold_bytes
        self.timeout = settings.epg_parse_timeout_seconds
        self.progress_interval = settings.epg_progress_log_seconds
        self.grace = settings.epg_stream_grace_seconds

    async def parse(self, path: Path, provider_id: str, channel_ids: Set[str]) -> EPGParseResult:
        path = Path(path)
        collector = ProgramCollector(provider_id, set(channel_ids))
        size = os.path.getsize(path)
        streaming = size >= self.streaming_threshold or _is_gzip(path)
        logger.info(
            "epg_parse_started",
            provider_id=provider_id,
            bytes=size,
            mode="stream" if streaming else "dom",
            channels=len(collector.channel_ids),
        )

        if streaming:
            completed_by = await self._parse_streaming(path, collector)
            programs = list(collector.programs)
        else:
            await asyncio.to_thread(self._parse_dom, path, collector)
            completed_by = "parser"
            programs = collector.programs

        logger.info("epg_parse_completed", provider_id=provider_id, completed_by=completed_by, **collector.stats)
        return EPGParseResult(
            programs=programs,
            stats=dict(collector.stats),
            mode="stream" if streaming else "dom",
            completed_by=completed_by,
        )

    @staticmethod
    def _parse_dom(path: Path, collector: ProgramCollector):
        with _open_xml(path) as f:
            root = ET.parse(f).getroot()
        for elem in root.iter("programme"):
            collector.add(elem)

    async def _parse_streaming(self, path: Path, collector: ProgramCollector) -> str:
        loop = asyncio.get_running_loop()
        completion = ParseCompletion(loop)
        stop = threading.Event()
        handles: List[asyncio.Handle] = []
        reader_ref: Dict[str, _TrackedReader] = {}

        def start_grace():
            if not completion.done:
                handles.append(loop.call_later(self.grace, completion.resolve, "stream_end"))

        def worker():
            try:
                with _open_xml(path) as raw:
                    reader = _TrackedReader(raw, lambda: loop.call_soon_threadsafe(start_grace))
                    reader_ref["reader"] = reader
                    for _event, elem in ET.iterparse(reader, events=("end",)):
                        if stop.is_set():
                            return
                        if elem.tag == "programme":
                            collector.add(elem)
                            elem.clear()
                        elif elem.tag == "channel":
                            elem.clear()
                completion.resolve_threadsafe("parser")
            except Exception as e:
                if not stop.is_set():
                    completion.reject_threadsafe("parser", e)

        async def report_progress():
            while True:
                await asyncio.sleep(self.progress_interval)
                reader = reader_ref.get("reader")
                logger.info(
                    "epg_parse_progress",
                    provider_id=collector.provider_id,
                    bytes_read=reader.bytes_read if reader else 0,
                    programs=collector.stats["accepted"],
                    seen=collector.stats["seen"],
                )

        handles.append(
            loop.call_later(self.timeout, completion.reject, "timeout", EPGParseTimeout(self.timeout))
        )
        progress_task = asyncio.create_task(report_progress())
        worker_future = loop.run_in_executor(None, worker)
        try:
            return await completion.wait()
        finally:
            stop.set()
            for handle in handles:
                handle.cancel()
            progress_task.cancel()
            if completion.source == "parser":
                await worker_future
            else:
                await self._join_worker(worker_future, collector.provider_id)

    @staticmethod
    async def _join_worker(worker_future: asyncio.Future, provider_id: str):
        # The worker checks the stop flag between elements
        done, _ = await asyncio.wait({worker_future}, timeout=WORKER_JOIN_SECONDS)
        if not done:
            logger.warning("epg_parser_thread_still_running", provider_id=provider_id)
