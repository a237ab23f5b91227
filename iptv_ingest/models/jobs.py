"""
Job Models

Job definitions (jobs.json), run-record statuses, dispatch parameters and
dispatch results.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..core.exceptions import ConfigInvalid

DURATION_RE = re.compile(r"^(\d+)([smhd])?$")
UNIT_MS = {None: 1, "s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}


def parse_duration_ms(value: Union[int, str, None]) -> Optional[int]:
    """
    Parse "1500", 1500, "45s", "30m", "2h", "1d" into milliseconds.

    Bare numbers are milliseconds. 0, "0" and None mean "not set".
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        ms = int(value)
    else:
        match = DURATION_RE.match(value.strip())
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        ms = int(match.group(1)) * UNIT_MS[match.group(2)]
    if ms < 0:
        raise ValueError(f"negative duration: {value!r}")
    return ms or None


class JobStatus(str, Enum):
    """Run-record status. idle -> running -> success|failed."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class JobDefinition(BaseModel):
    """One entry of jobs.json."""
    name: str
    job_history_name: Optional[str] = Field(None, alias="jobHistoryName")
    description: str = ""
    schedule: Optional[str] = Field(None, description="Human-readable label only")
    interval_ms: Optional[int] = Field(None, alias="interval")
    cron: Optional[str] = None
    timeout_ms: Optional[int] = Field(None, alias="timeout")
    run_on_startup: bool = Field(False, alias="runOnStartup")
    delay_ms: Optional[int] = Field(None, alias="delay")
    skip_if_other_in_progress: List[str] = Field(default_factory=list, alias="skipIfOtherInProgress")
    post_execute: List[str] = Field(default_factory=list, alias="postExecute")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("interval_ms", "timeout_ms", "delay_ms", mode="before")
    @classmethod
    def _duration(cls, value):
        return parse_duration_ms(value)

    @property
    def history_name(self) -> str:
        """Run-record key (defaults to the job name)."""
        return self.job_history_name or self.name

    @property
    def is_manual_only(self) -> bool:
        return self.interval_ms is None and self.cron is None


class JobsConfig(BaseModel):
    jobs: List[JobDefinition]

    @model_validator(mode="after")
    def _check_references(self):
        names = [job.name for job in self.jobs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate job names: {', '.join(duplicates)}")
        known = set(names)
        for job in self.jobs:
            for ref in job.skip_if_other_in_progress + job.post_execute:
                if ref not in known:
                    raise ValueError(f"job '{job.name}' references unknown job '{ref}'")
        return self

    def by_name(self) -> Dict[str, JobDefinition]:
        return {job.name: job for job in self.jobs}

    @classmethod
    def from_file(cls, path: str) -> "JobsConfig":
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigInvalid(path, str(e)) from e
        return cls.parse(raw, source=path)

    @classmethod
    def parse(cls, raw: Any, source: str = "jobs config") -> "JobsConfig":
        if isinstance(raw, list):
            raw = {"jobs": raw}
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigInvalid(source, str(e)) from e


class JobParams(BaseModel):
    """Worker data attached to a dispatch and handed on to post-execute jobs."""
    provider_id: Optional[str] = None


@dataclass
class DispatchResult:
    """Outcome of an admission attempt. Rejections are returned, never raised."""
    job_name: str
    admitted: bool
    reason: Optional[str] = None
    task: Optional["asyncio.Task"] = field(default=None, repr=False)

    async def wait(self) -> Optional[Dict[str, Any]]:
        """Await the admitted run; returns its summary (None if rejected)."""
        if self.task is None:
            return None
        return await self.task
