"""
Scheduled content jobs and periodic tasks.

Jobs are persisted as a JSON list and fired on asyncio tasks; fire times
come from the job's cron expression (croniter) and never precede the job's
start time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable

from croniter import croniter

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
EVERY_MINUTE = "* * * * *"
# Start times are entered in UTC+1 by the server's admins.
INPUT_UTC_OFFSET_HOURS = 1


@dataclass
class ScheduledContent:
    id: str
    title: str
    status: str
    cron_expression: str
    start_time: str  # ISO string in UTC
    prompt: str
    general_info: str
    context: str = ""
    file_iteration: bool = False
    folder_path: str | None = None
    channel_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ScheduledContent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def interval_to_cron(text: str) -> str:
    """Convert "3 minutes" / "2 hours" / "1 day" into a cron expression."""
    parts = text.strip().split()
    try:
        value = int(parts[0]) if parts else 0
    except ValueError:
        return EVERY_MINUTE
    unit = parts[1].lower() if len(parts) > 1 else ""
    if value <= 0:
        return EVERY_MINUTE
    if unit.startswith("minute"):
        return f"*/{value} * * * *"
    if unit.startswith("hour"):
        return f"0 */{value} * * *"
    if unit.startswith("day"):
        return f"0 0 */{value} * *"
    return EVERY_MINUTE


def local_start_to_utc(text: str, utc_offset_hours: int = INPUT_UTC_OFFSET_HOURS) -> str:
    """Parse "YYYY-MM-DD HH:mm" in UTC+offset and return an ISO UTC string."""
    local = datetime.strptime(text.strip(), "%Y-%m-%d %H:%M")
    utc = (local - timedelta(hours=utc_offset_hours)).replace(tzinfo=timezone.utc)
    return utc.isoformat()


def next_fire_time(cron_expression: str, start_time: str | None, now: datetime) -> datetime:
    """Next time the job fires, counted from max(now, start_time)."""
    base = now
    if start_time:
        start = datetime.fromisoformat(start_time)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if start > base:
            # croniter yields times strictly after base; step back to allow start itself
            base = start - timedelta(seconds=1)
    return croniter(cron_expression, base).get_next(datetime)


class ScheduledContentStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._items: list[ScheduledContent] = []
        self.load()

    def load(self) -> None:
        if self.path.exists():
            data = json.loads(self.path.read_text())
            self._items = []
            for d in data:
                content = ScheduledContent.from_dict(d)
                if not croniter.is_valid(content.cron_expression):
                    logger.warning("Skipping scheduled content %s with invalid cron expression %r",
                                   content.id, content.cron_expression)
                    continue
                self._items.append(content)
        else:
            self._items = []

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps([asdict(c) for c in self._items], indent=2))

    def add(self, content: ScheduledContent) -> None:
        croniter(content.cron_expression)  # raises on an invalid expression
        self._items.append(content)
        self.save()

    def create(
        self,
        title: str,
        repeat_interval: str,
        start_time: str,
        prompt: str,
        general_info: str,
        channel_id: str | None = None,
    ) -> ScheduledContent:
        content = ScheduledContent(
            id=str(uuid.uuid4()),
            title=title,
            status=STATUS_ACTIVE,
            cron_expression=interval_to_cron(repeat_interval),
            start_time=local_start_to_utc(start_time),
            prompt=prompt,
            general_info=general_info,
            channel_id=channel_id,
        )
        self.add(content)
        return content

    def list(self) -> list[ScheduledContent]:
        return list(self._items)

    def get(self, content_id: str) -> ScheduledContent | None:
        return next((c for c in self._items if c.id == content_id), None)

    def set_status(self, content_id: str, status: str) -> bool:
        if status not in (STATUS_ACTIVE, STATUS_PAUSED):
            raise ValueError(f"Unknown status: {status}")
        content = self.get(content_id)
        if content is None:
            return False
        content.status = status
        self.save()
        return True

    def toggle(self, content_id: str) -> ScheduledContent | None:
        content = self.get(content_id)
        if content is None:
            return None
        new_status = STATUS_PAUSED if content.status == STATUS_ACTIVE else STATUS_ACTIVE
        self.set_status(content_id, new_status)
        return content


Callback = Callable[[], Awaitable[None]]


class ContentScheduler:
    """Runs callbacks on cron schedules, one asyncio task per job."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def job_ids(self) -> list[str]:
        return list(self._tasks)

    def schedule(
        self,
        job_id: str,
        cron_expression: str,
        callback: Callback,
        start_time: str | None = None,
    ) -> None:
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression for {job_id}: {cron_expression!r}")
        self.cancel(job_id)
        self._tasks[job_id] = asyncio.create_task(
            self._run(job_id, cron_expression, callback, start_time),
            name=f"schedule:{job_id}",
        )

    def schedule_all_active(
        self,
        contents: list[ScheduledContent],
        on_trigger: Callable[[ScheduledContent], Awaitable[None]],
    ) -> None:
        """Replace every content job with the active ones from ``contents``."""
        for job_id in [j for j in self._tasks if j.startswith("content:")]:
            self.cancel(job_id)
        for content in contents:
            if content.status != STATUS_ACTIVE:
                continue
            try:
                self.schedule(
                    f"content:{content.id}",
                    content.cron_expression,
                    lambda c=content: on_trigger(c),
                    start_time=content.start_time,
                )
            except ValueError:
                logger.warning("Not scheduling %s: invalid cron expression %r",
                               content.title, content.cron_expression)
                continue
            logger.info("Scheduled task for: %s", content.title)

    def cancel(self, job_id: str) -> None:
        task = self._tasks.pop(job_id, None)
        if task is not None:
            task.cancel()

    def cancel_all(self) -> None:
        for job_id in list(self._tasks):
            self.cancel(job_id)

    async def _run(
        self, job_id: str, cron_expression: str, callback: Callback, start_time: str | None
    ) -> None:
        last_fire: datetime | None = None
        while True:
            now = self._clock()
            if last_fire is not None and last_fire > now:
                now = last_fire
            fire_at = next_fire_time(cron_expression, start_time, now)
            await asyncio.sleep(max(0.0, (fire_at - self._clock()).total_seconds()))
            last_fire = fire_at
            try:
                await callback()
            except Exception:
                # One failed run must not stop later runs of the job.
                logger.exception("Scheduled job %s failed", job_id)
