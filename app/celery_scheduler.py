import time

from celery.beat import Scheduler

from app.services.scheduler_config import build_beat_schedule


def _schedule_signature(schedule: dict) -> tuple:
    return tuple(
        sorted(
            (
                name,
                entry["task"],
                entry["schedule"].total_seconds(),
                repr(entry.get("args")),
                repr(entry.get("kwargs")),
                repr(entry.get("options")),
            )
            for name, entry in schedule.items()
        )
    )


class DbScheduler(Scheduler):
    """Beat scheduler that re-reads the built-in sweeps and ScheduledTask rows."""

    def __init__(self, *args, **kwargs):
        self._last_refresh_at = 0.0
        self._signature: tuple | None = None
        super().__init__(*args, **kwargs)

    def setup_schedule(self):
        self._refresh_schedule(force=True)

    def tick(self, *args, **kwargs):
        self._refresh_schedule()
        return super().tick(*args, **kwargs)

    def _refresh_schedule(self, force: bool = False):
        refresh_seconds = int(self.app.conf.get("beat_refresh_seconds", 30))
        now = time.monotonic()
        if not force and now - self._last_refresh_at < max(refresh_seconds, 1):
            return
        schedule = build_beat_schedule()
        signature = _schedule_signature(schedule)
        if signature != self._signature:
            self.merge_inplace(schedule)
            self._signature = signature
        self._last_refresh_at = now
