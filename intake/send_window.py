"""
🕗 Send Window Policy
---------------------
Daily local-time window during which outbound prompts may be dispatched.

  • start < end  → same-day window (08–21)
  • start > end  → window wraps past midnight (22–06)
  • start == end → open all day
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class SendWindowPolicy:
    tz: ZoneInfo
    start_hour: int = 8
    end_hour: int = 21
    enforced: bool = True

    @classmethod
    def from_settings(cls, cfg) -> "SendWindowPolicy":
        return cls(
            tz=ZoneInfo(cfg.SEND_TZ),
            start_hour=cfg.SEND_START_HOUR % 24,
            end_hour=cfg.SEND_END_HOUR % 24,
            enforced=cfg.SEND_WINDOW_ENFORCED,
        )

    def local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def is_within_window(self, now: datetime) -> bool:
        if not self.enforced or self.start_hour == self.end_hour:
            return True
        hour = self.local(now).hour
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def next_window_start(self, now: datetime) -> datetime:
        """`now` itself when inside the window, else the next opening (UTC)."""
        if self.is_within_window(now):
            return now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
        ref = self.local(now)
        day = ref.date()
        if ref.hour >= self.start_hour:
            day = day + timedelta(days=1)
        opening = datetime(day.year, day.month, day.day, self.start_hour, tzinfo=self.tz)
        return opening.astimezone(timezone.utc)

    def defer(self, now: datetime) -> Optional[datetime]:
        """Opening to reschedule to, or None when dispatch is allowed right now."""
        if self.is_within_window(now):
            return None
        return self.next_window_start(now)
