# enrollbot/term_resolver.py

from datetime import datetime
from zoneinfo import ZoneInfo

from enrollbot import settings


class TermResolver:
    """
    Active academic term: TERM_OVERRIDE when configured, else the calendar year split in two
    halves in the configured timezone ("2025-1" for Jan-Jun, "2025-2" for Jul-Dec).
    """

    def __init__(self, override: str | None = None, tz_name: str | None = None, clock=None):
        self.override = (settings.TERM_OVERRIDE if override is None else override).strip()
        self.tz = ZoneInfo(tz_name or settings.TERM_TIMEZONE)
        self._clock = clock or (lambda: datetime.now(self.tz))

    def current_term(self) -> str:
        if self.override:
            return self.override
        return term_for(self._clock(), self.tz)


def term_for(moment: datetime, tz: ZoneInfo | None = None) -> str:
    if tz is not None and moment.tzinfo is not None:
        moment = moment.astimezone(tz)
    half = 1 if moment.month <= 6 else 2
    return f"{moment.year}-{half}"
