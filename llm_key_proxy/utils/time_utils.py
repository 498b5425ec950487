from __future__ import annotations

import time

ONE_DAY_MS = 24 * 60 * 60 * 1000
ONE_WEEK_MS = 7 * ONE_DAY_MS
ONE_YEAR_MS = 365 * ONE_DAY_MS


def now_ms() -> int:
    return int(time.time() * 1000)
