from datetime import datetime, timezone


def now_utc() -> datetime:
    """Timezone-aware UTC timestamp used for column defaults."""
    return datetime.now(timezone.utc)
