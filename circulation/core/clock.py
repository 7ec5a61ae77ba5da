from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
