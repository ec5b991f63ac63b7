from datetime import datetime, timezone
from typing import Optional


DEFAULT_DISPLAY_NAME = "Người dùng"


def ensure_utc(moment: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz aware
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def time_ago(moment: datetime, now: Optional[datetime] = None) -> str:
    """Relative Vietnamese label for a past moment ("Vừa xong", "5 phút trước")."""
    now = ensure_utc(now or datetime.now(timezone.utc))
    seconds = int((now - ensure_utc(moment)).total_seconds())
    if seconds < 60:
        return "Vừa xong"

    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} phút trước"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} giờ trước"

    days = hours // 24
    if days < 7:
        return f"{days} ngày trước"

    weeks = days // 7
    if weeks < 4:
        return f"{weeks} tuần trước"

    return f"{days // 30} tháng trước"


def resolve_avatar_url(avatar_ref: Optional[str], storage_public_url: str) -> Optional[str]:
    if not avatar_ref:
        return None
    if avatar_ref.startswith(("http://", "https://")):
        return avatar_ref
    return f"{storage_public_url.rstrip('/')}/avatars/{avatar_ref.lstrip('/')}"
