import re
import unicodedata
from datetime import date, datetime
from zoneinfo import ZoneInfo

__all__ = [
    "normalize_status",
    "normalize_patient_identity",
    "normalize_date",
    "normalize_time",
]

_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{1,2})(?::\d{1,2})?$")
_COMPACT_TIME_RE = re.compile(r"^(\d{1,2})(\d{2})$")
_SLASH_DATE_RE = re.compile(r"^(\d{4})[/.](\d{1,2})[/.](\d{1,2})$")

LEDGER_TIMEZONE = ZoneInfo("Asia/Tokyo")

# Sheet operators type these by hand.
_STATUS_ALIASES = {
    "キャンセル": "canceled",
    "cancelled": "canceled",
    "cancel": "canceled",
    "予約中": "pending",
    "booked": "pending",
    "診察済": "completed",
    "完了": "completed",
    "done": "completed",
}


def normalize_status(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", value.strip())
    if not cleaned:
        return None
    lowered = cleaned.lower()
    return _STATUS_ALIASES.get(cleaned, _STATUS_ALIASES.get(lowered, lowered))


def normalize_patient_identity(value: object) -> str | None:
    if value is None:
        return None
    text = unicodedata.normalize("NFKC", str(value))
    text = _WHITESPACE_RE.sub("", text)
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text or None


def normalize_date(value: object, tz: ZoneInfo = LEDGER_TIMEZONE) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _local_date(value, tz)
    if isinstance(value, date):
        return value
    text = unicodedata.normalize("NFKC", str(value)).strip()
    if not text:
        return None
    match = _SLASH_DATE_RE.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return date(year, month, day)
    if "T" in text or " " in text:
        return _local_date(datetime.fromisoformat(text.replace("Z", "+00:00")), tz)
    return date.fromisoformat(text)


def normalize_time(value: object, tz: ZoneInfo = LEDGER_TIMEZONE) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        local = value.astimezone(tz) if value.tzinfo else value
        return f"{local.hour:02d}:{local.minute:02d}"
    text = unicodedata.normalize("NFKC", str(value)).strip()
    if not text:
        return None
    if "T" in text:
        return normalize_time(datetime.fromisoformat(text.replace("Z", "+00:00")), tz)
    match = _TIME_RE.match(text) or _COMPACT_TIME_RE.match(text)
    if not match:
        raise ValueError(f"Unrecognised time value: {text!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time out of range: {text!r}")
    return f"{hour:02d}:{minute:02d}"


def _local_date(value: datetime, tz: ZoneInfo) -> date:
    # Sheets serialise date cells as UTC instants of local midnight.
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(tz).date()
