# pricebook/utils/helpers.py

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


# --- Sanitizing helpers ---


def sanitize_log_string(s: Any) -> Any:
    """
    Strip control characters from free text before it reaches the audit
    trail or the log stream.
    """
    if not isinstance(s, str):
        return s
    s = re.sub(r'[\r\n\t\x00-\x1F\x7F-\x9F]', '', s)
    s = ''.join(c if c.isprintable() else '?' for c in s)
    return s.strip()


def sanitize_dict(data: Any) -> Any:
    """Recursively sanitize string values inside a dict or list."""
    if isinstance(data, dict):
        return {sanitize_log_string(k) if isinstance(k, str) else k: sanitize_dict(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [sanitize_dict(i) for i in data]
    else:
        return sanitize_log_string(data)


# --- Time helpers ---
# Instants are stored as naive UTC datetimes.


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or an ISO-8601 string (``Z`` suffix allowed)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str):
        raise ValueError("expected an ISO-8601 datetime string")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def parse_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValueError("expected true or false")


# --- Decimal helpers ---


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Convert JSON numbers/strings to Decimal without going through float."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError("expected a number")
    if not result.is_finite():
        raise ValueError("expected a finite number")
    return result


def format_decimal(value: Optional[Decimal]) -> Optional[str]:
    """Render a Decimal without exponent or trailing zeros ("440", "0.00044")."""
    if value is None:
        return None
    text = format(Decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
