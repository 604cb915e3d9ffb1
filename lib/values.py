"""Field values returned by the table service, as a closed set of variants.

Raw JSON from the remote API is converted once, at the client boundary, by
``from_raw``. Everything downstream (completion checks, notification text,
task derivation) works on these variants instead of inspecting raw types.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

# Plausible millisecond timestamps: from 1973-03-03 (10**11 ms) up to 2100-01-01.
TIMESTAMP_MS_LOWER_BOUND = 10**11
TIMESTAMP_MS_UPPER_BOUND = 3250368000000
DISPLAY_TZ = timezone(timedelta(hours=8), "Asia/Shanghai")
DISPLAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

COMPLEX_OBJECT_PLACEHOLDER = "[复杂对象]"
UNKNOWN_USER_PLACEHOLDER = "未知用户"
PERSON_FIELD_MARKER = "人"


@dataclass(frozen=True)
class StringValue:
    text: str


@dataclass(frozen=True)
class NumberValue:
    number: Union[int, float]


@dataclass(frozen=True)
class BoolValue:
    flag: bool


@dataclass(frozen=True)
class UserRef:
    id: str
    name: str = ""
    en_name: str = ""


@dataclass(frozen=True)
class MapValue:
    raw: Tuple[Tuple[str, Any], ...]

    def get(self, key: str, default: Any = None) -> Any:
        return dict(self.raw).get(key, default)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


@dataclass(frozen=True)
class ListValue:
    items: Tuple["FieldValue", ...]


@dataclass(frozen=True)
class OtherValue:
    raw: Any


FieldValue = Union[StringValue, NumberValue, BoolValue, UserRef, MapValue, ListValue, OtherValue]
_VARIANTS = (StringValue, NumberValue, BoolValue, UserRef, MapValue, ListValue, OtherValue)


def _is_user_shaped(raw: Dict[str, Any]) -> bool:
    return raw.get("id") is not None and (raw.get("name") is not None or raw.get("en_name") is not None)


def from_raw(raw: Any) -> Optional[FieldValue]:
    """Convert a decoded JSON value into a FieldValue. ``None`` stays ``None`` (absent)."""
    if raw is None:
        return None
    if isinstance(raw, _VARIANTS):
        return raw
    if isinstance(raw, str):
        return StringValue(raw)
    if isinstance(raw, bool):
        return BoolValue(raw)
    if isinstance(raw, (int, float)):
        return NumberValue(raw)
    if isinstance(raw, (list, tuple)):
        return ListValue(tuple(_item_from_raw(item) for item in raw))
    if isinstance(raw, dict):
        if _is_user_shaped(raw):
            return UserRef(
                id=_as_text(raw.get("id")),
                name=_as_text(raw.get("name")),
                en_name=_as_text(raw.get("en_name")),
            )
        return MapValue(tuple(raw.items()))
    return OtherValue(raw)


def _item_from_raw(raw: Any) -> FieldValue:
    value = from_raw(raw)
    return value if value is not None else OtherValue(None)


def _as_text(raw: Any) -> str:
    return raw if isinstance(raw, str) else ""


def to_field_values(fields: Optional[Dict[str, Any]]) -> Dict[str, FieldValue]:
    """Convert a raw record field map, dropping absent (null) entries."""
    converted: Dict[str, FieldValue] = {}
    for name, raw in (fields or {}).items():
        value = from_raw(raw)
        if value is not None:
            converted[name] = value
    return converted


def is_incomplete(value: Any) -> bool:
    """
    True when a watched field still needs a value.

    Only an absent value or the empty string counts as incomplete; ``0``,
    ``False`` and empty lists are real values.
    """
    value = from_raw(value)
    if value is None:
        return True
    return isinstance(value, StringValue) and value.text == ""


def user_token(en_name: str = "", user_id: str = "", name: str = "") -> str:
    parts = []
    if en_name:
        parts.append(f"en_name:{en_name}")
    if user_id:
        parts.append(f"id:{user_id}")
    if name:
        parts.append(f"name:{name}")
    return " ".join(parts)


def _map_user_token(value: MapValue) -> str:
    return user_token(
        _as_text(value.get("en_name")),
        _as_text(value.get("id")),
        _as_text(value.get("name")),
    )


def format_number(number: Union[int, float]) -> str:
    if isinstance(number, float) and math.isfinite(number) and number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    return str(number)


def timestamp_ms(number: Union[int, float]) -> Optional[int]:
    """Return the value as a millisecond timestamp if it falls in [early 1973, year 2100)."""
    if isinstance(number, float) and not math.isfinite(number):
        return None
    candidate = int(number)
    if TIMESTAMP_MS_LOWER_BOUND <= candidate < TIMESTAMP_MS_UPPER_BOUND:
        return candidate
    return None


def format_timestamp_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms // 1000, tz=DISPLAY_TZ).strftime(DISPLAY_TIME_FORMAT)


def looks_like_person_field(field_name: str) -> bool:
    """
    Heuristic: a field whose name contains "人" (person), such as "记录人",
    is treated as holding a user even when its value lacks a name.

    This is deliberately fuzzy and can misfire on unrelated field names.
    """
    return PERSON_FIELD_MARKER in field_name


def render_value(field_name: str, value: Optional[FieldValue]) -> str:
    """Render a field value for a notification line."""
    if value is None:
        return ""
    if isinstance(value, StringValue):
        return value.text
    if isinstance(value, ListValue):
        return ", ".join(_render_list_item(item) for item in value.items)
    if isinstance(value, NumberValue):
        ms = timestamp_ms(value.number)
        if ms is not None:
            return format_timestamp_ms(ms)
        return format_number(value.number)
    if isinstance(value, UserRef):
        return user_token(value.en_name, value.id, value.name) or UNKNOWN_USER_PLACEHOLDER
    if isinstance(value, MapValue):
        if looks_like_person_field(field_name):
            return _map_user_token(value) or UNKNOWN_USER_PLACEHOLDER
        return COMPLEX_OBJECT_PLACEHOLDER
    return _plain(value)


def _render_list_item(item: FieldValue) -> str:
    if isinstance(item, UserRef):
        return user_token(item.en_name, item.id, item.name)
    if isinstance(item, MapValue):
        return _map_user_token(item)
    return _plain(item)


def _plain(value: FieldValue) -> str:
    if isinstance(value, StringValue):
        return value.text
    if isinstance(value, NumberValue):
        return format_number(value.number)
    if isinstance(value, BoolValue):
        return "true" if value.flag else "false"
    if isinstance(value, UserRef):
        return user_token(value.en_name, value.id, value.name)
    if isinstance(value, MapValue):
        return str(value.as_dict())
    if isinstance(value, ListValue):
        return "[" + " ".join(_plain(item) for item in value.items) + "]"
    return str(value.raw)


def plain_text(value: Optional[FieldValue]) -> str:
    """Text form used for task titles: lists joined with ", ", no date formatting."""
    if value is None:
        return ""
    if isinstance(value, ListValue):
        return ", ".join(_plain(item) for item in value.items)
    return _plain(value)


def user_ids(value: Optional[FieldValue]) -> Tuple[str, ...]:
    """Ids of the users referenced by a value: a single user map or a list of them."""
    if isinstance(value, (UserRef, MapValue)):
        user_id = _user_id(value)
        return (user_id,) if user_id else ()
    if isinstance(value, ListValue):
        return tuple(user_id for user_id in (_user_id(item) for item in value.items) if user_id)
    return ()


def first_user_id(value: Optional[FieldValue]) -> Optional[str]:
    """Id of a value that structurally looks like a user reference.

    A map with an ``id`` qualifies, as does a list whose first element does.
    """
    if isinstance(value, (UserRef, MapValue)):
        return _user_id(value)
    if isinstance(value, ListValue) and value.items:
        return _user_id(value.items[0])
    return None


def _user_id(value: FieldValue) -> Optional[str]:
    if isinstance(value, UserRef):
        return value.id or None
    if isinstance(value, MapValue):
        user_id = value.get("id")
        return user_id if isinstance(user_id, str) and user_id else None
    return None
