"""
Serialization Utilities

This module converts progress records to and from plain JSON-compatible
dictionaries, handling timezone-aware datetimes, calendar dates and enums.

Stored timestamps come from older app builds as well (``...Z`` suffixes,
full timestamps where only a day is needed), so the parsers here are lenient
about shape and strict about content: anything that is not a recognisable
date raises ``MalformedValue`` and the caller decides the fallback.
"""

import json
import datetime
from enum import Enum
from dataclasses import is_dataclass, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

T = TypeVar('T', bound='SerializableMixin')


class MalformedValue(ValueError):
    """A stored value could not be parsed into the expected type."""

    def __init__(self, field: str, value: Any):
        super().__init__(f"Malformed value for {field}: {value!r}")
        self.field = field
        self.value = value


def serialize(obj: Any) -> Any:
    """
    Serialize an object to JSON-compatible primitives.

    Args:
        obj: The object to serialize

    Returns:
        Dicts, lists, strings, numbers, booleans or None
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj

    # datetime is a subclass of date, check it first
    if isinstance(obj, datetime.datetime):
        return obj.isoformat()

    if isinstance(obj, datetime.date):
        return obj.isoformat()

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, (list, tuple)):
        return [serialize(item) for item in obj]

    if isinstance(obj, dict):
        return {str(key): serialize(value) for key, value in obj.items()}

    if hasattr(obj, 'to_dict') and callable(getattr(obj, 'to_dict')):
        return obj.to_dict()

    if is_dataclass(obj):
        return {f.name: serialize(getattr(obj, f.name)) for f in fields(obj)}

    return str(obj)


def to_json(obj: Any, pretty: bool = False) -> str:
    """
    Serialize an object to a JSON string.

    Args:
        obj: The object to serialize
        pretty: Whether to format the JSON with indentation

    Returns:
        JSON string representation
    """
    indent = 2 if pretty else None
    return json.dumps(serialize(obj), indent=indent, ensure_ascii=False, sort_keys=True)


def from_json(json_str: str, target_class: Type[T], **kwargs: Any) -> T:
    """
    Deserialize a JSON string to an instance of the target class.

    Args:
        json_str: The JSON string to deserialize
        target_class: A SerializableMixin subclass
        **kwargs: Passed through to ``target_class.from_dict``

    Returns:
        An instance of the target class
    """
    return target_class.from_dict(json.loads(json_str), **kwargs)


def parse_datetime(
    value: Any,
    field: str = "timestamp",
    tz: Optional[datetime.tzinfo] = None
) -> Optional[datetime.datetime]:
    """
    Parse a stored timestamp.

    Empty values (None, "") mean "unset" and return None. Naive timestamps
    are taken to be UTC. The result is converted to ``tz`` when given.

    Raises:
        MalformedValue: if the value is not a recognisable timestamp
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError:
            raise MalformedValue(field, value)
    else:
        raise MalformedValue(field, value)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)

    return parsed.astimezone(tz) if tz else parsed


def parse_date(
    value: Any,
    field: str = "date",
    tz: Optional[datetime.tzinfo] = None
) -> Optional[datetime.date]:
    """
    Parse a stored calendar day.

    Accepts ``YYYY-MM-DD`` as well as full timestamps, which are converted to
    the local day in ``tz``.

    Raises:
        MalformedValue: if the value is not a recognisable date
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime.datetime):
        return value.astimezone(tz).date() if tz else value.date()

    if isinstance(value, datetime.date):
        return value

    if not isinstance(value, str):
        raise MalformedValue(field, value)

    text = value.strip()
    if len(text) == 10:
        try:
            return datetime.date.fromisoformat(text)
        except ValueError:
            raise MalformedValue(field, value)

    timestamp = parse_datetime(text, field=field, tz=tz)
    return timestamp.date()


def coerce_int(value: Any, default: int) -> int:
    """Best-effort integer from a stored value, falling back to ``default``."""
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_bool(value: Any, default: bool) -> bool:
    """Best-effort boolean from a stored value, falling back to ``default``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
    return default


class SerializableMixin:
    """
    Mixin that provides dictionary serialization to dataclass records.

    Classes using this mixin define ``__serializable_fields__`` with the
    attribute names written by ``to_dict``; ``from_dict`` is implemented by
    each record because every one of them merges stored data with defaults
    in its own way.
    """

    __serializable_fields__: List[str] = []

    def to_dict(self) -> Dict[str, Any]:
        """Convert the object to a dictionary."""
        return {
            name: serialize(getattr(self, name))
            for name in self.__serializable_fields__
        }

    def to_json(self, pretty: bool = False) -> str:
        """Convert the object to a JSON string."""
        return to_json(self.to_dict(), pretty)

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any], **kwargs: Any) -> T:
        """Create an instance from a dictionary."""
        init_kwargs = {
            name: data[name]
            for name in cls.__serializable_fields__
            if name in data
        }
        return cls(**init_kwargs)

    @classmethod
    def from_json(cls: Type[T], json_str: str, **kwargs: Any) -> T:
        """Create an instance from a JSON string."""
        return from_json(json_str, cls, **kwargs)
