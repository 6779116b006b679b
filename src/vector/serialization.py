"""
JSON encoding of stored records.
"""

import json
from typing import Any, Type, TypeVar, Union

from .core.exceptions import SerializationError

T = TypeVar("T")


def encode_record(record: Any, key: str) -> str:
    """Serialize a contract record (anything with ``to_dict``) to JSON."""
    try:
        return json.dumps(record.to_dict(), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"failed to encode {key}: {e}", record_key=key) from e


def decode_record(cls: Type[T], raw: Union[str, bytes], key: str) -> T:
    """
    Deserialize JSON into ``cls`` via ``cls.from_dict``.

    ``raw`` may be the stored bytes; invalid UTF-8 is reported like any
    other malformed record.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("record is not a JSON object")
        return cls.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"failed to decode {key}: {e}", record_key=key) from e
