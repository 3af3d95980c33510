from dataclasses import asdict
from enum import Enum
from typing import Any

import orjson


def fill_none_converter(obj):
    if hasattr(obj, "__dataclass_fields__"):
        return {k: v for k, v in asdict(obj).items() if v is not None}
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def to_json(obj) -> str:
    return orjson.dumps(obj, default=fill_none_converter).decode("utf-8")


def to_json_bytes(obj) -> bytes:
    """Serialize a request body. Bytes can be re-sent on every retry attempt."""
    return orjson.dumps(obj, default=fill_none_converter)


def from_json(data: str | bytes) -> Any:
    return orjson.loads(data)


__all__ = ["to_json", "to_json_bytes", "from_json", "fill_none_converter"]
