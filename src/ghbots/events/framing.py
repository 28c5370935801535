"""Newline-delimited JSON framing for bulk ingestion."""

import dataclasses
import json
from typing import Any, Iterable

from pydantic import BaseModel


class FramingError(Exception):
    """Raised when a record cannot be serialized.

    Attributes:
        index: Position of the offending record in the input.
    """

    def __init__(self, index: int, cause: Exception):
        self.index = index
        super().__init__(f"error marshalling item {index} to JSON: {cause}")


def _encode(item: Any) -> bytes:
    if isinstance(item, BaseModel):
        return item.model_dump_json().encode("utf-8")
    if dataclasses.is_dataclass(item) and not isinstance(item, type):
        item = dataclasses.asdict(item)
    return json.dumps(
        item,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def to_ndjson(items: Iterable[Any]) -> bytes:
    """Serialize records as NDJSON.

    Each record is encoded as compact JSON; records are separated by a
    single newline and there is no trailing newline. An empty input yields
    an empty buffer.

    Args:
        items: Records to serialize. Pydantic models, dataclasses and plain
            JSON-compatible values are supported.

    Returns:
        The framed bytes.

    Raises:
        FramingError: If any record fails to serialize. No partial output
            is returned.

    Example:
        >>> to_ndjson([{"name": "James", "age": 30}, {"name": "Felix", "age": 25}])
        b'{"name":"James","age":30}\\n{"name":"Felix","age":25}'
    """
    lines = []
    for index, item in enumerate(items):
        try:
            lines.append(_encode(item))
        except (TypeError, ValueError) as e:
            raise FramingError(index, e) from e
    return b"\n".join(lines)
