"""
JSON serialization utilities for outbox payloads.

Example:
    >>> from outboxrelay.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>>
    >>> payload = json_dumps({"order_id": uuid4()})
    >>> json_loads(payload)["order_id"]
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class RelayJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for values commonly found in event payloads.

    - UUID and Decimal: string representation
    - datetime and date: ISO 8601 string
    - Enum: its value
    - pydantic models: their JSON-mode dump
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID | Decimal):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize an object to a compact JSON string using RelayJSONEncoder.

    Keys are kept in insertion order so equal payloads serialize identically.
    """
    return json.dumps(obj, cls=RelayJSONEncoder, separators=(",", ":"))


def json_loads(s: str) -> Any:
    """
    Deserialize a JSON string.

    UUID and datetime strings are not converted back; that is the
    consumer's responsibility.
    """
    return json.loads(s)


__all__ = [
    "RelayJSONEncoder",
    "json_dumps",
    "json_loads",
]
