"""
Data models shared by the transport and the client.

- Table: Reference to a table inside a base (the base id is the rate limit key).
- Record: Immutable record returned by the API.
- Page: One page of a select, with the continuation offset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Table:
    """
    Reference to a table.

    Attributes:
        base_id: The base holding the table. Rate limits apply per base.
        name: Table name or table id.

    Example:
        >>> Table(base_id="appXXXXXXXXXXXXXX", name="Tasks")
    """

    base_id: str
    name: str

    def __post_init__(self) -> None:
        assert self.base_id, "Base ID can not be empty."
        assert self.name, "Table name can not be empty."

    def __str__(self) -> str:
        return f"{self.base_id}:{self.name}"


@dataclass(frozen=True)
class Record:
    """
    A record as returned by the API.

    Attributes:
        id: The record id (`rec...`).
        fields: Field name -> value. Blank fields are absent.
        created_time: Creation timestamp as sent by the API (ISO 8601).
    """

    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_time: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Record:
        """Build a Record from one entry of the API `records` array."""
        assert "id" in data, "Record payload has no id."
        return cls(
            id=data["id"],
            fields=dict(data.get("fields") or {}),
            created_time=data.get("createdTime"),
        )


@dataclass(frozen=True)
class Page:
    """
    One page of a select.

    Attributes:
        records: Records of this page.
        offset: Opaque continuation token for the next page, or None on the last page.
    """

    records: list[Record]
    offset: str | None = None

    @property
    def has_next(self) -> bool:
        return self.offset is not None
