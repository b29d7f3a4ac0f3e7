"""CLI JSON output wrapper.

Every JSON document printed by the CLI carries schema metadata
(schema_id, schema_version, producer, produced_at) so consumers can detect
format changes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fedsearch import __version__


@dataclass(frozen=True, slots=True)
class SchemaStamp:
    """Schema metadata applied to CLI output."""

    schema_id: str
    schema_version: int
    producer: str
    produced_at: str


def build_schema_stamp(schema_id: str, schema_version: int) -> SchemaStamp:
    return SchemaStamp(
        schema_id=schema_id,
        schema_version=schema_version,
        producer=f"fedsearch-{__version__}",
        produced_at=datetime.now(UTC).isoformat(),
    )


def json_response(
    schema_id: str,
    schema_version: int,
    **data: Any,
) -> str:
    """Create schema-wrapped JSON response for CLI output.

    Args:
        schema_id: Identifier for the output type (e.g., "search_results").
        schema_version: Integer version for backward compatibility.
        **data: Payload data to include in the response.

    Returns:
        JSON string with schema metadata and payload.

    Example:
        >>> json_response("index_etag", 1, etag="default-1700000000000")
        {
          "schema_id": "index_etag",
          "schema_version": 1,
          "producer": "fedsearch-0.1.0",
          "produced_at": "2025-12-12T10:30:00+00:00",
          "etag": "default-1700000000000"
        }
    """
    stamp = build_schema_stamp(schema_id=schema_id, schema_version=schema_version)
    wrapped = {
        "schema_id": stamp.schema_id,
        "schema_version": stamp.schema_version,
        "producer": stamp.producer,
        "produced_at": stamp.produced_at,
        **data,
    }
    return json.dumps(wrapped, indent=2, default=str)
