"""Parameter manifest model and parser.

A manifest is a JSON object mapping local file names to their remote content
identifier, expected digest prefix and sector size class::

    {
        "v28-stacked-proof-of-replication.params": {
            "cid": "Qm...",
            "digest": "0a1b...",
            "sector_size": 34359738368
        },
        "v28-stacked-proof-of-replication.vk": {...}
    }

Bulk ``.params`` files are only needed for the sector size the consumer runs
with; small auxiliary files (verifying keys and the like) are always needed.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ManifestError

BULK_SUFFIX = ".params"
MAX_SECTOR_SIZE = 2**64 - 1

ManifestSource = Union[bytes, bytearray, str, Mapping[str, Any]]


class ParamFile(BaseModel):
    """One manifest entry. Immutable once parsed."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    # Absent fields take zero values, as a plain JSON decode into a struct would.
    cid: str = ""
    digest: str = ""
    sector_size: int = Field(default=0, ge=0, le=MAX_SECTOR_SIZE)

    @field_validator("name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value or value in {".", ".."} or "/" in value or "\\" in value or "\x00" in value:
            raise ValueError(f"'{value}' is not a plain file name")
        return value

    @property
    def is_bulk(self) -> bool:
        """Return ``True`` for size-class specific parameter files."""

        return self.name.endswith(BULK_SUFFIX)

    def in_scope(self, storage_size: int) -> bool:
        """Return whether this entry is required for ``storage_size``.

        Entries without the bulk suffix are always required.
        """

        return not self.is_bulk or self.sector_size == storage_size


def parse_manifest(source: ManifestSource) -> Dict[str, ParamFile]:
    """Decode ``source`` into a mapping of file name to :class:`ParamFile`.

    Args:
        source: Raw JSON (bytes or text) or an already decoded mapping.

    Returns:
        Dict keyed by entry name.

    Raises:
        ManifestError: If the payload is not valid JSON or any entry is malformed.
    """

    if isinstance(source, (bytes, bytearray, str)):
        try:
            raw = json.loads(source)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestError(f"parameter manifest is not valid JSON: {exc}") from exc
    else:
        raw = source

    if not isinstance(raw, Mapping):
        raise ManifestError("parameter manifest must be a JSON object")

    entries: Dict[str, ParamFile] = {}
    messages = []
    for name, info in raw.items():
        if not isinstance(info, Mapping):
            messages.append(f"{name}: entry must be an object")
            continue
        try:
            entries[name] = ParamFile.model_validate({**info, "name": name})
        except ValidationError as exc:
            for error in exc.errors():
                location = " -> ".join(str(part) for part in error["loc"])
                messages.append(f"{name}: {location}: {error['msg']}")
    if messages:
        raise ManifestError("parameter manifest validation failed:\n  " + "\n  ".join(messages))
    return entries


__all__ = ["BULK_SUFFIX", "ParamFile", "parse_manifest"]
