"""Parsing and canonicalization of ZIP extra-field record chains.

An extra field is a sequence of records, each made of a 2-byte little-endian
header id, a 2-byte little-endian payload length and the payload itself. See
Info-ZIP's ``proginfo/extrafld.txt`` for the record layouts.

Only two record types carry build-time data worth rewriting:

- ``0x5455`` extended timestamp: a flag byte followed by 4-byte Unix times.
- ``0x7875`` Info-ZIP Unix (version 1): UID and GID of variable width.

Every other record is copied unchanged, and the rewritten chain always has the
same length as the original so no header offsets need to be recomputed.
"""

from __future__ import annotations

import logging
import struct
from enum import Enum
from typing import Iterable, List, NamedTuple, Tuple

from .errors import MalformedExtraFieldError

logger = logging.getLogger(__name__)

ZIP64_ID = 0x0001
EXTENDED_TIMESTAMP_ID = 0x5455
INFOZIP_UNIX_ID = 0x7875

RECORD_HEADER = struct.Struct("<HH")
TIMESTAMP = struct.Struct("<I")


class HeaderContext(str, Enum):
    """Which header an extra field was taken from."""

    CENTRAL = "central"
    LOCAL = "local"


class ExtraFieldRecord(NamedTuple):
    header_id: int
    payload: bytes

    def to_bytes(self) -> bytes:
        return RECORD_HEADER.pack(self.header_id, len(self.payload)) + self.payload


def parse_extra_fields(raw: bytes) -> Tuple[List[ExtraFieldRecord], bytes]:
    """Split an extra field into records.

    Parsing is driven by the declared lengths only. It stops when fewer than
    four bytes remain; those bytes (alignment padding in practice) are returned
    as the second element so callers can keep them.

    Raises:
        MalformedExtraFieldError: If a record claims more bytes than remain.
    """
    records = []
    pos = 0
    end = len(raw)
    while end - pos >= RECORD_HEADER.size:
        header_id, length = RECORD_HEADER.unpack_from(raw, pos)
        start = pos + RECORD_HEADER.size
        stop = start + length
        if stop > end:
            raise MalformedExtraFieldError(
                f"extra field 0x{header_id:04x} at offset {pos} declares "
                f"{length} bytes but only {end - start} remain"
            )
        records.append(ExtraFieldRecord(header_id, bytes(raw[start:stop])))
        pos = stop
    return records, bytes(raw[pos:])


def _normalize_timestamp(payload: bytes, canonical_time: int) -> bytes:
    # Same layout in both headers: the local header simply carries more slots.
    if not payload or (len(payload) - 1) % TIMESTAMP.size:
        raise MalformedExtraFieldError(
            f"extended timestamp field has invalid length {len(payload)}"
        )
    slots = (len(payload) - 1) // TIMESTAMP.size
    return payload[:1] + TIMESTAMP.pack(canonical_time) * slots


def _normalize_unix_ids(payload: bytes) -> bytes:
    if not payload:
        raise MalformedExtraFieldError("Info-ZIP Unix field has no version byte")
    if payload[0] != 1:
        return payload

    # version (1) | uid size (1) | uid | gid size (1) | gid
    if len(payload) < 2:
        raise MalformedExtraFieldError("Info-ZIP Unix field truncated before UID size")
    uid_len = payload[1]
    if len(payload) < 3 + uid_len:
        raise MalformedExtraFieldError("Info-ZIP Unix field truncated before GID size")
    gid_len = payload[2 + uid_len]
    if len(payload) != 3 + uid_len + gid_len:
        raise MalformedExtraFieldError(
            f"Info-ZIP Unix field length {len(payload)} does not match "
            f"UID size {uid_len} and GID size {gid_len}"
        )
    return bytes([1, uid_len]) + bytes(uid_len) + bytes([gid_len]) + bytes(gid_len)


def normalize_extra_fields(
    raw: bytes, header_context: HeaderContext, canonical_time: int
) -> bytes:
    """Canonicalize the timestamp and UID/GID records of an extra field.

    Args:
        raw: Extra-field bytes from a central-directory or local file header.
        header_context: Which header ``raw`` came from.
        canonical_time: Unix time written into every timestamp slot.

    Returns:
        The rewritten extra field, exactly as long as ``raw``.

    Raises:
        MalformedExtraFieldError: If the chain or a known record is malformed.
    """
    records, trailing = parse_extra_fields(raw)
    result = bytearray()
    for record in records:
        if record.header_id == EXTENDED_TIMESTAMP_ID:
            payload = _normalize_timestamp(record.payload, canonical_time)
        elif record.header_id == INFOZIP_UNIX_ID:
            payload = _normalize_unix_ids(record.payload)
        else:
            payload = record.payload
        result += ExtraFieldRecord(record.header_id, payload).to_bytes()
    result += trailing

    logger.debug(
        "normalized %s extra field: %d records, %d bytes",
        header_context.value,
        len(records),
        len(result),
    )
    return bytes(result)


def strip_extra_fields(raw: bytes, header_ids: Iterable[int]) -> bytes:
    """Remove every record whose id is in ``header_ids``."""
    header_ids = set(header_ids)
    records, trailing = parse_extra_fields(raw)
    kept = b"".join(r.to_bytes() for r in records if r.header_id not in header_ids)
    return kept + trailing
