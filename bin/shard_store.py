#!/usr/bin/env python3
"""
history-sync Shard Store

Local persistence for time-partitioned history shards.

Each partition-key owns one JSON file ``<key>.json`` under the storage root,
holding a mapping of record-id -> record-hash. This module provides:
- decode_shard() / decode_totals(): shape validation for both JSON documents
- ensure_storage_dir(): storage root bootstrap
- has_complete_shard(): completeness check against an expected count
- write_shard(): atomic verbatim write of a fetched body
- load_merged_records(): merge of every local shard into one record space
- exception types shared by the synchronize and dispatch phases
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Optional, Union

SHARD_SUFFIX = ".json"
PART_SUFFIX = ".part"
SHARD_FILE_MODE = 0o644

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

_RECORD_ID_RE = re.compile(r"[+-]?[0-9]+")

PathLike = Union[str, "os.PathLike[str]"]


# =============================================================================
# ERRORS
# =============================================================================

class HistoryError(Exception):
    """Base class for history-sync errors."""


class FatalSetupError(HistoryError):
    """A precondition of the run could not be satisfied; the run aborts."""


class StorageSetupError(FatalSetupError):
    """The storage root could not be created or is not a directory."""


class RemoteIndexError(FatalSetupError):
    """The authoritative totals index could not be obtained."""

    def __init__(self, url: str, cause: Any, status_code: Optional[int] = None):
        self.url = url
        self.cause = cause
        self.status_code = status_code
        super().__init__(f"Failed to get totals from {url}: {cause}")


class LocalCorruptionError(HistoryError):
    """A local shard failed to decode during aggregation."""

    def __init__(self, path: PathLike, cause: Any):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Error decoding file {self.path}: {cause}")


class ShardDecodeError(ValueError):
    """A JSON document does not have the expected shard or totals shape."""


# =============================================================================
# DECODING
# =============================================================================

def _parse_record_id(raw: str) -> int:
    if not _RECORD_ID_RE.fullmatch(raw):
        raise ShardDecodeError(f"record id {raw!r} is not an integer")
    record_id = int(raw, 10)
    if not INT32_MIN <= record_id <= INT32_MAX:
        raise ShardDecodeError(f"record id {raw!r} is out of 32-bit range")
    return record_id


def decode_shard(data: Union[bytes, str]) -> dict[int, str]:
    """
    Decode a shard document.

    Args:
        data: Raw JSON text or bytes

    Returns:
        Mapping of record-id to record-hash. A JSON ``null`` decodes to an
        empty mapping.

    Raises:
        ShardDecodeError: If the document is not valid JSON or not a mapping
            of 32-bit integer ids to string hashes
    """
    try:
        doc = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ShardDecodeError(f"invalid JSON: {e}") from e

    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ShardDecodeError(f"expected a JSON object, got {type(doc).__name__}")

    records: dict[int, str] = {}
    for raw_id, record_hash in doc.items():
        if not isinstance(record_hash, str):
            raise ShardDecodeError(f"hash for record {raw_id} is not a string")
        records[_parse_record_id(raw_id)] = record_hash
    return records


def decode_totals(data: Union[bytes, str]) -> dict[str, int]:
    """
    Decode a totals index document.

    Args:
        data: Raw JSON text or bytes

    Returns:
        Mapping of partition-key to expected record count

    Raises:
        ShardDecodeError: If the document is not a JSON object of
            non-negative integers
    """
    try:
        doc = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ShardDecodeError(f"invalid JSON: {e}") from e

    if not isinstance(doc, dict):
        raise ShardDecodeError(f"expected a JSON object, got {type(doc).__name__}")

    totals: dict[str, int] = {}
    for key, count in doc.items():
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ShardDecodeError(f"count for {key!r} is not a non-negative integer: {count!r}")
        totals[key] = count
    return totals


# =============================================================================
# PATHS AND BOOTSTRAP
# =============================================================================

def validate_partition_key(key: str) -> None:
    """Reject keys that cannot be used as a plain file name."""
    if not key or key in (".", "..") or "\x00" in key or "/" in key or "\\" in key or os.sep in key:
        raise ValueError(f"Invalid partition key: {key!r}")


def shard_path(storage_dir: PathLike, key: str) -> Path:
    """Full path of the shard file for a partition-key."""
    validate_partition_key(key)
    return Path(storage_dir) / f"{key}{SHARD_SUFFIX}"


def ensure_storage_dir(storage_dir: PathLike) -> Path:
    """
    Create the storage root if it does not exist.

    Raises:
        StorageSetupError: If the directory cannot be created or the path
            exists but is not a directory
    """
    root = Path(storage_dir)
    try:
        root.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise StorageSetupError(f"Failed to create storage directory {root}: {e}") from e
    return root


# =============================================================================
# READ / WRITE
# =============================================================================

def read_shard(path: PathLike) -> dict[int, str]:
    """Read and decode one shard file. Raises OSError or ShardDecodeError."""
    with open(path, "rb") as f:
        return decode_shard(f.read())


def has_complete_shard(storage_dir: PathLike, key: str, expected: int) -> bool:
    """
    Check whether the local shard for ``key`` is complete.

    Missing, unreadable, malformed and count-mismatched shards are all
    reported as incomplete.
    """
    try:
        records = read_shard(shard_path(storage_dir, key))
    except (OSError, ValueError):
        return False
    return len(records) == expected


def write_shard(storage_dir: PathLike, key: str, content: bytes) -> Path:
    """
    Write a fetched body verbatim as the shard for ``key``.

    The body is written to ``<key>.json.part`` first and then moved over the
    final path, so a failed write never leaves a truncated shard behind.

    Returns:
        Path of the written shard

    Raises:
        OSError: If the file cannot be written
    """
    final_path = shard_path(storage_dir, key)
    temp_path = final_path.with_name(final_path.name + PART_SUFFIX)
    try:
        with open(temp_path, "wb") as f:
            f.write(content)
        os.chmod(temp_path, SHARD_FILE_MODE)
        os.replace(temp_path, final_path)
    except OSError:
        if temp_path.exists():
            temp_path.unlink()
        raise
    return final_path


def list_shard_files(storage_dir: PathLike) -> list[Path]:
    """Sorted list of shard files under the storage root."""
    root = Path(storage_dir)
    if not root.is_dir():
        raise StorageSetupError(f"Storage directory not found: {root}")
    return sorted(p for p in root.iterdir() if p.is_file() and p.name.endswith(SHARD_SUFFIX))


def load_merged_records(storage_dir: PathLike) -> dict[int, str]:
    """
    Merge every local shard into a single record-id -> record-hash mapping.

    Shards are read in file-name order; on a duplicate record-id the shard
    read last wins.

    Raises:
        StorageSetupError: If the storage root does not exist
        LocalCorruptionError: If any shard cannot be read or decoded
    """
    merged: dict[int, str] = {}
    for path in list_shard_files(storage_dir):
        try:
            records = read_shard(path)
        except (OSError, ShardDecodeError) as e:
            raise LocalCorruptionError(path, e) from e
        merged.update(records)
    return merged
