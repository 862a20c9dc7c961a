#!/usr/bin/env python3
"""
history-sync Single Request Module

Async HTTP helpers for one request at a time.

This module is used by sync_batch.py and dispatch_batch.py and provides:
- fetch_url_data(): rate-limited GET returning the body on HTTP 200
- fetch_totals(): GET and decode of the authoritative totals index
- post_record(): POST of one record to the downstream endpoint
"""

from __future__ import annotations

import asyncio
from http import HTTPStatus
from typing import Optional, Tuple

import aiohttp

from shard_store import RemoteIndexError, ShardDecodeError, decode_totals
from token_bucket import TokenBucket

TOTALS_URL = "https://zkillboard.com/api/history/totals.json"
HISTORY_URL_FORMAT = "https://zkillboard.com/api/history/{key}.json"

USER_AGENT = "history-sync/1.0"


def history_url(url_format: str, key: str) -> str:
    """Render the history endpoint URL for a partition-key."""
    return url_format.format(key=key)


def _status_error(status: int) -> str:
    try:
        status_name = HTTPStatus(status).phrase
    except ValueError:
        status_name = "Unknown"
    return f"Non happy status: HTTP {status}: {status_name}"


async def fetch_url_data(
    session: aiohttp.ClientSession,
    url: str,
    bucket: TokenBucket,
    timeout: Optional[float] = None,
) -> Tuple[Optional[bytes], Optional[int], Optional[str]]:
    """
    Fetch a URL after taking one token from the bucket.

    Args:
        session: aiohttp ClientSession
        url: URL to fetch
        bucket: Shared rate limiter
        timeout: Total request timeout in seconds, None for unbounded

    Returns:
        Tuple of (content, status_code, error). ``content`` is set only on
        HTTP 200; ``status_code`` is None when no response was obtained.
    """
    await bucket.acquire()

    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status != 200:
                return None, response.status, _status_error(response.status)
            content = await response.read()
            return content, response.status, None
    except asyncio.TimeoutError:
        return None, None, "Request Timeout"
    except aiohttp.ClientError as e:
        return None, None, f"Connection Error: {e}"


async def fetch_totals(
    session: aiohttp.ClientSession,
    url: str,
    bucket: TokenBucket,
    timeout: Optional[float] = None,
) -> dict[str, int]:
    """
    Fetch the totals index: partition-key -> expected record count.

    Raises:
        RemoteIndexError: On network failure, non-200 status or a body that
            does not decode into a totals mapping
    """
    content, status, error = await fetch_url_data(session, url, bucket, timeout)
    if content is None:
        raise RemoteIndexError(url, error, status_code=status)

    try:
        return decode_totals(content)
    except ShardDecodeError as e:
        raise RemoteIndexError(url, e, status_code=status) from e


async def post_record(
    session: aiohttp.ClientSession,
    url: str,
    record_id: int,
    record_hash: str,
    timeout: float,
) -> Tuple[Optional[int], Optional[str]]:
    """
    POST one record as ``{"id": <id>, "hash": "<hash>"}``.

    Any HTTP status is a result; only failures to get a response at all are
    reported as errors.

    Returns:
        Tuple of (status_code, error)
    """
    payload = {"id": record_id, "hash": record_hash}
    try:
        async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            await response.read()
            return response.status, None
    except asyncio.TimeoutError:
        return None, "Request Timeout"
    except aiohttp.ClientError as e:
        return None, f"Connection Error: {e}"
