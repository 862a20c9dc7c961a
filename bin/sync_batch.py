#!/usr/bin/env python3
"""
history-sync Synchronize Phase

Brings the local shard directory up to date with the remote history.

Flow:
    totals index → completeness check per partition → bounded worker pool
    fetching every incomplete partition → SyncReport

All outbound requests (the totals fetch included) take a token from one
shared TokenBucket. A partition that fails to fetch or write is recorded as a
failed SyncOutcome and left untouched on disk, so the next run re-validates
and retries it.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import aiohttp
from tqdm.asyncio import tqdm

from shard_store import (
    ShardDecodeError,
    decode_shard,
    ensure_storage_dir,
    has_complete_shard,
    validate_partition_key,
    write_shard,
)
from single_fetch import (
    HISTORY_URL_FORMAT,
    TOTALS_URL,
    USER_AGENT,
    fetch_totals,
    fetch_url_data,
    history_url,
)
from token_bucket import TokenBucket


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class SyncConfig:
    """Configuration for a synchronize run."""
    storage_dir: str = "./json"
    totals_url: str = TOTALS_URL
    history_url_format: str = HISTORY_URL_FORMAT

    rate_limit: float = 10.0            # requests/sec shared by every fetch
    concurrent_fetches: int = 32        # worker pool size
    timeout_sec: Optional[float] = None  # None = no request timeout

    report_path: Optional[str] = None


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class SyncOutcome:
    """Result of fetching one partition."""
    key: str
    expected: int
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    file_path: Optional[str] = None
    records: Optional[int] = None


@dataclass
class SyncReport:
    """Summary of a synchronize run."""
    requested: int = 0
    skipped: list[str] = field(default_factory=list)
    outcomes: list[SyncOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[SyncOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[SyncOutcome]:
        return [o for o in self.outcomes if not o.success]


# =============================================================================
# PLANNING
# =============================================================================

def find_incomplete(storage_dir: str, totals: dict[str, int]) -> tuple[dict[str, int], list[str]]:
    """
    Split a totals index into partitions that need fetching and ones that
    are already complete locally.

    Returns:
        Tuple of (incomplete key -> expected count, sorted complete keys)
    """
    incomplete: dict[str, int] = {}
    complete: list[str] = []
    for key in sorted(totals):
        expected = totals[key]
        if has_complete_shard(storage_dir, key, expected):
            complete.append(key)
        else:
            incomplete[key] = expected
    return incomplete, complete


# =============================================================================
# FETCH EXECUTION
# =============================================================================

async def sync_one(
    *,
    key: str,
    expected: int,
    cfg: SyncConfig,
    session: aiohttp.ClientSession,
    bucket: TokenBucket,
) -> SyncOutcome:
    """Fetch one partition and persist it as a shard. Never raises."""
    try:
        return await _fetch_and_store(key=key, expected=expected, cfg=cfg, session=session, bucket=bucket)
    except Exception as e:
        return SyncOutcome(key=key, expected=expected, success=False, error=f"Error: {e}")


async def _fetch_and_store(
    *,
    key: str,
    expected: int,
    cfg: SyncConfig,
    session: aiohttp.ClientSession,
    bucket: TokenBucket,
) -> SyncOutcome:
    try:
        validate_partition_key(key)
    except ValueError as e:
        return SyncOutcome(key=key, expected=expected, success=False, error=str(e))

    url = history_url(cfg.history_url_format, key)
    content, status, err = await fetch_url_data(session, url, bucket, cfg.timeout_sec)
    if content is None:
        return SyncOutcome(key=key, expected=expected, success=False, status_code=status, error=err)

    try:
        records = decode_shard(content)
    except ShardDecodeError as e:
        return SyncOutcome(
            key=key,
            expected=expected,
            success=False,
            status_code=status,
            error=f"Invalid history body: {e}",
        )

    try:
        path = write_shard(cfg.storage_dir, key, content)
    except (OSError, ValueError) as e:
        return SyncOutcome(
            key=key,
            expected=expected,
            success=False,
            status_code=status,
            error=f"Write Error: {e}",
        )

    return SyncOutcome(
        key=key,
        expected=expected,
        success=True,
        status_code=status,
        file_path=str(path),
        records=len(records),
    )


async def sync_batch_bounded(
    *,
    cfg: SyncConfig,
    session: aiohttp.ClientSession,
    bucket: TokenBucket,
    pending: dict[str, int],
) -> list[SyncOutcome]:
    """
    Bounded batch fetch scheduler.

    Uses a queue with N worker tasks; the token bucket paces request starts.
    Completion order across partitions is unspecified.
    """
    q: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
    for item in pending.items():
        q.put_nowait(item)

    outcomes: list[SyncOutcome] = []
    pbar = tqdm(total=len(pending), desc="Synchronizing", unit="shard")

    async def worker():
        while True:
            try:
                key, expected = q.get_nowait()
            except asyncio.QueueEmpty:
                return

            out = await sync_one(key=key, expected=expected, cfg=cfg, session=session, bucket=bucket)
            if out.success:
                print(f"[Sync] Downloaded history for {key} ({out.records} records)")
                if out.records != expected:
                    print(f"[Sync] Warning: {key} has {out.records} records, totals report {expected}")
            else:
                print(f"[Sync] Failed to download {key}: {out.error}")

            outcomes.append(out)
            q.task_done()
            pbar.update(1)

    workers = [
        asyncio.create_task(worker())
        for _ in range(max(1, min(cfg.concurrent_fetches, len(pending))))
    ]

    await asyncio.gather(*workers)
    pbar.close()

    return outcomes


# =============================================================================
# REPORT
# =============================================================================

def write_sync_overview(*, cfg: SyncConfig, report: SyncReport, elapsed_sec: float, path: str) -> str:
    """Write JSON overview report for a synchronize run."""
    err_counter = Counter((o.status_code, o.error) for o in report.failed)

    overview = {
        "mode": "sync",
        "script_inputs": asdict(cfg),
        "summary": {
            "partitions_in_index": report.requested,
            "already_complete": len(report.skipped),
            "fetched": len(report.succeeded),
            "failed": len(report.failed),
            "elapsed_sec": round(elapsed_sec, 3),
        },
        "failed_partitions": sorted(o.key for o in report.failed),
        "error_breakdown": [
            {"status_code": sc, "error": err, "count": cnt}
            for (sc, err), cnt in err_counter.most_common()
        ],
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }

    out = Path(path)
    with out.open("w") as f:
        json.dump(overview, f, indent=2)

    return str(out.resolve())


# =============================================================================
# MAIN
# =============================================================================

async def run_sync(cfg: SyncConfig) -> SyncReport:
    """
    Synchronize the storage root against the remote totals index.

    Raises:
        StorageSetupError: If the storage root cannot be created
        RemoteIndexError: If the totals index cannot be obtained
    """
    ensure_storage_dir(cfg.storage_dir)
    bucket = TokenBucket(rate=cfg.rate_limit)

    start = time.monotonic()
    report = SyncReport()

    connector = aiohttp.TCPConnector(limit=max(10, cfg.concurrent_fetches))
    async with aiohttp.ClientSession(connector=connector, headers={"User-Agent": USER_AGENT}) as session:
        print("[Totals] Getting the list of all recorded partitions")
        totals = await fetch_totals(session, cfg.totals_url, bucket, cfg.timeout_sec)
        report.requested = len(totals)

        pending, report.skipped = find_incomplete(cfg.storage_dir, totals)
        print(f"[Sync] Partitions: {len(totals)} | complete: {len(report.skipped)} | to fetch: {len(pending)}")

        if pending:
            report.outcomes = await sync_batch_bounded(cfg=cfg, session=session, bucket=bucket, pending=pending)

    elapsed = time.monotonic() - start

    print("\n" + "=" * 72)
    print("SYNC SUMMARY")
    print("=" * 72)
    print(f"Partitions in index:   {report.requested}")
    print(f"Already complete:      {len(report.skipped)}")
    print(f"Fetched:               {len(report.succeeded)}")
    print(f"Failed:                {len(report.failed)}")
    print(f"Elapsed time:          {elapsed:.2f}s")

    if cfg.report_path:
        try:
            overview = write_sync_overview(cfg=cfg, report=report, elapsed_sec=elapsed, path=cfg.report_path)
            print(f"[Report] Overview: {overview}")
        except OSError as e:
            print(f"[Report] Failed to write overview: {e}")

    print("=" * 72)
    print("COMPLETE! :D")

    return report
