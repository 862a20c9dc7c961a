#!/usr/bin/env python3
"""
history-sync Dispatch Phase

Merges every local shard into one record space and posts each record to a
downstream endpoint, one token per record, tallying the HTTP status codes.

Any status code counts as an outcome. Records whose POST never produced a
status (connection error, timeout) are logged and left out of the tally, so
the tally total can be lower than the number of records.
"""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import aiohttp
import polars as pl
from tqdm.asyncio import tqdm

from shard_store import load_merged_records
from single_fetch import USER_AGENT, post_record
from token_bucket import TokenBucket


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class DispatchConfig:
    """Configuration for a dispatch run."""
    target_url: str
    storage_dir: str = "./json"
    rate_limit: float = 1.0
    timeout_sec: float = 5.0
    report_path: Optional[str] = None


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class DispatchOutcome:
    """Result of posting one record."""
    record_id: int
    status_code: Optional[int]
    error: Optional[str] = None

    @property
    def tallied(self) -> bool:
        return self.status_code is not None


@dataclass
class ResponseTally:
    """HTTP status code -> number of responses."""
    counts: Counter = field(default_factory=Counter)

    def record(self, status_code: int) -> None:
        self.counts[status_code] += 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def as_dict(self) -> dict[int, int]:
        return dict(sorted(self.counts.items()))

    def to_frame(self) -> pl.DataFrame:
        """One row per status code in ascending order, then a Total row."""
        rows = sorted(self.counts.items())
        return pl.DataFrame(
            {
                "Response Code": [str(code) for code, _ in rows] + ["Total"],
                "Count": [count for _, count in rows] + [self.total],
            },
            schema={"Response Code": pl.Utf8, "Count": pl.Int64},
        )

    def render(self) -> str:
        with pl.Config(tbl_hide_dataframe_shape=True, tbl_hide_column_data_types=True, tbl_rows=-1):
            return str(self.to_frame())


@dataclass
class DispatchReport:
    """Summary of a dispatch run."""
    total_records: int = 0
    tally: ResponseTally = field(default_factory=ResponseTally)
    failures: list[DispatchOutcome] = field(default_factory=list)


# =============================================================================
# DISPATCH EXECUTION
# =============================================================================

async def dispatch_one(
    *,
    record_id: int,
    record_hash: str,
    cfg: DispatchConfig,
    session: aiohttp.ClientSession,
    bucket: TokenBucket,
) -> DispatchOutcome:
    """Take a token and post one record."""
    await bucket.acquire()
    status, err = await post_record(session, cfg.target_url, record_id, record_hash, cfg.timeout_sec)
    return DispatchOutcome(record_id=record_id, status_code=status, error=err)


async def dispatch_records(
    *,
    records: dict[int, str],
    cfg: DispatchConfig,
    session: aiohttp.ClientSession,
    bucket: TokenBucket,
) -> DispatchReport:
    """
    Post every record once, in the merged mapping's order.

    Records are sent from a single loop, so the tally needs no lock.
    """
    report = DispatchReport(total_records=len(records))
    pbar = tqdm(total=len(records), desc="Dispatching", unit="record")

    for record_id, record_hash in records.items():
        out = await dispatch_one(
            record_id=record_id,
            record_hash=record_hash,
            cfg=cfg,
            session=session,
            bucket=bucket,
        )
        if out.tallied:
            report.tally.record(out.status_code)
        else:
            print(f"[Dispatch] Failed to post id {record_id}: {out.error}")
            report.failures.append(out)
        pbar.update(1)

    pbar.close()
    return report


# =============================================================================
# REPORT
# =============================================================================

def write_dispatch_overview(*, cfg: DispatchConfig, report: DispatchReport, elapsed_sec: float, path: str) -> str:
    """Write JSON overview report for a dispatch run."""
    err_counter = Counter(o.error for o in report.failures)

    overview = {
        "mode": "dispatch",
        "script_inputs": asdict(cfg),
        "summary": {
            "total_records": report.total_records,
            "tallied": report.tally.total,
            "failed": len(report.failures),
            "elapsed_sec": round(elapsed_sec, 3),
        },
        "response_codes": {str(code): count for code, count in report.tally.as_dict().items()},
        "error_breakdown": [
            {"error": err, "count": cnt}
            for err, cnt in err_counter.most_common()
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

async def run_dispatch(cfg: DispatchConfig) -> DispatchReport:
    """
    Merge local shards and dispatch every record to ``cfg.target_url``.

    Raises:
        StorageSetupError: If the storage root does not exist
        LocalCorruptionError: If any shard fails to decode
    """
    records = load_merged_records(cfg.storage_dir)
    print(f"[Dispatch] Records to send: {len(records)}")
    print(f"[Dispatch] Limiter set to {cfg.rate_limit:g}rps")

    bucket = TokenBucket(rate=cfg.rate_limit)
    start = time.monotonic()

    async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as session:
        report = await dispatch_records(records=records, cfg=cfg, session=session, bucket=bucket)

    elapsed = time.monotonic() - start

    print()
    print(report.tally.render())
    if report.failures:
        print(f"[Dispatch] {len(report.failures)} records got no response")

    if cfg.report_path:
        try:
            overview = write_dispatch_overview(cfg=cfg, report=report, elapsed_sec=elapsed, path=cfg.report_path)
            print(f"[Report] Overview: {overview}")
        except OSError as e:
            print(f"[Report] Failed to write overview: {e}")

    return report
