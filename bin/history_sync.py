#!/usr/bin/env python3
"""
history-sync

Keeps a local copy of a time-partitioned remote history and forwards its
records to a downstream HTTP service.

Modes:
    sync      (alias: download)  fetch every missing or incomplete partition
    dispatch  (alias: load)      post every local record to a downstream URL

Usage:
    python history_sync.py sync
    python history_sync.py dispatch http://localhost:8080/ingest 5
    python history_sync.py --config history.json sync --report sync_overview.json

A JSON config file may set any option. Top-level keys apply to both modes;
keys under "sync" or "dispatch" apply to that mode only. Flags given on the
command line win over the file.

File keys are the config field names:

    storage_dir, rate_limit, timeout_sec, report_path      both modes
    totals_url, history_url_format, concurrent_fetches     sync
    target_url                                             dispatch

Example:

    {"storage_dir": "/data/history",
     "sync": {"rate_limit": 4, "timeout_sec": 30},
     "dispatch": {"target_url": "http://localhost:8080/ingest", "report_path": "dispatch.json"}}
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlsplit

from dispatch_batch import DispatchConfig, run_dispatch
from shard_store import HistoryError
from sync_batch import SyncConfig, run_sync

USAGE_HINT = "options are 'sync' (or 'download') and 'dispatch <url> [rate]' (or 'load')"


class UsageError(Exception):
    """Invalid or missing command line arguments."""


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage problems instead of exiting."""

    def error(self, message):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog="history-sync",
        description="Synchronize time-partitioned history and dispatch it downstream",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  history-sync sync
  history-sync --config history.json sync --rate 5
  history-sync dispatch http://localhost:8080/ingest 10
"""
    )
    p.add_argument("--config", type=str, help="Path to JSON config file")

    sub = p.add_subparsers(dest="mode")

    s = sub.add_parser("sync", aliases=["download"], help="Fetch missing or incomplete partitions")
    s.add_argument("--storage", dest="storage_dir", type=str, default=None)
    s.add_argument("--totals_url", type=str, default=None)
    s.add_argument("--history_url_format", type=str, default=None,
                   help="History URL with a {key} placeholder")
    s.add_argument("--rate", dest="rate_limit", type=float, default=None, help="Requests per second")
    s.add_argument("--workers", dest="concurrent_fetches", type=int, default=None)
    s.add_argument("--timeout", dest="timeout_sec", type=float, default=None)
    s.add_argument("--report", dest="report_path", type=str, default=None)

    d = sub.add_parser("dispatch", aliases=["load"], help="Post every local record to a URL")
    d.add_argument("target_url", nargs="?", default=None, help="Downstream endpoint")
    d.add_argument("rate", nargs="?", default=None, help="Requests per second (default: 1)")
    d.add_argument("--storage", dest="storage_dir", type=str, default=None)
    d.add_argument("--timeout", dest="timeout_sec", type=float, default=None)
    d.add_argument("--report", dest="report_path", type=str, default=None)

    return p


def load_config_file(path: str, mode: str) -> dict[str, Any]:
    """Read a JSON config file and flatten it for one mode."""
    cfg_path = Path(path)
    with cfg_path.open("r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise UsageError(f"Config file {path} must contain a JSON object")

    merged = {k: v for k, v in data.items() if k not in ("sync", "dispatch")}
    section = data.get(mode) or {}
    if not isinstance(section, dict):
        raise UsageError(f"Config section {mode!r} must be a JSON object")
    merged.update(section)
    return merged


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def parse_rate(raw: Any) -> Optional[float]:
    """Parse a requests/sec value; None if it is not a positive number."""
    try:
        rate = float(raw)
    except (TypeError, ValueError):
        return None
    if rate <= 0 or rate != rate or rate == float("inf"):
        return None
    return rate


def _pick(cli_value: Any, file_cfg: dict[str, Any], key: str, default: Any) -> Any:
    if cli_value is not None:
        return cli_value
    return file_cfg.get(key, default)


def build_sync_config(args: argparse.Namespace, file_cfg: dict[str, Any]) -> SyncConfig:
    defaults = SyncConfig()
    rate = parse_rate(_pick(args.rate_limit, file_cfg, "rate_limit", defaults.rate_limit))
    if rate is None:
        raise UsageError("Sync rate limit must be a positive number")
    workers = int(_pick(args.concurrent_fetches, file_cfg, "concurrent_fetches", defaults.concurrent_fetches))
    if workers < 1:
        raise UsageError("Worker count must be at least 1")
    timeout = _pick(args.timeout_sec, file_cfg, "timeout_sec", defaults.timeout_sec)

    return SyncConfig(
        storage_dir=str(_pick(args.storage_dir, file_cfg, "storage_dir", defaults.storage_dir)),
        totals_url=str(_pick(args.totals_url, file_cfg, "totals_url", defaults.totals_url)),
        history_url_format=str(_pick(args.history_url_format, file_cfg, "history_url_format",
                                     defaults.history_url_format)),
        rate_limit=rate,
        concurrent_fetches=workers,
        timeout_sec=float(timeout) if timeout else None,
        report_path=_pick(args.report_path, file_cfg, "report_path", defaults.report_path),
    )


def build_dispatch_config(args: argparse.Namespace, file_cfg: dict[str, Any]) -> DispatchConfig:
    target_url = _pick(args.target_url, file_cfg, "target_url", None)
    if not target_url:
        raise UsageError("Please provide the url to dispatch to")
    if not is_valid_url(target_url):
        raise UsageError(f"Please provide a valid url to dispatch to (got {target_url!r})")

    rate = 1.0
    file_rate = file_cfg.get("rate_limit")
    if file_rate is not None:
        rate = parse_rate(file_rate) or rate
    if args.rate is not None:
        print(f"[Args] Attempting to set limiter to {args.rate}")
        parsed = parse_rate(args.rate)
        if parsed is None:
            print(f"[Args] Failed to set limiter: {args.rate!r} is not a positive number, keeping {rate:g}rps")
        else:
            rate = parsed

    return DispatchConfig(
        target_url=target_url,
        storage_dir=str(_pick(args.storage_dir, file_cfg, "storage_dir", "./json")),
        rate_limit=rate,
        timeout_sec=float(_pick(args.timeout_sec, file_cfg, "timeout_sec", 5.0)),
        report_path=_pick(args.report_path, file_cfg, "report_path", None),
    )


def parse_args(argv: Optional[list[str]] = None) -> Union[SyncConfig, DispatchConfig]:
    """
    Parse command line arguments (and the optional JSON config file).

    Raises:
        UsageError: If the mode or its arguments are missing or invalid
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.mode is None:
        raise UsageError(USAGE_HINT)

    mode = "sync" if args.mode in ("sync", "download") else "dispatch"
    file_cfg: dict[str, Any] = {}
    if args.config:
        try:
            file_cfg = load_config_file(args.config, mode)
        except (OSError, json.JSONDecodeError) as e:
            raise UsageError(f"Could not read config file {args.config}: {e}") from e

    try:
        if mode == "sync":
            return build_sync_config(args, file_cfg)
        return build_dispatch_config(args, file_cfg)
    except (TypeError, ValueError) as e:
        raise UsageError(f"Invalid option value: {e}") from e


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point. Returns the process exit status."""
    try:
        cfg = parse_args(argv)
    except UsageError as e:
        print(f"[Args] {e}")
        build_parser().print_usage(sys.stdout)
        print(USAGE_HINT)
        return 0

    print("=" * 72)
    print(f"history-sync | {'sync' if isinstance(cfg, SyncConfig) else 'dispatch'}")
    print("=" * 72)

    try:
        if isinstance(cfg, SyncConfig):
            asyncio.run(run_sync(cfg))
        else:
            asyncio.run(run_dispatch(cfg))
    except HistoryError as e:
        print(f"[Error] {e}")
        return 1

    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    try:
        run()
    except KeyboardInterrupt:
        print("\n[Shutdown] Interrupted")
        sys.exit(130)
