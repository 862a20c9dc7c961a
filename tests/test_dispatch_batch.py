"""Tests for ``dispatch_batch``: merge, dispatch and response tally."""

from __future__ import annotations

import json
import time

import aiohttp
import pytest

from dispatch_batch import DispatchConfig, ResponseTally, dispatch_records, run_dispatch
from fake_remote import FakeRemote
from shard_store import LocalCorruptionError, StorageSetupError
from token_bucket import TokenBucket


def _shard(storage_dir, key, records) -> None:
    (storage_dir / f"{key}.json").write_text(json.dumps(records))


def _config(running, storage_dir, **overrides) -> DispatchConfig:
    params = dict(
        target_url=running.ingest_url,
        storage_dir=str(storage_dir),
        rate_limit=200.0,
        timeout_sec=5.0,
    )
    params.update(overrides)
    return DispatchConfig(**params)


class TestResponseTally:
    def test_empty(self):
        tally = ResponseTally()
        assert tally.total == 0
        assert tally.as_dict() == {}
        frame = tally.to_frame()
        assert frame["Response Code"].to_list() == ["Total"]
        assert frame["Count"].to_list() == [0]

    def test_rows_sorted_with_total_last(self):
        tally = ResponseTally()
        for code in (500, 200, 200, 404):
            tally.record(code)
        frame = tally.to_frame()
        assert frame["Response Code"].to_list() == ["200", "404", "500", "Total"]
        assert frame["Count"].to_list() == [2, 1, 1, 4]

    def test_render_contains_every_row(self):
        tally = ResponseTally()
        tally.record(200)
        tally.record(503)
        table = tally.render()
        for text in ("Response Code", "Count", "200", "503", "Total"):
            assert text in table


class TestRunDispatch:
    @pytest.mark.asyncio
    async def test_tally_counts_each_status(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"1": "hash-one", "2": "hash-two"})
        remote = FakeRemote(post_status={1: 200, 2: 500})

        async with serve_remote(remote) as running:
            report = await run_dispatch(_config(running, storage_dir))

        assert report.tally.as_dict() == {200: 1, 500: 1}
        assert report.tally.total == 2
        assert report.total_records == 2
        assert report.failures == []

    @pytest.mark.asyncio
    async def test_posts_id_and_hash_as_json(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"42": "abc"})
        remote = FakeRemote()

        async with serve_remote(remote) as running:
            await run_dispatch(_config(running, storage_dir))

        assert remote.posted == [{"id": 42, "hash": "abc"}]
        assert remote.post_content_types == ["application/json"]

    @pytest.mark.asyncio
    async def test_every_record_from_every_shard_is_sent_once(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"1": "a", "2": "b"})
        _shard(storage_dir, "2020-01-02", {"3": "c"})
        _shard(storage_dir, "2020-01-03", {"2": "b-late"})
        remote = FakeRemote()

        async with serve_remote(remote) as running:
            report = await run_dispatch(_config(running, storage_dir))

        assert sorted(p["id"] for p in remote.posted) == [1, 2, 3]
        assert {"id": 2, "hash": "b-late"} in remote.posted
        assert report.tally.as_dict() == {200: 3}

    @pytest.mark.asyncio
    async def test_repeat_runs_send_the_same_sequence(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-02", {"7": "g", "5": "e"})
        _shard(storage_dir, "2020-01-01", {"3": "c", "1": "a"})
        remote = FakeRemote()

        async with serve_remote(remote) as running:
            await run_dispatch(_config(running, storage_dir))
            first = list(remote.posted)
            remote.posted.clear()
            await run_dispatch(_config(running, storage_dir))

        assert remote.posted == first
        assert [p["id"] for p in first] == [3, 1, 7, 5]

    @pytest.mark.asyncio
    async def test_network_failures_are_not_tallied(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"1": "a", "2": "b", "3": "c"})
        remote = FakeRemote(slow_ids={2})

        async with serve_remote(remote) as running:
            report = await run_dispatch(_config(running, storage_dir, timeout_sec=0.2))

        assert report.total_records == 3
        assert report.tally.as_dict() == {200: 2}
        assert report.tally.total < report.total_records
        assert [f.record_id for f in report.failures] == [2]
        assert report.failures[0].status_code is None

    @pytest.mark.asyncio
    async def test_unreachable_target(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"1": "a"})
        async with serve_remote(FakeRemote()) as running:
            cfg = _config(running, storage_dir)

        report = await run_dispatch(cfg)

        assert report.tally.total == 0
        assert len(report.failures) == 1

    @pytest.mark.asyncio
    async def test_corrupt_shard_stops_before_sending(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"1": "a"})
        (storage_dir / "2020-01-02.json").write_text("{nope")
        remote = FakeRemote()

        async with serve_remote(remote) as running:
            with pytest.raises(LocalCorruptionError):
                await run_dispatch(_config(running, storage_dir))

        assert remote.posted == []

    @pytest.mark.asyncio
    async def test_missing_storage_dir(self, serve_remote, tmp_path):
        async with serve_remote(FakeRemote()) as running:
            with pytest.raises(StorageSetupError):
                await run_dispatch(_config(running, tmp_path / "absent"))

    @pytest.mark.asyncio
    async def test_empty_storage_sends_nothing(self, serve_remote, storage_dir):
        remote = FakeRemote()
        async with serve_remote(remote) as running:
            report = await run_dispatch(_config(running, storage_dir))

        assert remote.posted == []
        assert report.tally.total == 0

    @pytest.mark.asyncio
    async def test_report_file(self, serve_remote, storage_dir, tmp_path):
        _shard(storage_dir, "2020-01-01", {"1": "a", "2": "b"})
        report_path = tmp_path / "dispatch_overview.json"
        remote = FakeRemote(post_status={2: 429})

        async with serve_remote(remote) as running:
            await run_dispatch(_config(running, storage_dir, report_path=str(report_path)))

        overview = json.loads(report_path.read_text())
        assert overview["mode"] == "dispatch"
        assert overview["response_codes"] == {"200": 1, "429": 1}
        assert overview["summary"]["tallied"] == 2
        assert overview["summary"]["failed"] == 0

    @pytest.mark.asyncio
    async def test_unwritable_report_path_is_logged(self, serve_remote, storage_dir, tmp_path, capsys):
        _shard(storage_dir, "2020-01-01", {"1": "a"})
        report_path = tmp_path / "absent" / "dispatch_overview.json"

        async with serve_remote(FakeRemote()) as running:
            report = await run_dispatch(_config(running, storage_dir, report_path=str(report_path)))

        assert report.tally.as_dict() == {200: 1}
        assert "[Report] Failed to write overview" in capsys.readouterr().out
        assert not report_path.exists()


class TestDispatchPacing:
    @pytest.mark.asyncio
    async def test_posts_are_spaced_by_the_rate(self, serve_remote, storage_dir):
        _shard(storage_dir, "2020-01-01", {"1": "a", "2": "b", "3": "c"})
        remote = FakeRemote()

        async with serve_remote(remote) as running:
            start = time.monotonic()
            report = await run_dispatch(_config(running, storage_dir, rate_limit=5.0))
            elapsed = time.monotonic() - start

        # one immediate token, then two refills at 200ms each
        assert elapsed >= 0.36
        assert report.tally.total == 3

    @pytest.mark.asyncio
    async def test_one_token_per_record(self, serve_remote, storage_dir):
        records = {1: "a", 2: "b", 3: "c"}
        bucket = TokenBucket(rate=200)

        async with serve_remote(FakeRemote(slow_ids={2})) as running:
            cfg = _config(running, storage_dir, timeout_sec=0.2)
            async with aiohttp.ClientSession() as session:
                report = await dispatch_records(records=records, cfg=cfg, session=session, bucket=bucket)

        assert bucket.acquired == 3
        assert report.tally.total + len(report.failures) == 3
