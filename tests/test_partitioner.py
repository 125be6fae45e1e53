"""Tests for date-range partitioning."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from spmirror.exceptions import SharePointAPIError, SyncAbortedError
from spmirror.log import Severity
from spmirror.sync import DateRangePartitioner, TimeWindow, next_step, tile
from spmirror.sync.partitioner import step_for_split

from conftest import FakeSharePoint, utc

DAY_START = utc(2024, 1, 1)
DAY_END = utc(2024, 1, 2)


def _collect(fake, sync_log, **kwargs):
    """Run a partitioner over library Proj_A and collect its windows."""
    seen = []
    partitioner = DateRangePartitioner(
        fake,
        "Proj_A",
        handler=lambda window, items: seen.append((window, items)),
        log=sync_log,
        **kwargs,
    )
    return partitioner, seen


def _assert_tiles(windows, start, end):
    """Check windows are consecutive, non-overlapping and cover [start, end)."""
    assert windows[0].start == start
    assert windows[-1].end == end
    for previous, current in zip(windows, windows[1:]):
        assert previous.end == current.start


class TestTiling:
    """Test decomposition of a range into windows."""

    def test_tile_exact(self):
        """Test a range divisible by the step."""
        windows = tile(DAY_START, DAY_END, 360)
        assert len(windows) == 4
        assert all(w.duration == timedelta(hours=6) for w in windows)
        _assert_tiles(windows, DAY_START, DAY_END)

    def test_tile_truncates_last_window(self):
        """Test the last window is cut at the range end."""
        end = DAY_START + timedelta(minutes=150)
        windows = tile(DAY_START, end, 60)
        assert [w.duration for w in windows] == [
            timedelta(minutes=60),
            timedelta(minutes=60),
            timedelta(minutes=30),
        ]
        _assert_tiles(windows, DAY_START, end)

    def test_tile_empty_range(self):
        """Test an empty range has no windows."""
        assert tile(DAY_START, DAY_START, 60) == []

    def test_window_validation(self):
        """Test empty windows and zero steps are rejected."""
        with pytest.raises(ValueError):
            TimeWindow(DAY_END, DAY_START, 60)
        with pytest.raises(ValueError):
            TimeWindow(DAY_START, DAY_END, 0)


class TestStepLadder:
    """Test the split step ladder."""

    def test_halving_above_one_hour(self):
        """Test steps above an hour halve, clamped at one hour."""
        assert next_step(1440) == 720
        assert next_step(720) == 360
        assert next_step(90) == 60
        assert next_step(100) == 60

    def test_halving_below_one_hour(self):
        """Test steps of an hour or less halve down to one minute."""
        assert next_step(60) == 30
        assert next_step(3) == 1
        assert next_step(2) == 1

    def test_floor(self):
        """Test there is no step below one minute."""
        assert next_step(1) is None

    def test_ladder_strictly_decreases(self):
        """Test the ladder terminates from the default step."""
        steps = [1440]
        while (step := next_step(steps[-1])) is not None:
            assert step < steps[-1]
            steps.append(step)
        assert steps[-1] == 1
        assert 60 in steps

    def test_step_for_short_window(self):
        """Test steps that would not shrink a truncated window are skipped."""
        window = TimeWindow(DAY_START, DAY_START + timedelta(minutes=40), 1440)
        assert step_for_split(window) == 30


class TestPartitioner:
    """Test adaptive window splitting against the fake site."""

    @pytest.fixture
    def fake(self):
        fake = FakeSharePoint()
        fake.add_library("Proj_A")
        return fake

    def test_window_under_threshold_is_not_split(self, fake, sync_log):
        """Test a small window is queried once."""
        for minute in range(0, 600, 10):
            fake.add_file(
                f"/sites/team/Proj_A/f{minute}.txt",
                modified=DAY_START + timedelta(minutes=minute),
            )
        partitioner, seen = _collect(fake, sync_log)

        partitioner.run(DAY_START, DAY_END)

        assert len(seen) == 1
        assert len(seen[0][1]) == 60
        assert partitioner.windows_split == 0

    def test_threshold_splits_day_into_half_days(self, fake, sync_log):
        """Test 6000 items in one day are fetched as two 12-hour windows."""
        for i in range(6000):
            fake.add_file(
                f"/sites/team/Proj_A/file{i}.txt",
                modified=DAY_START + timedelta(seconds=i * 14),
            )
        partitioner, seen = _collect(fake, sync_log)

        partitioner.run(DAY_START, DAY_END, 1440)

        windows = [window for window, _ in seen]
        assert [w.duration for w in windows] == [timedelta(hours=12)] * 2
        _assert_tiles(windows, DAY_START, DAY_END)
        urls = [item.server_relative_url for _, items in seen for item in items]
        assert len(urls) == 6000
        assert len(set(urls)) == 6000
        assert partitioner.windows_split == 1
        assert fake.queries[0] == (DAY_START, DAY_END)

    def test_sub_windows_processed_in_order(self, fake, sync_log):
        """Test split windows are handled chronologically."""
        fake.threshold = 2
        for hour in range(8):
            fake.add_file(
                f"/sites/team/Proj_A/h{hour}.txt",
                modified=DAY_START + timedelta(hours=hour * 3),
            )
        partitioner, seen = _collect(fake, sync_log)

        partitioner.run(DAY_START, DAY_END)

        starts = [window.start for window, _ in seen]
        assert starts == sorted(starts)
        _assert_tiles([window for window, _ in seen], DAY_START, DAY_END)
        assert sum(len(items) for _, items in seen) == 8

    def test_floor_window_is_skipped_with_warning(self, fake, sync_log):
        """Test a window still over the threshold at one minute is skipped."""
        fake.threshold = 3
        for second in range(5):
            fake.add_file(
                f"/sites/team/Proj_A/burst{second}.txt",
                modified=DAY_START + timedelta(seconds=second),
            )
        fake.add_file(
            "/sites/team/Proj_A/later.txt",
            modified=DAY_START + timedelta(minutes=30),
        )
        partitioner, seen = _collect(fake, sync_log)

        partitioner.run(DAY_START, DAY_START + timedelta(hours=1), 60)

        assert partitioner.windows_skipped == 1
        handled = [item.name for _, items in seen for item in items]
        assert handled == ["later.txt"]
        warnings = [e for e in sync_log.entries if e.severity == Severity.WARNING]
        assert any("minimum step" in e.message for e in warnings)

    def test_full_page_is_split(self, fake, sync_log):
        """Test a result at the row limit is treated as truncated."""
        for i in range(4):
            fake.add_file(
                f"/sites/team/Proj_A/f{i}.txt",
                modified=DAY_START + timedelta(hours=i * 6),
            )
        partitioner, seen = _collect(fake, sync_log, row_limit=4)

        partitioner.run(DAY_START, DAY_END)

        assert partitioner.windows_split == 1
        assert len(seen) == 2
        assert sum(len(items) for _, items in seen) == 4

    def test_other_errors_abort(self, fake, sync_log):
        """Test a non-threshold error aborts the run."""
        fake.query_error = SharePointAPIError("API request failed with status 500")
        partitioner, seen = _collect(fake, sync_log)

        with pytest.raises(SyncAbortedError, match="status 500"):
            partitioner.run(DAY_START, DAY_END)

        assert seen == []
        errors = [e for e in sync_log.entries if e.severity == Severity.ERROR]
        assert errors

    def test_threshold_text_in_generic_error_splits(self, sync_log):
        """Test a generic API error carrying the threshold text is split."""
        client = Mock()
        client.list_library_items.side_effect = [
            SharePointAPIError("exceeds the list view threshold"),
            [],
            [],
        ]
        partitioner = DateRangePartitioner(
            client, "Proj_A", handler=Mock(), log=sync_log
        )

        partitioner.run(DAY_START, DAY_END)

        assert client.list_library_items.call_count == 3
        assert partitioner.handler.call_count == 2

    def test_created_field_query(self, fake, sync_log):
        """Test windows can filter on the creation time."""
        fake.add_file(
            "/sites/team/Proj_A/old.txt",
            created=DAY_START + timedelta(hours=1),
            modified=utc(2025, 1, 1),
        )
        partitioner, seen = _collect(fake, sync_log, date_field="Created")

        partitioner.run(DAY_START, DAY_END)

        assert [item.name for _, items in seen for item in items] == ["old.txt"]
