"""Tests for the cursor-based polling primitive."""

import pytest

from fedharness.errors import PollTimeout
from fedharness.polling import apoll_until, poll_until


class FakeClock:
    """Returns scripted times, then repeats the last one."""

    def __init__(self, *times: float):
        self._times = list(times)

    def __call__(self) -> float:
        if len(self._times) > 1:
            return self._times.pop(0)
        return self._times[0]


class BatchFetcher:
    def __init__(self, batches):
        self.batches = list(batches)
        self.cursors = []

    def __call__(self, cursor):
        self.cursors.append(cursor)
        index = len(self.cursors) - 1
        if index < len(self.batches):
            return self.batches[index], f"c{index + 1}"
        return [], f"c{index + 1}"


class TestPollUntil:
    def test_returns_first_match_across_two_batches(self):
        fetch = BatchFetcher([[1, 2, 3], [4, 5, 6]])
        seen = []

        def check(value):
            seen.append(value)
            return value == 5

        result = poll_until(fetch, check, timeout=5.0)

        assert result == 5
        assert len(fetch.cursors) == 2
        assert fetch.cursors == [None, "c1"]
        # the observation after the match is never inspected
        assert seen == [1, 2, 3, 4, 5]

    def test_empty_batches_keep_polling(self):
        fetch = BatchFetcher([[], [], ["hit"]])

        assert poll_until(fetch, lambda v: v == "hit", timeout=5.0) == "hit"
        assert fetch.cursors == [None, "c1", "c2"]

    def test_times_out_reporting_checks(self):
        fetch = BatchFetcher([[0], [0], [0], [0], [0]])
        clock = FakeClock(0.0, 0.0, 0.5, 1.0, 1.5)

        with pytest.raises(PollTimeout) as excinfo:
            poll_until(fetch, lambda v: False, timeout=1.0, description="waiting", clock=clock)

        assert excinfo.value.checked == 3
        assert len(fetch.cursors) == 3
        assert "Called check function 3 times" in str(excinfo.value)
        assert "waiting" in str(excinfo.value)

    def test_deadline_checked_before_first_fetch(self):
        fetch = BatchFetcher([["hit"]])
        clock = FakeClock(0.0, 2.0)

        with pytest.raises(PollTimeout) as excinfo:
            poll_until(fetch, lambda v: True, timeout=1.0, clock=clock)

        assert excinfo.value.checked == 0
        assert fetch.cursors == []

    def test_fetch_error_is_not_retried(self):
        calls = []

        def fetch(cursor):
            calls.append(cursor)
            raise ConnectionError("boom")

        with pytest.raises(ConnectionError):
            poll_until(fetch, lambda v: True, timeout=5.0)
        assert calls == [None]


@pytest.mark.asyncio
class TestAsyncPollUntil:
    async def test_returns_match(self):
        batches = [["a", "b"], ["c"]]
        cursors = []

        async def fetch(cursor):
            cursors.append(cursor)
            return batches[len(cursors) - 1], str(len(cursors))

        assert await apoll_until(fetch, lambda v: v == "c", timeout=5.0) == "c"
        assert cursors == [None, "1"]

    async def test_times_out(self):
        async def fetch(cursor):
            return ["x"], "next"

        with pytest.raises(PollTimeout) as excinfo:
            await apoll_until(
                fetch, lambda v: False, timeout=1.0, clock=FakeClock(0.0, 0.0, 0.9, 1.1)
            )
        assert excinfo.value.checked == 2
