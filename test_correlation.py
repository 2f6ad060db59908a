"""Tests for request/response correlation."""

import asyncio

import pytest

from correlation import PendingRequests, RequestTimeoutError
from observers import Subject


class TestPendingRequests:
    """Responses resolve only the request they belong to."""

    @pytest.mark.asyncio
    async def test_matching_response_resolves(self):
        pending = PendingRequests()
        future = pending.expect("load:5", "scene_loaded", timeout=1.0,
                                matcher=lambda m: m.get("sceneId") == 5)

        assert not pending.resolve({"type": "scene_loaded", "sceneId": 6})
        assert not pending.resolve({"type": "scene_saved", "sceneId": 5})
        assert not future.done()

        assert pending.resolve({"type": "scene_loaded", "sceneId": 5})
        assert (await future)["sceneId"] == 5
        assert len(pending) == 0

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        pending = PendingRequests()
        future = pending.expect("req", "answer", timeout=0.05)
        with pytest.raises(RequestTimeoutError):
            await future
        assert "req" not in pending
        # A late response is ignored
        assert not pending.resolve({"type": "answer"})

    @pytest.mark.asyncio
    async def test_timeout_is_an_asyncio_timeout(self):
        pending = PendingRequests()
        with pytest.raises(asyncio.TimeoutError):
            await pending.expect("req", "answer", timeout=0.01)

    @pytest.mark.asyncio
    async def test_duplicate_id_shares_future(self):
        pending = PendingRequests()
        first = pending.expect("req", "answer", timeout=1.0)
        second = pending.expect("req", "answer", timeout=1.0)
        assert first is second
        assert len(pending) == 1
        pending.resolve({"type": "answer"})
        await first

    @pytest.mark.asyncio
    async def test_reject_all(self):
        pending = PendingRequests()
        future = pending.expect("req", "answer", timeout=1.0)
        pending.reject_all(ConnectionError("gone"))
        with pytest.raises(ConnectionError):
            await future
        assert len(pending) == 0

    @pytest.mark.asyncio
    async def test_discard_cancels(self):
        pending = PendingRequests()
        future = pending.expect("req", "answer", timeout=1.0)
        pending.discard("req")
        assert future.cancelled()


class TestSubject:
    """Observer fan-out."""

    def test_unsubscribe_stops_delivery(self):
        subject = Subject("test")
        seen = []
        unsubscribe = subject.subscribe(seen.append)
        subject.notify(1)
        unsubscribe()
        unsubscribe()
        subject.notify(2)
        assert seen == [1]

    def test_failing_subscriber_does_not_block_others(self):
        subject = Subject("test")
        seen = []

        def broken(value):
            raise RuntimeError("boom")

        subject.subscribe(broken)
        subject.subscribe(seen.append)
        subject.notify("x")
        assert seen == ["x"]

    def test_replay_last(self):
        subject = Subject("test", replay_last=True)
        subject.notify(3)
        seen = []
        subject.subscribe(seen.append)
        assert seen == [3]

    def test_no_replay_by_default(self):
        subject = Subject("test")
        subject.notify(3)
        seen = []
        subject.subscribe(seen.append)
        assert seen == []
