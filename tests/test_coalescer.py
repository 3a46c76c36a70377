from __future__ import annotations

import asyncio
from typing import Any

import pytest

from pymqttbridge.exceptions import BridgeConnectionError, BridgePublishError
from pymqttbridge.state.coalescer import StateCoalescer

_QUIET = 0.01
_SETTLE = 0.05


class _FakePublisher:
    def __init__(self, error: BaseException | None = None, gate: asyncio.Event | None = None) -> None:
        self.error = error
        self.gate = gate
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, snapshot: dict[str, Any]) -> None:
        self.calls.append(snapshot)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


class _Recorder:
    def __init__(self, name: str = "", order: list[str] | None = None) -> None:
        self.name = name
        self.order = order
        self.calls: list[BaseException | None] = []

    def __call__(self, error: BaseException | None) -> None:
        self.calls.append(error)
        if self.order is not None:
            self.order.append(self.name)


@pytest.mark.asyncio
async def test_mutations_within_quiet_period_publish_once_with_merged_state() -> None:
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET, initial_state={"a": 0, "keep": "x"})
    first, second, third = _Recorder(), _Recorder(), _Recorder()

    coalescer.mutate({"a": 1, "b": 1}, first)
    coalescer.mutate({"b": 2}, second)
    coalescer.mutate({"c": 3}, third)
    await asyncio.sleep(_SETTLE)

    assert publisher.calls == [{"a": 1, "b": 2, "c": 3, "keep": "x"}]
    assert first.calls == [None]
    assert second.calls == [None]
    assert third.calls == [None]
    assert coalescer.pending == 0


@pytest.mark.asyncio
async def test_publish_error_is_delivered_to_every_callback_once() -> None:
    error = BridgePublishError("Failed to send message!")
    publisher = _FakePublisher(error=error)
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET)
    first, second = _Recorder(), _Recorder()

    coalescer.mutate({"foo": True}, first)
    coalescer.mutate({}, second)
    await asyncio.sleep(_SETTLE)

    assert len(publisher.calls) == 1
    assert publisher.calls[0] == {"foo": True}
    assert len(first.calls) == 1
    assert len(second.calls) == 1
    assert first.calls[0] is error
    assert second.calls[0] is error


@pytest.mark.asyncio
async def test_callback_is_never_invoked_synchronously() -> None:
    coalescer = StateCoalescer(_FakePublisher(), quiet_period=0)
    recorder = _Recorder()

    coalescer.mutate({"x": 1}, recorder)

    assert recorder.calls == []
    assert coalescer.pending == 1
    await asyncio.sleep(_SETTLE)
    assert recorder.calls == [None]


@pytest.mark.asyncio
async def test_empty_partial_still_publishes_and_resolves() -> None:
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET, initial_state={"foo": True})
    recorder = _Recorder()

    coalescer.mutate({}, recorder)
    await asyncio.sleep(_SETTLE)

    assert publisher.calls == [{"foo": True}]
    assert recorder.calls == [None]


@pytest.mark.asyncio
async def test_idle_gap_produces_independent_flushes() -> None:
    error = BridgePublishError("broker gone")
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET)
    first, second = _Recorder(), _Recorder()

    coalescer.mutate({"n": 1}, first)
    await asyncio.sleep(_SETTLE)
    publisher.error = error
    coalescer.mutate({"n": 2}, second)
    await asyncio.sleep(_SETTLE)

    assert publisher.calls == [{"n": 1}, {"n": 2}]
    assert first.calls == [None]
    assert second.calls == [error]
    assert coalescer.last_flush is not None
    assert coalescer.last_flush.sequence == 2
    assert coalescer.last_flush.batch_size == 1
    assert not coalescer.last_flush.success


@pytest.mark.asyncio
async def test_callbacks_resolve_in_submission_order() -> None:
    order: list[str] = []
    coalescer = StateCoalescer(_FakePublisher(), quiet_period=_QUIET)

    for name in ("one", "two", "three", "four"):
        coalescer.mutate({name: True}, _Recorder(name, order))
    await asyncio.sleep(_SETTLE)

    assert order == ["one", "two", "three", "four"]


@pytest.mark.asyncio
async def test_mutation_during_inflight_publish_joins_next_flush() -> None:
    gate = asyncio.Event()
    publisher = _FakePublisher(gate=gate)
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET)
    early, late = _Recorder(), _Recorder()

    coalescer.mutate({"a": 1}, early)
    await asyncio.sleep(_SETTLE)
    assert len(publisher.calls) == 1

    coalescer.mutate({"b": 2}, late)
    await asyncio.sleep(_SETTLE)
    # Second flush waits for the first publish to finish.
    assert len(publisher.calls) == 1
    assert early.calls == []
    assert coalescer.pending == 1

    gate.set()
    await asyncio.sleep(_SETTLE)

    assert publisher.calls == [{"a": 1}, {"a": 1, "b": 2}]
    assert early.calls == [None]
    assert late.calls == [None]


@pytest.mark.asyncio
async def test_raising_callback_does_not_stop_the_drain() -> None:
    coalescer = StateCoalescer(_FakePublisher(), quiet_period=_QUIET)
    survivor = _Recorder()

    def _boom(_error: BaseException | None) -> None:
        raise RuntimeError("host bug")

    coalescer.mutate({"x": 1}, _boom)
    coalescer.mutate({"y": 2}, survivor)
    await asyncio.sleep(_SETTLE)

    assert survivor.calls == [None]


@pytest.mark.asyncio
async def test_set_state_awaits_flush_outcome() -> None:
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET)

    await asyncio.gather(coalescer.set_state({"a": 1}), coalescer.set_state({"b": 2}))
    assert publisher.calls == [{"a": 1, "b": 2}]

    publisher.error = BridgePublishError("nope")
    with pytest.raises(BridgePublishError, match="nope"):
        await coalescer.set_state({"c": 3})


@pytest.mark.asyncio
async def test_state_is_copied_on_merge_and_per_instance() -> None:
    initial = {"nested": {"level": 1}}
    first = StateCoalescer(_FakePublisher(), quiet_period=_QUIET, initial_state=initial)
    second = StateCoalescer(_FakePublisher(), quiet_period=_QUIET)

    partial = {"nested": {"level": 2}}
    first.mutate(partial, _Recorder())
    partial["nested"]["level"] = 99

    assert first.snapshot == {"nested": {"level": 2}}
    assert initial == {"nested": {"level": 1}}
    assert second.snapshot == {}
    await first.aclose()


@pytest.mark.asyncio
async def test_reset_replaces_snapshot_without_touching_queue() -> None:
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET)
    recorder = _Recorder()

    coalescer.mutate({"local": 1}, recorder)
    coalescer.reset({"remote": 2})
    assert coalescer.pending == 1
    await asyncio.sleep(_SETTLE)

    assert publisher.calls == [{"remote": 2}]
    assert recorder.calls == [None]


@pytest.mark.asyncio
async def test_aclose_settles_queued_callbacks_and_rejects_new_mutations() -> None:
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=10.0)
    recorder = _Recorder()

    coalescer.mutate({"x": 1}, recorder)
    await coalescer.aclose()

    assert publisher.calls == []
    assert len(recorder.calls) == 1
    assert isinstance(recorder.calls[0], BridgePublishError)
    assert not coalescer.flush_pending
    with pytest.raises(BridgeConnectionError):
        coalescer.mutate({"y": 2}, _Recorder())


@pytest.mark.asyncio
async def test_unencodable_partial_is_rejected_without_poisoning_later_flushes() -> None:
    publisher = _FakePublisher()
    coalescer = StateCoalescer(publisher, quiet_period=_QUIET, initial_state={"a": 1})
    rejected, accepted = _Recorder(), _Recorder()

    with pytest.raises(BridgePublishError, match="not JSON serializable"):
        coalescer.mutate({"bad": object()}, rejected)

    assert coalescer.pending == 0
    assert coalescer.snapshot == {"a": 1}
    assert not coalescer.flush_pending

    coalescer.mutate({"good": 1}, accepted)
    await asyncio.sleep(_SETTLE)

    assert rejected.calls == []
    assert accepted.calls == [None]
    assert publisher.calls == [{"a": 1, "good": 1}]
