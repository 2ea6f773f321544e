import time

import pytest

from ai_gateway.domain.exceptions import (
    MalformedResponseError,
    ProviderFatalError,
    ServerError,
    StreamInterrupted,
    StreamTruncatedError,
)
from ai_gateway.domain.models import StreamChunk
from ai_gateway.gateway.cancellation import CancelToken
from ai_gateway.gateway.multiplexer import StreamMultiplexer
from ai_gateway.tests.conftest import FakeAdapter


def _mux(source, request_id="req-s", **kw):
    return StreamMultiplexer(source, CancelToken(request_id), poll_interval=0.01, **kw)


def _wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_chunks_in_order_and_done_last():
    closes = []
    adapter = FakeAdapter("glm", chunks=["a", "b", "c"])
    mux = _mux(adapter.stream(None), on_close=lambda status, n: closes.append((status, n)))
    chunks = list(mux)
    assert [c.index for c in chunks] == [0, 1, 2, 3]
    assert [c.done for c in chunks] == [False, False, False, True]
    assert mux.error is None
    assert closes == [("done", 4)]
    with pytest.raises(StopIteration):
        next(mux)


def test_collect_joins_text():
    adapter = FakeAdapter("glm", chunks=["Hel", "lo"])
    assert _mux(adapter.stream(None)).collect() == "Hello"


def test_slow_consumer_does_not_buffer():
    adapter = FakeAdapter("glm", chunks=["a", "b", "c", "d", "e"])
    mux = _mux(adapter.stream(None))
    assert next(mux).delta == "a"
    time.sleep(0.1)
    assert adapter.pulled == 1
    assert next(mux).delta == "b"
    time.sleep(0.05)
    assert adapter.pulled == 2
    mux.close()


def test_cancel_stops_delivery_and_pulling():
    adapter = FakeAdapter("glm", chunks=["a", "b", "c", "d"])
    token = CancelToken("req-c")
    closes = []
    mux = StreamMultiplexer(adapter.stream(None), token, poll_interval=0.01,
                            on_close=lambda status, n: closes.append((status, n)))
    assert next(mux).delta == "a"
    assert next(mux).delta == "b"
    assert token.cancel()
    with pytest.raises(StopIteration):
        next(mux)
    assert _wait_for(lambda: adapter.closed)
    assert adapter.pulled == 2
    assert closes == [("cancelled", 2)]
    assert mux.error is None


def test_error_after_chunks_becomes_interrupted_marker():
    adapter = FakeAdapter(
        "glm",
        chunks=["a", "b", "c"],
        stream_error=ServerError(code="SERVER_ERROR", message="down", provider="glm"),
        fail_at=1,
    )
    mux = _mux(adapter.stream(None))
    chunks = list(mux)
    assert [c.delta for c in chunks[:-1]] == ["a"]
    marker = chunks[-1]
    assert marker.index == 1
    assert not marker.done
    assert isinstance(marker.error, StreamInterrupted)
    assert isinstance(marker.error.cause, ServerError)
    assert marker.error.to_dict()["delivered"] == 1
    assert mux.error is marker.error
    with pytest.raises(StreamInterrupted):
        mux.raise_for_error()


def test_error_before_first_chunk_keeps_original_error():
    adapter = FakeAdapter(
        "glm",
        stream_error=ServerError(code="SERVER_ERROR", message="down", provider="glm"),
        fail_at=0,
    )
    chunks = list(_mux(adapter.stream(None)))
    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert isinstance(chunks[0].error, ServerError)


def test_collect_raises_stream_error():
    adapter = FakeAdapter(
        "glm",
        stream_error=ServerError(code="SERVER_ERROR", message="down", provider="glm"),
        fail_at=1,
    )
    with pytest.raises(StreamInterrupted):
        _mux(adapter.stream(None)).collect()


def test_out_of_order_chunk_is_malformed():
    def source():
        yield StreamChunk(delta="a", index=0)
        yield StreamChunk(delta="c", index=2)
        yield StreamChunk(delta="", index=3, done=True)

    chunks = list(_mux(source()))
    assert len(chunks) == 2
    err = chunks[-1].error
    assert isinstance(err, StreamInterrupted)
    assert isinstance(err.cause, MalformedResponseError)
    assert err.cause.code == "STREAM_OUT_OF_ORDER"


def test_source_ending_without_done_is_truncated():
    def source():
        yield StreamChunk(delta="a", index=0)

    chunks = list(_mux(source()))
    assert isinstance(chunks[-1].error, StreamInterrupted)
    assert isinstance(chunks[-1].error.cause, StreamTruncatedError)


def test_adapter_crash_becomes_fatal_marker():
    def source():
        raise RuntimeError("boom")
        yield  # pragma: no cover

    chunks = list(_mux(source()))
    assert isinstance(chunks[0].error, ProviderFatalError)
    assert chunks[0].error.code == "ADAPTER_ERROR"


def test_leaving_with_block_closes_source():
    adapter = FakeAdapter("glm", chunks=["a", "b", "c"])
    closes = []
    with _mux(adapter.stream(None), on_close=lambda status, n: closes.append(status)) as mux:
        assert next(mux).delta == "a"
    assert _wait_for(lambda: adapter.closed)
    assert closes == ["cancelled"]
    assert mux.delivered == 1
    with pytest.raises(StopIteration):
        next(mux)


def test_close_before_iteration_never_pulls():
    adapter = FakeAdapter("glm")
    token = CancelToken("req-x")
    mux = StreamMultiplexer(adapter.stream(None), token, poll_interval=0.01)
    mux.close()
    assert token.cancelled
    assert list(mux) == []
    assert adapter.pulled == 0
