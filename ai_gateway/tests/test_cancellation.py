import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from ai_gateway.domain.exceptions import ProviderTimeout, RequestCancelled
from ai_gateway.gateway.cancellation import CancelToken, call_with_deadline


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


def test_cancel_runs_callbacks_once():
    token = CancelToken("c1")
    calls = []
    token.add_callback(lambda: calls.append("first"))
    assert token.cancel()
    assert not token.cancel()
    # 已取消时登记的回调立即执行
    token.add_callback(lambda: calls.append("late"))
    assert calls == ["first", "late"]


def test_result_is_returned(executor):
    assert call_with_deadline(
        executor, lambda: 42, token=CancelToken("c2"), timeout=1.0, poll_interval=0.01, provider="glm"
    ) == 42


def test_timeout_hands_running_call_to_on_abandon(executor):
    release = threading.Event()
    abandoned = []

    def slow():
        release.wait(2.0)
        return "late"

    started = time.monotonic()
    with pytest.raises(ProviderTimeout) as info:
        call_with_deadline(
            executor,
            slow,
            token=CancelToken("c3"),
            timeout=0.1,
            poll_interval=0.01,
            provider="kimi",
            on_abandon=abandoned.append,
        )
    assert time.monotonic() - started < 1.0
    assert info.value.transient
    assert len(abandoned) == 1
    release.set()
    # 放弃的调用照常结束，但结果不会交给调用方
    assert abandoned[0].result(timeout=1.0) == "late"


def test_cancel_interrupts_wait(executor):
    token = CancelToken("c4")
    release = threading.Event()
    abandoned = []
    threading.Timer(0.05, token.cancel).start()
    with pytest.raises(RequestCancelled):
        call_with_deadline(
            executor,
            lambda: release.wait(2.0),
            token=token,
            timeout=5.0,
            poll_interval=0.01,
            provider="glm",
            on_abandon=abandoned.append,
        )
    release.set()
    assert len(abandoned) == 1


def test_cancelled_token_never_submits(executor):
    token = CancelToken("c5")
    token.cancel()
    called = []
    with pytest.raises(RequestCancelled):
        call_with_deadline(
            executor, lambda: called.append(1), token=token, timeout=1.0, poll_interval=0.01, provider="glm"
        )
    assert called == []
