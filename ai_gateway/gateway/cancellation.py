"""请求级取消与截止时间。

每个请求对应一个 CancelToken，由 AIService 按 request_id 登记；
非流式调用在线程池中执行，调用方线程按 poll 间隔检查取消标记和截止时间。
被放弃的调用仍会在工作线程里跑完，但它的结果会被丢弃，绝不会再交给调用方。
"""

import threading
import time
from concurrent import futures
from typing import Callable, List, Optional, TypeVar

from ai_gateway.domain.exceptions import ProviderTimeout, RequestCancelled
from ai_gateway.infrastructure.logging.logger import logger

T = TypeVar("T")


class CancelToken:
    def __init__(self, request_id: str):
        self.request_id = request_id
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """设置取消标记并依次执行已登记的回调；重复取消返回 False。"""

        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """取消时执行 callback；已经取消则立即执行。"""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(self.request_id)


def call_with_deadline(
    executor: futures.Executor,
    fn: Callable[[], T],
    *,
    token: CancelToken,
    timeout: float,
    poll_interval: float,
    provider: str,
    on_abandon: Optional[Callable[[futures.Future], None]] = None,
) -> T:
    """在 executor 中执行 fn，期间响应取消并强制截止时间。

    超时抛 ProviderTimeout（可 fallback），取消抛 RequestCancelled；fn 自身的异常原样抛出。
    放弃的调用会记录日志，on_abandon 收到对应的 future，可用来在它真正结束后释放资源。
    """

    token.raise_if_cancelled()
    future = executor.submit(fn)
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            _abandon(future, token, provider, "timeout", on_abandon)
            raise ProviderTimeout(message=f"{provider} call exceeded {timeout:g}s deadline", provider=provider)
        done, _ = futures.wait([future], timeout=min(poll_interval, remaining))
        if token.cancelled:
            _abandon(future, token, provider, "cancelled", on_abandon)
            raise RequestCancelled(token.request_id)
        if done:
            return future.result()


def _abandon(
    future: futures.Future,
    token: CancelToken,
    provider: str,
    reason: str,
    on_abandon: Optional[Callable[[futures.Future], None]],
) -> None:
    started = time.monotonic()
    if not future.cancel():
        # 已在工作线程中运行，只能等它自行结束；结束时记录占用线程的时长
        logger.warning("call.abandoned", extra={"extra": {
            "request_id": token.request_id,
            "provider": provider,
            "reason": reason,
        }})
        future.add_done_callback(lambda _: logger.info("call.abandoned_done", extra={"extra": {
            "request_id": token.request_id,
            "provider": provider,
            "held_ms": round((time.monotonic() - started) * 1000, 1),
        }}))
    if on_abandon is not None:
        on_abandon(future)
