"""Stream Multiplexer：把一个适配器产出的增量序列交付给唯一的消费者。

生产者线程与消费者之间采用“按需拉取”的握手：
消费者每调用一次 __next__ 发放一个 demand，生产者拿到 demand 后才从上游拉取下一块，
因此慢消费者不会导致无界缓冲，槽位里最多只有一块在途数据。

保证：
- 投递的 index 从 0 连续递增；乱序视为上游格式错误。
- done 块恰好投递一次，且一定是最后一次投递。
- 上游失败时投递一个终止错误标记（StreamChunk.error），绝不同时投递 done；
  已经投递过增量的失败包装为 StreamInterrupted。
- 取消（按 request_id、close() 或离开 with 块）后不再投递任何块，
  生产者在一个 poll 间隔内停止拉取并关闭上游生成器。
- 请求状态的释放（on_close）不依赖消费者：取消时立即执行，
  消费者丢弃未读完的流时由 weakref.finalize 执行。
"""

import functools
import queue
import threading
import weakref
from typing import Callable, List, Optional, Tuple

from ai_gateway.domain.exceptions import (
    BusinessError,
    MalformedResponseError,
    ProviderFatalError,
    StreamInterrupted,
    StreamTruncatedError,
)
from ai_gateway.domain.models import StreamChunk
from ai_gateway.gateway.cancellation import CancelToken
from ai_gateway.infrastructure.logging.logger import logger

_CHUNK = "chunk"
_ERROR = "error"
_END = "end"


class _Channel:
    """生产者线程与消费者共享的状态。

    生产者线程和取消回调只引用 _Channel，不引用 StreamMultiplexer，
    所以调用方丢掉 StreamMultiplexer 后它可以被回收并触发清理。
    """

    def __init__(self, source, token: CancelToken, poll_interval: float, on_close):
        self.request_id = token.request_id
        self.token = token
        self.error: Optional[BusinessError] = None
        self.next_index = 0
        self.finished = False
        self._source = source
        self._poll = poll_interval
        self._on_close = on_close
        self._demand = threading.Semaphore(0)
        self._slot: "queue.Queue[Tuple[str, object]]" = queue.Queue(maxsize=1)
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._producer: Optional[threading.Thread] = None

    # ---- 消费者侧 ----

    def pull(self) -> StreamChunk:
        if self.finished:
            raise StopIteration
        if self.token.cancelled:
            self.finish("cancelled")
            raise StopIteration
        self._ensure_started()
        self._demand.release()
        while True:
            try:
                kind, item = self._slot.get(timeout=self._poll)
            except queue.Empty:
                if self.token.cancelled or self.finished:
                    self.finish("cancelled")
                    raise StopIteration
                continue
            if self.token.cancelled:
                # 取消已确认，在途的块直接丢弃
                self.finish("cancelled")
                raise StopIteration
            return self._deliver(kind, item)

    def abandon(self) -> None:
        """调用方不再持有流：结束请求并让生产者停止。"""

        if not self.finished:
            self.finish("abandoned")
            self.token.cancel()

    def _deliver(self, kind: str, item) -> StreamChunk:
        if kind == _CHUNK:
            if item.index != self.next_index:
                return self._fail(MalformedResponseError(
                    code="STREAM_OUT_OF_ORDER",
                    message=f"Expected chunk {self.next_index}, got {item.index}",
                ))
            self.next_index += 1
            if item.done:
                self.finish("done")
            return item
        if kind == _ERROR:
            return self._fail(item)
        return self._fail(StreamTruncatedError(
            code="STREAM_TRUNCATED",
            message="Stream ended without a terminal chunk",
        ))

    def _fail(self, error: BusinessError) -> StreamChunk:
        if self.next_index > 0 and not isinstance(error, StreamInterrupted):
            error = StreamInterrupted(error, delivered=self.next_index)
        self.error = error
        marker = StreamChunk(delta="", index=self.next_index, error=error)
        self.finish("error")
        return marker

    def finish(self, status: str) -> None:
        with self._lock:
            if self.finished:
                return
            self.finished = True
            self._stop.set()
            started = self._producer is not None
        if not started:
            self._close_source()
        while True:
            try:
                self._slot.get_nowait()
            except queue.Empty:
                break
        if self._on_close is not None:
            self._on_close(status, self.next_index)

    # ---- 生产者侧 ----

    def _ensure_started(self) -> None:
        with self._lock:
            if self._producer is not None or self.finished:
                return
            self._producer = threading.Thread(
                target=self._produce,
                name=f"stream-{self.request_id[:8]}",
                daemon=True,
            )
            self._producer.start()

    def _should_stop(self) -> bool:
        return self._stop.is_set() or self.token.cancelled

    def _produce(self) -> None:
        try:
            while True:
                while not self._demand.acquire(timeout=self._poll):
                    if self._should_stop():
                        return
                if self._should_stop():
                    return
                try:
                    chunk = next(self._source)
                except StopIteration:
                    self._slot.put((_END, None))
                    return
                except BusinessError as e:
                    self._slot.put((_ERROR, e))
                    return
                except Exception as e:
                    logger.exception("stream.adapter_crash", extra={"extra": {"request_id": self.request_id}})
                    self._slot.put((_ERROR, ProviderFatalError(code="ADAPTER_ERROR", message=repr(e))))
                    return
                if self._should_stop():
                    return
                self._slot.put((_CHUNK, chunk))
                if chunk.done:
                    return
        finally:
            self._close_source()

    def _close_source(self) -> None:
        close = getattr(self._source, "close", None)
        if close is not None:
            close()


class StreamMultiplexer:
    """惰性、有限、不可重启的 StreamChunk 序列。"""

    def __init__(
        self,
        source,
        token: CancelToken,
        poll_interval: float = 0.05,
        on_close: Optional[Callable[[str, int], None]] = None,
    ):
        self.request_id = token.request_id
        self._channel = _Channel(source, token, poll_interval, on_close)
        self._finalizer = weakref.finalize(self, self._channel.abandon)
        token.add_callback(functools.partial(self._channel.finish, "cancelled"))

    def __iter__(self) -> "StreamMultiplexer":
        return self

    def __next__(self) -> StreamChunk:
        return self._channel.pull()

    def __enter__(self) -> "StreamMultiplexer":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    @property
    def error(self) -> Optional[BusinessError]:
        return self._channel.error

    @property
    def delivered(self) -> int:
        return self._channel.next_index

    def cancel(self) -> bool:
        return self._channel.token.cancel()

    def close(self) -> None:
        """提前结束消费；等价于取消本请求。"""

        if not self._channel.finished:
            self._channel.token.cancel()
            self._channel.finish("cancelled")

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def collect(self) -> str:
        """消费完整个流并拼接文本；流以错误结束时抛出该错误。"""

        parts: List[str] = [chunk.delta for chunk in self if chunk.error is None]
        self.raise_for_error()
        return "".join(parts)
