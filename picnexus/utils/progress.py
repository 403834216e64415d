import asyncio
import inspect
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Set

from picnexus.utils.logger import bot_logger


@dataclass
class ProgressEvent:
    """上传进度事件"""
    id: str                          # 上传任务ID
    progress: int                    # 当前进度
    total: int = 100
    step: str = ""                   # 步骤描述
    step_index: int = 0
    total_steps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressSink = Callable[[ProgressEvent], Any]


class ProgressReporter:
    """进度上报器

    上报是即发即弃的：sink 抛出的异常只记录日志，永远不会中断上传。
    sink 可以是普通函数或协程函数。
    """

    def __init__(self, upload_id: str = "", sink: Optional[ProgressSink] = None):
        self.upload_id = upload_id
        self._sink = sink
        self._lock = threading.Lock()
        self._progress = 0
        self._pending: Set[asyncio.Future] = set()

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    def report(self, progress: int, step: str = "", step_index: int = 0, total_steps: int = 0):
        with self._lock:
            # 进度只增不减
            self._progress = max(self._progress, progress)
            event = ProgressEvent(
                id=self.upload_id,
                progress=self._progress,
                step=step,
                step_index=step_index,
                total_steps=total_steps,
            )

        if self._sink is None:
            return

        try:
            result = self._sink(event)
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._on_done)
        except Exception as e:
            bot_logger.warning(f"[Progress] 进度上报失败 ({self.upload_id}): {e}")

    def _on_done(self, future: asyncio.Future):
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            bot_logger.warning(f"[Progress] 异步进度上报失败 ({self.upload_id}): {exc}")
