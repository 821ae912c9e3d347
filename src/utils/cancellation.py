"""取消信号与执行截止时间"""

import threading
import time
from typing import Optional

from src.core.constants import CHECK_INTERVAL
from src.core.exceptions import QueryCancelled, QueryTimeout


class CancellationToken:
    """
    执行取消令牌

    由请求方持有，客户端断开或超时时调用 cancel()；
    引擎在行循环中定期调用 checkpoint() 以尽快中止。
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def cancel(self):
        """请求取消"""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        """检查取消信号与截止时间"""
        if self._event.is_set():
            raise QueryCancelled("执行已被取消")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise QueryTimeout("执行超时")

    def checkpoint(self, index: int):
        """每处理 CHECK_INTERVAL 行检查一次"""
        if index % CHECK_INTERVAL == 0:
            self.check()


def checkpoint(token: Optional[CancellationToken], index: int):
    """令牌可选时的便捷检查"""
    if token is not None:
        token.checkpoint(index)
