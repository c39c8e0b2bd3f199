"""令牌桶限流器，用于网页搜索等对频率敏感的工具。"""

from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimiter:
    """简单的令牌桶。

    - capacity: 桶容量，也是初始令牌数。
    - refill_interval: 生成一个令牌所需的秒数。
    - clock: 单调时钟，测试中可替换。

    allow() 按距上次补充的时间整批补充令牌（不超过容量），
    然后在有令牌时原子地扣减一个。
    """

    def __init__(
        self,
        capacity: int,
        refill_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be > 0")
        self.capacity = capacity
        self.refill_interval = refill_interval
        self._clock = clock
        self._tokens = capacity
        self._last_refill = clock()
        self._lock = threading.Lock()

    @classmethod
    def per_minute(cls, calls: int, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        return cls(capacity=calls, refill_interval=60.0 / calls, clock=clock)

    def allow(self) -> bool:
        with self._lock:
            now = self._clock()
            elapsed = now - self._last_refill
            if elapsed >= self.refill_interval:
                batches = int(elapsed // self.refill_interval)
                self._tokens = min(self.capacity, self._tokens + batches)
                # 只推进已兑现的整批时间，余下部分留给下一次
                self._last_refill += batches * self.refill_interval
            if self._tokens > 0:
                self._tokens -= 1
                return True
            return False

    @property
    def tokens(self) -> int:
        with self._lock:
            return self._tokens
