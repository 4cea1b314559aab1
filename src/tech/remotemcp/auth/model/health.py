import asyncio


class HealthGauge:
    """
    Error-burst gauge backing the readiness probe.

    Unexpected errors (not OAuth protocol errors or validation failures) call
    `womp` to push the value up. A background task calls `tick` to decay it.
    When a burst of errors pushes the value above the threshold, `is_healthy`
    reports false and `/internal/ready` answers 503 until the gauge decays.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    @property
    def value(self) -> int:
        return self._value

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self, d=1) -> None:
        async with self._lock:
            self._value = max(0, self._value - int(d))

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
