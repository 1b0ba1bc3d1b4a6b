import asyncio

from agentloop.rate_limit import ChatRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _allow_many(limiter: ChatRateLimiter, client_id: str, times: int):
    async def run():
        return [await limiter.allow(client_id) for _ in range(times)]

    return asyncio.run(run())


def test_budget_runs_out_then_resets_with_the_window():
    clock = FakeClock()
    limiter = ChatRateLimiter(2, window_seconds=60, clock=clock)

    assert _allow_many(limiter, "10.0.0.1", 3) == [True, True, False]

    clock.now += 59
    assert _allow_many(limiter, "10.0.0.1", 1) == [False]

    clock.now += 1
    assert _allow_many(limiter, "10.0.0.1", 3) == [True, True, False]


def test_clients_have_separate_budgets():
    limiter = ChatRateLimiter(1, clock=FakeClock())

    assert _allow_many(limiter, "a", 2) == [True, False]
    assert _allow_many(limiter, "b", 1) == [True]


def test_zero_limit_disables_throttling():
    limiter = ChatRateLimiter(0, clock=FakeClock())

    assert not limiter.enabled
    assert _allow_many(limiter, "a", 50) == [True] * 50
