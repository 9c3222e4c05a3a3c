import pytest


class FakeClock:
    def __init__(self, t: int = 0) -> None:
        self.t = t

    def __call__(self) -> int:
        return self.t

    def advance(self, ms: float) -> None:
        self.t += round(ms)


@pytest.fixture
def clock():
    return FakeClock()
