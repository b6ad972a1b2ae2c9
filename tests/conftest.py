import pytest

from ptp_tracer.tracker import PtpTracker

from .ptp_packets import ListSource


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return ListSource()


@pytest.fixture
def tracker(source, clock):
    return PtpTracker(source, clock=clock)
