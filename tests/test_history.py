import pytest

from ptp_tracer.history import BoundedHistory


def test_push_past_capacity_evicts_only_the_oldest():
    history = BoundedHistory(3)
    for i in range(4):
        history.push(i)
    assert history.to_list() == [1, 2, 3]
    assert len(history) == 3


def test_order_is_insertion_order():
    history = BoundedHistory(10)
    for item in "abc":
        history.push(item)
    assert list(history) == ["a", "b", "c"]


def test_shrinking_keeps_the_newest():
    history = BoundedHistory(5)
    for i in range(5):
        history.push(i)
    history.resize(2)
    assert history.max_size == 2
    assert history.to_list() == [3, 4]


def test_growing_keeps_everything():
    history = BoundedHistory(2)
    history.push(1)
    history.push(2)
    history.resize(4)
    history.push(3)
    assert history.to_list() == [1, 2, 3]


def test_clear():
    history = BoundedHistory(2)
    history.push(1)
    history.clear()
    assert len(history) == 0
    assert history.max_size == 2


@pytest.mark.parametrize("size", [0, -1])
def test_capacity_below_one_is_rejected(size):
    with pytest.raises(ValueError):
        BoundedHistory(size)
    with pytest.raises(ValueError):
        BoundedHistory(1).resize(size)
