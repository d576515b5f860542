import pytest

from posttunnel.balance import balance


def test_even_split():
    assert balance([10, 10], 10) == [5, 5]


def test_small_entry_leftover_goes_to_large():
    assert balance([3, 100], 50) == [3, 47]


def test_empty():
    assert balance([], 100) == []


def test_zero_budget_gives_nothing():
    sizes = [4, 9, 1]
    assert balance(sizes, 0) == [0, 0, 0]


def test_budget_covers_everything():
    sizes = [7, 0, 300, 12]
    assert balance(sizes, 10_000) == sizes


@pytest.mark.parametrize(
    "sizes, budget",
    [
        ([10, 10, 10], 11),
        ([10, 10, 10], 7),
        ([1, 2, 3, 4, 5], 9),
        ([512, 1, 1000, 33], 700),
        ([100] * 17, 1000),
        ([5, 5], 3),
        ([1], 1),
        ([0, 0, 8], 5),
    ],
)
def test_invariants(sizes, budget):
    shares = balance(sizes, budget)
    assert len(shares) == len(sizes)
    assert all(0 <= share <= size for share, size in zip(shares, sizes))
    assert sum(shares) == min(budget, sum(sizes))


def test_equal_requests_differ_by_at_most_one():
    shares = balance([50] * 6, 100)
    assert max(shares) - min(shares) <= 1
    assert sum(shares) == 100


def test_input_not_modified():
    sizes = [30, 40]
    balance(sizes, 20)
    assert sizes == [30, 40]