import pytest

from smr.diff import diff


@pytest.mark.parametrize(
    "old,new",
    [
        ({"a", "b", "c"}, {"b", "c", "d"}),
        (set(), {"a", "b"}),
        ({"a", "b"}, set()),
        ({"a"}, {"b"}),
        ({"a", "b", "c"}, {"a", "b", "c"}),
    ],
)
def test_diff_is_set_difference(old, new):
    d = diff(old, new)
    assert set(d.to_absorb) == new - old
    assert set(d.to_release) == old - new
    # Services in both sets are left alone.
    assert not (old & new) & (set(d.to_absorb) | set(d.to_release))


def test_diff_of_identical_sets_is_empty():
    d = diff(["a", "b"], ["b", "a"])
    assert d.to_release == [] and d.to_absorb == []
    assert d.empty


def test_diff_output_is_sorted_and_exact_match():
    d = diff(["c", "a", "svc"], ["svc-2", "b", "svc"])
    assert d.to_release == ["a", "c"]
    assert d.to_absorb == ["b", "svc-2"]
