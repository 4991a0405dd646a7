from __future__ import annotations

import pytest

from cipherpot.core.errors import InvalidConfiguration
from cipherpot.features.session import policies


def test_builtin_policies() -> None:
    roster = ("a", "b", "c")
    assert policies.get_policy("first_active")(roster, ("b", "c")) == ["b"]
    assert policies.get_policy(" Split_Active ")(roster, ("b", "c")) == ["b", "c"]
    assert set(policies.available_policies()) >= {"first_active", "split_active"}


def test_unknown_policy() -> None:
    with pytest.raises(InvalidConfiguration):
        policies.get_policy("best_hand")


def test_register_policy() -> None:
    policies.register_policy("last_seat", lambda roster, active: [roster[-1]])
    assert policies.get_policy("last_seat")(("a", "b"), ("a",)) == ["b"]


def test_split_shares_gives_leftover_units_in_seat_order() -> None:
    assert policies.split_shares(10, ["a", "b", "c"]) == [("a", 4), ("b", 3), ("c", 3)]
    assert policies.split_shares(11, ["a", "b", "c"]) == [("a", 4), ("b", 4), ("c", 3)]
    assert sum(share for _, share in policies.split_shares(97, list("abcdefg"))) == 97


def test_split_shares_needs_winners() -> None:
    with pytest.raises(InvalidConfiguration):
        policies.split_shares(10, [])
