"""
Tests for the reverse-indexed allowlist set.
"""

from rebalance_engine.ledger import IndexedSet


class TestIndexedSet:
    """Tests for IndexedSet."""

    def test_add_and_contains(self) -> None:
        s = IndexedSet()
        assert s.add("A") is True
        assert "A" in s
        assert "B" not in s
        assert len(s) == 1

    def test_add_duplicate_is_noop(self) -> None:
        s = IndexedSet(["A"])
        assert s.add("A") is False
        assert s.members() == ["A"]

    def test_remove_swaps_last_into_slot(self) -> None:
        """Removing from the middle moves the last member into the hole."""
        s = IndexedSet(["A", "B", "C", "D"])
        assert s.remove("B") is True
        assert s.members() == ["A", "D", "C"]
        assert "B" not in s

        # Reverse index stays consistent after the swap
        assert s.remove("D") is True
        assert s.members() == ["A", "C"]

    def test_remove_last_member(self) -> None:
        s = IndexedSet(["A", "B"])
        assert s.remove("B") is True
        assert s.members() == ["A"]

    def test_remove_missing_returns_false(self) -> None:
        s = IndexedSet(["A"])
        assert s.remove("Z") is False
        assert len(s) == 1

    def test_enumeration_matches_membership(self) -> None:
        s = IndexedSet()
        for member in ["A", "B", "C", "D", "E"]:
            s.add(member)
        for member in ["A", "C", "E"]:
            s.remove(member)
        s.add("F")

        assert set(s) == {"B", "D", "F"}
        assert all(m in s for m in s.members())
        assert len(s) == 3

    def test_copy_is_independent(self) -> None:
        s = IndexedSet(["A", "B"])
        c = s.copy()
        c.remove("A")
        assert "A" in s
        assert "A" not in c

    def test_iteration_safe_during_mutation(self) -> None:
        s = IndexedSet(["A", "B", "C"])
        for member in s:
            s.remove(member)
        assert len(s) == 0
