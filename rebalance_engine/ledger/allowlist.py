"""
Enumerable membership set with a reverse index.

Members are kept in a list for enumeration, with a map from member to its
list position so removal is a swap-remove rather than a scan.
"""

from collections.abc import Iterable, Iterator


class IndexedSet:
    """Set of destination ids supporting O(1) add, remove, contains and enumeration."""

    def __init__(self, members: Iterable[str] = ()) -> None:
        self._items: list[str] = []
        self._index: dict[str, int] = {}
        for member in members:
            self.add(member)

    def add(self, member: str) -> bool:
        """Add a member. Returns False if it was already present."""
        if member in self._index:
            return False
        self._index[member] = len(self._items)
        self._items.append(member)
        return True

    def remove(self, member: str) -> bool:
        """Remove a member by swapping the last item into its slot."""
        position = self._index.pop(member, None)
        if position is None:
            return False
        last = self._items.pop()
        if position < len(self._items):
            self._items[position] = last
            self._index[last] = position
        return True

    def __contains__(self, member: object) -> bool:
        return member in self._index

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def members(self) -> list[str]:
        """Members in insertion order, as perturbed by swap-removes."""
        return list(self._items)

    def copy(self) -> "IndexedSet":
        return IndexedSet(self._items)
