"""
Consistent hashing ring for session-affinity routing.

This implementation provides:
- Deterministic mapping: same key always maps to same backend (when present)
- Minimal redistribution: adding/removing a backend only moves the keys
  that backend owns
- Virtual nodes: each backend is placed at many ring positions for an even
  split of the key space
- Clockwise walks: the next distinct backends after the owner, for retries

Usage:
    ring = ConsistentHashRing(virtual_nodes=160)
    ring.add_node("web-1")
    ring.add_node("web-2")

    owner = ring.get_node("203.0.113")
    owner, fallback = ring.get_nodes_for_key("203.0.113", count=2)
"""

from __future__ import annotations

import bisect
import hashlib
from typing import Iterator


class ConsistentHashRing:
    """
    A consistent hashing ring of backend ids.

    Positions are 64-bit integers taken from an md5 digest. Membership
    changes are incremental: adding a backend inserts only its own
    positions and removing one deletes only its own positions, so keys
    owned by other backends never move.

    The ring is not locked. Callers serialize writers against readers
    (the backend registry does so with its ReadWriteLock).

    Attributes:
        virtual_nodes: Number of ring positions per backend.
    """

    __slots__ = (
        "_positions",
        "_node_positions",
        "_vnodes",
    )

    def __init__(self, virtual_nodes: int = 160) -> None:
        if virtual_nodes < 1:
            raise ValueError("virtual_nodes must be >= 1")

        # Sorted (position, node_id) pairs. Ties on position break by node_id.
        self._positions: list[tuple[int, str]] = []
        self._node_positions: dict[str, list[int]] = {}
        self._vnodes = virtual_nodes

    @property
    def virtual_nodes(self) -> int:
        return self._vnodes

    @staticmethod
    def hash_key(key: str) -> int:
        """
        Compute the ring position for a key.

        Uses MD5 for distribution, not for security. The first eight bytes
        of the digest form an unsigned 64-bit position.
        """
        digest = hashlib.md5(key.encode(), usedforsecurity=False).digest()
        return int.from_bytes(digest[:8], byteorder="big")

    def _vnode_positions(self, node_id: str) -> list[int]:
        return [
            self.hash_key(f"{node_id}#{index}")
            for index in range(self._vnodes)
        ]

    def add_node(self, node_id: str) -> bool:
        """
        Place a backend on the ring. Returns False if it was already present.
        """
        if node_id in self._node_positions:
            return False

        positions = self._vnode_positions(node_id)
        self._node_positions[node_id] = positions

        for position in positions:
            bisect.insort(self._positions, (position, node_id))

        return True

    def remove_node(self, node_id: str) -> bool:
        """
        Take a backend off the ring. Returns False if it was not present.
        """
        positions = self._node_positions.pop(node_id, None)
        if positions is None:
            return False

        for position in positions:
            idx = bisect.bisect_left(self._positions, (position, node_id))
            if (
                idx < len(self._positions)
                and self._positions[idx] == (position, node_id)
            ):
                del self._positions[idx]

        return True

    def walk(self, key: str) -> Iterator[str]:
        """
        Yield each distinct backend once, clockwise from the key's position.
        The first backend yielded owns the key.
        """
        if not self._positions:
            return

        ring_size = len(self._positions)
        start = bisect.bisect_left(self._positions, (self.hash_key(key), ""))
        seen: set[str] = set()

        for offset in range(ring_size):
            _, node_id = self._positions[(start + offset) % ring_size]
            if node_id in seen:
                continue

            seen.add(node_id)
            yield node_id

            if len(seen) == len(self._node_positions):
                return

    def get_node(self, key: str) -> str | None:
        """
        Get the backend owning a key, or None if the ring is empty.
        """
        return next(self.walk(key), None)

    def get_nodes_for_key(self, key: str, count: int = 2) -> list[str]:
        """
        Get up to `count` distinct backends for a key, owner first,
        proceeding clockwise.
        """
        nodes: list[str] = []
        if count < 1:
            return nodes

        for node_id in self.walk(key):
            nodes.append(node_id)
            if len(nodes) >= count:
                break

        return nodes

    def __len__(self) -> int:
        return len(self._node_positions)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._node_positions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._node_positions))

    def key_distribution(self, sample_keys: list[str]) -> dict[str, int]:
        """
        Count how many of the sample keys each backend owns.

        Useful for testing and debugging distribution quality.
        """
        distribution: dict[str, int] = {node: 0 for node in self._node_positions}

        for key in sample_keys:
            node = self.get_node(key)
            if node:
                distribution[node] += 1

        return distribution
