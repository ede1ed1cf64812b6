"""Merkle accumulator over the eligibility set.

Canonical rules:
1. Leaves are the 32-byte commitments exactly as issued (no re-hashing).
2. Parent hashing: keccak(min(a, b) ‖ max(a, b)), so a proof is just a list of
   siblings and verification does not need left/right positions.
3. Odd node at a level: carried up to the next level unchanged.
4. Single leaf: root = leaf, proof = [].
5. Empty set: no root; EmptyEligibilitySet.
"""

from typing import Callable, List, Optional, Sequence
import logging
import time

from eth_utils import keccak

from .commitments import Bytes32Like, to_bytes32, to_hex
from .errors import EmptyEligibilitySet, InputValidation, NotEligible


logger = logging.getLogger(__name__)


def hash_pair(a: bytes, b: bytes) -> bytes:
    if a <= b:
        return keccak(a + b)
    return keccak(b + a)


def verify_proof(leaf: Bytes32Like, proof: Sequence[Bytes32Like], root: Bytes32Like) -> bool:
    node = to_bytes32(leaf, "leaf")
    for sibling in proof:
        node = hash_pair(node, to_bytes32(sibling, "proof element"))
    return node == to_bytes32(root, "root")


class MerkleAccumulator:
    """An immutable tree built over one snapshot of the eligibility set."""

    def __init__(self, leaves: Sequence[Bytes32Like]):
        if not leaves:
            raise EmptyEligibilitySet("eligibility set is empty")
        level = [to_bytes32(leaf, "leaf") for leaf in leaves]
        self._leaves = tuple(level)
        self._index = {}
        for i, leaf in enumerate(self._leaves):
            self._index.setdefault(leaf, i)

        levels = [level]
        while len(level) > 1:
            nxt = [hash_pair(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
            if len(level) % 2:
                nxt.append(level[-1])
            levels.append(nxt)
            level = nxt
        self._levels = levels

    @property
    def root(self) -> bytes:
        return self._levels[-1][0]

    @property
    def root_hex(self) -> str:
        return to_hex(self.root)

    @property
    def leaves(self) -> List[bytes]:
        return list(self._leaves)

    def __len__(self) -> int:
        return len(self._leaves)

    def __contains__(self, leaf: object) -> bool:
        try:
            return to_bytes32(leaf, "leaf") in self._index
        except InputValidation:
            return False

    def proof(self, leaf: Bytes32Like) -> List[bytes]:
        """Sibling path from `leaf` up to the root.

        Raises NotEligible if the leaf is not part of this snapshot.
        """
        key = to_bytes32(leaf, "leaf")
        if key not in self._index:
            raise NotEligible("leaf is not in the eligibility set", code="LeafNotFound")
        idx = self._index[key]
        path: List[bytes] = []
        for level in self._levels[:-1]:
            sibling = idx ^ 1
            # carried-up node has no sibling at this level
            if sibling < len(level):
                path.append(level[sibling])
            idx //= 2
        return path

    def verify(self, leaf: Bytes32Like, proof: Sequence[Bytes32Like]) -> bool:
        return verify_proof(leaf, proof, self.root)


def compute_root(leaves: Sequence[Bytes32Like]) -> bytes:
    return MerkleAccumulator(leaves).root


class AccumulatorBuilder:
    """Builds accumulators from the registry's eligibility set.

    With max_age=0 (the default) every call fetches the set again and rebuilds
    the tree. A positive max_age reuses the last snapshot for that many seconds
    unless `fresh=True` is passed or `invalidate()` was called.
    """

    def __init__(self, registry, max_age: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.registry = registry
        self.max_age = max_age
        self._clock = clock
        self._cached: Optional[MerkleAccumulator] = None
        self._cached_at = 0.0

    def invalidate(self) -> None:
        self._cached = None

    def _cache_valid(self) -> bool:
        if self._cached is None or self.max_age <= 0:
            return False
        return (self._clock() - self._cached_at) < self.max_age

    async def build(self, fresh: bool = False) -> MerkleAccumulator:
        if not fresh and self._cache_valid():
            return self._cached
        leaves = await self.registry.fetch_leaves()
        accumulator = MerkleAccumulator(leaves)
        logger.debug("built accumulator over %d leaves, root %s", len(accumulator), accumulator.root_hex[:10])
        if self.max_age > 0:
            self._cached = accumulator
            self._cached_at = self._clock()
        return accumulator
