"""Root reconciliation between the local accumulator and the ledger.

The ledger's persisted root is the only root votes are proven against.
`reconcile` blocks a vote when the two differ; `publish` is the
administrative resync and is never called from the voting path.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from .accumulator import AccumulatorBuilder, MerkleAccumulator
from .commitments import to_hex
from .errors import NoActiveElection, RootMismatch, RootNotSet
from .ledger import ZERO_ROOT


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    election_id: int
    root: bytes
    tx_ref: Optional[str]
    changed: bool


class RootReconciler:
    def __init__(self, builder: AccumulatorBuilder, ledger):
        self.builder = builder
        self.ledger = ledger

    async def snapshot(self) -> MerkleAccumulator:
        return await self.builder.build()

    async def compute_root(self) -> bytes:
        return (await self.snapshot()).root

    async def active_election(self) -> int:
        election_id = await self.ledger.current_election_id()
        if election_id == 0:
            raise NoActiveElection("no active election on the ledger")
        return election_id

    async def reconcile(self, election_id: int, local_root: Optional[bytes] = None) -> bytes:
        """Check the local root against the ledger's persisted root.

        Pass `local_root` when a proof was already built from a snapshot so
        the check covers exactly that snapshot.
        """
        if local_root is None:
            local_root = await self.compute_root()
        persisted = await self.ledger.root_of(election_id)
        if persisted == ZERO_ROOT:
            raise RootNotSet(f"election {election_id} has no published root; run an admin root sync")
        if persisted != local_root:
            logger.warning(
                "root mismatch for election %d: local %s ledger %s",
                election_id, to_hex(local_root)[:10], to_hex(persisted)[:10],
            )
            raise RootMismatch(
                f"eligibility root for election {election_id} differs from the ledger; run an admin root sync",
                local_root=to_hex(local_root),
                ledger_root=to_hex(persisted),
            )
        return local_root

    async def publish(self, election_id: int, root: Optional[bytes] = None) -> PublishResult:
        if root is None:
            root = await self.compute_root()
        persisted = await self.ledger.root_of(election_id)
        if persisted == root:
            logger.info("root for election %d already up to date", election_id)
            return PublishResult(election_id, root, None, changed=False)
        tx_ref = await self.ledger.publish_root(election_id, root)
        logger.info("published root %s for election %d in %s", to_hex(root)[:10], election_id, tx_ref)
        return PublishResult(election_id, root, tx_ref, changed=True)
