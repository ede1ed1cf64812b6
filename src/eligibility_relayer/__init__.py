"""eligibility_relayer - voter eligibility proofs and one-vote-per-election relaying

The package derives membership commitments and per-election nullifiers,
proves membership with a sorted-pair Merkle accumulator, keeps the local root
in step with the ledger's persisted root and relays votes to the ballot contract.
"""

from . import accumulator, commitments, errors, orchestrator, reconciler

__version__ = "0.1.0"

__all__ = ["accumulator", "commitments", "errors", "orchestrator", "reconciler"]
