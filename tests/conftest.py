import asyncio
import os
import sys

import pytest


# Ensure repository src directory is on sys.path for tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from eligibility_relayer.accumulator import AccumulatorBuilder, compute_root  # noqa: E402
from eligibility_relayer.audit import ParticipationLog  # noqa: E402
from eligibility_relayer.commitments import derive_leaf  # noqa: E402
from eligibility_relayer.errors import ChainError, RegistryUnavailable  # noqa: E402
from eligibility_relayer.ledger import ZERO_ROOT, Capabilities, PendingTransactions  # noqa: E402
from eligibility_relayer.orchestrator import VoteOrchestrator  # noqa: E402
from eligibility_relayer.reconciler import RootReconciler  # noqa: E402
from eligibility_relayer.registry import Verification  # noqa: E402


class Voter:
    def __init__(self, identity_key, evidence, salt):
        self.identity_key = identity_key
        self.evidence = evidence
        self.salt = salt
        self.leaf = derive_leaf(identity_key, salt)


class FakeRegistry:
    """In-memory registry: known identities plus the enabled leaf list."""

    def __init__(self, voters, enabled):
        self.voters = {v.identity_key: v for v in voters}
        self.leaves = [v.leaf for v in enabled]
        self.available = True
        self.fetches = 0
        self.verifications = 0

    def enable(self, voter):
        self.leaves.append(voter.leaf)

    async def fetch_leaves(self):
        self.fetches += 1
        if not self.available:
            raise RegistryUnavailable("registry is down")
        return list(self.leaves)

    async def verify(self, identity_key, biometric_evidence):
        self.verifications += 1
        if not self.available:
            raise RegistryUnavailable("registry is down")
        voter = self.voters.get(identity_key)
        if voter is None or voter.evidence != biometric_evidence:
            return Verification(match=False)
        return Verification(match=True, salt=voter.salt)


FAKE_SIGNATURES = [
    "currentElectionId()",
    "rootOf(uint256)",
    "publishRoot(bytes32)",
    "hasNullifierBeenUsed(uint256,bytes32)",
    "submitVote(bytes32,uint256,bytes32[],bytes32)",
    "getAllCandidates()",
]


class FakeLedger:
    """Ballot contract stand-in with an atomic check-and-record on submit."""

    address = "0x000000000000000000000000000000000000dEaD"

    def __init__(self, election_id=1):
        self.election_id = election_id
        self.roots = {}
        self.used = set()
        self.votes = []
        self.calls = []
        self.capabilities = Capabilities.resolve(FAKE_SIGNATURES)
        self.pending = PendingTransactions()
        self.fail_submit = None
        self._tx = 0

    def _next_tx(self):
        self._tx += 1
        return "0x" + format(self._tx, "064x")

    @property
    def supports_nullifier_lookup(self):
        return True

    async def current_election_id(self):
        self.calls.append("current_election_id")
        return self.election_id

    async def root_of(self, election_id):
        self.calls.append("root_of")
        return self.roots.get(election_id, ZERO_ROOT)

    async def publish_root(self, election_id, root):
        self.calls.append("publish_root")
        self.roots[election_id] = root
        return self._next_tx()

    async def nullifier_used(self, election_id, nullifier):
        self.calls.append("nullifier_used")
        return (election_id, nullifier) in self.used

    async def submit_vote(self, nullifier, candidate_id, proof, leaf):
        self.calls.append("submit_vote")
        # let concurrent submissions interleave before the atomic check
        await asyncio.sleep(0)
        if self.fail_submit is not None:
            raise self.fail_submit
        tx_ref = self._next_tx()
        key = (self.election_id, nullifier)
        if key in self.used:
            self.pending.finish(tx_ref, PendingTransactions.REVERTED)
            raise ChainError(f"transaction {tx_ref} reverted", code="Reverted", tx_ref=tx_ref)
        self.used.add(key)
        self.votes.append({"nullifier": nullifier, "candidate": candidate_id, "proof": list(proof), "leaf": leaf})
        self.pending.finish(tx_ref, PendingTransactions.CONFIRMED)
        return tx_ref

    async def list_candidates(self):
        return [{"id": 0, "name": "Ana", "voteCount": 0}, {"id": 1, "name": "Bruno", "voteCount": 0}]

    async def transaction_status(self, tx_ref):
        return self.pending.state(tx_ref)


@pytest.fixture
def voters():
    return {
        "D1": Voter("30111222", "fingerprint-d1", bytes([1]) * 32),
        "D2": Voter("30111333", "fingerprint-d2", bytes([2]) * 32),
        "D3": Voter("30111444", "fingerprint-d3", bytes([3]) * 32),
    }


@pytest.fixture
def registry(voters):
    # D3 is a known identity whose leaf is not enabled yet
    return FakeRegistry(voters.values(), [voters["D1"], voters["D2"]])


@pytest.fixture
def ledger(voters):
    led = FakeLedger(election_id=1)
    led.roots[1] = compute_root([voters["D1"].leaf, voters["D2"].leaf])
    return led


@pytest.fixture
def participation(tmp_path):
    return ParticipationLog(tmp_path / "participation.jsonl")


@pytest.fixture
def reconciler(registry, ledger):
    return RootReconciler(AccumulatorBuilder(registry), ledger)


@pytest.fixture
def orchestrator(registry, reconciler, ledger, participation):
    return VoteOrchestrator(registry, reconciler, ledger, participation)
