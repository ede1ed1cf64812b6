"""Vote orchestration.

One vote request walks these states strictly in order:

Received -> Verified -> ProofBuilt -> RootReconciled -> DuplicateChecked
-> Submitted -> Confirmed | Rejected

Nothing before Submitted touches the chain's state, so a failure there has no
chain-side effect. Nothing is retried here: submission is not idempotent.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional
import asyncio
import logging

from .commitments import derive_leaf, nullifier_from_leaf, to_hex
from .errors import (
    AuthenticationFailure,
    ChainError,
    DuplicateVote,
    InputValidation,
    InvalidIdentity,
    NotEligible,
    RelayerError,
)


logger = logging.getLogger(__name__)


class VoteState(str, Enum):
    RECEIVED = "Received"
    VERIFIED = "Verified"
    PROOF_BUILT = "ProofBuilt"
    ROOT_RECONCILED = "RootReconciled"
    DUPLICATE_CHECKED = "DuplicateChecked"
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"


@dataclass
class VoteRequest:
    identity_key: str
    biometric_evidence: str
    candidate_id: int
    state: VoteState = VoteState.RECEIVED
    election_id: Optional[int] = None
    leaf: Optional[bytes] = None
    nullifier: Optional[bytes] = None
    proof: List[bytes] = field(default_factory=list)
    salt: Optional[bytes] = field(default=None, repr=False)

    def advance(self, state: VoteState) -> None:
        logger.debug("vote %s -> %s", self.state.value, state.value)
        self.state = state


@dataclass(frozen=True)
class VoteReceipt:
    tx_ref: str
    election_id: int
    nullifier: str


UINT256_MAX = 2**256 - 1


def validate_candidate_id(candidate_id: Any) -> int:
    """Accept an int or an ASCII decimal string that fits a uint256."""
    if isinstance(candidate_id, bool):
        raise InputValidation("candidateId must be an integer")
    if isinstance(candidate_id, str):
        text = candidate_id.strip()
        if text.isascii() and text.isdecimal():
            candidate_id = int(text)
    if not isinstance(candidate_id, int) or candidate_id < 0:
        raise InputValidation("candidateId must be a non-negative integer")
    if candidate_id > UINT256_MAX:
        raise InputValidation("candidateId does not fit in uint256")
    return candidate_id


def new_vote_request(identity_key: Any, biometric_evidence: Any, candidate_id: Any) -> VoteRequest:
    if not isinstance(identity_key, str) or not identity_key.strip():
        raise InvalidIdentity("identityKey is required")
    if not isinstance(biometric_evidence, str) or not biometric_evidence:
        raise InputValidation("biometricEvidence is required")
    return VoteRequest(identity_key, biometric_evidence, validate_candidate_id(candidate_id))


class VoteOrchestrator:
    """Sequences one vote from identity check to ledger confirmation.

    `precheck` enables the advisory duplicate lookup before submission. It only
    saves a doomed transaction; two concurrent requests can both pass it, and
    the ledger's check-and-record on submission is what rejects the loser.
    """

    def __init__(self, registry, reconciler, ledger, participation=None, precheck: bool = True):
        self.registry = registry
        self.reconciler = reconciler
        self.ledger = ledger
        self.participation = participation
        self.precheck = precheck

    async def cast_vote(self, identity_key: Any, biometric_evidence: Any, candidate_id: Any) -> VoteReceipt:
        req = new_vote_request(identity_key, biometric_evidence, candidate_id)
        try:
            await self._verify(req)
            accumulator_root = await self._build_proof(req)
            await self._reconcile(req, accumulator_root)
            await self._check_duplicate(req)
            tx_ref = await self._submit(req)
        except RelayerError as e:
            logger.info("vote rejected at %s: %s/%s", req.state.value, e.reason, e.code)
            req.advance(VoteState.REJECTED)
            raise

        req.advance(VoteState.CONFIRMED)
        if self.participation is not None:
            # file I/O stays off the event loop
            await asyncio.to_thread(self.participation.append, req.identity_key, tx_ref)
        return VoteReceipt(tx_ref=tx_ref, election_id=req.election_id, nullifier=to_hex(req.nullifier))

    ## --- steps -----------------------------------------------------------

    async def _verify(self, req: VoteRequest) -> None:
        result = await self.registry.verify(req.identity_key, req.biometric_evidence)
        if not result.match:
            raise AuthenticationFailure("biometric verification failed or identity not enabled")
        req.salt = result.salt
        req.advance(VoteState.VERIFIED)

    async def _build_proof(self, req: VoteRequest) -> bytes:
        req.leaf = derive_leaf(req.identity_key, req.salt)
        accumulator = await self.reconciler.snapshot()
        if req.leaf not in accumulator:
            raise NotEligible("voter is not in the eligibility set")
        req.proof = accumulator.proof(req.leaf)
        req.advance(VoteState.PROOF_BUILT)
        return accumulator.root

    async def _reconcile(self, req: VoteRequest, accumulator_root: bytes) -> None:
        req.election_id = await self.reconciler.active_election()
        await self.reconciler.reconcile(req.election_id, accumulator_root)
        req.advance(VoteState.ROOT_RECONCILED)

    async def _check_duplicate(self, req: VoteRequest) -> None:
        req.nullifier = nullifier_from_leaf(req.election_id, req.leaf)
        # advisory only: a False here does not mean the submission will be accepted
        if self.precheck and await self.ledger.nullifier_used(req.election_id, req.nullifier):
            raise DuplicateVote("a vote was already cast for this voter in this election")
        req.advance(VoteState.DUPLICATE_CHECKED)

    async def _submit(self, req: VoteRequest) -> str:
        req.advance(VoteState.SUBMITTED)
        try:
            return await self.ledger.submit_vote(req.nullifier, req.candidate_id, req.proof, req.leaf)
        except ChainError as e:
            if e.code == "Reverted" and await self._nullifier_taken(req):
                raise DuplicateVote(
                    "a vote was already cast for this voter in this election", code="NullifierUsedOnChain"
                ) from e
            raise

    async def _nullifier_taken(self, req: VoteRequest) -> bool:
        try:
            return bool(await self.ledger.nullifier_used(req.election_id, req.nullifier))
        except ChainError:
            return False
