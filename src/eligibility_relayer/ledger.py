"""Ledger capability adapter.

The deployed ballot contract may expose one of several call shapes per
concern. `Capabilities.resolve` looks at the ABI once, picks one variant per
concern and fails fast with UnsupportedLedgerContract when a required concern
has none. `LedgerClient` then offers one async operation per concern, so the
rest of the relayer never looks at the contract's interface.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
import asyncio
import bisect
import json
import logging
import threading

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from .commitments import HASH_SIZE, to_hex
from .errors import ChainError, UnsupportedLedgerContract


logger = logging.getLogger(__name__)

ZERO_ROOT = b"\x00" * HASH_SIZE


class Concern(str, Enum):
    CURRENT_ELECTION = "current_election"
    ROOT_LOOKUP = "root_lookup"
    ROOT_PUBLISH = "root_publish"
    NULLIFIER_LOOKUP = "nullifier_lookup"
    VOTE_SUBMIT = "vote_submit"
    CANDIDATES = "candidates"
    CANDIDATE_VOTES = "candidate_votes"


@dataclass(frozen=True)
class CallVariant:
    """One supported call shape: the ABI signature plus a tag for its argument layout."""

    concern: Concern
    signature: str
    shape: str
    requires: Tuple[str, ...] = ()

    def available(self, signatures: Iterable[str]) -> bool:
        present = set(signatures)
        return self.signature in present and all(s in present for s in self.requires)


# preference order: first available variant wins
KNOWN_VARIANTS: Dict[Concern, Tuple[CallVariant, ...]] = {
    Concern.CURRENT_ELECTION: (
        CallVariant(Concern.CURRENT_ELECTION, "currentElectionId()", "getter"),
        CallVariant(Concern.CURRENT_ELECTION, "getCurrentElectionId()", "getter"),
    ),
    Concern.ROOT_LOOKUP: (
        CallVariant(Concern.ROOT_LOOKUP, "rootOf(uint256)", "per_election"),
        CallVariant(Concern.ROOT_LOOKUP, "merkleRootOf(uint256)", "per_election"),
        CallVariant(Concern.ROOT_LOOKUP, "merkleRoot()", "global"),
    ),
    Concern.ROOT_PUBLISH: (
        CallVariant(Concern.ROOT_PUBLISH, "publishRoot(bytes32)", "global"),
        CallVariant(Concern.ROOT_PUBLISH, "setMerkleRoot(uint256,bytes32)", "per_election"),
        CallVariant(Concern.ROOT_PUBLISH, "setMerkleRoot(bytes32)", "global"),
    ),
    Concern.NULLIFIER_LOOKUP: (
        CallVariant(Concern.NULLIFIER_LOOKUP, "hasNullifierBeenUsed(uint256,bytes32)", "per_election"),
        CallVariant(Concern.NULLIFIER_LOOKUP, "hasVoted(uint256,bytes32)", "per_election"),
        CallVariant(Concern.NULLIFIER_LOOKUP, "nullifierUsed(bytes32)", "global"),
    ),
    Concern.VOTE_SUBMIT: (
        CallVariant(Concern.VOTE_SUBMIT, "submitVote(bytes32,uint256,bytes32[],bytes32)", "proof"),
        CallVariant(Concern.VOTE_SUBMIT, "voteWithProof(bytes32,uint256,bytes32[],bytes32)", "proof"),
        CallVariant(Concern.VOTE_SUBMIT, "voteWithNullifier(bytes32,uint256)", "simple"),
    ),
    Concern.CANDIDATES: (
        CallVariant(Concern.CANDIDATES, "getAllCandidates()", "all"),
        CallVariant(Concern.CANDIDATES, "getCandidate(uint256)", "indexed", ("getCandidatesCount()",)),
        CallVariant(Concern.CANDIDATES, "candidates(uint256)", "named", ("getCandidatesCount()",)),
    ),
    Concern.CANDIDATE_VOTES: (
        CallVariant(Concern.CANDIDATE_VOTES, "getVotes(uint256)", "indexed"),
    ),
}

REQUIRED = (Concern.CURRENT_ELECTION, Concern.VOTE_SUBMIT)


def _canonical_type(param: Dict[str, Any]) -> str:
    t = param["type"]
    if t.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param.get("components", []))
        return f"({inner}){t[len('tuple'):]}"
    return t


def abi_signatures(abi: Sequence[Dict[str, Any]]) -> List[str]:
    """Function signatures (`name(type,...)`) declared by a contract ABI."""
    out = []
    for entry in abi:
        if entry.get("type", "function") != "function" or "name" not in entry:
            continue
        args = ",".join(_canonical_type(p) for p in entry.get("inputs", []))
        out.append(f"{entry['name']}({args})")
    return out


@dataclass(frozen=True)
class Capabilities:
    variants: Dict[Concern, CallVariant] = field(default_factory=dict)

    @classmethod
    def resolve(cls, signatures: Iterable[str]) -> "Capabilities":
        present = set(signatures)
        chosen: Dict[Concern, CallVariant] = {}
        for concern, candidates in KNOWN_VARIANTS.items():
            match = next((v for v in candidates if v.available(present)), None)
            if match is not None:
                chosen[concern] = match
        missing = [c.value for c in REQUIRED if c not in chosen]
        if missing:
            raise UnsupportedLedgerContract(
                f"contract exposes no supported call for: {', '.join(missing)}",
                code="MissingRequiredCall",
            )
        return cls(chosen)

    def get(self, concern: Concern) -> Optional[CallVariant]:
        return self.variants.get(concern)

    def require(self, concern: Concern) -> CallVariant:
        variant = self.variants.get(concern)
        if variant is None:
            raise UnsupportedLedgerContract(
                f"contract exposes no supported call for {concern.value}", code="MissingCall"
            )
        return variant

    def describe(self) -> Dict[str, Optional[str]]:
        return {c.value: (self.variants[c].signature if c in self.variants else None) for c in Concern}


def load_contract_artifact(path: Path) -> Tuple[str, List[Dict[str, Any]]]:
    """Read `{address, abi}` from the deployment artifact."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            artifact = json.load(f)
    except FileNotFoundError:
        raise UnsupportedLedgerContract(f"contract artifact not found: {path}", code="ArtifactMissing") from None
    except ValueError as e:
        raise UnsupportedLedgerContract(f"contract artifact is not valid JSON: {e}", code="ArtifactInvalid") from None
    address = artifact.get("address") if isinstance(artifact, dict) else None
    abi = artifact.get("abi") if isinstance(artifact, dict) else None
    if not isinstance(address, str) or not isinstance(abi, list):
        raise UnsupportedLedgerContract(f"{path} must contain an address and an abi list", code="ArtifactInvalid")
    return address, abi


## --- transaction sequencing ----------------------------------------------


class NonceSequencer:
    """Hands out nonces for the single relaying account.

    Every reserved nonce is either committed (broadcast) or released (never
    broadcast). A released nonce is handed out again before the counter moves
    on, so later in-flight transactions never sit behind a gap. The counter is
    reseeded from the chain only once nothing is in flight.

    The lock is only held while touching the counter, never across an await;
    views can run on different event loops so it is a thread lock.
    """

    def __init__(self, fetch_pending_count: Callable[[], Awaitable[int]]):
        self._fetch = fetch_pending_count
        self._lock = threading.Lock()
        self._next: Optional[int] = None
        self._in_flight: Set[int] = set()
        self._released: List[int] = []  # sorted

    async def reserve(self) -> int:
        while True:
            with self._lock:
                if self._released:
                    nonce = self._released.pop(0)
                elif self._next is not None:
                    nonce = self._next
                    self._next += 1
                else:
                    nonce = None
                if nonce is not None:
                    self._in_flight.add(nonce)
                    return nonce
            seed = await self._fetch()
            with self._lock:
                if self._next is None:
                    self._next = seed

    def commit(self, nonce: int) -> None:
        with self._lock:
            self._in_flight.discard(nonce)

    def release(self, nonce: int) -> None:
        """Give back a nonce whose transaction was never broadcast."""
        with self._lock:
            self._in_flight.discard(nonce)
            if self._next is None or nonce >= self._next:
                return
            if nonce == self._next - 1:
                self._next = nonce
                while self._released and self._released[-1] == self._next - 1:
                    self._next = self._released.pop()
            else:
                bisect.insort(self._released, nonce)
            if not self._in_flight and not self._released:
                # nothing outstanding: resync with the node on the next reservation
                self._next = None


class PendingTransactions:
    """Broadcast transactions and their last known state.

    Holds at most `limit` entries; the oldest finished ones are evicted first,
    after which their state is looked up on the chain again.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    UNKNOWN = "unknown"

    def __init__(self, limit: int = 10000):
        self.limit = limit
        self._lock = threading.Lock()
        self._states: "OrderedDict[str, str]" = OrderedDict()

    def track(self, tx_ref: str) -> None:
        with self._lock:
            self._states.setdefault(tx_ref, self.PENDING)
            self._evict()

    def finish(self, tx_ref: str, state: str) -> None:
        with self._lock:
            self._states[tx_ref] = state
            self._evict()

    def state(self, tx_ref: str) -> str:
        with self._lock:
            return self._states.get(tx_ref, self.UNKNOWN)

    def __len__(self) -> int:
        return len(self._states)

    def _evict(self) -> None:
        excess = len(self._states) - self.limit
        if excess <= 0:
            return
        finished = [ref for ref, state in self._states.items() if state != self.PENDING][:excess]
        for ref in finished:
            del self._states[ref]
        # all pending: drop the oldest anyway
        while len(self._states) > self.limit:
            self._states.popitem(last=False)


## --- client ----------------------------------------------------------------


class LedgerClient:
    def __init__(
        self,
        w3,
        contract,
        capabilities: Capabilities,
        account=None,
        *,
        timeout: float = 10.0,
        confirmation_timeout: float = 120.0,
    ):
        self.w3 = w3
        self.contract = contract
        self.capabilities = capabilities
        self.account = account
        self.timeout = timeout
        self.confirmation_timeout = confirmation_timeout
        self.nonces = NonceSequencer(self._pending_count)
        self.pending = PendingTransactions()

    @classmethod
    def from_config(cls, config) -> "LedgerClient":
        address, abi = load_contract_artifact(config.contract_path)
        capabilities = Capabilities.resolve(abi_signatures(abi))
        provider = AsyncHTTPProvider(
            config.rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=config.ledger_timeout)}
        )
        w3 = AsyncWeb3(provider)
        contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)
        account = Account.from_key(config.relayer_private_key) if config.relayer_private_key else None
        logger.info("ledger contract %s capabilities: %s", address, capabilities.describe())
        return cls(
            w3,
            contract,
            capabilities,
            account,
            timeout=config.ledger_timeout,
            confirmation_timeout=config.confirmation_timeout,
        )

    @property
    def address(self) -> str:
        return self.contract.address

    @property
    def supports_nullifier_lookup(self) -> bool:
        return self.capabilities.get(Concern.NULLIFIER_LOOKUP) is not None

    async def _guard(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError:
            raise ChainError(f"{what} timed out after {self.timeout}s", code="LedgerTimeout") from None
        except ContractLogicError as e:
            raise ChainError(f"{what} reverted: {e}", code="Reverted") from e
        except (Web3Exception, aiohttp.ClientError, OSError) as e:
            raise ChainError(f"{what} failed: {e}", code="LedgerUnavailable") from e

    def _fn(self, variant: CallVariant):
        return self.contract.get_function_by_signature(variant.signature)

    async def _call(self, variant: CallVariant, *args) -> Any:
        return await self._guard(self._fn(variant)(*args).call(), variant.signature)

    async def _pending_count(self) -> int:
        return await self._guard(
            self.w3.eth.get_transaction_count(self.account.address, "pending"), "get_transaction_count"
        )

    async def check_deployed(self) -> None:
        code = await self._guard(self.w3.eth.get_code(self.address), "get_code")
        if not code:
            raise UnsupportedLedgerContract(f"no contract code at {self.address}", code="NoContractCode")

    ## reads

    async def current_election_id(self) -> int:
        variant = self.capabilities.require(Concern.CURRENT_ELECTION)
        return int(await self._call(variant))

    async def root_of(self, election_id: int) -> bytes:
        """Persisted root for the election; ZERO_ROOT when none was published."""
        variant = self.capabilities.require(Concern.ROOT_LOOKUP)
        if variant.shape == "per_election":
            root = await self._call(variant, election_id)
        else:
            root = await self._call(variant)
        return bytes(root) if root else ZERO_ROOT

    async def nullifier_used(self, election_id: int, nullifier: bytes) -> Optional[bool]:
        """Advisory lookup; None when the contract has no such call."""
        variant = self.capabilities.get(Concern.NULLIFIER_LOOKUP)
        if variant is None:
            return None
        if variant.shape == "per_election":
            return bool(await self._call(variant, election_id, nullifier))
        return bool(await self._call(variant, nullifier))

    async def list_candidates(self) -> List[Dict[str, Any]]:
        variant = self.capabilities.get(Concern.CANDIDATES)
        if variant is None:
            return []
        if variant.shape == "all":
            return [self._candidate(t) for t in await self._call(variant)]

        count_fn = self.contract.get_function_by_signature("getCandidatesCount()")
        count = int(await self._guard(count_fn().call(), "getCandidatesCount()"))
        votes = self.capabilities.get(Concern.CANDIDATE_VOTES)
        out = []
        for i in range(count):
            if variant.shape == "indexed":
                out.append(self._candidate(await self._call(variant, i)))
            else:
                name = await self._call(variant, i)
                vote_count = int(await self._call(votes, i)) if votes else 0
                out.append({"id": i, "name": name, "voteCount": vote_count})
        return out

    @staticmethod
    def _candidate(t: Sequence[Any]) -> Dict[str, Any]:
        return {"id": int(t[0]), "name": t[1], "voteCount": int(t[2])}

    ## writes

    async def publish_root(self, election_id: int, root: bytes) -> str:
        variant = self.capabilities.require(Concern.ROOT_PUBLISH)
        args = (election_id, root) if variant.shape == "per_election" else (root,)
        return await self._transact(variant, args)

    async def submit_vote(self, nullifier: bytes, candidate_id: int, proof: Sequence[bytes], leaf: bytes) -> str:
        variant = self.capabilities.require(Concern.VOTE_SUBMIT)
        if variant.shape == "proof":
            args = (nullifier, candidate_id, list(proof), leaf)
        else:
            args = (nullifier, candidate_id)
        return await self._transact(variant, args)

    async def _transact(self, variant: CallVariant, args: Tuple[Any, ...]) -> str:
        if self.account is None:
            raise ChainError("no relayer key configured for state-mutating calls", code="NoRelayerAccount")

        # gas estimation reverts here for duplicates, before any nonce is taken
        tx = await self._guard(
            self._fn(variant)(*args).build_transaction({"from": self.account.address}),
            variant.signature,
        )
        nonce = await self.nonces.reserve()
        try:
            signed = self.account.sign_transaction(dict(tx, nonce=nonce))
            tx_hash = await self._guard(self.w3.eth.send_raw_transaction(signed.raw_transaction), "send_raw_transaction")
        except Exception:
            self.nonces.release(nonce)
            raise
        self.nonces.commit(nonce)

        tx_ref = to_hex(bytes(tx_hash))
        self.pending.track(tx_ref)
        logger.info("broadcast %s nonce=%d tx=%s", variant.signature, nonce, tx_ref)
        return await self._await_confirmation(tx_ref, tx_hash)

    async def _await_confirmation(self, tx_ref: str, tx_hash: Any) -> str:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)
        except (TimeExhausted, asyncio.TimeoutError):
            raise ChainError(f"no confirmation for {tx_ref} yet", code="ConfirmationTimeout", tx_ref=tx_ref) from None
        except (Web3Exception, aiohttp.ClientError, OSError) as e:
            raise ChainError(f"lost track of {tx_ref}: {e}", code="LedgerUnavailable", tx_ref=tx_ref) from e

        if receipt["status"] != 1:
            self.pending.finish(tx_ref, PendingTransactions.REVERTED)
            raise ChainError(f"transaction {tx_ref} reverted", code="Reverted", tx_ref=tx_ref)
        self.pending.finish(tx_ref, PendingTransactions.CONFIRMED)
        return tx_ref

    async def transaction_status(self, tx_ref: str) -> str:
        state = self.pending.state(tx_ref)
        if state in (PendingTransactions.CONFIRMED, PendingTransactions.REVERTED):
            return state
        try:
            receipt = await self._guard(self.w3.eth.get_transaction_receipt(tx_ref), "get_transaction_receipt")
        except ChainError as e:
            if isinstance(e.__cause__, TransactionNotFound):
                return state
            raise
        if receipt is None:
            return state
        state = PendingTransactions.CONFIRMED if receipt["status"] == 1 else PendingTransactions.REVERTED
        self.pending.finish(tx_ref, state)
        return state

