"""Flask API for the eligibility relayer.

Endpoints:
- GET /merkle-root -> {"root": "0x..", "count": n}
- GET /merkle-proof/<leaf> -> {"leaf": .., "root": .., "proof": [..]}
- POST /admin/sync-root -> publish the locally computed root for the active election
- POST /vote/<candidate_id> {"identityKey": .., "biometricEvidence": ..} -> {"txRef": ..}
- POST /vote {"identityKey": .., "biometricEvidence": .., "candidateId": ..} -> same as above
- GET /tx/<tx_ref> -> {"txRef": .., "status": "pending|confirmed|reverted|unknown"}
- GET /health, /info, /candidates, /participation
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import hmac
import logging

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from .accumulator import AccumulatorBuilder
from .audit import ParticipationLog
from .commitments import to_bytes32, to_hex
from .config import RelayerConfig, load_config
from .errors import AuthenticationFailure, RelayerError
from .ledger import LedgerClient
from .orchestrator import VoteOrchestrator
from .reconciler import RootReconciler
from .registry import RegistryClient


logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: RelayerConfig
    registry: Any
    ledger: Any
    builder: AccumulatorBuilder
    reconciler: RootReconciler
    orchestrator: VoteOrchestrator
    participation: ParticipationLog


def build_services(
    config: RelayerConfig,
    registry=None,
    ledger=None,
    participation: Optional[ParticipationLog] = None,
) -> Services:
    if registry is None:
        registry = RegistryClient(config.registry_url, config.registry_timeout)
    if ledger is None:
        ledger = LedgerClient.from_config(config)
    if participation is None:
        participation = ParticipationLog(config.participation_path)
    builder = AccumulatorBuilder(registry, max_age=config.accumulator_max_age)
    reconciler = RootReconciler(builder, ledger)
    orchestrator = VoteOrchestrator(registry, reconciler, ledger, participation)
    return Services(config, registry, ledger, builder, reconciler, orchestrator, participation)


def _services() -> Services:
    return current_app.extensions["eligibility_relayer"]


async def cast_vote(candidate_id: Any, body: Dict[str, Any]) -> Dict[str, Any]:
    """Shared by POST /vote and POST /vote/<candidate_id>."""
    receipt = await _services().orchestrator.cast_vote(
        body.get("identityKey"), body.get("biometricEvidence"), candidate_id
    )
    return {"txRef": receipt.tx_ref, "electionId": receipt.election_id}


def _require_admin() -> None:
    token = _services().config.admin_token
    if not token:
        return
    presented = request.headers.get("X-Admin-Token", "")
    if not hmac.compare_digest(token.encode("utf-8"), presented.encode("utf-8")):
        raise AuthenticationFailure("admin token required", code="AdminTokenInvalid")


def create_app(
    config: Optional[RelayerConfig] = None,
    *,
    registry=None,
    ledger=None,
    participation: Optional[ParticipationLog] = None,
) -> Flask:
    config = config or load_config()
    app = Flask(__name__)
    app.extensions["eligibility_relayer"] = build_services(config, registry, ledger, participation)

    @app.errorhandler(RelayerError)
    def handle_relayer_error(e: RelayerError):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception("unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal error", "reason": "Internal", "code": "Internal"}), 500

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"ok": True})

    @app.route("/info", methods=["GET"])
    async def info():
        ledger = _services().ledger
        election_id = await ledger.current_election_id()
        return jsonify(
            {
                "address": ledger.address,
                "currentElectionId": election_id,
                "capabilities": ledger.capabilities.describe(),
            }
        )

    @app.route("/candidates", methods=["GET"])
    async def candidates():
        return jsonify(await _services().ledger.list_candidates())

    @app.route("/participation", methods=["GET"])
    def participation_records():
        return jsonify(_services().participation.read())

    @app.route("/merkle-root", methods=["GET"])
    async def merkle_root():
        accumulator = await _services().reconciler.snapshot()
        return jsonify({"root": accumulator.root_hex, "count": len(accumulator)})

    @app.route("/merkle-proof/<leaf>", methods=["GET"])
    async def merkle_proof(leaf: str):
        leaf_bytes = to_bytes32(leaf, "leaf")
        accumulator = await _services().reconciler.snapshot()
        proof = accumulator.proof(leaf_bytes)
        return jsonify(
            {"leaf": to_hex(leaf_bytes), "root": accumulator.root_hex, "proof": [to_hex(p) for p in proof]}
        )

    @app.route("/admin/sync-root", methods=["POST"])
    async def sync_root():
        _require_admin()
        reconciler = _services().reconciler
        election_id = await reconciler.active_election()
        result = await reconciler.publish(election_id)
        return jsonify(
            {
                "root": to_hex(result.root),
                "txRef": result.tx_ref,
                "electionId": result.election_id,
                "changed": result.changed,
            }
        )

    @app.route("/vote/<candidate_id>", methods=["POST"])
    async def vote_for(candidate_id: str):
        body = request.get_json(silent=True) or {}
        return jsonify(await cast_vote(candidate_id, body))

    @app.route("/vote", methods=["POST"])
    async def vote():
        body = request.get_json(silent=True) or {}
        return jsonify(await cast_vote(body.get("candidateId"), body))

    @app.route("/tx/<tx_ref>", methods=["GET"])
    async def tx_status(tx_ref: str):
        status = await _services().ledger.transaction_status(tx_ref)
        return jsonify({"txRef": tx_ref, "status": status})

    return app
