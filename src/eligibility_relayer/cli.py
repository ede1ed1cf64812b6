"""Command line entry point.

Usage examples:
    eligibility-relayer serve --config relayer.yaml
    eligibility-relayer merkle-root
    eligibility-relayer sync-root --admin-token <token>
    eligibility-relayer vote --candidate 2 --identity 12345678 --evidence <fingerprint>
"""

from pathlib import Path
import argparse
import asyncio
import json
import logging

import requests


BASE = "http://127.0.0.1:3000"

logger = logging.getLogger(__name__)


def _show(r: requests.Response):
    try:
        print(json.dumps(r.json(), indent=2))
    except ValueError:
        print(r.status_code, r.text)


def merkle_root(base: str):
    r = requests.get(f"{base}/merkle-root", timeout=10)
    _show(r)


def sync_root(base: str, admin_token: str = ""):
    headers = {"X-Admin-Token": admin_token} if admin_token else {}
    # publishing waits for on-chain confirmation
    r = requests.post(f"{base}/admin/sync-root", headers=headers, timeout=180)
    _show(r)


def vote(base: str, candidate: int, identity: str, evidence: str):
    body = {"identityKey": identity, "biometricEvidence": evidence}
    r = requests.post(f"{base}/vote/{candidate}", json=body, timeout=180)
    _show(r)


def serve(config_path: str = ""):
    from .config import load_config, setup_logging
    from .server import create_app

    config = load_config(Path(config_path) if config_path else None)
    setup_logging(config)
    app = create_app(config)
    ledger = app.extensions["eligibility_relayer"].ledger
    asyncio.run(ledger.check_deployed())
    election_id = asyncio.run(ledger.current_election_id())
    logger.info("contract OK at %s, current election %d", ledger.address, election_id)
    app.run(host=config.host, port=config.port, threaded=True)


def main():
    p = argparse.ArgumentParser(prog="eligibility-relayer")
    p.add_argument("--base", default=BASE, help="relayer base URL")
    sub = p.add_subparsers(dest="cmd")
    s = sub.add_parser("serve")
    s.add_argument("--config", default="")
    sub.add_parser("merkle-root")
    sr = sub.add_parser("sync-root")
    sr.add_argument("--admin-token", default="")
    v = sub.add_parser("vote")
    v.add_argument("--candidate", type=int, required=True)
    v.add_argument("--identity", required=True)
    v.add_argument("--evidence", required=True)
    args = p.parse_args()
    if args.cmd == "serve":
        serve(args.config)
    elif args.cmd == "merkle-root":
        merkle_root(args.base)
    elif args.cmd == "sync-root":
        sync_root(args.base, args.admin_token)
    elif args.cmd == "vote":
        vote(args.base, args.candidate, args.identity, args.evidence)
    else:
        p.print_help()


if __name__ == "__main__":
    main()
