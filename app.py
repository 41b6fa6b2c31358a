# app.py
import os
import sys
import logging
import argparse
from pathlib import Path

from flask import Flask, request, jsonify

import peer_client
from blockchain import (
    BLOCK_FIELDS,
    GENESIS_BLOCK,
    Block,
    BlockConstructionError,
    Ledger,
    LedgerLoadError,
    MalformedBlockError,
)
from store import BlockStore, StoreError

# ---------- Configuration ----------
LOG = logging.getLogger("app")

BASE_DIR = Path(__file__).resolve().parent
HTTP_HOST = os.environ.get("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.environ.get("HTTP_PORT", "3001"))
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR / "data")))
CHAIN_FILE = "chain.json"
PEER_TIMEOUT = float(os.environ.get("PEER_TIMEOUT", str(peer_client.FETCH_TIMEOUT)))


def _parse_blocks(payload):
    if isinstance(payload, dict):
        payload = payload.get("blocks")
    if not isinstance(payload, list):
        raise MalformedBlockError("expected a list of blocks")
    return [Block.from_dict(doc) for doc in payload]


def create_app(ledger: Ledger) -> Flask:
    app = Flask(__name__)
    app.config["LEDGER"] = ledger

    # ---------- Routes ----------
    @app.route("/")
    def index():
        return "Welcome to hashchain"

    @app.route("/blocks", methods=["GET"])
    def get_blocks():
        return jsonify([b.to_dict() for b in ledger.snapshot()])

    @app.route("/blocks/latest", methods=["GET"])
    def get_latest():
        return jsonify(ledger.latest().to_dict())

    @app.route("/mineBlock", methods=["POST"])
    def mine_block():
        body = request.get_json(silent=True)
        if not isinstance(body, dict) or "data" not in body:
            return jsonify({"error": "request body must be JSON with a 'data' field"}), 400
        try:
            block = ledger.mine(body["data"])
        except BlockConstructionError as e:
            LOG.error("Block construction failed: %s", e)
            return jsonify({"error": str(e)}), 500
        return jsonify(block.to_dict())

    @app.route("/generategenesis", methods=["POST"])
    def generate_genesis():
        ledger.persist(GENESIS_BLOCK)
        return jsonify(GENESIS_BLOCK.to_dict())

    @app.route("/replaceChain", methods=["POST"])
    def replace_chain():
        try:
            candidate = _parse_blocks(request.get_json(silent=True))
        except MalformedBlockError as e:
            return jsonify({"error": str(e)}), 400
        return _apply_candidate(candidate)

    @app.route("/sync", methods=["POST"])
    def sync():
        body = request.get_json(silent=True) or {}
        peer = body.get("peer") if isinstance(body, dict) else None
        if not peer:
            return jsonify({"error": "request body must be JSON with a 'peer' url"}), 400
        try:
            candidate = peer_client.fetch_chain(peer, timeout=PEER_TIMEOUT)
        except peer_client.PeerError as e:
            return jsonify({"error": str(e)}), 502
        return _apply_candidate(candidate)

    def _apply_candidate(candidate):
        replaced, reason = ledger.offer(candidate)
        if replaced:
            return jsonify({"replaced": True, "length": len(ledger)})
        if reason:
            return jsonify({"error": f"received chain is invalid: {reason}"}), 400
        return jsonify({"replaced": False, "length": len(ledger)})

    return app


# ---------- Run ----------
def main(argv=None):
    parser = argparse.ArgumentParser(description="hashchain node")
    parser.add_argument("--host", default=HTTP_HOST)
    parser.add_argument("--port", type=int, default=HTTP_PORT)
    parser.add_argument("--data-dir", default=str(DATA_DIR))
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    store = BlockStore(Path(args.data_dir) / CHAIN_FILE)
    try:
        store.ensure_index(BLOCK_FIELDS, name="block")
    except StoreError as e:
        LOG.warning("Could not create store index: %s", e)

    ledger = Ledger(store)
    try:
        ledger.load()
    except LedgerLoadError as e:
        LOG.error("Startup failed, not serving: %s", e)
        sys.exit(1)

    app = create_app(ledger)
    LOG.info("Listening http on port: %s  data=%s", args.port, args.data_dir)
    try:
        app.run(host=args.host, port=args.port)
    finally:
        ledger.close()


if __name__ == "__main__":
    main()
