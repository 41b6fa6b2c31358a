# store.py
"""
JSON-file document store for blocks.

The file holds {"indexes": {name: [fields]}, "docs": [block documents]}.
Documents are keyed by block hash. Writes go to a temp file and are moved
into place, so a crash mid-write leaves the previous file intact.
"""
import json
import os
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List

from blockchain import Block, MalformedBlockError

LOG = logging.getLogger("store")


class StoreError(RuntimeError):
    pass


class BlockStore:
    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    # ---------- file helpers ----------
    def _read(self) -> Dict:
        if not self.path.exists():
            return {"indexes": {}, "docs": []}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"cannot read {self.path}: {e}") from e
        if not isinstance(raw, dict) or not isinstance(raw.get("docs", []), list):
            raise StoreError(f"unexpected layout in {self.path}")
        if not isinstance(raw.get("indexes", {}), dict):
            # index definitions only help lookups; the documents are still usable
            LOG.warning("Ignoring malformed index definitions in %s", self.path)
            raw["indexes"] = {}
        raw.setdefault("indexes", {})
        raw.setdefault("docs", [])
        return raw

    def _write(self, raw: Dict) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(raw, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"cannot write {self.path}: {e}") from e

    # ---------- gateway ----------
    def ensure_index(self, fields: List[str], name: str = "block") -> str:
        """Record an index definition. Returns "created" or "exists"."""
        with self._lock:
            raw = self._read()
            if raw["indexes"].get(name) == list(fields):
                LOG.info("index exists")
                return "exists"
            raw["indexes"][name] = list(fields)
            self._write(raw)
            LOG.info("index created")
            return "created"

    def load_all(self) -> List[Block]:
        with self._lock:
            raw = self._read()
        blocks = []
        for doc in raw["docs"]:
            try:
                block = Block.from_dict(doc)
            except MalformedBlockError as e:
                raise StoreError(f"stored document is malformed: {e}") from e
            blocks.append(block)
        blocks.sort(key=lambda b: b.index)
        return blocks

    def append(self, block: Block) -> bool:
        """
        Store `block`. Appending a document that is already stored is a no-op
        and returns False. A different document under the same hash is refused.
        """
        doc = block.to_dict()
        with self._lock:
            raw = self._read()
            for existing in raw["docs"]:
                if existing.get("hash") != block.hash:
                    continue
                if existing == doc:
                    LOG.debug("block %s already stored", block.index)
                    return False
                raise StoreError(f"conflicting document already stored under hash {block.hash}")
            raw["docs"].append(doc)
            self._write(raw)
        LOG.info("block added %s", json.dumps(doc))
        return True

    def replace_all(self, blocks: Iterable[Block]) -> None:
        docs = [b.to_dict() for b in blocks]
        with self._lock:
            raw = self._read()
            raw["docs"] = docs
            self._write(raw)
        LOG.info("stored chain replaced, %d blocks", len(docs))
