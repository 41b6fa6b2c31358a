import json
import hashlib
import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

LOG = logging.getLogger("blockchain")

BLOCK_FIELDS = ["index", "previousHash", "timestamp", "data", "hash"]


class MalformedBlockError(ValueError):
    pass


class BlockConstructionError(RuntimeError):
    pass


class LedgerLoadError(RuntimeError):
    pass


def _freeze(value: Any) -> Any:
    """Copy a payload into read-only containers: mappings become proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value


def _as_text(value: Any) -> str:
    # numbers render the way a JSON number prints: 1465154705.0 -> "1465154705"
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return json.dumps(_thaw(value), sort_keys=True, separators=(",", ":"))


def calculate_hash(index: int, previous_hash: str, timestamp: float, data: Any) -> str:
    """SHA-512 hex digest over index + previous_hash + timestamp + data, no separators."""
    payload = _as_text(index) + previous_hash + _as_text(timestamp) + _as_text(data)
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Block:
    index: int
    previous_hash: str
    timestamp: float
    data: Any
    hash: str

    def __post_init__(self):
        # detach from the caller's payload so the hash stays valid
        object.__setattr__(self, "data", _freeze(self.data))

    def compute_hash(self) -> str:
        return calculate_hash(self.index, self.previous_hash, self.timestamp, self.data)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "previousHash": self.previous_hash,
            "timestamp": self.timestamp,
            "data": _thaw(self.data),
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, doc: Any) -> "Block":
        if not isinstance(doc, dict):
            raise MalformedBlockError("block must be an object")
        missing = [f for f in BLOCK_FIELDS if f not in doc]
        if missing:
            raise MalformedBlockError(f"block is missing fields: {', '.join(missing)}")
        index = doc["index"]
        timestamp = doc["timestamp"]
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise MalformedBlockError("index must be a non-negative integer")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MalformedBlockError("timestamp must be a number")
        if not isinstance(doc["previousHash"], str) or not isinstance(doc["hash"], str):
            raise MalformedBlockError("previousHash and hash must be strings")
        return cls(
            index=index,
            previous_hash=doc["previousHash"],
            timestamp=timestamp,
            data=doc["data"],
            hash=doc["hash"],
        )


def new_block(index: int, previous_hash: str, timestamp: float, data: Any) -> Block:
    data = _freeze(data)
    return Block(
        index=index,
        previous_hash=previous_hash,
        timestamp=timestamp,
        data=data,
        hash=calculate_hash(index, previous_hash, timestamp, data),
    )


# The hash is a fixed literal and does not match calculate_hash() of the other
# fields. Stored chains compare against this exact value.
GENESIS_BLOCK = Block(
    index=0,
    previous_hash="0",
    timestamp=1465154705,
    data="JSChain genesis block",
    hash="816534932c2b7154836da6afc367695e6337db8a921823784c14378abed4f7d7",
)


# ---------- Validation ----------
def link_error(candidate: Block, predecessor: Block) -> Optional[str]:
    """Return why `candidate` cannot follow `predecessor`, or None if it can."""
    if candidate.index != predecessor.index + 1:
        return "invalid index"
    if candidate.previous_hash != predecessor.hash:
        return "invalid previous hash"
    if candidate.compute_hash() != candidate.hash:
        return "invalid hash"
    return None


def is_valid_link(candidate: Block, predecessor: Block) -> bool:
    reason = link_error(candidate, predecessor)
    if reason:
        LOG.info("Block %s rejected: %s", candidate.index, reason)
        return False
    return True


def chain_error(blocks: Sequence[Block]) -> Optional[str]:
    """
    Check a whole chain: it must start with the genesis block and every block
    must link to the one before it. Stops at the first failure.
    """
    if not blocks:
        return "empty chain"
    if blocks[0] != GENESIS_BLOCK:
        return "genesis block mismatch"
    for i in range(1, len(blocks)):
        reason = link_error(blocks[i], blocks[i - 1])
        if reason:
            return f"block {i}: {reason}"
    return None


def is_valid_chain(blocks: Sequence[Block]) -> bool:
    reason = chain_error(blocks)
    if reason:
        LOG.info("Chain rejected: %s", reason)
        return False
    return True


# ---------- Ledger ----------
class Ledger:
    """
    Owns the current chain. Writers are serialized by a lock; the chain itself
    is an immutable tuple that is swapped whole, so readers never see a
    half-applied change. Blocks are forwarded to the store on a single
    background worker, in the order they were accepted.
    """

    def __init__(self, store=None, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._chain: Tuple[Block, ...] = ()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-store")

    def load(self) -> None:
        if self._store is None:
            blocks: List[Block] = []
        else:
            try:
                blocks = list(self._store.load_all())
            except Exception as e:
                raise LedgerLoadError(f"failed to read stored chain: {e}") from e

        if not blocks:
            LOG.info("Store is empty, starting from the genesis block")
            with self._lock:
                self._chain = (GENESIS_BLOCK,)
            self.persist(GENESIS_BLOCK)
            return

        if blocks[0] != GENESIS_BLOCK:
            raise LedgerLoadError("stored chain is invalid: genesis block mismatch")

        # A failed write can leave a gap; keep everything up to the first broken link.
        kept = [blocks[0]]
        for block in blocks[1:]:
            reason = link_error(block, kept[-1])
            if reason:
                LOG.warning(
                    "Stored chain breaks at block %s (%s), keeping the first %d blocks",
                    block.index, reason, len(kept),
                )
                break
            kept.append(block)

        with self._lock:
            self._chain = tuple(kept)
            if len(kept) < len(blocks):
                self._submit(self._replace_stored, self._chain)
        LOG.info("Loaded %d blocks from store", len(kept))

    def latest(self) -> Block:
        return self._chain[-1]

    def snapshot(self) -> Tuple[Block, ...]:
        return self._chain

    def __len__(self) -> int:
        return len(self._chain)

    def mine(self, data: Any) -> Block:
        with self._lock:
            previous = self._chain[-1]
            block = new_block(previous.index + 1, previous.hash, self._clock(), data)
            reason = link_error(block, previous)
            if reason:
                raise BlockConstructionError(f"could not build block {block.index}: {reason}")
            self._chain = self._chain + (block,)
            # queued under the lock so the store sees writes in chain order
            self.persist(block)
        LOG.info("Block %s added: %s", block.index, block.hash)
        return block

    def replace(self, candidate: Iterable[Block]) -> bool:
        replaced, _ = self.offer(candidate)
        return replaced

    def offer(self, candidate: Iterable[Block]) -> Tuple[bool, Optional[str]]:
        """
        Apply the longest-valid-chain rule. Returns (replaced, reason) where
        reason explains why an invalid candidate was rejected. A valid
        candidate that is not longer gives (False, None).
        """
        blocks = tuple(candidate)
        with self._lock:
            reason = chain_error(blocks)
            if reason:
                LOG.info("Chain rejected: %s", reason)
                return False, reason
            if len(blocks) <= len(self._chain):
                LOG.info(
                    "Received chain of length %d is not longer than current %d, keeping current",
                    len(blocks), len(self._chain),
                )
                return False, None
            self._chain = blocks
            self._submit(self._replace_stored, blocks)
        LOG.info("Received chain is valid. Replaced current chain, length now %d", len(blocks))
        return True, None

    # ---------- persistence ----------
    def persist(self, block: Block) -> Optional[Future]:
        """Queue `block` for the store without validating it."""
        return self._submit(self._append_stored, block)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued store write has finished."""
        self._writer.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._writer.shutdown(wait=True)

    def _submit(self, fn, arg) -> Optional[Future]:
        if self._store is None:
            return None
        fut = self._writer.submit(fn, arg)
        fut.add_done_callback(self._report_write)
        return fut

    def _append_stored(self, block: Block) -> bool:
        return self._store.append(block)

    def _replace_stored(self, blocks: Tuple[Block, ...]) -> None:
        self._store.replace_all(blocks)

    @staticmethod
    def _report_write(fut: Future) -> None:
        err = fut.exception()
        if err is not None:
            LOG.warning("Failed to persist to store: %s", err)
