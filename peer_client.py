# peer_client.py
"""
Pulls a candidate chain from another node's GET /blocks.

Public functions:
- fetch_chain(peer_url, timeout=FETCH_TIMEOUT)
"""

import logging
from typing import Any, Dict, List

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from blockchain import Block, MalformedBlockError

LOG = logging.getLogger("peer_client")

FETCH_TIMEOUT = 10
FETCH_RETRIES = 2


class PeerError(RuntimeError):
    pass


def _make_session(retries: int = FETCH_RETRIES, backoff_factor: float = 0.5, status_forcelist=(500, 502, 503, 504)) -> requests.Session:
    """
    Create a requests.Session with a Retry policy for idempotent reads.
    """
    s = requests.Session()
    retry_kwargs: Dict[str, Any] = {
        "total": retries,
        "backoff_factor": backoff_factor,
        "status_forcelist": status_forcelist,
        "allowed_methods": frozenset(["GET", "HEAD"]),
    }
    adapter = HTTPAdapter(max_retries=Retry(**retry_kwargs))
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


def fetch_chain(peer_url: str, timeout: float = FETCH_TIMEOUT, session: requests.Session = None) -> List[Block]:
    """
    GET <peer_url>/blocks and parse every entry into a Block.
    Raises PeerError on transport failures or a response that is not a list of blocks.
    Validity of the chain itself is left to the caller.
    """
    if not peer_url:
        raise PeerError("no peer url given")
    url = f"{peer_url.rstrip('/')}/blocks"
    s = session or _make_session()
    try:
        r = s.get(url, timeout=timeout)
        r.raise_for_status()
        docs = r.json()
    except requests.RequestException as e:
        LOG.warning("fetch_chain: request to %s failed: %s", url, e)
        raise PeerError(f"request to {url} failed: {e}") from e
    except ValueError as e:
        raise PeerError(f"peer {url} did not return JSON") from e

    if not isinstance(docs, list):
        raise PeerError(f"peer {url} did not return a list of blocks")
    try:
        blocks = [Block.from_dict(d) for d in docs]
    except MalformedBlockError as e:
        raise PeerError(f"peer {url} returned a malformed block: {e}") from e
    LOG.info("fetch_chain: got %d blocks from %s", len(blocks), url)
    return blocks
