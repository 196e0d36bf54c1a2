#!/usr/bin/env python3
"""
Ledger Explorer Client

Fetches the pool -> blocks registry from a node's GraphQL explorer. This is
the one piece of ground truth the attribution pipeline relies on: which
stake pool produced which block.

Usage:
    # Dump the registry to JSON (reusable with deanonymize.py --registry-json)
    python3 scripts/explorer_client.py -o pools.json

    # Against a remote explorer
    python3 scripts/explorer_client.py --url http://10.0.0.2:3100/explorer/graphql -o pools.json

Environment:
    EXPLORER_URL        - GraphQL endpoint (default: http://localhost:3100/explorer/graphql)
    EXPLORER_PAGE_SIZE  - Items per page (default: 100)
    EXPLORER_TIMEOUT    - Request timeout in seconds (default: 30)
    EXPLORER_RATE_LIMIT - Requests per second (default: 5)
"""

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

import requests
from dotenv import load_dotenv

SCRIPT_DIR = Path(__file__).parent
PROJECT_DIR = SCRIPT_DIR.parent

for env_path in [SCRIPT_DIR / ".env", PROJECT_DIR / ".env"]:
    if env_path.exists():
        load_dotenv(env_path)
        break

EXPLORER_URL = os.getenv("EXPLORER_URL", "http://localhost:3100/explorer/graphql")
PAGE_SIZE = int(os.getenv("EXPLORER_PAGE_SIZE", "100"))
TIMEOUT = float(os.getenv("EXPLORER_TIMEOUT", "30"))
RATE_LIMIT = float(os.getenv("EXPLORER_RATE_LIMIT", "5"))

log = logging.getLogger("explorer_client")


STAKE_POOLS_QUERY = """
query StakePools($first: Int!, $after: String) {
    allStakePools(first: $first, after: $after) {
        edges {
            node {
                id
                blocks(first: $first) {
                    edges { node { id } }
                    pageInfo { hasNextPage endCursor }
                }
            }
        }
        pageInfo { hasNextPage endCursor }
    }
}
"""

POOL_BLOCKS_QUERY = """
query PoolBlocks($id: PoolId!, $first: Int!, $after: String) {
    stakePool(id: $id) {
        blocks(first: $first, after: $after) {
            edges { node { id } }
            pageInfo { hasNextPage endCursor }
        }
    }
}
"""


class ExplorerError(Exception):
    """The explorer could not be queried or returned an unusable response."""


# ============================================================================
# API Client
# ============================================================================

class ExplorerClient:
    """GraphQL client for the ledger explorer."""

    def __init__(
        self,
        url: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        rate_limit: Optional[float] = None
    ):
        self.url = url or EXPLORER_URL
        self.page_size = page_size or PAGE_SIZE
        self.timeout = timeout or TIMEOUT
        rate = RATE_LIMIT if rate_limit is None else rate_limit
        self.min_interval = 1.0 / rate if rate > 0 else 0.0  # <= 0 disables throttling
        self.last_call = 0.0

    def _wait(self):
        elapsed = time.time() - self.last_call
        if elapsed < self.min_interval:
            time.sleep(self.min_interval - elapsed)
        self.last_call = time.time()

    def query(self, query: str, variables: Optional[dict] = None) -> dict:
        """Execute a GraphQL query and return its ``data`` payload."""
        self._wait()

        try:
            resp = requests.post(
                self.url,
                json={"query": query, "variables": variables or {}},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as e:
            raise ExplorerError(f"Explorer request to {self.url} failed: {e}") from e
        except ValueError as e:
            raise ExplorerError(f"Explorer returned invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ExplorerError("Explorer returned an unexpected payload")
        if payload.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
            raise ExplorerError(f"Explorer query failed: {messages}")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise ExplorerError("Explorer response has no data")
        return data

    def iter_stake_pools(self) -> Iterator[dict]:
        """Yield every stake pool node, following allStakePools pagination."""
        after = None
        seen = set()

        while True:
            data = self.query(STAKE_POOLS_QUERY, {"first": self.page_size, "after": after})
            connection = data.get("allStakePools")
            if not isinstance(connection, dict):
                raise ExplorerError("Explorer response has no allStakePools connection")
            edges, has_next, after = _unpack_connection(connection, "allStakePools")
            if has_next:
                _check_cursor_advances(after, seen, "allStakePools")

            for edge in edges:
                node = (edge or {}).get("node")
                if node:
                    yield node

            if not has_next:
                break

    def get_pool_blocks(self, pool_id: str, after: Optional[str] = None) -> List[str]:
        """All block hashes for one pool, starting after a cursor."""
        hashes = []
        seen = {after} if after else set()

        while True:
            data = self.query(
                POOL_BLOCKS_QUERY,
                {"id": pool_id, "first": self.page_size, "after": after}
            )
            pool = data.get("stakePool")
            if not isinstance(pool, dict):
                raise ExplorerError(f"Stake pool {pool_id} not found")

            edges, has_next, after = _unpack_connection(pool.get("blocks") or {}, "blocks")
            if has_next:
                _check_cursor_advances(after, seen, f"blocks of {pool_id}")
            hashes.extend(_block_ids(edges))

            if not has_next:
                break

        return hashes

    def fetch_pool_registry(self) -> Dict[str, Set[str]]:
        """
        Build {pool_id: {block_hash, ...}} for every stake pool.

        Raises ExplorerError if the explorer is unreachable or answers badly.
        """
        registry = {}

        for pool in self.iter_stake_pools():
            pool_id = pool.get("id")
            if not pool_id:
                continue

            edges, has_next, cursor = _unpack_connection(pool.get("blocks") or {}, "blocks")
            hashes = set(_block_ids(edges))
            if has_next:
                hashes.update(self.get_pool_blocks(pool_id, after=cursor))

            registry.setdefault(pool_id, set()).update(hashes)

        log.info(
            "Fetched %d stake pools with %d blocks from %s",
            len(registry), sum(len(b) for b in registry.values()), self.url
        )
        return registry


def _unpack_connection(connection: dict, name: str) -> Tuple[list, bool, Optional[str]]:
    """(edges, hasNextPage, endCursor) from a GraphQL connection."""
    if not isinstance(connection, dict):
        raise ExplorerError(f"Malformed {name} connection")

    edges = connection.get("edges") or []
    page_info = connection.get("pageInfo") or {}
    has_next = bool(page_info.get("hasNextPage"))
    cursor = page_info.get("endCursor")

    if has_next and not cursor:
        raise ExplorerError(f"{name} reports more pages but no cursor")
    return edges, has_next, cursor


def _check_cursor_advances(cursor: str, seen: set, name: str):
    """Guard against a server that hands back a cursor it already gave."""
    if cursor in seen:
        raise ExplorerError(f"{name} pagination repeated cursor {cursor!r}")
    seen.add(cursor)


def _block_ids(edges: list) -> List[str]:
    ids = []
    for edge in edges:
        node = (edge or {}).get("node") or {}
        if node.get("id"):
            ids.append(node["id"])
    return ids


# ============================================================================
# I/O Functions
# ============================================================================

def load_pool_registry(filepath: Union[str, Path]) -> Dict[str, Set[str]]:
    """Load {pool_id: [block_hash, ...]} from a JSON file."""
    with open(filepath, "r") as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ExplorerError(f"{filepath}: expected an object of pool_id -> block hashes")

    return {pool_id: set(hashes or []) for pool_id, hashes in data.items()}


def save_pool_registry(registry: Dict[str, Set[str]], filepath: Union[str, Path]):
    with open(filepath, "w") as f:
        json.dump({pool_id: sorted(hashes) for pool_id, hashes in registry.items()}, f, indent=2)


def main():
    parser = argparse.ArgumentParser(description="Fetch the stake pool -> blocks registry")
    parser.add_argument("--url", default=EXPLORER_URL, help=f"GraphQL endpoint (default: {EXPLORER_URL})")
    parser.add_argument("--output", "-o", default="pools.json", help="Output JSON file (default: pools.json)")
    parser.add_argument("--page-size", type=int, default=PAGE_SIZE, help=f"Items per page (default: {PAGE_SIZE})")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    client = ExplorerClient(url=args.url, page_size=args.page_size)
    try:
        registry = client.fetch_pool_registry()
    except ExplorerError as e:
        log.error("%s", e)
        return 1

    save_pool_registry(registry, args.output)
    print(f"Saved {len(registry)} pools to {args.output}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
