#!/usr/bin/env python3
"""
Identity Stitcher

Clusters raw {node_id, ip} observations into players, one per inferred
real-world operator. Two observations belong to the same player when they
share an IP address or a node id, directly or through a chain of others:

    node1 @ ip1, node2 @ ip1, node2 @ ip2  ->  one player
        known_ids = {node1, node2}
        known_ips = [ip1, ip2]

Stitching is a repeated scan over every observed IP. For each IP the players
already holding that IP, or any node id seen on it, are collected:

- no match:        a new player is seeded with the IP and its node ids
- exactly one:     the player is extended (new IP first, node ids on a later scan)
- two or more:     ambiguous, skipped; the players stay distinct

Scans repeat until one makes no change, which lets transitive links
(A-B via ip1, B-C via ip2) collapse over successive passes.

Usage:
    from identity_stitcher import IdentityIndex, PlayerRegistry
    index = IdentityIndex()
    index.record_observation("node1", "10.0.0.7")
    registry = PlayerRegistry(index)
    registry.stitch_until_stable()
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set

log = logging.getLogger("identity_stitcher")


# ============================================================================
# Data Structures
# ============================================================================

@dataclass
class Observation:
    """This node id was seen operating from this address."""
    node_id: str
    ip: str


@dataclass
class AnnouncementEntry:
    """A player's position among all announcers of one block."""
    block_hash: str
    order: int
    pool_ids: list = field(default_factory=list)  # tagged from the pool registry


@dataclass
class PoolCandidate:
    """A pool a player may operate, with its average announcement order."""
    pool_id: str
    rank: float


@dataclass
class Player:
    """One inferred network operator."""
    known_ids: set = field(default_factory=set)
    known_ips: list = field(default_factory=list)  # insertion order, no duplicates
    block_announcements: list = field(default_factory=list)
    potential_pool_ids: Optional[list] = None
    pool_id: Optional[str] = None

    def has_ip(self, ip: str) -> bool:
        return ip in self.known_ips

    def add_ip(self, ip: str) -> bool:
        if ip in self.known_ips:
            return False
        self.known_ips.append(ip)
        return True

    def add_ids(self, node_ids: Iterable[str]) -> bool:
        """Union in node ids. Returns True if any were new."""
        before = len(self.known_ids)
        self.known_ids.update(node_ids)
        return len(self.known_ids) != before

    def to_dict(self) -> dict:
        return {
            "pool_id": self.pool_id,
            "known_ids": sorted(self.known_ids),
            "known_ips": list(self.known_ips),
            "block_count": len({a.block_hash for a in self.block_announcements}),
            "potential_pool_ids": [
                {"pool_id": c.pool_id, "rank": c.rank}
                for c in (self.potential_pool_ids or [])
            ],
        }


# ============================================================================
# Identity Index
# ============================================================================

class IdentityIndex:
    """Bidirectional IP <-> node id observation graph."""

    def __init__(self):
        self.ip_to_nodes: Dict[str, Set[str]] = {}
        self.node_to_ips: Dict[str, Set[str]] = {}

    def record_observation(self, node_id: str, ip: str) -> bool:
        """
        Register a (node_id, ip) pair in both mappings.

        Re-observing a known pair is a no-op. Returns True if the pair is new.
        """
        nodes = self.ip_to_nodes.setdefault(ip, set())
        is_new = node_id not in nodes
        nodes.add(node_id)
        self.node_to_ips.setdefault(node_id, set()).add(ip)
        return is_new

    def pairs(self) -> Iterator[tuple]:
        """(ip, node_ids) in first-seen IP order."""
        return iter(self.ip_to_nodes.items())

    def __len__(self) -> int:
        return sum(len(nodes) for nodes in self.ip_to_nodes.values())


# ============================================================================
# Player Registry
# ============================================================================

class PlayerRegistry:
    """The evolving set of player clusters built from an IdentityIndex."""

    def __init__(self, index: Optional[IdentityIndex] = None):
        self.index = index if index is not None else IdentityIndex()
        self.players: List[Player] = []

    def __len__(self) -> int:
        return len(self.players)

    def __iter__(self) -> Iterator[Player]:
        return iter(self.players)

    def add(self, player: Player) -> Player:
        self.players.append(player)
        return player

    def matching(self, ip: str, node_ids: Set[str]) -> List[Player]:
        """Players that hold this IP or any of these node ids."""
        return [
            p for p in self.players
            if p.has_ip(ip) or not p.known_ids.isdisjoint(node_ids)
        ]

    def find_by_node_id(self, node_id: str) -> Optional[Player]:
        for player in self.players:
            if node_id in player.known_ids:
                return player
        return None

    def node_index(self) -> Dict[str, Player]:
        """node id -> owning player, for bulk lookups."""
        owners = {}
        for player in self.players:
            for node_id in player.known_ids:
                owners[node_id] = player
        return owners

    def stitch(self) -> int:
        """
        One scan over every observed IP.

        Returns the number of changes made (players created or extended).
        """
        changes = 0
        ambiguous = 0

        for ip, node_ids in self.index.pairs():
            aliases = self.matching(ip, node_ids)

            if len(aliases) > 1:
                ambiguous += 1
                continue

            if not aliases:
                self.players.append(Player(known_ids=set(node_ids), known_ips=[ip]))
                changes += 1
                continue

            player = aliases[0]
            if not player.has_ip(ip):
                player.add_ip(ip)
                changes += 1
            elif player.add_ids(node_ids):
                changes += 1

        log.debug(
            "Stitch pass: %d changes, %d ambiguous IPs, %d players",
            changes, ambiguous, len(self.players)
        )
        return changes

    def stitch_until_stable(self) -> int:
        """
        Repeat stitch() until a pass changes nothing.

        Returns the number of passes run, including the final no-op pass.
        """
        passes = 0
        while True:
            passes += 1
            if not self.stitch():
                break

        log.info("Stitched %d players in %d passes", len(self.players), passes)
        return passes
