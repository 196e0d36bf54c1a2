#!/usr/bin/env python3
"""
Merge resolved players that landed on the same pool.

Identity stitching can leave one operator split across several players
(e.g. a relay on a fresh IP with a fresh node id). When the resolver puts
them on the same pool they are folded into a single record here.
Unresolved players are not part of the consolidated output.
"""

import logging
from typing import Dict, Iterable, List

from identity_stitcher import Player

log = logging.getLogger("consolidation")


def merge_into(target: Player, other: Player) -> Player:
    """Absorb another player's ids, IPs and announcements into target."""
    target.known_ids.update(other.known_ids)
    target.known_ips.extend(other.known_ips)  # duplicates kept
    target.block_announcements.extend(other.block_announcements)
    return target


def consolidate(players: Iterable[Player]) -> List[Player]:
    """One Player per resolved pool, in the order pools were first seen."""
    by_pool: Dict[str, Player] = {}

    for player in players:
        if player.pool_id is None:
            continue

        merged = by_pool.get(player.pool_id)
        if merged is None:
            by_pool[player.pool_id] = Player(
                known_ids=set(player.known_ids),
                known_ips=list(player.known_ips),
                block_announcements=list(player.block_announcements),
                potential_pool_ids=player.potential_pool_ids,
                pool_id=player.pool_id,
            )
        else:
            merge_into(merged, player)

    log.info("Consolidated into %d pool operators", len(by_pool))
    return list(by_pool.values())


def unresolved_players(players: Iterable[Player]) -> List[Player]:
    """Players the resolver could not place, kept for audit output."""
    return [p for p in players if p.pool_id is None]
