#!/usr/bin/env python3
"""
Pool Attribution Resolver

Assigns players to the stake pool they operate, using the explorer's
pool -> blocks registry as the only ground truth.

1. Tagging: every announcement of a block is tagged with the pool that
   produced it.
2. Ranking: per player and pool, rank = average announcement order over
   that pool's blocks. A pool's own node announces its blocks first, so
   only pools ranked exactly 0 are kept as candidates.
3. Elimination: players with a single candidate are resolved first; their
   pools are then struck from everyone else's candidate lists, which can
   leave other players with a single candidate. Repeat until a pass
   resolves nobody.

Example:
    P1 candidates [A, B], P2 candidates [A, B], P3 candidates [A]
    pass 1: P3 -> A
    pass 2: P1 -> B, P2 -> B   (A solved before this pass)

Players left with zero or several candidates stay unresolved. That is an
expected outcome, not an error.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from identity_stitcher import Player, PoolCandidate

log = logging.getLogger("pool_attribution")


@dataclass
class AttributionState:
    """Elimination bookkeeping for one resolver run."""
    unique_pools: set = field(default_factory=set)   # every zero-rank candidate seen
    solved_pools: set = field(default_factory=set)   # only ever grows
    elimination_passes: int = 0
    conflicting_blocks: dict = field(default_factory=dict)  # block_hash -> [pool_id, ...]


# ============================================================================
# Step A: Pool Tagging
# ============================================================================

def tag_announcements(
    players: Iterable[Player],
    pool_registry: Dict[str, Iterable[str]],
    state: Optional[AttributionState] = None
) -> int:
    """
    Tag each player's announcements with the pool that produced the block.

    A block claimed by more than one pool keeps every tag; the conflict is
    recorded on the state and logged. Returns the number of tags applied.
    """
    if state is None:
        state = AttributionState()

    by_block = defaultdict(list)
    for player in players:
        for entry in player.block_announcements:
            by_block[entry.block_hash].append(entry)

    claimed_by = defaultdict(list)
    tagged = 0

    for pool_id, block_hashes in pool_registry.items():
        for block_hash in block_hashes:
            claimed_by[block_hash].append(pool_id)
            for entry in by_block.get(block_hash, []):
                if pool_id not in entry.pool_ids:
                    entry.pool_ids.append(pool_id)
                    tagged += 1

    for block_hash, pool_ids in claimed_by.items():
        if len(pool_ids) > 1:
            state.conflicting_blocks[block_hash] = pool_ids
            log.warning("Block %s claimed by %d pools: %s", block_hash, len(pool_ids), ", ".join(pool_ids))

    log.info("Tagged %d announcements across %d blocks", tagged, len(claimed_by))
    return tagged


# ============================================================================
# Step B: Candidate Ranking
# ============================================================================

def rank_pools(player: Player) -> List[PoolCandidate]:
    """Average announcement order per pool, over the player's tagged announcements."""
    tally = {}
    distance = {}

    for entry in player.block_announcements:
        for pool_id in entry.pool_ids:
            if pool_id not in tally:
                tally[pool_id] = 0
                distance[pool_id] = 0
            tally[pool_id] += 1
            distance[pool_id] += entry.order

    return [
        PoolCandidate(pool_id=pool_id, rank=distance[pool_id] / tally[pool_id])
        for pool_id in tally
    ]


def assign_candidates(players: Iterable[Player], state: AttributionState) -> int:
    """
    Set potential_pool_ids on every player with tagged announcements.

    Only zero-rank pools are kept. Players with no tagged announcement keep
    potential_pool_ids = None. Returns the number of players with at least
    one candidate.
    """
    with_candidates = 0

    for player in players:
        ranks = rank_pools(player)
        if not ranks:
            continue

        player.potential_pool_ids = [c for c in ranks if c.rank == 0]
        for candidate in player.potential_pool_ids:
            state.unique_pools.add(candidate.pool_id)
        if player.potential_pool_ids:
            with_candidates += 1

    log.info(
        "%d players have candidate pools (%d distinct pools)",
        with_candidates, len(state.unique_pools)
    )
    return with_candidates


# ============================================================================
# Step C: Elimination
# ============================================================================

def eliminate(players: List[Player], state: AttributionState) -> int:
    """
    Process-of-elimination fixpoint.

    Candidates are struck against the pools solved before the current pass,
    so players sharing a candidate list resolve alike within one pass.
    Returns the number of passes that resolved at least one player.
    """
    passes = 0

    while True:
        resolved = 0
        solved_before = set(state.solved_pools)

        for player in players:
            if player.pool_id is not None or not player.potential_pool_ids:
                continue

            candidates = player.potential_pool_ids
            if len(candidates) != 1:
                candidates = [c for c in candidates if c.pool_id not in solved_before]

            if len(candidates) == 1:
                player.pool_id = candidates[0].pool_id
                state.solved_pools.add(player.pool_id)
                resolved += 1

        if not resolved:
            break

        passes += 1
        log.debug("Elimination pass %d: resolved %d players", passes, resolved)

    state.elimination_passes = passes
    return passes


def resolve_pools(
    players: List[Player],
    pool_registry: Dict[str, Iterable[str]],
    state: Optional[AttributionState] = None
) -> AttributionState:
    """Run tagging, ranking and elimination over all players."""
    if state is None:
        state = AttributionState()

    tag_announcements(players, pool_registry, state)
    assign_candidates(players, state)
    eliminate(players, state)

    resolved = sum(1 for p in players if p.pool_id is not None)
    log.info(
        "Resolved %d of %d players to %d pools in %d passes",
        resolved, len(players), len(state.solved_pools), state.elimination_passes
    )
    return state
