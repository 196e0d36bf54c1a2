#!/usr/bin/env python3
"""
Tests for pool tagging, candidate ranking and the elimination fixpoint.

Run: python3 -m pytest scripts/tests/test_pool_attribution.py -v
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from identity_stitcher import AnnouncementEntry, Player, PoolCandidate
from pool_attribution import (
    AttributionState,
    assign_candidates,
    eliminate,
    rank_pools,
    resolve_pools,
    tag_announcements,
)


def announcer(*entries, node_id="n"):
    """Player announcing (block_hash, order) pairs."""
    return Player(
        known_ids={node_id},
        block_announcements=[AnnouncementEntry(block_hash=b, order=o) for b, o in entries],
    )


def candidates(*pool_ids):
    return [PoolCandidate(pool_id=p, rank=0.0) for p in pool_ids]


class TestTagging:

    def test_announcements_tagged_with_producing_pool(self):
        p1 = announcer(("b1", 0), ("b2", 1))
        p2 = announcer(("b1", 1))

        tagged = tag_announcements([p1, p2], {"X": {"b1"}, "Y": {"b2", "b9"}})

        assert tagged == 3
        assert [a.pool_ids for a in p1.block_announcements] == [["X"], ["Y"]]
        assert p2.block_announcements[0].pool_ids == ["X"]

    def test_untagged_block_keeps_no_pool(self):
        p = announcer(("orphan", 0))
        tag_announcements([p], {"X": {"b1"}})
        assert p.block_announcements[0].pool_ids == []

    def test_block_claimed_by_two_pools_keeps_both_tags(self):
        p = announcer(("b1", 0))
        state = AttributionState()

        tag_announcements([p], {"X": ["b1"], "Y": ["b1"]}, state)

        assert p.block_announcements[0].pool_ids == ["X", "Y"]
        assert state.conflicting_blocks == {"b1": ["X", "Y"]}


class TestCandidateRanking:

    def test_rank_is_average_order_per_pool(self):
        p = announcer(("x1", 0), ("x2", 2), ("y1", 0))
        tag_announcements([p], {"X": {"x1", "x2"}, "Y": {"y1"}})

        ranks = {c.pool_id: c.rank for c in rank_pools(p)}

        assert ranks == {"X": 1.0, "Y": 0.0}

    def test_only_zero_rank_pools_are_candidates(self):
        p = announcer(("x1", 0), ("y1", 2))
        state = AttributionState()
        tag_announcements([p], {"X": {"x1"}, "Y": {"y1"}})

        assign_candidates([p], state)

        assert p.potential_pool_ids == [PoolCandidate(pool_id="X", rank=0.0)]
        assert state.unique_pools == {"X"}

    def test_relay_only_player_has_empty_candidates(self):
        p = announcer(("x1", 1), ("x2", 3))
        tag_announcements([p], {"X": {"x1", "x2"}})

        assign_candidates([p], AttributionState())

        assert p.potential_pool_ids == []

    def test_player_without_tagged_blocks_keeps_none(self):
        p = announcer(("unknown", 0))
        assign_candidates([p], AttributionState())
        assert p.potential_pool_ids is None


class TestElimination:

    def test_single_candidate_resolves_immediately(self):
        p = Player(potential_pool_ids=candidates("A"))
        state = AttributionState()

        passes = eliminate([p], state)

        assert p.pool_id == "A"
        assert state.solved_pools == {"A"}
        assert passes == 1

    def test_solved_pools_eliminate_shared_candidates(self):
        p1 = Player(potential_pool_ids=candidates("A", "B"))
        p2 = Player(potential_pool_ids=candidates("A", "B"))
        p3 = Player(potential_pool_ids=candidates("A"))
        state = AttributionState()

        passes = eliminate([p1, p2, p3], state)

        assert p3.pool_id == "A"
        assert p1.pool_id == "B"
        assert p2.pool_id == "B"
        assert state.solved_pools == {"A", "B"}
        assert passes == 2

    def test_players_sharing_candidates_resolve_in_same_pass(self):
        # The single-candidate player comes first, so A is solved mid-pass.
        p3 = Player(potential_pool_ids=candidates("A"))
        p1 = Player(potential_pool_ids=candidates("A", "B"))
        p2 = Player(potential_pool_ids=candidates("A", "B"))
        state = AttributionState()

        passes = eliminate([p3, p1, p2], state)

        assert p3.pool_id == "A"
        assert p1.pool_id == "B"
        assert p2.pool_id == "B"
        assert state.solved_pools == {"A", "B"}
        assert passes == 2

    def test_elimination_compares_by_pool_id(self):
        p = Player(potential_pool_ids=[PoolCandidate("A", 0.0), PoolCandidate("B", 0.0)])
        state = AttributionState(solved_pools={"A"})

        eliminate([p], state)

        assert p.pool_id == "B"

    def test_empty_candidates_never_resolve(self):
        p = Player(potential_pool_ids=[])
        q = Player()
        state = AttributionState()

        assert eliminate([p, q], state) == 0
        assert p.pool_id is None
        assert q.pool_id is None

    def test_permanent_ambiguity_stays_unresolved(self):
        p1 = Player(potential_pool_ids=candidates("A", "B"))
        p2 = Player(potential_pool_ids=candidates("A", "B"))

        eliminate([p1, p2], AttributionState())

        assert p1.pool_id is None
        assert p2.pool_id is None

    def test_already_resolved_player_is_untouched(self):
        p = Player(potential_pool_ids=candidates("A"), pool_id="Z")
        state = AttributionState()

        eliminate([p], state)

        assert p.pool_id == "Z"
        assert state.solved_pools == set()

    def test_chain_terminates_within_pool_count(self):
        """Each pass unlocks exactly one more pool: A, then B, then C, then D."""
        players = [
            Player(potential_pool_ids=candidates("A", "B", "C", "D")),
            Player(potential_pool_ids=candidates("A", "B", "C")),
            Player(potential_pool_ids=candidates("A", "B")),
            Player(potential_pool_ids=candidates("A")),
        ]
        state = AttributionState()

        passes = eliminate(players, state)

        assert [p.pool_id for p in players] == ["D", "C", "B", "A"]
        assert passes <= 4
        assert state.solved_pools == {"A", "B", "C", "D"}

    def test_rerun_after_fixpoint_changes_nothing(self):
        players = [
            Player(potential_pool_ids=candidates("A", "B")),
            Player(potential_pool_ids=candidates("A")),
        ]
        state = AttributionState()
        eliminate(players, state)
        solved = set(state.solved_pools)

        assert eliminate(players, state) == 0
        assert state.solved_pools == solved


class TestResolvePools:

    def test_end_to_end_over_tagged_announcements(self):
        producer_x = announcer(("x1", 0), ("y1", 1), node_id="px")
        producer_y = announcer(("x1", 1), ("y1", 0), node_id="py")
        relay = announcer(("x1", 2), ("y1", 2), node_id="relay")
        players = [producer_x, producer_y, relay]

        state = resolve_pools(players, {"X": {"x1"}, "Y": {"y1"}})

        assert producer_x.pool_id == "X"
        assert producer_y.pool_id == "Y"
        assert relay.pool_id is None
        assert state.unique_pools == {"X", "Y"}
        assert state.solved_pools == {"X", "Y"}
