#!/usr/bin/env python3
"""
Stake Pool De-anonymizer

Links network participants to the stake pool they operate by correlating a
node's peer log with the explorer's pool -> blocks registry.

Pipeline:
1. Ingest peer observations {node_id, ip} and block announcements from the log
2. Stitch observations into players (shared IP or node id = same operator)
3. Rank every block's announcers by time (first announcer = order 0)
4. Fetch the pool registry (once, after 1-3)
5. Attribute players to pools: a pool's own node announces its blocks first
6. Consolidate players resolved to the same pool

The result is probabilistic inference from timing and identity evidence,
not proof of operation.

Usage:
    # Full run against a local explorer
    python3 scripts/deanonymize.py stake_pool_log.txt -o players.csv

    # Offline, with a registry saved by explorer_client.py
    python3 scripts/deanonymize.py stake_pool_log.txt --registry-json pools.json -f json

    # Keep unresolved players for audit
    python3 scripts/deanonymize.py stake_pool_log.txt --include-unresolved

Environment:
    EXPLORER_URL - GraphQL endpoint (see explorer_client.py for the rest)
"""

import argparse
import csv
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from announcement_timeline import (
    AnnouncementHistory,
    BlockAnnouncement,
    assign_announcements,
    build_timeline,
)
from consolidation import consolidate, unresolved_players
from explorer_client import EXPLORER_URL, ExplorerClient, ExplorerError, load_pool_registry
from identity_stitcher import IdentityIndex, Observation, Player, PlayerRegistry
from pool_attribution import AttributionState, resolve_pools
from stake_pool_log import LogReadStats, read_log

log = logging.getLogger("deanonymize")


@dataclass
class PipelineSummary:
    observations: int = 0
    announcements: int = 0
    malformed_events: int = 0
    stitch_passes: int = 0
    players: int = 0
    announcer_only_players: int = 0
    blocks: int = 0
    unique_pools: int = 0
    solved_pools: int = 0
    elimination_passes: int = 0
    consolidated_players: int = 0
    unresolved_players: int = 0


# ============================================================================
# Pipeline
# ============================================================================

class DeanonymizationPipeline:
    """
    Owns all state for one run.

    Stages must run in order: ingest -> stitch_identities -> build_timelines
    -> attribute -> consolidate. run() does this and fetches the pool
    registry exactly once, between timeline building and attribution.
    """

    def __init__(self, year: Optional[int] = None):
        self.year = year
        self.index = IdentityIndex()
        self.registry = PlayerRegistry(self.index)
        self.history = AnnouncementHistory()
        self.state = AttributionState()
        self.timeline = {}
        self.consolidated: List[Player] = []
        self.summary = PipelineSummary()

    @property
    def players(self) -> List[Player]:
        return self.registry.players

    def record_observation(self, node_id: str, ip: str) -> bool:
        if not node_id or not ip:
            self.summary.malformed_events += 1
            return False
        self.index.record_observation(node_id, ip)
        self.summary.observations += 1
        return True

    def record_announcement(self, announcement: BlockAnnouncement) -> bool:
        if not announcement.block_hash or not announcement.node_id:
            self.summary.malformed_events += 1
            return False
        self.history.record(announcement)
        self.summary.announcements += 1
        return True

    def ingest(self, events: Iterable) -> int:
        """Feed parsed log events. Returns how many were accepted."""
        accepted = 0
        for event in events:
            if isinstance(event, Observation):
                accepted += self.record_observation(event.node_id, event.ip)
            elif isinstance(event, BlockAnnouncement):
                accepted += self.record_announcement(event)
            else:
                self.summary.malformed_events += 1
        return accepted

    def stitch_identities(self) -> int:
        self.summary.stitch_passes = self.registry.stitch_until_stable()
        self.summary.players = len(self.registry)
        return self.summary.stitch_passes

    def build_timelines(self) -> int:
        self.timeline, dropped = build_timeline(self.history, self.year)
        self.summary.malformed_events += dropped
        self.summary.blocks = len(self.timeline)
        self.summary.announcer_only_players = assign_announcements(self.timeline, self.registry)
        self.summary.players = len(self.registry)
        return len(self.timeline)

    def attribute(self, pool_registry: Dict[str, Iterable[str]]) -> AttributionState:
        resolve_pools(self.players, pool_registry, self.state)
        self.summary.unique_pools = len(self.state.unique_pools)
        self.summary.solved_pools = len(self.state.solved_pools)
        self.summary.elimination_passes = self.state.elimination_passes
        return self.state

    def consolidate(self) -> List[Player]:
        self.consolidated = consolidate(self.players)
        self.summary.consolidated_players = len(self.consolidated)
        self.summary.unresolved_players = len(unresolved_players(self.players))
        return self.consolidated

    def unresolved(self) -> List[Player]:
        return unresolved_players(self.players)

    def run(self, fetch_registry: Callable[[], Dict[str, Set[str]]]) -> List[Player]:
        """
        Stitch, rank, fetch the registry, attribute and consolidate.

        ExplorerError from fetch_registry propagates; stitched players and
        timelines built so far stay available on the pipeline.
        """
        self.stitch_identities()
        self.build_timelines()

        log.info("Fetching pool registry...")
        pool_registry = fetch_registry()

        self.attribute(pool_registry)
        return self.consolidate()


# ============================================================================
# I/O Functions
# ============================================================================

CSV_FIELDS = ["pool_id", "known_ids", "known_ips", "block_count"]


def save_players(
    players: List[Player],
    filepath: str,
    format: str = "csv",
    unresolved: Optional[List[Player]] = None
):
    """Save player records. Unresolved players go to a separate list/file."""
    if format == "json":
        data = {"players": [p.to_dict() for p in players]}
        if unresolved is not None:
            data["unresolved"] = [p.to_dict() for p in unresolved]
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2)
        return

    _write_players_csv(players, filepath)
    if unresolved is not None:
        path = Path(filepath)
        _write_players_csv(unresolved, str(path.with_suffix(".unresolved.csv")))


def _write_players_csv(players: List[Player], filepath: str):
    with open(filepath, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for p in players:
            record = p.to_dict()
            writer.writerow({
                "pool_id": record["pool_id"] or "",
                "known_ids": json.dumps(record["known_ids"]),
                "known_ips": json.dumps(record["known_ips"]),
                "block_count": record["block_count"],
            })


def print_summary(summary: PipelineSummary, players: List[Player]):
    print(f"\nSummary:", file=sys.stderr)
    print(f"  Observations:        {summary.observations}", file=sys.stderr)
    print(f"  Block announcements: {summary.announcements}", file=sys.stderr)
    print(f"  Malformed (dropped): {summary.malformed_events}", file=sys.stderr)
    print(f"  Players stitched:    {summary.players} ({summary.stitch_passes} passes)", file=sys.stderr)
    print(f"  Candidate pools:     {summary.unique_pools}", file=sys.stderr)
    print(f"  Unresolved players:  {summary.unresolved_players}", file=sys.stderr)
    print(f"  Player Count:        {len(players)}", file=sys.stderr)

    if players:
        print(f"\n  Pool operators:", file=sys.stderr)
        for p in sorted(players, key=lambda x: -len(x.known_ids)):
            print(
                f"    {p.pool_id}: {len(p.known_ids)} node ids, {len(set(p.known_ips))} IPs",
                file=sys.stderr
            )


def main():
    parser = argparse.ArgumentParser(
        description="Attribute network participants to the stake pools they operate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python3 deanonymize.py stake_pool_log.txt -o players.csv
    python3 deanonymize.py stake_pool_log.txt --registry-json pools.json -f json
    python3 deanonymize.py stake_pool_log.txt --partial-output identities.json
        """
    )
    parser.add_argument("log_file", help="Node log file (e.g. stake_pool_log.txt)")
    parser.add_argument("--output", "-o", default="players.csv", help="Output file (default: players.csv)")
    parser.add_argument("--format", "-f", default="csv", choices=["csv", "json"], help="Output format (default: csv)")
    parser.add_argument("--registry-json", metavar="JSON_PATH", help="Load the pool registry from a file instead of the explorer")
    parser.add_argument("--explorer-url", default=EXPLORER_URL, help=f"Explorer GraphQL endpoint (default: {EXPLORER_URL})")
    parser.add_argument("--year", type=int, help="Year for log timestamps, which carry none (default: current year)")
    parser.add_argument("--include-unresolved", action="store_true", help="Also write players that could not be attributed")
    parser.add_argument("--partial-output", metavar="JSON_PATH", help="If the registry can't be fetched, save stitched identities here")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose/debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    log_path = Path(args.log_file)
    if not log_path.exists():
        log.error("Log file not found: %s", log_path)
        return 1

    pipeline = DeanonymizationPipeline(year=args.year)
    stats = LogReadStats()
    pipeline.ingest(read_log(log_path, stats))
    pipeline.summary.malformed_events += stats.malformed
    log.info(
        "Read %d lines: %d observations, %d announcements, %d malformed",
        stats.lines, stats.observations, stats.announcements, stats.malformed
    )

    if args.registry_json:
        def fetch_registry():
            try:
                return load_pool_registry(args.registry_json)
            except (OSError, json.JSONDecodeError) as e:
                raise ExplorerError(f"Could not load {args.registry_json}: {e}") from e
    else:
        fetch_registry = ExplorerClient(url=args.explorer_url).fetch_pool_registry

    try:
        players = pipeline.run(fetch_registry)
    except ExplorerError as e:
        log.error("Pool registry unavailable, attribution halted: %s", e)
        if args.partial_output:
            save_players(pipeline.players, args.partial_output, "json")
            log.info("Saved %d unattributed players to %s", len(pipeline.players), args.partial_output)
        return 1

    unresolved = pipeline.unresolved() if args.include_unresolved else None
    save_players(players, args.output, args.format, unresolved)
    print(f"\nSaved to {args.output}", file=sys.stderr)

    print_summary(pipeline.summary, players)
    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
