#!/usr/bin/env python3
"""
Announcement Timeline

Ranks the announcers of every block by time. The first node to announce a
block gets order 0, the next order 1, and so on. A node that produced the
block itself (or sits right next to the producer) consistently announces at
order 0; relays further away announce later.

Timestamps are normalized to integer epoch seconds before sorting. Ties keep
their original observation order (stable sort), so two nodes announcing in the
same second are still ranked 0 and 1 in the order they were logged.

A node announcing the same block more than once is ranked once, at its
earliest announcement.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from identity_stitcher import AnnouncementEntry, Player, PlayerRegistry

log = logging.getLogger("announcement_timeline")

# Node log timestamp, e.g. "Jan 08 10:22:31.512" (UTC, no year)
LOG_TIME_FORMATS = ["%b %d %H:%M:%S.%f", "%b %d %H:%M:%S"]


@dataclass
class BlockAnnouncement:
    """Raw event: this node announced this block at this time."""
    block_hash: str
    node_id: str
    time: str


@dataclass
class RankedAnnouncement:
    node_id: str
    timestamp: int
    order: int


class AnnouncementHistory:
    """block hash -> raw announcements, in the order they were observed."""

    def __init__(self):
        self.blocks: Dict[str, List[BlockAnnouncement]] = {}

    def record(self, announcement: BlockAnnouncement):
        self.blocks.setdefault(announcement.block_hash, []).append(announcement)

    def add(self, block_hash: str, node_id: str, time: str):
        self.record(BlockAnnouncement(block_hash=block_hash, node_id=node_id, time=time))

    def items(self):
        return self.blocks.items()

    def __len__(self) -> int:
        return len(self.blocks)


# ============================================================================
# Timestamp Normalization
# ============================================================================

def parse_timestamp(raw, year: Optional[int] = None) -> Optional[int]:
    """
    Convert a timestamp to integer epoch seconds (UTC).

    Accepts the node log format ("Jan 08 10:22:31.512", year defaults to the
    current UTC year), ISO-8601 strings, and bare numeric epochs.
    Returns None when the value can't be parsed.
    """
    if raw is None:
        return None

    text = str(raw).strip()
    if not text:
        return None

    try:
        return int(float(text))
    except (ValueError, OverflowError):
        pass

    if year is None:
        year = datetime.now(timezone.utc).year

    for fmt in LOG_TIME_FORMATS:
        try:
            dt = datetime.strptime(f"{year} {text}", f"%Y {fmt}")
            return int(dt.replace(tzinfo=timezone.utc).timestamp())
        except ValueError:
            continue

    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


# ============================================================================
# Ranking
# ============================================================================

def rank_block(
    announcements: Iterable[BlockAnnouncement],
    year: Optional[int] = None
) -> Tuple[List[RankedAnnouncement], int]:
    """
    Order one block's announcers by time.

    Returns (ranked announcements, number of malformed events dropped).
    """
    timed = []
    dropped = 0

    for announcement in announcements:
        ts = parse_timestamp(announcement.time, year)
        if ts is None or not announcement.node_id:
            dropped += 1
            log.debug("Dropping malformed announcement: %s", announcement)
            continue
        timed.append((ts, announcement.node_id))

    # list.sort is stable: equal timestamps keep observation order
    timed.sort(key=lambda x: x[0])

    ranked = []
    seen = set()
    for ts, node_id in timed:
        if node_id in seen:
            continue
        seen.add(node_id)
        ranked.append(RankedAnnouncement(node_id=node_id, timestamp=ts, order=len(ranked)))

    return ranked, dropped


def build_timeline(
    history: AnnouncementHistory,
    year: Optional[int] = None
) -> Tuple[Dict[str, List[RankedAnnouncement]], int]:
    """
    Rank the announcers of every block in the history.

    Returns ({block_hash: ranked announcements}, malformed events dropped).
    Blocks with no usable announcement are left out.
    """
    timeline = {}
    dropped = 0

    for block_hash, announcements in history.items():
        if not block_hash:
            dropped += len(announcements)
            continue

        ranked, block_dropped = rank_block(announcements, year)
        dropped += block_dropped
        if ranked:
            timeline[block_hash] = ranked

    if dropped:
        log.warning("Dropped %d malformed block announcements", dropped)
    log.info("Built timelines for %d blocks", len(timeline))
    return timeline, dropped


def assign_announcements(
    timeline: Dict[str, List[RankedAnnouncement]],
    registry: PlayerRegistry
) -> int:
    """
    Record each ranked announcement on the player owning its node id.

    Node ids with no owner get a new singleton player. Returns the number of
    players created.
    """
    owners = registry.node_index()
    created = 0

    for block_hash, ranked in timeline.items():
        for announcement in ranked:
            player = owners.get(announcement.node_id)
            if player is None:
                player = registry.add(Player(known_ids={announcement.node_id}))
                owners[announcement.node_id] = player
                created += 1

            player.block_announcements.append(
                AnnouncementEntry(block_hash=block_hash, order=announcement.order)
            )

    if created:
        log.info("Created %d players for announcers never seen with an IP", created)
    return created
