#!/usr/bin/env python3
"""
Stake Pool Log Reader

Extracts the two event types the de-anonymization pipeline consumes from a
node's plain-text log:

- Peer observations: a line carrying both ``node_id:`` and ``peer_addr:``
  means "this node id was seen operating from this address".
- Block announcements: any other line mentioning ``announcement`` means
  "this node announced this block at this time".

Example lines:
    Jan 08 10:22:31.512 INFO connected to peer, node_id: 8d3f0a, peer_addr: 10.0.0.7:3000, task: network
    Jan 08 10:22:31.771 INFO received block announcement, hash: 5f1a77, node_id: 8d3f0a, task: network

Lines that match neither shape are ignored. Lines that match a shape but are
missing a field are counted as malformed and dropped; they never abort a run.

Usage:
    # Count events in a log
    python3 scripts/stake_pool_log.py stake_pool_log.txt

    # Library use
    from stake_pool_log import read_log
    for event in read_log("stake_pool_log.txt"):
        ...
"""

import argparse
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from announcement_timeline import BlockAnnouncement
from identity_stitcher import Observation

log = logging.getLogger("stake_pool_log")

OBSERVATION = "observation"
ANNOUNCEMENT = "announcement"


@dataclass
class LogReadStats:
    """Counters collected while reading a log."""
    lines: int = 0
    observations: int = 0
    announcements: int = 0
    malformed: int = 0


# ============================================================================
# Line Parsing
# ============================================================================

def _field(line: str, key: str) -> Optional[str]:
    """
    Value after ``key: `` up to the next comma (or end of line).

    The key must start a word, so ``hash`` does not match ``parent_hash:``.
    """
    match = re.search(rf"(?<!\w){re.escape(key)}:([^,]*)", line)
    if not match:
        return None

    value = match.group(1).strip()
    return value or None


def strip_port(peer_addr: str) -> str:
    """
    Drop the port from a peer address.

    ``10.0.0.7:3000`` -> ``10.0.0.7``
    ``[2001:db8::1]:3000`` -> ``2001:db8::1``
    A bare IPv6 address has no port to strip and is returned unchanged.
    """
    if peer_addr.startswith("["):
        end = peer_addr.find("]")
        return peer_addr[1:end] if end > 0 else peer_addr[1:]
    if peer_addr.count(":") == 1:
        return peer_addr.split(":")[0]
    return peer_addr


def classify_line(line: str) -> Optional[str]:
    """Which event a line describes, if any. Peer observations win."""
    if "peer_addr" in line and "node_id" in line:
        return OBSERVATION
    if "announcement" in line:
        return ANNOUNCEMENT
    return None


def parse_line(line: str) -> Optional[Union[Observation, BlockAnnouncement]]:
    """
    Parse one log line into an ``Observation`` or ``BlockAnnouncement``.

    Returns None for unrelated lines and for malformed ones.
    """
    kind = classify_line(line)

    if kind == OBSERVATION:
        node_id = _field(line, "node_id")
        peer_addr = _field(line, "peer_addr")
        if not node_id or not peer_addr:
            return None
        ip = strip_port(peer_addr)
        if not ip:
            return None
        return Observation(node_id=node_id, ip=ip)

    if kind == ANNOUNCEMENT:
        info = line.find(" INFO")
        if info <= 0:
            return None
        time = line[:info].strip()
        node_id = _field(line, "node_id")
        block_hash = _field(line, "hash")
        if not time or not node_id or not block_hash:
            return None
        return BlockAnnouncement(block_hash=block_hash, node_id=node_id, time=time)

    return None


def iter_events(
    lines: Iterable[str],
    stats: Optional[LogReadStats] = None
) -> Iterator[Union[Observation, BlockAnnouncement]]:
    """Yield parsed events from an iterable of lines."""
    if stats is None:
        stats = LogReadStats()

    for lineno, line in enumerate(lines, 1):
        stats.lines += 1
        kind = classify_line(line)
        if kind is None:
            continue

        event = parse_line(line)
        if event is None:
            stats.malformed += 1
            log.debug("Dropping malformed %s on line %d: %s", kind, lineno, line.rstrip())
            continue

        if kind == OBSERVATION:
            stats.observations += 1
        else:
            stats.announcements += 1
        yield event


def read_log(
    path: Union[str, Path],
    stats: Optional[LogReadStats] = None
) -> Iterator[Union[Observation, BlockAnnouncement]]:
    """Stream events from a log file."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        yield from iter_events(f, stats)


def main():
    parser = argparse.ArgumentParser(
        description="Summarize peer observations and block announcements in a node log"
    )
    parser.add_argument("log_file", help="Node log file (e.g. stake_pool_log.txt)")
    args = parser.parse_args()

    path = Path(args.log_file)
    if not path.exists():
        print(f"Error: {path} not found", file=sys.stderr)
        return 1

    stats = LogReadStats()
    node_ids = set()
    ips = set()
    blocks = set()

    for event in read_log(path, stats):
        node_ids.add(event.node_id)
        if isinstance(event, Observation):
            ips.add(event.ip)
        else:
            blocks.add(event.block_hash)

    print(f"Lines read:          {stats.lines}")
    print(f"Peer observations:   {stats.observations}")
    print(f"Block announcements: {stats.announcements}")
    print(f"Malformed (dropped): {stats.malformed}")
    print(f"Distinct node ids:   {len(node_ids)}")
    print(f"Distinct IPs:        {len(ips)}")
    print(f"Distinct blocks:     {len(blocks)}")
    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
