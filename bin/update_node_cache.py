#!/usr/bin/env python3
"""
Bitnodes Globe Cache Builder

Fetches recent reachable nodes from Bitnodes and persists a bounded subset
with coordinates to bitnodes-cache.json for the globe view.

Coordinates come from the per-node detail endpoint, which is strictly rate
limited (~30 req/min), so requests are throttled and only MAX_NODES Clearnet
peers are looked up per run.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from tqdm import tqdm

import node_common
from node_census import PeerRecord, classify, partition
from node_common import (
    DEFAULT_OUTPUT_DIR,
    CensusError,
    RateLimiter,
    env_int,
    install_signal_handlers,
    load_json_config,
    utc_timestamp,
    write_artifact,
)
from node_lookup import (
    DETAIL_ASN,
    DETAIL_CITY,
    DETAIL_COUNTRY,
    DETAIL_LAT,
    DETAIL_LON,
    NODE_DETAIL_BASE,
    SNAPSHOT_URL,
    NodeDetail,
    build_session,
    fetch_snapshot,
    lookup_node_detail,
)


@dataclass(frozen=True)
class Config:
    """Globe cache job configuration."""
    output_path: str = str(Path(DEFAULT_OUTPUT_DIR) / "bitnodes-cache.json")
    snapshot_url: str = SNAPSHOT_URL
    detail_base: str = NODE_DETAIL_BASE
    max_nodes: int = 150
    delay_ms: int = 2000
    timeout_sec: int = 20


def parse_args(argv: Optional[list[str]] = None) -> Config:
    p = argparse.ArgumentParser(description="Build the Bitnodes globe cache")
    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--output", dest="output_path", type=str, default=None)
    p.add_argument("--max_nodes", type=int, default=env_int("MAX_NODES", 150))
    p.add_argument("--delay_ms", type=int, default=env_int("REQUEST_DELAY_MS", 2000))
    p.add_argument("--timeout", dest="timeout_sec", type=int, default=20)
    args = p.parse_args(argv)

    data = load_json_config(args.config)
    defaults = Config()
    return Config(
        output_path=data.get("output", args.output_path or defaults.output_path),
        snapshot_url=data.get("snapshot_url", defaults.snapshot_url),
        detail_base=data.get("detail_base", defaults.detail_base),
        max_nodes=int(data.get("max_nodes", args.max_nodes)),
        delay_ms=int(data.get("delay_ms", args.delay_ms)),
        timeout_sec=int(data.get("timeout", args.timeout_sec)),
    )


def cache_entry(detail: NodeDetail) -> Optional[dict[str, Any]]:
    """Globe entry for a detail record, or None when it has no coordinates."""
    lat = detail.field(DETAIL_LAT)
    lon = detail.field(DETAIL_LON)
    # bool is an int subclass; a true/false coordinate is junk
    if not isinstance(lat, (int, float)) or isinstance(lat, bool):
        return None
    if not isinstance(lon, (int, float)) or isinstance(lon, bool):
        return None
    return {
        "address": detail.address,
        "type": classify(detail.user_agent).value,
        "lat": lat,
        "lon": lon,
        "city": detail.field(DETAIL_CITY) or None,
        "country": detail.field(DETAIL_COUNTRY) or None,
        "asn": detail.field(DETAIL_ASN) or None,
    }


@dataclass
class CacheResult:
    nodes: list[dict[str, Any]] = field(default_factory=list)
    failed: int = 0
    missing_coordinates: int = 0


async def collect_cache(
    peers: list[PeerRecord],
    max_nodes: int,
    limiter: RateLimiter,
    lookup,
) -> CacheResult:
    """Look up the first max_nodes peers and keep those with coordinates."""
    result = CacheResult()
    for peer in tqdm(peers[:max(0, max_nodes)], desc="Caching", unit="node"):
        if node_common.shutdown_requested():
            break
        await limiter.acquire()
        try:
            detail = await lookup(peer.address)
        except Exception as e:
            detail = NodeDetail(peer.address, [], f"Error: {e}")

        if detail.error is not None:
            result.failed += 1
            tqdm.write(f"[Cache] Failed to fetch {peer.address}: {detail.error}")
            continue
        entry = cache_entry(detail)
        if entry is None:
            result.missing_coordinates += 1
            tqdm.write(f"[Cache] Skipping {peer.address}: latitude/longitude missing")
            continue
        result.nodes.append(entry)
    return result


async def main(argv: Optional[list[str]] = None) -> None:
    cfg = parse_args(argv)
    install_signal_handlers()

    async with build_session(cfg.timeout_sec) as session:
        print("[Snapshot] Fetching latest Bitnodes snapshot...")
        nodes = await fetch_snapshot(session, cfg.snapshot_url, timeout=max(60, cfg.timeout_sec * 3))
        clearnet = partition(nodes).clearnet
        print(f"[Snapshot] Found {len(clearnet)} public IPv4 nodes.")

        limiter = RateLimiter(cfg.delay_ms)
        result = await collect_cache(
            clearnet,
            cfg.max_nodes,
            limiter,
            lambda address: lookup_node_detail(session, address, cfg.timeout_sec, cfg.detail_base),
        )

    artifact = {
        "updatedAt": utc_timestamp(),
        "totalNodes": len(result.nodes),
        "source": cfg.snapshot_url,
        "nodes": result.nodes,
    }
    out_path = write_artifact(cfg.output_path, artifact)
    print(f"[Report] Saved {len(result.nodes)} nodes to {out_path} "
          f"(failed={result.failed}, no_coords={result.missing_coordinates})")


def run() -> None:
    try:
        asyncio.run(main())
    except CensusError as e:
        print(f"[Error] {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
