#!/usr/bin/env python3
"""
Bitcoin Node Census

Fetches the latest Bitnodes snapshot and builds node-stats.json: Core vs Knots
counts by country, plus an estimate of the Tor population's variant mix.

Pipeline:
    Snapshot → Partition → Clearnet enrichment (ip-api.com geolocation)
                         → Tor sampling (Bitnodes per-node detail)
             → Aggregate → node-stats.json

Both lookup services are rate limited, so each gets its own RateLimiter and
only a bounded number of peers is looked up per run:
- Clearnet: the first MAX_NODES peers are geolocated; the rest are out of
  budget for this run.
- Tor: far too many to enrich fully, so the first TOR_SAMPLE_SIZE peers are
  classified from their detail record and the observed Knots ratio is
  extrapolated to the whole Tor population. The sample size and a 95% Wilson
  interval are reported so the estimate is never mistaken for an exact count.

Interrupting the run (Ctrl-C / SIGTERM) stops the lookup loops as if the cap
had been reached; whatever was enriched is still aggregated and written with
meta.interrupted = true.
"""

from __future__ import annotations

import argparse
import asyncio
import random
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from tqdm import tqdm

import node_common
from node_census import (
    EnrichedRecord,
    PeerRecord,
    Variant,
    aggregate,
    build_census_artifact,
    classify,
    estimate_population,
    partition,
)
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
    GEOIP_BASE,
    NODE_DETAIL_BASE,
    SNAPSHOT_URL,
    GeoLookup,
    NodeDetail,
    build_session,
    fetch_snapshot,
    lookup_country,
    lookup_node_detail,
)


GeoLookupFn = Callable[[str], Awaitable[GeoLookup]]
DetailLookupFn = Callable[[str], Awaitable[NodeDetail]]


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Census job configuration."""
    output_path: str = str(Path(DEFAULT_OUTPUT_DIR) / "node-stats.json")

    snapshot_url: str = SNAPSHOT_URL
    geoip_base: str = GEOIP_BASE
    detail_base: str = NODE_DETAIL_BASE

    # Clearnet enrichment (ip-api.com allows ~45 req/min)
    max_nodes: int = 1000
    geo_delay_ms: int = 1500
    max_geo_calls: Optional[int] = None

    # Tor sampling (Bitnodes allows ~30 req/min)
    tor_sample_size: int = 200
    detail_delay_ms: int = 2000
    max_detail_calls: Optional[int] = None
    shuffle_sample: bool = False
    sample_seed: Optional[int] = None

    timeout_sec: int = 20
    progress_every: int = 50


def parse_args(argv: Optional[list[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="Bitcoin node census: Core vs Knots by country, with a Tor estimate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python update_node_stats.py
  python update_node_stats.py --max_nodes 200 --tor_sample_size 50
  MAX_NODES=300 python update_node_stats.py --config census.json
"""
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--output", dest="output_path", type=str, default=None)

    p.add_argument("--max_nodes", type=int, default=env_int("MAX_NODES", 1000))
    p.add_argument("--geo_delay_ms", type=int, default=env_int("REQUEST_DELAY_MS", 1500))
    p.add_argument("--max_geo_calls", type=int, default=None)

    p.add_argument("--tor_sample_size", type=int, default=env_int("TOR_SAMPLE_SIZE", 200))
    p.add_argument("--detail_delay_ms", type=int, default=env_int("DETAIL_DELAY_MS", 2000))
    p.add_argument("--max_detail_calls", type=int, default=None)
    p.add_argument("--shuffle_sample", action="store_true",
                   help="Shuffle the Tor peers before taking the sample prefix")
    p.add_argument("--sample_seed", type=int, default=None)

    p.add_argument("--timeout", dest="timeout_sec", type=int, default=20)
    p.add_argument("--progress_every", type=int, default=50)

    args = p.parse_args(argv)
    data = load_json_config(args.config)
    defaults = Config()

    def pick(key: str, arg_value: Any) -> Any:
        return data.get(key, arg_value)

    return Config(
        output_path=pick("output", args.output_path or defaults.output_path),
        snapshot_url=pick("snapshot_url", defaults.snapshot_url),
        geoip_base=pick("geoip_base", defaults.geoip_base),
        detail_base=pick("detail_base", defaults.detail_base),
        max_nodes=int(pick("max_nodes", args.max_nodes)),
        geo_delay_ms=int(pick("geo_delay_ms", args.geo_delay_ms)),
        max_geo_calls=pick("max_geo_calls", args.max_geo_calls),
        tor_sample_size=int(pick("tor_sample_size", args.tor_sample_size)),
        detail_delay_ms=int(pick("detail_delay_ms", args.detail_delay_ms)),
        max_detail_calls=pick("max_detail_calls", args.max_detail_calls),
        shuffle_sample=bool(pick("shuffle_sample", args.shuffle_sample)),
        sample_seed=pick("sample_seed", args.sample_seed),
        timeout_sec=int(pick("timeout", args.timeout_sec)),
        progress_every=max(1, int(pick("progress_every", args.progress_every))),
    )


# =============================================================================
# CLEARNET ENRICHMENT
# =============================================================================

@dataclass
class EnrichmentResult:
    """Accumulated state of the Clearnet enrichment loop."""
    records: list[EnrichedRecord] = field(default_factory=list)
    processed: int = 0
    failures: int = 0
    interrupted: bool = False


async def enrich_clearnet(
    peers: list[PeerRecord],
    max_nodes: int,
    limiter: RateLimiter,
    lookup: GeoLookupFn,
    progress_every: int = 50,
) -> EnrichmentResult:
    """
    Geolocate the first max_nodes Clearnet peers, in order.

    A failed lookup records the Unknown/XX sentinel and moves on; one bad
    peer never stops the loop. Peers past the cap are left untouched.
    """
    result = EnrichmentResult()
    selected = peers[:max(0, max_nodes)]
    pbar = tqdm(total=len(selected), desc="Geolocating", unit="node")

    try:
        for peer in selected:
            if node_common.shutdown_requested() or limiter.exhausted:
                result.interrupted = node_common.shutdown_requested()
                break

            await limiter.acquire()
            try:
                geo = await lookup(peer.host)
            except Exception as e:
                geo = GeoLookup(peer.host, "Unknown", "XX", f"Error: {e}")

            if not geo.resolved:
                result.failures += 1
                tqdm.write(f"[Enrich] GeoIP lookup failed for {peer.host}: {geo.error}")

            result.records.append(EnrichedRecord(
                peer=peer,
                country=geo.country,
                country_code=geo.country_code,
                variant=classify(peer.user_agent),
            ))
            result.processed += 1
            pbar.update(1)

            if result.processed % progress_every == 0:
                tqdm.write(f"[Enrich] Processed {result.processed}/{len(selected)} nodes")
    finally:
        pbar.close()

    return result


# =============================================================================
# TOR SAMPLING
# =============================================================================

@dataclass
class SampleResult:
    """Classified Tor sample. Failed lookups count toward neither variant."""
    attempted: int = 0
    failed: int = 0
    knots: int = 0
    core: int = 0
    interrupted: bool = False

    @property
    def size(self) -> int:
        return self.knots + self.core


async def sample_anonymized(
    peers: list[PeerRecord],
    sample_cap: int,
    limiter: RateLimiter,
    lookup: DetailLookupFn,
    progress_every: int = 50,
) -> SampleResult:
    """
    Classify the first min(sample_cap, len(peers)) Tor peers from their detail record.

    The bulk snapshot is not trusted for Tor user agents; each sampled peer
    is looked up individually and classified from data[1].
    """
    result = SampleResult()
    selected = peers[:max(0, sample_cap)]
    pbar = tqdm(total=len(selected), desc="Sampling Tor", unit="node")

    try:
        for peer in selected:
            if node_common.shutdown_requested() or limiter.exhausted:
                result.interrupted = node_common.shutdown_requested()
                break

            await limiter.acquire()
            result.attempted += 1
            try:
                detail = await lookup(peer.address)
            except Exception as e:
                detail = NodeDetail(peer.address, [], f"Error: {e}")

            if detail.error is not None:
                result.failed += 1
                tqdm.write(f"[Tor] Detail lookup failed for {peer.address}: {detail.error}")
            elif classify(detail.user_agent) is Variant.KNOTS:
                result.knots += 1
            else:
                result.core += 1
            pbar.update(1)

            if result.attempted % progress_every == 0:
                tqdm.write(f"[Tor] Sampled {result.attempted}/{len(selected)} nodes "
                           f"(knots={result.knots}, failed={result.failed})")
    finally:
        pbar.close()

    return result


# =============================================================================
# CENSUS
# =============================================================================

async def run_census(cfg: Config, session) -> dict[str, Any]:
    """Run the whole census against an open session and return the artifact."""
    print("[Snapshot] Fetching latest Bitnodes snapshot...")
    nodes = await fetch_snapshot(session, cfg.snapshot_url, timeout=max(60, cfg.timeout_sec * 3))
    parts = partition(nodes)
    print(f"[Snapshot] Found {len(nodes)} nodes | Clearnet={len(parts.clearnet)} "
          f"Tor={len(parts.anonymized)} Skipped={parts.skipped}")

    geo_limiter = RateLimiter(cfg.geo_delay_ms, cfg.max_geo_calls)
    print(f"[Enrich] Geolocating up to {cfg.max_nodes} Clearnet nodes "
          f"({cfg.geo_delay_ms}ms between calls)...")
    enrichment = await enrich_clearnet(
        parts.clearnet,
        cfg.max_nodes,
        geo_limiter,
        lambda ip: lookup_country(session, ip, cfg.timeout_sec, cfg.geoip_base),
        cfg.progress_every,
    )

    population = list(parts.anonymized)
    if cfg.shuffle_sample:
        random.Random(cfg.sample_seed).shuffle(population)

    detail_limiter = RateLimiter(cfg.detail_delay_ms, cfg.max_detail_calls)
    print(f"[Tor] Sampling up to {cfg.tor_sample_size} of {len(population)} Tor nodes "
          f"({cfg.detail_delay_ms}ms between calls)...")
    sample = await sample_anonymized(
        population,
        cfg.tor_sample_size,
        detail_limiter,
        lambda address: lookup_node_detail(session, address, cfg.timeout_sec, cfg.detail_base),
        cfg.progress_every,
    )

    estimate = estimate_population(len(parts.anonymized), sample.knots, sample.size)
    if sample.size == 0 and estimate.population > 0:
        print("[Tor] Empty sample; attributing the whole Tor population to Core")
    agg = aggregate(enrichment.records, estimate)

    meta = {
        "processed": enrichment.processed,
        "skipped": parts.skipped,
        "totalInSnapshot": len(nodes),
        "clearnet": len(parts.clearnet),
        "anonymized": len(parts.anonymized),
        "enrichmentFailures": enrichment.failures,
        "interrupted": enrichment.interrupted or sample.interrupted,
        "torSample": {
            "size": sample.size,
            "attempted": sample.attempted,
            "failed": sample.failed,
            "knots": sample.knots,
            "core": sample.core,
            "knotsRatio": round(estimate.knots_ratio, 4),
            "ciLow": round(estimate.ci_low, 4),
            "ciHigh": round(estimate.ci_high, 4),
            "shuffled": cfg.shuffle_sample,
        },
    }
    return build_census_artifact(agg, meta=meta, updated_at=utc_timestamp())


async def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    cfg = parse_args(argv)
    install_signal_handlers()

    print("=" * 72)
    print("Bitcoin Node Census")
    print("=" * 72)

    async with build_session(cfg.timeout_sec) as session:
        artifact = await run_census(cfg, session)

    out_path = write_artifact(cfg.output_path, artifact)

    meta = artifact["meta"]
    print("\n" + "=" * 72)
    print("FINAL SUMMARY")
    print("=" * 72)
    print(f"Knots:                 {artifact['knots']['total']} total, "
          f"{len(artifact['knots']['byCountry'])} countries")
    print(f"Core:                  {artifact['core']['total']} total, "
          f"{len(artifact['core']['byCountry'])} countries")
    print(f"Tor (estimated):       {artifact['tor']['total']} "
          f"(knots≈{artifact['tor']['knots']}, sample={meta['torSample']['size']})")
    print(f"Processed:             {meta['processed']}")
    print(f"Skipped:               {meta['skipped']}")
    if meta["interrupted"]:
        print("Interrupted:           yes (partial census written)")
    print(f"[Report] Output: {out_path}")
    print("=" * 72)


def run() -> None:
    """Console-script entry point: non-zero exit on any fatal error."""
    try:
        asyncio.run(main())
    except CensusError as e:
        print(f"[Error] {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
