#!/usr/bin/env python3
"""
Node Census Core

Pure, side-effect-free pieces of the census pipeline:

- classify():            client string -> Variant (CORE | KNOTS)
- partition():           snapshot -> Clearnet / Anonymized / Excluded
- estimate_population(): extrapolate the Tor variant mix from a sample
- aggregate():           fold enriched records into per-country buckets
- build_census_artifact(): shape the aggregate into the node-stats.json contract

Nothing here touches the network or the filesystem, so every function can be
exercised directly from tests.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

import polars as pl


KNOTS_MARKER = "knots"
ONION_SUFFIX = ".onion"

TOR_CODE = "TOR"
TOR_NAME = "Tor Network"

# 95% two-sided normal quantile for the Wilson interval
Z_95 = 1.959963984540054


# =============================================================================
# TYPES
# =============================================================================

class Variant(Enum):
    """Software variant inferred from a peer's user agent."""
    CORE = "core"
    KNOTS = "knots"


class TransportClass(Enum):
    """Partition a peer falls into. Assigned once, never reassigned."""
    CLEARNET = "clearnet"
    ANONYMIZED = "anonymized"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class PeerRecord:
    """One snapshot entry. Immutable once fetched."""
    address: str
    raw: tuple = ()

    @property
    def protocol_version(self) -> Any:
        return self.raw[0] if len(self.raw) > 0 else None

    @property
    def user_agent(self) -> Any:
        return self.raw[1] if len(self.raw) > 1 else None

    @property
    def host(self) -> str:
        return host_part(self.address)


@dataclass(frozen=True)
class EnrichedRecord:
    """A Clearnet peer with resolved geography and variant."""
    peer: PeerRecord
    country: str
    country_code: str
    variant: Variant


@dataclass
class CountryBucket:
    """Per-country counters; the name is captured from the first record seen."""
    country_code: str
    country: str
    knots: int = 0
    core: int = 0

    def count(self, variant: Variant) -> int:
        return self.knots if variant is Variant.KNOTS else self.core


# =============================================================================
# CLASSIFIER
# =============================================================================

def classify(user_agent: Any) -> Variant:
    """
    Map a free-text client string to a Variant.

    Case-insensitive substring match on "knots". Anything else, including
    None, non-strings and the empty string, is CORE. Total: never raises.
    """
    if not isinstance(user_agent, str) or not user_agent:
        return Variant.CORE
    return Variant.KNOTS if KNOTS_MARKER in user_agent.lower() else Variant.CORE


# =============================================================================
# PARTITIONER
# =============================================================================

def host_part(address: str) -> str:
    """Text before the first ':' ("1.2.3.4:8333" -> "1.2.3.4")."""
    return address.split(":", 1)[0]


def is_ipv4(host: str) -> bool:
    """Four dot-separated decimal octets, each in [0, 255]."""
    parts = host.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not part.isdigit() or not part.isascii():
            return False
        if int(part) > 255:
            return False
    return True


def transport_class(address: Any) -> TransportClass:
    if not isinstance(address, str) or not address:
        return TransportClass.EXCLUDED
    if ONION_SUFFIX in address.lower():
        return TransportClass.ANONYMIZED
    if is_ipv4(host_part(address)):
        return TransportClass.CLEARNET
    return TransportClass.EXCLUDED


@dataclass
class Partition:
    """Disjoint split of a snapshot. Excluded peers are only counted."""
    clearnet: list[PeerRecord] = field(default_factory=list)
    anonymized: list[PeerRecord] = field(default_factory=list)
    skipped: int = 0

    @property
    def total(self) -> int:
        return len(self.clearnet) + len(self.anonymized) + self.skipped


def partition(nodes: Mapping[str, Any]) -> Partition:
    """
    Split snapshot entries into Clearnet / Anonymized / Excluded.

    Entries whose detail value is not an array are malformed and excluded.
    Snapshot order is preserved inside each partition.
    """
    result = Partition()
    for address, detail in nodes.items():
        if not isinstance(detail, (list, tuple)):
            result.skipped += 1
            continue
        cls = transport_class(address)
        if cls is TransportClass.EXCLUDED:
            result.skipped += 1
            continue
        peer = PeerRecord(address=address, raw=tuple(detail))
        if cls is TransportClass.ANONYMIZED:
            result.anonymized.append(peer)
        else:
            result.clearnet.append(peer)
    return result


# =============================================================================
# SAMPLING ESTIMATOR
# =============================================================================

@dataclass(frozen=True)
class PopulationEstimate:
    """Extrapolated variant counts for a population known only by sample."""
    population: int
    sample_size: int
    knots_in_sample: int
    knots_ratio: float
    estimated_knots: int
    estimated_core: int
    ci_low: float
    ci_high: float


def _round_half_up_ratio(numerator: int, denominator: int) -> int:
    """round(numerator / denominator) with halves rounded up, in exact integers."""
    return (2 * numerator + denominator) // (2 * denominator)


def wilson_interval(successes: int, n: int, z: float = Z_95) -> tuple[float, float]:
    """Wilson score interval for a binomial proportion; (0, 0) for n == 0."""
    if n <= 0:
        return 0.0, 0.0
    p = successes / n
    denom = 1 + z * z / n
    centre = p + z * z / (2 * n)
    margin = z * math.sqrt(p * (1 - p) / n + z * z / (4 * n * n))
    low = max(0.0, (centre - margin) / denom)
    high = min(1.0, (centre + margin) / denom)
    return low, high


def estimate_population(population: int, knots_in_sample: int, sample_size: int) -> PopulationEstimate:
    """
    Extrapolate the KNOTS/CORE split of a population from a classified sample.

    An empty sample has ratio 0 and attributes the whole population to CORE.
    estimated_knots + estimated_core == population always holds.
    """
    if population < 0 or sample_size < 0 or knots_in_sample < 0:
        raise ValueError("Counts must be non-negative")
    if knots_in_sample > sample_size:
        raise ValueError("knots_in_sample cannot exceed sample_size")

    if sample_size == 0:
        estimated_knots = 0
        ratio = 0.0
    else:
        ratio = knots_in_sample / sample_size
        estimated_knots = _round_half_up_ratio(population * knots_in_sample, sample_size)
    ci_low, ci_high = wilson_interval(knots_in_sample, sample_size)
    return PopulationEstimate(
        population=population,
        sample_size=sample_size,
        knots_in_sample=knots_in_sample,
        knots_ratio=ratio,
        estimated_knots=estimated_knots,
        estimated_core=population - estimated_knots,
        ci_low=ci_low,
        ci_high=ci_high,
    )


# =============================================================================
# AGGREGATOR
# =============================================================================

@dataclass
class CensusAggregate:
    """Country buckets (synthetic TOR bucket included) and grand totals."""
    buckets: list[CountryBucket]
    knots_total: int
    core_total: int
    tor_estimate: Optional[PopulationEstimate] = None

    def by_variant(self, variant: Variant) -> list[CountryBucket]:
        """Non-empty buckets for one variant, count descending, code ascending."""
        rows = [b for b in self.buckets if b.count(variant) > 0]
        return sorted(rows, key=lambda b: (-b.count(variant), b.country_code))


_RECORD_SCHEMA = {"country_code": pl.Utf8, "country": pl.Utf8, "variant": pl.Utf8}


def aggregate(
    records: Iterable[EnrichedRecord],
    estimate: Optional[PopulationEstimate] = None,
) -> CensusAggregate:
    """
    Fold enriched records into per-country buckets and merge the Tor estimate.

    Pure: the same records always produce the same buckets. The estimate only
    ever lands in the synthetic TOR bucket, never in a real country.
    """
    records = list(records)
    frame = pl.DataFrame(
        {
            "country_code": [r.country_code for r in records],
            "country": [r.country for r in records],
            "variant": [r.variant.value for r in records],
        },
        schema=_RECORD_SCHEMA,
    )
    grouped = frame.group_by("country_code", maintain_order=True).agg(
        pl.col("country").first(),
        (pl.col("variant") == Variant.KNOTS.value).sum().alias("knots"),
        (pl.col("variant") == Variant.CORE.value).sum().alias("core"),
    )

    buckets = [
        CountryBucket(
            country_code=row["country_code"],
            country=row["country"],
            knots=int(row["knots"]),
            core=int(row["core"]),
        )
        for row in grouped.iter_rows(named=True)
    ]

    if estimate is not None:
        buckets.append(CountryBucket(
            country_code=TOR_CODE,
            country=TOR_NAME,
            knots=estimate.estimated_knots,
            core=estimate.estimated_core,
        ))

    return CensusAggregate(
        buckets=buckets,
        knots_total=sum(b.knots for b in buckets),
        core_total=sum(b.core for b in buckets),
        tor_estimate=estimate,
    )


# =============================================================================
# CENSUS ARTIFACT
# =============================================================================

def _bucket_rows(agg: CensusAggregate, variant: Variant) -> list[dict[str, Any]]:
    return [
        {"countryCode": b.country_code, "country": b.country, variant.value: b.count(variant)}
        for b in agg.by_variant(variant)
    ]


def build_census_artifact(
    agg: CensusAggregate,
    *,
    meta: Mapping[str, Any],
    updated_at: str,
) -> dict[str, Any]:
    """Shape an aggregate into the node-stats.json contract."""
    est = agg.tor_estimate
    tor = {
        "total": est.population if est else 0,
        "knots": est.estimated_knots if est else 0,
        "core": est.estimated_core if est else 0,
        "estimated": True,
    }
    return {
        "updatedAt": updated_at,
        "tor": tor,
        "knots": {"total": agg.knots_total, "byCountry": _bucket_rows(agg, Variant.KNOTS)},
        "core": {"total": agg.core_total, "byCountry": _bucket_rows(agg, Variant.CORE)},
        "meta": dict(meta),
    }
