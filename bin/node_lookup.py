#!/usr/bin/env python3
"""
Node Census Lookup Module

Async HTTP helpers for the external sources the census jobs read from.

This module is used by update_node_stats.py and update_node_cache.py and provides:
- get_json(): one GET returning (data, status, error) without raising
- fetch_snapshot(): bulk Bitnodes snapshot; raises FetchError on any failure
- lookup_country(): ip-api.com geolocation with the Unknown/XX sentinel
- lookup_node_detail(): Bitnodes per-node detail array
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional, Tuple

import aiohttp

from node_common import FetchError


SNAPSHOT_URL = "https://bitnodes.io/api/v1/snapshots/latest/"
NODE_DETAIL_BASE = "https://bitnodes.io/api/v1/nodes/"
# ip-api.com: free tier, 45 req/min, no key
GEOIP_BASE = "http://ip-api.com/json/"
GEOIP_FIELDS = "status,country,countryCode"

USER_AGENT = "node-census/1.0"

UNKNOWN_COUNTRY = "Unknown"
UNKNOWN_CODE = "XX"

# Offsets into the Bitnodes detail array
DETAIL_USER_AGENT = 1
DETAIL_CITY = 6
DETAIL_COUNTRY = 7
DETAIL_LAT = 8
DETAIL_LON = 9
DETAIL_ASN = 11


def geoip_url(ip: str, base: str = GEOIP_BASE) -> str:
    return f"{base}{ip}?fields={GEOIP_FIELDS}"


def node_detail_path(address: str) -> str:
    """
    Path segment for the per-node detail endpoint.

    "1.2.3.4:8333" -> "1.2.3.4-8333", "abc.onion:8333" -> "abc-onion-8333".
    """
    return address.replace(".onion", "-onion").replace(":", "-")


def node_detail_url(address: str, base: str = NODE_DETAIL_BASE) -> str:
    return f"{base}{node_detail_path(address)}/"


async def get_json(
    session: aiohttp.ClientSession,
    url: str,
    timeout: float
) -> Tuple[Optional[Any], Optional[int], Optional[str]]:
    """
    Fetch and decode a JSON document via HTTP GET.

    Args:
        session: aiohttp ClientSession
        url: URL to fetch
        timeout: Request timeout in seconds

    Returns:
        Tuple of (data, status_code, error). data is None whenever error is set.
    """
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status != 200:
                try:
                    status_name = HTTPStatus(response.status).phrase
                except ValueError:
                    status_name = "Unknown"
                return None, response.status, f"HTTP {response.status}: {status_name}"
            try:
                data = await response.json(content_type=None)
            except ValueError as e:
                return None, response.status, f"Invalid JSON: {e}"
            return data, response.status, None

    except asyncio.TimeoutError:
        return None, 408, "Request Timeout"
    except aiohttp.ClientError as e:
        return None, None, f"Connection Error: {str(e)}"


async def fetch_snapshot(
    session: aiohttp.ClientSession,
    url: str = SNAPSHOT_URL,
    timeout: float = 60
) -> dict[str, Any]:
    """
    Fetch the bulk peer registry snapshot.

    Returns:
        Mapping of peer address -> raw detail array

    Raises:
        FetchError: On transport failure, non-200 status or a body without a
            `nodes` object. There is no census without a base snapshot.
    """
    data, status, error = await get_json(session, url, timeout)
    if error is not None:
        raise FetchError(url, status, error)
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), dict):
        raise FetchError(url, status, "Snapshot has no 'nodes' object")
    return data["nodes"]


@dataclass
class GeoLookup:
    """Result of one geolocation call."""
    ip: str
    country: str
    country_code: str
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.error is None


async def lookup_country(
    session: aiohttp.ClientSession,
    ip: str,
    timeout: float = 15,
    base: str = GEOIP_BASE,
) -> GeoLookup:
    """
    Resolve an IPv4 address to (country, countryCode).

    Any failure, including `status != "success"` or a missing country code,
    maps to the Unknown/XX sentinel with the reason in `error`.
    """
    data, status, error = await get_json(session, geoip_url(ip, base), timeout)
    if error is not None:
        return GeoLookup(ip, UNKNOWN_COUNTRY, UNKNOWN_CODE, error)
    if not isinstance(data, dict):
        return GeoLookup(ip, UNKNOWN_COUNTRY, UNKNOWN_CODE, "Unexpected geolocation payload")
    if data.get("status") != "success" or not data.get("countryCode"):
        return GeoLookup(ip, UNKNOWN_COUNTRY, UNKNOWN_CODE, f"Geolocation status {data.get('status')!r}")
    return GeoLookup(ip, str(data.get("country") or UNKNOWN_COUNTRY), str(data["countryCode"]))


@dataclass
class NodeDetail:
    """Result of one per-node detail call."""
    address: str
    data: list
    error: Optional[str] = None

    @property
    def user_agent(self) -> Optional[str]:
        if len(self.data) > DETAIL_USER_AGENT:
            return self.data[DETAIL_USER_AGENT]
        return None

    def field(self, index: int) -> Any:
        return self.data[index] if len(self.data) > index else None


async def lookup_node_detail(
    session: aiohttp.ClientSession,
    address: str,
    timeout: float = 20,
    base: str = NODE_DETAIL_BASE,
) -> NodeDetail:
    """Fetch the Bitnodes detail array for one peer. Never raises."""
    data, status, error = await get_json(session, node_detail_url(address, base), timeout)
    if error is not None:
        return NodeDetail(address, [], error)
    detail = data.get("data") if isinstance(data, dict) else None
    if not isinstance(detail, list):
        return NodeDetail(address, [], "Detail payload has no 'data' array")
    return NodeDetail(address, detail)


def build_session(timeout_sec: float) -> aiohttp.ClientSession:
    """Session shared by every call of one job."""
    connector = aiohttp.TCPConnector(limit=8, ttl_dns_cache=300, use_dns_cache=True)
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=max(1, timeout_sec * 2)),
        headers={"User-Agent": USER_AGENT},
    )
