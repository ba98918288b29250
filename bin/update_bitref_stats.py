#!/usr/bin/env python3
"""
Bitref Node Statistics Scraper

Renders https://bitref.com/nodes/ in headless Chromium and extracts:
Bitcoin Core, Core V.30, Bitcoin Knots, Tor Network, Total Public.

The page fills its numbers in client-side, so the scraper waits until the
rendered text carries real counts before reading anything. Each field then
runs through an ordered cascade of independent strategies; the first one
that resolves a field wins and later strategies never overwrite it:

    1. labeled_text  - regexes over the rendered body text
    2. table_scan    - two-column <tr> rows matched by label
    3. summary_scan  - h2/h3/.summary/.stats elements
    4. raw_markup    - looser regexes over the unrendered page source

State Machine:
    IDLE → PAGE_LOADED → CONTENT_READY → EXTRACTED → COMPLETE
                                                   ↘ PARTIAL_FAILURE

Total Public and Bitcoin Core are mandatory; any other field that stays
unresolved is written as 0 / "0.0".
"""

from __future__ import annotations

import argparse
import asyncio
import re
import sys
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Optional

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

import node_common
from node_common import (
    DEFAULT_OUTPUT_DIR,
    CensusError,
    ExtractionIncompleteError,
    FetchError,
    LoadTimeoutError,
    _monotonic,
    install_signal_handlers,
    load_json_config,
    utc_timestamp,
    write_artifact,
)


BITREF_URL = "https://bitref.com/nodes/"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

TOTAL_PUBLIC = "totalPublic"
BITCOIN_CORE = "bitcoinCore"
CORE_V30 = "coreV30"
BITCOIN_KNOTS = "bitcoinKnots"
TOR_NETWORK = "torNetwork"

FIELDS = (TOTAL_PUBLIC, BITCOIN_CORE, CORE_V30, BITCOIN_KNOTS, TOR_NETWORK)
MANDATORY_FIELDS = (TOTAL_PUBLIC, BITCOIN_CORE)
# Reported with a percentage of totalPublic, in artifact order
PART_FIELDS = (BITCOIN_CORE, CORE_V30, BITCOIN_KNOTS, TOR_NETWORK)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Statistics-page job configuration."""
    url: str = BITREF_URL
    output_path: str = str(Path(DEFAULT_OUTPUT_DIR) / "bitref-stats.json")
    html_path: Optional[str] = None     # offline: run the cascade on a saved page

    nav_timeout_sec: float = 45.0
    ready_timeout_sec: float = 45.0
    poll_interval_sec: float = 0.5
    settle_sec: float = 5.0
    user_agent: str = BROWSER_USER_AGENT


def parse_args(argv: Optional[list[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="Scrape bitref.com node statistics into bitref-stats.json",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python update_bitref_stats.py
  python update_bitref_stats.py --html saved_nodes_page.html --output /tmp/stats.json
"""
    )
    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--url", type=str, default=BITREF_URL)
    p.add_argument("--output", dest="output_path", type=str, default=None)
    p.add_argument("--html", dest="html_path", type=str, default=None,
                   help="Extract from a saved HTML file instead of rendering the live page")
    p.add_argument("--nav_timeout", dest="nav_timeout_sec", type=float, default=45.0)
    p.add_argument("--ready_timeout", dest="ready_timeout_sec", type=float, default=45.0)
    p.add_argument("--poll_interval", dest="poll_interval_sec", type=float, default=0.5)
    p.add_argument("--settle", dest="settle_sec", type=float, default=5.0)
    args = p.parse_args(argv)

    data = load_json_config(args.config)
    defaults = Config()
    return Config(
        url=data.get("url", args.url),
        output_path=data.get("output", args.output_path or defaults.output_path),
        html_path=data.get("html", args.html_path),
        nav_timeout_sec=float(data.get("nav_timeout", args.nav_timeout_sec)),
        ready_timeout_sec=float(data.get("ready_timeout", args.ready_timeout_sec)),
        poll_interval_sec=float(data.get("poll_interval", args.poll_interval_sec)),
        settle_sec=float(data.get("settle", args.settle_sec)),
        user_agent=data.get("user_agent", defaults.user_agent),
    )


# =============================================================================
# PAGE CONTENT
# =============================================================================

class ExtractionState(Enum):
    """Lifecycle of one scrape."""
    IDLE = auto()
    PAGE_LOADED = auto()
    CONTENT_READY = auto()
    EXTRACTED = auto()
    COMPLETE = auto()
    PARTIAL_FAILURE = auto()


@dataclass(frozen=True)
class PageContent:
    """
    Three views of the same page, captured once after it became ready.

    text:   rendered body text (innerText)
    html:   rendered DOM markup
    source: unrendered response body as served; may be empty
    """
    text: str
    html: str
    source: str = ""


def page_content_from_html(html: str) -> PageContent:
    """Build a PageContent from a saved page; the text is approximated from markup."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator="\n")
    text = re.sub(r"\n\s*\n+", "\n", text)
    return PageContent(text=text, html=html, source=html)


_LARGE_NUMBER = re.compile(r"\d{4,}")
_LOADING_PLACEHOLDER = re.compile(r"Total\s+Public\s+Nodes\s*\n\s*loading\.\.\.", re.IGNORECASE)


def is_content_ready(text: Optional[str]) -> bool:
    """Rendered text shows a 4+ digit count and no "loading..." placeholder."""
    if not text:
        return False
    return _LARGE_NUMBER.search(text) is not None and _LOADING_PLACEHOLDER.search(text) is None


async def wait_until_ready(
    page,
    timeout_sec: float,
    poll_interval_sec: float = 0.5,
    predicate: Callable[[Optional[str]], bool] = is_content_ready,
) -> str:
    """
    Poll the page body text until predicate holds.

    Returns:
        The body text that satisfied the predicate

    Raises:
        LoadTimeoutError: If the predicate never held within timeout_sec
    """
    deadline = _monotonic() + timeout_sec
    while True:
        try:
            text = await page.inner_text("body")
        except PlaywrightError:
            # Body can be replaced mid-render; try again on the next poll
            text = ""
        if predicate(text):
            return text
        if _monotonic() >= deadline:
            raise LoadTimeoutError(f"Page content not ready after {timeout_sec:.0f}s")
        await asyncio.sleep(poll_interval_sec)


# =============================================================================
# VALUE PARSING
# =============================================================================

def parse_count(raw: Any) -> Optional[int]:
    """ "18,536" -> 18536. None for anything that is not a plain integer. """
    if raw is None:
        return None
    cleaned = str(raw).strip().replace(",", "")
    if not cleaned.isdigit():
        return None
    return int(cleaned)


def parse_thousands(raw: Any) -> Optional[int]:
    """
    User-agent table counts use a dot as thousands separator: "3.023" -> 3023.

    A value without a dot is taken as a plain count.
    """
    if raw is None:
        return None
    cleaned = str(raw).strip().replace(",", "").rstrip(".")
    if not cleaned:
        return None
    if "." not in cleaned:
        return parse_count(cleaned)
    try:
        return int(round(float(cleaned) * 1000))
    except ValueError:
        return None


_FIRST_NUMBER = re.compile(r"(\d[\d,]*)")
# Version-table counts keep their dot: "3.023 (12.80%)" -> "3.023"
_FIRST_DECIMAL = re.compile(r"(\d[\d,.]*)")


# =============================================================================
# EXTRACTION STRATEGIES
# =============================================================================
# Each strategy maps a PageContent to {field: value} for whatever it found.
# They are independent of each other; run_cascade decides precedence.

_TEXT_PATTERNS: tuple[tuple[str, re.Pattern, Callable[[Any], Optional[int]]], ...] = (
    # 23624\nTotal Public Nodes
    (TOTAL_PUBLIC, re.compile(r"(\d[\d,]{3,})\s*\n\s*Total Public Nodes", re.I), parse_count),
    # 14880 (62.99%)\nTor Network Nodes
    (TOR_NETWORK, re.compile(r"(\d{4,}[\d,]*)\s*\([\d.]+%\)\s*\n\s*Tor Network Nodes", re.I), parse_count),
    # 1\tBitcoin Core\t18536\t78.46%
    (BITCOIN_CORE, re.compile(r"(?<!\d)\d{1,2}\s+Bitcoin Core\s+(\d[\d,]+)", re.I), parse_count),
    (BITCOIN_KNOTS, re.compile(r"(?<!\d)\d{1,2}\s+Bitcoin Knots\s+(\d[\d,]+)", re.I), parse_count),
    # 1\t/Satoshi:30.0.0/\t3.023\t12.80%
    (CORE_V30, re.compile(r"/Satoshi:30\.0\.0/\s+(\d[\d,.]*)", re.I), parse_thousands),
)

# Tags may sit between label and number in served markup
_GAP = r"(?:\s|<[^>]*>)+"

_MARKUP_PATTERNS: tuple[tuple[str, re.Pattern, Callable[[Any], Optional[int]]], ...] = (
    (TOTAL_PUBLIC, re.compile(r"(\d{4,})[\s\S]{0,300}?Total\s+Public\s+Nodes", re.I), parse_count),
    (BITCOIN_CORE, re.compile(r"Bitcoin\s+Core" + _GAP + r"(\d[\d,]+)", re.I), parse_count),
    (BITCOIN_KNOTS, re.compile(r"Bitcoin\s+Knots" + _GAP + r"(\d[\d,]+)", re.I), parse_count),
    (TOR_NETWORK, re.compile(r"Tor\s+Network\s+Nodes[\s\S]{0,200}?(\d[\d,]{3,})", re.I), parse_count),
    (CORE_V30, re.compile(r"/Satoshi:30\.0\.0/" + _GAP + r"(\d[\d,.]*)", re.I), parse_thousands),
)


def _apply_patterns(haystack: str, patterns) -> dict[str, int]:
    found: dict[str, int] = {}
    if not haystack:
        return found
    for field_id, pattern, parse in patterns:
        m = pattern.search(haystack)
        if m is None:
            continue
        value = parse(m.group(1))
        if value:
            found[field_id] = value
    return found


def labeled_text(page: PageContent) -> dict[str, int]:
    """Numbers next to their label in the rendered text."""
    return _apply_patterns(page.text, _TEXT_PATTERNS)


def _table_field(label: str) -> Optional[str]:
    """Field a table row label refers to; the V.30 row must win over plain Core."""
    lowered = label.lower()
    if "satoshi:30" in lowered or "v.30" in lowered or "v30" in lowered:
        return CORE_V30
    if "bitcoin knots" in lowered:
        return BITCOIN_KNOTS
    if "bitcoin core" in lowered:
        return BITCOIN_CORE
    if "total" in lowered and "public" in lowered:
        return TOTAL_PUBLIC
    if re.search(r"\btor\b", lowered):
        return TOR_NETWORK
    return None


def table_scan(page: PageContent) -> dict[str, int]:
    """
    Label/value rows of any <table> in the rendered markup.

    Rows lead either with the label ("Bitcoin Core | 18536") or with a rank
    ("1 | Bitcoin Core | 18536"); the rank column is skipped. Only the leading
    number of the value cell is read, so "18,536 (78.46%)" gives 18536.
    """
    found: dict[str, int] = {}
    if not page.html:
        return found
    soup = BeautifulSoup(page.html, "lxml")
    for row in soup.find_all("tr"):
        cells = [c.get_text(" ", strip=True) for c in row.find_all(["td", "th"])]
        if len(cells) < 2:
            continue
        if cells[0].isdigit() and len(cells) >= 3:
            cells = cells[1:]
        field_id = _table_field(cells[0])
        if field_id is None or field_id in found:
            continue
        if field_id == CORE_V30:
            m = _FIRST_DECIMAL.search(cells[1])
            value = parse_thousands(m.group(1)) if m else None
        else:
            m = _FIRST_NUMBER.search(cells[1])
            value = parse_count(m.group(1)) if m else None
        if value:
            found[field_id] = value
    return found


def summary_scan(page: PageContent) -> dict[str, int]:
    """First number inside headings and summary blocks that name a field."""
    found: dict[str, int] = {}
    if not page.html:
        return found
    soup = BeautifulSoup(page.html, "lxml")
    for elem in soup.select("h2, h3, .summary, .stats"):
        text = elem.get_text(" ", strip=True)
        m = _FIRST_NUMBER.search(text)
        if m is None:
            continue
        value = parse_count(m.group(1))
        if not value:
            continue
        if "Total Public" in text:
            found.setdefault(TOTAL_PUBLIC, value)
        elif "Tor" in text:
            found.setdefault(TOR_NETWORK, value)
    return found


def raw_markup(page: PageContent) -> dict[str, int]:
    """Last resort: the served source, before any script ran."""
    return _apply_patterns(page.source or page.html, _MARKUP_PATTERNS)


Strategy = Callable[[PageContent], dict[str, int]]

STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("labeled_text", labeled_text),
    ("table_scan", table_scan),
    ("summary_scan", summary_scan),
    ("raw_markup", raw_markup),
)


# =============================================================================
# CASCADE
# =============================================================================

def _transition(state: ExtractionState, new_state: ExtractionState) -> ExtractionState:
    print(f"[State] {state.name} → {new_state.name}")
    return new_state


@dataclass
class ExtractionReport:
    """Resolved values, which strategy produced each, and every state passed through."""
    values: dict[str, Optional[int]] = field(default_factory=lambda: {f: None for f in FIELDS})
    sources: dict[str, str] = field(default_factory=dict)
    failed_strategies: dict[str, str] = field(default_factory=dict)
    state: ExtractionState = ExtractionState.CONTENT_READY
    history: list[ExtractionState] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    def unresolved(self) -> list[str]:
        return [f for f in FIELDS if not self.values.get(f)]

    def advance(self, new_state: ExtractionState) -> None:
        self.state = _transition(self.state, new_state)
        self.history.append(new_state)


def run_cascade(
    page: PageContent,
    strategies: tuple[tuple[str, Strategy], ...] = STRATEGIES,
    history: Optional[list[ExtractionState]] = None,
) -> ExtractionReport:
    """
    Apply strategies in order; the first non-zero value for a field wins.

    A strategy that raises is recorded and skipped. Stops early once every
    field is resolved. Mandatory fields are checked by finalize().

    history is the state path of the page load (IDLE .. CONTENT_READY) and
    must end in CONTENT_READY; extraction continues from it.
    """
    history = list(history or [ExtractionState.CONTENT_READY])
    if history[-1] is not ExtractionState.CONTENT_READY:
        raise ValueError(f"Cannot extract from a page in state {history[-1].name}")
    report = ExtractionReport(state=history[-1], history=history)
    for name, strategy in strategies:
        if not report.unresolved():
            break
        try:
            found = strategy(page)
        except Exception as e:
            report.failed_strategies[name] = str(e)
            print(f"[Extract] Strategy {name} failed: {e}")
            continue
        for field_id, value in found.items():
            if field_id in report.values and not report.values[field_id] and value:
                report.values[field_id] = value
                report.sources[field_id] = name
    report.advance(ExtractionState.EXTRACTED)
    return report


def finalize(report: ExtractionReport) -> ExtractionReport:
    """
    Enforce mandatory fields and settle the final state.

    Raises:
        ExtractionIncompleteError: If totalPublic or bitcoinCore is unresolved
    """
    missing = [f for f in MANDATORY_FIELDS if not report.values.get(f)]
    if missing:
        report.advance(ExtractionState.PARTIAL_FAILURE)
        raise ExtractionIncompleteError(missing)
    report.advance(ExtractionState.COMPLETE if not report.unresolved() else ExtractionState.PARTIAL_FAILURE)
    return report


def percentage(part: int, total: int) -> str:
    """
    100 * part / total with one decimal, "0.0" for an empty part.

    Halves round up, computed in integer tenths so 60 of 24000 is "0.3".
    """
    if not part or not total:
        return "0.0"
    tenths = (2 * 1000 * part + total) // (2 * total)
    return f"{tenths // 10}.{tenths % 10}"


def build_stats_artifact(values: dict[str, Optional[int]], updated_at: str) -> dict[str, Any]:
    """Shape resolved values into the bitref-stats.json contract."""
    total = values.get(TOTAL_PUBLIC) or 0
    artifact: dict[str, Any] = {"updatedAt": updated_at}
    for field_id in PART_FIELDS:
        part = values.get(field_id) or 0
        artifact[field_id] = {"total": part, "percentage": percentage(part, total)}
    artifact[TOTAL_PUBLIC] = {"total": total}
    return artifact


def extract_stats(
    page: PageContent,
    history: Optional[list[ExtractionState]] = None,
) -> tuple[dict[str, Any], ExtractionReport]:
    """Cascade + mandatory check + artifact shaping for one captured page."""
    report = finalize(run_cascade(page, history=history))
    for field_id in FIELDS:
        source = report.sources.get(field_id, "unresolved")
        print(f"[Extract] {field_id:<13} {report.values[field_id] or 0:>8} ({source})")
    return build_stats_artifact(report.values, utc_timestamp()), report


# =============================================================================
# BROWSER
# =============================================================================

async def render_page(cfg: Config) -> tuple[PageContent, list[ExtractionState]]:
    """
    Load the page in headless Chromium and capture it once its numbers are in.

    Returns:
        The captured page and the states passed through (IDLE .. CONTENT_READY)

    Raises:
        FetchError: Navigation failed or returned a non-success status
        LoadTimeoutError: Navigation or the readiness poll timed out
    """
    history = [ExtractionState.IDLE]
    async with async_playwright() as p:
        print("[Browser] Launching Chromium...")
        browser = await p.chromium.launch(
            headless=True,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        try:
            context = await browser.new_context(user_agent=cfg.user_agent)
            page = await context.new_page()

            print(f"[Browser] Navigating to {cfg.url}...")
            try:
                response = await page.goto(
                    cfg.url,
                    wait_until="domcontentloaded",
                    timeout=int(cfg.nav_timeout_sec * 1000),
                )
            except PlaywrightTimeoutError as e:
                raise LoadTimeoutError(f"Navigation to {cfg.url} timed out") from e
            except PlaywrightError as e:
                raise FetchError(cfg.url, None, str(e)) from e
            if response is not None and not response.ok:
                raise FetchError(cfg.url, response.status, response.status_text)
            history.append(_transition(history[-1], ExtractionState.PAGE_LOADED))

            print("[Browser] Waiting for statistics to load...")
            await wait_until_ready(page, cfg.ready_timeout_sec, cfg.poll_interval_sec)
            if cfg.settle_sec > 0:
                print(f"[Browser] Data detected, settling for {cfg.settle_sec:.0f}s...")
                await page.wait_for_timeout(int(cfg.settle_sec * 1000))
            history.append(_transition(history[-1], ExtractionState.CONTENT_READY))

            text = await page.inner_text("body")
            html = await page.content()
            source = ""
            if response is not None:
                try:
                    source = await response.text()
                except PlaywrightError:
                    source = ""
            return PageContent(text=text, html=html, source=source), history
        finally:
            await browser.close()


# =============================================================================
# MAIN
# =============================================================================

async def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    cfg = parse_args(argv)
    install_signal_handlers()

    print("=" * 72)
    print("Bitref Node Statistics")
    print("=" * 72)

    if cfg.html_path:
        print(f"[Load] Reading saved page {cfg.html_path}")
        page = page_content_from_html(Path(cfg.html_path).read_text(encoding="utf-8"))
        # A saved page is already rendered
        history = [ExtractionState.IDLE, ExtractionState.PAGE_LOADED, ExtractionState.CONTENT_READY]
    else:
        page, history = await render_page(cfg)

    if node_common.shutdown_requested():
        print("[Shutdown] Interrupted before extraction; nothing written")
        return

    artifact, report = extract_stats(page, history)
    print(f"[State] {' → '.join(s.name for s in report.history)}")
    out_path = write_artifact(cfg.output_path, artifact)

    print("\n" + "=" * 72)
    print(f"Total Public:          {artifact[TOTAL_PUBLIC]['total']:,}")
    print(f"Bitcoin Core:          {artifact[BITCOIN_CORE]['total']:,} ({artifact[BITCOIN_CORE]['percentage']}%)")
    print(f"Core V.30:             {artifact[CORE_V30]['total']:,} ({artifact[CORE_V30]['percentage']}%)")
    print(f"Bitcoin Knots:         {artifact[BITCOIN_KNOTS]['total']:,} ({artifact[BITCOIN_KNOTS]['percentage']}%)")
    print(f"Tor Network:           {artifact[TOR_NETWORK]['total']:,} ({artifact[TOR_NETWORK]['percentage']}%)")
    print(f"[Report] Output: {out_path}")
    print("=" * 72)


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
