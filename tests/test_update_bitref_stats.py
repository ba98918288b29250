"""Tests for the statistics-page cascade, readiness polling and the offline run."""

from __future__ import annotations

import asyncio
import json

import pytest

import node_common
import update_bitref_stats
from node_common import ExtractionIncompleteError, LoadTimeoutError
from update_bitref_stats import (
    BITCOIN_CORE,
    BITCOIN_KNOTS,
    CORE_V30,
    TOR_NETWORK,
    TOTAL_PUBLIC,
    ExtractionState,
    PageContent,
    build_stats_artifact,
    extract_stats,
    finalize,
    is_content_ready,
    labeled_text,
    page_content_from_html,
    parse_count,
    parse_thousands,
    percentage,
    raw_markup,
    run_cascade,
    summary_scan,
    table_scan,
    wait_until_ready,
)


RENDERED_TEXT = (
    "Bitcoin Nodes\n"
    "23624\nTotal Public Nodes\n"
    "Rank\tClient\tNodes\tShare\n"
    "1\tBitcoin Core\t18536\t78.46%\n"
)

V30_TABLE = """
<html><body>
<table>
  <tr><th>Version</th><th>Nodes</th></tr>
  <tr><td>Core V.30</td><td>3023</td></tr>
</table>
</body></html>
"""

FULL_PAGE = """
<html><head><script>var x = 1;</script></head><body>
<div class="stats"><span>23,624</span> Total Public Nodes</div>
<h3>14,880 Tor Network Nodes</h3>
<table>
  <tr><th>#</th><th>Client</th><th>Nodes</th></tr>
  <tr><td>1</td><td>Bitcoin Core</td><td>18,536</td></tr>
  <tr><td>2</td><td>Bitcoin Knots</td><td>4,512</td></tr>
  <tr><td>3</td><td>/Satoshi:30.0.0/</td><td>3.023</td></tr>
</table>
</body></html>
"""


# =========================================================================
# Value parsing
# =========================================================================

class TestParsing:

    @pytest.mark.parametrize("raw,expected", [
        ("18536", 18536), ("18,536", 18536), (" 42 ", 42), (7, 7),
        ("", None), (None, None), ("12.5", None), ("abc", None), ("-3", None),
    ])
    def test_parse_count(self, raw, expected) -> None:
        assert parse_count(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("3.023", 3023), ("1.5", 1500), ("3023", 3023), ("12.", 12), ("", None), ("x.y", None),
    ])
    def test_parse_thousands(self, raw, expected) -> None:
        assert parse_thousands(raw) == expected

    @pytest.mark.parametrize("part,total,expected", [
        (18536, 23624, "78.5"),
        (3023, 23624, "12.8"),
        (0, 23624, "0.0"),
        (5, 0, "0.0"),
        (1, 3, "33.3"),
        (60, 24000, "0.3"),
        (1, 2000, "0.1"),
        (3, 8, "37.5"),
        (24000, 24000, "100.0"),
    ])
    def test_percentage(self, part, total, expected) -> None:
        assert percentage(part, total) == expected


# =========================================================================
# Readiness
# =========================================================================

class FakePage:
    """Returns the queued body texts in turn, repeating the last one."""

    def __init__(self, texts):
        self.texts = list(texts)
        self.polls = 0

    async def inner_text(self, selector: str) -> str:
        assert selector == "body"
        self.polls += 1
        if len(self.texts) > 1:
            return self.texts.pop(0)
        return self.texts[0]


class TestReadiness:

    @pytest.mark.parametrize("text,ready", [
        ("23624\nTotal Public Nodes", True),
        ("Total Public Nodes\nloading...", False),
        ("Total Public Nodes\n  loading...\n12345 elsewhere", False),
        ("only 123 here", False),
        ("", False),
        (None, False),
    ])
    def test_is_content_ready(self, text, ready) -> None:
        assert is_content_ready(text) is ready

    @pytest.mark.asyncio
    async def test_waits_until_numbers_appear(self) -> None:
        page = FakePage([
            "Total Public Nodes\nloading...",
            "Total Public Nodes\nloading...",
            "23624\nTotal Public Nodes",
        ])
        text = await wait_until_ready(page, timeout_sec=5, poll_interval_sec=0)
        assert text.startswith("23624")
        assert page.polls == 3

    @pytest.mark.asyncio
    async def test_times_out(self) -> None:
        page = FakePage(["Total Public Nodes\nloading..."])
        with pytest.raises(LoadTimeoutError):
            await wait_until_ready(page, timeout_sec=0.05, poll_interval_sec=0.01)
        assert page.polls >= 2


# =========================================================================
# Strategies
# =========================================================================

class TestStrategies:

    def test_labeled_text(self) -> None:
        found = labeled_text(PageContent(text=RENDERED_TEXT, html=""))
        assert found == {TOTAL_PUBLIC: 23624, BITCOIN_CORE: 18536}

    def test_labeled_text_reads_tor_and_v30(self) -> None:
        text = (
            "14880 (62.99%)\nTor Network Nodes\n"
            "1\t/Satoshi:30.0.0/\t3.023\t12.80%\n"
            "2\tBitcoin Knots\t4512\t19.1%\n"
        )
        found = labeled_text(PageContent(text=text, html=""))
        assert found[TOR_NETWORK] == 14880
        assert found[CORE_V30] == 3023
        assert found[BITCOIN_KNOTS] == 4512

    def test_table_scan_two_column_rows(self) -> None:
        found = table_scan(PageContent(text="", html=V30_TABLE))
        assert found == {CORE_V30: 3023}

    def test_table_scan_skips_rank_column(self) -> None:
        found = table_scan(PageContent(text="", html=FULL_PAGE))
        assert found[BITCOIN_CORE] == 18536
        assert found[BITCOIN_KNOTS] == 4512
        assert found[CORE_V30] == 3023

    def test_table_scan_reads_leading_number_of_value_cell(self) -> None:
        html = (
            "<table>"
            "<tr><td>1</td><td>Bitcoin Core</td><td>18,536 (78.46%)</td></tr>"
            "<tr><td>Tor Network</td><td>14880 nodes</td></tr>"
            "<tr><td>Core V.30</td><td>3.023 (12.80%)</td></tr>"
            "<tr><td>Bitcoin Knots</td><td>n/a</td></tr>"
            "</table>"
        )
        found = table_scan(PageContent(text="", html=html))
        assert found == {BITCOIN_CORE: 18536, TOR_NETWORK: 14880, CORE_V30: 3023}

    def test_suffixed_table_cells_satisfy_mandatory_fields(self) -> None:
        html = (
            "<table><tr><td>Total Public Nodes</td><td>23,624 total</td></tr>"
            "<tr><td>Bitcoin Core</td><td>18,536 (78.46%)</td></tr></table>"
        )
        artifact, report = extract_stats(PageContent(text="", html=html))
        assert artifact[BITCOIN_CORE] == {"total": 18536, "percentage": "78.5"}
        assert report.sources[BITCOIN_CORE] == "table_scan"

    def test_table_scan_keeps_first_matching_row(self) -> None:
        html = (
            "<table><tr><td>Bitcoin Core</td><td>100</td></tr>"
            "<tr><td>Bitcoin Core</td><td>200</td></tr></table>"
        )
        assert table_scan(PageContent(text="", html=html)) == {BITCOIN_CORE: 100}

    def test_summary_scan(self) -> None:
        found = summary_scan(PageContent(text="", html=FULL_PAGE))
        assert found == {TOTAL_PUBLIC: 23624, TOR_NETWORK: 14880}

    def test_raw_markup_sees_through_tags(self) -> None:
        source = (
            "<div><b>23624</b></div><p>Total Public Nodes</p>"
            "<td>Bitcoin Core</td>\n<td>18,536</td>"
            "<td>/Satoshi:30.0.0/</td><td>3.023</td>"
        )
        found = raw_markup(PageContent(text="", html="", source=source))
        assert found[TOTAL_PUBLIC] == 23624
        assert found[BITCOIN_CORE] == 18536
        assert found[CORE_V30] == 3023

    def test_raw_markup_falls_back_to_rendered_html(self) -> None:
        found = raw_markup(PageContent(text="", html="<td>Bitcoin Knots</td><td>4512</td>"))
        assert found == {BITCOIN_KNOTS: 4512}

    def test_page_content_from_html_drops_scripts(self) -> None:
        page = page_content_from_html(FULL_PAGE)
        assert "var x" not in page.text
        assert "Total Public Nodes" in page.text
        assert page.source == FULL_PAGE


# =========================================================================
# Cascade
# =========================================================================

class TestCascade:

    def test_text_and_table_combine(self) -> None:
        page = PageContent(text=RENDERED_TEXT, html=V30_TABLE)
        artifact, report = extract_stats(page)

        assert artifact[TOTAL_PUBLIC] == {"total": 23624}
        assert artifact[BITCOIN_CORE] == {"total": 18536, "percentage": "78.5"}
        assert artifact[CORE_V30] == {"total": 3023, "percentage": "12.8"}
        assert artifact[BITCOIN_KNOTS] == {"total": 0, "percentage": "0.0"}
        assert artifact[TOR_NETWORK] == {"total": 0, "percentage": "0.0"}
        assert report.sources[TOTAL_PUBLIC] == "labeled_text"
        assert report.sources[CORE_V30] == "table_scan"
        assert report.state is ExtractionState.PARTIAL_FAILURE

    def test_earlier_strategy_is_never_overwritten(self) -> None:
        strategies = (
            ("first", lambda page: {TOTAL_PUBLIC: 100}),
            ("second", lambda page: {TOTAL_PUBLIC: 999, BITCOIN_CORE: 50}),
        )
        report = run_cascade(PageContent("", ""), strategies)
        assert report.values[TOTAL_PUBLIC] == 100
        assert report.values[BITCOIN_CORE] == 50
        assert report.sources == {TOTAL_PUBLIC: "first", BITCOIN_CORE: "second"}

    def test_zero_does_not_resolve_a_field(self) -> None:
        strategies = (
            ("zeros", lambda page: {TOTAL_PUBLIC: 0}),
            ("real", lambda page: {TOTAL_PUBLIC: 7}),
        )
        report = run_cascade(PageContent("", ""), strategies)
        assert report.values[TOTAL_PUBLIC] == 7

    def test_failing_strategy_is_skipped(self) -> None:
        def broken(page):
            raise RuntimeError("selector exploded")

        strategies = (
            ("broken", broken),
            ("ok", lambda page: {TOTAL_PUBLIC: 10, BITCOIN_CORE: 5}),
        )
        report = finalize(run_cascade(PageContent("", ""), strategies))
        assert report.failed_strategies == {"broken": "selector exploded"}
        assert report.values[BITCOIN_CORE] == 5

    def test_stops_once_everything_is_resolved(self) -> None:
        calls = []

        def everything(page):
            calls.append("everything")
            return {TOTAL_PUBLIC: 1, BITCOIN_CORE: 1, CORE_V30: 1, BITCOIN_KNOTS: 1, TOR_NETWORK: 1}

        def never(page):
            calls.append("never")
            return {}

        report = finalize(run_cascade(PageContent("", ""), (("a", everything), ("b", never))))
        assert calls == ["everything"]
        assert report.state is ExtractionState.COMPLETE

    def test_state_path_continues_from_page_load(self) -> None:
        loaded = [ExtractionState.IDLE, ExtractionState.PAGE_LOADED, ExtractionState.CONTENT_READY]
        _, report = extract_stats(PageContent(text=RENDERED_TEXT, html=V30_TABLE), loaded)
        assert report.history == loaded + [ExtractionState.EXTRACTED, ExtractionState.PARTIAL_FAILURE]
        assert report.state is ExtractionState.PARTIAL_FAILURE

    def test_state_path_of_full_page(self) -> None:
        _, report = extract_stats(page_content_from_html(FULL_PAGE))
        assert report.history == [
            ExtractionState.CONTENT_READY,
            ExtractionState.EXTRACTED,
            ExtractionState.COMPLETE,
        ]

    def test_page_that_never_became_ready_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            run_cascade(PageContent("", ""), history=[ExtractionState.IDLE, ExtractionState.PAGE_LOADED])

    @pytest.mark.parametrize("found,missing", [
        ({}, [TOTAL_PUBLIC, BITCOIN_CORE]),
        ({TOTAL_PUBLIC: 23624}, [BITCOIN_CORE]),
        ({BITCOIN_CORE: 18536, BITCOIN_KNOTS: 4512}, [TOTAL_PUBLIC]),
    ])
    def test_mandatory_fields_missing_is_fatal(self, found, missing) -> None:
        report = run_cascade(PageContent("", ""), (("only", lambda page: found),))
        with pytest.raises(ExtractionIncompleteError) as exc_info:
            finalize(report)
        assert exc_info.value.missing == missing
        assert report.state is ExtractionState.PARTIAL_FAILURE

    def test_full_page_resolves_everything(self) -> None:
        _, report = extract_stats(page_content_from_html(FULL_PAGE))
        assert report.values == {
            TOTAL_PUBLIC: 23624,
            BITCOIN_CORE: 18536,
            CORE_V30: 3023,
            BITCOIN_KNOTS: 4512,
            TOR_NETWORK: 14880,
        }
        assert report.state is ExtractionState.COMPLETE

    def test_artifact_shape(self) -> None:
        artifact = build_stats_artifact({TOTAL_PUBLIC: 200, BITCOIN_CORE: 150}, "t")
        assert list(artifact) == ["updatedAt", BITCOIN_CORE, CORE_V30, BITCOIN_KNOTS, TOR_NETWORK, TOTAL_PUBLIC]
        assert artifact[BITCOIN_CORE] == {"total": 150, "percentage": "75.0"}


# =========================================================================
# main() in offline mode
# =========================================================================

class TestOfflineRun:

    @pytest.fixture(autouse=True)
    def _no_signal_handlers(self, monkeypatch):
        monkeypatch.setattr(update_bitref_stats, "install_signal_handlers", lambda: None)

    def test_writes_artifact_from_saved_page(self, tmp_path) -> None:
        saved = tmp_path / "nodes.html"
        saved.write_text(FULL_PAGE, encoding="utf-8")
        out = tmp_path / "out" / "bitref-stats.json"

        asyncio.run(update_bitref_stats.main(["--html", str(saved), "--output", str(out)]))

        data = json.loads(out.read_text())
        assert data[TOTAL_PUBLIC] == {"total": 23624}
        assert data[BITCOIN_KNOTS]["percentage"] == "19.1"

    def test_incomplete_page_writes_nothing(self, tmp_path) -> None:
        saved = tmp_path / "nodes.html"
        saved.write_text("<html><body>Maintenance</body></html>", encoding="utf-8")
        out = tmp_path / "bitref-stats.json"
        out.write_text('{"previous": true}')

        with pytest.raises(ExtractionIncompleteError):
            asyncio.run(update_bitref_stats.main(["--html", str(saved), "--output", str(out)]))
        assert json.loads(out.read_text()) == {"previous": True}

    def test_interrupt_writes_nothing(self, tmp_path) -> None:
        saved = tmp_path / "nodes.html"
        saved.write_text(FULL_PAGE, encoding="utf-8")
        out = tmp_path / "bitref-stats.json"
        node_common.shutdown_flag = True

        asyncio.run(update_bitref_stats.main(["--html", str(saved), "--output", str(out)]))
        assert not out.exists()
