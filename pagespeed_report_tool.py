# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "reportlab",
#   "rich",
#   "uvicorn",
# ]
# ///
"""PageSpeed Insights bulk report tool.

Runs Google PageSpeed Insights against a batch of URLs and turns the
per-URL results into a terminal summary, a CSV export and a paginated
PDF report with score color coding and a Core Web Vitals table per run.
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import json
import math
import os
import sys
import tomllib
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from io import BytesIO
from pathlib import Path
from typing import NamedTuple
from urllib.parse import quote, urlparse
from xml.sax.saxutils import escape

import httpx
import pandas as pd
import uvicorn
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.pdfgen import canvas
from reportlab.platypus import (
    HRFlowable,
    KeepTogether,
    PageBreak,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table as RichTable
from rich.text import Text

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_UI_URL = "https://developers.google.com/speed/pagespeed/insights/"

VALID_STRATEGIES = ("mobile", "desktop")
VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
VALID_EXPORT_FORMATS = ("csv", "pdf")
VALID_OUTPUT_FORMATS = ("csv", "pdf", "both", "none")
SCORE_SCALES = ("0-100", "0-1")

DEFAULT_STRATEGY = "mobile"
DEFAULT_OUTPUT_FORMAT = "both"
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_REPORT_NAME = "PageSpeed Report"
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8000

# Callers reject larger batches before calling run_batch().
MAX_BATCH_URLS = 50

REQUEST_TIMEOUT = 120
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}
FALLBACK_ERROR_MESSAGE = "API request failed"

CONFIG_FILENAMES = ["pagespeed.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed",
]

# Category scores: (lighthouse_category, extracted_key, display_label)
CATEGORY_FIELDS = [
    ("performance", "performance", "Performance"),
    ("accessibility", "accessibility", "Accessibility"),
    ("best-practices", "best_practices", "Best Practices"),
    ("seo", "seo", "SEO"),
]

# Web vitals: (audit_id, extracted_key, display_label)
WEB_VITALS = [
    ("largest-contentful-paint", "lcp", "LCP"),
    ("max-potential-fid", "fid", "FID"),
    ("cumulative-layout-shift", "cls", "CLS"),
    ("first-contentful-paint", "fcp", "FCP"),
    ("interactive", "tti", "TTI"),
    ("total-blocking-time", "tbt", "TBT"),
    ("speed-index", "si", "Speed Index"),
]

CSV_COLUMNS = [
    "url",
    "strategy",
    "performanceScore",
    "accessibilityScore",
    "bestPracticesScore",
    "seoScore",
    "firstContentfulPaint",
    "largestContentfulPaint",
    "cumulativeLayoutShift",
    "totalBlockingTime",
    "speedIndex",
    "interactive",
    "testDate",
]

# CSV score columns: (lighthouse_category, column_name)
CSV_SCORE_COLUMNS = [
    ("performance", "performanceScore"),
    ("accessibility", "accessibilityScore"),
    ("best-practices", "bestPracticesScore"),
    ("seo", "seoScore"),
]

# CSV web vital columns: (audit_id, column_name)
CSV_VITAL_COLUMNS = [
    ("first-contentful-paint", "firstContentfulPaint"),
    ("largest-contentful-paint", "largestContentfulPaint"),
    ("cumulative-layout-shift", "cumulativeLayoutShift"),
    ("total-blocking-time", "totalBlockingTime"),
    ("speed-index", "speedIndex"),
    ("interactive", "interactive"),
]

NOT_AVAILABLE = "N/A"

SCORE_COLORS = {
    "good": "#0cce6b",
    "needs-improvement": "#ffa400",
    "poor": "#ff4e42",
    "na": "#999999",
}
BAND_LABELS = {
    "good": "GOOD",
    "needs-improvement": "NEEDS WORK",
    "poor": "POOR",
    "na": "N/A",
}

EXPORT_MEDIA_TYPES = {"csv": "text/csv", "pdf": "application/pdf"}
EXPORT_FILENAME_STEM = "pagespeed-report"

PDF_PAGE_SIZE = A4
PDF_MARGIN = 50
PDF_FONT = "Helvetica"
PDF_FONT_BOLD = "Helvetica-Bold"
PDF_RULE_COLOR = "#e5e7eb"
PDF_MUTED_COLOR = "#6b7280"
PDF_ZEBRA_COLOR = "#f9fafb"

out_console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PageSpeedError(Exception):
    """Raised when a PageSpeed API request fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ReportError(Exception):
    """Base class for export failures."""


class ExportInputError(ReportError):
    """Raised when export input is rejected before any report is built."""


class ReportBuildError(ReportError):
    """Raised when a CSV or PDF report cannot be assembled."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisRecord:
    """Outcome of testing one URL under one device strategy.

    ``data`` holds the raw PageSpeed response on success and ``error`` the
    failure message otherwise. A record with neither is "invalid": it is
    not an error, but every renderer shows a placeholder for it.
    """

    url: str
    strategy: str = DEFAULT_STRATEGY
    error: str | None = None
    data: dict | None = None

    @property
    def lighthouse(self) -> dict | None:
        """The nested Lighthouse result, or None for error/invalid records."""
        if self.error or not isinstance(self.data, dict):
            return None
        lighthouse = self.data.get("lighthouseResult")
        return lighthouse if isinstance(lighthouse, dict) else None

    @property
    def status(self) -> str:
        if self.error:
            return "error"
        if self.lighthouse is not None:
            return "ok"
        return "invalid"

    @property
    def analysis_timestamp(self) -> str | None:
        if self.lighthouse is None:
            return None
        timestamp = self.data.get("analysisUTCTimestamp")
        return timestamp if isinstance(timestamp, str) and timestamp else None

    @classmethod
    def from_payload(cls, payload: object) -> AnalysisRecord:
        """Build a record from its JSON shape. Malformed payloads become invalid records."""
        if isinstance(payload, AnalysisRecord):
            return payload
        if not isinstance(payload, dict):
            return cls(url="")

        url = payload.get("url")
        strategy = payload.get("strategy")
        error = payload.get("error")
        data = payload.get("data")
        return cls(
            url=str(url) if url else "",
            strategy=str(strategy) if strategy else DEFAULT_STRATEGY,
            error=str(error) if error else None,
            data=data if isinstance(data, dict) else None,
        )

    def to_payload(self) -> dict:
        payload: dict[str, object] = {"url": self.url, "strategy": self.strategy}
        if self.error:
            payload["error"] = self.error
        elif self.data is not None:
            payload["data"] = self.data
        return payload


def _as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _fraction(value: object) -> float | None:
    """A Lighthouse score in [0, 1], or None for anything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or not 0 <= value <= 1:
        return None
    return float(value)


def _strategy_label(strategy: str) -> str:
    return "Desktop" if strategy == "desktop" else "Mobile"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Metrics Extraction
# ---------------------------------------------------------------------------


def category_score(record: AnalysisRecord, category: str) -> int | None:
    """Return a category score as a whole percentage, or None when not measured."""
    lighthouse = record.lighthouse
    if lighthouse is None:
        return None
    categories = _as_dict(lighthouse.get("categories"))
    fraction = _fraction(_as_dict(categories.get(category)).get("score"))
    return round(fraction * 100) if fraction is not None else None


def extract_scores(record: AnalysisRecord) -> dict[str, int]:
    """Category scores for the screen view; unmeasured categories read as 0."""
    scores = {}
    for category, key, _ in CATEGORY_FIELDS:
        score = category_score(record, category)
        scores[key] = score if score is not None else 0
    return scores


def _audit(record: AnalysisRecord, audit_id: str) -> dict:
    lighthouse = record.lighthouse
    if lighthouse is None:
        return {}
    return _as_dict(_as_dict(lighthouse.get("audits")).get(audit_id))


def web_vital_display(record: AnalysisRecord, audit_id: str) -> str:
    display_value = _audit(record, audit_id).get("displayValue")
    if isinstance(display_value, str) and display_value:
        return display_value
    return NOT_AVAILABLE


def web_vital_score(record: AnalysisRecord, audit_id: str) -> float | None:
    """Raw fractional audit score. Only used for coloring, never displayed."""
    return _fraction(_audit(record, audit_id).get("score"))


def extract_web_vitals(record: AnalysisRecord) -> dict[str, str]:
    return {key: web_vital_display(record, audit_id) for audit_id, key, _ in WEB_VITALS}


def extract_metrics(record: AnalysisRecord) -> dict:
    """Normalized view of a record: scores, web vitals and their bands."""
    return {
        "url": record.url,
        "strategy": record.strategy,
        "status": record.status,
        "error": record.error,
        "scores": extract_scores(record),
        "web_vitals": extract_web_vitals(record),
        "web_vital_bands": {
            key: classify_score(web_vital_score(record, audit_id), "0-1")
            for audit_id, key, _ in WEB_VITALS
        },
        "analysis_timestamp": record.analysis_timestamp,
    }


# ---------------------------------------------------------------------------
# Score Classification
# ---------------------------------------------------------------------------


class ScoreBand(NamedTuple):
    band: str
    color: str
    label: str


def classify_score(score: float | None, scale: str = "0-100") -> ScoreBand:
    """Map a score to good / needs-improvement / poor.

    ``scale`` is "0-100" for whole percentages or "0-1" for raw fractions.
    Missing scores map to the "na" band.
    """
    if scale not in SCORE_SCALES:
        raise ValueError(f"unknown score scale '{scale}', expected one of {SCORE_SCALES}")

    if score is None or pd.isna(score):
        band = "na"
    else:
        good_threshold, fair_threshold = (0.9, 0.5) if scale == "0-1" else (90, 50)
        if score >= good_threshold:
            band = "good"
        elif score >= fair_threshold:
            band = "needs-improvement"
        else:
            band = "poor"
    return ScoreBand(band, SCORE_COLORS[band], BAND_LABELS[band])


def summarize_records(records: list[AnalysisRecord]) -> dict:
    """Aggregate counts and per-category averages across a batch.

    Each average only covers the records where that category was measured.
    """
    distinct_urls = list(dict.fromkeys(record.url for record in records))
    valid_records = [record for record in records if record.status == "ok"]
    score_keys = [key for _, key, _ in CATEGORY_FIELDS]

    averages: dict[str, int | None] = {key: None for key in score_keys}
    if valid_records:
        score_rows = [
            {key: category_score(record, category) for category, key, _ in CATEGORY_FIELDS}
            for record in valid_records
        ]
        score_frame = pd.DataFrame(score_rows, columns=score_keys, dtype="float")
        means = score_frame.mean()
        for key in score_keys:
            if pd.notna(means[key]):
                averages[key] = round(float(means[key]))

    return {
        "total_urls": len(distinct_urls),
        "total_runs": len(records),
        "valid_runs": len(valid_records),
        "error_count": sum(1 for record in records if record.status == "error"),
        "invalid_count": sum(1 for record in records if record.status == "invalid"),
        "has_valid_data": bool(valid_records),
        "averages": averages,
    }


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Prefix https:// when the URL carries no http(s) scheme."""
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    url = normalize_url(url)
    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


def full_report_url(url: str, strategy: str) -> str:
    """Link to the interactive PageSpeed Insights page for a URL."""
    return f"{PAGESPEED_UI_URL}?url={quote(url, safe='')}&strategy={strategy}"


def load_urls(url_args: list[str], file_path: str | None, allow_stdin: bool = True) -> list[str]:
    """Load URLs from positional args, a file or stdin. Returns a validated, de-duplicated list."""
    raw_urls: list[str] = []

    if url_args:
        raw_urls.extend(url_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            err_console.print(f"Error: URL file not found: {file_path}", markup=False)
            sys.exit(1)
        raw_urls.extend(path.read_text().splitlines())
    elif allow_stdin and not sys.stdin.isatty():
        raw_urls.extend(sys.stdin.read().splitlines())

    seen: set[str] = set()
    validated: list[str] = []
    for raw in raw_urls:
        cleaned = validate_url(raw)
        if cleaned:
            if cleaned not in seen:
                seen.add(cleaned)
                validated.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            err_console.print(f"Warning: skipping invalid URL: {raw.strip()}", markup=False)

    if not validated:
        err_console.print("Error: no valid URLs provided.")
        sys.exit(1)

    if len(validated) > MAX_BATCH_URLS:
        err_console.print(f"Error: maximum {MAX_BATCH_URLS} URLs per batch, got {len(validated)}.")
        sys.exit(1)

    return validated


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def _message_from_error_body(body: object, text: str) -> str:
    """Pull a human-readable message out of a JSON or plain-text error body."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        return FALLBACK_ERROR_MESSAGE
    text = (text or "").strip()
    return text[:500] if text else FALLBACK_ERROR_MESSAGE


def _response_error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    return _message_from_error_body(body, response.text)


async def fetch_pagespeed_result(
    url: str,
    strategy: str,
    api_key: str | None = None,
    categories: list[str] | None = None,
    *,
    client: httpx.AsyncClient,
) -> dict:
    """Fetch PageSpeed Insights results for a single URL + strategy.

    Retries on 429/500/503 and transport errors with exponential backoff.
    """
    # httpx sends list values as repeated query params
    params: dict[str, str | list[str]] = {
        "url": url,
        "strategy": strategy,
        "category": list(categories or VALID_CATEGORIES),
    }
    if api_key:
        params["key"] = api_key

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = await client.get(PAGESPEED_API_URL, params=params, timeout=REQUEST_TIMEOUT)
        except (httpx.HTTPError, OSError) as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue
            break

        if response.status_code == 200:
            try:
                body = response.json()
            except ValueError as exc:
                raise PageSpeedError("Unparseable response from PageSpeed API", 200) from exc
            if isinstance(body, dict) and body.get("error"):
                raise PageSpeedError(_message_from_error_body(body, ""), 200)
            if not isinstance(body, dict) or not isinstance(body.get("lighthouseResult"), dict):
                raise PageSpeedError("No lighthouseResult in PageSpeed response", 200)
            return body

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
            wait_time = RETRY_BASE_DELAY * (2**attempt)
            retry_after = response.headers.get("Retry-After")
            if retry_after and response.status_code == 429:
                try:
                    wait_time = float(retry_after)
                except ValueError:
                    pass
            await asyncio.sleep(wait_time)
            continue

        raise PageSpeedError(_response_error_message(response), response.status_code)

    raise PageSpeedError(f"Request failed after {MAX_RETRIES + 1} attempts: {last_error}")


# ---------------------------------------------------------------------------
# Batch Processing
# ---------------------------------------------------------------------------


async def run_batch(
    urls: list[str],
    api_key: str | None,
    strategy: str = DEFAULT_STRATEGY,
    *,
    categories: list[str] | None = None,
    client: httpx.AsyncClient | None = None,
    workers: int | None = None,
    verbose: bool = False,
) -> list[AnalysisRecord]:
    """Test every URL concurrently and return one record per URL, in input order.

    A failing URL becomes an error record; it never aborts its siblings.
    ``workers`` caps in-flight requests (None runs them all at once).
    """
    if strategy not in VALID_STRATEGIES:
        raise ValueError(f"invalid strategy '{strategy}', expected one of {VALID_STRATEGIES}")

    normalized_urls = [normalize_url(url) for url in urls]
    total = len(normalized_urls)
    semaphore = asyncio.Semaphore(workers) if workers and workers > 0 else None
    completed_count = 0

    async def test_one(active_client: httpx.AsyncClient, url: str) -> AnalysisRecord:
        nonlocal completed_count
        if verbose:
            err_console.print(f"  Running {strategy} test for: {url}", markup=False)
        try:
            if semaphore is None:
                data = await fetch_pagespeed_result(url, strategy, api_key, categories, client=active_client)
            else:
                async with semaphore:
                    data = await fetch_pagespeed_result(url, strategy, api_key, categories, client=active_client)
            record = AnalysisRecord(url=url, strategy=strategy, data=data)
        except PageSpeedError as exc:
            err_console.print(f"  Error testing {url}: {exc}", style="red", markup=False)
            record = AnalysisRecord(url=url, strategy=strategy, error=str(exc))

        completed_count += 1
        if verbose:
            err_console.print(f"  Progress: {completed_count}/{total}", markup=False)
        return record

    async def run_all(active_client: httpx.AsyncClient) -> list[AnalysisRecord]:
        return list(await asyncio.gather(*(test_one(active_client, url) for url in normalized_urls)))

    if client is not None:
        return await run_all(client)
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as owned_client:
        return await run_all(owned_client)


# ---------------------------------------------------------------------------
# Screen View
# ---------------------------------------------------------------------------


def format_result_cards(records: AnalysisRecord | list[AnalysisRecord]) -> Group:
    """Render records as terminal cards, one panel per record."""
    if isinstance(records, AnalysisRecord):
        records = [records]

    panels = []
    for record in records:
        title = Text(f"{record.url or '(no URL)'} - {_strategy_label(record.strategy)}")

        if record.status == "error":
            panels.append(Panel(Text(record.error, style="red"), title=title, title_align="left", border_style="red"))
            continue
        if record.status == "invalid":
            body = Text("Invalid or incomplete response data", style="yellow")
            panels.append(Panel(body, title=title, title_align="left", border_style="yellow"))
            continue

        scores = extract_scores(record)
        grid = RichTable(show_header=False, box=None, padding=(0, 2))
        grid.add_column("metric")
        grid.add_column("value")
        for _, key, label in CATEGORY_FIELDS:
            band = classify_score(scores[key])
            grid.add_row(label, Text(f"{scores[key]}/100 ({band.label})", style=f"bold {band.color}"))

        grid.add_row("", "")
        grid.add_row(Text("Core Web Vitals", style="bold"), "")
        for audit_id, _, label in WEB_VITALS:
            band = classify_score(web_vital_score(record, audit_id), "0-1")
            grid.add_row(f"  {label}", Text(web_vital_display(record, audit_id), style=band.color))

        link = Text(f"Full report: {full_report_url(record.url, record.strategy)}", style="dim")
        panels.append(Panel(Group(grid, link), title=title, title_align="left", border_style="blue"))

    return Group(*panels)


def _print_batch_summary(records: list[AnalysisRecord]) -> None:
    """Print counts and average scores to stderr."""
    summary = summarize_records(records)
    err_console.print("\nSummary:")
    err_console.print(f"  URLs tested:     {summary['total_urls']}")
    err_console.print(f"  Test runs:       {summary['total_runs']}")
    for _, key, label in CATEGORY_FIELDS:
        average = summary["averages"][key]
        if average is not None:
            err_console.print(f"  Avg {label + ':':<15} {average}")
    if summary["error_count"]:
        err_console.print(f"  Errors:          {summary['error_count']}")
    if summary["invalid_count"]:
        err_console.print(f"  Incomplete:      {summary['invalid_count']}")


# ---------------------------------------------------------------------------
# CSV Report
# ---------------------------------------------------------------------------


def _csv_row(record: AnalysisRecord, default_test_date: str) -> dict:
    row: dict[str, object] = {column: "" for column in CSV_COLUMNS}
    row["url"] = record.url
    row["strategy"] = record.strategy or DEFAULT_STRATEGY

    if record.status != "ok":
        row["testDate"] = default_test_date
        return row

    # "N/A" keeps "not measured" apart from a measured zero
    for category, column in CSV_SCORE_COLUMNS:
        score = category_score(record, category)
        row[column] = score if score is not None else NOT_AVAILABLE
    for audit_id, column in CSV_VITAL_COLUMNS:
        row[column] = web_vital_display(record, audit_id)
    row["testDate"] = record.analysis_timestamp or default_test_date
    return row


def build_csv(records: list[AnalysisRecord]) -> str:
    """Flatten records into CSV text with a fixed column order.

    Every record yields exactly one row. Error and invalid records keep
    their url, strategy and testDate; their metric columns stay empty.
    """
    default_test_date = _utc_now_iso()
    try:
        rows = [_csv_row(record, default_test_date) for record in records]
        dataframe = pd.DataFrame(rows, columns=CSV_COLUMNS)
        return dataframe.to_csv(index=False, lineterminator="\n")
    except Exception as exc:
        raise ReportBuildError(f"CSV generation failed: {exc}") from exc


# ---------------------------------------------------------------------------
# PDF Report
# ---------------------------------------------------------------------------


class FooterCanvas(canvas.Canvas):
    """Canvas that holds pages back until the end so footers know the page count."""

    def __init__(self, *args, generated_at: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self._generated_at = generated_at
        self._saved_page_states: list[dict] = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total_pages = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self._draw_footer(total_pages)
            super().showPage()
        super().save()

    def _draw_footer(self, total_pages: int) -> None:
        center_x = self._pagesize[0] / 2
        self.saveState()
        self.setFont(PDF_FONT, 8)
        self.setFillColor(colors.HexColor(PDF_MUTED_COLOR))
        self.drawCentredString(center_x, PDF_MARGIN / 2 + 10, f"Page {self._pageNumber} of {total_pages}")
        self.drawCentredString(center_x, PDF_MARGIN / 2, f"Generated {self._generated_at}")
        self.restoreState()


def _pdf_styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    normal = base["Normal"]
    return {
        "title": ParagraphStyle("ReportTitle", parent=normal, fontName=PDF_FONT_BOLD, fontSize=24, leading=30, spaceAfter=6),
        "subtitle": ParagraphStyle("ReportSubtitle", parent=normal, fontName=PDF_FONT, fontSize=16, leading=20, spaceAfter=6),
        "meta": ParagraphStyle(
            "ReportMeta", parent=normal, fontName=PDF_FONT, fontSize=10, textColor=colors.HexColor(PDF_MUTED_COLOR)
        ),
        "heading": ParagraphStyle("SectionHeading", parent=normal, fontName=PDF_FONT_BOLD, fontSize=14, leading=18, spaceAfter=10),
        "subheading": ParagraphStyle("SubHeading", parent=normal, fontName=PDF_FONT_BOLD, fontSize=11, leading=14, spaceBefore=4, spaceAfter=4),
        "url": ParagraphStyle(
            "UrlHeading", parent=normal, fontName=PDF_FONT_BOLD, fontSize=12, leading=15, spaceBefore=6, spaceAfter=4, wordWrap="CJK"
        ),
        "strategy": ParagraphStyle(
            "StrategyLabel", parent=normal, fontName=PDF_FONT_BOLD, fontSize=10, leading=13,
            textColor=colors.HexColor(PDF_MUTED_COLOR), spaceAfter=4,
        ),
        "body": ParagraphStyle("Body", parent=normal, fontName=PDF_FONT, fontSize=12, leading=16),
        "error": ParagraphStyle("ErrorLine", parent=normal, fontName=PDF_FONT, fontSize=11, leading=14, textColor=colors.HexColor(SCORE_COLORS["poor"])),
        "placeholder": ParagraphStyle(
            "Placeholder", parent=normal, fontName=PDF_FONT, fontSize=11, leading=14, textColor=colors.HexColor(SCORE_COLORS["needs-improvement"])
        ),
        "box_value": ParagraphStyle("BoxValue", parent=normal, fontName=PDF_FONT_BOLD, fontSize=18, leading=22, alignment=TA_CENTER),
        "box_label": ParagraphStyle(
            "BoxLabel", parent=normal, fontName=PDF_FONT, fontSize=9, leading=11, alignment=TA_CENTER,
            textColor=colors.HexColor(PDF_MUTED_COLOR),
        ),
        "cell": ParagraphStyle("Cell", parent=normal, fontName=PDF_FONT, fontSize=9, leading=11),
        "cell_value": ParagraphStyle("CellValue", parent=normal, fontName=PDF_FONT_BOLD, fontSize=9, leading=11),
    }


def _tint(hex_color: str, amount: float = 0.85) -> colors.Color:
    """Blend a color toward white for box backgrounds."""
    base = colors.HexColor(hex_color)
    return colors.Color(
        base.red + (1 - base.red) * amount,
        base.green + (1 - base.green) * amount,
        base.blue + (1 - base.blue) * amount,
    )


def _score_box_table(scores: list[tuple[str, int | None]], styles: dict, width: float) -> Table:
    """A single row of score boxes, each tinted with its band color."""
    cells = []
    commands = [
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 8),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
    ]
    for column, (label, score) in enumerate(scores):
        band = classify_score(score)
        display = str(score) if score is not None else NOT_AVAILABLE
        cells.append([
            Paragraph(f'<font color="{band.color}">{display}</font>', styles["box_value"]),
            Paragraph(escape(label), styles["box_label"]),
        ])
        commands.append(("BOX", (column, 0), (column, 0), 1, colors.HexColor(PDF_RULE_COLOR)))
        commands.append(("BACKGROUND", (column, 0), (column, 0), _tint(band.color)))

    table = Table([cells], colWidths=[width / len(scores)] * len(scores))
    table.setStyle(TableStyle(commands))
    return table


def _web_vitals_table(record: AnalysisRecord, styles: dict, width: float) -> Table:
    rows = []
    for audit_id, _, label in WEB_VITALS:
        band = classify_score(web_vital_score(record, audit_id), "0-1")
        value = escape(web_vital_display(record, audit_id))
        rows.append([
            Paragraph(escape(label), styles["cell"]),
            Paragraph(f'<font color="{band.color}">{value}</font>', styles["cell_value"]),
        ])

    table = Table(rows, colWidths=[width * 0.45, width * 0.55])
    table.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor(PDF_RULE_COLOR)),
        ("ROWBACKGROUNDS", (0, 0), (-1, -1), [colors.white, colors.HexColor(PDF_ZEBRA_COLOR)]),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
    ]))
    return table


def _record_block(record: AnalysisRecord, styles: dict, width: float) -> list:
    flowables = [Paragraph(f"Strategy: {_strategy_label(record.strategy)}", styles["strategy"])]

    if record.status == "error":
        flowables.append(Paragraph(f"Error: {escape(record.error)}", styles["error"]))
    elif record.status == "invalid":
        flowables.append(Paragraph("No valid data available", styles["placeholder"]))
    else:
        scores = [(label, category_score(record, category)) for category, _, label in CATEGORY_FIELDS]
        flowables.append(_score_box_table(scores, styles, width))
        flowables.append(Paragraph("Core Web Vitals", styles["subheading"]))
        flowables.append(_web_vitals_table(record, styles, width))

    flowables.append(Spacer(1, 16))
    return flowables


def _header_flowables(report_title: str, generated_at: str, styles: dict) -> list:
    return [
        Paragraph("PageSpeed Insights Report", styles["title"]),
        Paragraph(escape(report_title or "Generated Report"), styles["subtitle"]),
        Paragraph(f"Generated on {generated_at}", styles["meta"]),
        HRFlowable(width="100%", thickness=1, color=colors.HexColor(PDF_RULE_COLOR), spaceBefore=10, spaceAfter=20),
    ]


def _summary_flowables(records: list[AnalysisRecord], styles: dict, width: float) -> list:
    summary = summarize_records(records)
    flowables = [
        Paragraph("Summary", styles["heading"]),
        Paragraph(f"URLs tested: {summary['total_urls']}", styles["body"]),
        Paragraph(f"Total test runs: {summary['total_runs']}", styles["body"]),
    ]
    if summary["error_count"]:
        flowables.append(Paragraph(f"Failed runs: {summary['error_count']}", styles["body"]))

    if summary["has_valid_data"]:
        averages = [(label, summary["averages"][key]) for _, key, label in CATEGORY_FIELDS]
        flowables.append(Spacer(1, 12))
        flowables.append(KeepTogether([
            Paragraph("Average scores", styles["subheading"]),
            _score_box_table(averages, styles, width),
        ]))
    return flowables


def _group_by_url(records: list[AnalysisRecord]) -> list[tuple[str, list[AnalysisRecord]]]:
    """Group records by URL, keeping first-appearance order."""
    grouped: dict[str, list[AnalysisRecord]] = {}
    for record in records:
        grouped.setdefault(record.url, []).append(record)
    return list(grouped.items())


def build_pdf(records: list[AnalysisRecord], report_title: str, *, compress: bool = True) -> bytes:
    """Compose the paginated PDF report and return the complete document bytes.

    Layout: a header and summary page, then one section per distinct URL
    with a block per record. Each block is kept on a single page and every
    page gets a "Page i of N" footer once layout is finished. Any failure
    raises ReportBuildError; partial documents are never returned.
    """
    generated_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    buffer = BytesIO()
    try:
        styles = _pdf_styles()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=PDF_PAGE_SIZE,
            leftMargin=PDF_MARGIN,
            rightMargin=PDF_MARGIN,
            topMargin=PDF_MARGIN,
            bottomMargin=PDF_MARGIN,
            title=report_title or "PageSpeed Insights Report",
            author=f"PageSpeed Report Tool v{__version__}",
            pageCompression=1 if compress else 0,
        )

        story = _header_flowables(report_title, generated_at, styles)
        story.extend(_summary_flowables(records, styles, doc.width))
        story.append(PageBreak())
        story.append(Paragraph("Results by URL", styles["heading"]))

        for url, url_records in _group_by_url(records):
            url_heading = Paragraph(f"URL: {escape(url or '(no URL)')}", styles["url"])
            blocks = [_record_block(record, styles, doc.width) for record in url_records]
            # The heading travels with the first block so it is never orphaned
            story.append(KeepTogether([url_heading, *blocks[0]]))
            for block in blocks[1:]:
                story.append(KeepTogether(block))

        doc.build(story, canvasmaker=partial(FooterCanvas, generated_at=generated_at))
    except Exception as exc:
        raise ReportBuildError(f"PDF generation failed: {exc}") from exc
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Export Boundary
# ---------------------------------------------------------------------------


class ExportPayload(NamedTuple):
    content: bytes
    media_type: str
    filename: str


def export_report(results: object, fmt: str, report_name: str | None = DEFAULT_REPORT_NAME) -> ExportPayload:
    """Validate an export request and build the requested report.

    Bad input raises ExportInputError before any generation work starts;
    generation failures raise ReportBuildError.
    """
    if fmt not in VALID_EXPORT_FORMATS:
        raise ExportInputError(
            f"Unsupported export format '{fmt}'. Supported formats: {', '.join(VALID_EXPORT_FORMATS)}"
        )
    if not isinstance(results, list) or not results:
        raise ExportInputError("Invalid or empty results data")

    records = [AnalysisRecord.from_payload(item) for item in results]
    if fmt == "csv":
        try:
            content = build_csv(records).encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ReportBuildError(f"CSV generation failed: {exc}") from exc
    else:
        content = build_pdf(records, report_name or DEFAULT_REPORT_NAME)

    return ExportPayload(content, EXPORT_MEDIA_TYPES[fmt], f"{EXPORT_FILENAME_STEM}.{fmt}")


# ---------------------------------------------------------------------------
# Output Files
# ---------------------------------------------------------------------------


def generate_output_path(output_dir: str, strategy: str, extension: str) -> Path:
    """Generate a timestamped output file path."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path / f"{timestamp}-{strategy}.{extension}"


def write_exports(
    records: list[AnalysisRecord],
    output_format: str,
    output_dir: str,
    explicit_output: str | None,
    report_name: str,
    strategy_label: str,
) -> list[str]:
    """Write the CSV and/or PDF export for a batch. Returns the written paths."""
    if output_format == "none":
        return []
    formats = VALID_EXPORT_FORMATS if output_format == "both" else (output_format,)

    written_files: list[str] = []
    for fmt in formats:
        payload = export_report(records, fmt, report_name)
        if explicit_output:
            output_path = Path(explicit_output).with_suffix(f".{fmt}")
        else:
            output_path = generate_output_path(output_dir, strategy_label, fmt)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(payload.content)
        written_files.append(str(output_path))

    err_console.print("\nReports written to:")
    for filepath in written_files:
        err_console.print(f"  {filepath}", markup=False)
    return written_files


def output_results_json(records: list[AnalysisRecord], output_path: Path) -> str:
    """Save raw batch results so reports can be rebuilt later. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_urls": len({record.url for record in records}),
            "strategies": sorted({record.strategy for record in records}),
            "tool_version": __version__,
        },
        "results": [record.to_payload() for record in records],
    }
    with open(output_path, "w") as fh:
        json.dump(output_data, fh, indent=2, default=str)
    return str(output_path)


def load_results(file_path: str) -> list:
    """Load saved results (structured envelope or bare list) from a JSON file."""
    path = Path(file_path)
    if not path.is_file():
        err_console.print(f"Error: results file not found: {file_path}", markup=False)
        sys.exit(1)

    try:
        with open(path) as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        err_console.print(f"Error: malformed results file {file_path}: {exc}", markup=False)
        sys.exit(1)

    if isinstance(data, dict) and "results" in data:
        return data["results"]
    if isinstance(data, list):
        return data
    err_console.print(f"Error: no results found in {file_path}", markup=False)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        err_console.print(f"Error: malformed config file {config_path}: {exc}", markup=False)
        sys.exit(1)
    except OSError as exc:
        err_console.print(f"Error: cannot read config file {config_path}: {exc}", markup=False)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            err_console.print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                markup=False,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "urls_file": "file",
        "strategy": "strategy",
        "format": "output_format",
        "output_dir": "output_dir",
        "report_name": "report_name",
        "workers": "workers",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-report",
        description="Bulk PageSpeed Insights testing with CSV and PDF reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- quick-check ---
    quick_check_parser = subparsers.add_parser("quick-check", help="Test a single URL and print the result")
    quick_check_parser.add_argument("url", help="URL to check")
    quick_check_parser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="Strategy: mobile or desktop")

    # --- audit ---
    audit_parser = subparsers.add_parser("audit", help="Test a batch of URLs and write CSV/PDF reports")
    audit_parser.add_argument("urls", nargs="*", default=[], help="URLs to test")
    audit_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    audit_parser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="Strategy: mobile or desktop")
    audit_parser.add_argument("--format", dest="output_format", action=TrackingAction, default=DEFAULT_OUTPUT_FORMAT, choices=VALID_OUTPUT_FORMATS, help="Report format: csv, pdf, both or none")
    audit_parser.add_argument("--report-name", dest="report_name", action=TrackingAction, default=DEFAULT_REPORT_NAME, help="Report name shown in the PDF header")
    audit_parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Explicit output file path (extension set per format)")
    audit_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named output files")
    audit_parser.add_argument("--save-results", dest="save_results", action=TrackingStoreTrueAction, default=False, help="Also save raw results as JSON for the export command")
    audit_parser.add_argument("-w", "--workers", dest="workers", action=TrackingAction, type=int, default=None, help="Max concurrent requests (default: all at once)")

    # --- export ---
    export_parser = subparsers.add_parser("export", help="Build a CSV or PDF report from a saved results file")
    export_parser.add_argument("input_file", help="Path to a results JSON file")
    export_parser.add_argument("--format", dest="output_format", action=TrackingAction, required=True, choices=VALID_EXPORT_FORMATS, help="Report format: csv or pdf")
    export_parser.add_argument("--report-name", dest="report_name", action=TrackingAction, default=DEFAULT_REPORT_NAME, help="Report name shown in the PDF header")
    export_parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Output file path")
    export_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named output files")

    # --- serve ---
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", dest="host", default=DEFAULT_SERVER_HOST, help=f"Bind address (default: {DEFAULT_SERVER_HOST})")
    serve_parser.add_argument("--port", dest="port", type=int, default=DEFAULT_SERVER_PORT, help=f"Port (default: {DEFAULT_SERVER_PORT})")

    return parser


# ---------------------------------------------------------------------------
# Subcommand: quick-check
# ---------------------------------------------------------------------------


async def cmd_quick_check(args: argparse.Namespace) -> None:
    """Test one URL and print its result card to stdout."""
    url = validate_url(args.url)
    if not url:
        err_console.print(f"Error: invalid URL: {args.url}", markup=False)
        sys.exit(1)

    err_console.print(f"Testing {url} ({args.strategy})...", markup=False)
    records = await run_batch([url], args.api_key, args.strategy, verbose=getattr(args, "verbose", False))
    out_console.print(format_result_cards(records))


# ---------------------------------------------------------------------------
# Subcommand: audit
# ---------------------------------------------------------------------------


async def cmd_audit(args: argparse.Namespace) -> None:
    """Run a batch, show the results and write the requested reports."""
    urls = load_urls(getattr(args, "urls", []), getattr(args, "file", None))
    strategy = args.strategy
    if strategy not in VALID_STRATEGIES:
        err_console.print(f"Error: invalid strategy '{strategy}'", markup=False)
        sys.exit(1)

    err_console.print(f"Testing {len(urls)} URL(s) with strategy: {strategy}")
    records = await run_batch(
        urls,
        args.api_key,
        strategy,
        workers=getattr(args, "workers", None),
        verbose=getattr(args, "verbose", False),
    )
    out_console.print(format_result_cards(records))

    output_dir = getattr(args, "output_dir", DEFAULT_OUTPUT_DIR)
    if getattr(args, "save_results", False):
        results_path = output_results_json(records, generate_output_path(output_dir, strategy, "json"))
        err_console.print(f"Raw results saved to: {results_path}", markup=False)

    try:
        write_exports(
            records,
            getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT),
            output_dir,
            getattr(args, "output", None),
            getattr(args, "report_name", DEFAULT_REPORT_NAME),
            strategy,
        )
    except ReportError as exc:
        err_console.print(f"Error: {exc}", markup=False)
        sys.exit(1)

    _print_batch_summary(records)


# ---------------------------------------------------------------------------
# Subcommand: export
# ---------------------------------------------------------------------------


def cmd_export(args: argparse.Namespace) -> None:
    """Rebuild a CSV or PDF report from a saved results file."""
    results = load_results(args.input_file)
    fmt = args.output_format

    try:
        payload = export_report(results, fmt, getattr(args, "report_name", DEFAULT_REPORT_NAME))
    except ReportError as exc:
        err_console.print(f"Error: {exc}", markup=False)
        sys.exit(1)

    explicit_output = getattr(args, "output", None)
    if explicit_output:
        output_path = Path(explicit_output)
    else:
        output_path = generate_output_path(getattr(args, "output_dir", DEFAULT_OUTPUT_DIR), "export", fmt)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(payload.content)
    err_console.print(f"{fmt.upper()} report written to: {output_path}", markup=False)


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the HTTP API with uvicorn."""
    if args.api_key:
        os.environ["PAGESPEED_API_KEY"] = args.api_key
    log_level = "debug" if getattr(args, "verbose", False) else "info"
    uvicorn.run("pagespeed_report_server:app", host=args.host, port=args.port, log_level=log_level)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "quick-check": cmd_quick_check,
        "audit": cmd_audit,
        "export": cmd_export,
        "serve": cmd_serve,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    if inspect.iscoroutinefunction(handler):
        asyncio.run(handler(args))
    else:
        handler(args)


if __name__ == "__main__":
    main()
