"""Tests for the FastAPI endpoints in pagespeed_report_server.py.

PageSpeed calls are mocked; report generation runs for real.
"""

import unittest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

import pagespeed_report_server as server
import pagespeed_report_tool as prt

SAMPLE_DATA = {
    "analysisUTCTimestamp": "2026-02-16T12:00:00.000Z",
    "lighthouseResult": {
        "categories": {
            "performance": {"score": 0.92},
            "accessibility": {"score": 0.85},
            "best-practices": {"score": 0.78},
            "seo": {"score": 0.95},
        },
        "audits": {
            "largest-contentful-paint": {"displayValue": "2.3 s", "score": 0.8},
        },
    },
}

SAMPLE_RESULTS = [
    {"url": "https://a.com", "strategy": "mobile", "data": SAMPLE_DATA},
    {"url": "https://b.com", "strategy": "mobile", "error": "quota exceeded"},
]


# ===================================================================
# 1. TestHealth
# ===================================================================


class TestHealth(unittest.TestCase):

    def test_health(self):
        response = TestClient(server.app).get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


# ===================================================================
# 2. TestExportEndpoint
# ===================================================================


class TestExportEndpoint(unittest.TestCase):
    """Tests for POST /api/export/{format}."""

    def setUp(self):
        self.client = TestClient(server.app)

    def test_csv_download(self):
        response = self.client.post("/api/export/csv", json={"results": SAMPLE_RESULTS, "reportName": "Q3"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/csv"))
        self.assertEqual(response.headers["content-disposition"], 'attachment; filename="pagespeed-report.csv"')
        lines = response.text.strip().splitlines()
        self.assertEqual(lines[0], ",".join(prt.CSV_COLUMNS))
        self.assertEqual(len(lines), 3)

    def test_pdf_download(self):
        response = self.client.post("/api/export/pdf", json={"results": SAMPLE_RESULTS})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["content-type"], "application/pdf")
        self.assertEqual(response.headers["content-disposition"], 'attachment; filename="pagespeed-report.pdf"')
        self.assertTrue(response.content.startswith(b"%PDF"))

    def test_unsupported_format(self):
        response = self.client.post("/api/export/xlsx", json={"results": SAMPLE_RESULTS})
        self.assertEqual(response.status_code, 400)
        self.assertIn("Supported formats: csv, pdf", response.json()["error"])

    def test_empty_results(self):
        response = self.client.post("/api/export/csv", json={"results": []})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid or empty results data"})

    def test_missing_results(self):
        response = self.client.post("/api/export/pdf", json={"reportName": "Nothing"})
        self.assertEqual(response.status_code, 400)

    def test_invalid_json(self):
        response = self.client.post(
            "/api/export/csv", content=b"{not json", headers={"content-type": "application/json"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid JSON in request body"})

    def test_build_failure_returns_500(self):
        failure = prt.ReportBuildError("PDF generation failed: font missing")
        with patch("pagespeed_report_tool.build_pdf", side_effect=failure):
            response = self.client.post("/api/export/pdf", json={"results": SAMPLE_RESULTS})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "PDF generation failed: font missing"})

    def test_unexpected_failure_returns_json_500(self):
        with patch("pagespeed_report_tool.export_report", side_effect=RuntimeError("disk full")):
            response = self.client.post("/api/export/csv", json={"results": SAMPLE_RESULTS})
        self.assertEqual(response.status_code, 500)
        self.assertTrue(response.headers["content-type"].startswith("application/json"))
        self.assertEqual(response.json(), {"error": "Export failed: disk full"})

    def test_infinite_score_exports_as_na(self):
        body = (
            b'{"results": [{"url": "https://a.com", "strategy": "mobile", "data": {"lighthouseResult": '
            b'{"categories": {"performance": {"score": Infinity}, "seo": {"score": 1e307}}}}}]}'
        )
        response = self.client.post("/api/export/csv", content=body, headers={"content-type": "application/json"})
        self.assertEqual(response.status_code, 200)
        row = response.text.strip().splitlines()[1].split(",")
        self.assertEqual(row[prt.CSV_COLUMNS.index("performanceScore")], "N/A")
        self.assertEqual(row[prt.CSV_COLUMNS.index("seoScore")], "N/A")


# ===================================================================
# 3. TestPagespeedEndpoint
# ===================================================================


class TestPagespeedEndpoint(unittest.TestCase):
    """Tests for POST /api/pagespeed: mocks run_batch."""

    def setUp(self):
        self.client = TestClient(server.app)
        patcher = patch.object(server, "settings", server.Settings(api_key="", workers=0))
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_batch_results_returned_in_order(self):
        records = [
            prt.AnalysisRecord(url="https://a.com", strategy="desktop", data=SAMPLE_DATA),
            prt.AnalysisRecord(url="https://b.com", strategy="desktop", error="quota exceeded"),
        ]
        mock_run = AsyncMock(return_value=records)
        with patch("pagespeed_report_tool.run_batch", mock_run):
            response = self.client.post(
                "/api/pagespeed",
                json={"urls": ["https://a.com", " https://b.com ", ""], "apiKey": "key", "strategy": "desktop"},
            )
        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([result["url"] for result in results], ["https://a.com", "https://b.com"])
        self.assertEqual(results[1]["error"], "quota exceeded")
        mock_run.assert_awaited_once_with(["https://a.com", "https://b.com"], "key", "desktop", workers=None)

    def test_settings_api_key_used_as_fallback(self):
        mock_run = AsyncMock(return_value=[])
        with patch.object(server, "settings", server.Settings(api_key="server-key", workers=2)), \
             patch("pagespeed_report_tool.run_batch", mock_run):
            response = self.client.post("/api/pagespeed", json={"urls": ["https://a.com"]})
        self.assertEqual(response.status_code, 200)
        mock_run.assert_awaited_once_with(["https://a.com"], "server-key", "mobile", workers=2)

    def test_no_urls(self):
        response = self.client.post("/api/pagespeed", json={"urls": ["  "], "apiKey": "key"})
        self.assertEqual(response.status_code, 400)

    def test_too_many_urls(self):
        urls = [f"https://site{index}.example.com" for index in range(prt.MAX_BATCH_URLS + 1)]
        response = self.client.post("/api/pagespeed", json={"urls": urls, "apiKey": "key"})
        self.assertEqual(response.status_code, 400)
        self.assertIn(str(prt.MAX_BATCH_URLS), response.json()["error"])

    def test_invalid_strategy(self):
        response = self.client.post(
            "/api/pagespeed", json={"urls": ["https://a.com"], "apiKey": "key", "strategy": "tablet"}
        )
        self.assertEqual(response.status_code, 400)

    def test_missing_api_key(self):
        response = self.client.post("/api/pagespeed", json={"urls": ["https://a.com"]})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "API key is required"})

    def test_malformed_body_uses_error_shape(self):
        response = self.client.post("/api/pagespeed", json={"urls": "https://a.com", "apiKey": "key"})
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertNotIn("detail", body)
        self.assertTrue(body["error"].startswith("Invalid request body"))
        self.assertIn("urls", body["error"])

    def test_unparseable_body_uses_error_shape(self):
        response = self.client.post(
            "/api/pagespeed", content=b"{not json", headers={"content-type": "application/json"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())


if __name__ == "__main__":
    unittest.main()
