"""FastAPI app for running PageSpeed batches and downloading reports."""

import logging
import os
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

import pagespeed_report_tool as prt

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Environment-backed settings."""
    api_key: str = os.getenv("PAGESPEED_API_KEY", "")
    workers: int = int(os.getenv("PAGESPEED_WORKERS", "0"))


settings = Settings()


class BatchRequest(BaseModel):
    """Request to test a batch of URLs."""
    urls: list[str] = Field(default_factory=list)
    apiKey: str | None = None
    strategy: str = prt.DEFAULT_STRATEGY


app = FastAPI(title="PageSpeed Report Tool", version=prt.__version__)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies in the same {"error": ...} shape as every other failure."""
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        problems.append(f"{field}: {message}" if field else message)
    return _error(f"Invalid request body: {'; '.join(problems) or 'malformed'}", 400)


@app.get("/health")
def health() -> dict:
    """Health check."""
    return {"status": "ok"}


@app.post("/api/pagespeed")
async def run_pagespeed(payload: BatchRequest):
    """Test every URL and return one result per URL, in request order."""
    urls = [url.strip() for url in payload.urls if url and url.strip()]
    if not urls:
        return _error("Please enter at least one URL", 400)
    if len(urls) > prt.MAX_BATCH_URLS:
        return _error(f"Maximum {prt.MAX_BATCH_URLS} URLs allowed per batch", 400)
    if payload.strategy not in prt.VALID_STRATEGIES:
        return _error(f"Invalid strategy '{payload.strategy}'. Supported strategies: mobile, desktop", 400)

    api_key = payload.apiKey or settings.api_key
    if not api_key:
        return _error("API key is required", 400)

    logger.info("Running %s batch for %d URL(s)", payload.strategy, len(urls))
    records = await prt.run_batch(urls, api_key, payload.strategy, workers=settings.workers or None)
    failed = sum(1 for record in records if record.status == "error")
    if failed:
        logger.warning("%d of %d URL(s) failed", failed, len(records))
    return {"results": [record.to_payload() for record in records]}


@app.post("/api/export/{export_format}")
async def export(export_format: str, request: Request):
    """Build a CSV or PDF report from submitted results and return it as a download."""
    try:
        body = await request.json()
    except ValueError:
        return _error("Invalid JSON in request body", 400)
    if not isinstance(body, dict):
        return _error("Invalid or empty results data", 400)

    report_name = body.get("reportName") or prt.DEFAULT_REPORT_NAME
    try:
        payload = await run_in_threadpool(prt.export_report, body.get("results"), export_format, report_name)
    except prt.ExportInputError as exc:
        logger.info("Rejected export request: %s", exc)
        return _error(str(exc), 400)
    except prt.ReportBuildError as exc:
        logger.exception("Export failed")
        return _error(str(exc), 500)
    except Exception as exc:
        logger.exception("Unexpected export failure")
        return _error(f"Export failed: {exc}", 500)

    return Response(
        content=payload.content,
        media_type=payload.media_type,
        headers={"Content-Disposition": f'attachment; filename="{payload.filename}"'},
    )
