"""Application entry point for the tenderwatch monitor."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import List, Optional

import httpx
from art import tprint

import settings
from adapters.config_repository import ConfigRepository
from adapters.email_notifier import ResendEmailNotifier
from adapters.firecrawl_client import FirecrawlClient
from adapters.firecrawl_mapper import build_scrape_event, change_summary, has_change
from adapters.notification_formatting import build_crawl_payload
from adapters.openai_completion import OpenAICompletionClient
from adapters.sqlite_storage import SQLiteStorage
from adapters.webhook_notifier import WebhookDeliveryError, WebhookNotifier
from core.auth import AuthorizationError, require_admin
from core.classifier import PrimaryClassifier
from core.dedup import DedupLedger
from core.deep_analysis import DeepAnalyzer
from core.gate import resolve_webhook_url
from core.models import PREFERENCE_BOTH, PREFERENCE_WEBHOOK, Website
from core.processor import ChangeProcessor, EventOutcome

NAME = "TENDERWATCH"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)

CRAWL_POLL_SECONDS = 5
CRAWL_DONE_STATUSES = {"completed", "failed", "cancelled", "error"}


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/tenderwatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _build_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _build_firecrawl(http: httpx.AsyncClient) -> FirecrawlClient:
    if not settings.FIRECRAWL_API_KEY:
        raise RuntimeError("FIRECRAWL_API_KEY is required to scrape websites")
    return FirecrawlClient(
        http,
        api_key=settings.FIRECRAWL_API_KEY,
        api_url=settings.FIRECRAWL_API_URL,
        timeout_seconds=settings.SCRAPE_TIMEOUT_SECONDS,
    )


async def _check_website(
    website: Website,
    firecrawl: FirecrawlClient,
    storage: SQLiteStorage,
    processor: ChangeProcessor,
) -> Optional[EventOutcome]:
    """Scrape one website and run the pipeline when it changed."""

    result = await firecrawl.scrape_for_changes(website)
    if not result.get("success"):
        LOGGER.error("Scrape failed for %s: %s", website.url, result.get("error"))
        return None

    scraped_at = datetime.now(timezone.utc)
    event = build_scrape_event(website, result, scrape_result_id="", scraped_at=scraped_at)
    scrape_result_id = storage.store_scrape_result(
        website,
        scraped_at=scraped_at,
        markdown=event.markdown,
        change_status=event.change_status,
        diff=event.diff,
        title=event.title,
        description=event.description,
    )
    if not has_change(result):
        return None

    LOGGER.info("Change detected for %s: %s", website.url, event.change_status)
    storage.store_change_alert(
        website,
        scrape_result_id=scrape_result_id,
        summary=change_summary(event.diff),
        created_at=scraped_at,
    )
    event = dataclasses.replace(event, scrape_result_id=scrape_result_id)
    return await processor.handle(event)


async def _run_check() -> None:
    repository = ConfigRepository(settings.USERS_CONFIG, settings.WEBSITES_CONFIG)
    storage = _build_storage()
    websites = repository.active_websites()
    LOGGER.info("%s active websites are loaded", len(websites))

    if not settings.RESEND_API_KEY:
        LOGGER.warning("RESEND_API_KEY is not set; email notifications will fail")

    completion = OpenAICompletionClient(timeout_seconds=settings.COMPLETION_TIMEOUT_SECONDS)
    scrape_timeout = httpx.Timeout(settings.SCRAPE_TIMEOUT_SECONDS + 10)
    try:
        async with httpx.AsyncClient(timeout=scrape_timeout) as scrape_http, httpx.AsyncClient(
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS
        ) as notify_http:
            firecrawl = _build_firecrawl(scrape_http)
            ledger = DedupLedger(storage, window_days=settings.ANALYSIS.dedup_window_days)
            processor = ChangeProcessor(
                settings=repository,
                storage=storage,
                classifier=PrimaryClassifier(completion, settings.ANALYSIS),
                deep_analyzer=DeepAnalyzer(completion, firecrawl, ledger, settings.ANALYSIS),
                webhook_notifier=WebhookNotifier(
                    notify_http,
                    settings.NOTIFICATIONS,
                    proxy_url=settings.WEBHOOK_PROXY_URL,
                ),
                email_notifier=ResendEmailNotifier(
                    notify_http,
                    api_key=settings.RESEND_API_KEY or "",
                    config=settings.NOTIFICATIONS,
                ),
                config=settings.ANALYSIS,
            )

            # Websites are independent; one failure must not stop the others.
            results = await asyncio.gather(
                *(_check_website(website, firecrawl, storage, processor) for website in websites),
                return_exceptions=True,
            )
    finally:
        await completion.aclose()

    changed = 0
    for website, result in zip(websites, results):
        if isinstance(result, BaseException):
            LOGGER.error("Error while checking %s", website.url, exc_info=result)
            continue
        if result is not None:
            changed += 1
    print(f"Checked {len(websites)} websites, {changed} changed.")


async def _notify_crawl(
    http: httpx.AsyncClient,
    webhook_url: str,
    website: Website,
    job_id: str,
    started_at: datetime,
    completed_at: datetime,
    pages_found: int,
) -> None:
    notifier = WebhookNotifier(http, settings.NOTIFICATIONS, proxy_url=settings.WEBHOOK_PROXY_URL)
    payload = build_crawl_payload(website, job_id, started_at, completed_at, pages_found)
    try:
        await notifier.send_crawl(webhook_url, payload)
    except (WebhookDeliveryError, httpx.HTTPError) as exc:
        LOGGER.error("Crawl webhook failed for %s: %s", website.name, exc)


async def _run_crawl(url: Optional[str], limit: int, website_id: Optional[str]) -> None:
    website: Optional[Website] = None
    webhook_url: Optional[str] = None
    if website_id:
        repository = ConfigRepository(settings.USERS_CONFIG, settings.WEBSITES_CONFIG)
        website = repository.get_website(website_id)
        if website is None:
            raise SystemExit(f"Unknown website: {website_id}")
        url = url or website.url
        if website.notification_preference in (PREFERENCE_WEBHOOK, PREFERENCE_BOTH):
            webhook_url = resolve_webhook_url(website, repository.get_user_settings(website.user_id))
    if not url:
        raise SystemExit("A URL or --website is required")

    async with httpx.AsyncClient(timeout=settings.SCRAPE_TIMEOUT_SECONDS + 10) as http:
        firecrawl = _build_firecrawl(http)
        started_at = datetime.now(timezone.utc)
        started = await firecrawl.crawl_url(url, limit=limit)
        if not started.get("success"):
            raise RuntimeError(f"Firecrawl crawl failed: {started.get('error')}")
        job_id = started.get("id")
        if not job_id:
            raise RuntimeError("Firecrawl crawl did not return a job id")

        LOGGER.info("Crawl %s started for %s", job_id, url)
        while True:
            status = await firecrawl.check_crawl_status(job_id)
            if status.get("status") in CRAWL_DONE_STATUSES:
                break
            await asyncio.sleep(CRAWL_POLL_SECONDS)

        pages: List[dict] = status.get("data") or []
        if website is not None and webhook_url and status.get("status") == "completed":
            await _notify_crawl(
                http,
                webhook_url,
                website,
                job_id,
                started_at,
                datetime.now(timezone.utc),
                len(pages),
            )

    print(f"Crawl {status.get('status')}: {len(pages)} pages")
    for page in pages:
        metadata = page.get("metadata") or {}
        tracking = page.get("changeTracking") or {}
        print(f"- {metadata.get('sourceURL') or page.get('url')} | {metadata.get('title')} | {tracking.get('changeStatus')}")


def _run_alerts(days: int) -> None:
    storage = _build_storage()
    alerts = storage.list_change_alerts(days)
    for alert in alerts:
        summary = alert.summary.replace("\n", " ")
        print(f"{alert.created_at.isoformat()} | {alert.website_id} | {alert.change_type} | {summary}")
    print(f"{len(alerts)} change alerts in the last {days} days.")


def _require_admin_or_exit(email: Optional[str]) -> None:
    try:
        require_admin(email, settings.ADMIN_EMAILS)
    except AuthorizationError as exc:
        raise SystemExit(str(exc)) from exc


def _run_ledger(email: Optional[str], days: int) -> None:
    _require_admin_or_exit(email)
    storage = _build_storage()
    records = storage.list_recent(days)
    for record in records:
        print(
            f"{record.analyzed_at.isoformat()} | {record.status} | "
            f"{record.score} | {record.user_id} | {record.url}"
        )
    print(f"{len(records)} records in the last {days} days.")


def _run_cleanup(email: Optional[str]) -> None:
    _require_admin_or_exit(email)
    storage = _build_storage()
    removed = storage.cleanup(settings.ANALYSIS.dedup_window_days)
    LOGGER.info("Ledger cleanup removed %s records", removed)
    print(f"Removed {removed} expired ledger records.")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="tenderwatch")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("check", help="Check every active website once")

    crawl_parser = subparsers.add_parser("crawl", help="Crawl a site and list its pages")
    crawl_parser.add_argument("url", nargs="?")
    crawl_parser.add_argument("--limit", type=int, default=10)
    crawl_parser.add_argument("--website", dest="website_id", help="Configured website to crawl and notify")

    alerts_parser = subparsers.add_parser("alerts", help="List recent change alerts")
    alerts_parser.add_argument("--days", type=int, default=7)

    ledger_parser = subparsers.add_parser("ledger", help="List recently analyzed opportunities")
    ledger_parser.add_argument("--as", dest="as_email", required=True)
    ledger_parser.add_argument("--days", type=int, default=settings.ANALYSIS.dedup_window_days)

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove expired ledger records")
    cleanup_parser.add_argument("--as", dest="as_email", required=True)

    args = parser.parse_args(argv)
    _print_banner()
    _configure_logging()

    if args.command == "crawl":
        asyncio.run(_run_crawl(args.url, args.limit, args.website_id))
        return
    if args.command == "alerts":
        _run_alerts(args.days)
        return
    if args.command == "ledger":
        _run_ledger(args.as_email, args.days)
        return
    if args.command == "cleanup":
        _run_cleanup(args.as_email)
        return
    asyncio.run(_run_check())


if __name__ == "__main__":
    main()
