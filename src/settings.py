"""Static configuration for tenderwatch.

User-editable settings (users, websites, analysis, notifications) live in a
single JSON file; secrets and deployment values come from the environment.
"""

import json
import os

from dotenv import load_dotenv

from core.auth import parse_admin_emails
from core.config import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_THRESHOLD,
    AnalysisConfig,
    NotificationConfig,
)

load_dotenv()

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Where to store the SQLite database.
DB_PATH = os.getenv("DB_PATH", os.path.join(PROJECT_ROOT, "tenderwatch.db"))

# Users and websites are loaded from config.json so monitoring can be edited
# without touching Python.
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

USERS_CONFIG = _CONFIG.get("users", [])
WEBSITES_CONFIG = _CONFIG.get("websites", [])

# Classification settings. The dedup window is how long an analyzed link
# suppresses re-analysis.
_analysis = _CONFIG.get("analysis", {})
ANALYSIS = AnalysisConfig(
    default_threshold=int(_analysis.get("default_threshold", DEFAULT_THRESHOLD)),
    dedup_window_days=int(_analysis.get("dedup_window_days", 30)),
    content_char_limit=int(_analysis.get("content_char_limit", 15000)),
    default_model=_analysis.get("default_model", DEFAULT_MODEL),
    default_base_url=os.getenv("OPENAI_BASE_URL")
    or _analysis.get("default_base_url", DEFAULT_BASE_URL),
)
COMPLETION_TIMEOUT_SECONDS = float(_analysis.get("request_timeout_seconds", 120))

# Branding strings are deployment values, so the environment wins.
_notifications = _CONFIG.get("notifications", {})
NOTIFICATIONS = NotificationConfig(
    summary_chars=int(_notifications.get("summary_chars", 200)),
    markdown_chars=int(_notifications.get("markdown_chars", 1000)),
    slack_field_limit=int(_notifications.get("slack_field_limit", 3000)),
    app_name=os.getenv("APP_NAME", _notifications.get("app_name", "Tenderwatch")),
    from_email=os.getenv("FROM_EMAIL", _notifications.get("from_email", "noreply@example.com")),
    site_url=os.getenv("SITE_URL", _notifications.get("site_url", "http://localhost:3000")),
    user_agent=_notifications.get("user_agent", "Tenderwatch/1.0"),
)
WEBHOOK_TIMEOUT_SECONDS = float(_notifications.get("webhook_timeout_seconds", 30))
WEBHOOK_PROXY_URL = os.getenv("WEBHOOK_PROXY_URL") or _notifications.get("webhook_proxy_url")
RESEND_API_KEY = os.getenv("RESEND_API_KEY")

# Scraping service credentials; a custom URL selects a self-hosted instance.
_scraping = _CONFIG.get("scraping", {})
FIRECRAWL_API_KEY = os.getenv("FIRECRAWL_API_KEY")
FIRECRAWL_API_URL = os.getenv("FIRECRAWL_API_URL") or _scraping.get("api_url")
SCRAPE_TIMEOUT_SECONDS = int(_scraping.get("timeout_seconds", 120))

# Identities allowed to run admin commands.
ADMIN_EMAILS = parse_admin_emails(os.getenv("ADMIN_EMAILS"))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
