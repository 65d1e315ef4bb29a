import os
from typing import Optional

_TRUTHY = {"1", "true", "yes", "y", "on"}


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def flag_enabled(name: str, default: bool = False) -> bool:
    raw = get_setting(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in _TRUTHY


def int_setting(name: str, default: int, *, minimum: int = 1, maximum: int = 10_000) -> int:
    raw = str(get_setting(name) or "").strip()
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(minimum, min(maximum, parsed))


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/app.db"


def get_storage_connection_string() -> Optional[str]:
    return os.getenv("AZURE_STORAGE_CONNECTION_STRING") or os.getenv("AzureWebJobsStorage")


def is_demo_mode() -> bool:
    """
    Demo mode swaps the Azure Tables gateway for the in-memory fixture store.
    It is also implied when no storage connection string is configured.
    """
    return flag_enabled("CRM_DEMO_MODE") or not get_storage_connection_string()


def get_workspace_id() -> str:
    """Partition key shared by every record of one CRM workspace."""
    return str(get_setting("CRM_WORKSPACE_ID", "default") or "default").strip() or "default"


def get_legacy_task_policy() -> str:
    """
    How tasks without a recorded author are treated.
    "permissive" lets anyone edit/delete them, "deny" lets nobody.
    """
    policy = str(get_setting("CRM_LEGACY_TASK_POLICY", "permissive") or "").strip().lower()
    return policy if policy in {"permissive", "deny"} else "permissive"


def cascade_contact_delete_enabled() -> bool:
    return flag_enabled("CRM_CASCADE_CONTACT_DELETE", default=True)


def get_page_sizes() -> dict:
    return {
        "opportunities": int_setting("CRM_OPPORTUNITY_PAGE_SIZE", 20, maximum=200),
        "stage": int_setting("CRM_STAGE_PAGE_SIZE", 10, maximum=200),
        "scan": int_setting("CRM_SCAN_PAGE_SIZE", 200, maximum=1000),
    }


def get_reminder_interval_seconds() -> int:
    return int_setting("CRM_REMINDER_INTERVAL_SECONDS", 30, minimum=5, maximum=3600)


def get_timezone_name() -> str:
    """Wall-clock zone used to match appointment times and follow-up dates."""
    return str(get_setting("CRM_TIMEZONE", "UTC") or "UTC").strip() or "UTC"


def live_updates_enabled() -> bool:
    return flag_enabled("CRM_LIVE_UPDATES")


def get_admin_secret() -> Optional[str]:
    return get_setting("CRM_ADMIN_SECRET")


def get_session_idle_seconds() -> int:
    return int_setting("CRM_SESSION_IDLE_SECONDS", 12 * 60 * 60, minimum=60, maximum=7 * 24 * 60 * 60)
