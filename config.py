#!/usr/bin/env python3
"""
Configuration management for the News Digest runner.

This module centralizes configuration loading, validation and logging setup.
It handles environment variables, the optional YAML secrets file and the YAML
catalog of digests, and provides a single `config` instance for the rest of
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

# Daily cron triggers a digest may be scheduled on (UTC, labelled in UTC+8).
ALLOWED_SCHEDULES = [
    {"cron": f"0 {hour} * * *", "label": f"Daily at {hour + 8:02d}:00 UTC+8 (Wuhan)"}
    for hour in range(0, 13)
]
ALLOWED_SCHEDULE_CRONS = [entry["cron"] for entry in ALLOWED_SCHEDULES]

# Run statuses after which no further transition happens
TERMINAL_STATUSES = ("sent", "error", "failed")

DEFAULT_RUN_TIMEOUT_MINUTES = 15
DEFAULT_SOURCE_FETCH_TIMEOUT_SECONDS = 30
DEFAULT_SOURCE_ITEMS_LIMIT = 20


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() so their loggers inherit this configuration.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # SDK clients are chatty at INFO
    for name in ("azure", "azure.monitor", "openai", "anthropic", "httpx"):
        getLogger(name).setLevel(WARNING)

    return getLogger("NewsDigest")


def get_logger(name: str):
    """Get a module-specific logger named "NewsDigest.{name}".

    Example:
        logger = get_logger("runner")
        logger.info("Run started")
    """
    return getLogger(f"NewsDigest.{name}")


logger = _setup_global_logger()


def mask_secret(value: Optional[str], show: int = 4) -> str:
    """Mask a secret value for safe logging (keep only first/last few chars)."""
    if not value:
        return "<missing>"
    v = str(value)
    if len(v) <= show * 2:
        return "*" * len(v)
    return f"{v[:show]}***{v[-show:]}"


def normalize_schedule_cron(cron: str) -> str:
    """Trim parts, collapse inner whitespace and drop duplicate parts, keeping order."""
    parts: List[str] = []
    for part in str(cron or "").split(","):
        cleaned = " ".join(part.split())
        if cleaned and cleaned not in parts:
            parts.append(cleaned)
    return ",".join(parts)


def is_allowed_schedule_cron(cron: str) -> bool:
    """True when every comma-separated part is one of the allow-listed crons."""
    parts = [part.strip() for part in str(cron or "").split(",")]
    return bool(parts) and all(part in ALLOWED_SCHEDULE_CRONS for part in parts)


class Config:
    """Configuration manager for the News Digest runner.

    Configuration is read from, in order of increasing precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE is set)

    Example secrets.yaml format:
    ```yaml
    RESEND_API_KEY: "re_..."
    LLM_PROVIDER: "anthropic"
    LLM_API_KEY: "sk-ant-..."
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_bool(self, env_var: str, default: bool = False) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        self.DATABASE_PATH = environ.get("DATABASE_PATH", "digests.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; NewsDigest/1.0)")

        # Run lifecycle
        self.RUN_TIMEOUT_MINUTES = self._validate_positive_int("RUN_TIMEOUT_MINUTES", DEFAULT_RUN_TIMEOUT_MINUTES, 1)
        self.ALLOW_CONCURRENT_RUNS = self._validate_bool("ALLOW_CONCURRENT_RUNS", False)

        # Source fetching
        self.SOURCE_FETCH_TIMEOUT_SECONDS = self._validate_positive_int(
            "SOURCE_FETCH_TIMEOUT_SECONDS", DEFAULT_SOURCE_FETCH_TIMEOUT_SECONDS, 1
        )
        self.DEFAULT_SOURCE_ITEMS_LIMIT = self._validate_positive_int(
            "DEFAULT_SOURCE_ITEMS_LIMIT", DEFAULT_SOURCE_ITEMS_LIMIT, 1
        )

        # Outbound API calls (longer timeouts for AI providers)
        self.PROVIDER_HTTP_TIMEOUT = self._validate_positive_int("PROVIDER_HTTP_TIMEOUT", 60, 5)
        self.MAIL_HTTP_TIMEOUT = self._validate_positive_int("MAIL_HTTP_TIMEOUT", 30, 5)

        # Scheduler: which allow-listed crons this process fires
        self.SCHEDULER_CRONS = self._parse_scheduler_crons(environ.get("SCHEDULER_CRONS"))

        # Settings overrides applied when syncing the catalog into global_settings
        self.SETTINGS_OVERRIDES: Dict[str, str] = {}
        for env_var, field in (
            ("RESEND_API_KEY", "resend_api_key"),
            ("LLM_PROVIDER", "llm_provider"),
            ("LLM_API_KEY", "llm_api_key"),
            ("LLM_MODEL", "llm_model"),
            ("DEFAULT_SENDER", "default_sender"),
            ("ADMIN_EMAIL", "admin_email"),
            ("TAVILY_API_KEY", "tavily_api_key"),
        ):
            value = environ.get(env_var)
            if value is not None and value.strip():
                self.SETTINGS_OVERRIDES[field] = value.strip()

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.TEMPLATES_DIR = environ.get("TEMPLATES_DIR", path.join(base_dir, "templates"))
        self.CATALOG_PATH = environ.get("CATALOG_PATH", path.join(base_dir, "digests.yaml"))

    def _parse_scheduler_crons(self, raw: Optional[str]) -> List[str]:
        if not raw or not raw.strip():
            return list(ALLOWED_SCHEDULE_CRONS)
        normalized = normalize_schedule_cron(raw)
        crons = [part for part in normalized.split(",") if part in ALLOWED_SCHEDULE_CRONS]
        rejected = [part for part in normalized.split(",") if part not in ALLOWED_SCHEDULE_CRONS]
        if rejected:
            logger.warning(f"Ignoring SCHEDULER_CRONS entries outside the allow-list: {', '.join(rejected)}")
        if not crons:
            logger.warning("SCHEDULER_CRONS has no usable entries, firing every allowed schedule")
            return list(ALLOWED_SCHEDULE_CRONS)
        return crons

    def _load_secrets_file(self):
        """Copy environment overrides from a YAML secrets file into os.environ.

        Accepts either a top-level mapping or a mapping nested under `environment`.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'catalog')

        Returns:
            Parsed YAML or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def load_catalog(self, catalog_path: Optional[str] = None) -> Dict[str, Any]:
        """Read the digest catalog (settings, sources, digests) from YAML.

        Returns an empty mapping when the file is missing or invalid.
        """
        catalog_path = catalog_path or self.CATALOG_PATH
        data = self._safe_read_yaml(catalog_path, 5 * 1024 * 1024, 'catalog')
        if not isinstance(data, dict):
            return {}
        return data

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "catalog_path": self.CATALOG_PATH,
            "run_timeout_minutes": self.RUN_TIMEOUT_MINUTES,
            "source_fetch_timeout_seconds": self.SOURCE_FETCH_TIMEOUT_SECONDS,
            "default_source_items_limit": self.DEFAULT_SOURCE_ITEMS_LIMIT,
            "provider_http_timeout": self.PROVIDER_HTTP_TIMEOUT,
            "allow_concurrent_runs": self.ALLOW_CONCURRENT_RUNS,
            "scheduler_crons": self.SCHEDULER_CRONS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "settings_overrides": {k: mask_secret(v) if k.endswith("_key") else v
                                   for k, v in self.SETTINGS_OVERRIDES.items()},
        }


# Global configuration instance
config = Config()
