#!/usr/bin/env python3
"""
Configuration management for the YouTube feed proxy.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional YAML policy file, and provides
a clean interface for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering so that a service manager
    sees log lines as they happen. All modules should use get_logger() to create
    module-specific loggers that inherit this configuration.
    """
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
        force=True  # Force reconfiguration if already configured
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Captured streams (e.g. under pytest) may not support reconfigure
        pass

    # aiohttp logs every request at INFO through the access logger; keep it quieter
    access_level = level_map.get(environ.get("ACCESS_LOG_LEVEL", "WARNING").upper(), WARNING)
    getLogger("FeedProxy.access").setLevel(access_level)

    return getLogger("FeedProxy")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "cache", "supervisor", "server")

    Returns:
        A logger named "FeedProxy.{name}"
    """
    return getLogger(f"FeedProxy.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the feed proxy.

    Values are loaded in this order:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML policy file (SETTINGS_FILE, defaults to proxy.yaml next to this module)

    The policy file only carries the Shorts detection rule and the failure
    backoff schedule, for example:
    ```yaml
    shorts:
      max_duration: 180
      require_vertical: true
    backoff:
      base_seconds: 60
      max_seconds: 21600
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_policy()

    def _load_environment(self):
        """Load environment variables from .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _env_flag(self, env_var: str, default: bool) -> bool:
        """Parse a true/false environment variable."""
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Server
        self.LISTEN_HOST = environ.get("LISTEN_HOST", "127.0.0.1")
        self.LISTEN_PORT = self._validate_positive_int("LISTEN_PORT", 12380, 1)

        # Persistence
        self.STATE_PATH = environ.get("STATE_PATH", "state.json")
        self.SETTINGS_FILE = environ.get("SETTINGS_FILE", path.join(base_dir, "proxy.yaml"))

        # Upstream feed requests
        self.UPSTREAM_FEED_URL = environ.get("UPSTREAM_FEED_URL", "https://www.youtube.com/feeds/videos.xml")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedProxy/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.1)

        # How long a feed request waits for metadata before rendering partial data
        self.RESPONSE_WAIT_SECONDS = self._validate_positive_float("RESPONSE_WAIT_SECONDS", 20.0, 0.0)

        # Metadata fetching
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 4, 1)
        self.RESOLVER_TIMEOUT = self._validate_positive_int("RESOLVER_TIMEOUT", 60, 5)
        self.RESOLVER_REQUESTS_PER_MINUTE = self._validate_positive_int("RESOLVER_REQUESTS_PER_MINUTE", 0, 0)
        self.YTDLP_PATH = environ.get("YTDLP_PATH", "yt-dlp")
        self.SHUTDOWN_GRACE_SECONDS = self._validate_positive_float("SHUTDOWN_GRACE_SECONDS", 10.0, 0.0)

        # Policy defaults (may be overridden by the YAML policy file)
        self.BACKOFF_BASE_SECONDS = self._validate_positive_float("BACKOFF_BASE_SECONDS", 60.0, 0.0)
        self.BACKOFF_MAX_SECONDS = self._validate_positive_float("BACKOFF_MAX_SECONDS", 6 * 3600.0, 0.0)
        self.SHORTS_MAX_DURATION = self._validate_positive_int("SHORTS_MAX_DURATION", 180, 0)
        self.SHORTS_REQUIRE_VERTICAL = self._env_flag("SHORTS_REQUIRE_VERTICAL", True)

        # Rendering
        self.HIDE_UNRESOLVED = self._env_flag("HIDE_UNRESOLVED", False)
        self.STRIP_MEDIA_GROUP = self._env_flag("STRIP_MEDIA_GROUP", True)
        self.STRIP_UPDATED = self._env_flag("STRIP_UPDATED", True)

    # ------------------------------------------------------------------
    # YAML policy file
    # ------------------------------------------------------------------
    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'policy')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
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

    def _policy_number(self, section: Dict[str, Any], key: str, current: float, cast, min_val: float) -> Any:
        raw = section.get(key)
        if raw is None:
            return current
        try:
            value = cast(str(raw).strip())
        except (TypeError, ValueError):
            logger.warning(f"Invalid {key} value '{raw}' in policy file; keeping {current}")
            return current
        if value < min_val:
            logger.warning(f"{key} must be >= {min_val}; keeping {current} (got {raw})")
            return current
        return value

    def _load_policy(self) -> None:
        """Apply the shorts/backoff sections of the policy file over env defaults."""
        data = self._safe_read_yaml(self.SETTINGS_FILE, 1024 * 1024, 'policy')
        if not isinstance(data, dict):
            return

        shorts = data.get('shorts')
        if isinstance(shorts, dict):
            self.SHORTS_MAX_DURATION = self._policy_number(shorts, 'max_duration', self.SHORTS_MAX_DURATION, int, 0)
            if 'require_vertical' in shorts:
                self.SHORTS_REQUIRE_VERTICAL = bool(shorts['require_vertical'])
        elif shorts is not None:
            logger.warning(f"'shorts' section in {self.SETTINGS_FILE} must be a mapping; ignoring")

        backoff = data.get('backoff')
        if isinstance(backoff, dict):
            self.BACKOFF_BASE_SECONDS = self._policy_number(backoff, 'base_seconds', self.BACKOFF_BASE_SECONDS, float, 0.0)
            self.BACKOFF_MAX_SECONDS = self._policy_number(backoff, 'max_seconds', self.BACKOFF_MAX_SECONDS, float, 0.0)
        elif backoff is not None:
            logger.warning(f"'backoff' section in {self.SETTINGS_FILE} must be a mapping; ignoring")

        logger.info(
            "Loaded policy: SHORTS_MAX_DURATION=%s SHORTS_REQUIRE_VERTICAL=%s BACKOFF_BASE_SECONDS=%s BACKOFF_MAX_SECONDS=%s",
            self.SHORTS_MAX_DURATION,
            self.SHORTS_REQUIRE_VERTICAL,
            self.BACKOFF_BASE_SECONDS,
            self.BACKOFF_MAX_SECONDS,
        )

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "listen": f"{self.LISTEN_HOST}:{self.LISTEN_PORT}",
            "state_path": self.STATE_PATH,
            "upstream_feed_url": self.UPSTREAM_FEED_URL,
            "response_wait_seconds": self.RESPONSE_WAIT_SECONDS,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "resolver_requests_per_minute": self.RESOLVER_REQUESTS_PER_MINUTE,
            "shorts_max_duration": self.SHORTS_MAX_DURATION,
            "shorts_require_vertical": self.SHORTS_REQUIRE_VERTICAL,
            "backoff_base_seconds": self.BACKOFF_BASE_SECONDS,
            "backoff_max_seconds": self.BACKOFF_MAX_SECONDS,
            "hide_unresolved": self.HIDE_UNRESOLVED,
        }

# Global configuration instance
config = Config()
