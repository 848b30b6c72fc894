"""
SLA External Service Integrations
==================================

External services for the SLA engine:
- YAML helpdesk config (app defaults + business hours) with watchdog hot reload
- Jinja2 notification templates
- Webhook notification relay with circuit breaker and retry
- APScheduler for the background evaluation passes
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from jinja2 import (
    ChoiceLoader, DictLoader, Environment, FileSystemLoader, StrictUndefined,
    TemplateError, select_autoescape,
)
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from helpdesk_sla.config import (
    settings, TEMPLATE_SLA_BREACH_WARNING, TEMPLATE_SLA_BREACHED,
)
from helpdesk_sla.core import (
    BusinessHoursNotFoundException,
    ConfigurationException,
    NotifierException,
    TemplateRenderException,
)
from helpdesk_sla.shared.infrastructure.logging import get_logger
from helpdesk_sla.sla.application import (
    IAppSettingsStore, IBusinessHoursStore, INotifier, ITemplateRenderer,
)
from helpdesk_sla.sla.domain import BusinessHours, DayWindow, NotificationMessage
from helpdesk_sla.sla.domain.value_objects import WEEKDAYS

logger = get_logger(__name__)


# ========== Helpdesk configuration ==========

@dataclass
class HelpdeskConfig:
    """Parsed snapshot of the helpdesk YAML file."""

    app_settings: Dict[str, Any] = field(default_factory=dict)
    business_hours: Dict[int, BusinessHours] = field(default_factory=dict)


def _flatten(prefix: str, value: Any, out: Dict[str, Any]) -> None:
    if isinstance(value, dict):
        for key, child in value.items():
            _flatten(f"{prefix}.{key}", child, out)
    else:
        out[prefix] = value


def _parse_clock(value: Any, where: str) -> dt_time:
    try:
        return dt_time.fromisoformat(str(value))
    except ValueError as e:
        raise ConfigurationException(f"{where}: invalid time {value!r}") from e


def _parse_business_hours(raw: dict) -> BusinessHours:
    if "id" not in raw:
        raise ConfigurationException("business hours entry without id")
    bh_id = int(raw["id"])
    where = f"business_hours[{bh_id}]"

    hours: Dict[str, DayWindow] = {}
    for day, window in (raw.get("hours") or {}).items():
        if day not in WEEKDAYS:
            raise ConfigurationException(f"{where}: unknown day {day!r}")
        hours[day] = DayWindow(
            open=_parse_clock(window.get("open"), f"{where}.{day}.open"),
            close=_parse_clock(window.get("close"), f"{where}.{day}.close"),
        )

    holidays: List[date] = []
    for holiday in raw.get("holidays") or []:
        if isinstance(holiday, date):
            holidays.append(holiday)
            continue
        try:
            holidays.append(date.fromisoformat(str(holiday)))
        except ValueError as e:
            raise ConfigurationException(f"{where}: invalid holiday {holiday!r}") from e

    return BusinessHours(
        id=bh_id,
        name=str(raw.get("name") or ""),
        is_always_open=bool(raw.get("is_always_open", False)),
        hours=hours,
        holidays=holidays,
    )


def parse_helpdesk_config(data: dict) -> HelpdeskConfig:
    """Build a HelpdeskConfig from the YAML document."""
    app_settings: Dict[str, Any] = {}
    _flatten("app", data.get("app") or {}, app_settings)

    business_hours = {}
    for raw in data.get("business_hours") or []:
        bh = _parse_business_hours(raw)
        business_hours[bh.id] = bh

    return HelpdeskConfig(app_settings=app_settings, business_hours=business_hours)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for helpdesk config file changes."""

    def __init__(self, config_manager: "HelpdeskConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info(f"Config file changed: {event.src_path}")
            self.config_manager.reload()


class HelpdeskConfigManager(IAppSettingsStore, IBusinessHoursStore):
    """
    Thread-safe helpdesk configuration with hot-reload support.

    Serves the default business hours/timezone app settings and the
    business hours calendars. Uses watchdog to monitor file changes and
    reload configuration without restarting the service.
    """

    def __init__(self):
        self._config: Optional[HelpdeskConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> HelpdeskConfig:
        """Initial configuration load."""
        self._path = Path(path)
        self._config = self._load_from_file(self._path)
        return self._config

    def load_dict(self, data: dict) -> HelpdeskConfig:
        """Load configuration from an in-memory document."""
        config = parse_helpdesk_config(data)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> HelpdeskConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning(f"Helpdesk config file not found: {path}, no business hours configured")
            return HelpdeskConfig()

        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationException(f"invalid helpdesk config {path}: {e}") from e

        return parse_helpdesk_config(data)

    def reload(self) -> bool:
        """Reload configuration from file, keeping the previous one on failure."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (ConfigurationException, OSError) as e:
            logger.error(f"Failed to reload helpdesk config: {e}")
            return False

        with self._lock:
            self._config = new_config
        logger.info("Helpdesk configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching configuration file for changes.

        Skips watching if the file doesn't exist or inotify is unavailable
        (common in containers).
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(f"Config file doesn't exist, skipping file watch: {self._path}")
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(
                handler,
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info(f"Started watching config file: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static config: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> HelpdeskConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("Helpdesk configuration not loaded")
            return self._config

    @property
    def is_loaded(self) -> bool:
        return self._config is not None

    def get_by_prefix(self, prefix: str) -> Dict[str, Any]:
        marker = f"{prefix}."
        return {
            key: value
            for key, value in self.config.app_settings.items()
            if key.startswith(marker)
        }

    def get(self, business_hours_id: int) -> BusinessHours:
        business_hours = self.config.business_hours.get(business_hours_id)
        if business_hours is None:
            raise BusinessHoursNotFoundException(business_hours_id)
        return business_hours


# ========== Notification templates ==========

DEFAULT_TEMPLATES = {
    f"{TEMPLATE_SLA_BREACH_WARNING}.subject": (
        "SLA warning: {{ sla.metric }} due in {{ sla.due_in }} "
        "for #{{ conversation.reference_number }}"
    ),
    f"{TEMPLATE_SLA_BREACH_WARNING}.html": (
        "<p>Hi {{ recipient.first_name }},</p>\n"
        "<p>The {{ sla.metric }} SLA for conversation "
        "#{{ conversation.reference_number }} ({{ conversation.subject }}) "
        "is due in {{ sla.due_in }}.</p>\n"
    ),
    f"{TEMPLATE_SLA_BREACHED}.subject": (
        "SLA breached: {{ sla.metric }} for #{{ conversation.reference_number }}"
    ),
    f"{TEMPLATE_SLA_BREACHED}.html": (
        "<p>Hi {{ recipient.first_name }},</p>\n"
        "<p>The {{ sla.metric }} SLA for conversation "
        "#{{ conversation.reference_number }} ({{ conversation.subject }}) "
        "is overdue by {{ sla.overdue_by }}.</p>\n"
    ),
}


class JinjaTemplateRenderer(ITemplateRenderer):
    """
    Renders `<name>.subject` and `<name>.html` templates.

    Files in `template_dir` override the built-in templates.
    """

    def __init__(self, template_dir: Optional[Path] = None):
        loaders = []
        if template_dir is not None:
            loaders.append(FileSystemLoader(str(template_dir)))
        loaders.append(DictLoader(DEFAULT_TEMPLATES))

        self._env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=select_autoescape(["html"], default_for_string=False),
            undefined=StrictUndefined,
        )

    def render(self, name: str, data: dict) -> Tuple[str, str]:
        try:
            subject = self._env.get_template(f"{name}.subject").render(**data)
            content = self._env.get_template(f"{name}.html").render(**data)
        except TemplateError as e:
            raise TemplateRenderException(str(e), {"template": name}) from e
        return content, " ".join(subject.split())


# ========== Notification delivery ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotifier(INotifier):
    """
    Posts rendered notifications to a relay endpoint as JSON.

    Handles:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling

    Without a configured URL messages are logged and dropped.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds or settings.notification_timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def send(self, message: NotificationMessage) -> None:
        if not self._webhook_url:
            logger.debug(
                "Notification webhook URL not configured, dropping notification",
                extra={"subject": message.subject}
            )
            return

        if not self._circuit_breaker.allow_request():
            raise NotifierException("circuit breaker open, notification not sent")

        payload = message.to_dict()
        last_error = ""

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=payload)

                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Notification relayed",
                        extra={"provider": message.provider, "attempt": attempt + 1}
                    )
                    return

                last_error = f"relay returned {response.status_code}"
                logger.warning(
                    "Notification relay returned non-2xx",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.InvalidURL as e:
                # Not retried; the URL will not get better
                self._circuit_breaker.record_failure()
                logger.error("Notification webhook URL is invalid", extra={"error": str(e)})
                raise NotifierException("invalid notification webhook URL", {"error": str(e)}) from e
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(
                    "Notification relay request failed",
                    extra={"error": last_error, "attempt": attempt + 1}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        raise NotifierException(last_error or "notification not delivered")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduler ==========

class SLAScheduler:
    """
    Wrapper for APScheduler running the periodic SLA passes.

    Each job runs with max_instances=1 and coalesce=True so a slow pass is
    never overlapped by the next tick.
    """

    def __init__(self):
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._jobs: List[Tuple[str, str, int, Callable[[], Awaitable[None]]]] = []

    def add_interval_job(
        self,
        job_id: str,
        name: str,
        interval_seconds: int,
        job_func: Callable[[], Awaitable[None]]
    ) -> None:
        """Register a job; takes effect on start()."""
        self._jobs.append((job_id, name, interval_seconds, job_func))

    async def start(self) -> None:
        """Start the scheduler with the registered jobs."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")

        for job_id, name, interval_seconds, job_func in self._jobs:
            self._scheduler.add_job(
                job_func,
                "interval",
                seconds=interval_seconds,
                id=job_id,
                name=name,
                misfire_grace_time=interval_seconds,
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"jobs": [job_id for job_id, *_ in self._jobs]}
        )

    async def stop(self) -> None:
        """Stop scheduling new passes; running passes are awaited by their owner."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
