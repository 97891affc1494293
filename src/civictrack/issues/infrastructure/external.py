"""
Issue External Service Integrations
===================================

External services for SLA escalation:
- Slack webhook notifications to escalation targets
- YAML config file watcher
- APScheduler for the periodic escalation sweep
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from civictrack.issues.application.services import IEscalationNotifier, ISLAConfigProvider
from civictrack.issues.domain import EscalationRecord, Issue, SLAConfig
from civictrack.issues.infrastructure.repositories import load_sla_config
from civictrack.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("SLA config file changed", extra={"path": event.src_path})
            self.config_manager.reload()


class SLAConfigManager(ISLAConfigProvider):
    """
    Thread-safe SLA configuration with hot-reload support.

    A reload that fails validation keeps the previous configuration. Only
    issues created after a reload get deadlines from the new SLA hours.
    """

    def __init__(self, config: Optional[SLAConfig] = None):
        self._config = config
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAConfig:
        """Initial configuration load."""
        self._path = Path(path)
        config = load_sla_config(str(self._path))
        with self._lock:
            self._config = config
        return config

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = load_sla_config(str(self._path))
        except Exception as e:
            logger.error(
                "Failed to reload SLA config, keeping previous",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("SLA configuration reloaded", extra={"sla_hours": new_config.sla_hours})
        return True

    def start_watching(self) -> None:
        """Watch the config file; a missing file means static defaults."""
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "SLA config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching SLA config file", extra={"path": str(self._path)})
        except OSError as e:
            # inotify is unavailable in some containers
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> SLAConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("SLA configuration not loaded")
            return self._config

    def get_config(self) -> SLAConfig:
        return self.config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing webhook for a while.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failed deliveries, reject requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
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


class SlackEscalationNotifier(IEscalationNotifier):
    """
    Posts escalations to a Slack webhook.

    Delivery failures are logged and reported as False; they never roll back
    an escalation that has already been committed.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        channel: str = "#civic-escalations",
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport
            )
        return self._http_client

    def build_message(self, issue: Issue, record: EscalationRecord, channels: List[str]) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        emoji = "🚨" if record.level >= 3 else "⚠️"
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{emoji} Issue escalated to level {record.level}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Report:*\n{issue.report_code}"},
                    {"type": "mrkdwn", "text": f"*Title:*\n{issue.title}"},
                    {"type": "mrkdwn", "text": f"*Department:*\n{issue.department}"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{issue.priority.value.title()}"},
                    {"type": "mrkdwn", "text": f"*Escalated to:*\n{record.target}"},
                    {"type": "mrkdwn", "text": f"*Ward:*\n{issue.ward or '-'}"},
                ]
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": (
                            f"Deadline: {issue.deadline.isoformat()} | "
                            f"Reason: {record.reason} | Notify: {', '.join(channels) or '-'}"
                        )
                    }
                ]
            }
        ]
        return {"channel": self.channel, "blocks": blocks}

    async def notify_escalation(
        self,
        issue: Issue,
        record: EscalationRecord,
        channels: List[str]
    ) -> bool:
        """
        Send the escalation to Slack with retries.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"issue_id": issue.id}
            )
            return False

        message = self.build_message(issue, record, channels)

        for attempt in range(self.max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self.webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={"issue_id": issue.id, "level": record.level}
                    )
                    return True
                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, "issue_id": issue.id}
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_backoff * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class EscalationScheduler:
    """
    APScheduler wrapper for the periodic escalation sweep.

    Runs are never concurrent; a run that falls behind is coalesced.
    """

    JOB_ID = "escalation_sweep"

    def __init__(self, interval_seconds: int = 300):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="SLA Escalation Sweep",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
