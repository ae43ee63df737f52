"""
Metrics and alerting for hookflow

Provides:
- AlertingService: fans alerts out to log and webhook channels, with a
  cooldown per alert key
- MonitoringService: Prometheus metrics (own CollectorRegistry) fed by
  WorkerEvents and API middleware, plus threshold alerts (queue overflow,
  high latency, job failure rate)
- MetricsCollector / check_system_health: database-backed health summary
  (execution stats, error rate, circuit breakers, connectivity)
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sqlalchemy import and_, func, text
from sqlalchemy.orm import Session

from ..models.execution import Execution
from ..models.workflow import Workflow
from .circuit_breaker import CircuitBreakerRegistry, CircuitBreakerState
from .events import EventType, WorkerEvent

logger = logging.getLogger(__name__)


# ============================================================================
# ALERTING
# ============================================================================

class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class AlertType(str, Enum):
    QUEUE_OVERFLOW = "queue_overflow"
    JOB_FAILURE = "job_failure"
    HIGH_LATENCY = "high_latency"
    ERROR_RATE = "error_rate"
    WORKFLOW_ERROR = "workflow_error"
    DATABASE_ERROR = "database_error"


_SEVERITY_LEVELS = {
    AlertSeverity.CRITICAL: logging.ERROR,
    AlertSeverity.HIGH: logging.ERROR,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.INFO: logging.DEBUG,
}


@dataclass
class Alert:
    title: str
    message: str
    type: AlertType
    severity: AlertSeverity
    source: str = "hookflow"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        return data


class AlertChannel(ABC):
    name = "channel"

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    def send(self, alert: Alert) -> bool:
        ...


class LogAlertChannel(AlertChannel):
    """Writes alerts to the log at a level matching their severity."""

    name = "log"

    def send(self, alert: Alert) -> bool:
        logger.log(
            _SEVERITY_LEVELS.get(alert.severity, logging.INFO),
            f"ALERT [{alert.type.value}] {alert.title}: {alert.message}",
            extra={"alert_type": alert.type.value, "severity": alert.severity.value, "alert_metadata": alert.metadata},
        )
        return True


class WebhookAlertChannel(AlertChannel):
    """POSTs the alert as JSON to ALERT_WEBHOOK_URL."""

    name = "webhook"

    def __init__(self, url: Optional[str], timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def send(self, alert: Alert) -> bool:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, json=alert.to_dict())
                response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook alert to {self.url}: {e}")
            return False


class AlertingService:
    """
    Sends alerts through every enabled channel.

    Alerts sharing a key are suppressed for `cooldown` seconds so a failing
    queue does not flood the channels.
    """

    def __init__(
        self,
        channels: Optional[List[AlertChannel]] = None,
        cooldown: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.channels: List[AlertChannel] = list(channels) if channels is not None else [LogAlertChannel()]
        self.cooldown = cooldown
        self.clock = clock
        self.recent: Deque[Alert] = deque(maxlen=100)
        self._last_sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    def add_channel(self, channel: AlertChannel) -> None:
        if not any(existing.name == channel.name for existing in self.channels):
            self.channels.append(channel)

    def send_alert(
        self,
        title: str,
        message: str,
        alert_type: AlertType,
        severity: AlertSeverity = AlertSeverity.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None,
        key: Optional[str] = None,
    ) -> bool:
        """
        Returns:
            False when the alert was suppressed by the cooldown
        """
        key = key or f"{alert_type.value}:{title}"
        now = self.clock()
        with self._lock:
            last = self._last_sent.get(key)
            if last is not None and now - last < self.cooldown:
                return False
            self._last_sent[key] = now

        alert = Alert(title=title, message=message, type=alert_type, severity=severity, metadata=metadata or {})
        self.recent.append(alert)
        for channel in self.channels:
            if not channel.enabled:
                continue
            try:
                channel.send(alert)
            except Exception as e:
                logger.error(f"Alert channel {channel.name} failed: {e}")
        return True


def categorize_error(message: Optional[str]) -> str:
    lowered = (message or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "connection" in lowered or "connect" in lowered:
        return "connection"
    if "database" in lowered or "sql" in lowered or "query" in lowered:
        return "database"
    if "validation" in lowered or "invalid" in lowered:
        return "validation"
    if "permission" in lowered or "unauthorized" in lowered or "access" in lowered:
        return "authorization"
    return "unknown"


# ============================================================================
# PROMETHEUS MONITORING
# ============================================================================

@dataclass
class AlertThresholds:
    queue_size: int = 1000
    processing_time: float = 30.0  # seconds
    job_failure_rate: float = 0.05
    # Failure rate is only judged once this many jobs have finished
    min_sample: int = 20

    @classmethod
    def from_settings(cls, settings) -> "AlertThresholds":
        return cls(
            queue_size=settings.alert_queue_size,
            processing_time=settings.alert_processing_time,
            job_failure_rate=settings.alert_job_failure_rate,
        )


class MonitoringService:
    """
    Owns the Prometheus registry and turns worker events into metrics.

    Subscribe handle_event to the EventChannel; the API middleware calls
    record_api_request for every request.
    """

    def __init__(
        self,
        thresholds: Optional[AlertThresholds] = None,
        alerting: Optional[AlertingService] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.thresholds = thresholds or AlertThresholds()
        self.alerting = alerting or AlertingService()
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()

        self.api_requests = Counter(
            "api_requests_total", "Total API requests",
            ["route", "method", "status"], registry=self.registry,
        )
        self.api_errors = Counter(
            "api_errors_total", "API requests answered with a 4xx/5xx status",
            ["route", "method", "status"], registry=self.registry,
        )
        self.api_duration = Histogram(
            "api_request_duration_seconds", "API request duration",
            ["route", "method"], registry=self.registry,
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        )
        self.queue_jobs = Counter(
            "queue_jobs_total", "Jobs enqueued",
            ["queue_name"], registry=self.registry,
        )
        self.queue_processed = Counter(
            "queue_jobs_processed_total", "Job attempts finished",
            ["queue_name", "status"], registry=self.registry,
        )
        self.queue_failed = Counter(
            "queue_jobs_failed_total", "Failed job attempts",
            ["queue_name", "error_type"], registry=self.registry,
        )
        self.queue_duration = Histogram(
            "queue_job_duration_seconds", "Job processing time",
            ["queue_name"], registry=self.registry,
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        )
        self.queue_size = Gauge(
            "queue_size", "Jobs waiting on the queue",
            ["queue_name"], registry=self.registry,
        )
        self.executions = Counter(
            "executions_total", "Executions by outcome",
            ["status"], registry=self.registry,
        )

        self._sizes: Dict[str, int] = defaultdict(int)
        self._stats: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"enqueued": 0, "completed": 0, "failed_attempts": 0, "failed": 0, "total_duration": 0.0}
        )
        self._api = {"requests": 0, "errors": 0}
        self._executions: Dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------------
    # event intake
    # ------------------------------------------------------------------------

    def handle_event(self, event: WorkerEvent) -> None:
        if event.type == EventType.EXECUTION_STARTED:
            self._count_execution("started")
            return
        if event.type == EventType.EXECUTION_FINISHED:
            self._count_execution(event.status or "unknown")
            return

        queue_name = event.queue_name or "unknown"
        if event.type == EventType.ENQUEUED:
            self.queue_jobs.labels(queue_name=queue_name).inc()
            with self._lock:
                self._stats[queue_name]["enqueued"] += 1
            self._resize(queue_name, +1)
        elif event.type == EventType.STARTED:
            self._resize(queue_name, -1)
        elif event.type == EventType.COMPLETED:
            self._on_completed(queue_name, event)
        elif event.type == EventType.FAILED:
            self._on_failed(queue_name, event)

    def _count_execution(self, status: str) -> None:
        self.executions.labels(status=status).inc()
        with self._lock:
            self._executions[status] += 1

    def _resize(self, queue_name: str, delta: int) -> None:
        with self._lock:
            size = max(0, self._sizes[queue_name] + delta)
            self._sizes[queue_name] = size
        self.queue_size.labels(queue_name=queue_name).set(size)
        if delta > 0 and size > self.thresholds.queue_size:
            self.alerting.send_alert(
                "Queue size threshold exceeded",
                f"Queue {queue_name} has {size} jobs which exceeds the threshold of {self.thresholds.queue_size}",
                AlertType.QUEUE_OVERFLOW,
                AlertSeverity.HIGH,
                {"queue": queue_name, "count": size, "threshold": self.thresholds.queue_size},
                key=f"queue_overflow:{queue_name}",
            )

    def set_queue_size(self, queue_name: str, size: int) -> None:
        """Overwrite the tracked size with a count read from the broker."""
        with self._lock:
            self._sizes[queue_name] = max(0, size)
        self._resize(queue_name, 0)

    def _on_completed(self, queue_name: str, event: WorkerEvent) -> None:
        self.queue_processed.labels(queue_name=queue_name, status="completed").inc()
        duration = event.duration or 0.0
        self.queue_duration.labels(queue_name=queue_name).observe(duration)
        with self._lock:
            stats = self._stats[queue_name]
            stats["completed"] += 1
            stats["total_duration"] += duration

        if duration > self.thresholds.processing_time:
            logger.warning(f"Job {event.job_id} on {queue_name} took {duration:.2f}s")
            self.alerting.send_alert(
                "High job processing time",
                f"Job {event.job_id} on {queue_name} took {duration:.2f}s, "
                f"which exceeds the threshold of {self.thresholds.processing_time}s",
                AlertType.HIGH_LATENCY,
                AlertSeverity.MEDIUM,
                {"queue": queue_name, "job_id": event.job_id, "processing_time": duration},
                key=f"high_latency:{queue_name}",
            )

    def _on_failed(self, queue_name: str, event: WorkerEvent) -> None:
        error_type = categorize_error(event.error)
        self.queue_processed.labels(queue_name=queue_name, status="failed").inc()
        self.queue_failed.labels(queue_name=queue_name, error_type=error_type).inc()
        if event.duration is not None:
            self.queue_duration.labels(queue_name=queue_name).observe(event.duration)

        with self._lock:
            stats = self._stats[queue_name]
            stats["failed_attempts"] += 1
            if event.final:
                stats["failed"] += 1

        if event.attempt == 0:
            # Never started (enqueue refused or execution already closed)
            self._resize(queue_name, -1)
        elif not event.final:
            # Back on the queue for its retry
            self._resize(queue_name, +1)

        if not event.final:
            return

        severity = AlertSeverity.HIGH if error_type in ("connection", "database") else AlertSeverity.MEDIUM
        self.alerting.send_alert(
            "Job failure",
            f"Job {event.job_id} in queue {queue_name} failed: {event.error}",
            AlertType.JOB_FAILURE,
            severity,
            {"queue": queue_name, "job_id": event.job_id, "error_type": error_type},
            key=f"job_failure:{queue_name}:{error_type}",
        )
        self._check_failure_rate(queue_name)

    def _check_failure_rate(self, queue_name: str) -> None:
        with self._lock:
            stats = self._stats[queue_name]
            finished = stats["completed"] + stats["failed"]
            rate = stats["failed"] / finished if finished else 0.0
        if finished < self.thresholds.min_sample or rate <= self.thresholds.job_failure_rate:
            return
        self.alerting.send_alert(
            "Job failure rate threshold exceeded",
            f"Queue {queue_name} failure rate is {rate:.1%}, threshold {self.thresholds.job_failure_rate:.1%}",
            AlertType.ERROR_RATE,
            AlertSeverity.HIGH,
            {"queue": queue_name, "failure_rate": rate, "finished": finished},
            key=f"error_rate:{queue_name}",
        )

    def record_api_request(self, route: str, method: str, status: int, duration: float) -> None:
        labels = {"route": route, "method": method, "status": str(status)}
        self.api_requests.labels(**labels).inc()
        self.api_duration.labels(route=route, method=method).observe(duration)
        with self._lock:
            self._api["requests"] += 1
            if status >= 400:
                self._api["errors"] += 1
        if status >= 400:
            self.api_errors.labels(**labels).inc()

    # ------------------------------------------------------------------------
    # export
    # ------------------------------------------------------------------------

    def prometheus_text(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            queues = {}
            for name, stats in self._stats.items():
                finished = stats["completed"] + stats["failed"]
                queues[name] = {
                    "enqueued": int(stats["enqueued"]),
                    "completed": int(stats["completed"]),
                    "failed": int(stats["failed"]),
                    "failed_attempts": int(stats["failed_attempts"]),
                    "size": self._sizes.get(name, 0),
                    "avg_duration": round(stats["total_duration"] / stats["completed"], 4) if stats["completed"] else 0.0,
                    "failure_rate": round(stats["failed"] / finished, 4) if finished else 0.0,
                }
            return {
                "timestamp": datetime.utcnow().isoformat() + "Z",
                "queues": queues,
                "api": dict(self._api),
                "executions": dict(self._executions),
                "alerts": [alert.to_dict() for alert in list(self.alerting.recent)[-20:]],
            }


def create_monitoring(settings) -> MonitoringService:
    """MonitoringService wired with the log channel and, if configured, the webhook channel."""
    channels: List[AlertChannel] = [LogAlertChannel()]
    if settings.alert_webhook_url:
        channels.append(WebhookAlertChannel(settings.alert_webhook_url))
    return MonitoringService(
        thresholds=AlertThresholds.from_settings(settings),
        alerting=AlertingService(channels),
    )


# ============================================================================
# DATABASE HEALTH
# ============================================================================

class MetricsCollector:
    """
    Collects and aggregates metrics for hookflow.

    Provides:
    - Execution stats (total, completed, failed, running, cancelled)
    - Error rates
    - Circuit breaker status per outbound service
    - Database connectivity
    """

    def __init__(self, db_session: Session, breakers: Optional[CircuitBreakerRegistry] = None):
        self.db_session = db_session
        self.breakers = breakers

    def get_execution_stats(self, hours: int = 24) -> Dict[str, Any]:
        """
        Execution statistics for the last `hours` hours.

        Returns:
            Dict with total, completed, failed, running, cancelled, success_rate
        """
        result = {
            "total": 0,
            "completed": 0,
            "failed": 0,
            "running": 0,
            "cancelled": 0,
            "success_rate": 0.0,
        }
        try:
            since = datetime.utcnow() - timedelta(hours=hours)
            stats = self.db_session.query(
                Execution.status,
                func.count(Execution.id).label("count")
            ).filter(
                Execution.started_at >= since
            ).group_by(Execution.status).all()

            for status, count in stats:
                result["total"] += count
                if status in result:
                    result[status] += count

            if result["total"] > 0:
                result["success_rate"] = round((result["completed"] / result["total"]) * 100, 2)
            return result

        except Exception as e:
            logger.error(f"Failed to get execution stats: {e}")
            result["error"] = str(e)
            return result

    def get_error_rate(self, hours: int = 1) -> Dict[str, Any]:
        try:
            since = datetime.utcnow() - timedelta(hours=hours)

            total = self.db_session.query(func.count(Execution.id)).filter(
                Execution.started_at >= since
            ).scalar() or 0

            failed = self.db_session.query(func.count(Execution.id)).filter(
                and_(
                    Execution.started_at >= since,
                    Execution.status == "failed"
                )
            ).scalar() or 0

            return {
                "period_hours": hours,
                "total_executions": total,
                "failed_executions": failed,
                "error_rate": round((failed / total * 100), 2) if total > 0 else 0.0,
            }

        except Exception as e:
            logger.error(f"Failed to get error rate: {e}")
            return {
                "period_hours": hours,
                "total_executions": 0,
                "failed_executions": 0,
                "error_rate": 0.0,
                "error": str(e)
            }

    def get_circuit_breaker_status(self) -> Dict[str, Any]:
        """
        Returns:
            {"breakers": {name: status}, "open": [names], "is_healthy": bool}
        """
        statuses = self.breakers.get_status() if self.breakers is not None else {}
        open_breakers = sorted(
            name for name, status in statuses.items() if status["state"] == CircuitBreakerState.OPEN
        )
        return {
            "breakers": statuses,
            "open": open_breakers,
            "is_healthy": not open_breakers,
        }

    def get_workflow_stats(self) -> Dict[str, Any]:
        try:
            total = self.db_session.query(func.count(Workflow.id)).scalar() or 0
            active = self.db_session.query(func.count(Workflow.id)).filter(
                Workflow.is_active.is_(True)
            ).scalar() or 0
            return {"total_workflows": total, "active_workflows": active}

        except Exception as e:
            logger.error(f"Failed to get workflow stats: {e}")
            return {"total_workflows": 0, "active_workflows": 0, "error": str(e)}

    def get_database_health(self) -> Dict[str, Any]:
        try:
            start = time.time()
            self.db_session.execute(text("SELECT 1")).fetchone()
            return {
                "connected": True,
                "response_time_ms": round((time.time() - start) * 1000, 2),
            }

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"connected": False, "response_time_ms": None, "error": str(e)}

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "executions": self.get_execution_stats(hours=24),
            "error_rate": self.get_error_rate(hours=1),
            "circuit_breakers": self.get_circuit_breaker_status(),
            "workflows": self.get_workflow_stats(),
            "database": self.get_database_health(),
        }


def check_system_health(db_session: Session, breakers: Optional[CircuitBreakerRegistry] = None) -> Dict[str, Any]:
    """
    Overall health: database reachable, no open circuit breaker, and an
    execution error rate under 50% in the last hour.
    """
    metrics = MetricsCollector(db_session, breakers).get_all_metrics()

    issues = []
    components = {}

    db_health = metrics["database"]
    components["database"] = db_health["connected"]
    if not db_health["connected"]:
        issues.append("Database connection failed")

    breakers_status = metrics["circuit_breakers"]
    components["executors"] = breakers_status["is_healthy"]
    for name in breakers_status["open"]:
        issues.append(f"Circuit breaker {name} is OPEN")

    error_rate = metrics["error_rate"]["error_rate"]
    components["error_rate"] = error_rate < 50.0
    if error_rate >= 50.0:
        issues.append(f"High error rate: {error_rate}%")

    return {
        "healthy": all(components.values()),
        "components": components,
        "issues": issues if issues else None,
        "metrics": metrics,
    }
