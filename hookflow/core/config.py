"""
Runtime configuration for hookflow.

All settings come from environment variables (a local .env file is loaded
with python-dotenv). Settings are built once at startup and passed to the
services that need them.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

DEFAULT_WORKER_CONCURRENCY = 5

# Outbound replies are cheap and latency sensitive
DEFAULT_QUEUE_CONCURRENCY = {
    "response-delivery": 10,
}


def _parse_concurrency(raw: Optional[str]) -> Dict[str, int]:
    """
    Parse WORKER_CONCURRENCY="agent-execution=2,response-delivery=20".
    """
    result = dict(DEFAULT_QUEUE_CONCURRENCY)
    if not raw:
        return result
    for item in raw.split(","):
        if "=" not in item:
            continue
        queue_name, value = item.split("=", 1)
        try:
            result[queue_name.strip()] = max(1, int(value))
        except ValueError:
            continue
    return result


def _normalize_database_url(url: str) -> str:
    # Railway/Heroku style URLs
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass
class Settings:
    """Typed view over the environment."""

    database_url: str = "sqlite:///./hookflow.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_backend: str = "celery"  # celery | local

    scheduler_interval: float = 30.0
    job_timeout: float = 30.0
    job_attempts: int = 3
    job_backoff_delay_ms: int = 5000
    max_hops: int = 50

    worker_concurrency: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_QUEUE_CONCURRENCY))

    agent_service_url: Optional[str] = None
    whatsapp_api_token: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    messenger_page_token: Optional[str] = None
    graph_api_url: str = "https://graph.facebook.com/v19.0"

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None

    alert_queue_size: int = 1000
    alert_processing_time: float = 30.0
    alert_job_failure_rate: float = 0.05
    alert_webhook_url: Optional[str] = None

    # Raw environment, used for the per-provider secret conventions
    environ: Mapping[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        if environ is None:
            load_dotenv()
            environ = dict(os.environ)

        def get(name: str, default=None):
            value = environ.get(name)
            return value if value not in (None, "") else default

        return cls(
            database_url=_normalize_database_url(get("DATABASE_URL", cls.database_url)),
            redis_url=get("REDIS_URL", cls.redis_url),
            queue_backend=get("QUEUE_BACKEND", cls.queue_backend).lower(),
            scheduler_interval=float(get("SCHEDULER_INTERVAL", cls.scheduler_interval)),
            job_timeout=float(get("JOB_TIMEOUT", cls.job_timeout)),
            job_attempts=int(get("JOB_ATTEMPTS", cls.job_attempts)),
            job_backoff_delay_ms=int(get("JOB_BACKOFF_DELAY_MS", cls.job_backoff_delay_ms)),
            max_hops=int(get("MAX_HOPS", cls.max_hops)),
            worker_concurrency=_parse_concurrency(get("WORKER_CONCURRENCY")),
            agent_service_url=get("AGENT_SERVICE_URL"),
            whatsapp_api_token=get("WHATSAPP_API_TOKEN"),
            whatsapp_phone_number_id=get("WHATSAPP_PHONE_NUMBER_ID"),
            messenger_page_token=get("MESSENGER_PAGE_TOKEN"),
            graph_api_url=get("GRAPH_API_URL", cls.graph_api_url),
            smtp_host=get("SMTP_HOST"),
            smtp_port=int(get("SMTP_PORT", cls.smtp_port)),
            smtp_user=get("SMTP_USER"),
            smtp_password=get("SMTP_PASSWORD"),
            smtp_sender=get("SMTP_SENDER"),
            alert_queue_size=int(get("ALERT_QUEUE_SIZE", cls.alert_queue_size)),
            alert_processing_time=float(get("ALERT_PROCESSING_TIME", cls.alert_processing_time)),
            alert_job_failure_rate=float(get("ALERT_JOB_FAILURE_RATE", cls.alert_job_failure_rate)),
            alert_webhook_url=get("ALERT_WEBHOOK_URL"),
            environ=environ,
        )

    def concurrency_for(self, queue_name: str) -> int:
        return self.worker_concurrency.get(queue_name, DEFAULT_WORKER_CONCURRENCY)

    def webhook_secret(self, provider: str, tenant_id: Optional[str] = None) -> Optional[str]:
        """
        Look up the signing secret for a provider.

        Tenant-specific `{PROVIDER}_WEBHOOK_SECRET_{TENANT}` wins over the
        provider-wide `{PROVIDER}_WEBHOOK_SECRET`.
        """
        provider_key = provider.upper()
        if tenant_id:
            tenant_key = "".join(c if c.isalnum() else "_" for c in tenant_id).upper()
            secret = self.environ.get(f"{provider_key}_WEBHOOK_SECRET_{tenant_key}")
            if secret:
                return secret
        return self.environ.get(f"{provider_key}_WEBHOOK_SECRET") or None

    def verify_token(self, provider: str) -> Optional[str]:
        return self.environ.get(f"{provider.upper()}_VERIFY_TOKEN") or None
