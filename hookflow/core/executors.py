"""
Node executors.

One executor per node kind performs the node's side effect:
- PassthroughExecutor: webhook, decision and unknown nodes
- TransformExecutor: key mapping and templates over the input
- DelayExecutor: returns delay_seconds; successors are dispatched delayed
- ApiExecutor: HTTP request to a tenant-configured endpoint
- AgentExecutor: HTTP call to the agent service, reply queued for delivery
- MessageExecutor: queues an outbound reply
- EmailExecutor: sends an email over SMTP

Contract: execute(node, input, context) -> NodeResult. Executors raise
NodeExecutionError (or a subclass) on failure; retry_allowed decides
whether the queue retries the job.
"""

import asyncio
import logging
import re
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import httpx

from .circuit_breaker import CircuitBreakerRegistry
from .exceptions import ExecutorUnavailableError, NodeExecutionError
from .graph import ConditionError, evaluate_condition
from .nodes import Node, NodeKind

logger = logging.getLogger(__name__)

# respond(recipient_id, message, channel) -> job id of the queued reply
Responder = Callable[[str, str, str], Optional[str]]


@dataclass
class NodeResult:
    output: Dict[str, Any] = field(default_factory=dict)
    # True when a reply was queued for the customer
    sent: bool = False
    # Successors are dispatched this many seconds later
    delay_seconds: Optional[float] = None


@dataclass
class ExecutionContext:
    execution_id: str
    workflow_id: str
    tenant_id: str
    job_id: str
    attempt: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)
    respond: Optional[Responder] = None

    @property
    def sender_id(self) -> Optional[str]:
        return self.metadata.get("sender_id") or self.metadata.get("customer_id")

    @property
    def channel(self) -> str:
        return self.metadata.get("channel") or self.metadata.get("provider") or "whatsapp"


# ============================================================================
# TEMPLATES
# ============================================================================

_TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def lookup(values: Dict[str, Any], path: str) -> Any:
    """Dotted path lookup: "customer.name", "items.0.sku"."""
    current: Any = values
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def render_template(template: Any, values: Dict[str, Any]) -> Any:
    """
    Replace {{ path }} placeholders. A string that is exactly one placeholder
    keeps the value's type; dicts and lists are rendered recursively.
    """
    if isinstance(template, dict):
        return {key: render_template(value, values) for key, value in template.items()}
    if isinstance(template, list):
        return [render_template(item, values) for item in template]
    if not isinstance(template, str):
        return template

    whole = _TEMPLATE_PATTERN.fullmatch(template.strip())
    if whole:
        return lookup(values, whole.group(1))

    def replace(match):
        value = lookup(values, match.group(1))
        return "" if value is None else str(value)

    return _TEMPLATE_PATTERN.sub(replace, template)


def template_values(input_data: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    values = dict(input_data)
    values.setdefault("input", input_data)
    values.setdefault("metadata", context.metadata)
    return values


# ============================================================================
# EXECUTORS
# ============================================================================

class NodeExecutor(ABC):

    @abstractmethod
    async def execute(self, node: Node, input_data: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        ...


class PassthroughExecutor(NodeExecutor):
    """
    Forwards the input. Decision nodes with a `condition` in their config
    also get output["decision"] set from it.
    """

    async def execute(self, node, input_data, context):
        output = dict(input_data)
        output.update(node.config.get("output") or {})

        condition = node.config.get("condition")
        if node.kind == NodeKind.DECISION and condition:
            try:
                output["decision"] = evaluate_condition(str(condition), input_data)
            except ConditionError as e:
                raise NodeExecutionError(f"Decision condition failed: {e}", node_id=node.id, retry_allowed=False)

        return NodeResult(output=output)


class TransformExecutor(NodeExecutor):
    """
    config:
        mapping: {"out_key": "{{ path.in.input }}" or "Hello {{ name }}"}
        set: {"key": literal}
        merge: keep the input keys (default True)
    """

    async def execute(self, node, input_data, context):
        values = template_values(input_data, context)
        output = dict(input_data) if node.config.get("merge", True) else {}
        for key, template in (node.config.get("mapping") or {}).items():
            output[key] = render_template(template, values)
        output.update(node.config.get("set") or {})
        return NodeResult(output=output)


class DelayExecutor(NodeExecutor):
    """
    config: seconds / minutes / hours (summed) or delay_ms.
    """

    async def execute(self, node, input_data, context):
        config = node.config
        try:
            seconds = (
                float(config.get("seconds", 0))
                + float(config.get("minutes", 0)) * 60
                + float(config.get("hours", 0)) * 3600
                + float(config.get("delay_ms", 0)) / 1000.0
            )
        except (TypeError, ValueError) as e:
            raise NodeExecutionError(f"Invalid delay config: {e}", node_id=node.id, retry_allowed=False)

        seconds = max(0.0, seconds)
        output = dict(input_data)
        output["delay_seconds"] = seconds
        return NodeResult(output=output, delay_seconds=seconds)


class HttpExecutor(NodeExecutor):
    """Shared circuit-breaker wrapper for executors that call HTTP services."""

    def __init__(
        self,
        breakers: Optional[CircuitBreakerRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
    ):
        self.breakers = breakers or CircuitBreakerRegistry()
        self.transport = transport
        self.timeout = timeout

    async def request(self, service: str, node: Node, method: str, url: str, **kwargs) -> httpx.Response:
        breaker = self.breakers.get(service)
        if breaker.is_open():
            raise ExecutorUnavailableError(f"{service} circuit breaker is OPEN", node_id=node.id, service=service)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            breaker.record_failure()
            raise NodeExecutionError(f"{service} request failed: {e}", node_id=node.id)

        if response.status_code >= 500:
            breaker.record_failure()
            raise NodeExecutionError(f"{service} returned HTTP {response.status_code}", node_id=node.id)

        breaker.record_success()
        if response.status_code >= 400:
            raise NodeExecutionError(
                f"{service} rejected the request (HTTP {response.status_code})",
                node_id=node.id,
                retry_allowed=False,
            )
        return response


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiExecutor(HttpExecutor):
    """
    config:
        url, method (GET), headers, params, body (all templated)
        output_key: where the response goes (default "response")
    """

    async def execute(self, node, input_data, context):
        values = template_values(input_data, context)
        url = render_template(node.config.get("url"), values)
        if not url:
            raise NodeExecutionError("API node has no url", node_id=node.id, retry_allowed=False)

        method = str(node.config.get("method", "GET")).upper()
        kwargs: Dict[str, Any] = {
            "headers": render_template(node.config.get("headers") or {}, values),
            "params": render_template(node.config.get("params") or {}, values),
        }
        body = node.config.get("body")
        if body is not None and method not in ("GET", "DELETE"):
            kwargs["json"] = render_template(body, values)

        service = f"api:{urlparse(str(url)).netloc or url}"
        response = await self.request(service, node, method, str(url), **kwargs)

        output = dict(input_data)
        output[node.config.get("output_key", "response")] = _response_body(response)
        output["status_code"] = response.status_code
        return NodeResult(output=output)


class AgentExecutor(HttpExecutor):
    """
    Calls the agent service: POST {AGENT_SERVICE_URL}/agents/{agent_id}/invoke.

    The message is the input's `text` (or `message`), falling back to the
    webhook event's `data.text`. The agent's `response` text is queued for the customer unless the node
    config sets reply=False.
    """

    def __init__(self, base_url: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/") if base_url else None

    async def execute(self, node, input_data, context):
        if not self.base_url:
            raise NodeExecutionError("AGENT_SERVICE_URL is not configured", node_id=node.id, retry_allowed=False)

        agent_id = node.config.get("agent_id") or node.id
        message = (
            input_data.get("text") or input_data.get("message") or lookup(input_data, "data.text") or ""
        )
        payload = {
            "message": message,
            "conversation_id": context.metadata.get("conversation_id") or context.sender_id or context.execution_id,
            "tenant_id": context.tenant_id,
            "execution_id": context.execution_id,
            "context": input_data,
            "config": {k: v for k, v in node.config.items() if k not in ("agent_id", "reply")},
        }

        response = await self.request(
            "agent-service", node, "POST", f"{self.base_url}/agents/{agent_id}/invoke", json=payload
        )
        body = _response_body(response)
        if not isinstance(body, dict):
            body = {"response": body}
        if body.get("success") is False:
            raise NodeExecutionError(body.get("error") or "Agent execution failed", node_id=node.id)

        output = dict(input_data)
        output["response"] = body.get("response")
        output["agent"] = {k: v for k, v in body.items() if k != "response"}

        sent = False
        reply = output["response"]
        if node.config.get("reply", True) and reply and context.sender_id and context.respond:
            context.respond(context.sender_id, str(reply), context.channel)
            sent = True
        return NodeResult(output=output, sent=sent)


class MessageExecutor(NodeExecutor):
    """
    config:
        text: message template (default: input "response" or "text")
        recipient_id: template (default: the conversation's sender)
        channel: override the conversation channel
    """

    async def execute(self, node, input_data, context):
        values = template_values(input_data, context)
        text = render_template(node.config.get("text"), values) if node.config.get("text") else (
            input_data.get("response") or input_data.get("text")
        )
        recipient = render_template(node.config.get("recipient_id"), values) or context.sender_id
        if not text or not recipient:
            raise NodeExecutionError("Message node needs text and a recipient", node_id=node.id, retry_allowed=False)
        if context.respond is None:
            raise NodeExecutionError("No response channel available", node_id=node.id, retry_allowed=False)

        channel = node.config.get("channel") or context.channel
        job_id = context.respond(str(recipient), str(text), channel)
        output = dict(input_data)
        output["message"] = {"recipient_id": recipient, "text": text, "channel": channel, "job_id": job_id}
        return NodeResult(output=output, sent=True)


class EmailExecutor(NodeExecutor):
    """
    config: to, subject, body (templated), from (defaults to SMTP_SENDER).
    """

    def __init__(self, settings, smtp_factory: Callable[..., Any] = smtplib.SMTP):
        self.settings = settings
        self.smtp_factory = smtp_factory

    async def execute(self, node, input_data, context):
        if not self.settings.smtp_host:
            raise NodeExecutionError("SMTP_HOST is not configured", node_id=node.id, retry_allowed=False)

        values = template_values(input_data, context)
        recipient = render_template(node.config.get("to"), values)
        if not recipient:
            raise NodeExecutionError("Email node has no recipient", node_id=node.id, retry_allowed=False)

        email = EmailMessage()
        email["From"] = node.config.get("from") or self.settings.smtp_sender or self.settings.smtp_user
        email["To"] = recipient
        email["Subject"] = str(render_template(node.config.get("subject", ""), values) or "")
        email.set_content(str(render_template(node.config.get("body", ""), values) or ""))

        try:
            await asyncio.to_thread(self._send, email)
        except (smtplib.SMTPException, OSError) as e:
            raise NodeExecutionError(f"Email delivery failed: {e}", node_id=node.id)

        output = dict(input_data)
        output["email"] = {"to": recipient, "subject": email["Subject"]}
        return NodeResult(output=output, sent=True)

    def _send(self, email: EmailMessage) -> None:
        with self.smtp_factory(self.settings.smtp_host, self.settings.smtp_port) as smtp:
            smtp.starttls()
            if self.settings.smtp_user and self.settings.smtp_password:
                smtp.login(self.settings.smtp_user, self.settings.smtp_password)
            smtp.send_message(email)


# ============================================================================
# REGISTRY
# ============================================================================

class ExecutorRegistry:
    """Node kind -> executor, PassthroughExecutor for anything unregistered."""

    def __init__(self, default: Optional[NodeExecutor] = None):
        self._executors: Dict[NodeKind, NodeExecutor] = {}
        self._default = default or PassthroughExecutor()

    def register(self, kind, executor: NodeExecutor) -> None:
        self._executors[NodeKind.parse(kind)] = executor

    def get(self, kind) -> NodeExecutor:
        return self._executors.get(NodeKind.parse(kind), self._default)


def create_default_executors(
    settings,
    breakers: Optional[CircuitBreakerRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExecutorRegistry:
    breakers = breakers or CircuitBreakerRegistry()
    registry = ExecutorRegistry()
    registry.register(NodeKind.TRANSFORM, TransformExecutor())
    registry.register(NodeKind.DELAY, DelayExecutor())
    registry.register(NodeKind.API, ApiExecutor(breakers=breakers, transport=transport))
    registry.register(
        NodeKind.AGENT,
        AgentExecutor(settings.agent_service_url, breakers=breakers, transport=transport),
    )
    registry.register(NodeKind.MESSAGE, MessageExecutor())
    registry.register(NodeKind.EMAIL, EmailExecutor(settings))
    return registry
