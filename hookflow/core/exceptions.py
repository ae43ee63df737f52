"""
Custom Exceptions for hookflow

Exception Hierarchy:
- HookflowException (base)
  - IngestionError (rejected synchronously, never enqueued)
    - UnknownProviderError
    - SignatureVerificationError
    - MalformedPayloadError
  - WorkflowError
    - WorkflowNotFoundError (don't retry)
    - WorkflowInactiveError (don't retry)
    - WorkflowLockedError (graph edit while executions run)
    - DefinitionError (don't retry)
    - CycleLimitExceeded (don't retry)
  - NodeExecutionError (retry)
    - NodeTimeoutError (retry)
    - ExecutorUnavailableError (retry, circuit breaker open)
  - DispatchError (retry)
  - StoreError (retry)
"""


class HookflowException(Exception):
    """Base exception for all hookflow errors"""

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# INGESTION ERRORS
# ============================================================================

class IngestionError(HookflowException):
    """
    Inbound webhook rejected before anything is enqueued.
    Never retried by hookflow; the caller gets a 4xx.
    """

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class UnknownProviderError(IngestionError):
    """No adapter is registered for the provider in the URL."""

    status_code = 400

    def __init__(self, provider: str):
        super().__init__(f"Unknown webhook provider: '{provider}'")
        self.provider = provider


class SignatureVerificationError(IngestionError):
    """Webhook signature did not match the configured secret."""

    status_code = 401


class MalformedPayloadError(IngestionError):
    """Body could not be decoded."""

    status_code = 400


# ============================================================================
# WORKFLOW ERRORS
# ============================================================================

class WorkflowError(HookflowException):
    """Base class for workflow-related errors"""
    pass


class WorkflowNotFoundError(WorkflowError):
    """
    Workflow is missing for the tenant.
    Should NOT be retried - the definition is gone.
    """

    def __init__(self, workflow_id: str, tenant_id: str = None):
        super().__init__(f"Workflow {workflow_id} not found", retry_allowed=False)
        self.workflow_id = workflow_id
        self.tenant_id = tenant_id


class WorkflowInactiveError(WorkflowError):
    """Workflow has been disabled; new triggers are refused."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} is not active", retry_allowed=False)
        self.workflow_id = workflow_id


class WorkflowLockedError(WorkflowError):
    """Graph edit rejected because executions of the workflow are still running."""

    def __init__(self, workflow_id: str, running: int):
        super().__init__(
            f"Workflow {workflow_id} has {running} running execution(s); graph edits are locked",
            retry_allowed=False,
        )
        self.workflow_id = workflow_id
        self.running = running


class DefinitionError(WorkflowError):
    """
    Workflow definition is invalid (duplicate ids, dangling edges, bad node).
    Should NOT be retried - fix the workflow definition.
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class CycleLimitExceeded(WorkflowError):
    """
    Execution chain went past the hop limit (the graph most likely loops).
    Should NOT be retried.
    """

    def __init__(self, execution_id: str, hops: int, max_hops: int):
        super().__init__(
            f"Execution {execution_id} exceeded {max_hops} hops (at {hops})",
            retry_allowed=False,
        )
        self.execution_id = execution_id
        self.hops = hops
        self.max_hops = max_hops


# ============================================================================
# NODE EXECUTION ERRORS
# ============================================================================

class NodeExecutionError(HookflowException):
    """
    Node side effect failed (external API error, network issue).
    Should be retried by the queue's backoff policy.
    """

    def __init__(self, message: str, node_id: str = None, retry_allowed: bool = True):
        super().__init__(message, retry_allowed=retry_allowed)
        self.node_id = node_id


class NodeTimeoutError(NodeExecutionError):
    """Node took longer than the job timeout."""

    def __init__(self, message: str, node_id: str = None, timeout_seconds: float = None):
        super().__init__(message, node_id=node_id)
        self.timeout_seconds = timeout_seconds


class ExecutorUnavailableError(NodeExecutionError):
    """Downstream service is failing fast (circuit breaker OPEN)."""

    def __init__(self, message: str, node_id: str = None, service: str = None):
        super().__init__(message, node_id=node_id)
        self.service = service


# ============================================================================
# INFRASTRUCTURE ERRORS
# ============================================================================

class DispatchError(HookflowException):
    """
    Job could not be enqueued (broker unavailable).
    Should be retried (transient failures).
    """

    def __init__(self, message: str, queue_name: str = None):
        super().__init__(message, retry_allowed=True)
        self.queue_name = queue_name


class StoreError(HookflowException):
    """
    Database connection or query error.
    Should be retried (transient failures).
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=True)
