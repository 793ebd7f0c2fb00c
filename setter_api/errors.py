"""Error taxonomy shared by the webhook gateway, the worker and the job runner."""

from typing import Optional


class PipelineError(Exception):
    """Base error. `retryable` tells the job runner whether to reschedule."""

    code = "pipeline_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class HandshakeRejected(PipelineError):
    code = "handshake_rejected"


class SignatureInvalid(PipelineError):
    code = "signature_invalid"


class AgentNotFound(PipelineError):
    code = "agent_not_found"


class AgentInactive(PipelineError):
    code = "agent_inactive"


class BackendUnavailable(PipelineError):
    code = "backend_unavailable"
    retryable = True


class BackendRejected(PipelineError):
    code = "backend_rejected"
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class BackendMalformed(PipelineError):
    code = "backend_malformed"
    retryable = True


class ConcurrentModification(PipelineError):
    code = "concurrent_modification"
    retryable = True


class ConversationBusy(PipelineError):
    code = "conversation_busy"
    retryable = True


class DispatchFailed(PipelineError):
    code = "dispatch_failed"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(PipelineError):
    code = "persistence_error"
    retryable = True


class InvalidJobPayload(PipelineError):
    code = "invalid_payload"
