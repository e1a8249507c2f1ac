"""
Error types for admission and workflow execution.

Admission errors reach the caller synchronously. Workflow errors never do:
the driver turns them into a persisted ``failed`` status.
"""


class ClipforgeError(Exception):
    """Base exception for all clipforge failures."""


class AdmissionError(ClipforgeError):
    """Raised when a job request is rejected before any side effect."""


class InsufficientCredit(AdmissionError):
    def __init__(self, user_id: str, balance: int, required: int):
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(f"User {user_id} has {balance} credits, {required} required")


class NotFound(AdmissionError):
    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class WorkflowError(ClipforgeError):
    """Raised from inside a workflow step."""


class NonRetriableError(WorkflowError):
    """Retrying the workflow cannot change the outcome."""


class ProcessorError(WorkflowError):
    """The external clip extraction call failed (network error, timeout or non-2xx)."""

    def __init__(self, message: str, status_code=None):
        self.status_code = status_code
        super().__init__(message)


class StepFailed(WorkflowError):
    def __init__(self, step_name: str, reason: str):
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Step {step_name} failed: {reason}")
