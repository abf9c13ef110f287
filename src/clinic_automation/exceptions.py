"""
Workflow automation engine exceptions
"""


class WorkflowEngineError(Exception):
    """Base engine exception"""
    retryable = False


class WorkflowParseError(WorkflowEngineError):
    """Workflow definition could not be parsed"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """Workflow definition failed validation"""
    def __init__(self, message: str, errors: list = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class StepExecutionError(WorkflowEngineError):
    """Step execution failed"""
    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(message)


class MissingContactInfo(StepExecutionError):
    """Client has no phone/email for a messaging step"""
    retryable = True

    def __init__(self, step_id: str, channel: str):
        self.channel = channel
        label = "phone number" if channel == "sms" else "email address"
        super().__init__(step_id, f"Client has no {label} for {channel} step '{step_id}'")


class UnknownConditionField(StepExecutionError):
    """Conditional step references an unsupported field"""
    def __init__(self, step_id: str, field: str):
        self.field = field
        super().__init__(step_id, f"Unknown condition field: {field}")


class UnknownStepType(WorkflowEngineError):
    """Step type has no executor"""
    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"Unknown step type: {step_type}")


class NotifierTransientError(WorkflowEngineError):
    """Network or provider failure while handing off a message"""
    retryable = True


class NotFoundError(WorkflowEngineError):
    """Referenced record is missing"""
    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} '{record_id}' not found")


class StateTransitionError(WorkflowEngineError):
    """Invalid status transition"""
    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class SchedulingError(WorkflowEngineError):
    """Scheduled action could not be dispatched"""
    pass


class PersistenceError(WorkflowEngineError):
    """Store operation failed"""
    retryable = True


def is_retryable(error: Exception) -> bool:
    """Whether the action queue may retry after this error"""
    if isinstance(error, WorkflowEngineError):
        return error.retryable
    # unclassified errors (network, timeouts) retry by default
    return True
