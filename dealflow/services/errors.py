"""Pipeline error taxonomy.

Every error here rejects a single command and leaves the stores exactly
as they were; callers may correct the input and retry. `status_code`
and `code` are what the JSON blueprint renders.
"""


class PipelineError(Exception):
    """Base error for pipeline commands and queries."""

    status_code = 400
    code = "pipeline_error"

    def to_dict(self):
        return {"error": str(self), "code": self.code}


class ValidationError(PipelineError, ValueError):
    """Malformed or missing required input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(PipelineError):
    """Referenced deal or stage does not exist."""

    status_code = 404
    code = "not_found"


class InvalidStateError(PipelineError):
    """Operation not legal for the entity's current state."""

    status_code = 409
    code = "invalid_state"


class RequiresClosureDataError(PipelineError):
    """A terminal stage was targeted through the generic move path."""

    status_code = 409
    code = "requires_closure_data"

    def __init__(self, message, closure_command):
        super().__init__(message)
        self.closure_command = closure_command  # "close_won" | "close_lost"

    def to_dict(self):
        data = super().to_dict()
        data["closure_command"] = self.closure_command
        return data


class ConflictError(PipelineError):
    """The deal changed underneath the caller (optimistic check failed)."""

    status_code = 409
    code = "conflict"


class ConfigurationError(PipelineError):
    """Stage registry cannot satisfy the request (e.g. no open stage)."""

    status_code = 500
    code = "configuration_error"
