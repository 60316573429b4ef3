"""
Exception Hierarchy

Status-coded exceptions for the mapping engine. Every exception carries a
machine-checkable ``code`` plus a human-readable message, so the HTTP and
CLI layers can translate failures without inspecting message text.
"""


class MappingEngineError(Exception):
    """Base exception for the mapping engine"""

    code = "internal"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(MappingEngineError):
    """Workspace, database, mapping, rule, item or instance is absent"""
    code = "not_found"


class InvalidArgumentError(MappingEngineError):
    """Malformed address, bad cardinality, unsupported scope or filter"""
    code = "invalid_argument"


class FailedPreconditionError(MappingEngineError):
    """Operation is not allowed in the current state"""
    code = "failed_precondition"


class AlreadyExistsError(MappingEngineError):
    """Entity with the same identity already exists"""
    code = "already_exists"


class UnavailableError(MappingEngineError):
    """A collaborator service could not be reached"""
    code = "unavailable"


class InternalError(MappingEngineError):
    """Serialization failure or unexpected collaborator error"""
    code = "internal"


class UnimplementedError(MappingEngineError):
    """Requested behavior is not implemented"""
    code = "unimplemented"


def format_exception_details(exception: MappingEngineError) -> str:
    """One line for the error, then one indented line per detail entry"""
    lines = [f"{type(exception).__name__} [{exception.code}]: {exception.message}"]
    lines.extend(f"  {key}: {value}" for key, value in exception.details.items())
    return "\n".join(lines)
