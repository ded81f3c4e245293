"""Errors raised by the shim, each carrying the RPC status code it maps to."""


class ShimError(Exception):
    """Base class for every error the shim reports."""

    code = "UNKNOWN"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NotFoundError(ShimError):
    """A container, process or exec could not be found."""

    code = "NOT_FOUND"


class InvalidArgumentError(ShimError):
    """A request carried an argument that cannot be used."""

    code = "INVALID_ARGUMENT"


class FailedPreconditionError(ShimError):
    """The object is not in a state that allows the operation."""

    code = "FAILED_PRECONDITION"


class DeadlineExceededError(ShimError):
    """An operation did not finish in time."""

    code = "DEADLINE_EXCEEDED"


class UnimplementedError(ShimError):
    """The operation is not supported by this process or platform."""

    code = "UNIMPLEMENTED"


class OtherError(ShimError):
    """Any other failure."""

    code = "UNKNOWN"