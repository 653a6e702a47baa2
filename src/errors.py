from typing import Optional


class ConfigurationError(Exception):
    ...


class DuplicateUserError(ConfigurationError):
    ...


class InvalidOperationError(ConfigurationError):
    ...


class ProtocolError(Exception):
    """GitHub answered with a structure we cannot reconcile against."""


class GraphQLQueryError(ProtocolError):
    ...


class PaginationLimitExceeded(ProtocolError):
    ...


class TransientNetworkError(Exception):
    """A read kept failing with server errors after all retries."""


class MutationRejected(Exception):
    """GitHub declined an add, remove, create or update call."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# Failures that affect a single action. Anything else aborts the run.
ACTION_ERRORS = (MutationRejected, TransientNetworkError)
