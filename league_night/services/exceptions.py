"""
Error taxonomy for league night operations.

State-mutation errors abort the mutation and reach the caller with a precise
message; TransportFailure covers realtime/push delivery and is only logged.
"""


class LeagueNightError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgumentError(LeagueNightError, ValueError):
    """Malformed or missing input (same player twice, impossible score...)."""

    status_code = 400


class PreconditionFailedError(LeagueNightError):
    """The referenced entity exists but is not in a valid state for the operation."""

    status_code = 400


class ConflictError(LeagueNightError):
    """The operation would violate a uniqueness invariant, or lost a race."""

    status_code = 409


class NotFoundError(LeagueNightError):
    status_code = 404


class ConfigurationError(LeagueNightError):
    """League template data cannot be resolved into an instance."""

    status_code = 400


class PermissionDeniedError(LeagueNightError):
    status_code = 403


class TransportFailure(Exception):
    """A realtime or push delivery failed. Never propagated to the triggering request."""


class PushEndpointGoneError(TransportFailure):
    """The push service reported the endpoint as permanently gone (404/410)."""

    def __init__(self, endpoint: str, status_code: int):
        super().__init__(f"Push endpoint gone ({status_code}): {endpoint[:60]}")
        self.endpoint = endpoint
        self.status_code = status_code
