"""
Error taxonomy for the fleet engine.
Routes never catch these; the handler registered in main.py maps them to HTTP.
"""


class FleetError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(FleetError):
    """Bad input shape or range, rejected before any write."""
    status_code = 422


class NotFoundError(FleetError):
    status_code = 404


class ConflictError(FleetError):
    """The asset changed since the caller read it."""
    status_code = 409


class DependencyError(FleetError):
    """Store or external service failure on a primary write."""
    status_code = 503
