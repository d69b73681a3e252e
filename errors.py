"""
Error taxonomy for the dispatch engine.

Each error carries the HTTP status it maps to; main.py turns them into
responses with the same {"detail": ...} body HTTPException produces.
"""


class DispatchError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(DispatchError):
    status_code = 400
    default_detail = "Missing required fields"


class Unauthorized(DispatchError):
    status_code = 403
    default_detail = "Not authorized for this resource"


class NotFound(DispatchError):
    status_code = 404
    default_detail = "Not found"


class NoAvailableDriver(DispatchError):
    status_code = 404
    default_detail = "No available drivers found"


class NoSuitableHospital(DispatchError):
    status_code = 404
    default_detail = "No suitable hospital found"


class Conflict(DispatchError):
    status_code = 409
    default_detail = "Conflict"


class Internal(DispatchError):
    status_code = 500
