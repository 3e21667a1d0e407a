"""Error taxonomy shared by the services and the API layer.

Validation and store errors reach the caller; index/cache errors are caught
inside the services and turned into the store fallback path.
"""
from typing import Optional


class GeoSocialError(Exception):
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, detail: str, *, cause: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.cause = cause


class ValidationError(GeoSocialError):
    """Invalid coordinates or parameters, rejected before any I/O."""
    code = "VALIDATION_ERROR"


class StoreUnavailable(GeoSocialError):
    """The relational store could not be reached."""
    code = "STORE_UNAVAILABLE"


class IndexUnavailable(GeoSocialError):
    """The Redis geo index or entity cache could not be reached."""
    code = "INDEX_UNAVAILABLE"


class EntityNotFound(GeoSocialError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} '{entity_id}' does not exist.")
        self.kind = kind
        self.entity_id = entity_id


class PermissionDenied(GeoSocialError):
    code = "FORBIDDEN"
