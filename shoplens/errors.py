"""Error taxonomy for the ingestion pipeline and dashboard API.

Each error carries a machine-readable reason and the HTTP status the
API layer answers with. Callers never see ``detail``; it exists for logs.

- AuthError            -> 401 (400 when the raw body was never captured)
- NotFound             -> 404
- ConflictError        -> 409
- ValidationError      -> 400 (the webhook receiver acknowledges malformed payloads with 200)
- PersistenceError     -> 500, upstream redelivery is the recovery path
- TransientUpstreamError -> 502 when it surfaces on a request path
"""

from __future__ import annotations

from enum import Enum


class Reason(str, Enum):
    """Reason codes attached to every ShopLens error."""

    SIGNATURE_MISMATCH = "signature_mismatch"
    MISSING_BODY = "missing_body"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    UNKNOWN_TENANT = "unknown_tenant"
    MALFORMED_PAYLOAD = "malformed_payload"
    INVALID_JSON = "invalid_json"
    INVALID_QUERY = "invalid_query"
    INVALID_SHOP = "invalid_shop"
    CONFLICT = "conflict"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    UPSTREAM_FAILED = "upstream_failed"


class ShoplensError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, reason: Reason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class AuthError(ShoplensError):
    status_code = 401

    def __init__(self, reason: Reason, detail: str = ""):
        super().__init__(reason, detail)
        if reason is Reason.MISSING_BODY:
            self.status_code = 400


class NotFound(ShoplensError):
    status_code = 404


class ValidationError(ShoplensError):
    status_code = 400


class ConflictError(ShoplensError):
    status_code = 409


class PersistenceError(ShoplensError):
    status_code = 500

    def __init__(self, detail: str = "", reason: Reason = Reason.STORAGE_UNAVAILABLE):
        super().__init__(reason, detail)


class TransientUpstreamError(ShoplensError):
    status_code = 502

    def __init__(self, detail: str = "", reason: Reason = Reason.UPSTREAM_FAILED):
        super().__init__(reason, detail)
