"""
Errors
Typed failures raised by the index client and the signed URL cache
"""
from typing import Optional


class IndexClientError(Exception):
    """Base error for remote index calls"""

    def __init__(self, message: str, endpoint: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.path = path

    def __str__(self) -> str:
        base = super().__str__()
        where = " ".join(p for p in (self.endpoint or "", self.path or "") if p)
        return f"{base} [{where}]" if where else base


class TransportError(IndexClientError):
    """Connection failures and timeouts after local retries"""


class RateLimited(IndexClientError):
    """429/503 persisted through every backoff attempt"""

    def __init__(self, message: str, endpoint: Optional[str] = None, path: Optional[str] = None,
                 status_code: int = 429):
        super().__init__(message, endpoint=endpoint, path=path)
        self.status_code = status_code


class ServerError(IndexClientError):
    """5xx persisted through failover and local backoff"""

    def __init__(self, message: str, endpoint: Optional[str] = None, path: Optional[str] = None,
                 status_code: int = 500):
        super().__init__(message, endpoint=endpoint, path=path)
        self.status_code = status_code


class AuthError(IndexClientError):
    """Server error whose body points at an expired or invalid credential"""


class ResponseShapeError(IndexClientError):
    """200 response that is not JSON or not a known listing/link shape"""


class HttpStatusError(IndexClientError):
    """Non-retryable, non-success status (4xx other than 429)"""

    def __init__(self, message: str, endpoint: Optional[str] = None, path: Optional[str] = None,
                 status_code: int = 0):
        super().__init__(message, endpoint=endpoint, path=path)
        self.status_code = status_code


class UrlUnavailableError(Exception):
    """No fresh signed URL and no durable fallback for an entity"""

    def __init__(self, kind: str, entity_id: int, reason: str = ""):
        message = f"No download URL available for {kind} {entity_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.kind = kind
        self.entity_id = entity_id


class EntityNotFoundError(Exception):
    """Entity id is not in the catalog"""

    def __init__(self, kind: str, entity_id: int):
        super().__init__(f"Unknown {kind}: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id
