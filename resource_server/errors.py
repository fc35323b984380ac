from __future__ import annotations

from fastapi import HTTPException, status


class ResourceServerError(Exception):
    """Base error for resource lifecycle failures."""


class ResourceNotFound(ResourceServerError, LookupError):
    """Raised when a resource or upload id is unknown."""


class ObjectStoreError(ResourceServerError):
    """Raised when the object store rejects a write or delete."""


class SigningFailed(ObjectStoreError):
    """Raised when a signed URL could not be produced."""


class PersistenceFailed(ResourceServerError):
    """Raised when a row write fails after the object store succeeded."""


def error(status_code: int, code: str, message: str, details: dict | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message, "details": details or {}}},
    )


def unauthorized() -> HTTPException:
    exc = error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Authentication required")
    exc.headers = {"WWW-Authenticate": "Bearer"}
    return exc


def forbidden() -> HTTPException:
    return error(
        status.HTTP_403_FORBIDDEN, "forbidden", "You do not have permission for this action"
    )


def not_found() -> HTTPException:
    return error(status.HTTP_404_NOT_FOUND, "not_found", "Resource not found")


def bad_request(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_400_BAD_REQUEST, code, message, details)


def payload_too_large(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_413_CONTENT_TOO_LARGE, code, message, details)


def service_unavailable(code: str, message: str, details: dict | None = None) -> HTTPException:
    return error(status.HTTP_503_SERVICE_UNAVAILABLE, code, message, details)
