from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from dealboard.context import get_correlation_id
from dealboard.core.auth import AuthUser, get_current_user as get_auth_user
from dealboard.core.errors import AlreadyConvertedError, DealboardError, NotFoundError, ValidationFailureError
from dealboard.deals.service import ActorUser


_ERROR_STATUS: dict[type[DealboardError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyConvertedError: status.HTTP_409_CONFLICT,
    ValidationFailureError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: HTTPException | DealboardError, code: str) -> JSONResponse:
    """Render a permission failure or a service error with the shared envelope."""
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=str(exc.detail),
            details=exc.detail,
        )

    details: Any = None
    if isinstance(exc, ValidationFailureError):
        details = {"fields": exc.fields}
    elif isinstance(exc, AlreadyConvertedError):
        details = {"source_conversation_id": exc.source_conversation_id}
    return error_response(
        request,
        status_code=_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
        code=exc.code,
        message=exc.message,
        details=details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
