"""FastAPI dependencies exposing the process-wide components."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from overseer_credits.audit_log import AuditLog
from overseer_credits.batch import BatchProcessor
from overseer_credits.ledger import Ledger
from overseer_credits.services import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """The container built by the application lifespan."""
    services: ServiceContainer | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


def get_current_user_id(request: Request) -> str:
    """Get the authenticated user's ID from request state.

    The ID is set by upstream authentication middleware.

    Raises:
        HTTPException: If the request is not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return str(user_id)


def get_ledger(services: Annotated[ServiceContainer, Depends(get_services)]) -> Ledger:
    return services.ledger


def get_audit_log(services: Annotated[ServiceContainer, Depends(get_services)]) -> AuditLog:
    return services.audit_log


def get_batch_processor(
    services: Annotated[ServiceContainer, Depends(get_services)],
) -> BatchProcessor:
    return services.batch_processor


def require_admin_key(
    services: Annotated[ServiceContainer, Depends(get_services)],
    x_admin_key: Annotated[str | None, Header()] = None,
) -> str:
    """Admin key presented for privileged ledger mutations.

    Raises:
        HTTPException: 401 if no key was sent, 403 if it is not accepted
    """
    if not x_admin_key:
        raise HTTPException(status_code=401, detail="Admin key required")
    if not services.authorizer.is_authorized(x_admin_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return x_admin_key


CurrentUserId = Annotated[str, Depends(get_current_user_id)]
LedgerDep = Annotated[Ledger, Depends(get_ledger)]
AuditLogDep = Annotated[AuditLog, Depends(get_audit_log)]
BatchProcessorDep = Annotated[BatchProcessor, Depends(get_batch_processor)]
AdminKey = Annotated[str, Depends(require_admin_key)]
