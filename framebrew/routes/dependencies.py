"""FastAPI dependencies shared by the pipeline routes.

Callers authenticate with a Fernet principal token (see
``framebrew.utils.tokens``), sent as ``Authorization: Bearer <token>`` on REST
calls and as ``?token=`` on the event stream.
"""

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from framebrew.exceptions import AuthenticationError
from framebrew.pipeline import Pipeline
from framebrew.services.job_service import JobService
from framebrew.utils.tokens import Principal

log = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


def get_pipeline(request: Request) -> Pipeline:
    """Return the pipeline built by the application lifespan.

    Raises:
        HTTPException: 503 if the application started without a pipeline.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized",
        )
    return pipeline


def get_job_service(pipeline: Pipeline = Depends(get_pipeline)) -> JobService:
    return pipeline.jobs


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    pipeline: Pipeline = Depends(get_pipeline),
) -> Principal:
    """Resolve the caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, expired or tampered.
    """
    if pipeline.tokens is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token verification not configured",
        )
    token = credentials.credentials if credentials else None
    try:
        return pipeline.tokens.verify(token)
    except AuthenticationError as e:
        log.warning("api_unauthorized", reason=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
