"""Subject resolution dependency for FastAPI.

Identity is established by the authenticating gateway in front of this
service, which forwards the user id (and the active workspace, if any) in
request headers. This module never validates credentials itself.
When AUTH_REQUIRED=false, a fixed dev user is returned.
"""

from fastapi import HTTPException, Request, status

from app.core.config import get_settings
from app.core.logging import get_logger
from app.schemas.subject import Subject

logger = get_logger(__name__)

_MAX_ID_LENGTH = 255


def _header_value(request: Request, name: str) -> str | None:
    value = request.headers.get(name)
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > _MAX_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Header {name} is too long",
        )
    return value


async def get_subject(request: Request) -> Subject:
    """FastAPI dependency returning the subject the request acts for.

    When AUTH_REQUIRED=false, the user header is optional and falls back
    to the configured dev user.
    """
    settings = get_settings()

    user_id = _header_value(request, settings.user_id_header)
    workspace_id = _header_value(request, settings.workspace_id_header)

    if user_id is None:
        if settings.auth_required:
            logger.warning(
                "Request without identity header",
                extra={"path": request.url.path, "header": settings.user_id_header},
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
            )
        user_id = settings.dev_user_id

    return Subject(user_id=user_id, workspace_id=workspace_id)
