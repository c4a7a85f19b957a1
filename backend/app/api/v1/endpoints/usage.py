"""Usage API endpoints.

- GET /api/v1/usage - Plan and monthly usage, total and per quota category
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.v1.errors import error_response, get_request_id
from app.core.auth import get_subject
from app.core.logging import get_logger
from app.schemas.subject import Subject
from app.schemas.usage import UsageResponse
from app.services.admission import AdmissionGate
from app.services.record_store import StoreUnavailableError

logger = get_logger(__name__)

router = APIRouter()


def get_admission_gate(request: Request) -> AdmissionGate:
    """Admission gate built at startup."""
    return request.app.state.admission_gate


@router.get(
    "",
    response_model=UsageResponse,
    summary="Get monthly usage",
    description="Plan tier, renewal date and used/limit in total and per quota category.",
)
async def get_usage(
    request: Request,
    subject: Subject = Depends(get_subject),
    gate: AdmissionGate = Depends(get_admission_gate),
) -> UsageResponse | JSONResponse:
    request_id = get_request_id(request)
    try:
        summary = await gate.quota.get_usage(subject)
    except StoreUnavailableError as e:
        logger.error(
            "Usage summary unavailable",
            extra={"request_id": request_id, "operation": e.operation},
        )
        return error_response(
            request_id,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "STORE_UNAVAILABLE",
            "Storage is temporarily unavailable. Please try again later.",
        )
    return UsageResponse.from_summary(summary)
