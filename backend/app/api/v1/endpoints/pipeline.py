"""Generation pipeline API endpoints.

- POST /api/v1/pipeline/{step} - Run one pipeline step
- PUT /api/v1/pipeline/results/{record_id} - Persist a result (idempotent)

Error Logging Requirements:
- Return structured error responses: {"error": str, "code": str, "request_id": str}
- Log 4xx errors at WARNING, 5xx at ERROR
- Log rate limit hits at WARNING level
- Include subject in logs
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Path, Request, Response, status
from fastapi.responses import JSONResponse

from app.api.v1.errors import error_response, get_request_id
from app.core.auth import get_subject
from app.core.logging import get_logger
from app.repositories.generated_content import GeneratedContentOwnershipError
from app.schemas.pipeline import (
    ApplyResultRequest,
    GeneratedContentResponse,
    StepResponse,
)
from app.schemas.subject import Subject
from app.services.admission import BurstLimitExceeded, QuotaExceeded
from app.services.pipeline import (
    GenerationPipeline,
    PipelineValidationError,
    ProviderFailure,
    ProviderTimeout,
    UnknownStepError,
)
from app.services.record_store import StoreUnavailableError
from app.utils.json_extraction import MalformedResponseError

logger = get_logger(__name__)

router = APIRouter()

MAX_RAW_TEXT_IN_ERROR = 2000

PROVIDER_STATUS = {
    "rate_limited": status.HTTP_503_SERVICE_UNAVAILABLE,
    "overloaded": status.HTTP_503_SERVICE_UNAVAILABLE,
    "circuit_open": status.HTTP_503_SERVICE_UNAVAILABLE,
    "auth": status.HTTP_502_BAD_GATEWAY,
    "upstream": status.HTTP_502_BAD_GATEWAY,
}


def get_pipeline(request: Request) -> GenerationPipeline:
    """Pipeline built at startup."""
    return request.app.state.pipeline


def _admission_error(
    request_id: str, subject: Subject, e: BurstLimitExceeded | QuotaExceeded
) -> JSONResponse:
    if isinstance(e, BurstLimitExceeded):
        logger.warning(
            "Rate limit exceeded",
            extra={
                "request_id": request_id,
                "subject": subject.key,
                "retry_after": e.retry_after,
            },
        )
        return error_response(
            request_id,
            status.HTTP_429_TOO_MANY_REQUESTS,
            "RATE_LIMIT_EXCEEDED",
            "Too many requests. Please try again in a moment.",
            headers={"Retry-After": str(e.retry_after)},
            retry_after=e.retry_after,
        )

    logger.warning(
        "Quota exceeded",
        extra={
            "request_id": request_id,
            "subject": subject.key,
            "category": e.category,
            "plan": e.plan,
            "reason": e.reason,
        },
    )
    return error_response(
        request_id,
        status.HTTP_403_FORBIDDEN,
        "QUOTA_EXCEEDED",
        str(e),
        category=e.category,
        plan=e.plan,
        reason=e.reason,
        used=e.used,
        limit=e.limit,
        remaining_total=e.remaining_total,
    )


def _store_error(request_id: str, e: StoreUnavailableError) -> JSONResponse:
    logger.error(
        "Store unavailable",
        extra={"request_id": request_id, "operation": e.operation},
    )
    return error_response(
        request_id,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "STORE_UNAVAILABLE",
        "Storage is temporarily unavailable. Please try again later.",
    )


@router.post(
    "/{step}",
    response_model=StepResponse,
    summary="Run a pipeline step",
    description=(
        "Run one step of the generation pipeline. The caller resends every "
        "artifact from earlier steps (chosen angle, answers, draft)."
    ),
    responses={
        403: {"description": "Monthly quota reached or feature not on plan"},
        404: {"description": "Unknown step"},
        422: {"description": "Invalid step input"},
        429: {"description": "Too many requests (see Retry-After)"},
        502: {"description": "Provider failure or malformed model answer"},
        503: {"description": "Provider or storage unavailable"},
        504: {"description": "Provider timeout"},
    },
)
async def run_step(
    request: Request,
    step: str,
    payload: dict[str, Any] = Body(default_factory=dict),
    subject: Subject = Depends(get_subject),
    pipeline: GenerationPipeline = Depends(get_pipeline),
) -> StepResponse | JSONResponse:
    """Run ``step`` for the requesting subject."""
    request_id = get_request_id(request)
    logger.debug(
        "Pipeline step request",
        extra={"request_id": request_id, "step": step, "subject": subject.key},
    )

    try:
        result = await pipeline.run(subject, step, payload)
    except UnknownStepError as e:
        logger.warning(
            "Unknown pipeline step",
            extra={"request_id": request_id, "step": step},
        )
        return error_response(
            request_id,
            status.HTTP_404_NOT_FOUND,
            "UNKNOWN_STEP",
            str(e),
            steps=pipeline.step_names,
        )
    except PipelineValidationError as e:
        return error_response(
            request_id,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR",
            str(e),
            errors=e.errors,
        )
    except (BurstLimitExceeded, QuotaExceeded) as e:
        return _admission_error(request_id, subject, e)
    except StoreUnavailableError as e:
        return _store_error(request_id, e)
    except ProviderTimeout as e:
        logger.error(
            "Provider timeout",
            extra={"request_id": request_id, "step": step, "timeout": e.timeout_seconds},
        )
        return error_response(
            request_id,
            status.HTTP_504_GATEWAY_TIMEOUT,
            "PROVIDER_TIMEOUT",
            "Generation took too long. Please try again.",
            retryable=True,
        )
    except ProviderFailure as e:
        logger.error(
            "Provider failure",
            extra={
                "request_id": request_id,
                "step": step,
                "kind": e.kind,
                "retryable": e.retryable,
            },
        )
        headers = {"Retry-After": str(e.retry_after)} if e.retry_after else None
        return error_response(
            request_id,
            PROVIDER_STATUS.get(e.kind, status.HTTP_502_BAD_GATEWAY),
            f"PROVIDER_{e.kind.upper()}",
            "Generation failed. Please try again in a moment."
            if e.retryable
            else "Generation is unavailable.",
            headers=headers,
            retryable=e.retryable,
            retry_after=e.retry_after,
        )
    except MalformedResponseError as e:
        logger.error(
            "Malformed model answer",
            extra={"request_id": request_id, "step": step, "reason": e.reason},
        )
        return error_response(
            request_id,
            status.HTTP_502_BAD_GATEWAY,
            "MALFORMED_RESPONSE",
            "The generated answer could not be read. Please try again.",
            raw_text=e.raw_text[:MAX_RAW_TEXT_IN_ERROR],
        )

    return StepResponse(
        step=result.step,
        terminal=result.terminal,
        result=result.result,
        context_sections=result.context_sections,
        quota_remaining=result.quota_remaining,
        quota_remaining_total=result.quota_remaining_total,
    )


@router.put(
    "/results/{record_id}",
    response_model=GeneratedContentResponse,
    summary="Apply a pipeline result",
    description="Create or overwrite the result stored under a caller-chosen id.",
    responses={
        201: {"description": "Result created"},
        409: {"description": "Id belongs to another owner"},
        422: {"description": "Invalid body or unknown step"},
        503: {"description": "Storage unavailable"},
    },
)
async def apply_result(
    request: Request,
    response: Response,
    data: ApplyResultRequest,
    record_id: str = Path(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$"),
    subject: Subject = Depends(get_subject),
    pipeline: GenerationPipeline = Depends(get_pipeline),
) -> GeneratedContentResponse | JSONResponse:
    """Persist a result; repeating the call leaves the same record."""
    request_id = get_request_id(request)

    try:
        record, created = await pipeline.apply_result(subject, record_id, data)
    except UnknownStepError as e:
        return error_response(
            request_id,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR",
            str(e),
            errors=[{"field": "step", "message": str(e), "type": "value_error"}],
        )
    except GeneratedContentOwnershipError as e:
        logger.warning(
            "Result id owned by another subject",
            extra={"request_id": request_id, "record_id": record_id, "subject": subject.key},
        )
        return error_response(request_id, status.HTTP_409_CONFLICT, "CONFLICT", str(e))
    except StoreUnavailableError as e:
        return _store_error(request_id, e)

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return GeneratedContentResponse(
        id=record.id,
        step=record.step,
        format=record.format,
        content=record.content,
        payload=record.payload or {},
        workspace_id=record.workspace_id,
        created=created,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
