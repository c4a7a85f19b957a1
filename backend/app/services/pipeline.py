"""Multi-stage generation pipeline.

Each call runs one step: angles, questions, follow-up, generate, adjust,
recycle or dictation-transcribe. The pipeline keeps no state between calls;
the caller resends the chosen angle, prior answers or prior draft.

One call goes through, in order:
1. Input validation against the step's schema (nothing consumed on failure)
2. Admission (burst, then monthly quota when the step debits one)
3. Brand context assembly
4. Prompt composition and one provider call bounded by a step timeout
5. JSON extraction and validation against the step's output schema

A quota debited in step 2 is never refunded, even when 4 or 5 fail.

ERROR LOGGING REQUIREMENTS:
- Log step start/complete/failure with subject and duration
- Log validation failures with field names
- Log provider failures with their kind and whether they can be retried
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import session_scope
from app.core.logging import get_logger, pipeline_logger
from app.integrations.claude import (
    ClaudeAuthError,
    ClaudeCircuitOpenError,
    ClaudeClient,
    ClaudeError,
    ClaudeMalformedResponseError,
    ClaudeOverloadedError,
    ClaudeRateLimitError,
    ClaudeTimeoutError,
    CompletionResult,
)
from app.models.generated_content import GeneratedContent
from app.repositories.generated_content import GeneratedContentRepository
from app.schemas.context import InclusionPolicy
from app.schemas.pipeline import (
    AdjustInput,
    AdjustOutput,
    AnglesInput,
    AnglesOutput,
    ApplyResultRequest,
    DictationInput,
    DictationOutput,
    FollowUpInput,
    FollowUpOutput,
    GenerateInput,
    GenerateOutput,
    QuestionsInput,
    QuestionsOutput,
    RecycleInput,
    RecycleOutput,
    StepInput,
    StepOutput,
)
from app.schemas.subject import Subject
from app.services.admission import AdmissionGate, QuotaDecision
from app.services.context_aggregator import (
    ContextAggregator,
    ContextAggregatorError,
    resolve_policy,
)
from app.services.prompts import (
    PromptParts,
    StepPrompt,
    adjust_prompt,
    angles_prompt,
    compose_system_prompt,
    dictation_prompt,
    follow_up_prompt,
    generate_prompt,
    load_category_rules,
    questions_prompt,
    recycle_prompt,
    render_rules,
)
from app.services.record_store import STORE_ERRORS, StoreUnavailableError
from app.utils.json_extraction import MalformedResponseError, parse_model_json

logger = get_logger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    pass


class UnknownStepError(PipelineError):
    """Raised when the requested step does not exist."""

    def __init__(self, step: str) -> None:
        self.step = step
        super().__init__(f"Unknown pipeline step: {step}")


class PipelineValidationError(PipelineError):
    """Raised when step input fails validation."""

    def __init__(self, step: str, errors: list[dict[str, Any]]) -> None:
        self.step = step
        self.errors = errors
        fields = ", ".join(error["field"] for error in errors) or "input"
        super().__init__(f"Invalid input for step {step}: {fields}")


class ProviderFailure(PipelineError):
    """Raised when the completion provider fails.

    ``kind`` is one of timeout, rate_limited, overloaded, circuit_open,
    auth or upstream.
    """

    def __init__(
        self,
        kind: str,
        message: str,
        retryable: bool,
        retry_after: int | None = None,
    ) -> None:
        self.kind = kind
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(message)


class ProviderTimeout(ProviderFailure):
    """Raised when the provider does not answer within the step timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            "timeout",
            f"Provider did not answer within {timeout_seconds}s",
            retryable=True,
        )


def _format_validation_errors(e: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "body",
            "message": error["msg"],
            "type": error["type"],
        }
        for error in e.errors()
    ]


# =============================================================================
# STEP REGISTRY
# =============================================================================


@dataclass(frozen=True)
class StepSpec:
    """Static description of one pipeline step."""

    name: str
    input_model: type[StepInput]
    output_model: type[StepOutput]
    build_prompt: Callable[[Any], StepPrompt]
    terminal: bool
    preset: str = "content"
    temperature: float = 0.85
    max_tokens: int = 4096
    quota_category: str | None = None
    model: str | None = None
    burst_max_requests: int | None = None
    burst_window_seconds: float | None = None


def _recycle_context(data: RecycleInput) -> dict[str, Any]:
    return {"target_formats": list(data.target_formats)}


STEPS: dict[str, StepSpec] = {
    spec.name: spec
    for spec in (
        StepSpec(
            name="angles",
            input_model=AnglesInput,
            output_model=AnglesOutput,
            build_prompt=angles_prompt,
            terminal=False,
            max_tokens=2048,
        ),
        StepSpec(
            name="questions",
            input_model=QuestionsInput,
            output_model=QuestionsOutput,
            build_prompt=questions_prompt,
            terminal=False,
            max_tokens=1500,
        ),
        StepSpec(
            name="follow-up",
            input_model=FollowUpInput,
            output_model=FollowUpOutput,
            build_prompt=follow_up_prompt,
            terminal=False,
            max_tokens=1200,
        ),
        StepSpec(
            name="generate",
            input_model=GenerateInput,
            output_model=GenerateOutput,
            build_prompt=generate_prompt,
            terminal=True,
            quota_category="content",
        ),
        StepSpec(
            name="adjust",
            input_model=AdjustInput,
            output_model=AdjustOutput,
            build_prompt=adjust_prompt,
            terminal=True,
            temperature=0.7,
        ),
        StepSpec(
            name="recycle",
            input_model=RecycleInput,
            output_model=RecycleOutput,
            build_prompt=recycle_prompt,
            terminal=True,
            max_tokens=8192,
            quota_category="adaptation",
        ),
        StepSpec(
            name="dictation-transcribe",
            input_model=DictationInput,
            output_model=DictationOutput,
            build_prompt=dictation_prompt,
            terminal=True,
            temperature=0.6,
            quota_category="content",
        ),
    )
}


# =============================================================================
# RESULT
# =============================================================================


@dataclass
class StepResult:
    """Outcome of one successful step call."""

    step: str
    terminal: bool
    result: dict[str, Any]
    context_sections: list[str] = field(default_factory=list)
    quota: QuotaDecision | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: float = 0.0

    @property
    def quota_remaining(self) -> int | None:
        return self.quota.remaining if self.quota is not None else None

    @property
    def quota_remaining_total(self) -> int | None:
        return self.quota.remaining_total if self.quota is not None else None


# =============================================================================
# PIPELINE
# =============================================================================


class GenerationPipeline:
    """Runs pipeline steps for a subject."""

    def __init__(
        self,
        gate: AdmissionGate,
        aggregator: ContextAggregator,
        client: ClaudeClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        step_timeout: float | None = None,
        rules: str | None = None,
        steps: Mapping[str, StepSpec] | None = None,
        step_models: Mapping[str, str] | None = None,
    ) -> None:
        settings = get_settings()
        self._gate = gate
        self._aggregator = aggregator
        self._client = client
        self._session_factory = session_factory
        self._step_timeout = step_timeout or settings.pipeline_step_timeout
        self._rules = (
            rules
            if rules is not None
            else render_rules(load_category_rules(settings.pipeline_rules_file))
        )
        self._steps = dict(steps or STEPS)
        self._step_models = dict(
            step_models if step_models is not None else settings.claude_step_models
        )

    @property
    def step_names(self) -> list[str]:
        return list(self._steps)

    def model_for(self, spec: StepSpec) -> str | None:
        """Model a step runs on; None falls back to the client default."""
        return self._step_models.get(spec.name) or spec.model

    def get_step(self, step: str) -> StepSpec:
        """Look up a step.

        Raises:
            UnknownStepError: If the step does not exist
        """
        spec = self._steps.get(step)
        if spec is None:
            raise UnknownStepError(step)
        return spec

    def validate_input(
        self, spec: StepSpec, payload: Mapping[str, Any]
    ) -> tuple[StepInput, InclusionPolicy]:
        """Validate ``payload`` and resolve its context policy.

        Raises:
            PipelineValidationError: With one entry per offending field
        """
        try:
            data = spec.input_model.model_validate(payload)
        except ValidationError as e:
            errors = _format_validation_errors(e)
            logger.warning(
                "Pipeline input validation failed",
                extra={"step": spec.name, "fields": [err["field"] for err in errors]},
            )
            raise PipelineValidationError(spec.name, errors) from e

        try:
            policy = resolve_policy(data.preset or spec.preset, data.inclusion)
        except ContextAggregatorError as e:
            field_name = "preset" if data.inclusion is None else "inclusion"
            logger.warning(
                "Pipeline context policy rejected",
                extra={"step": spec.name, "field": field_name, "error": str(e)},
            )
            raise PipelineValidationError(
                spec.name,
                [{"field": field_name, "message": str(e), "type": "value_error"}],
            ) from e
        return data, policy

    def parse_output(self, spec: StepSpec, data: StepInput, raw_text: str) -> dict[str, Any]:
        """Extract and validate the model's JSON answer.

        Raises:
            MalformedResponseError: If no JSON object is found or its shape
                does not match the step output
        """
        parsed = parse_model_json(raw_text)
        context = _recycle_context(data) if isinstance(data, RecycleInput) else None
        try:
            output: BaseModel = spec.output_model.model_validate(parsed, context=context)
        except ValidationError as e:
            fields = [err["field"] for err in _format_validation_errors(e)]
            logger.warning(
                "Model answer does not match step output",
                extra={"step": spec.name, "fields": fields, "raw_length": len(raw_text)},
            )
            raise MalformedResponseError(
                raw_text, f"Output does not match {spec.name} shape: {', '.join(fields)}"
            ) from e

        result = output.model_dump(by_alias=True)
        if isinstance(data, AdjustInput) and data.draft:
            result = {**data.draft, "content": result["content"]}
        return result

    async def _complete(
        self, spec: StepSpec, system_prompt: str, prompt: StepPrompt
    ) -> CompletionResult:
        try:
            return await asyncio.wait_for(
                self._client.complete(
                    system_prompt=system_prompt,
                    messages=prompt.messages(),
                    temperature=spec.temperature,
                    max_tokens=spec.max_tokens,
                    model=self.model_for(spec),
                ),
                timeout=self._step_timeout,
            )
        except (asyncio.TimeoutError, ClaudeTimeoutError) as e:
            raise ProviderTimeout(self._step_timeout) from e
        except ClaudeRateLimitError as e:
            retry_after = int(e.retry_after) if e.retry_after else None
            raise ProviderFailure(
                "rate_limited", str(e), retryable=True, retry_after=retry_after
            ) from e
        except ClaudeOverloadedError as e:
            raise ProviderFailure("overloaded", str(e), retryable=True) from e
        except ClaudeCircuitOpenError as e:
            raise ProviderFailure("circuit_open", str(e), retryable=True) from e
        except ClaudeAuthError as e:
            raise ProviderFailure("auth", str(e), retryable=False) from e
        except ClaudeMalformedResponseError as e:
            raise ProviderFailure("upstream", str(e), retryable=True) from e
        except ClaudeError as e:
            retryable = e.status_code is None or e.status_code >= 500
            raise ProviderFailure("upstream", str(e), retryable=retryable) from e

    async def run(self, subject: Subject, step: str, payload: Mapping[str, Any]) -> StepResult:
        """Run one step for ``subject``.

        Args:
            subject: Requesting subject
            step: Step name
            payload: Raw step input (camelCase or snake_case keys)

        Returns:
            StepResult with the validated output

        Raises:
            UnknownStepError: Unknown step name
            PipelineValidationError: Invalid input (nothing consumed)
            BurstLimitExceeded: Too many recent requests
            QuotaExceeded: Monthly ceiling reached
            StoreUnavailableError: Record or usage storage failed
            ProviderFailure: Provider failed (ProviderTimeout on timeout)
            MalformedResponseError: Unusable model answer
        """
        spec = self.get_step(step)
        data, policy = self.validate_input(spec, payload)

        decision = await self._gate.admit(
            subject,
            spec.quota_category,
            max_requests=spec.burst_max_requests,
            window_seconds=spec.burst_window_seconds,
        )

        start_time = time.monotonic()
        pipeline_logger.step_start(spec.name, subject.key)
        try:
            block = await self._aggregator.build_context(subject, policy)
            prompt = spec.build_prompt(data)
            system_prompt = compose_system_prompt(
                PromptParts(
                    rules=self._rules,
                    context=block.text,
                    instructions=prompt.instructions,
                )
            )
            completion = await self._complete(spec, system_prompt, prompt)
            result = self.parse_output(spec, data, completion.text)
        except (ProviderFailure, MalformedResponseError, StoreUnavailableError) as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            pipeline_logger.step_failed(spec.name, subject.key, str(e), duration_ms)
            raise

        duration_ms = (time.monotonic() - start_time) * 1000
        pipeline_logger.step_complete(spec.name, subject.key, duration_ms)
        return StepResult(
            step=spec.name,
            terminal=spec.terminal,
            result=result,
            context_sections=block.section_keys,
            quota=decision,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            duration_ms=duration_ms,
        )

    async def apply_result(
        self, subject: Subject, record_id: str, request: ApplyResultRequest
    ) -> tuple[GeneratedContent, bool]:
        """Persist a result under the caller's id (idempotent).

        Returns:
            Tuple of (record, created)

        Raises:
            UnknownStepError: If ``request.step`` is not a pipeline step
            GeneratedContentOwnershipError: If the id belongs to someone else
            StoreUnavailableError: If the write fails
        """
        self.get_step(request.step)
        if self._session_factory is None:
            raise StoreUnavailableError("apply result")

        try:
            async with session_scope(
                self._session_factory, table=GeneratedContentRepository.TABLE_NAME
            ) as session:
                record, created = await GeneratedContentRepository(session).upsert(
                    record_id=record_id,
                    user_id=subject.user_id,
                    workspace_id=subject.workspace_id,
                    step=request.step,
                    content=request.content,
                    format=request.format,
                    payload=request.payload,
                )
        except STORE_ERRORS as e:
            raise StoreUnavailableError("apply result", e) from e

        logger.info(
            "Pipeline result applied",
            extra={
                "record_id": record_id,
                "subject": subject.key,
                "step": request.step,
                "created": created,
            },
        )
        return record, created
