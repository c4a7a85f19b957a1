"""Pydantic schemas for the generation pipeline.

Schemas for step inputs (validated before any quota is consumed) and step
outputs (validated after the model answers):
- AnglesInput / AnglesOutput: three editorial directions
- QuestionsInput / QuestionsOutput: three open questions for one angle
- FollowUpInput / FollowUpOutput: up to two deeper questions
- GenerateInput / GenerateOutput: the finished draft
- AdjustInput / AdjustOutput: one targeted rewrite of a draft
- RecycleInput / RecycleOutput: one variant per target format
- DictationInput / DictationOutput: dictated text restructured
- ApplyResultRequest / GeneratedContentResponse: persisted results

Inputs accept camelCase or snake_case keys. Outputs serialize to camelCase.
"""

import base64
import binascii
from datetime import datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

SHORT_TEXT = 500
LONG_TEXT = 5000
SOURCE_TEXT = 10000
MAX_LIST_ITEMS = 10
MAX_TARGET_FORMATS = 5
# ~15 MB of binary once decoded
MAX_ATTACHMENT_CHARS = 20_000_000

RecycleFormat = Literal["carrousel", "reel", "stories", "linkedin", "newsletter"]

ATTACHMENT_MEDIA_TYPES = (
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "application/pdf",
)


class CamelModel(BaseModel):
    """Base model accepting camelCase or snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# =============================================================================
# STEP INPUTS
# =============================================================================


class StepInput(CamelModel):
    """Fields shared by every step input."""

    model_config = ConfigDict(extra="ignore")

    preset: str | None = Field(
        None,
        max_length=50,
        description="Context preset name (defaults to the step's preset)",
        examples=["content", "linkedin"],
    )
    inclusion: dict[str, bool] | None = Field(
        None,
        description="Partial override of the preset's inclusion toggles",
        examples=[{"include_offers": False}],
    )


class ChosenAngle(CamelModel):
    """An angle picked by the user, resent on later steps."""

    title: str = Field(..., min_length=1, max_length=SHORT_TEXT)
    pitch: str | None = Field(None, max_length=LONG_TEXT)
    structure: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    tone: str | None = Field(None, max_length=SHORT_TEXT)

    @field_validator("structure")
    @classmethod
    def validate_structure(cls, v: list[str]) -> list[str]:
        for item in v:
            if len(item) > SHORT_TEXT:
                raise ValueError(f"Structure steps must be at most {SHORT_TEXT} characters")
        return [item.strip() for item in v if item.strip()]


class AnswerItem(CamelModel):
    """One question and the user's answer to it."""

    question: str = Field(..., min_length=1, max_length=SHORT_TEXT)
    answer: str = Field(..., max_length=LONG_TEXT)


class AnglesInput(StepInput):
    """Input for the angles step."""

    topic: str = Field(
        ...,
        min_length=1,
        max_length=SHORT_TEXT,
        description="What the content is about",
        examples=["Why I stopped posting every day"],
    )
    content_type: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Kind of content to produce",
        examples=["carrousel", "reel", "post"],
    )
    context: str | None = Field(
        None,
        max_length=LONG_TEXT,
        description="Free notes from the user about this piece",
    )


class QuestionsInput(StepInput):
    """Input for the questions step."""

    angle: ChosenAngle
    content_type: str | None = Field(None, max_length=100)
    context: str | None = Field(None, max_length=LONG_TEXT)


class FollowUpInput(StepInput):
    """Input for the follow-up step."""

    answers: list[AnswerItem] = Field(..., min_length=1, max_length=MAX_LIST_ITEMS)


class GenerateInput(StepInput):
    """Input for the generate step."""

    angle: ChosenAngle
    answers: list[AnswerItem] = Field(..., min_length=1, max_length=MAX_LIST_ITEMS)
    follow_up_answers: list[AnswerItem] = Field(
        default_factory=list, max_length=MAX_LIST_ITEMS
    )
    content_type: str | None = Field(None, max_length=100)
    context: str | None = Field(None, max_length=LONG_TEXT)


class AdjustInput(StepInput):
    """Input for the adjust step.

    ``draft`` is the full prior generate output; when present the step
    returns it with only ``content`` replaced.
    """

    content: str = Field(..., min_length=1, max_length=SOURCE_TEXT)
    instruction: str = Field(
        ...,
        min_length=1,
        max_length=SHORT_TEXT,
        validation_alias=AliasChoices("instruction", "adjustment"),
    )
    draft: dict[str, Any] | None = None


class SourceFile(CamelModel):
    """Base64 attachment used as a recycle source."""

    media_type: str = Field(..., description="MIME type", examples=["image/png"])
    data: str = Field(..., min_length=1, max_length=MAX_ATTACHMENT_CHARS)
    filename: str | None = Field(None, max_length=255)

    @field_validator("media_type")
    @classmethod
    def validate_media_type(cls, v: str) -> str:
        v = v.lower()
        if v not in ATTACHMENT_MEDIA_TYPES:
            raise ValueError(
                f"Unsupported media type. Must be one of: {', '.join(ATTACHMENT_MEDIA_TYPES)}"
            )
        return v

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: str) -> str:
        if v.startswith("data:") and "," in v:
            v = v.split(",", 1)[1]
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Attachment data must be base64 encoded") from e
        return v

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith("image/")


class RecycleInput(StepInput):
    """Input for the recycle step. Exactly one source must be given."""

    source_content: str | None = Field(None, max_length=SOURCE_TEXT)
    source_file: SourceFile | None = None
    target_formats: list[RecycleFormat] = Field(
        ...,
        min_length=1,
        max_length=MAX_TARGET_FORMATS,
        validation_alias=AliasChoices("targetFormats", "target_formats", "formats"),
    )

    @field_validator("target_formats")
    @classmethod
    def validate_target_formats(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("Target formats must not repeat")
        return v

    @model_validator(mode="after")
    def validate_single_source(self) -> "RecycleInput":
        has_text = bool(self.source_content)
        if has_text == (self.source_file is not None):
            raise ValueError("Provide exactly one of sourceContent or sourceFile")
        return self


class DictationInput(StepInput):
    """Input for the dictation-transcribe step."""

    raw_speech_text: str = Field(..., min_length=1, max_length=SOURCE_TEXT)
    target_format: str = Field(
        ...,
        min_length=1,
        max_length=100,
        examples=["post", "carrousel", "newsletter"],
    )


# =============================================================================
# STEP OUTPUTS
# =============================================================================


class StepOutput(CamelModel):
    """Base for model answers. Unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class AngleItem(StepOutput):
    title: str = Field(..., min_length=1)
    pitch: str = ""
    structure: list[str] = Field(default_factory=list)
    tone: str = ""


class AnglesOutput(StepOutput):
    """Exactly three angles with distinct titles."""

    angles: list[AngleItem]

    @field_validator("angles")
    @classmethod
    def validate_angles(cls, v: list[AngleItem]) -> list[AngleItem]:
        if len(v) != 3:
            raise ValueError(f"Expected exactly 3 angles, got {len(v)}")
        titles = {angle.title.strip().casefold() for angle in v}
        if len(titles) != len(v):
            raise ValueError("Angle titles must be distinct")
        return v


class QuestionItem(StepOutput):
    question: str = Field(..., min_length=1)
    placeholder: str = ""


class QuestionsOutput(StepOutput):
    """Exactly three open questions."""

    questions: list[QuestionItem]

    @field_validator("questions")
    @classmethod
    def validate_questions(cls, v: list[QuestionItem]) -> list[QuestionItem]:
        if len(v) != 3:
            raise ValueError(f"Expected exactly 3 questions, got {len(v)}")
        return v


class FollowUpQuestion(StepOutput):
    question: str = Field(..., min_length=1)
    placeholder: str = ""
    why: str = ""


MAX_FOLLOW_UP_QUESTIONS = 2


class FollowUpOutput(StepOutput):
    """Zero to two follow-up questions; extras are dropped."""

    follow_up_questions: list[FollowUpQuestion] = Field(default_factory=list)

    @field_validator("follow_up_questions", mode="before")
    @classmethod
    def truncate(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return v[:MAX_FOLLOW_UP_QUESTIONS]
        return v


class GenerateOutput(StepOutput):
    """A finished draft."""

    content: str = Field(..., min_length=1)
    accroche: str = ""
    format: str = ""
    pillar: str = ""
    objective: str = Field(
        "",
        validation_alias=AliasChoices("objective", "objectif"),
    )


class AdjustOutput(StepOutput):
    content: str = Field(..., min_length=1)


class RecycleOutput(StepOutput):
    """One variant per requested format.

    Validated with ``context={"target_formats": [...]}`` so the keys can be
    checked against the request.
    """

    results: dict[str, str]

    @model_validator(mode="after")
    def validate_results(self, info: ValidationInfo) -> "RecycleOutput":
        requested = (info.context or {}).get("target_formats")
        if requested is not None and set(self.results) != set(requested):
            missing = sorted(set(requested) - set(self.results))
            extra = sorted(set(self.results) - set(requested))
            raise ValueError(
                f"Result formats do not match the request (missing={missing}, unexpected={extra})"
            )
        normalized = [" ".join(value.split()).casefold() for value in self.results.values()]
        if any(not value for value in normalized):
            raise ValueError("Result variants must not be empty")
        if len(set(normalized)) != len(normalized):
            raise ValueError("Result variants must be distinct")
        return self


class DictationOutput(StepOutput):
    content: str = Field(..., min_length=1)


# =============================================================================
# PERSISTED RESULTS
# =============================================================================


class ApplyResultRequest(CamelModel):
    """Body of the idempotent "apply this result" write."""

    step: str = Field(..., min_length=1, max_length=50)
    content: str = Field(..., min_length=1, max_length=50_000)
    format: str | None = Field(None, max_length=50)
    payload: dict[str, Any] = Field(default_factory=dict)


class GeneratedContentResponse(CamelModel):
    """A persisted pipeline result."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    step: str
    format: str | None = None
    content: str
    payload: dict[str, Any] = Field(default_factory=dict)
    workspace_id: str | None = None
    created: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StepResponse(CamelModel):
    """Envelope returned by POST /pipeline/{step}."""

    step: str
    terminal: bool
    result: dict[str, Any]
    context_sections: list[str] = Field(default_factory=list)
    quota_remaining: int | None = None
    quota_remaining_total: int | None = None
