"""Tests for pipeline input and output schemas."""

import pytest
from pydantic import ValidationError

from app.schemas.pipeline import (
    AdjustInput,
    FollowUpOutput,
    GenerateOutput,
    RecycleInput,
    RecycleOutput,
    SourceFile,
    StepResponse,
)


class TestInputs:
    def test_camel_and_snake_keys(self) -> None:
        camel = RecycleInput.model_validate({"sourceContent": "x", "targetFormats": ["reel"]})
        snake = RecycleInput.model_validate({"source_content": "x", "target_formats": ["reel"]})

        assert camel.target_formats == snake.target_formats == ["reel"]

    def test_repeated_formats_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecycleInput.model_validate({"sourceContent": "x", "formats": ["reel", "reel"]})

    def test_both_sources_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecycleInput.model_validate(
                {
                    "sourceContent": "x",
                    "sourceFile": {"mediaType": "image/png", "data": "aGVsbG8="},
                    "formats": ["reel"],
                }
            )

    def test_adjustment_alias(self) -> None:
        data = AdjustInput.model_validate({"content": "x", "adjustment": "  warmer  "})

        assert data.instruction == "warmer"

    def test_unknown_keys_ignored(self) -> None:
        data = AdjustInput.model_validate({"content": "x", "instruction": "y", "extra": 1})

        assert not hasattr(data, "extra")


class TestSourceFile:
    def test_data_url_prefix_stripped(self) -> None:
        source = SourceFile.model_validate(
            {"mediaType": "IMAGE/PNG", "data": "data:image/png;base64,aGVsbG8="}
        )

        assert source.data == "aGVsbG8="
        assert source.media_type == "image/png"
        assert source.is_image is True

    def test_rejects_non_base64(self) -> None:
        with pytest.raises(ValidationError):
            SourceFile.model_validate({"mediaType": "image/png", "data": "not base64!"})

    def test_rejects_unsupported_media_type(self) -> None:
        with pytest.raises(ValidationError):
            SourceFile.model_validate({"mediaType": "video/mp4", "data": "aGVsbG8="})


class TestOutputs:
    def test_generate_accepts_objectif(self) -> None:
        output = GenerateOutput.model_validate({"content": "x", "objectif": "sales"})

        assert output.objective == "sales"

    def test_generate_coerces_numbers(self) -> None:
        output = GenerateOutput.model_validate({"content": "x", "pillar": 2})

        assert output.pillar == "2"

    def test_follow_up_missing_key(self) -> None:
        assert FollowUpOutput.model_validate({}).follow_up_questions == []

    def test_recycle_keys_checked_against_request(self) -> None:
        with pytest.raises(ValidationError):
            RecycleOutput.model_validate(
                {"results": {"reel": "a", "stories": "b"}},
                context={"target_formats": ["reel"]},
            )

    def test_recycle_empty_variant_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecycleOutput.model_validate({"results": {"reel": "   "}})

    def test_step_response_serializes_camel_case(self) -> None:
        response = StepResponse(
            step="generate", terminal=True, result={}, context_sections=["persona"]
        )

        assert response.model_dump(by_alias=True)["contextSections"] == ["persona"]
