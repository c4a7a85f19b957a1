"""Prompt composition for the generation pipeline.

A system prompt is built from an ordered list of named sections:

1. ``rules``: fixed writing rules, grouped by category. They are opaque to
   the pipeline and can be replaced from a JSON file (``PIPELINE_RULES_FILE``)
   holding ``{"category": "text", ...}``.
2. ``context``: the brand context block.
3. ``instructions``: what this step must produce and in which JSON shape.

Every step also gets a short user message; the recycle step attaches the
source file to it when one is given.
"""

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from app.core.logging import get_logger
from app.integrations.claude import (
    ChatMessage,
    ContentBlock,
    document_block,
    image_block,
    text_block,
)
from app.schemas.pipeline import (
    AdjustInput,
    AnglesInput,
    AnswerItem,
    ChosenAngle,
    DictationInput,
    FollowUpInput,
    GenerateInput,
    QuestionsInput,
    RecycleInput,
)

logger = get_logger(__name__)

SECTION_SEPARATOR = "\n\n"

# =============================================================================
# CATEGORY RULES
# =============================================================================

DEFAULT_CATEGORY_RULES: dict[str, str] = {
    "role": (
        "You are the creative director of an ethical communication studio. "
        "You help independent creators write content that sounds like them."
    ),
    "writing": (
        "WRITING RULES:\n"
        "- Use inclusive writing.\n"
        "- Never use em dashes. Use a colon or a semicolon instead.\n"
        "- Prefer short sentences and concrete details over abstractions."
    ),
    "voice": (
        "VOICE RULES:\n"
        "- Keep the user's own words and expressions. Never paraphrase them into "
        "a more formal register.\n"
        "- Respect the tone, key expressions and things to avoid given in the "
        "brand context."
    ),
    "ethics": (
        "ETHICAL RULES:\n"
        "- No false urgency, no fear-based selling, no invented testimonials or figures."
    ),
    "output": "Answer ONLY with a JSON object, with no text before or after it.",
}


class PromptRulesError(Exception):
    """Raised when the rules file cannot be loaded."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid prompt rules file {path}: {reason}")


@lru_cache
def load_category_rules(path: str | None = None) -> tuple[tuple[str, str], ...]:
    """Load category rules, overriding defaults with the JSON file at ``path``.

    Keys present in the file replace the default text of that category; new
    keys are appended. An empty string removes a category.

    Raises:
        PromptRulesError: If the file is missing, unreadable or not an
            object of strings
    """
    rules = dict(DEFAULT_CATEGORY_RULES)
    if not path:
        return tuple(rules.items())

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise PromptRulesError(path, str(e)) from e
    except json.JSONDecodeError as e:
        raise PromptRulesError(path, f"invalid JSON at line {e.lineno}") from e

    if not isinstance(raw, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in raw.items()
    ):
        raise PromptRulesError(path, "expected an object mapping category to text")

    rules.update(raw)
    logger.info(
        "Loaded prompt rules",
        extra={"path": path, "categories": sorted(k for k, v in rules.items() if v)},
    )
    return tuple((k, v) for k, v in rules.items() if v)


def render_rules(rules: Mapping[str, str] | tuple[tuple[str, str], ...]) -> str:
    items = rules.items() if isinstance(rules, Mapping) else rules
    return SECTION_SEPARATOR.join(text.strip() for _, text in items if text.strip())


# =============================================================================
# SYSTEM PROMPT COMPOSITION
# =============================================================================


@dataclass(frozen=True)
class PromptParts:
    """Raw material for one system prompt."""

    rules: str
    context: str
    instructions: str


SectionBuilder = Callable[[PromptParts], str | None]


def rules_section(parts: PromptParts) -> str | None:
    return parts.rules


def context_section(parts: PromptParts) -> str | None:
    return parts.context


def instructions_section(parts: PromptParts) -> str | None:
    return parts.instructions


PROMPT_SECTIONS: list[tuple[str, SectionBuilder]] = [
    ("rules", rules_section),
    ("context", context_section),
    ("instructions", instructions_section),
]


def compose_system_prompt(
    parts: PromptParts,
    sections: list[tuple[str, SectionBuilder]] | None = None,
) -> str:
    """Join the non-empty sections in order."""
    rendered = []
    for _name, build in sections or PROMPT_SECTIONS:
        text = build(parts)
        if text and text.strip():
            rendered.append(text.strip())
    return SECTION_SEPARATOR.join(rendered)


# =============================================================================
# STEP PROMPTS
# =============================================================================


@dataclass
class StepPrompt:
    """Step instructions plus the user message sent with them."""

    instructions: str
    user_text: str
    attachments: list[ContentBlock] = field(default_factory=list)

    def messages(self) -> list[ChatMessage]:
        if not self.attachments:
            return [ChatMessage(role="user", content=self.user_text)]
        return [
            ChatMessage(
                role="user",
                content=[*self.attachments, text_block(self.user_text)],
            )
        ]


def _format_angle(angle: ChosenAngle) -> str:
    lines = [f"- Title: {angle.title}"]
    if angle.pitch:
        lines.append(f"- Pitch: {angle.pitch}")
    if angle.structure:
        lines.append(f"- Structure: {' -> '.join(angle.structure)}")
    if angle.tone:
        lines.append(f"- Tone: {angle.tone}")
    return "\n".join(lines)


def _format_answers(answers: list[AnswerItem]) -> str:
    return "\n".join(
        f'Q{i}: "{item.question}" -> "{item.answer}"'
        for i, item in enumerate(answers, start=1)
    )


def angles_prompt(data: AnglesInput) -> StepPrompt:
    instructions = f"""CONTENT TYPE: {data.content_type}
TOPIC: {data.topic}
NOTES: {data.context or "none"}

Propose exactly 3 DIFFERENT editorial angles. You propose directions, not written content.

For each angle:
1. title: 2 to 5 evocative words (never "Option 1")
2. pitch: 2 or 3 sentences explaining the approach and why it works
3. structure: the skeleton of the content in 4 or 5 steps
4. tone: the energy and emotional register of the angle

RULES:
- The 3 angles must be truly different, not variations of one idea
- One angle may be surprising
- Stay consistent with the user's tone and style
- Do not write anything: no sample sentences, only the direction

JSON shape:
{{"angles": [{{"title": "...", "pitch": "...", "structure": ["...", "..."], "tone": "..."}}]}}"""
    return StepPrompt(
        instructions=instructions,
        user_text=f"Propose 3 editorial angles for: {data.topic}",
    )


def questions_prompt(data: QuestionsInput) -> StepPrompt:
    instructions = f"""CHOSEN ANGLE:
- Content type: {data.content_type or "unspecified"}
{_format_angle(data.angle)}
NOTES: {data.context or "none"}

Ask exactly 3 questions that collect the user's OWN raw material: anecdotes,
thoughts and feelings that make the content impossible to write without them.

RULES:
- Open questions only (never yes/no)
- Specific to the chosen angle, never generic
- Ask for scenes, moments and concrete details
- One question may ask for a strong opinion or a conviction
- Warm and curious, like a friend who is genuinely interested
- Each question has a placeholder giving a tiny example answer

JSON shape:
{{"questions": [{{"question": "...", "placeholder": "..."}}]}}"""
    return StepPrompt(
        instructions=instructions,
        user_text=f'Ask me questions to create my content with the angle "{data.angle.title}".',
    )


def follow_up_prompt(data: FollowUpInput) -> StepPrompt:
    instructions = f"""THE USER ANSWERED:
{_format_answers(data.answers)}

Read the answers. Find the most interesting, singular or emotional detail and
ask 1 or 2 follow-up questions that dig into THAT detail. If nothing stands
out, return an empty list.

The goal: reach what nobody else could say. The anecdote, the feeling or the
conviction that makes this content unique.

JSON shape:
{{"follow_up_questions": [{{"question": "...", "placeholder": "...", "why": "..."}}]}}"""
    return StepPrompt(
        instructions=instructions,
        user_text="Ask me deeper questions based on my answers.",
    )


def generate_prompt(data: GenerateInput) -> StepPrompt:
    follow_up = ""
    if data.follow_up_answers:
        follow_up = f"\n\nFOLLOW-UP ANSWERS:\n{_format_answers(data.follow_up_answers)}"

    instructions = f"""CHOSEN ANGLE:
- Content type: {data.content_type or "unspecified"}
{_format_angle(data.angle)}

USER ANSWERS:
{_format_answers(data.answers)}{follow_up}

Write the content following these rules:
1. USE THEIR WORDS: reuse the exact expressions from their answers. If they wrote
   "I freaked out", write "I freaked out", not "I felt apprehensive"
2. FOLLOW THE STRUCTURE of the chosen angle
3. WRITE IN THEIR TONE (register, key expressions, things they avoid)
4. The hook (accroche) must stop the scroll
5. The content must be READY TO POST, not a draft
6. Length suited to the content format

JSON shape:
{{"content": "...", "accroche": "...", "format": "...", "pillar": "...", "objective": "..."}}"""
    return StepPrompt(
        instructions=instructions,
        user_text="Write my content from my answers and the chosen angle.",
    )


def adjust_prompt(data: AdjustInput) -> StepPrompt:
    instructions = f'''CURRENT CONTENT:
"""
{data.content}
"""

REQUESTED ADJUSTMENT: {data.instruction}

Rewrite the content with the requested adjustment. Keep the structure, the
anecdotes and the user's words. Change ONLY what the adjustment is about;
never rewrite from scratch.

JSON shape:
{{"content": "..."}}'''
    return StepPrompt(
        instructions=instructions,
        user_text=f"Adjust the content: {data.instruction}",
    )


RECYCLE_FORMAT_GUIDES = {
    "carrousel": "carousel of 7 to 10 slides, one idea per slide, slides separated by blank lines",
    "reel": "spoken reel script of 30 to 60 seconds with a hook in the first 3 seconds",
    "stories": "sequence of 4 to 6 stories, one line each, ending with an interaction",
    "linkedin": "LinkedIn post with short paragraphs and a question at the end",
    "newsletter": "newsletter section with a subject line and a personal opening",
}


def recycle_prompt(data: RecycleInput) -> StepPrompt:
    formats = "\n".join(
        f"- {name}: {RECYCLE_FORMAT_GUIDES[name]}" for name in data.target_formats
    )
    if data.source_file is not None:
        source = "SOURCE: see the attached file."
    else:
        source = f'SOURCE CONTENT:\n"""\n{data.source_content}\n"""'

    keys = ", ".join(f'"{name}": "..."' for name in data.target_formats)
    instructions = f"""{source}

Recycle the source into each of these formats:
{formats}

RULES:
- Each variant takes a DIFFERENT angle on the source; never transpose it word for word
- No two variants may share the same text
- Keep the user's voice and expressions
- Produce exactly the formats listed, no more

JSON shape:
{{"results": {{{keys}}}}}"""

    attachments: list[ContentBlock] = []
    if data.source_file is not None:
        if data.source_file.is_image:
            attachments.append(image_block(data.source_file.media_type, data.source_file.data))
        else:
            attachments.append(document_block(data.source_file.data, data.source_file.media_type))

    return StepPrompt(
        instructions=instructions,
        user_text=f"Recycle this content into: {', '.join(data.target_formats)}",
        attachments=attachments,
    )


def dictation_prompt(data: DictationInput) -> StepPrompt:
    instructions = f'''DICTATED TEXT:
"""
{data.raw_speech_text}
"""

TARGET FORMAT: {data.target_format}

Restructure this dictated text into the target format. Keep the speaker's own
word choices, idioms and rhythm. You may remove filler words and repetitions,
but never make the voice sound more professional than it is.

JSON shape:
{{"content": "..."}}'''
    return StepPrompt(
        instructions=instructions,
        user_text=f"Turn my dictation into a {data.target_format}.",
    )
