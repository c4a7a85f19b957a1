"""ContextAggregator: renders a subject's brand profile into prompt context.

Reads every brand record category for a subject concurrently, projects
each payload onto its typed schema, and renders the non-empty sections the
inclusion policy asks for into one bounded text block.

Section order is fixed:
profile, story, persona, tone & style, convictions, identity, personal
voice, value proposition, strategy, editorial line, offers, audit.

Limits apply at three levels: each raw field, each rendered section, and
the whole block. The block never exceeds ``max_total_chars``.

ERROR LOGGING REQUIREMENTS:
- Log record payloads that fail projection at WARNING with category
- Log the rendered section keys and length at DEBUG
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import ValidationError

from app.core.config import get_settings
from app.core.logging import get_logger, pipeline_logger
from app.models.brand_record import RecordCategory
from app.schemas.context import (
    INCLUSION_PRESETS,
    AuditRecord,
    BrandVoiceRecord,
    ContextSources,
    EditorialLineRecord,
    InclusionPolicy,
    OfferRecord,
    PersonaRecord,
    Projection,
    PropositionRecord,
    StoryRecord,
    StrategyRecord,
    UserProfile,
    VoiceProfileRecord,
)
from app.schemas.subject import Subject
from app.services.record_store import RecordStore

logger = get_logger(__name__)

DEFAULT_PRESET = "content"

CONTEXT_HEADER = "BRAND CONTEXT:"
EMPTY_CONTEXT_PLACEHOLDER = (
    "NOTE: The profile is mostly empty. Results will be more relevant once "
    "branding and offers are filled in.\n"
)
TRUNCATION_MARKER = " [...]"
# A section squeezed below this is dropped rather than cut to a stub
MIN_PARTIAL_SECTION_CHARS = 80

P = TypeVar("P", bound=Projection)


class ContextAggregatorError(Exception):
    """Base exception for context aggregation errors."""

    pass


class UnknownPresetError(ContextAggregatorError):
    """Raised when a preset name is not defined."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown context preset: {name}")


class InvalidPolicyError(ContextAggregatorError):
    """Raised when a policy override names unknown toggles."""

    pass


@dataclass(frozen=True)
class ContextLimits:
    max_field_chars: int = 1500
    max_section_chars: int = 4000
    max_total_chars: int = 12000

    @classmethod
    def from_settings(cls) -> "ContextLimits":
        settings = get_settings()
        return cls(
            max_field_chars=settings.context_max_field_chars,
            max_section_chars=settings.context_max_section_chars,
            max_total_chars=settings.context_max_total_chars,
        )


@dataclass
class ContextSection:
    """One labeled section of the rendered block."""

    key: str
    label: str
    body: str

    def render(self) -> str:
        return f"{self.label}:\n{self.body}"


@dataclass
class ContextBlock:
    """Rendered context plus the projections it came from."""

    text: str
    sections: list[ContextSection] = field(default_factory=list)
    sources: ContextSources = field(default_factory=ContextSources)
    policy: InclusionPolicy = field(default_factory=InclusionPolicy)
    is_placeholder: bool = False
    truncated: bool = False

    @property
    def section_keys(self) -> list[str]:
        return [section.key for section in self.sections]


def clip(text: str, limit: int) -> str:
    """Cut ``text`` to at most ``limit`` characters, marking the cut."""
    if len(text) <= limit:
        return text
    if limit <= len(TRUNCATION_MARKER):
        return text[:limit]
    return text[: limit - len(TRUNCATION_MARKER)].rstrip() + TRUNCATION_MARKER


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(item).strip() for item in value if str(item).strip())
    return str(value).strip()


class _Lines:
    """Collects ``- Label : value`` lines, skipping empty values."""

    def __init__(self, limits: ContextLimits) -> None:
        self._limits = limits
        self.lines: list[str] = []

    def add(self, label: str, value: Any, prefix: str = "- ") -> None:
        text = _text(value)
        if text:
            self.lines.append(f"{prefix}{label} : {clip(text, self._limits.max_field_chars)}")

    def raw(self, line: str) -> None:
        self.lines.append(line)

    def add_fields(
        self, model: Projection, labels: list[tuple[str, str]], prefix: str = "- "
    ) -> None:
        for field_name, label in labels:
            self.add(label, getattr(model, field_name), prefix=prefix)

    def body(self) -> str:
        return "\n".join(self.lines)


# =============================================================================
# FIELD LABELS
# =============================================================================

PROFILE_LABELS = [
    ("first_name", "First name"),
    ("activity", "Activity"),
    ("activity_type", "Type"),
    ("target", "Target audience"),
    ("main_problem", "Problem solved"),
    ("mission", "Mission"),
    ("main_offer", "Main offer"),
    ("themes", "Themes"),
    ("tones", "Desired tone"),
    ("limiting_beliefs", "Audience limiting beliefs"),
    ("client_verbatims", "Client verbatims"),
    ("key_expressions", "Key expressions"),
    ("things_to_avoid", "Things to avoid"),
    ("communication_style", "Communication style"),
]

PROFILE_ACCOUNT_LABELS = [
    ("instagram_followers", "Followers"),
    ("posting_frequency", "Posting frequency"),
    ("current_bio", "Current bio"),
    ("differentiation", "Differentiation"),
]

PERSONA_LABELS = [
    ("first_name", "Persona name"),
    ("frustrations", "Frustrations"),
    ("dream_transformation", "Dream transformation"),
    ("objections", "Objections"),
    ("cliches", "Cliches"),
]

TONE_LABELS = [
    ("tone_humor", "Humor"),
    ("tone_engagement", "Engagement"),
    ("key_expressions", "Key expressions"),
    ("things_to_avoid", "Things to avoid"),
    ("target_verbatims", "Audience verbatims"),
    ("channels", "Channels"),
]

CONVICTION_LABELS = [
    ("cause", "Cause"),
    ("fights", "Fights"),
    ("alternative", "Proposed alternative"),
    ("refusals", "Refusals"),
]

IDENTITY_LABELS = [
    ("mission", "Mission"),
    ("offer", "Offer"),
]

VOICE_PROFILE_LABELS = [
    ("voice_summary", "Voice summary"),
    ("signature_expressions", "Signature expressions"),
    ("banned_expressions", "Never use"),
    ("tone_patterns", "Tone patterns"),
    ("structure_patterns", "Structure patterns"),
    ("formatting_habits", "Formatting habits"),
]

EDITORIAL_TAIL_LABELS = [
    ("preferred_formats", "Preferred formats"),
    ("do_more", "Do more of"),
    ("stop_doing", "Stop doing"),
    ("notes", "Notes"),
]

OFFER_LABELS = [
    ("promise", "Promise"),
    ("sales_line", "Sales line"),
    ("ideal_target", "For whom"),
]

OFFER_TYPE_LABELS = {"paid": "Paid", "free": "Free"}

AUDIT_SCORES = [
    ("global_score", "Global score", 100),
    ("bio_score", "Bio score", 20),
    ("feed_score", "Feed score", 20),
    ("editorial_score", "Editorial score", 20),
    ("stories_score", "Stories score", 20),
    ("pinned_score", "Pinned posts score", 20),
]


# =============================================================================
# SECTION BUILDERS
# =============================================================================

SectionBuilder = Callable[
    [ContextSources, InclusionPolicy, ContextLimits], ContextSection | None
]


def _section(key: str, label: str, lines: _Lines) -> ContextSection | None:
    body = lines.body()
    return ContextSection(key, label, body) if body else None


def build_profile_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_profile or src.profile is None:
        return None
    p = src.profile
    lines = _Lines(limits)
    lines.add_fields(p, PROFILE_LABELS)
    if p.instagram_username:
        lines.add("Instagram", "@" + p.instagram_username.lstrip("@"))
    lines.add_fields(p, PROFILE_ACCOUNT_LABELS)
    return _section("profile", "USER PROFILE", lines)


def build_history_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_history or src.story is None:
        return None
    story = _text(src.story.polished_story)
    if not story:
        return None
    return ContextSection("history", "STORY", clip(story, limits.max_field_chars))


def build_persona_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_persona or src.persona is None:
        return None
    lines = _Lines(limits)
    lines.add_fields(src.persona, PERSONA_LABELS)
    return _section("persona", "IDEAL CLIENT", lines)


def build_tone_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if src.brand_voice is None:
        return None
    v = src.brand_voice
    lines = _Lines(limits)
    lines.add("Voice", v.voice_description)
    register = " - ".join(
        part for part in (_text(v.tone_register), _text(v.tone_level), _text(v.tone_style)) if part
    )
    lines.add("Register", register)
    lines.add_fields(v, TONE_LABELS)
    return _section("tone", "TONE & STYLE", lines)


def build_convictions_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if src.brand_voice is None:
        return None
    lines = _Lines(limits)
    lines.add_fields(src.brand_voice, CONVICTION_LABELS)
    return _section("convictions", "CONVICTIONS & LIMITS", lines)


def build_identity_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if src.brand_voice is None:
        return None
    lines = _Lines(limits)
    lines.add_fields(src.brand_voice, IDENTITY_LABELS)
    return _section("identity", "IDENTITY", lines)


def build_voice_profile_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_voice_profile or src.voice_profile is None:
        return None
    lines = _Lines(limits)
    lines.add_fields(src.voice_profile, VOICE_PROFILE_LABELS)
    return _section("voice_profile", "PERSONAL VOICE", lines)


def build_proposition_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if src.proposition is None:
        return None
    lines = _Lines(limits)
    best = src.proposition.best_version
    if best:
        lines.raw(clip(best.strip(), limits.max_field_chars))
    lines.add("One-liner", src.proposition.one_liner)
    return _section("proposition", "VALUE PROPOSITION", lines)


def build_strategy_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if src.strategy is None:
        return None
    s = src.strategy
    lines = _Lines(limits)
    lines.add("Major pillar", s.major_pillar)
    lines.add("Minor pillars", s.minor_pillars)
    lines.add("Creative concept", s.creative_concept)
    lines.add("Facets", s.facets)
    return _section("strategy", "CONTENT STRATEGY", lines)


def build_editorial_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_editorial or src.editorial_line is None:
        return None
    e = src.editorial_line
    lines = _Lines(limits)
    lines.add("Main objective", e.main_objective)
    lines.add("Objective details", e.objective_details)
    if _text(e.posts_per_week):
        rhythm = f"{_text(e.posts_per_week)} posts/week"
        if _text(e.stories_frequency):
            rhythm += f" + stories {_text(e.stories_frequency)}"
        lines.add("Rhythm", rhythm)
    pillars = [p for p in e.pillars if not p.is_empty()]
    if pillars:
        lines.raw("- Pillars :")
        for pillar in pillars:
            entry = _text(pillar.name) or "?"
            if _text(pillar.percentage):
                entry += f" : {_text(pillar.percentage)}%"
            if _text(pillar.description):
                entry += f" ({clip(_text(pillar.description), limits.max_field_chars)})"
            lines.raw(f"  * {entry}")
    lines.add_fields(e, EDITORIAL_TAIL_LABELS)
    return _section("editorial", "EDITORIAL LINE", lines)


def _render_offer(offer: OfferRecord, details: bool, lines: _Lines) -> None:
    type_label = OFFER_TYPE_LABELS.get(_text(offer.offer_type), "Service")
    price = _text(offer.price_text) or "Free"
    lines.raw(f"* {_text(offer.name) or 'Unnamed offer'} ({type_label}) : {price}")
    lines.add_fields(offer, OFFER_LABELS, prefix="  ")
    lines.add("Problem solved", offer.deep_problem or offer.surface_problem, prefix="  ")
    lines.add("Link", offer.sales_page_url, prefix="  ")
    lines.add("Booking", offer.booking_url, prefix="  ")

    if not details:
        return

    testimonials = [t for t in offer.testimonials if not t.is_empty()]
    if testimonials:
        lines.raw("  Testimonials :")
        for t in testimonials:
            lines.raw(
                f"    - {_text(t.name) or '?'} ({_text(t.sector) or '?'}) : "
                f"\"{_text(t.quote)}\" -> {_text(t.result)}"
            )
    objections = [o for o in offer.objections if not o.is_empty()]
    if objections:
        lines.raw("  Objections & answers :")
        for o in objections:
            lines.raw(f"    - \"{_text(o.objection)}\" -> {_text(o.response)}")
    benefits = [b for b in offer.features_to_benefits if not b.is_empty()]
    if benefits:
        lines.raw("  Benefits :")
        for b in benefits:
            lines.raw(f"    - {_text(b.feature)} -> {_text(b.benefit)}")
    lines.add("Before", offer.emotional_before, prefix="  ")
    lines.add("After", offer.emotional_after, prefix="  ")
    lines.add("Feelings after", offer.feelings_after, prefix="  ")


def build_offers_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_offers or not src.offers:
        return None
    lines = _Lines(limits)
    for offer in src.offers:
        _render_offer(offer, policy.include_offer_details, lines)
    return _section("offers", "OFFERS", lines)


def build_audit_section(
    src: ContextSources, policy: InclusionPolicy, limits: ContextLimits
) -> ContextSection | None:
    if not policy.include_audit or src.audit is None:
        return None
    a = src.audit
    lines = _Lines(limits)
    for field_name, label, scale in AUDIT_SCORES:
        score = _text(getattr(a, field_name))
        if score:
            lines.add(label, f"{score}/{scale}")
    lines.add("Winning combo", a.winning_combo)
    lines.add("Summary", a.summary)
    return _section("audit", "LATEST AUDIT", lines)


SECTION_BUILDERS: list[SectionBuilder] = [
    build_profile_section,
    build_history_section,
    build_persona_section,
    build_tone_section,
    build_convictions_section,
    build_identity_section,
    build_voice_profile_section,
    build_proposition_section,
    build_strategy_section,
    build_editorial_section,
    build_offers_section,
    build_audit_section,
]


def render_context(
    sources: ContextSources,
    policy: InclusionPolicy,
    limits: ContextLimits,
) -> ContextBlock:
    """Render projections into a bounded block (pure function)."""
    candidates: list[ContextSection] = []
    truncated = False
    for builder in SECTION_BUILDERS:
        section = builder(sources, policy, limits)
        if section is None:
            continue
        rendered = section.render()
        if len(rendered) > limits.max_section_chars:
            room = max(limits.max_section_chars - len(section.label) - 2, 0)
            section.body = clip(section.body, room)
            truncated = True
        candidates.append(section)

    if not candidates:
        return ContextBlock(
            text=EMPTY_CONTEXT_PLACEHOLDER,
            sources=sources,
            policy=policy,
            is_placeholder=True,
        )

    header = f"{CONTEXT_HEADER}\n\n"
    remaining = limits.max_total_chars - len(header) - 1  # trailing newline
    kept: list[ContextSection] = []
    for section in candidates:
        separator = 2 if kept else 0
        rendered = section.render()
        if separator + len(rendered) <= remaining:
            kept.append(section)
            remaining -= separator + len(rendered)
            continue
        truncated = True
        room = remaining - separator - len(section.label) - 2
        if room >= MIN_PARTIAL_SECTION_CHARS:
            section.body = clip(section.body, room)
            kept.append(section)
        break

    if not kept:
        # Cap smaller than the first section header; fall back to a hard cut
        text = clip(header + candidates[0].render(), limits.max_total_chars - 1) + "\n"
        return ContextBlock(
            text=text,
            sections=candidates[:1],
            sources=sources,
            policy=policy,
            truncated=True,
        )

    text = header + "\n\n".join(section.render() for section in kept) + "\n"
    return ContextBlock(
        text=text,
        sections=kept,
        sources=sources,
        policy=policy,
        truncated=truncated,
    )


# =============================================================================
# AGGREGATOR
# =============================================================================


def resolve_policy(
    policy: InclusionPolicy | str | None = None,
    overrides: InclusionPolicy | Mapping[str, bool] | None = None,
) -> InclusionPolicy:
    """Turn a policy, preset name or preset+override into a policy.

    Raises:
        UnknownPresetError: If a preset name is not defined
        InvalidPolicyError: If overrides name unknown toggles
    """
    if policy is None:
        policy = DEFAULT_PRESET
    if isinstance(policy, str):
        base = INCLUSION_PRESETS.get(policy)
        if base is None:
            raise UnknownPresetError(policy)
    else:
        base = policy
    try:
        return base.merged(overrides)
    except ValueError as e:
        raise InvalidPolicyError(str(e)) from e


class ContextAggregator:
    """Builds context blocks from a record store."""

    def __init__(self, store: RecordStore, limits: ContextLimits | None = None) -> None:
        self._store = store
        self._limits = limits or ContextLimits.from_settings()

    @property
    def limits(self) -> ContextLimits:
        return self._limits

    def _project(
        self, model: type[P], category: RecordCategory, data: dict[str, Any] | None
    ) -> P | None:
        if not data:
            return None
        try:
            projection = model.model_validate(data)
        except ValidationError as e:
            logger.warning(
                "Brand record payload does not match its schema, skipping",
                extra={
                    "category": category.value,
                    "error_count": e.error_count(),
                    "fields": sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]}),
                },
            )
            return None
        return None if projection.is_empty() else projection

    async def load_sources(self, subject: Subject) -> ContextSources:
        """Read every category for ``subject`` concurrently.

        Raises:
            StoreUnavailableError: If the store cannot be read
        """
        store = self._store
        C = RecordCategory

        (
            profile,
            story,
            persona,
            brand_voice,
            proposition,
            strategy,
            editorial,
            offers,
            audit,
            voice_profile,
        ) = await asyncio.gather(
            store.get_latest(C.PROFILE, subject.owner_for(C.PROFILE)),
            store.get_latest(C.STORY, subject.owner_for(C.STORY), prefer_primary=True),
            store.get_latest(C.PERSONA, subject.owner_for(C.PERSONA)),
            store.get_latest(C.BRAND_VOICE, subject.owner_for(C.BRAND_VOICE)),
            store.get_latest(C.PROPOSITION, subject.owner_for(C.PROPOSITION)),
            store.get_latest(C.STRATEGY, subject.owner_for(C.STRATEGY)),
            store.get_latest(C.EDITORIAL_LINE, subject.owner_for(C.EDITORIAL_LINE)),
            store.list_all(C.OFFER, subject.owner_for(C.OFFER)),
            store.get_latest(C.AUDIT, subject.owner_for(C.AUDIT)),
            store.get_latest(C.VOICE_PROFILE, subject.owner_for(C.VOICE_PROFILE)),
        )

        offer_projections = [
            projection
            for projection in (self._project(OfferRecord, C.OFFER, data) for data in offers)
            if projection is not None
        ]

        return ContextSources(
            profile=self._project(UserProfile, C.PROFILE, profile),
            story=self._project(StoryRecord, C.STORY, story),
            persona=self._project(PersonaRecord, C.PERSONA, persona),
            brand_voice=self._project(BrandVoiceRecord, C.BRAND_VOICE, brand_voice),
            proposition=self._project(PropositionRecord, C.PROPOSITION, proposition),
            strategy=self._project(StrategyRecord, C.STRATEGY, strategy),
            editorial_line=self._project(EditorialLineRecord, C.EDITORIAL_LINE, editorial),
            offers=offer_projections,
            audit=self._project(AuditRecord, C.AUDIT, audit),
            voice_profile=self._project(VoiceProfileRecord, C.VOICE_PROFILE, voice_profile),
        )

    async def build_context(
        self,
        subject: Subject,
        policy: InclusionPolicy | str | None = None,
        overrides: InclusionPolicy | Mapping[str, bool] | None = None,
    ) -> ContextBlock:
        """Build the context block for ``subject``.

        Args:
            subject: Whose records to read
            policy: Policy object or preset name (default: content preset)
            overrides: Partial toggles applied on top of ``policy``

        Returns:
            ContextBlock; the placeholder block when nothing renders

        Raises:
            UnknownPresetError: If a preset name is not defined
            InvalidPolicyError: If overrides name unknown toggles
            StoreUnavailableError: If the store cannot be read
        """
        resolved = resolve_policy(policy, overrides)
        start_time = time.monotonic()

        sources = await self.load_sources(subject)
        block = render_context(sources, resolved, self._limits)

        pipeline_logger.context_built(
            subject.key, block.section_keys, len(block.text), block.truncated
        )
        duration_ms = (time.monotonic() - start_time) * 1000
        if duration_ms > 1000:
            logger.warning(
                "Slow context build",
                extra={"subject": subject.key, "duration_ms": round(duration_ms, 2)},
            )
        return block
