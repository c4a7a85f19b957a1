"""Pydantic schemas for brand context assembly.

Defines:
- Typed projections of each stored record category (all fields optional)
- The inclusion policy deciding which sections reach a prompt
- Named policy presets per generator

Stored payloads are loosely shaped JSON; projections ignore unknown keys,
accept numbers where text is expected and accept a bare string where a
list is expected.
"""

from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _as_str_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return value


StrList = Annotated[list[str], BeforeValidator(_as_str_list)]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list):
        return all(_is_empty(item) for item in value)
    if isinstance(value, BaseModel):
        return all(_is_empty(v) for v in value.__dict__.values())
    if isinstance(value, dict):
        return all(_is_empty(v) for v in value.values())
    return False


class Projection(BaseModel):
    """Base class for record projections."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    def is_empty(self) -> bool:
        """True when every field is missing, blank or an empty list."""
        return _is_empty(self)


# =============================================================================
# RECORD PROJECTIONS
# =============================================================================


class UserProfile(Projection):
    """Personal profile of the account holder (identity-only)."""

    first_name: str | None = None
    activity: str | None = None
    activity_type: str | None = None
    target: str | None = None
    main_problem: str | None = None
    mission: str | None = None
    main_offer: str | None = None
    themes: StrList = Field(default_factory=list)
    tones: StrList = Field(default_factory=list)
    limiting_beliefs: str | None = None
    client_verbatims: str | None = None
    key_expressions: str | None = None
    things_to_avoid: str | None = None
    communication_style: StrList = Field(default_factory=list)
    instagram_username: str | None = None
    instagram_followers: str | None = None
    posting_frequency: str | None = None
    current_bio: str | None = None
    differentiation: str | None = None


class StoryRecord(Projection):
    """Founder story."""

    polished_story: str | None = None


class PersonaRecord(Projection):
    """Ideal client portrait."""

    first_name: str | None = None
    frustrations: str | None = None
    dream_transformation: str | None = None
    objections: str | None = None
    cliches: str | None = None


class BrandVoiceRecord(Projection):
    """Tone, convictions and identity of the brand."""

    voice_description: str | None = None
    tone_register: str | None = None
    tone_level: str | None = None
    tone_style: str | None = None
    tone_humor: str | None = None
    tone_engagement: str | None = None
    key_expressions: str | None = None
    things_to_avoid: str | None = None
    target_verbatims: str | None = None
    channels: StrList = Field(default_factory=list)
    cause: str | None = None
    fights: str | None = None
    alternative: str | None = None
    refusals: str | None = None
    mission: str | None = None
    offer: str | None = None


class PropositionRecord(Projection):
    """Value proposition in its successive versions."""

    final_version: str | None = None
    complete_version: str | None = None
    bio_version: str | None = None
    one_liner: str | None = None

    @property
    def best_version(self) -> str | None:
        for value in (self.final_version, self.complete_version, self.bio_version):
            if value and value.strip():
                return value
        return None


class StrategyRecord(Projection):
    """Content strategy pillars and creative concept."""

    major_pillar: str | None = None
    minor_pillars: StrList = Field(default_factory=list)
    creative_concept: str | None = None
    facets: StrList = Field(default_factory=list)


class EditorialPillar(Projection):
    name: str | None = None
    percentage: str | None = None
    description: str | None = None


class EditorialLineRecord(Projection):
    """Editorial calendar settings."""

    main_objective: str | None = None
    objective_details: str | None = None
    posts_per_week: str | None = None
    stories_frequency: str | None = None
    pillars: list[EditorialPillar] = Field(default_factory=list)
    preferred_formats: StrList = Field(default_factory=list)
    do_more: str | None = None
    stop_doing: str | None = None
    notes: str | None = None


class Testimonial(Projection):
    name: str | None = None
    sector: str | None = None
    quote: str | None = None
    result: str | None = None


class ObjectionAnswer(Projection):
    objection: str | None = None
    response: str | None = None


class FeatureBenefit(Projection):
    feature: str | None = None
    benefit: str | None = None


class OfferRecord(Projection):
    """One item of the offer catalog."""

    name: str | None = None
    offer_type: str | None = None
    price_text: str | None = None
    promise: str | None = None
    sales_line: str | None = None
    ideal_target: str | None = None
    deep_problem: str | None = None
    surface_problem: str | None = None
    sales_page_url: str | None = None
    booking_url: str | None = None
    testimonials: list[Testimonial] = Field(default_factory=list)
    objections: list[ObjectionAnswer] = Field(default_factory=list)
    features_to_benefits: list[FeatureBenefit] = Field(default_factory=list)
    emotional_before: str | None = None
    emotional_after: str | None = None
    feelings_after: StrList = Field(default_factory=list)


class AuditRecord(Projection):
    """Scores and summary of the latest account audit."""

    global_score: str | None = None
    bio_score: str | None = None
    feed_score: str | None = None
    editorial_score: str | None = None
    stories_score: str | None = None
    pinned_score: str | None = None
    winning_combo: str | None = None
    summary: str | None = None


class VoiceProfileRecord(Projection):
    """Personal writing voice learned from the user's own texts (identity-only)."""

    voice_summary: str | None = None
    signature_expressions: StrList = Field(default_factory=list)
    banned_expressions: StrList = Field(default_factory=list)
    tone_patterns: StrList = Field(default_factory=list)
    structure_patterns: StrList = Field(default_factory=list)
    formatting_habits: StrList = Field(default_factory=list)


class ContextSources(BaseModel):
    """Typed projections a context block was rendered from."""

    profile: UserProfile | None = None
    story: StoryRecord | None = None
    persona: PersonaRecord | None = None
    brand_voice: BrandVoiceRecord | None = None
    proposition: PropositionRecord | None = None
    strategy: StrategyRecord | None = None
    editorial_line: EditorialLineRecord | None = None
    offers: list[OfferRecord] = Field(default_factory=list)
    audit: AuditRecord | None = None
    voice_profile: VoiceProfileRecord | None = None


# =============================================================================
# INCLUSION POLICY
# =============================================================================


class InclusionPolicy(BaseModel):
    """Independent toggles selecting optional context sections.

    Brand voice, value proposition and strategy have no toggle: they are
    rendered whenever they hold data.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    include_profile: bool = False
    include_history: bool = False
    include_persona: bool = False
    include_offers: bool = False
    include_offer_details: bool = False
    include_editorial: bool = False
    include_audit: bool = False
    include_voice_profile: bool = False

    def merged(
        self, overrides: "InclusionPolicy | Mapping[str, bool] | None"
    ) -> "InclusionPolicy":
        """Return a copy with only the toggles named in ``overrides`` changed.

        Raises:
            ValueError: If ``overrides`` names an unknown toggle
        """
        if overrides is None:
            return self
        if isinstance(overrides, InclusionPolicy):
            update = overrides.model_dump(exclude_unset=True)
        else:
            update = dict(overrides)
        unknown = set(update) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown inclusion toggle(s): {', '.join(sorted(unknown))}")
        return self.model_copy(update={k: bool(v) for k, v in update.items()})


def _preset(**toggles: bool) -> InclusionPolicy:
    return InclusionPolicy(include_voice_profile=True, **toggles)


INCLUSION_PRESETS: dict[str, InclusionPolicy] = {
    "bio": _preset(include_persona=True, include_offers=True, include_profile=True),
    "posts": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_profile=True,
        include_editorial=True,
    ),
    "reels": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_profile=True,
        include_editorial=True,
    ),
    "stories": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_profile=True,
        include_editorial=True,
    ),
    "comments": _preset(include_profile=True),
    "dm": _preset(include_persona=True, include_offers=True, include_profile=True),
    "audit": _preset(
        include_persona=True,
        include_offers=True,
        include_profile=True,
        include_audit=True,
    ),
    "sales_page": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_offer_details=True,
        include_profile=True,
    ),
    "offer_coaching": _preset(
        include_history=True, include_persona=True, include_profile=True
    ),
    "content": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_profile=True,
        include_editorial=True,
    ),
    "highlights": _preset(
        include_persona=True, include_offers=True, include_profile=True
    ),
    "inspire": _preset(include_history=True, include_persona=True, include_profile=True),
    "launch": _preset(include_persona=True, include_offers=True, include_profile=True),
    "linkedin": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_profile=True,
    ),
    "linkedin_audit": _preset(
        include_persona=True, include_offers=True, include_profile=True
    ),
    "pinterest": _preset(include_persona=True, include_profile=True),
    "website": _preset(
        include_history=True,
        include_persona=True,
        include_offers=True,
        include_offer_details=True,
        include_profile=True,
    ),
    "score": _preset(include_profile=True),
}
