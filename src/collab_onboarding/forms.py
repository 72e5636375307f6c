"""
Onboarding Forms - field rules for every step.

Each step payload is parsed into a pydantic model that enforces:
- Presence and length bounds for text fields
- Minimum one selection for multi-select fields
- Injection screening on free text
- UUID format for catalog references (malformed IDs are dropped with a
  warning instead of failing the step)

The cleaned payload (dumped by alias, i.e. the camelCase wire names) is
what gets persisted.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from .steps import StepId, GOAL_TYPES, GOAL_LABEL_TO_TYPE, coerce_step_id

logger = logging.getLogger(__name__)


# =============================================================================
# Limits
# =============================================================================

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PROFILE_TEXT_SOFT_MAX = 100  # location, job title: warn only
GOAL_DESCRIPTION_MAX_LENGTH = 200
PROJECT_NAME_MIN_LENGTH = 3
PROJECT_NAME_MAX_LENGTH = 100
PROJECT_DESCRIPTION_MIN_LENGTH = 10
PROJECT_DESCRIPTION_MAX_LENGTH = 1000
PROJECT_TIMELINE_SOFT_MAX = 50
MAX_LOOKING_FOR = 10
MAX_TAGS = 10
MIN_INTERESTS = 1
MAX_INTERESTS = 10
MIN_SKILLS = 1
MAX_SKILLS = 20

PROFICIENCY_LEVELS = ("beginner", "intermediate", "advanced", "expert")

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Basic XSS / SQL injection screening
SUSPICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<script",
        r"javascript:",
        r"data:text/html",
        r"vbscript:",
        r"onload=",
        r"onerror=",
        r"onclick=",
        r"<iframe",
        r"<object",
        r"<embed",
        r"SELECT.*FROM",
        r"INSERT.*INTO",
        r"DROP.*TABLE",
        r"UPDATE.*SET",
        r"DELETE.*FROM",
    )
]


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def contains_suspicious_content(text: str) -> bool:
    return any(p.search(text) for p in SUSPICIOUS_PATTERNS)


def sanitize_string(value: Any) -> str:
    """Trim and HTML-escape a string for display."""
    if not isinstance(value, str):
        return ""
    return html.escape(value.strip(), quote=True)


def filter_valid_uuids(values: list, label: str) -> tuple[list[str], list[str]]:
    """
    Drop malformed IDs from a selection.

    Returns:
        (valid_ids, warnings)
    """
    valid = [v for v in values if is_valid_uuid(v)]
    dropped = len(values) - len(valid)
    warnings = []
    if dropped:
        warnings.append(f"{dropped} invalid {label} IDs will be filtered out")
        logger.warning(f"Dropped {dropped} malformed {label} IDs from selection")
    return valid, warnings


def _check_text(
    value: str | None,
    label: str,
    *,
    min_length: int | None = None,
    max_length: int | None = None,
    required: bool = True,
) -> str | None:
    if value is None or not value.strip():
        if required:
            raise ValueError(f"{label} is required")
        return None
    value = value.strip()
    if min_length is not None and len(value) < min_length:
        raise ValueError(f"{label} must be at least {min_length} characters")
    if max_length is not None and len(value) > max_length:
        raise ValueError(f"{label} must be less than {max_length} characters")
    if contains_suspicious_content(value):
        raise ValueError(f"{label} contains invalid characters")
    return value


def _dedupe(values: list[str]) -> list[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


# =============================================================================
# Form Models
# =============================================================================


class StepForm(BaseModel):
    """Base for step forms: accepts wire (camelCase) or field names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def collect_warnings(self) -> list[str]:
        return []

    def cleaned(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProfileForm(StepForm):
    """Step 1: basic profile. Also the seed for identity migration."""

    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    location: str | None = None
    job_title: str | None = Field(default=None, alias="jobTitle")
    bio: str | None = None

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_name(cls, v: str, info: ValidationInfo) -> str:
        label = "First name" if info.field_name == "first_name" else "Last name"
        return _check_text(v, label, min_length=NAME_MIN_LENGTH, max_length=NAME_MAX_LENGTH)

    @field_validator("location", "job_title", "bio")
    @classmethod
    def validate_optional_text(cls, v: str | None, info: ValidationInfo) -> str | None:
        label = info.field_name.replace("_", " ").capitalize()
        return _check_text(v, label, required=False)

    def collect_warnings(self) -> list[str]:
        warnings = []
        if self.location and len(self.location) > PROFILE_TEXT_SOFT_MAX:
            warnings.append(f"Location should be less than {PROFILE_TEXT_SOFT_MAX} characters")
        if self.job_title and len(self.job_title) > PROFILE_TEXT_SOFT_MAX:
            warnings.append(f"Job title should be less than {PROFILE_TEXT_SOFT_MAX} characters")
        return warnings


class InterestsForm(StepForm):
    """Step 2: interest selection (interest catalog UUIDs)."""

    interest_ids: list[str] = Field(alias="interestIds")

    @field_validator("interest_ids")
    @classmethod
    def validate_interest_ids(cls, v: list[str]) -> list[str]:
        v = _dedupe(v)
        if len(v) < MIN_INTERESTS:
            raise ValueError("Please select at least one interest")
        if len(v) > MAX_INTERESTS:
            raise ValueError(f"Maximum {MAX_INTERESTS} interests can be selected")
        return v


class GoalsForm(StepForm):
    """Step 3: collaboration goal. Drives the flow variant."""

    goal_type: str = Field(alias="goalType")
    goal_description: str | None = Field(default=None, alias="goalDescription")
    details: dict | None = None

    @field_validator("goal_type", mode="before")
    @classmethod
    def validate_goal_type(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Please select a goal")
        v = v.strip()
        # Accept the UI label as well as the stored value
        v = GOAL_LABEL_TO_TYPE.get(v, v)
        if v not in GOAL_TYPES:
            raise ValueError(f"Unknown goal type: {v}")
        return v

    @field_validator("goal_description")
    @classmethod
    def validate_description(cls, v: str | None) -> str | None:
        return _check_text(v, "Goal description", max_length=GOAL_DESCRIPTION_MAX_LENGTH, required=False)


class ProjectDetailsForm(StepForm):
    """Step 4 (collaboration goals only): the project being staffed."""

    name: str
    description: str
    looking_for: list[str] = Field(default_factory=list, alias="lookingFor")
    tags: list[str] = Field(default_factory=list)
    timeline: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _check_text(
            v, "Project name",
            min_length=PROJECT_NAME_MIN_LENGTH,
            max_length=PROJECT_NAME_MAX_LENGTH,
        )

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        return _check_text(
            v, "Project description",
            min_length=PROJECT_DESCRIPTION_MIN_LENGTH,
            max_length=PROJECT_DESCRIPTION_MAX_LENGTH,
        )

    @field_validator("looking_for", "tags")
    @classmethod
    def validate_lists(cls, v: list[str], info: ValidationInfo) -> list[str]:
        limit = MAX_LOOKING_FOR if info.field_name == "looking_for" else MAX_TAGS
        label = "looking for" if info.field_name == "looking_for" else "tags"
        v = _dedupe([item.strip() for item in v if item and item.strip()])
        if len(v) > limit:
            raise ValueError(f"Maximum {limit} items in {label} list")
        if any(contains_suspicious_content(item) for item in v):
            raise ValueError(f"Project {label} contains inappropriate content")
        return v

    @field_validator("timeline")
    @classmethod
    def validate_timeline(cls, v: str | None) -> str | None:
        return _check_text(v, "Timeline", required=False)

    def collect_warnings(self) -> list[str]:
        if self.timeline and len(self.timeline) > PROJECT_TIMELINE_SOFT_MAX:
            return [f"Timeline should be less than {PROJECT_TIMELINE_SOFT_MAX} characters"]
        return []


class SkillSelection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    skill_id: str = Field(alias="skillId")
    is_offering: bool = Field(default=False, alias="isOffering")
    proficiency: Literal["beginner", "intermediate", "advanced", "expert"] = "intermediate"


class SkillsForm(StepForm):
    """Step 5: skills offered or sought."""

    skills: list[SkillSelection]

    @field_validator("skills")
    @classmethod
    def validate_skills(cls, v: list[SkillSelection]) -> list[SkillSelection]:
        seen = set()
        unique = []
        for skill in v:
            if skill.skill_id not in seen:
                seen.add(skill.skill_id)
                unique.append(skill)
        if len(unique) < MIN_SKILLS:
            raise ValueError("Please select at least one skill")
        if len(unique) > MAX_SKILLS:
            raise ValueError(f"Maximum {MAX_SKILLS} skills can be selected")
        return unique


FORM_MODELS: dict[StepId, type[StepForm]] = {
    StepId.PROFILE: ProfileForm,
    StepId.INTERESTS: InterestsForm,
    StepId.GOALS: GoalsForm,
    StepId.PROJECT_DETAILS: ProjectDetailsForm,
    StepId.SKILLS: SkillsForm,
}

FIELD_LABELS = {
    "firstName": "First name",
    "lastName": "Last name",
    "interestIds": "Interests",
    "goalType": "Goal",
    "name": "Project name",
    "description": "Project description",
    "skills": "Skills",
    "skillId": "Skill ID",
}


# =============================================================================
# Validation Entry Point
# =============================================================================


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cleaned: dict = field(default_factory=dict)


def _prefilter(step_id: StepId, payload: dict) -> tuple[dict, list[str]]:
    """Drop malformed catalog IDs before model validation."""
    data = dict(payload)
    warnings: list[str] = []

    if step_id == StepId.INTERESTS:
        key = "interestIds" if "interestIds" in data else "interest_ids"
        raw = data.get(key)
        if isinstance(raw, list):
            data[key], warnings = filter_valid_uuids(raw, "interest")

    elif step_id == StepId.SKILLS:
        raw = data.get("skills")
        if isinstance(raw, list):
            kept = []
            for i, skill in enumerate(raw, start=1):
                skill_id = None
                if isinstance(skill, dict):
                    skill_id = skill.get("skillId", skill.get("skill_id"))
                if is_valid_uuid(skill_id):
                    kept.append(skill)
                else:
                    warnings.append(f"Skill {i} has invalid ID and will be filtered out")
            if len(kept) != len(raw):
                logger.warning(f"Dropped {len(raw) - len(kept)} malformed skill IDs from selection")
            data["skills"] = kept

    return data, warnings


def _format_errors(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())]
        field_name = loc[-1] if loc else ""
        if loc and loc[-1].isdigit() and len(loc) > 1:
            field_name = loc[-2]
        label = FIELD_LABELS.get(field_name, field_name or "Value")
        if err["type"] == "missing":
            messages.append(f"{label} is required")
        elif err["type"] == "value_error":
            messages.append(str(err.get("ctx", {}).get("error", err["msg"])))
        else:
            messages.append(f"{label}: {err['msg']}")
    return messages


def validate_step(step_id: "StepId | str", payload: Any) -> ValidationResult:
    """
    Validate a step payload against its field rules.

    Returns a ValidationResult; `cleaned` holds the payload to persist
    when valid.
    """
    sid = coerce_step_id(step_id)
    if sid is None:
        return ValidationResult(is_valid=False, errors=[f"Invalid step: {step_id}"])
    if not isinstance(payload, dict):
        return ValidationResult(is_valid=False, errors=["Step data must be an object"])

    data, warnings = _prefilter(sid, payload)
    model = FORM_MODELS[sid]
    try:
        form = model.model_validate(data)
    except ValidationError as e:
        return ValidationResult(is_valid=False, errors=_format_errors(e), warnings=warnings)

    warnings.extend(form.collect_warnings())
    for w in warnings:
        logger.info(f"Step {sid.value} accepted with warning: {w}")
    return ValidationResult(is_valid=True, warnings=warnings, cleaned=form.cleaned())
