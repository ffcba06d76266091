"""
Settings resolver: project override > user defaults > global defaults.

Every field is validated on its own, so one bad value in a record only
discards that value. Invalid values are logged and the next tier is used;
resolution never fails.
"""

import logging
from collections.abc import Mapping
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pydantic
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from mnemos.domain import constants as c
from mnemos.domain.errors import ValidationError
from mnemos.domain.models import EffectiveSettings, LeechAction, NewCardOrder

logger = logging.getLogger(__name__)

GLOBAL_DEFAULTS: dict[str, Any] = {
    "new_cards_per_day": c.DEFAULT_NEW_CARDS_PER_DAY,
    "max_reviews_per_day": c.DEFAULT_MAX_REVIEWS_PER_DAY,
    "learning_steps": list(c.DEFAULT_LEARNING_STEPS),
    "relearning_steps": list(c.DEFAULT_RELEARNING_STEPS),
    "graduating_interval": c.DEFAULT_GRADUATING_INTERVAL,
    "easy_interval": c.DEFAULT_EASY_INTERVAL,
    "starting_ease": c.DEFAULT_STARTING_EASE,
    "minimum_ease": c.DEFAULT_MINIMUM_EASE,
    "maximum_ease": c.DEFAULT_MAXIMUM_EASE,
    "easy_bonus": c.DEFAULT_EASY_BONUS,
    "hard_interval_factor": c.DEFAULT_HARD_INTERVAL_FACTOR,
    "easy_interval_factor": c.DEFAULT_EASY_INTERVAL_FACTOR,
    "lapse_recovery_factor": c.DEFAULT_LAPSE_RECOVERY_FACTOR,
    "lapse_ease_penalty": c.DEFAULT_LAPSE_EASE_PENALTY,
    "interval_modifier": c.DEFAULT_INTERVAL_MODIFIER,
    "leech_threshold": c.DEFAULT_LEECH_THRESHOLD,
    "leech_action": c.DEFAULT_LEECH_ACTION,
    "new_card_order": c.DEFAULT_NEW_CARD_ORDER,
    "review_ahead": c.DEFAULT_REVIEW_AHEAD,
    "bury_siblings": c.DEFAULT_BURY_SIBLINGS,
    "max_interval": c.DEFAULT_MAX_INTERVAL,
    "timezone": c.DEFAULT_TIMEZONE,
}


class SettingsLayer(BaseModel):
    """One tier of raw settings. Every field optional, every range enforced."""

    model_config = ConfigDict(extra="ignore")

    new_cards_per_day: int | None = Field(default=None, ge=0)
    max_reviews_per_day: int | None = Field(default=None, ge=0)
    learning_steps: list[PositiveInt] | None = Field(default=None, min_length=1)
    relearning_steps: list[PositiveInt] | None = Field(default=None, min_length=1)
    graduating_interval: int | None = Field(default=None, ge=1)
    easy_interval: int | None = Field(default=None, ge=1)
    starting_ease: float | None = Field(default=None, ge=1.3, le=5.0)
    minimum_ease: float | None = Field(default=None, ge=1.0, le=3.0)
    maximum_ease: float | None = Field(default=None, ge=1.3, le=10.0)
    easy_bonus: float | None = Field(default=None, ge=1.0, le=3.0)
    hard_interval_factor: float | None = Field(default=None, ge=0.5, le=2.0)
    easy_interval_factor: float | None = Field(default=None, ge=1.0, le=3.0)
    lapse_recovery_factor: float | None = Field(default=None, ge=0.0, le=1.0)
    lapse_ease_penalty: float | None = Field(default=None, ge=0.0, le=1.0)
    interval_modifier: float | None = Field(default=None, ge=0.1, le=3.0)
    leech_threshold: int | None = Field(default=None, ge=1)
    leech_action: LeechAction | None = None
    new_card_order: NewCardOrder | None = None
    review_ahead: bool | None = None
    bury_siblings: bool | None = None
    max_interval: int | None = Field(default=None, ge=1)
    timezone: str | None = None

    @field_validator("leech_action", "new_card_order", mode="before")
    @classmethod
    def lower_enum_names(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            # the original "fifo" order is insertion order
            return "due" if v == "fifo" else v
        return v

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str | None) -> str | None:
        if v is None:
            return None
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown time zone {v!r}") from e
        return v


SETTING_FIELDS = tuple(SettingsLayer.model_fields)


def _validate_field(name: str, value: Any) -> Any:
    try:
        layer = SettingsLayer.model_validate({name: value})
    except pydantic.ValidationError as e:
        reason = e.errors()[0].get("msg", "invalid") if e.errors() else "invalid"
        raise ValidationError(name, value, reason) from e
    return getattr(layer, name)


def _normalize_keys(record: Mapping[str, Any]) -> dict[str, Any]:
    # Older records use upper-case keys (NEW_CARDS_PER_DAY)
    return {str(k).lower(): v for k, v in record.items()}


def _tier_values(record: Mapping[str, Any] | None, tier: str) -> dict[str, Any]:
    """Validate every present, non-null field of a record; drop the invalid ones."""
    if not record:
        return {}

    accepted: dict[str, Any] = {}
    for name, value in _normalize_keys(record).items():
        if name not in SETTING_FIELDS:
            logger.debug(f"Ignoring unknown {tier} setting '{name}'")
            continue
        if value is None:
            continue
        try:
            accepted[name] = _validate_field(name, value)
        except ValidationError as e:
            logger.warning(f"Discarding {tier} setting: {e}; falling back to next tier")
    return accepted


def _merge(tiers: list[dict[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for name in SETTING_FIELDS:
        for tier in tiers:
            if name in tier:
                merged[name] = tier[name]
                break
    return merged


def resolve_settings(
    project_override: Mapping[str, Any] | None,
    user_defaults: Mapping[str, Any] | None,
    global_defaults: Mapping[str, Any] | None = None,
) -> EffectiveSettings:
    """
    Produce the effective settings for one user and project.

    Args:
        project_override: Raw project record (nullable fields), or None.
        user_defaults: Raw user record, or None.
        global_defaults: Optional replacement for the built-in defaults; any
            invalid value in it falls back to the built-in one.

    Returns:
        A fully populated, range-validated EffectiveSettings.
    """
    builtin = _tier_values(GLOBAL_DEFAULTS, "built-in")
    global_tier = _tier_values(global_defaults, "global")
    user_tier = _tier_values(user_defaults, "user")
    project_tier = _tier_values(project_override, "project")

    values = _merge([project_tier, user_tier, global_tier, builtin])
    user_values = _merge([user_tier, global_tier, builtin])

    if values["minimum_ease"] > values["maximum_ease"]:
        logger.warning(
            f"minimum_ease {values['minimum_ease']} exceeds maximum_ease "
            f"{values['maximum_ease']}; using defaults for both"
        )
        values["minimum_ease"] = builtin["minimum_ease"]
        values["maximum_ease"] = builtin["maximum_ease"]

    starting = min(max(values["starting_ease"], values["minimum_ease"]), values["maximum_ease"])
    if starting != values["starting_ease"]:
        logger.warning(
            f"starting_ease {values['starting_ease']} outside ease bounds; clamped to {starting}"
        )
        values["starting_ease"] = starting

    return EffectiveSettings(
        new_cards_per_day=values["new_cards_per_day"],
        max_reviews_per_day=values["max_reviews_per_day"],
        learning_steps=tuple(values["learning_steps"]),
        relearning_steps=tuple(values["relearning_steps"]),
        graduating_interval=values["graduating_interval"],
        easy_interval=values["easy_interval"],
        starting_ease=float(values["starting_ease"]),
        minimum_ease=float(values["minimum_ease"]),
        maximum_ease=float(values["maximum_ease"]),
        easy_bonus=float(values["easy_bonus"]),
        hard_interval_factor=float(values["hard_interval_factor"]),
        easy_interval_factor=float(values["easy_interval_factor"]),
        lapse_recovery_factor=float(values["lapse_recovery_factor"]),
        lapse_ease_penalty=float(values["lapse_ease_penalty"]),
        interval_modifier=float(values["interval_modifier"]),
        leech_threshold=values["leech_threshold"],
        leech_action=values["leech_action"],
        new_card_order=values["new_card_order"],
        review_ahead=values["review_ahead"],
        bury_siblings=values["bury_siblings"],
        max_interval=values["max_interval"],
        timezone=values["timezone"],
        user_new_cards_per_day=user_values["new_cards_per_day"],
        user_max_reviews_per_day=user_values["max_reviews_per_day"],
    )


def default_settings(**overrides: Any) -> EffectiveSettings:
    """Built-in defaults with overrides applied at both the project and user tier."""
    return resolve_settings(overrides or None, overrides or None)
