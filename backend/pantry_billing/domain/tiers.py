"""Tier catalog: static limits and feature flags per subscription tier.

Pure domain module. No DB access. Catalog values change only with a deploy.
"""

from dataclasses import dataclass
from enum import StrEnum

# Single reserved sentinel for "no ceiling"
UNLIMITED = -1


class Tier(StrEnum):
    """Entitlement levels, lowest first."""

    BASIC = "BASIC"
    PRO = "PRO"


class QuotaResource(StrEnum):
    """Countable resources with a per-tier ceiling."""

    PANTRY_ITEMS = "pantryItems"
    AI_RECIPES_PER_MONTH = "aiRecipesPerMonth"
    COOKWARE_ITEMS = "cookwareItems"


class Feature(StrEnum):
    """Boolean capabilities gated by tier."""

    RECIPE_SCANNING = "recipeScanning"
    BULK_SCANNING = "bulkScanning"
    AI_KITCHEN_ASSISTANT = "aiKitchenAssistant"
    CUSTOM_STORAGE_AREAS = "customStorageAreas"
    WEEKLY_MEAL_PREPPING = "weeklyMealPrepping"


@dataclass(frozen=True)
class TierLimits:
    max_pantry_items: int
    max_ai_recipes_per_month: int
    max_cookware_items: int
    can_use_recipe_scanning: bool
    can_use_bulk_scanning: bool
    can_use_ai_kitchen_assistant: bool
    can_customize_storage_areas: bool
    can_use_weekly_meal_prepping: bool

    def limit_for(self, resource: QuotaResource) -> int:
        return getattr(self, _RESOURCE_FIELDS[resource])

    def allows(self, feature: str) -> bool:
        """Return the flag for a feature name; unknown names are never entitled."""
        field = _FEATURE_FIELDS.get(feature)
        if field is None:
            return False
        return getattr(self, field)


_RESOURCE_FIELDS: dict[QuotaResource, str] = {
    QuotaResource.PANTRY_ITEMS: "max_pantry_items",
    QuotaResource.AI_RECIPES_PER_MONTH: "max_ai_recipes_per_month",
    QuotaResource.COOKWARE_ITEMS: "max_cookware_items",
}

_FEATURE_FIELDS: dict[str, str] = {
    Feature.RECIPE_SCANNING: "can_use_recipe_scanning",
    Feature.BULK_SCANNING: "can_use_bulk_scanning",
    Feature.AI_KITCHEN_ASSISTANT: "can_use_ai_kitchen_assistant",
    Feature.CUSTOM_STORAGE_AREAS: "can_customize_storage_areas",
    Feature.WEEKLY_MEAL_PREPPING: "can_use_weekly_meal_prepping",
}

TIER_CATALOG: dict[Tier, TierLimits] = {
    Tier.BASIC: TierLimits(
        max_pantry_items=25,
        max_ai_recipes_per_month=5,
        max_cookware_items=5,
        can_use_recipe_scanning=False,
        can_use_bulk_scanning=False,
        can_use_ai_kitchen_assistant=False,
        can_customize_storage_areas=False,
        can_use_weekly_meal_prepping=False,
    ),
    Tier.PRO: TierLimits(
        max_pantry_items=UNLIMITED,
        max_ai_recipes_per_month=UNLIMITED,
        max_cookware_items=UNLIMITED,
        can_use_recipe_scanning=True,
        can_use_bulk_scanning=True,
        can_use_ai_kitchen_assistant=True,
        can_customize_storage_areas=True,
        can_use_weekly_meal_prepping=True,
    ),
}

LOWEST_TIER = Tier.BASIC

# Trial users get full access for the trial window
TRIAL_TIER = Tier.PRO


def limits_for(tier: Tier) -> TierLimits:
    return TIER_CATALOG[tier]


def coerce_tier(value: str | None) -> Tier:
    """Parse a stored or provider-supplied tier string, defaulting to the lowest tier."""
    if value:
        try:
            return Tier(value.upper())
        except ValueError:
            pass
    return LOWEST_TIER


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED
