"""
Feature Cost Registry

The single source of truth for what one use of a billable feature costs.
Prices are whole credits. Defaults can be overridden from configuration,
but overrides are validated when the registry is built, never per request.
"""

from enum import Enum
from typing import Dict, Mapping, Optional, Union
import structlog

logger = structlog.get_logger()


class FeatureKey(Enum):
    """Billable features."""
    AI_TEXT_CHAT = "ai_text_chat"
    AI_IMAGE_GENERATION = "ai_image_generation"
    BACKGROUND_REMOVAL = "background_removal"
    VIDEO_EXPORT = "video_export"
    CREATIVE_DOWNLOAD = "creative_download"
    SOCIAL_MEDIA_POST = "social_media_post"


FeatureLike = Union[FeatureKey, str]


def as_feature(feature: FeatureLike) -> FeatureKey:
    """
    Coerce a feature identifier to a FeatureKey.

    Unknown identifiers raise ValueError: they are programming errors, not
    user-facing conditions.
    """
    if isinstance(feature, FeatureKey):
        return feature
    return FeatureKey(feature)


class FeatureCostRegistry:
    """Credit price per single use of each feature."""

    DEFAULT_COSTS: Dict[FeatureKey, int] = {
        FeatureKey.AI_TEXT_CHAT: 1,
        FeatureKey.AI_IMAGE_GENERATION: 5,
        FeatureKey.BACKGROUND_REMOVAL: 3,
        FeatureKey.VIDEO_EXPORT: 10,
        FeatureKey.CREATIVE_DOWNLOAD: 2,
        FeatureKey.SOCIAL_MEDIA_POST: 1,
    }

    def __init__(self, overrides: Optional[Mapping[FeatureLike, int]] = None):
        self._costs = dict(self.DEFAULT_COSTS)

        for feature, cost in (overrides or {}).items():
            key = as_feature(feature)
            if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
                raise ValueError(f"Invalid cost for {key.value}: {cost!r}")
            self._costs[key] = cost

        missing = [f.value for f in FeatureKey if f not in self._costs]
        if missing:
            raise ValueError(f"No cost configured for: {', '.join(missing)}")

        if overrides:
            logger.info("feature_costs_overridden", features=sorted(as_feature(f).value for f in overrides))

    def cost(self, feature: FeatureLike) -> int:
        """Credits for a single use of ``feature``."""
        return self._costs[as_feature(feature)]

    def needed(self, feature: FeatureLike, quantity: int = 1) -> int:
        """Credits for ``quantity`` uses; quantities below one bill as one."""
        return self.cost(feature) * max(1, quantity)

    def as_dict(self) -> Dict[str, int]:
        return {feature.value: cost for feature, cost in self._costs.items()}
