"""
Tests for the Feature Cost Registry
"""

import pytest
from ledger.features import FeatureCostRegistry, FeatureKey, as_feature


class TestFeatureKey:
    """Test feature identifier coercion."""

    def test_string_coerces_to_key(self):
        assert as_feature("video_export") is FeatureKey.VIDEO_EXPORT

    def test_key_passes_through(self):
        assert as_feature(FeatureKey.AI_TEXT_CHAT) is FeatureKey.AI_TEXT_CHAT

    def test_unknown_feature_fails_fast(self):
        """Unknown identifiers are programming errors."""
        with pytest.raises(ValueError):
            as_feature("teleportation")


class TestFeatureCostRegistry:
    """Test feature pricing."""

    def test_default_costs(self):
        registry = FeatureCostRegistry()

        assert registry.cost(FeatureKey.AI_TEXT_CHAT) == 1
        assert registry.cost(FeatureKey.AI_IMAGE_GENERATION) == 5
        assert registry.cost(FeatureKey.BACKGROUND_REMOVAL) == 3
        assert registry.cost(FeatureKey.VIDEO_EXPORT) == 10
        assert registry.cost(FeatureKey.CREATIVE_DOWNLOAD) == 2
        assert registry.cost(FeatureKey.SOCIAL_MEDIA_POST) == 1

    def test_every_feature_priced(self):
        prices = FeatureCostRegistry().as_dict()

        assert set(prices) == {f.value for f in FeatureKey}

    def test_needed_multiplies_quantity(self):
        registry = FeatureCostRegistry()

        assert registry.needed("ai_image_generation", 4) == 20

    def test_quantity_below_one_bills_as_one(self):
        """Zero and negative quantities are floored to one use."""
        registry = FeatureCostRegistry()

        assert registry.needed(FeatureKey.VIDEO_EXPORT, 0) == 10
        assert registry.needed(FeatureKey.VIDEO_EXPORT, -3) == 10

    def test_override(self):
        registry = FeatureCostRegistry({"ai_text_chat": 3, FeatureKey.VIDEO_EXPORT: 0})

        assert registry.cost("ai_text_chat") == 3
        assert registry.cost("video_export") == 0
        assert registry.cost("creative_download") == 2

    def test_override_does_not_leak_into_defaults(self):
        FeatureCostRegistry({"ai_text_chat": 7})

        assert FeatureCostRegistry().cost("ai_text_chat") == 1

    def test_negative_override_rejected(self):
        with pytest.raises(ValueError):
            FeatureCostRegistry({"ai_text_chat": -1})

    def test_non_integer_override_rejected(self):
        with pytest.raises(ValueError):
            FeatureCostRegistry({"ai_text_chat": 1.5})
        with pytest.raises(ValueError):
            FeatureCostRegistry({"ai_text_chat": True})

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError):
            FeatureCostRegistry({"mind_reading": 1})
