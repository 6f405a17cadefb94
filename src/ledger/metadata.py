"""
Usage details.

Each feature carries its own context shape, tagged by ``feature`` so the
union is closed and statically known. At the storage boundary the details
become an opaque JSON object; refunds add ``{"refund": true, "reason": ...}``
to that object.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .features import FeatureKey


class BaseUsage(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def feature_key(self) -> FeatureKey:
        return FeatureKey(self.feature)  # type: ignore[attr-defined]


class ChatUsage(BaseUsage):
    feature: Literal["ai_text_chat"] = "ai_text_chat"
    provider: str
    model: str
    conversation_id: Optional[str] = None


class ImageGenerationUsage(BaseUsage):
    feature: Literal["ai_image_generation"] = "ai_image_generation"
    provider: Optional[str] = None
    model: Optional[str] = None
    project_id: Optional[int] = None
    aspect_ratio: Optional[str] = None


class BackgroundRemovalUsage(BaseUsage):
    feature: Literal["background_removal"] = "background_removal"
    original_url: str
    result_url: Optional[str] = None
    project_id: Optional[int] = None


class VideoExportUsage(BaseUsage):
    feature: Literal["video_export"] = "video_export"
    video_id: Optional[str] = None
    project_id: Optional[int] = None
    duration_seconds: Optional[float] = None


class CreativeDownloadUsage(BaseUsage):
    feature: Literal["creative_download"] = "creative_download"
    template_id: Optional[int] = None
    project_id: Optional[int] = None
    format: Optional[str] = None


class SocialMediaPostUsage(BaseUsage):
    feature: Literal["social_media_post"] = "social_media_post"
    post_id: int
    post_type: Optional[str] = None
    project_id: Optional[int] = None
    scheduler_post_id: Optional[str] = None


UsageDetails = Annotated[
    Union[
        ChatUsage,
        ImageGenerationUsage,
        BackgroundRemovalUsage,
        VideoExportUsage,
        CreativeDownloadUsage,
        SocialMediaPostUsage,
    ],
    Field(discriminator="feature"),
]

_adapter: TypeAdapter = TypeAdapter(UsageDetails)

REFUND_KEYS = ("refund", "reason")


def check_details(details: Optional[BaseUsage], feature: FeatureKey) -> None:
    """Reject details tagged for a different feature than the one billed."""
    if details is not None and details.feature_key is not feature:
        raise ValueError(
            f"Usage details for {details.feature_key.value} cannot be billed as {feature.value}"
        )


def to_payload(details: Optional[BaseUsage]) -> Dict[str, Any]:
    if details is None:
        return {}
    return details.model_dump(mode="json", exclude_none=True)


def refund_payload(details: Optional[BaseUsage], reason: Optional[str]) -> Dict[str, Any]:
    payload = to_payload(details)
    payload["refund"] = True
    payload["reason"] = reason
    return payload


def parse_payload(payload: Optional[Dict[str, Any]]) -> Optional[BaseUsage]:
    """Rebuild typed details from a stored payload, ignoring refund markers."""
    if not payload or "feature" not in payload:
        return None
    body = {k: v for k, v in payload.items() if k not in REFUND_KEYS}
    return _adapter.validate_python(body)
