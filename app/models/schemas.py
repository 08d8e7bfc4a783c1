from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt

from app.models.flyer import FlyerResult


class LayoutRequest(BaseModel):
    """Natural-language brief for a flyer."""

    requirements: str


class LayoutResponse(BaseModel):
    html: str


class ImageRequest(BaseModel):
    """Single image generation request, as sent by the browser client."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    width: PositiveInt = 300
    height: PositiveInt = 300
    is_transparent: bool = Field(default=False, alias="isTransparent")


class RemoveBackgroundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: str = Field(alias="imageUrl")  # data URI or bare base64


class ImageResponse(BaseModel):
    url: str  # base64 data URI


class RunSummaryModel(BaseModel):
    total: int
    completed: int
    failed: int
    degraded: int


class PlaceholderModel(BaseModel):
    """Outcome for one image placeholder in the generated flyer."""

    index: int
    prompt: str
    transparent: bool
    width: int
    height: int
    state: Literal["pending", "resolved", "failed"]
    failure_reason: str | None = None
    background_removed: bool = False


class FlyerResponse(BaseModel):
    """Complete flyer with resolved images."""

    html: str
    summary: RunSummaryModel
    placeholders: list[PlaceholderModel]

    @classmethod
    def from_result(cls, result: FlyerResult) -> "FlyerResponse":
        return cls(
            html=result.html,
            summary=RunSummaryModel(
                total=result.summary.total,
                completed=result.summary.completed,
                failed=result.summary.failed,
                degraded=result.summary.degraded,
            ),
            placeholders=[
                PlaceholderModel(
                    index=p.index,
                    prompt=p.prompt,
                    transparent=p.transparent,
                    width=p.width,
                    height=p.height,
                    state=p.state.value,
                    failure_reason=p.failure_reason,
                    background_removed=p.background_removed,
                )
                for p in result.placeholders
            ],
        )
