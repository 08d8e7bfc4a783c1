import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from app.models.flyer import ImageRef, ProgressEvent
from app.models.schemas import (
    FlyerResponse,
    ImageRequest,
    ImageResponse,
    LayoutRequest,
    LayoutResponse,
    RemoveBackgroundRequest,
)
from app.services import errors
from app.services.flyer_orchestrator import flyer_orchestrator
from app.services.gemini_service import gemini_service
from app.services.image_generator import image_generator
from app.services.image_processor import image_processor

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(exc: errors.FlyerError) -> HTTPException:
    if isinstance(exc, errors.ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


@router.post("/api/generate-layout", response_model=LayoutResponse)
async def generate_layout(request: LayoutRequest) -> LayoutResponse:
    """Generate the flyer markup only, leaving image placeholders unresolved."""
    requirements = request.requirements.strip()
    if not requirements:
        raise HTTPException(status_code=400, detail="Please enter your requirements first.")

    try:
        html = await gemini_service.generate_layout(requirements)
    except errors.FlyerError as exc:
        logger.error(f"Error generating layout: {exc}")
        raise _http_error(exc) from exc

    return LayoutResponse(html=html)


@router.post("/api/generate-image", response_model=ImageResponse)
async def generate_image(request: ImageRequest) -> ImageResponse:
    """
    Generate one image.

    Transparent requests also go through background removal; if that fails
    the un-segmented image is returned.
    """
    logger.info(f"Generating image for prompt: {request.prompt}")
    try:
        image = await image_generator.generate_image(
            request.prompt, request.width, request.height
        )
    except errors.FlyerError as exc:
        logger.error(f"Error generating image: {exc}")
        raise _http_error(exc) from exc

    if request.is_transparent:
        try:
            image = await image_processor.remove_background(image)
        except errors.SegmentationError as exc:
            logger.warning(f"Background removal failed, returning original image: {exc}")

    return ImageResponse(url=image.to_data_uri())


@router.post("/api/remove-bg", response_model=ImageResponse)
async def remove_background(request: RemoveBackgroundRequest) -> ImageResponse:
    """Remove the background of an already generated image."""
    try:
        image = ImageRef.from_data_uri(request.image_url)
        cutout = await image_processor.remove_background(image)
    except errors.FlyerError as exc:
        logger.error(f"Error removing background: {exc}")
        raise _http_error(exc) from exc

    return ImageResponse(url=cutout.to_data_uri())


@router.post("/api/generate-flyer", response_model=FlyerResponse)
async def generate_flyer(request: LayoutRequest) -> FlyerResponse:
    """Generate the layout and resolve every image placeholder in it."""
    try:
        result = await flyer_orchestrator.generate_flyer(request.requirements)
    except errors.FlyerError as exc:
        raise _http_error(exc) from exc

    return FlyerResponse.from_result(result)


@router.post("/api/generate-flyer/stream")
async def generate_flyer_stream(request: LayoutRequest) -> StreamingResponse:
    """
    Same as /api/generate-flyer, streamed as NDJSON.

    One line per progress event, then a final `result` line, or an `error`
    line if the run aborts.
    """
    if not request.requirements.strip():
        raise HTTPException(status_code=400, detail="Please enter your requirements first.")

    return StreamingResponse(
        _stream_flyer(request.requirements), media_type="application/x-ndjson"
    )


async def _stream_flyer(requirements: str) -> AsyncIterator[str]:
    events: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    task = asyncio.create_task(
        flyer_orchestrator.generate_flyer(requirements, progress=events.put_nowait)
    )

    try:
        while not task.done() or not events.empty():
            getter = asyncio.ensure_future(events.get())
            done, _ = await asyncio.wait(
                {getter, task}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter in done:
                event = getter.result()
                yield json.dumps({"type": "progress", **event.to_dict()}) + "\n"
            else:
                getter.cancel()

        try:
            result = task.result()
        except errors.FlyerError as exc:
            yield json.dumps({"type": "error", "detail": str(exc)}) + "\n"
            return
        except Exception:
            logger.exception("Flyer stream failed")
            yield json.dumps({"type": "error", "detail": "Flyer generation failed"}) + "\n"
            return

        payload = FlyerResponse.from_result(result).model_dump()
        yield json.dumps({"type": "result", **payload}) + "\n"
    finally:
        if not task.done():
            task.cancel()
