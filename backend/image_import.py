"""
Image Import - match uploaded images to layers and apply them as fills.

An image named "hero.png" lands on the first fill-capable layer named "hero"
(case-insensitive, surrounding whitespace ignored) in the selected frame.
Images are applied one at a time, in upload order; every image ends up either
mapped or in `skipped_details` with one of the SKIP_* reasons.
"""

import base64
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from figma_host import FigmaHost, validate_single_frame_selection
from layer_index import LayerIndex, build_layer_index, normalize_name

if TYPE_CHECKING:
    from import_session import ImportSession

logger = logging.getLogger(__name__)

SKIP_NO_MATCH = "No matching layer found"
SKIP_NO_FILLS = "Layer does not support fills"
SKIP_APPLY_ERROR_PREFIX = "Error applying image: "

IMAGE_SCALE_MODE = "FILL"

ProgressCallback = Callable[[int], Union[None, Awaitable[None]]]


# ============================================
# ================ MODELS ====================
# ============================================

class ImageRecord(BaseModel):
    """One uploaded image file; `name` excludes the extension."""

    model_config = ConfigDict(frozen=True)

    name: str
    extension: str = ""
    data: bytes
    size: int = 0

    @field_validator("data", mode="before")
    @classmethod
    def _coerce_data(cls, value: Any) -> bytes:
        # The plugin UI posts Array.from(Uint8Array); other clients may send base64
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        try:
            if isinstance(value, list):
                return bytes(value)
            if isinstance(value, dict):
                # JSON.stringify(Uint8Array) yields {"0": .., "1": ..}
                return bytes(value[k] for k in sorted(value, key=int))
        except (TypeError, ValueError) as e:
            # pydantic only converts ValueError into a ValidationError
            raise ValueError(f"Image data must be byte values: {e}") from e
        if isinstance(value, str):
            return base64.b64decode(value, validate=True)
        raise ValueError(f"Unsupported image data type: {type(value).__name__}")

    @property
    def filename(self) -> str:
        return f"{self.name}.{self.extension}" if self.extension else self.name


class SkippedDetail(BaseModel):
    filename: str
    reason: str


class ImportResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_images: int = Field(0, alias="totalImages")
    mapped: int = 0
    skipped: int = 0
    skipped_details: List[SkippedDetail] = Field(default_factory=list, alias="skippedDetails")

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape expected by the plugin UI (camelCase keys)."""
        return self.model_dump(by_alias=True)


# ============================================
# ============ INTERNAL HELPERS ==============
# ============================================

def _percent(done: int, total: int) -> int:
    """Round-half-up percentage, matching the UI's Math.round."""
    return (200 * done + total) // (2 * total)


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


async def _report_progress(on_progress: Optional[ProgressCallback], percent: int) -> None:
    if on_progress is None:
        return
    try:
        outcome = on_progress(percent)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(f"⚠️ Progress callback failed at {percent}%: {e}")


def image_fill(image_hash: str) -> Dict[str, Any]:
    return {"type": "IMAGE", "scaleMode": IMAGE_SCALE_MODE, "imageHash": image_hash}


# ============================================
# ================ IMPORT ====================
# ============================================

async def apply_images(
    images: Sequence[ImageRecord],
    index: LayerIndex,
    host: FigmaHost,
    on_progress: Optional[ProgressCallback] = None,
) -> ImportResult:
    """Apply each image to its matching layer, strictly in input order.

    Each image's host calls complete (or fail) before the next image starts.
    `on_progress` receives one percentage per image, ending at 100.
    """
    logger.info(f"🔄 Applying {len(images)} image(s) to layers")
    total = len(images)
    mapped = 0
    skipped_details: List[SkippedDetail] = []

    for i, image in enumerate(images):
        target = index.first(image.name)
        if target is None:
            logger.info(f"⏭️ No layer named '{normalize_name(image.name)}' for {image.filename}")
            skipped_details.append(SkippedDetail(filename=image.filename, reason=SKIP_NO_MATCH))
        else:
            layer = target.layer
            try:
                if not layer.has_fills:
                    skipped_details.append(SkippedDetail(filename=image.filename, reason=SKIP_NO_FILLS))
                else:
                    image_hash = await host.create_image(image.data)
                    await host.set_fills(layer, [image_fill(image_hash)])
                    mapped += 1
                    logger.info(f"✅ Applied image {image.filename} to layer: {target.path}")
            except Exception as e:
                logger.error(f"❌ Failed to apply image {image.filename}: {e}")
                skipped_details.append(SkippedDetail(
                    filename=image.filename,
                    reason=SKIP_APPLY_ERROR_PREFIX + _error_message(e),
                ))

        await _report_progress(on_progress, _percent(i + 1, total))

    result = ImportResult(
        total_images=total,
        mapped=mapped,
        skipped=len(skipped_details),
        skipped_details=skipped_details,
    )
    logger.info(f"✅ Image application complete: {result.mapped} mapped, {result.skipped} skipped")
    return result


async def run_import(
    image_payloads: Sequence[Dict[str, Any]],
    host: FigmaHost,
    session: "ImportSession",
    on_progress: Optional[ProgressCallback] = None,
) -> ImportResult:
    """Validate the selection, index the selected frame and import the batch.

    Selection problems raise SelectionError before anything is modified.
    """
    frame = validate_single_frame_selection(await host.get_selection())
    logger.info(f"📸 Target frame selected: {frame.name}")

    images = [ImageRecord.model_validate(payload) for payload in image_payloads]
    logger.info(f"📸 Processing {len(images)} image files")

    index = build_layer_index(frame)
    result = await apply_images(images, index, host, on_progress=on_progress)
    session.record_result(result)
    return result
