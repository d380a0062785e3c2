"""
Scene Generation & Editing — Gemini image model.

CRITICAL: when product reference images are supplied they are sent as inline
parts ahead of the instruction so the product's identity (logo, colour,
shape) carries into the generated scene.
"""

import logging
from typing import Optional, Sequence

from ..gemini import GeminiClient
from .models import MediaPayload

logger = logging.getLogger(__name__)

DEFAULT_ASPECT_RATIO = "16:9"

IDENTITY_DIRECTIVE = (
    "Reference product image provided above. You MUST maintain the product's visual "
    "identity details (logo, color, shape) strictly while applying the edit."
)


def _scene_prompt(prompt: str) -> str:
    return (
        "Generate a high-quality scene featuring the product shown in the images above. "
        f"Maintain the product's visual identity. Context: {prompt}"
    )


async def generate_scene(
    client: GeminiClient,
    prompt: str,
    reference_images: Optional[Sequence[MediaPayload]] = None,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
) -> MediaPayload:
    """
    Generate a new scene image from scratch.

    Args:
        prompt:           Visual prompt (usually the concept's visual prompt).
        reference_images: Optional product photos for identity preservation.
        aspect_ratio:     Canvas ratio, e.g. "9:16".

    Raises:
        NoImageProduced: the response carried no image part.
    """
    if reference_images:
        contents: list = list(reference_images)
        contents.append(_scene_prompt(prompt))
    else:
        contents = [prompt]

    logger.info(
        f"Generating scene ({aspect_ratio}, refs={len(reference_images or [])}): {prompt[:60]}..."
    )
    return await client.generate_image(contents, aspect_ratio)


async def edit_scene(
    client: GeminiClient,
    base_image: MediaPayload,
    instruction: str,
    reference_image: Optional[MediaPayload] = None,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
) -> MediaPayload:
    """Mutate `base_image` according to a free-text instruction."""
    contents: list = [base_image]

    if reference_image is not None:
        contents.append(reference_image)
        contents.append(IDENTITY_DIRECTIVE)

    contents.append(f"Edit the first image provided. Instruction: {instruction}")

    logger.info(f"Editing scene ({aspect_ratio}, ref={reference_image is not None}): {instruction[:60]}...")
    return await client.generate_image(contents, aspect_ratio)
