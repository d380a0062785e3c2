"""
Storyboard Decomposer.

  Phase A: parse the concept's storyboard text into exactly SHOT_COUNT shot
           descriptors with one JSON text call. Parse problems never block
           production; the default shot set fills in.
  Phase B: render every shot concurrently as an edit of the confirmed base
           image. A failed shot is logged and dropped; the batch still
           succeeds with fewer shots, in label order.
"""

import asyncio
import logging
from typing import Callable, Optional

from .. import metrics
from ..gemini import GeminiClient
from ..presets import default_shots, get_preset
from .errors import GenerationError
from .models import MediaPayload, Mode, ShotDescriptor, StoryboardResult, StoryboardShot
from .scene_gen import edit_scene

logger = logging.getLogger(__name__)

SHOT_COUNT = 4

SHOT_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "label": {"type": "STRING"},
            "instruction": {"type": "STRING"},
        },
        "required": ["label", "instruction"],
    },
}

ShotCallback = Callable[[StoryboardShot], None]


def build_parse_prompt(storyboard_text: str, mode: Mode) -> str:
    return f"""{get_preset(mode)["storyboard_role"]}

Input Script/Description: "{storyboard_text}"

Extract exactly {SHOT_COUNT} key visuals.
**CRITICAL**: The 'instruction' must use correct visual terminology for the medium.

For each visual provide:
1. "label": Short Chinese title.
2. "instruction": Precise English instruction for the AI image editor to generate this specific visual.

Return a JSON array with {SHOT_COUNT} items.
"""


def _coerce_shots(raw) -> list[ShotDescriptor]:
    if not isinstance(raw, list):
        return []
    shots = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        label = str(item.get("label") or "").strip()
        instruction = str(item.get("instruction") or "").strip()
        if label and instruction:
            shots.append(ShotDescriptor(label=label, instruction=instruction))
    return shots


async def parse_shots(
    client: GeminiClient,
    storyboard_text: str,
    mode: Mode,
) -> tuple[list[ShotDescriptor], bool]:
    """
    Phase A. Always returns SHOT_COUNT descriptors.

    Returns:
        (shots, used_fallback) — used_fallback is True when any default shot
        had to stand in for a parsed one.
    """
    parsed: list[ShotDescriptor] = []
    try:
        raw = await client.generate_json(build_parse_prompt(storyboard_text, Mode(mode)), SHOT_SCHEMA)
        parsed = _coerce_shots(raw)
    except Exception as e:
        logger.warning(f"Failed to parse storyboard script, falling back to defaults: {e}")

    defaults = default_shots()
    if not parsed:
        return defaults, True

    shots = parsed[:SHOT_COUNT]
    used_fallback = False
    if len(shots) < SHOT_COUNT:
        logger.warning(f"Storyboard parse yielded {len(shots)} shots; padding with defaults")
        shots.extend(defaults[len(shots):])
        used_fallback = True
    return shots, used_fallback


async def render_shot(
    client: GeminiClient,
    base_image: MediaPayload,
    shot: ShotDescriptor,
    index: int,
    reference_image: Optional[MediaPayload],
    aspect_ratio: str,
) -> StoryboardShot:
    payload = await edit_scene(client, base_image, shot.instruction, reference_image, aspect_ratio)
    return StoryboardShot(index=index, label=shot.label, instruction=shot.instruction, payload=payload)


async def render_shots(
    client: GeminiClient,
    base_image: MediaPayload,
    shots: list[ShotDescriptor],
    reference_image: Optional[MediaPayload],
    aspect_ratio: str,
    on_rendered: Optional[ShotCallback] = None,
) -> StoryboardResult:
    """Phase B. Never raises for a partial batch."""
    slots: list[Optional[StoryboardShot]] = [None] * len(shots)
    failures: dict[int, str] = {}

    async def _render(index: int, shot: ShotDescriptor):
        try:
            rendered = await render_shot(client, base_image, shot, index, reference_image, aspect_ratio)
        except Exception as e:
            logger.error(f"Failed to generate shot {shot.label}: {e}", exc_info=not isinstance(e, GenerationError))
            metrics.inc_counter("storyboard.shots_dropped")
            failures[index] = e.kind if isinstance(e, GenerationError) else GenerationError.kind
            return
        slots[index] = rendered
        if on_rendered is not None:
            on_rendered(rendered)

    await asyncio.gather(*(_render(i, shot) for i, shot in enumerate(shots)))

    result = StoryboardResult(
        shots=[s for s in slots if s is not None],
        failed_labels=[shot.label for shot, s in zip(shots, slots) if s is None],
        failed_kinds=[failures[i] for i in sorted(failures)],
    )
    if result.partial:
        logger.warning(
            f"Storyboard rendered {len(result.shots)}/{len(shots)} shots; dropped {result.failed_labels}"
        )
    return result


async def decompose(
    client: GeminiClient,
    base_image: MediaPayload,
    storyboard_text: str,
    mode: Mode,
    reference_image: Optional[MediaPayload] = None,
    aspect_ratio: str = "16:9",
    on_rendered: Optional[ShotCallback] = None,
) -> StoryboardResult:
    """Run Phase A then Phase B against a confirmed base image."""
    shots, used_fallback = await parse_shots(client, storyboard_text, mode)
    result = await render_shots(client, base_image, shots, reference_image, aspect_ratio, on_rendered)
    result.used_fallback = used_fallback
    return result
