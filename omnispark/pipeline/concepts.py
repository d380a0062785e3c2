"""
Concept Ideation — Gemini text model, structured JSON output.

Produces exactly CONCEPT_COUNT mode-specific concepts from a product brief.
Reference images ride along as inline parts so the model can look at the
product instead of reading about it.
"""

import logging

from pydantic import ValidationError

from ..gemini import GeminiClient
from ..presets import get_preset
from .errors import GenerationEmptyResult, ParseFailure
from .models import Concept, Mode, ProductBrief, new_id, now_ms

logger = logging.getLogger(__name__)

CONCEPT_COUNT = 3

CONCEPT_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "id": {"type": "STRING"},
            "title": {"type": "STRING"},
            "description": {"type": "STRING"},
            "script": {"type": "STRING"},
            "storyboard": {"type": "STRING"},
            "visualPrompt": {"type": "STRING"},
        },
        "required": ["title", "description", "script", "storyboard", "visualPrompt"],
    },
}

DESCRIPTION_PROMPT = """为这款小家电商品写一段简短、吸引人的产品描述（50字左右）。
商品名称：{name}

要求：
1. 突出小家电的便携性、智能化或生活美学。
2. 语气现代、轻松。
3. 直接返回描述内容，不要加引号或解释。"""


def build_concept_prompt(brief: ProductBrief, mode: Mode) -> str:
    preset = get_preset(mode)
    image_note = ""
    if brief.reference_images:
        image_note = (
            f"NOTE: {len(brief.reference_images)} product images are provided. "
            "Analyze their visual features."
        )

    return f"""{preset["system_context"]}

Product Name: {brief.name}
Product Description: {brief.description}
Creative Direction/Style: "{brief.creative_direction}"
{image_note}

{preset["output_requirements"]}

Output JSON Format:
1. Title (Chinese): Catchy title.
2. Description (Chinese): Concept overview.
3. Script (Chinese): As defined above.
4. Storyboard (Chinese): As defined above.
5. Visual Prompt (English): Detailed keywords for the Main Visual generation (lighting, angle, lens type).
"""


async def generate_concepts(client: GeminiClient, brief: ProductBrief, mode: Mode) -> list[Concept]:
    """
    Generate CONCEPT_COUNT concepts for `brief` in `mode`.

    Raises:
        GenerationEmptyResult: no structured output, or fewer than 3 usable items.
        ParseFailure: output was not a JSON array of concept objects.
        PermissionDeniedError: the text credential was rejected.
    """
    mode = Mode(mode)
    prompt = build_concept_prompt(brief, mode)

    contents: list = [prompt]
    contents.extend(brief.reference_images)

    raw = await client.generate_json(contents, CONCEPT_SCHEMA)
    if not isinstance(raw, list):
        raise ParseFailure(f"Expected a JSON array of concepts, got {type(raw).__name__}")

    created_at = now_ms()
    concepts: list[Concept] = []
    for item in raw[:CONCEPT_COUNT]:
        try:
            concepts.append(
                Concept(
                    id=new_id(),
                    title=item["title"],
                    description=item["description"],
                    script=item["script"],
                    storyboard=item["storyboard"],
                    visual_prompt=item["visualPrompt"],
                    product_name=brief.name,
                    creative_direction=brief.creative_direction,
                    mode=mode,
                    created_at=created_at,
                )
            )
        except (KeyError, TypeError, ValidationError) as e:
            raise ParseFailure(f"Concept item did not match the schema: {e}") from e

    if len(concepts) < CONCEPT_COUNT:
        raise GenerationEmptyResult(
            f"Expected {CONCEPT_COUNT} concepts, provider returned {len(concepts)}."
        )

    logger.info(f"Generated {len(concepts)} {mode.value} concepts for '{brief.name}'")
    return concepts


async def describe_product(client: GeminiClient, name: str) -> str:
    """Write a short marketing description from a product name."""
    if not name or not name.strip():
        raise ValueError("Product name is required.")
    text = await client.generate_text(DESCRIPTION_PROMPT.format(name=name.strip()))
    return text.strip().strip('"“”')
