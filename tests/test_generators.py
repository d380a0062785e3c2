"""
Tests for concept generation, scene generation and storyboard decomposition
"""

from unittest.mock import AsyncMock

import pytest

from conftest import concept_items
from omnispark import metrics
from omnispark.pipeline import storyboard
from omnispark.pipeline.concepts import CONCEPT_COUNT, describe_product, generate_concepts
from omnispark.pipeline.errors import GenerationEmptyResult, NoImageProduced, ParseFailure, ProviderError
from omnispark.pipeline.models import Mode, ShotDescriptor
from omnispark.pipeline.scene_gen import IDENTITY_DIRECTIVE, edit_scene, generate_scene
from omnispark.presets import default_shots


class TestConceptGenerator:
    """Tests for generate_concepts / describe_product."""

    @pytest.mark.asyncio
    async def test_three_concepts_with_lineage(self, fake_gemini, brief):
        """Each concept carries product, direction and mode."""
        concepts = await generate_concepts(fake_gemini, brief, Mode.IMAGE)

        assert len(concepts) == CONCEPT_COUNT
        assert len({c.id for c in concepts}) == 3
        for c in concepts:
            assert c.product_name == brief.name
            assert c.creative_direction == brief.creative_direction
            assert c.mode == Mode.IMAGE

    @pytest.mark.asyncio
    async def test_reference_images_are_attached(self, fake_gemini, brief, png_payload):
        """Product photos ride along as parts, and the prompt says how many."""
        await generate_concepts(fake_gemini, brief, Mode.VIDEO)

        contents, schema = fake_gemini.generate_json.call_args.args
        assert contents[1] == png_payload
        assert "1 product images are provided" in contents[0]
        assert schema["type"] == "ARRAY"

    @pytest.mark.asyncio
    async def test_mode_changes_prompt_strategy(self, fake_gemini, brief):
        await generate_concepts(fake_gemini, brief, Mode.PDP)
        prompt = fake_gemini.generate_json.call_args.args[0][0]
        assert "Product Detail Page" in prompt

    @pytest.mark.asyncio
    async def test_extra_items_truncated(self, fake_gemini, brief):
        fake_gemini.generate_json = AsyncMock(return_value=concept_items(5))
        concepts = await generate_concepts(fake_gemini, brief, Mode.VIDEO)
        assert [c.title for c in concepts] == ["创意 0", "创意 1", "创意 2"]

    @pytest.mark.asyncio
    async def test_too_few_items_is_empty_result(self, fake_gemini, brief):
        fake_gemini.generate_json = AsyncMock(return_value=concept_items(2))
        with pytest.raises(GenerationEmptyResult):
            await generate_concepts(fake_gemini, brief, Mode.VIDEO)

    @pytest.mark.asyncio
    async def test_empty_structured_output_propagates(self, fake_gemini, brief):
        """Nothing is retried and nothing is returned."""
        fake_gemini.generate_json = AsyncMock(side_effect=GenerationEmptyResult("empty"))
        with pytest.raises(GenerationEmptyResult):
            await generate_concepts(fake_gemini, brief, Mode.VIDEO)
        assert fake_gemini.generate_json.await_count == 1

    @pytest.mark.asyncio
    async def test_non_array_is_parse_failure(self, fake_gemini, brief):
        fake_gemini.generate_json = AsyncMock(return_value={"title": "one"})
        with pytest.raises(ParseFailure):
            await generate_concepts(fake_gemini, brief, Mode.VIDEO)

    @pytest.mark.asyncio
    async def test_item_missing_fields_is_parse_failure(self, fake_gemini, brief):
        items = concept_items(3)
        del items[1]["visualPrompt"]
        fake_gemini.generate_json = AsyncMock(return_value=items)
        with pytest.raises(ParseFailure):
            await generate_concepts(fake_gemini, brief, Mode.VIDEO)

    @pytest.mark.asyncio
    async def test_describe_product_strips_quotes(self, fake_gemini):
        fake_gemini.generate_text = AsyncMock(return_value=' "小巧好用" \n')
        assert await describe_product(fake_gemini, "榨汁杯") == "小巧好用"

    @pytest.mark.asyncio
    async def test_describe_product_requires_name(self, fake_gemini):
        with pytest.raises(ValueError):
            await describe_product(fake_gemini, " ")


class TestSceneGen:
    """Tests for generate_scene / edit_scene request shapes."""

    @pytest.mark.asyncio
    async def test_plain_prompt_without_references(self, fake_gemini):
        await generate_scene(fake_gemini, "a desk", None, "1:1")
        fake_gemini.generate_image.assert_awaited_once_with(["a desk"], "1:1")

    @pytest.mark.asyncio
    async def test_references_precede_identity_prompt(self, fake_gemini, png_payload):
        await generate_scene(fake_gemini, "a desk", [png_payload, png_payload], "9:16")
        contents, ratio = fake_gemini.generate_image.call_args.args
        assert contents[:2] == [png_payload, png_payload]
        assert "Maintain the product's visual identity" in contents[2]
        assert ratio == "9:16"

    @pytest.mark.asyncio
    async def test_edit_with_reference_adds_directive(self, fake_gemini, png_payload):
        base = png_payload.model_copy(update={"data": b"base"})
        await edit_scene(fake_gemini, base, "make it blue", png_payload, "16:9")
        contents, _ = fake_gemini.generate_image.call_args.args
        assert contents[0] == base
        assert contents[1] == png_payload
        assert contents[2] == IDENTITY_DIRECTIVE
        assert contents[3] == "Edit the first image provided. Instruction: make it blue"

    @pytest.mark.asyncio
    async def test_edit_without_reference(self, fake_gemini, png_payload):
        await edit_scene(fake_gemini, png_payload, "zoom in")
        contents, ratio = fake_gemini.generate_image.call_args.args
        assert len(contents) == 2
        assert ratio == "16:9"

    @pytest.mark.asyncio
    async def test_no_image_propagates(self, fake_gemini, png_payload):
        fake_gemini.generate_image = AsyncMock(side_effect=NoImageProduced("none"))
        with pytest.raises(NoImageProduced):
            await edit_scene(fake_gemini, png_payload, "zoom in")


class TestStoryboard:
    """Tests for shot parsing and concurrent rendering."""

    @pytest.fixture(autouse=True)
    def _reset_metrics(self):
        metrics.reset()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        [{"label": f"L{i}", "instruction": f"I{i}"} for i in range(6)],
        [{"label": f"L{i}", "instruction": f"I{i}"} for i in range(2)],
        [],
        {"not": "a list"},
    ])
    async def test_always_four_shots(self, fake_gemini, raw):
        """Whatever the model returns, four shots come out."""
        fake_gemini.generate_json = AsyncMock(return_value=raw)
        shots, _ = await storyboard.parse_shots(fake_gemini, "text", Mode.VIDEO)
        assert len(shots) == storyboard.SHOT_COUNT

    @pytest.mark.asyncio
    async def test_parse_failure_uses_defaults(self, fake_gemini):
        """A parse failure degrades to the default shot set instead of raising."""
        fake_gemini.generate_json = AsyncMock(side_effect=ParseFailure("bad json"))
        shots, used_fallback = await storyboard.parse_shots(fake_gemini, "text", Mode.IMAGE)
        assert shots == default_shots()
        assert used_fallback

    @pytest.mark.asyncio
    async def test_partial_parse_padded_from_defaults(self, fake_gemini):
        fake_gemini.generate_json = AsyncMock(return_value=[
            {"label": "A", "instruction": "a"},
            {"label": "B", "instruction": "b"},
        ])
        shots, used_fallback = await storyboard.parse_shots(fake_gemini, "text", Mode.VIDEO)
        assert [s.label for s in shots] == ["A", "B", "视觉 3", "视觉 4"]
        assert used_fallback

    @pytest.mark.asyncio
    async def test_one_failed_render_drops_one_shot(self, fake_gemini, png_payload):
        """3 of 4 succeed: no raise, 3 shots in label order."""
        async def generate_image(contents, aspect_ratio):
            if "shot instruction 2" in contents[-1]:
                raise ProviderError("shot 2 failed")
            return png_payload

        fake_gemini.generate_image = AsyncMock(side_effect=generate_image)
        result = await storyboard.decompose(fake_gemini, png_payload, "text", Mode.VIDEO)

        assert [s.label for s in result.shots] == ["镜头 1", "镜头 3", "镜头 4"]
        assert result.failed_labels == ["镜头 2"]
        assert result.failed_kinds == ["provider_error"]
        assert result.partial
        assert metrics.get_snapshot()["counters"]["storyboard.shots_dropped"] == 1

    @pytest.mark.asyncio
    async def test_every_shot_edits_the_base_image(self, fake_gemini, png_payload):
        base = png_payload.model_copy(update={"data": b"base"})
        rendered = []
        result = await storyboard.decompose(
            fake_gemini, base, "text", Mode.VIDEO,
            reference_image=png_payload, aspect_ratio="9:16", on_rendered=rendered.append,
        )

        assert len(result.shots) == 4 and not result.partial
        assert len(rendered) == 4
        for call in fake_gemini.generate_image.call_args_list:
            contents, ratio = call.args
            assert contents[0] == base
            assert ratio == "9:16"

    @pytest.mark.asyncio
    async def test_render_shots_keeps_slot_order(self, fake_gemini, png_payload):
        shots = [ShotDescriptor(label=f"S{i}", instruction=f"do {i}") for i in range(4)]
        result = await storyboard.render_shots(fake_gemini, png_payload, shots, None, "1:1")
        assert [s.index for s in result.shots] == [0, 1, 2, 3]
