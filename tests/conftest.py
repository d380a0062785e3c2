"""
Pytest Configuration and Fixtures

Shared fixtures for all tests.
"""

import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from omnispark.config import GenerationConfig
from omnispark.gemini import GeminiClient
from omnispark.veo import OperationStatus, VeoClient
from omnispark.pipeline.library import AssetLibrary, ProductLibrary
from omnispark.pipeline.models import Concept, MediaPayload, Mode, ProductBrief
from omnispark.pipeline.orchestrator import CreativeSession
from omnispark.pipeline.storage import JsonFileBackend, MediaCache


def make_png(color=(200, 40, 40), size=(4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_payload() -> MediaPayload:
    """A tiny real PNG."""
    return MediaPayload(mime_type="image/png", data=make_png())


@pytest.fixture
def config(tmp_path) -> GenerationConfig:
    """Config with a fallback key and a fast poll interval."""
    return GenerationConfig(fallback_key="test-key", poll_interval=0.01, data_dir=tmp_path)


@pytest.fixture
def brief(png_payload) -> ProductBrief:
    return ProductBrief(
        name="便携榨汁杯",
        description="无线充电，30秒出汁，随身携带。",
        creative_direction="产品效果展示",
        reference_images=(png_payload,),
    )


@pytest.fixture
def concept() -> Concept:
    return Concept(
        title="清晨能量",
        description="上班路上的一杯鲜榨果汁",
        script="早上只有五分钟？一杯搞定。",
        storyboard="镜头1: POV 开盖; 镜头2: 特写果肉; 镜头3: 地铁场景; 镜头4: 产品收尾",
        visual_prompt="portable blender on a sunlit desk, 35mm, soft morning light",
        product_name="便携榨汁杯",
        creative_direction="产品效果展示",
        mode=Mode.VIDEO,
    )


def concept_items(n: int = 3) -> list[dict]:
    """Raw structured-output items as the text model returns them."""
    return [
        {
            "id": f"c{i}",
            "title": f"创意 {i}",
            "description": f"描述 {i}",
            "script": f"脚本 {i}",
            "storyboard": f"分镜 {i}",
            "visualPrompt": f"visual prompt {i}",
        }
        for i in range(n)
    ]


@pytest.fixture
def fake_gemini(png_payload):
    """GeminiClient stand-in: 3 concepts, 4 parsed shots, every image call succeeds."""
    client = MagicMock(spec=GeminiClient)
    shots = [{"label": f"镜头 {i}", "instruction": f"shot instruction {i}"} for i in range(1, 5)]

    async def generate_json(contents, schema):
        prompt = contents if isinstance(contents, str) else contents[0]
        if "Extract exactly" in prompt:
            return shots
        return concept_items(3)

    client.generate_json = AsyncMock(side_effect=generate_json)
    client.generate_text = AsyncMock(return_value="轻巧便携，随时鲜榨。")
    client.generate_image = AsyncMock(return_value=png_payload)
    return client


@pytest.fixture
def fake_veo():
    """VeoClient stand-in: one pending poll, then a finished operation."""
    client = MagicMock(spec=VeoClient)
    client.submit = AsyncMock(return_value="models/veo/operations/op-1")
    client.get_operation = AsyncMock(side_effect=[
        OperationStatus(name="models/veo/operations/op-1", done=False),
        OperationStatus(name="models/veo/operations/op-1", done=True, video_uri="https://example.test/v.mp4"),
    ])
    client.download = AsyncMock(return_value=b"\x00\x00\x00\x18ftypmp42")
    return client


@pytest.fixture
def backend(tmp_path) -> JsonFileBackend:
    return JsonFileBackend(tmp_path / "db")


@pytest.fixture
def media_cache(tmp_path) -> MediaCache:
    return MediaCache(tmp_path / "media")


@pytest.fixture
def session(config, backend, media_cache, fake_gemini, fake_veo) -> CreativeSession:
    return CreativeSession(
        lambda: config,
        AssetLibrary(backend),
        ProductLibrary(backend),
        media_cache,
        gemini_factory=lambda cfg: fake_gemini,
        veo_factory=lambda cfg: fake_veo,
    )
