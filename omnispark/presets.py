"""
Preset Library — per-mode prompt strategies.

A mode changes the persona, the objective, the meaning of a concept's
`script` and `storyboard` fields and the default canvas; the call shape stays
the same.
"""

from .pipeline.models import Mode, ShotDescriptor

CREATIVE_DIRECTIONS = [
    "猎奇吸睛",
    "强化用户痛点",
    "产品效果展示",
    "情感共鸣",
    "未来科技感",
]

PRESETS = {
    Mode.VIDEO: {
        "id": "video",
        "name": "视频创意",
        "system_context": (
            "You are a viral Short-Video Director (TikTok/Douyin Expert).\n"
            "CORE OBJECTIVE: Generate 3 video ad concepts optimized for **MAXIMUM COMPLETION RATE (完播率)**.\n"
            "**Visual Style**: Cinematic, dynamic camera movement, high frame rate feel."
        ),
        "output_requirements": (
            "**Structure Requirements:**\n"
            "1. **HOOK (0-3s)**: Visual shock + Audio Hook.\n"
            "2. **RETENTION (3-12s)**: Fast demonstration.\n"
            "3. **CONVERSION (12-15s)**: Call To Action.\n\n"
            "**Fields:**\n"
            "- Script: Natural spoken narration (oral Chinese).\n"
            "- Storyboard: **MUST** use camera terms (Pan, Zoom, POV). Describe 4 key keyframes."
        ),
        "storyboard_role": (
            "You are a Storyboard Artist for Video Ads. "
            "Extract 4 cinematic shots (POV, Close-up, Wide, etc.)."
        ),
        "aspect_ratio": "9:16",
        "aspect_ratios": ["9:16", "16:9"],
    },
    Mode.IMAGE: {
        "id": "image",
        "name": "图片创意",
        "system_context": (
            "You are a Social Media Content Creator (Xiaohongshu/Instagram Expert).\n"
            "CORE OBJECTIVE: Generate 3 static image ad sets (Carousel format) optimized for "
            "**CLICK-THROUGH RATE (CTR)**.\n"
            "**Visual Style**: Lifestyle, soft lighting, \"Soft Sell\" (种草), authentic, 1:1 square composition."
        ),
        "output_requirements": (
            "**Structure Requirements:**\n"
            "Generate a concept that consists of 4 distinct images that tell a story or show different angles.\n"
            "1. **Image 1**: Eye-catching Main Visual (Flat lay or Context).\n"
            "2. **Image 2**: Close-up detail / Texture.\n"
            "3. **Image 3**: User interaction / Life scenario.\n"
            "4. **Image 4**: Summary / Mood shot.\n\n"
            "**Fields:**\n"
            "- Script: This is the **Ad Copy/Caption** (文案) for the social post. "
            "Use emojis, hashtags, and engaging tone.\n"
            "- Storyboard: Describe the 4 specific images in detail. Format: \"图1: [场景]...; 图2: [细节]...\""
        ),
        "storyboard_role": (
            "You are a Social Media Photographer. "
            "Extract 4 distinct photo concepts (Flat lay, Context, Detail, etc.)."
        ),
        "aspect_ratio": "1:1",
        "aspect_ratios": ["1:1"],
    },
    Mode.PDP: {
        "id": "pdp",
        "name": "商品详情页",
        "system_context": (
            "You are an E-commerce Visual Designer (Tmall/Amazon Expert).\n"
            "CORE OBJECTIVE: Generate 3 Product Detail Page (PDP) concepts optimized for "
            "**CONVERSION RATE (CVR)**.\n"
            "**Visual Style**: Clean, high-resolution, commercial photography, informative, trustworthy."
        ),
        "output_requirements": (
            "**Structure Requirements:**\n"
            "Generate a concept for a Long-Form PDP (Product Detail Page) composed of 4 vertical sections.\n"
            "1. **Section 1**: Hero Poster (Headline + Key Benefit).\n"
            "2. **Section 2**: Pain Point & Solution.\n"
            "3. **Section 3**: Core Feature Deep-dive (Tech/Specs).\n"
            "4. **Section 4**: Social Proof / Usage Scenario.\n\n"
            "**Fields:**\n"
            "- Script: This is the **Marketing Copy** (营销卖点) displayed on the images.\n"
            "- Storyboard: Describe the visual layout of the 4 sections. Format: \"板块1: [头图]...; 板块2: [痛点]...\""
        ),
        "storyboard_role": (
            "You are an E-commerce Designer. "
            "Extract 4 layout sections for a PDP (Header, Pain Point, Feature, Usage)."
        ),
        # Vertical for mobile shopping
        "aspect_ratio": "9:16",
        "aspect_ratios": ["9:16"],
    },
}

# Used when the storyboard text cannot be parsed into shots
DEFAULT_SHOTS = [
    ShotDescriptor(label="视觉 1", instruction="Main hero shot, high quality, commercial lighting."),
    ShotDescriptor(label="视觉 2", instruction="Detail shot, close up, texture focus."),
    ShotDescriptor(label="视觉 3", instruction="Context usage shot, lifestyle vibe."),
    ShotDescriptor(label="视觉 4", instruction="Creative composition, artistic angle."),
]


def get_preset(mode: Mode) -> dict:
    """Get the full prompt strategy for a mode. Raises if the mode is unknown."""
    preset = PRESETS.get(Mode(mode))
    if not preset:
        raise ValueError(f"Unknown mode: {mode}. Available: {[m.value for m in PRESETS]}")
    return preset


def default_aspect_ratio(mode: Mode) -> str:
    return get_preset(mode)["aspect_ratio"]


def allowed_aspect_ratios(mode: Mode) -> list[str]:
    return list(get_preset(mode)["aspect_ratios"])


def default_shots() -> list[ShotDescriptor]:
    return [shot.model_copy() for shot in DEFAULT_SHOTS]
