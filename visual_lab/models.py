"""
models.py — Data model for the style → analysis → fusion pipeline.

The same pydantic classes double as Gemini response schemas, so field
descriptions are written for the model as much as for readers.

`copy` is exposed in JSON (and to Gemini) under its short name but is held
as `copy_text` in Python, since BaseModel already has a `copy` attribute.
"""

from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class StrategyType(str, Enum):
    DETAIL = "detail"            # detail-page storytelling, 6 narrative beats
    MAIN_IMAGE = "main_image"    # 6 single-frame listing images

    @property
    def label(self) -> str:
        return "详情页" if self is StrategyType.DETAIL else "营销主图"


# ── Visual Constitution ───────────────────────────────────────────────────────

class VisualConstitution(BaseModel):
    """Style DNA decoded from one reference image."""
    style: str = Field(description="风格关键词 — core style keywords")
    lighting: str = Field(description="光影布局 — lighting setup and contrast")
    color: str = Field(description="核心配色 — dominant palette")
    composition: str = Field(description="构图与留白 — composition rules and negative space")
    texture: str = Field(description="材质与氛围 — material and atmosphere")
    prompt_prefix: str = Field(
        description="可复用的AI绘画描述前缀 — reusable prefix for every generation prompt"
    )

    def empty_fields(self) -> List[str]:
        return [name for name, value in self.model_dump().items() if not str(value).strip()]


# ── Storyboards ───────────────────────────────────────────────────────────────

class Storyboard(BaseModel):
    """One marketing beat with its text layout metadata."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="Unique id within this analysis, e.g. 'sb1'")
    title: str = Field(description="Short beat title")
    concept: str = Field(description="Marketing idea behind this frame")
    visual_description: str = Field(description="What the frame shows")
    marketing_angle: str = Field(description="Which selling point this frame converts on")
    copy_text: str = Field(
        alias="copy",
        description="On-image marketing copy, 4–8 Chinese characters, nothing else",
    )
    font_size: str = Field(description="Suggested copy size, e.g. '大字号'")
    placement: str = Field(description="Layout region reserved for the copy, e.g. '左上角'")
    prominence: str = Field(description="Visual weight of the copy: 高 | 中 | 低")


# Only these storyboard fields are user-editable after analysis.
EDITABLE_STORYBOARD_FIELDS = ("copy_text", "placement", "font_size")


class ProductAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strategy_type: StrategyType
    physical_features: str
    global_font_options: List[str] = Field(min_length=1)
    storyboards: List[Storyboard]
    selling_points: str = ""
    allowed_elements: str = ""
    prohibited_elements: str = ""

    def storyboard(self, storyboard_id: str) -> Storyboard:
        for sb in self.storyboards:
            if sb.id == storyboard_id:
                return sb
        raise KeyError(storyboard_id)


class AnalysisResponse(BaseModel):
    """Response schema for the product analysis call."""
    physical_features: str = Field(
        description="产品物理外观特征 — material, shape, size, finish; used as a hard render constraint"
    )
    global_font_options: List[str] = Field(description="3–5 suggested font names for all copy")
    storyboards: List[Storyboard] = Field(description="Exactly 6 storyboards in presentation order")


# ── Final Prompts ─────────────────────────────────────────────────────────────

class FinalPrompt(BaseModel):
    """A storyboard plus its generation-ready instruction. id == storyboard id."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="Must equal the id of the storyboard it was fused from")
    title: str
    concept: str
    prompt: str = Field(description="Generation-ready image instruction for this storyboard")
    copy_text: str = Field(alias="copy")
    font_size: str
    placement: str
    prominence: str


class FusionResponse(BaseModel):
    """Response schema for the prompt fusion call."""
    results: List[FinalPrompt] = Field(description="One entry per input storyboard, same ids")
