"""Shared fixtures: a scripted gateway, a sample plan and an in-memory ledger."""

from __future__ import annotations

import io
import json
import threading
from typing import Any, Dict, List, Optional, Tuple

import pytest
from PIL import Image

from visual_lab.config import Settings
from visual_lab.gateway import ModelRequest, parse_structured
from visual_lab.images import ImagePart
from visual_lab.ledger import MemoryLedgerStore
from visual_lab.models import (
    FinalPrompt,
    ProductAnalysis,
    Storyboard,
    StrategyType,
    VisualConstitution,
)
from visual_lab.orchestrator import GenerationPlan


def png_bytes(color: str = "white", size: Tuple[int, int] = (4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeGateway:
    """
    Stands in for ModelGateway.

    Text / structured calls pop the next queued outcome. A queued str is run
    through the real parse_structured when the request has a schema. Render
    calls look up an outcome by card id (request label "render:<id>") and
    fall back to a default PNG. Exceptions are raised, callables are called
    with the request.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[ModelRequest, Optional[str]]] = []
        self.queue: List[Any] = []
        self.render_outcomes: Dict[str, Any] = {}
        self.default_image = ImagePart(png_bytes("red"))
        self._lock = threading.Lock()

    def push(self, *outcomes: Any) -> "FakeGateway":
        self.queue.extend(outcomes)
        return self

    def invoke(self, request: ModelRequest, credential: Optional[str] = None):
        with self._lock:
            self.calls.append((request, credential))
            if request.image is not None:
                card_id = request.label.split(":", 1)[-1]
                outcome = self.render_outcomes.get(card_id, self.default_image)
            else:
                outcome = self.queue.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        if isinstance(outcome, str) and request.schema is not None:
            return parse_structured(outcome, request.schema, strict=request.strict)
        return outcome

    def render_calls(self) -> List[ModelRequest]:
        return [req for req, _ in self.calls if req.image is not None]


# ── Sample data ───────────────────────────────────────────────────────────────

def make_storyboard(index: int, **overrides) -> Storyboard:
    values = dict(
        id=f"sb{index}",
        title=f"分镜{index}",
        concept=f"构思{index}",
        visual_description=f"画面{index}",
        marketing_angle=f"卖点{index}",
        copy_text=f"文案{index}",
        font_size="大字号",
        placement="左上角",
        prominence="高",
    )
    values.update(overrides)
    return Storyboard(**values)


def storyboard_json(index: int, **overrides) -> dict:
    return make_storyboard(index, **overrides).model_dump(by_alias=True)


def analysis_json(count: int = 6, **overrides) -> str:
    body = {
        "physical_features": "哑光白色陶瓷杯身，圆柱形",
        "global_font_options": ["思源黑体", "站酷高端黑"],
        "storyboards": [storyboard_json(i) for i in range(1, count + 1)],
    }
    body.update(overrides)
    return json.dumps(body, ensure_ascii=False)


def constitution_json(**overrides) -> str:
    body = {
        "style": "极简北欧",
        "lighting": "左侧柔光",
        "color": "奶白与浅灰",
        "composition": "居中留白",
        "texture": "细腻哑光",
        "prompt_prefix": "极简北欧风格商业摄影",
    }
    body.update(overrides)
    return json.dumps(body, ensure_ascii=False)


def fusion_json(ids) -> str:
    results = [
        {
            "id": card_id,
            "title": f"标题-{card_id}",
            "concept": f"构思-{card_id}",
            "prompt": f"场景描述-{card_id}",
            "copy": "模型改写的文案",
            "font_size": "小字号",
            "placement": "右下角",
            "prominence": "低",
        }
        for card_id in ids
    ]
    return json.dumps({"results": results}, ensure_ascii=False)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> MemoryLedgerStore:
    s = MemoryLedgerStore()
    s.create_user("alice", credits=10, user_id="u1")
    s.create_user("admin", role="admin", credits=9999, user_id="admin-1")
    return s


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(gemini_api_key="test-key", data_dir=tmp_path)


@pytest.fixture
def image() -> ImagePart:
    return ImagePart(png_bytes("blue"))


@pytest.fixture
def constitution() -> VisualConstitution:
    return VisualConstitution.model_validate_json(constitution_json())


@pytest.fixture
def analysis() -> ProductAnalysis:
    return ProductAnalysis(
        strategy_type=StrategyType.DETAIL,
        physical_features="哑光白色陶瓷杯身，圆柱形",
        global_font_options=["思源黑体", "站酷高端黑"],
        storyboards=[make_storyboard(i) for i in range(1, 7)],
        prohibited_elements="塑料反光",
    )


@pytest.fixture
def prompts(analysis) -> List[FinalPrompt]:
    return [
        FinalPrompt(
            id=sb.id,
            title=sb.title,
            concept=sb.concept,
            prompt=f"场景描述-{sb.id}",
            copy_text=sb.copy_text,
            font_size=sb.font_size,
            placement=sb.placement,
            prominence=sb.prominence,
        )
        for sb in analysis.storyboards
    ]


@pytest.fixture
def plan(constitution, analysis, prompts) -> GenerationPlan:
    return GenerationPlan(
        constitution=constitution,
        analysis=analysis,
        prompts=prompts,
        font="思源黑体",
    )
