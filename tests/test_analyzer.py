from __future__ import annotations

import json

import pytest

from visual_lab.analyzer import (
    AnalysisStatus,
    analyze_product,
    build_analysis_request,
    coerce_analysis,
)
from visual_lab.errors import AnalysisFailed
from visual_lab.images import ImagePart
from visual_lab.models import StrategyType
from visual_lab.prompts import DETAIL_BEATS, FALLBACK_FONT, MAIN_IMAGE_COMPOSITIONS, PLACEHOLDER_FEATURES

from conftest import analysis_json, png_bytes, storyboard_json


def test_full_response_is_ok(gateway, image):
    gateway.push(analysis_json())
    result = analyze_product(gateway, [image], "卖点:保温", StrategyType.DETAIL)

    assert result.status is AnalysisStatus.OK
    assert result.warnings == []
    assert [sb.id for sb in result.analysis.storyboards] == [f"sb{i}" for i in range(1, 7)]
    assert result.analysis.strategy_type is StrategyType.DETAIL
    assert result.analysis.global_font_options[0] == "思源黑体"


def test_extra_storyboards_are_truncated(gateway, image):
    gateway.push(analysis_json(count=8))
    result = analyze_product(gateway, [image], "", StrategyType.DETAIL)
    assert len(result.analysis.storyboards) == 6
    assert result.analysis.storyboards[-1].id == "sb6"


def test_short_response_is_padded_and_degraded(gateway, image):
    gateway.push(analysis_json(count=4))
    result = analyze_product(gateway, [image], "", StrategyType.DETAIL)

    assert result.status is AnalysisStatus.DEGRADED
    storyboards = result.analysis.storyboards
    assert len(storyboards) == 6
    assert [sb.title for sb in storyboards[4:]] == [DETAIL_BEATS[4][0], DETAIL_BEATS[5][0]]
    assert len({sb.id for sb in storyboards}) == 6


def test_main_image_padding_uses_composition_template():
    raw = json.loads(analysis_json(count=0))
    result = coerce_analysis(raw, StrategyType.MAIN_IMAGE)
    assert [sb.title for sb in result.analysis.storyboards] == [t for t, _ in MAIN_IMAGE_COMPOSITIONS]


def test_missing_features_and_fonts_get_defaults():
    raw = json.loads(analysis_json())
    del raw["physical_features"]
    raw["global_font_options"] = []
    result = coerce_analysis(raw, StrategyType.DETAIL)

    assert result.status is AnalysisStatus.DEGRADED
    assert result.analysis.physical_features == PLACEHOLDER_FEATURES
    assert result.analysis.global_font_options == [FALLBACK_FONT]


def test_duplicate_and_missing_ids_are_reassigned():
    raw = {
        "physical_features": "x",
        "global_font_options": ["f"],
        "storyboards": [
            storyboard_json(1),
            storyboard_json(2, id="sb1"),
            storyboard_json(3, id=""),
            storyboard_json(4),
            storyboard_json(5),
            storyboard_json(6),
        ],
    }
    result = coerce_analysis(raw, StrategyType.DETAIL)
    ids = [sb.id for sb in result.analysis.storyboards]

    assert len(set(ids)) == 6
    assert ids[0] == "sb1"
    assert result.status is AnalysisStatus.DEGRADED


def test_malformed_entries_are_skipped():
    raw = json.loads(analysis_json(count=5))
    raw["storyboards"].insert(0, "not an object")
    result = coerce_analysis(raw, StrategyType.DETAIL)
    assert len(result.analysis.storyboards) == 6
    assert result.analysis.storyboards[0].id == "sb1"


def test_non_json_response_fails(gateway, image):
    gateway.push("抱歉，我无法处理")
    with pytest.raises(AnalysisFailed):
        analyze_product(gateway, [image], "", StrategyType.DETAIL)


@pytest.mark.parametrize("count", [0, 7])
def test_product_image_count_bounds(gateway, image, count):
    with pytest.raises(ValueError):
        analyze_product(gateway, [image] * count, "", StrategyType.DETAIL)
    assert gateway.calls == []


def test_composition_reference_only_used_for_main_image(image):
    ref = ImagePart(png_bytes("black"))
    main = build_analysis_request([image], "c", StrategyType.MAIN_IMAGE, "m", composition_reference=ref)
    detail = build_analysis_request([image], "c", StrategyType.DETAIL, "m", composition_reference=ref)

    assert ref in main.parts
    assert ref not in detail.parts
    assert main.strict is False
