from __future__ import annotations

import json

import pytest

from visual_lab.errors import AnalysisFailed, GatewayUnavailable
from visual_lab.fuser import build_fusion_context, fuse_prompts, regenerate_prompt

from conftest import fusion_json


def test_prompts_follow_storyboard_ids_and_order(gateway, constitution, analysis):
    ids = [sb.id for sb in analysis.storyboards]
    gateway.push(fusion_json(list(reversed(ids))))

    prompts = fuse_prompts(gateway, constitution, analysis)

    assert [p.id for p in prompts] == ids
    assert prompts[0].prompt == "场景描述-sb1"


def test_marketing_fields_pinned_to_storyboard(gateway, constitution, analysis):
    gateway.push(fusion_json([sb.id for sb in analysis.storyboards]))
    prompts = fuse_prompts(gateway, constitution, analysis)

    for p, sb in zip(prompts, analysis.storyboards):
        assert p.copy_text == sb.copy_text
        assert p.placement == sb.placement
        assert p.font_size == sb.font_size
        assert p.prominence == sb.prominence


def test_missing_ids_are_absent_and_unknown_ids_dropped(gateway, constitution, analysis):
    gateway.push(fusion_json(["sb1", "sb2", "sb4", "sb5", "sb6", "sb99", "sb1"]))
    prompts = fuse_prompts(gateway, constitution, analysis)

    assert [p.id for p in prompts] == ["sb1", "sb2", "sb4", "sb5", "sb6"]
    assert {p.id for p in prompts} <= {sb.id for sb in analysis.storyboards}


def test_empty_prompt_entries_are_ignored(gateway, constitution, analysis):
    body = json.loads(fusion_json(["sb1", "sb2"]))
    body["results"][1]["prompt"] = "  "
    gateway.push(json.dumps(body, ensure_ascii=False))

    assert [p.id for p in fuse_prompts(gateway, constitution, analysis)] == ["sb1"]


def test_malformed_fusion_fails(gateway, constitution, analysis):
    gateway.push('{"results": "nope"}')
    with pytest.raises(AnalysisFailed):
        fuse_prompts(gateway, constitution, analysis)


def test_fusion_context_carries_style_and_exclusions(constitution, analysis):
    context = build_fusion_context(constitution, analysis)
    assert constitution.prompt_prefix in context
    assert "塑料反光" in context
    assert '"copy": "文案1"' in context


def test_regenerate_returns_clean_text(gateway, constitution, analysis):
    gateway.push("```\n“晨光中的白瓷杯，柔和侧光”\n```")
    text = regenerate_prompt(gateway, constitution, analysis.storyboards[0], analysis)

    assert text == "晨光中的白瓷杯，柔和侧光"
    request, _ = gateway.calls[0]
    assert request.temperature == 1.0
    assert request.schema is None


def test_regenerate_empty_text_fails(gateway, constitution, analysis):
    gateway.push("   ")
    with pytest.raises(AnalysisFailed):
        regenerate_prompt(gateway, constitution, analysis.storyboards[0], analysis)


def test_regenerate_gateway_error_propagates(gateway, constitution, analysis):
    gateway.push(GatewayUnavailable("timeout"))
    with pytest.raises(GatewayUnavailable):
        regenerate_prompt(gateway, constitution, analysis.storyboards[0], analysis)
