from __future__ import annotations

import pytest

from visual_lab.errors import AnalysisFailed, GatewayUnavailable, Unauthorized
from visual_lab.style_decoder import decode_style

from conftest import constitution_json


def test_decode_style_returns_all_six_fields(gateway, image):
    gateway.push(constitution_json(style="  极简北欧  "))
    constitution = decode_style(gateway, image, model="gemini-3-flash-preview")

    assert constitution.empty_fields() == []
    assert constitution.style == "极简北欧"

    request, credential = gateway.calls[0]
    assert request.parts[0] == image
    assert request.model == "gemini-3-flash-preview"
    assert credential is None


def test_decode_style_passes_credential(gateway, image):
    gateway.push(constitution_json())
    decode_style(gateway, image, credential="user-key")
    assert gateway.calls[0][1] == "user-key"


def test_empty_field_fails(gateway, image):
    gateway.push(constitution_json(texture="   "))
    with pytest.raises(AnalysisFailed, match="texture"):
        decode_style(gateway, image)


def test_malformed_response_fails(gateway, image):
    gateway.push("not json at all")
    with pytest.raises(AnalysisFailed):
        decode_style(gateway, image)


@pytest.mark.parametrize("exc", [Unauthorized("bad key"), GatewayUnavailable("503")])
def test_gateway_errors_propagate(gateway, image, exc):
    gateway.push(exc)
    with pytest.raises(type(exc)):
        decode_style(gateway, image)
