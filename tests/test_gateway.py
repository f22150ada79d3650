from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest
from google.genai import errors as genai_errors

from visual_lab.errors import GatewayUnavailable, ImageMissing, SchemaViolation, Unauthorized
from visual_lab.gateway import ImageSpec, ModelGateway, ModelRequest, parse_structured
from visual_lab.images import ImagePart
from visual_lab.models import VisualConstitution

from conftest import constitution_json, png_bytes


class FakeModels:
    def __init__(self, outcome):
        self.outcome = outcome
        self.kwargs = None

    def generate_content(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


class FakeClient:
    def __init__(self, outcome):
        self.models = FakeModels(outcome)


def make_gateway(outcome, api_key="server-key"):
    client = FakeClient(outcome)
    keys = []

    def factory(key):
        keys.append(key)
        return client

    return ModelGateway(api_key=api_key, client_factory=factory), client, keys


def text_response(text):
    return SimpleNamespace(text=text, candidates=[])


def image_response(data, mime="image/png"):
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime), text=None)
    return SimpleNamespace(text=None, candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def test_text_call_returns_stripped_text():
    gw, client, _ = make_gateway(text_response("  新的提示词 \n"))
    assert gw.invoke(ModelRequest(parts=["hi"], model="m")) == "新的提示词"
    assert client.models.kwargs["model"] == "m"


def test_structured_call_validates_schema():
    gw, client, _ = make_gateway(text_response(constitution_json()))
    result = gw.invoke(ModelRequest(parts=["x"], model="m", schema=VisualConstitution))
    assert isinstance(result, VisualConstitution)
    assert result.style == "极简北欧"
    assert client.models.kwargs["config"].response_mime_type == "application/json"


def test_user_credential_takes_precedence_over_server_key():
    gw, _, keys = make_gateway(text_response("ok"))
    gw.invoke(ModelRequest(parts=["x"], model="m"), credential="user-key")
    gw.invoke(ModelRequest(parts=["x"], model="m"))
    assert keys == ["user-key", "server-key"]


def test_missing_key_is_unauthorized():
    gw, _, keys = make_gateway(text_response("ok"), api_key="")
    with pytest.raises(Unauthorized):
        gw.invoke(ModelRequest(parts=["x"], model="m"))
    assert keys == []


def test_image_call_returns_inline_image():
    data = png_bytes()
    gw, client, _ = make_gateway(image_response(data))
    request = ModelRequest(
        parts=["render", ImagePart(png_bytes("green"))],
        model="gemini-3-pro-image-preview",
        image=ImageSpec(aspect_ratio="16:9", image_size="1K"),
    )
    result = gw.invoke(request)
    assert result == ImagePart(data=data, mime_type="image/png")
    config = client.models.kwargs["config"]
    assert config.image_config.aspect_ratio == "16:9"
    assert config.image_config.image_size == "1K"
    assert len(client.models.kwargs["contents"]) == 2


def test_image_call_without_image_part_raises_image_missing():
    part = SimpleNamespace(inline_data=None, text="sorry, no image")
    response = SimpleNamespace(text="sorry", candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])
    gw, _, _ = make_gateway(response)
    with pytest.raises(ImageMissing):
        gw.invoke(ModelRequest(parts=["render"], model="m", image=ImageSpec()))


def test_invalid_aspect_ratio_rejected():
    with pytest.raises(ValueError):
        ImageSpec(aspect_ratio="2:1")


def test_auth_error_maps_to_unauthorized():
    exc = genai_errors.ClientError(
        401, {"error": {"code": 401, "message": "API key not valid.", "status": "UNAUTHENTICATED"}}
    )
    gw, _, _ = make_gateway(exc)
    with pytest.raises(Unauthorized) as info:
        gw.invoke(ModelRequest(parts=["x"], model="m"))
    assert info.value.needs_credential


def test_entity_not_found_maps_to_unauthorized():
    exc = genai_errors.ClientError(
        404, {"error": {"code": 404, "message": "Requested entity was not found.", "status": "NOT_FOUND"}}
    )
    gw, _, _ = make_gateway(exc)
    with pytest.raises(Unauthorized):
        gw.invoke(ModelRequest(parts=["x"], model="m"))


def test_server_error_maps_to_unavailable():
    exc = genai_errors.ServerError(
        503, {"error": {"code": 503, "message": "The model is overloaded.", "status": "UNAVAILABLE"}}
    )
    gw, _, _ = make_gateway(exc)
    with pytest.raises(GatewayUnavailable):
        gw.invoke(ModelRequest(parts=["x"], model="m"))


def test_transport_error_maps_to_unavailable():
    gw, _, _ = make_gateway(httpx.ConnectError("connection refused"))
    with pytest.raises(GatewayUnavailable):
        gw.invoke(ModelRequest(parts=["x"], model="m"))


# ── parse_structured ──────────────────────────────────────────────────────────

def test_parse_structured_strips_markdown_fence():
    text = "```json\n" + constitution_json() + "\n```"
    assert parse_structured(text, VisualConstitution).lighting == "左侧柔光"


def test_parse_structured_non_json_is_schema_violation():
    with pytest.raises(SchemaViolation):
        parse_structured("I cannot help with that", VisualConstitution)


def test_parse_structured_requires_object():
    with pytest.raises(SchemaViolation):
        parse_structured("[1, 2, 3]", VisualConstitution)


def test_parse_structured_missing_field_is_schema_violation():
    with pytest.raises(SchemaViolation):
        parse_structured('{"style": "x"}', VisualConstitution)


def test_parse_structured_lenient_returns_dict():
    assert parse_structured('{"style": "x"}', VisualConstitution, strict=False) == {"style": "x"}
