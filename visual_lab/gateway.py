"""
gateway.py — Single entry point for every Gemini call.

  ModelGateway.invoke(request) → parsed pydantic model | dict | str | ImagePart

A ModelRequest is an ordered list of parts (text or inline image), a model
id, an optional response schema and, for renders, an image config. Failures
are normalised to GatewayUnavailable / Unauthorized / SchemaViolation.
The gateway never retries; callers own the retry decision because only they
know what a repeated call costs.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Type, Union

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, ValidationError

from .config import ASPECT_RATIOS
from .errors import (
    GatewayError,
    GatewayUnavailable,
    ImageMissing,
    SchemaViolation,
    Unauthorized,
)
from .images import ImagePart

logger = logging.getLogger(__name__)

Part = Union[str, ImagePart]
ClientFactory = Callable[[str], Any]

# How the hosted key picker reports a missing or revoked paid key
_CREDENTIAL_MARKERS = ("api key not valid", "api_key_invalid", "requested entity was not found")


# ── Request model ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ImageSpec:
    """Output configuration for image-producing calls."""
    aspect_ratio: str = "1:1"
    image_size: Optional[str] = None     # size tier, e.g. "1K"; None = model default

    def __post_init__(self) -> None:
        if self.aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(
                f"aspect ratio {self.aspect_ratio!r} not one of {', '.join(ASPECT_RATIOS)}"
            )


@dataclass
class ModelRequest:
    parts: List[Part]
    model: str
    schema: Optional[Type[BaseModel]] = None
    system_instruction: str = ""
    image: Optional[ImageSpec] = None
    # strict=False: return the decoded JSON object and let the caller validate it
    strict: bool = True
    temperature: Optional[float] = None
    label: str = field(default="", compare=False)


# ── Gateway ───────────────────────────────────────────────────────────────────

class ModelGateway:
    """Wraps google-genai. One client per call, keyed by the credential in use."""

    def __init__(self, api_key: str = "", client_factory: Optional[ClientFactory] = None) -> None:
        self.api_key = api_key
        self._client_factory = client_factory or (lambda key: genai.Client(api_key=key))

    def invoke(self, request: ModelRequest, credential: Optional[str] = None):
        key = credential or self.api_key
        if not key:
            raise Unauthorized("未配置 API Key — set GEMINI_API_KEY or supply a credential")

        client = self._client_factory(key)
        contents = [_to_genai_part(p) for p in request.parts]
        logger.debug(
            "gemini call %s model=%s parts=%d schema=%s image=%s",
            request.label or "-", request.model, len(contents),
            request.schema.__name__ if request.schema else None, request.image,
        )

        try:
            response = client.models.generate_content(
                model=request.model,
                contents=contents,
                config=_build_config(request),
            )
        except genai_errors.APIError as exc:
            raise _normalise_api_error(exc) from exc
        except (httpx.TransportError, ConnectionError, TimeoutError) as exc:
            raise GatewayUnavailable(f"{type(exc).__name__}: {exc}") from exc

        if request.image is not None:
            return _extract_image(response)

        text = (response.text or "").strip()
        if request.schema is None:
            return text
        return parse_structured(text, request.schema, strict=request.strict)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _to_genai_part(part: Part) -> types.Part:
    if isinstance(part, ImagePart):
        return types.Part.from_bytes(data=part.data, mime_type=part.mime_type)
    return types.Part.from_text(text=part)


def _build_config(request: ModelRequest) -> types.GenerateContentConfig:
    kwargs: dict = {}
    if request.system_instruction:
        kwargs["system_instruction"] = request.system_instruction
    if request.temperature is not None:
        kwargs["temperature"] = request.temperature
    if request.image is not None:
        kwargs["response_modalities"] = ["IMAGE", "TEXT"]
        kwargs["image_config"] = types.ImageConfig(
            aspect_ratio=request.image.aspect_ratio,
            image_size=request.image.image_size,
        )
    elif request.schema is not None:
        kwargs["response_mime_type"] = "application/json"
        kwargs["response_schema"] = request.schema
    return types.GenerateContentConfig(**kwargs)


def _normalise_api_error(exc: genai_errors.APIError) -> GatewayError:
    message = f"{exc.code} {exc.status or ''}: {exc.message or exc}".strip()
    lowered = str(exc).lower()
    if exc.code in (401, 403) or any(m in lowered for m in _CREDENTIAL_MARKERS):
        return Unauthorized(message)
    return GatewayUnavailable(message)


def _strip_fences(text: str) -> str:
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
    return text.strip()


def parse_structured(text: str, schema: Type[BaseModel], strict: bool = True):
    """
    Decode a JSON response body.

    strict=True  → validated instance of `schema`
    strict=False → the raw decoded object (must be a JSON object)
    """
    if not text:
        raise SchemaViolation(f"empty response, expected {schema.__name__}")
    try:
        data = json.loads(_strip_fences(text))
    except json.JSONDecodeError as exc:
        raise SchemaViolation(f"response is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SchemaViolation(f"expected a JSON object for {schema.__name__}, got {type(data).__name__}")
    if not strict:
        return data
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise SchemaViolation(f"{schema.__name__}: {exc.error_count()} validation error(s)") from exc


def _extract_image(response) -> ImagePart:
    for candidate in response.candidates or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline and inline.data:
                data = inline.data
                if isinstance(data, str):
                    data = base64.b64decode(data)
                return ImagePart(data=data, mime_type=inline.mime_type or "image/png")
    raise ImageMissing("render call returned no inline image")
