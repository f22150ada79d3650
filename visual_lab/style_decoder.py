"""
Style Decoder — one multimodal Gemini call that turns a reference image
into a VisualConstitution (five style axes + a reusable prompt prefix).
"""

from __future__ import annotations

from typing import Optional

from rich.console import Console

from .config import DEFAULT_ANALYSIS_MODEL
from .errors import AnalysisFailed, SchemaViolation
from .gateway import ModelGateway, ModelRequest
from .images import ImagePart
from .models import VisualConstitution
from .prompts import STYLE_SYSTEM_PROMPT, STYLE_USER_PROMPT

console = Console()


def decode_style(
    gateway: ModelGateway,
    reference_image: ImagePart,
    model: str = DEFAULT_ANALYSIS_MODEL,
    credential: Optional[str] = None,
) -> VisualConstitution:
    """
    Decode the visual style of `reference_image`.

    Raises:
        AnalysisFailed: the response did not validate, or a field came back empty
        Unauthorized / GatewayUnavailable: passed through from the gateway
    """
    console.print("\n[bold cyan]→ Decoding visual style...[/bold cyan]")
    request = ModelRequest(
        parts=[reference_image, STYLE_USER_PROMPT],
        model=model,
        schema=VisualConstitution,
        system_instruction=STYLE_SYSTEM_PROMPT,
        label="style",
    )
    try:
        constitution = gateway.invoke(request, credential=credential)
    except SchemaViolation as exc:
        raise AnalysisFailed(f"视觉风格解析结果格式错误: {exc}") from exc

    empty = constitution.empty_fields()
    if empty:
        raise AnalysisFailed(f"visual constitution has empty field(s): {', '.join(empty)}")

    constitution = VisualConstitution(
        **{name: value.strip() for name, value in constitution.model_dump().items()}
    )
    console.print(
        f"  [green]✓ visual constitution[/green] — "
        f"style={constitution.style[:40]}, lighting={constitution.lighting[:40]}"
    )
    return constitution
