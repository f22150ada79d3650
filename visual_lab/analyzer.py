"""
Product Analyzer — turns 1–6 product photos plus free-text constraints into
a ProductAnalysis: physical features, candidate fonts and exactly 6
storyboards.

The model is probabilistic, so a partial answer is repaired rather than
rejected: missing features / fonts get placeholders, a short storyboard list
is padded from the strategy's beat template, extra storyboards are dropped.
The result is tagged DEGRADED whenever a default was substituted. Only a
body that is not a JSON object at all fails the call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from rich.console import Console

from .config import DEFAULT_ANALYSIS_MODEL
from .errors import AnalysisFailed, SchemaViolation
from .gateway import ModelGateway, ModelRequest, Part
from .images import ImagePart
from .models import AnalysisResponse, ProductAnalysis, Storyboard, StrategyType
from .prompts import (
    COMPOSITION_REF_LABEL,
    DETAIL_BEATS,
    DETAIL_USER_PROMPT,
    FALLBACK_FONT,
    MAIN_IMAGE_COMPOSITIONS,
    MAIN_IMAGE_USER_PROMPT,
    MAIN_IMAGE_USER_PROMPT_WITH_REF,
    PLACEHOLDER_FEATURES,
    detail_system_prompt,
    main_image_system_prompt,
)

console = Console()

STORYBOARD_COUNT = 6
MAX_PRODUCT_IMAGES = 6

# JSON key → Storyboard attribute
_STORYBOARD_KEYS = {
    "id": "id",
    "title": "title",
    "concept": "concept",
    "visual_description": "visual_description",
    "marketing_angle": "marketing_angle",
    "copy": "copy_text",
    "font_size": "font_size",
    "placement": "placement",
    "prominence": "prominence",
}


# ── Result model ──────────────────────────────────────────────────────────────

class AnalysisStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class AnalysisResult:
    status: AnalysisStatus
    analysis: Optional[ProductAnalysis] = None
    warnings: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def usable(self) -> bool:
        return self.analysis is not None

    @classmethod
    def failed(cls, reason: str) -> "AnalysisResult":
        return cls(status=AnalysisStatus.FAILED, reason=reason)


# ── Analyzer ──────────────────────────────────────────────────────────────────

def analyze_product(
    gateway: ModelGateway,
    product_images: Sequence[ImagePart],
    constraints: str,
    strategy: StrategyType,
    model: str = DEFAULT_ANALYSIS_MODEL,
    composition_reference: Optional[ImagePart] = None,
    credential: Optional[str] = None,
) -> AnalysisResult:
    """
    Analyze product photos for the chosen strategy.

    Args:
        gateway:               Model gateway
        product_images:        1–6 product photos
        constraints:           Free-text selling points / allowed / prohibited elements
        strategy:              DETAIL or MAIN_IMAGE
        model:                 Analysis model id
        composition_reference: MAIN_IMAGE only — reuse this image's composition, not its content
        credential:            User-supplied API key (falls back to the gateway default)

    Returns:
        AnalysisResult tagged OK or DEGRADED

    Raises:
        AnalysisFailed: the response could not be decoded as a JSON object
    """
    if not 1 <= len(product_images) <= MAX_PRODUCT_IMAGES:
        raise ValueError(f"expected 1–{MAX_PRODUCT_IMAGES} product images, got {len(product_images)}")

    console.print(
        f"\n[bold cyan]→ Analyzing {len(product_images)} product image(s) "
        f"for {strategy.label}...[/bold cyan]"
    )
    request = build_analysis_request(
        product_images, constraints, strategy, model, composition_reference
    )
    try:
        raw = gateway.invoke(request, credential=credential)
    except SchemaViolation as exc:
        raise AnalysisFailed(f"产品解析结果格式错误: {exc}") from exc

    result = coerce_analysis(raw, strategy)
    if result.status is AnalysisStatus.DEGRADED:
        for warning in result.warnings:
            console.print(f"  [yellow]⚠ {warning}[/yellow]")
    console.print(
        f"  [green]✓ {len(result.analysis.storyboards)} storyboards[/green] "
        f"[dim]({result.status.value})[/dim]"
    )
    return result


def build_analysis_request(
    product_images: Sequence[ImagePart],
    constraints: str,
    strategy: StrategyType,
    model: str,
    composition_reference: Optional[ImagePart] = None,
) -> ModelRequest:
    parts: List[Part] = list(product_images)
    if strategy is StrategyType.DETAIL:
        system_instruction = detail_system_prompt()
        parts.append(DETAIL_USER_PROMPT.format(constraints=constraints))
    else:
        system_instruction = main_image_system_prompt()
        if composition_reference is not None:
            parts.append(COMPOSITION_REF_LABEL)
            parts.append(composition_reference)
            parts.append(MAIN_IMAGE_USER_PROMPT_WITH_REF.format(constraints=constraints))
        else:
            parts.append(MAIN_IMAGE_USER_PROMPT.format(constraints=constraints))

    return ModelRequest(
        parts=parts,
        model=model,
        schema=AnalysisResponse,
        system_instruction=system_instruction,
        strict=False,
        label=f"analysis:{strategy.value}",
    )


# ── Repair ────────────────────────────────────────────────────────────────────

def coerce_analysis(raw: dict, strategy: StrategyType) -> AnalysisResult:
    """Build a ProductAnalysis from a decoded response, substituting defaults where needed."""
    warnings: List[str] = []

    features = _text(raw.get("physical_features"))
    if not features:
        features = PLACEHOLDER_FEATURES
        warnings.append("no physical features returned, using placeholder")

    fonts_raw = raw.get("global_font_options")
    fonts = [_text(f) for f in fonts_raw if _text(f)] if isinstance(fonts_raw, list) else []
    if not fonts:
        fonts = [FALLBACK_FONT]
        warnings.append("no font suggestions returned, using fallback font")

    items = raw.get("storyboards")
    if not isinstance(items, list):
        items = []
        warnings.append("storyboards missing from response")

    storyboards: List[Storyboard] = []
    for item in items:
        if len(storyboards) == STORYBOARD_COUNT:
            console.print(
                f"  [dim]model returned {len(items)} storyboards, keeping first {STORYBOARD_COUNT}[/dim]"
            )
            break
        if not isinstance(item, dict):
            warnings.append(f"skipped malformed storyboard entry ({type(item).__name__})")
            continue
        values = {attr: _text(item.get(key)) for key, attr in _STORYBOARD_KEYS.items()}
        if not any(v for k, v in values.items() if k != "id"):
            warnings.append("skipped empty storyboard entry")
            continue
        missing = [key for key, attr in _STORYBOARD_KEYS.items() if key != "id" and not values[attr]]
        if missing:
            warnings.append(f"storyboard {values['id'] or len(storyboards) + 1} missing {', '.join(missing)}")
        storyboards.append(Storyboard(**values))

    _assign_unique_ids(storyboards, warnings)

    if len(storyboards) < STORYBOARD_COUNT:
        warnings.append(
            f"model returned {len(storyboards)} usable storyboard(s), "
            f"padded to {STORYBOARD_COUNT} from the {strategy.value} template"
        )
        storyboards.extend(_placeholder_storyboards(strategy, storyboards))

    analysis = ProductAnalysis(
        strategy_type=strategy,
        physical_features=features,
        global_font_options=fonts,
        storyboards=storyboards,
    )
    status = AnalysisStatus.DEGRADED if warnings else AnalysisStatus.OK
    return AnalysisResult(status=status, analysis=analysis, warnings=warnings)


def _text(value) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _assign_unique_ids(storyboards: List[Storyboard], warnings: List[str]) -> None:
    seen = set()
    for index, sb in enumerate(storyboards, 1):
        if sb.id and sb.id not in seen:
            seen.add(sb.id)
            continue
        new_id = _free_id(index, seen | {s.id for s in storyboards})
        warnings.append(f"storyboard {index} had {'duplicate' if sb.id else 'no'} id, assigned {new_id}")
        sb.id = new_id
        seen.add(new_id)


def _free_id(index: int, taken) -> str:
    candidate = f"sb{index}"
    while candidate in taken:
        index += 1
        candidate = f"sb{index}"
    return candidate


def _placeholder_storyboards(strategy: StrategyType, existing: List[Storyboard]) -> List[Storyboard]:
    template = DETAIL_BEATS if strategy is StrategyType.DETAIL else MAIN_IMAGE_COMPOSITIONS
    taken = {sb.id for sb in existing}
    padded: List[Storyboard] = []
    for position in range(len(existing), STORYBOARD_COUNT):
        title, focus = template[position]
        sb_id = _free_id(position + 1, taken)
        taken.add(sb_id)
        padded.append(Storyboard(
            id=sb_id,
            title=title,
            concept=focus,
            visual_description=focus,
            marketing_angle=focus,
            copy_text=title,
            font_size="中字号",
            placement="画面上方",
            prominence="中",
        ))
    return padded
