"""
Prompt Fuser — combines a VisualConstitution with a ProductAnalysis into one
FinalPrompt per storyboard, and rewrites a single prompt on request.

  fuse_prompts(...)       → List[FinalPrompt] (storyboard order, ids ⊆ storyboard ids)
  regenerate_prompt(...)  → str
"""

from __future__ import annotations

import json
from typing import Dict, List, Optional

from rich.console import Console

from .config import DEFAULT_ANALYSIS_MODEL
from .errors import AnalysisFailed, SchemaViolation
from .gateway import ModelGateway, ModelRequest
from .models import FinalPrompt, FusionResponse, ProductAnalysis, Storyboard, VisualConstitution
from .prompts import (
    FUSION_SYSTEM_PROMPT,
    FUSION_USER_TEMPLATE,
    REGENERATE_SYSTEM_PROMPT,
    REGENERATE_USER_TEMPLATE,
)

console = Console()


def fuse_prompts(
    gateway: ModelGateway,
    constitution: VisualConstitution,
    analysis: ProductAnalysis,
    model: str = DEFAULT_ANALYSIS_MODEL,
    credential: Optional[str] = None,
) -> List[FinalPrompt]:
    """
    Fuse style and storyboards into generation-ready prompts.

    Ids the model leaves out are simply absent from the result (the card is
    "not yet generated"); ids it invents are dropped.

    Raises:
        AnalysisFailed: the response did not validate against FusionResponse
    """
    console.print(
        f"\n[bold cyan]→ Fusing style with {len(analysis.storyboards)} storyboards...[/bold cyan]"
    )
    request = ModelRequest(
        parts=[build_fusion_context(constitution, analysis)],
        model=model,
        schema=FusionResponse,
        system_instruction=FUSION_SYSTEM_PROMPT,
        label="fusion",
    )
    try:
        response = gateway.invoke(request, credential=credential)
    except SchemaViolation as exc:
        raise AnalysisFailed(f"方案融合结果格式错误: {exc}") from exc

    prompts = align_prompts(response.results, analysis.storyboards)
    missing = [sb.id for sb in analysis.storyboards if sb.id not in {p.id for p in prompts}]
    if missing:
        console.print(f"  [yellow]⚠ no prompt for storyboard(s): {', '.join(missing)}[/yellow]")
    console.print(f"  [green]✓ {len(prompts)} final prompts[/green]")
    return prompts


def build_fusion_context(constitution: VisualConstitution, analysis: ProductAnalysis) -> str:
    storyboards = [sb.model_dump(by_alias=True) for sb in analysis.storyboards]
    return FUSION_USER_TEMPLATE.format(
        mode=analysis.strategy_type.label,
        style=constitution.style,
        lighting=constitution.lighting,
        color=constitution.color,
        composition=constitution.composition,
        texture=constitution.texture,
        prefix=constitution.prompt_prefix,
        prohibited=analysis.prohibited_elements or "无",
        storyboards=json.dumps(storyboards, ensure_ascii=False),
    )


def align_prompts(results: List[FinalPrompt], storyboards: List[Storyboard]) -> List[FinalPrompt]:
    """
    Order fused prompts by storyboard and pin the marketing fields to the storyboard.

    The storyboard stays authoritative for copy / font size / placement /
    prominence; the model only contributes the prompt (and title / concept
    wording when it supplies them).
    """
    by_id: Dict[str, FinalPrompt] = {}
    for result in results:
        if result.id not in by_id and result.prompt.strip():
            by_id[result.id] = result

    aligned: List[FinalPrompt] = []
    for sb in storyboards:
        fused = by_id.get(sb.id)
        if fused is None:
            continue
        aligned.append(FinalPrompt(
            id=sb.id,
            title=fused.title.strip() or sb.title,
            concept=fused.concept.strip() or sb.concept,
            prompt=fused.prompt.strip(),
            copy_text=sb.copy_text,
            font_size=sb.font_size,
            placement=sb.placement,
            prominence=sb.prominence,
        ))
    return aligned


def regenerate_prompt(
    gateway: ModelGateway,
    constitution: VisualConstitution,
    storyboard: Storyboard,
    analysis: ProductAnalysis,
    model: str = DEFAULT_ANALYSIS_MODEL,
    credential: Optional[str] = None,
) -> str:
    """
    Write a fresh prompt for one storyboard, keeping its copy and placement.

    Raises on any failure; callers keep the previous prompt in that case.
    """
    context = REGENERATE_USER_TEMPLATE.format(
        mode=analysis.strategy_type.label,
        style=constitution.style,
        prefix=constitution.prompt_prefix,
        features=analysis.physical_features,
        prohibited=analysis.prohibited_elements or "无",
        storyboard=json.dumps(storyboard.model_dump(by_alias=True), ensure_ascii=False),
    )
    request = ModelRequest(
        parts=[context],
        model=model,
        system_instruction=REGENERATE_SYSTEM_PROMPT,
        temperature=1.0,
        label=f"regenerate:{storyboard.id}",
    )
    text = _clean_prompt_text(gateway.invoke(request, credential=credential))
    if not text:
        raise AnalysisFailed(f"empty prompt returned for storyboard {storyboard.id}")
    console.print(f"  [green]✓ prompt regenerated[/green] → {storyboard.id}")
    return text


def _clean_prompt_text(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
    return text.strip().strip('"“”').strip()
