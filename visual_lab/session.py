"""
session.py — One merchant project: style → analysis → fusion → renders.

ProjectSession owns an explicit ProjectState and runs each pipeline phase
in a worker thread so an event loop (CLI, web handler) stays responsive.
Progress is reported through an optional callback. Analysis phases return
result dataclasses with success / error instead of raising; renders report
through per-card states on the orchestrator.

Phases:
  1. decode_style       reference image → VisualConstitution
  2. analyze            product images + constraints → ProductAnalysis (+ fusion if style is set)
  3. fuse               VisualConstitution + ProductAnalysis → 6 Final Prompts
  4. regenerate_prompt  rewrite one Final Prompt (previous text kept on failure)
  5. render / render_all
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .analyzer import AnalysisResult, AnalysisStatus, analyze_product
from .config import Settings, get_settings, is_elevated
from .credits import CostPolicy, CreditGate, flat_cost
from .errors import AnalysisFailed, CredentialRequired, UnknownCard, VisualLabError
from .fuser import fuse_prompts, regenerate_prompt
from .gateway import ModelGateway
from .images import ImagePart, safe_filename, save_png
from .ledger import MemoryLedgerStore
from .models import (
    EDITABLE_STORYBOARD_FIELDS,
    FinalPrompt,
    ProductAnalysis,
    StrategyType,
    VisualConstitution,
)
from .orchestrator import (
    CardState,
    CardStatus,
    GenerationOrchestrator,
    GenerationPlan,
    TransitionCallback,
)
from .prompts import combine_constraints
from .style_decoder import decode_style

ProgressCallback = Callable[[str], None]


# ── State ─────────────────────────────────────────────────────────────────────

@dataclass
class ProjectState:
    strategy: StrategyType = StrategyType.DETAIL
    constitution: Optional[VisualConstitution] = None
    analysis: Optional[ProductAnalysis] = None
    analysis_status: Optional[AnalysisStatus] = None
    analysis_warnings: List[str] = field(default_factory=list)
    prompts: List[FinalPrompt] = field(default_factory=list)
    selected_font: str = ""
    card_references: Dict[str, ImagePart] = field(default_factory=dict)


# ── Phase results ─────────────────────────────────────────────────────────────

@dataclass
class StylePhaseResult:
    success: bool
    constitution: Optional[VisualConstitution] = None
    error: str = ""
    needs_credential: bool = False
    elapsed_seconds: float = 0.0


@dataclass
class AnalysisPhaseResult:
    success: bool
    analysis: Optional[AnalysisResult] = None
    prompts: List[FinalPrompt] = field(default_factory=list)
    fusion_error: str = ""
    error: str = ""
    needs_credential: bool = False
    elapsed_seconds: float = 0.0


@dataclass
class FusionPhaseResult:
    success: bool
    prompts: List[FinalPrompt] = field(default_factory=list)
    error: str = ""
    needs_credential: bool = False
    elapsed_seconds: float = 0.0


@dataclass
class RegenerateResult:
    success: bool
    card_id: str
    prompt: str = ""             # current prompt text (unchanged on failure)
    error: str = ""


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


# ── Session ───────────────────────────────────────────────────────────────────

class ProjectSession:
    """Runs the pipeline for one user's project."""

    def __init__(
        self,
        gateway: ModelGateway,
        store: MemoryLedgerStore,
        user_id: str,
        settings: Optional[Settings] = None,
        credential: Optional[str] = None,
        cost_policy: CostPolicy = flat_cost,
        on_progress: Optional[ProgressCallback] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.store = store
        self.user_id = user_id
        self.credential = credential or None
        self.analysis_model = self.settings.analysis_model
        self.on_progress = on_progress
        self.state = ProjectState()
        self.orchestrator = GenerationOrchestrator(
            gateway,
            CreditGate(store, cost_policy),
            store,
            render_model=self.settings.render_model,
            on_transition=on_transition,
        )

    # ── Configuration ─────────────────────────────────────────────────────────

    def configure_credential(self, api_key: Optional[str]) -> None:
        self.credential = (api_key or "").strip() or None

    def select_models(
        self,
        analysis_model: Optional[str] = None,
        render_model: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
    ) -> None:
        if analysis_model:
            self.analysis_model = analysis_model
        if render_model:
            self.orchestrator.render_model = render_model
        if aspect_ratio:
            self.orchestrator.aspect_ratio = aspect_ratio

    def _check_analysis_credential(self) -> None:
        if is_elevated(analysis_model=self.analysis_model) and not self.credential:
            raise CredentialRequired(f"{self.analysis_model} needs your own paid API key")

    async def _in_thread(self, fn, *args, **kwargs):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _progress(self, msg: str) -> None:
        if self.on_progress:
            try:
                self.on_progress(msg)
            except Exception:
                pass

    # ── Phase 1: style ────────────────────────────────────────────────────────

    async def decode_style(self, reference_image: ImagePart) -> StylePhaseResult:
        start = time.time()
        self._progress("🎨 Decoding visual style...")
        try:
            self._check_analysis_credential()
            constitution = await self._in_thread(
                decode_style, self.gateway, reference_image,
                model=self.analysis_model, credential=self.credential,
            )
        except VisualLabError as exc:
            return StylePhaseResult(
                success=False,
                error=_describe(exc),
                needs_credential=exc.needs_credential,
                elapsed_seconds=time.time() - start,
            )
        self.state.constitution = constitution
        return StylePhaseResult(
            success=True, constitution=constitution, elapsed_seconds=time.time() - start
        )

    # ── Phase 2: analysis (+ fusion) ──────────────────────────────────────────

    async def analyze(
        self,
        product_images: Sequence[ImagePart],
        strategy: StrategyType = StrategyType.DETAIL,
        selling_points: str = "",
        allowed_elements: str = "",
        prohibited_elements: str = "",
        composition_reference: Optional[ImagePart] = None,
    ) -> AnalysisPhaseResult:
        """Analyze products; when a constitution exists, fuse prompts straight away."""
        start = time.time()
        self._progress("🔍 Analyzing product images...")
        self.state.strategy = strategy
        constraints = combine_constraints(selling_points, allowed_elements, prohibited_elements)
        try:
            self._check_analysis_credential()
            result: AnalysisResult = await self._in_thread(
                analyze_product, self.gateway, list(product_images), constraints, strategy,
                model=self.analysis_model,
                composition_reference=composition_reference,
                credential=self.credential,
            )
        except (VisualLabError, ValueError) as exc:
            return AnalysisPhaseResult(
                success=False,
                analysis=AnalysisResult.failed(_describe(exc)),
                error=_describe(exc),
                needs_credential=getattr(exc, "needs_credential", False),
                elapsed_seconds=time.time() - start,
            )

        analysis = result.analysis.model_copy(update={
            "selling_points": selling_points,
            "allowed_elements": allowed_elements,
            "prohibited_elements": prohibited_elements,
        })
        result.analysis = analysis
        self.state.analysis = analysis
        self.state.analysis_status = result.status
        self.state.analysis_warnings = list(result.warnings)
        self.state.selected_font = analysis.global_font_options[0]
        self.state.prompts = []
        self.state.card_references = {}
        self.orchestrator.reset()

        phase = AnalysisPhaseResult(success=True, analysis=result)
        if self.state.constitution is not None:
            fusion = await self.fuse()
            phase.prompts = fusion.prompts
            phase.fusion_error = fusion.error
            phase.needs_credential = fusion.needs_credential
        phase.elapsed_seconds = time.time() - start
        return phase

    # ── Phase 3: fusion ───────────────────────────────────────────────────────

    async def fuse(self) -> FusionPhaseResult:
        start = time.time()
        if self.state.constitution is None or self.state.analysis is None:
            return FusionPhaseResult(success=False, error="decode a style and analyze products first")
        self._progress("🧩 Fusing style and storyboards...")
        try:
            self._check_analysis_credential()
            prompts = await self._in_thread(
                fuse_prompts, self.gateway, self.state.constitution, self.state.analysis,
                model=self.analysis_model, credential=self.credential,
            )
        except VisualLabError as exc:
            return FusionPhaseResult(
                success=False,
                error=_describe(exc),
                needs_credential=exc.needs_credential,
                elapsed_seconds=time.time() - start,
            )
        self.state.prompts = prompts
        return FusionPhaseResult(success=True, prompts=prompts, elapsed_seconds=time.time() - start)

    # ── Phase 4: single prompt regeneration ───────────────────────────────────

    async def regenerate_prompt(self, card_id: str) -> RegenerateResult:
        """Rewrite one Final Prompt. On any failure the previous prompt stays in place."""
        card = self._prompt(card_id)
        previous = card.prompt
        if self.state.constitution is None or self.state.analysis is None:
            return RegenerateResult(success=False, card_id=card_id, prompt=previous,
                                    error="decode a style and analyze products first")
        try:
            storyboard = self.state.analysis.storyboard(card_id)
        except KeyError:
            return RegenerateResult(success=False, card_id=card_id, prompt=previous,
                                    error=f"storyboard {card_id} not found")

        self._progress(f"🔄 Regenerating prompt for {card.title}...")
        try:
            with self.orchestrator.hold(card_id):
                self._check_analysis_credential()
                text = await self._in_thread(
                    regenerate_prompt, self.gateway, self.state.constitution, storyboard,
                    self.state.analysis, model=self.analysis_model, credential=self.credential,
                )
        except VisualLabError as exc:
            return RegenerateResult(success=False, card_id=card_id, prompt=previous,
                                    error=_describe(exc))

        self.update_prompt(card_id, text)
        return RegenerateResult(success=True, card_id=card_id, prompt=text)

    # ── Phase 5: renders ──────────────────────────────────────────────────────

    def plan(self) -> GenerationPlan:
        if self.state.constitution is None or self.state.analysis is None:
            raise AnalysisFailed("no constitution / analysis to render from")
        return GenerationPlan(
            constitution=self.state.constitution,
            analysis=self.state.analysis,
            prompts=list(self.state.prompts),
            font=self.state.selected_font,
            card_references=dict(self.state.card_references),
            analysis_model=self.analysis_model,
        )

    async def render(self, card_id: str, override_reference: Optional[ImagePart] = None) -> Optional[ImagePart]:
        return await self.orchestrator.render_one(
            self.plan(), card_id, self.user_id,
            override_reference=override_reference, credential=self.credential,
        )

    async def render_all(self, global_reference: Optional[ImagePart] = None) -> Dict[str, CardState]:
        plan = self.plan()
        return await self.orchestrator.render_bulk(
            plan, plan.card_ids, self.user_id,
            global_reference=global_reference, credential=self.credential,
        )

    def card_states(self) -> Mapping[str, CardState]:
        return self.orchestrator.snapshot()

    # ── Edits ─────────────────────────────────────────────────────────────────

    def _prompt(self, card_id: str) -> FinalPrompt:
        for p in self.state.prompts:
            if p.id == card_id:
                return p
        raise UnknownCard(f"no final prompt with id {card_id!r}")

    def _replace_prompt(self, card_id: str, **changes) -> FinalPrompt:
        updated = self._prompt(card_id).model_copy(update=changes)
        self.state.prompts = [updated if p.id == card_id else p for p in self.state.prompts]
        return updated

    def update_prompt(self, card_id: str, text: str) -> FinalPrompt:
        return self._replace_prompt(card_id, prompt=text)

    def update_storyboard(self, storyboard_id: str, field_name: str, value: str) -> None:
        """Edit copy / placement / font_size of a storyboard (and its Final Prompt, if fused)."""
        attr = "copy_text" if field_name == "copy" else field_name
        if attr not in EDITABLE_STORYBOARD_FIELDS:
            raise ValueError(f"storyboard field {field_name!r} is not editable")
        analysis = self._require_analysis()
        try:
            storyboard = analysis.storyboard(storyboard_id).model_copy(update={attr: value})
        except KeyError:
            raise UnknownCard(f"no storyboard with id {storyboard_id!r}") from None
        self.state.analysis = analysis.model_copy(update={
            "storyboards": [storyboard if sb.id == storyboard_id else sb for sb in analysis.storyboards]
        })
        if any(p.id == storyboard_id for p in self.state.prompts):
            self._replace_prompt(storyboard_id, **{attr: value})

    def update_physical_features(self, text: str) -> None:
        analysis = self._require_analysis()
        self.state.analysis = analysis.model_copy(update={"physical_features": text})

    def update_constitution(self, **fields: str) -> VisualConstitution:
        if self.state.constitution is None:
            raise AnalysisFailed("no visual constitution to edit")
        unknown = set(fields) - set(VisualConstitution.model_fields)
        if unknown:
            raise ValueError(f"unknown constitution field(s): {', '.join(sorted(unknown))}")
        self.state.constitution = self.state.constitution.model_copy(update=fields)
        return self.state.constitution

    def select_font(self, font: str) -> None:
        if not font.strip():
            raise ValueError("font name cannot be empty")
        self.state.selected_font = font.strip()

    def set_card_reference(self, card_id: str, image: ImagePart) -> None:
        self._prompt(card_id)
        self.state.card_references[card_id] = image

    def clear_card_reference(self, card_id: str) -> None:
        self.state.card_references.pop(card_id, None)

    def _require_analysis(self) -> ProductAnalysis:
        if self.state.analysis is None:
            raise AnalysisFailed("no product analysis yet")
        return self.state.analysis

    # ── Summaries / export ────────────────────────────────────────────────────

    def card_summary(self, card_id: str) -> str:
        p = self._prompt(card_id)
        mode = "详情分镜" if self.state.strategy is StrategyType.DETAIL else "主图方案"
        return "\n".join([
            f"【视觉架构方案详情 - {p.title}】",
            f"模式：{mode}",
            f"策划构思：{p.concept}",
            f"核心文案：{p.copy_text}",
            f"排版布局：{p.placement} (建议字号: {p.font_size})",
            f"全局字体：{self.state.selected_font}",
            "AI 生图提示词 (PROMPT)：",
            p.prompt,
        ])

    def plan_summary(self) -> str:
        if not self.state.prompts:
            return ""
        kind = "详情全案" if self.state.strategy is StrategyType.DETAIL else "主图全案"
        prefix = self.state.constitution.prompt_prefix if self.state.constitution else "默认"
        rule = "-" * 48
        lines = [
            f"【电商视觉架构师 - {kind}方案汇总】",
            f"项目全局选定字体：{self.state.selected_font}",
            f"视觉前缀协议：{prefix}",
            rule,
            "",
        ]
        for index, p in enumerate(self.state.prompts, 1):
            lines += [
                f"[方案 {index:02d}: {p.title}]",
                f"● 营销构想：{p.concept}",
                f"● 核心文案：{p.copy_text}",
                f"● 排版建议：{p.placement} ({p.font_size})",
                f"● 生图指令：{p.prompt}",
                "",
            ]
        lines.append(rule)
        return "\n".join(lines)

    def save_images(self, output_dir: Path) -> List[Path]:
        """Write every card that has an image to <output_dir>/<title>.png."""
        saved: List[Path] = []
        used = set()
        for p in self.state.prompts:
            state = self.orchestrator.state(p.id)
            if state.image is None or state.status is CardStatus.LOADING:
                continue
            name = safe_filename(p.title, fallback=f"image-{p.id}")
            if name in used:
                name = f"{name}-{p.id}"
            used.add(name)
            saved.append(save_png(state.image, Path(output_dir) / f"{name}.png"))
        return saved
