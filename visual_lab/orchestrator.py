"""
Generation Orchestrator — the only component that spends credits.

Per card (keyed by Final Prompt id):

    idle → loading → done | error
    done | error → loading          (manual re-trigger)

render_one runs strictly in order:
    credential check → credit reservation → render call
    → deduction + generation record → history record → done

A failure before or during the render call releases the reservation and
leaves the card in `error` with no deduction and no records. A failed
history write after a successful deduction is logged as a reconciliation
gap; the card still ends `done` with its image.

render_bulk fires render_one for every card concurrently and waits for all
of them; one card failing never cancels another.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set

from rich.console import Console

from .config import DEFAULT_ANALYSIS_MODEL, DEFAULT_RENDER_MODEL, is_elevated, resolve_render_model
from .credits import CreditGate
from .errors import AttemptInFlight, CredentialRequired, UnknownCard, VisualLabError
from .gateway import ImageSpec, ModelGateway, ModelRequest
from .images import ImagePart
from .ledger import MemoryLedgerStore
from .models import FinalPrompt, ProductAnalysis, VisualConstitution
from .prompts import RENDER_CLEAN, RENDER_MODE, RENDER_PROHIBITED, RENDER_TEMPLATE

console = Console()
logger = logging.getLogger(__name__)


# ── Card state ────────────────────────────────────────────────────────────────

class CardStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class CardState:
    status: CardStatus = CardStatus.IDLE
    image: Optional[ImagePart] = None          # last produced image, kept across re-triggers
    reference: Optional[ImagePart] = None      # reference image used by the last attempt
    instruction: str = ""                      # assembled render instruction of the last attempt
    error: Optional[Exception] = None

    @property
    def needs_credential(self) -> bool:
        return bool(getattr(self.error, "needs_credential", False))


TransitionCallback = Callable[[str, CardState], None]


# ── Plan ──────────────────────────────────────────────────────────────────────

@dataclass
class GenerationPlan:
    """Everything a render needs from the earlier pipeline stages."""
    constitution: VisualConstitution
    analysis: ProductAnalysis
    prompts: List[FinalPrompt]
    font: str
    card_references: Dict[str, ImagePart] = field(default_factory=dict)
    analysis_model: str = DEFAULT_ANALYSIS_MODEL

    def prompt(self, card_id: str) -> FinalPrompt:
        for p in self.prompts:
            if p.id == card_id:
                return p
        raise UnknownCard(f"no final prompt with id {card_id!r}")

    @property
    def card_ids(self) -> List[str]:
        return [p.id for p in self.prompts]


def build_render_instruction(plan: GenerationPlan, card: FinalPrompt) -> str:
    """Assemble the final render instruction for one card. Deterministic."""
    analysis = plan.analysis
    constitution = plan.constitution
    prohibited = analysis.prohibited_elements.strip()
    exclusions = RENDER_PROHIBITED.format(prohibited=prohibited) if prohibited else RENDER_CLEAN
    return RENDER_TEMPLATE.format(
        mode=RENDER_MODE[analysis.strategy_type.value],
        copy=card.copy_text,
        font=plan.font,
        prefix=constitution.prompt_prefix,
        style=constitution.style,
        lighting=constitution.lighting,
        exclusions=exclusions,
        placement=card.placement,
        features=analysis.physical_features,
        scene=card.prompt,
    )


# ── Orchestrator ──────────────────────────────────────────────────────────────

class GenerationOrchestrator:

    def __init__(
        self,
        gateway: ModelGateway,
        credits: CreditGate,
        store: MemoryLedgerStore,
        render_model: str = DEFAULT_RENDER_MODEL,
        aspect_ratio: str = "1:1",
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self.gateway = gateway
        self.credits = credits
        self.store = store
        self.render_model = render_model
        self.aspect_ratio = aspect_ratio
        self.on_transition = on_transition
        self._cards: Dict[str, CardState] = {}
        self._in_flight: Set[str] = set()

    @property
    def aspect_ratio(self) -> str:
        return self._aspect_ratio

    @aspect_ratio.setter
    def aspect_ratio(self, value: str) -> None:
        ImageSpec(aspect_ratio=value)      # raises ValueError for unsupported ratios
        self._aspect_ratio = value

    # ── State ─────────────────────────────────────────────────────────────────

    def state(self, card_id: str) -> CardState:
        return self._cards.get(card_id, CardState())

    def snapshot(self) -> Mapping[str, CardState]:
        return MappingProxyType(dict(self._cards))

    def is_in_flight(self, card_id: str) -> bool:
        return card_id in self._in_flight

    def reset(self, card_ids: Optional[Sequence[str]] = None) -> None:
        """Forget card states (a new plan replaces the old one)."""
        for card_id in list(card_ids if card_ids is not None else self._cards):
            if card_id not in self._in_flight:
                self._cards.pop(card_id, None)

    def _transition(self, card_id: str, **changes) -> CardState:
        state = replace(self.state(card_id), **changes)
        self._cards[card_id] = state
        if self.on_transition:
            try:
                self.on_transition(card_id, state)
            except Exception:
                logger.exception("transition callback failed for %s", card_id)
        return state

    @contextlib.contextmanager
    def hold(self, card_id: str) -> Iterator[None]:
        """
        Mark a card busy for non-render work (prompt regeneration): loading while
        held, idle afterwards. The last image is kept.
        """
        if card_id in self._in_flight:
            raise AttemptInFlight(f"card {card_id} is busy")
        self._in_flight.add(card_id)
        self._transition(card_id, status=CardStatus.LOADING, error=None)
        try:
            yield
        finally:
            self._in_flight.discard(card_id)
            self._transition(card_id, status=CardStatus.IDLE)

    # ── Render ────────────────────────────────────────────────────────────────

    async def render_one(
        self,
        plan: GenerationPlan,
        card_id: str,
        user_id: str,
        override_reference: Optional[ImagePart] = None,
        credential: Optional[str] = None,
    ) -> Optional[ImagePart]:
        """
        Render one card. Returns the image, or None when the attempt ended in `error`
        (the card state holds the exception).

        Raises:
            UnknownCard:     card_id is not in the plan (no state change)
            AttemptInFlight: a render for this card is already running (no state change)
        """
        card = plan.prompt(card_id)
        if card_id in self._in_flight:
            raise AttemptInFlight(f"card {card_id} is already rendering")
        self._in_flight.add(card_id)

        reference = override_reference or plan.card_references.get(card_id)
        try:
            self._transition(card_id, status=CardStatus.LOADING, reference=reference, error=None)
            image, instruction = await self._render(plan, card, user_id, reference, credential)
        except VisualLabError as exc:
            logger.info("render %s failed: %s: %s", card_id, type(exc).__name__, exc)
            console.print(f"  [yellow]⚠ {card.title} failed ({type(exc).__name__})[/yellow]")
            self._transition(card_id, status=CardStatus.ERROR, error=exc)
            return None
        except Exception as exc:
            logger.exception("render %s failed unexpectedly", card_id)
            self._transition(card_id, status=CardStatus.ERROR, error=exc)
            return None
        finally:
            self._in_flight.discard(card_id)

        self._transition(
            card_id, status=CardStatus.DONE, image=image, instruction=instruction, error=None
        )
        console.print(f"  [green]✓ {card.title}[/green] rendered")
        return image

    async def _render(
        self,
        plan: GenerationPlan,
        card: FinalPrompt,
        user_id: str,
        reference: Optional[ImagePart],
        credential: Optional[str],
    ):
        if is_elevated(plan.analysis_model, self.render_model) and not credential:
            raise CredentialRequired(
                f"{self.render_model} needs your own paid API key — configure a credential first"
            )

        # everything that can fail locally happens before credit is reserved
        instruction = build_render_instruction(plan, card)
        model_id, image_size, _ = resolve_render_model(self.render_model)
        parts = [instruction] + ([reference] if reference is not None else [])
        request = ModelRequest(
            parts=parts,
            model=model_id,
            image=ImageSpec(aspect_ratio=self.aspect_ratio, image_size=image_size),
            label=f"render:{card.id}",
        )

        reservation = await self.credits.reserve(user_id, self.render_model)
        loop = asyncio.get_event_loop()
        try:
            image = await loop.run_in_executor(None, self.gateway.invoke, request, credential)
        except BaseException:
            await self.credits.release(reservation)
            raise

        try:
            balance = await self.credits.commit(reservation)
        except Exception as exc:
            raise VisualLabError(f"credit deduction failed after render: {exc}") from exc

        try:
            await loop.run_in_executor(
                None, self.store.append_history_record, user_id, image, instruction
            )
        except Exception:
            logger.error(
                "reconciliation gap: credit deducted for %s card %s (balance %d) "
                "but history record not written",
                user_id, card.id, balance, exc_info=True,
            )
        return image, instruction

    async def render_bulk(
        self,
        plan: GenerationPlan,
        card_ids: Optional[Sequence[str]],
        user_id: str,
        global_reference: Optional[ImagePart] = None,
        credential: Optional[str] = None,
    ) -> Dict[str, CardState]:
        """
        Render several cards concurrently. A supplied global reference overrides every
        card's own reference. Cards already rendering are skipped. Returns the
        terminal state of every requested card.
        """
        ids = list(card_ids) if card_ids is not None else plan.card_ids
        console.print(f"\n[bold cyan]→ Rendering {len(ids)} card(s)...[/bold cyan]")

        async def _one(card_id: str) -> None:
            try:
                await self.render_one(
                    plan, card_id, user_id,
                    override_reference=global_reference, credential=credential,
                )
            except AttemptInFlight:
                logger.info("bulk render skipped %s: already rendering", card_id)
            except UnknownCard as exc:
                self._transition(card_id, status=CardStatus.ERROR, error=exc)

        await asyncio.gather(*(_one(card_id) for card_id in ids))
        return {card_id: self.state(card_id) for card_id in ids}
