"""
Visual Lab — E-commerce visual pipeline CLI

Usage:
  python -m visual_lab.main run --user admin --style ref.jpg --products p1.jpg p2.jpg
  python -m visual_lab.main run --user alice --style ref.jpg --products p1.jpg \\
      --strategy main_image --prohibited "水印" --render --output outputs/alice
  python -m visual_lab.main user add alice --credits 20
  python -m visual_lab.main user list
  python -m visual_lab.main credits show alice
  python -m visual_lab.main credits set alice 50 --admin admin
  python -m visual_lab.main history list --user alice
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table

from .analyzer import AnalysisStatus
from .config import ASPECT_RATIOS, RENDER_MODELS, Settings, get_settings
from .errors import UserNotFound, VisualLabError
from .gateway import ModelGateway
from .images import load_image
from .ledger import JsonLedgerStore, MemoryLedgerStore, User
from .models import FinalPrompt, StrategyType, VisualConstitution
from .orchestrator import CardStatus
from .session import ProjectSession

console = Console()
logger = logging.getLogger(__name__)

OUTPUTS_ROOT = Path("outputs")


# ── CLI ───────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="visual_lab",
        description="Visual Lab — style decoding, storyboard planning and image generation",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Decode style → analyze products → fuse prompts → render")
    run.add_argument("--user", required=True, help="Username or id paying for renders")
    run.add_argument("--style", required=True, help="Style reference image")
    run.add_argument("--products", nargs="+", required=True, help="1–6 product images")
    run.add_argument(
        "--strategy",
        choices=[s.value for s in StrategyType],
        default=StrategyType.DETAIL.value,
        help="detail = 6-beat detail page; main_image = 6 listing images",
    )
    run.add_argument("--selling-points", default="", help="Selling points to emphasise")
    run.add_argument("--allowed", default="", help="Elements allowed in the scene")
    run.add_argument("--prohibited", default="", help="Elements that must never appear")
    run.add_argument("--composition-ref", default=None, help="main_image only: composition reference image")
    run.add_argument("--reference", default=None, help="Global reference image applied to every render")
    run.add_argument("--analysis-model", default=None, help="Override the analysis model")
    run.add_argument(
        "--render-model",
        default=None,
        help=f"Render model alias ({' | '.join(RENDER_MODELS)}) or model id",
    )
    run.add_argument("--aspect-ratio", choices=ASPECT_RATIOS, default="1:1")
    run.add_argument("--api-key", default=None, help="Your own paid API key (required for elevated models)")
    run.add_argument("--render", action="store_true", help="Render all cards after fusion")
    run.add_argument("--output", default=None, help="Output directory (default: outputs/<timestamp>)")

    user = sub.add_parser("user", help="Manage users").add_subparsers(dest="action", required=True)
    add = user.add_parser("add", help="Create a user")
    add.add_argument("username")
    add.add_argument("--role", choices=["user", "admin"], default="user")
    add.add_argument("--credits", type=int, default=None)
    user.add_parser("list", help="List users")

    credits = sub.add_parser("credits", help="Inspect or set credit balances").add_subparsers(
        dest="action", required=True
    )
    show = credits.add_parser("show", help="Show a balance and recent recharges")
    show.add_argument("user")
    set_ = credits.add_parser("set", help="Set an absolute balance (admin only)")
    set_.add_argument("user")
    set_.add_argument("amount", type=int)
    set_.add_argument("--admin", required=True, help="Admin username or id")

    history = sub.add_parser("history", help="Image history").add_subparsers(dest="action", required=True)
    hist_list = history.add_parser("list", help="List history records, newest first")
    hist_list.add_argument("--user", default=None, help="Only this user's records")
    hist_del = history.add_parser("delete", help="Delete one history record")
    hist_del.add_argument("record_id")
    hist_del.add_argument("--user", required=True, help="Owner (or an admin)")

    return parser


# ── Display helpers ───────────────────────────────────────────────────────────

def display_constitution(constitution: VisualConstitution) -> None:
    body = (
        f"[bold]Style:[/bold] {constitution.style}\n"
        f"[bold]Lighting:[/bold] {constitution.lighting}\n"
        f"[bold]Color:[/bold] {constitution.color}\n"
        f"[bold]Composition:[/bold] {constitution.composition}\n"
        f"[bold]Texture:[/bold] {constitution.texture}\n\n"
        f"[italic]{constitution.prompt_prefix}[/italic]"
    )
    console.print(Panel(body, title="[bold]Visual Constitution[/bold]", border_style="blue"))


def display_prompts(prompts: List[FinalPrompt], font: str) -> None:
    console.print(f"\n  Global font: [bold]{font}[/bold]")
    for index, p in enumerate(prompts, 1):
        body = (
            f"[bold]Concept:[/bold] {p.concept}\n"
            f"[bold]Copy:[/bold] {p.copy_text}  [dim]({p.font_size}, {p.placement}, {p.prominence})[/dim]\n\n"
            f"{p.prompt}"
        )
        console.print(
            Panel(body, title=f"[bold]{index:02d} — {p.title}[/bold] [dim]{p.id}[/dim]", border_style="magenta")
        )


def _resolve_user(store: MemoryLedgerStore, ref: str) -> User:
    user = store.find_user_by_name(ref)
    return user if user is not None else store.get_user(ref)


def _open_store(settings: Settings) -> JsonLedgerStore:
    return JsonLedgerStore(
        settings.db_path,
        default_credits=settings.default_credits,
        history_limit=settings.history_limit,
    )


# ── Commands ──────────────────────────────────────────────────────────────────

async def run_pipeline(args: argparse.Namespace, settings: Settings, store: MemoryLedgerStore) -> int:
    user = _resolve_user(store, args.user)
    gateway = ModelGateway(api_key=settings.gemini_api_key)
    session = ProjectSession(
        gateway, store, user.id,
        settings=settings,
        credential=args.api_key,
        on_progress=lambda msg: console.print(f"[dim]{msg}[/dim]"),
    )
    session.select_models(args.analysis_model, args.render_model, args.aspect_ratio)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir = Path(args.output) if args.output else OUTPUTS_ROOT / timestamp
    strategy = StrategyType(args.strategy)

    console.print(Rule("[bold magenta]Visual Lab[/bold magenta]"))
    console.print(
        f"  User: [bold]{user.username}[/bold] ({store.get_balance(user.id)} credits)  |  "
        f"Strategy: [bold]{strategy.label}[/bold]  |  Output: [bold]{output_dir}[/bold]"
    )
    pipeline_start = time.time()

    # ── Step 1: style ────────────────────────────────────────────────────────
    console.print("\n[bold]Step 1/3 — Decoding style reference[/bold]")
    style = await session.decode_style(load_image(args.style))
    if not style.success:
        return _phase_failed("Style decoding", style.error, style.needs_credential)
    console.print(f"  [green]✓ Done in {style.elapsed_seconds:.1f}s[/green]")
    display_constitution(style.constitution)

    # ── Step 2: analysis + fusion ────────────────────────────────────────────
    console.print("\n[bold]Step 2/3 — Analyzing products and fusing prompts[/bold]")
    composition_ref = load_image(args.composition_ref) if args.composition_ref else None
    analysis = await session.analyze(
        [load_image(p) for p in args.products],
        strategy=strategy,
        selling_points=args.selling_points,
        allowed_elements=args.allowed,
        prohibited_elements=args.prohibited,
        composition_reference=composition_ref,
    )
    if not analysis.success:
        return _phase_failed("Product analysis", analysis.error, analysis.needs_credential)
    if analysis.analysis.status is AnalysisStatus.DEGRADED:
        console.print("  [yellow]⚠ Analysis was repaired with defaults — review the storyboards[/yellow]")
    if analysis.fusion_error:
        return _phase_failed("Prompt fusion", analysis.fusion_error, analysis.needs_credential)
    console.print(f"  [green]✓ Done in {analysis.elapsed_seconds:.1f}s[/green]")
    display_prompts(session.state.prompts, session.state.selected_font)

    output_dir.mkdir(parents=True, exist_ok=True)
    plan_path = output_dir / "plan.txt"
    plan_path.write_text(session.plan_summary(), encoding="utf-8")
    console.print(f"\n  [dim]Saved: {plan_path}[/dim]")

    # ── Step 3: renders ──────────────────────────────────────────────────────
    if args.render:
        console.print("\n[bold]Step 3/3 — Rendering[/bold]")
        reference = load_image(args.reference) if args.reference else None
        states = await session.render_all(global_reference=reference)
        for card_id, state in states.items():
            if state.status is CardStatus.ERROR:
                hint = " — configure --api-key" if state.needs_credential else ""
                console.print(f"  [red]✗ {card_id}[/red] {type(state.error).__name__}: {state.error}{hint}")
        for path in session.save_images(output_dir):
            console.print(f"    {path}")
    else:
        console.print("\n  [dim]Rendering skipped (pass --render)[/dim]")

    done = sum(1 for s in session.card_states().values() if s.status is CardStatus.DONE)
    console.print(
        Panel(
            f"{len(session.state.prompts)} prompt(s), {done} image(s) in "
            f"[bold]{time.time() - pipeline_start:.0f}s[/bold]\n"
            f"Balance: [bold]{store.get_balance(user.id)}[/bold] credits\n"
            f"Outputs saved to: [bold]{output_dir}[/bold]",
            title="[bold green]Pipeline Complete[/bold green]",
            border_style="green",
        )
    )
    return 0


def _phase_failed(phase: str, error: str, needs_credential: bool) -> int:
    hint = "\nSupply your own paid key with --api-key." if needs_credential else ""
    console.print(Panel(f"{error}{hint}", title=f"[bold red]{phase} failed[/bold red]", border_style="red"))
    return 1


def cmd_user(args: argparse.Namespace, store: MemoryLedgerStore) -> int:
    if args.action == "add":
        user = store.create_user(args.username, role=args.role, credits=args.credits)
        console.print(f"  [green]✓[/green] Created {user.username} ({user.role}, id={user.id}, {user.credits} credits)")
        return 0

    table = Table(title="Users")
    for column in ("id", "username", "role", "credits"):
        table.add_column(column)
    for u in store.list_users():
        table.add_row(u.id, u.username, u.role, str(u.credits))
    console.print(table)
    return 0


def cmd_credits(args: argparse.Namespace, store: MemoryLedgerStore) -> int:
    user = _resolve_user(store, args.user)
    if args.action == "set":
        admin = _resolve_user(store, args.admin)
        if not admin.is_admin:
            console.print(f"[bold red]Error:[/bold red] {admin.username} is not an admin.")
            return 1
        user = store.set_credits(user.id, args.amount, admin)
        console.print(f"  [green]✓[/green] {user.username} now has {user.credits} credits")
        return 0

    logs = store.list_recharge_logs(user.id)[:10]
    generations = store.list_generation_records(user.id)
    lines = [f"[bold]Balance:[/bold] {user.credits}", f"[bold]Renders:[/bold] {len(generations)}"]
    if logs:
        lines.append("\n[bold]Recent recharges:[/bold]")
        for r in logs:
            when = datetime.fromtimestamp(r.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
            lines.append(f"  {when}  {r.previousCredits} → {r.newCredits}  by {r.adminName}")
    console.print(Panel("\n".join(lines), title=f"[bold]{user.username}[/bold]", border_style="blue"))
    return 0


def cmd_history(args: argparse.Namespace, store: MemoryLedgerStore) -> int:
    if args.action == "delete":
        user = _resolve_user(store, args.user)
        if store.delete_history(args.record_id, user.id, is_admin=user.is_admin):
            console.print(f"  [green]✓[/green] Deleted {args.record_id}")
            return 0
        console.print(f"  [yellow]⚠ No record {args.record_id} visible to {user.username}[/yellow]")
        return 1

    user_id = _resolve_user(store, args.user).id if args.user else None
    table = Table(title="Image history")
    for column in ("id", "user", "time", "image"):
        table.add_column(column)
    for h in store.list_history(user_id):
        when = datetime.fromtimestamp(h.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
        image = h.imageUrl if not h.imageUrl.startswith("data:") else "(inline)"
        table.add_row(h.id, h.username, when, image)
    console.print(table)
    return 0


# ── Main ──────────────────────────────────────────────────────────────────────

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        format="%(asctime)s — %(levelname)s — %(name)s — %(message)s",
        level=getattr(logging, settings.log_level, logging.INFO),
    )
    store = _open_store(settings)

    try:
        if args.command == "run":
            return asyncio.run(run_pipeline(args, settings, store))
        if args.command == "user":
            return cmd_user(args, store)
        if args.command == "credits":
            return cmd_credits(args, store)
        return cmd_history(args, store)
    except (UserNotFound, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return 1
    except VisualLabError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
