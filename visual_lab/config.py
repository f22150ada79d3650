"""
config.py — Runtime settings for the visual lab pipeline.

Values come from the environment (a local .env is loaded first):

  GEMINI_API_KEY              default credential for standard-tier models
  VISUAL_LAB_DATA_DIR         where db.json and rendered images live
  VISUAL_LAB_ANALYSIS_MODEL   model used by the three analysis stages
  VISUAL_LAB_RENDER_MODEL     render alias ("nanobanana" | "nanobanana pro") or model id
  VISUAL_LAB_DEFAULT_CREDITS  credits granted to a newly created user
  VISUAL_LAB_HISTORY_LIMIT    history records kept per user
  VISUAL_LAB_LOG_LEVEL        logging level for the CLI
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


# ── Model tiers ───────────────────────────────────────────────────────────────

DEFAULT_ANALYSIS_MODEL = "gemini-3-flash-preview"
ELEVATED_ANALYSIS_MODELS = ("gemini-3-pro-preview",)

# render alias → (model id, output size tier, elevated?)
RENDER_MODELS: Dict[str, Tuple[str, Optional[str], bool]] = {
    "nanobanana":     ("gemini-2.5-flash-image", None, False),
    "nanobanana pro": ("gemini-3-pro-image-preview", "1K", True),
}
DEFAULT_RENDER_MODEL = "nanobanana"

ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4")


def resolve_render_model(name: str) -> Tuple[str, Optional[str], bool]:
    """Map a render alias to (model id, size tier, elevated). Unknown names pass through."""
    key = (name or DEFAULT_RENDER_MODEL).strip().lower()
    if key in RENDER_MODELS:
        return RENDER_MODELS[key]
    for model_id, size, elevated in RENDER_MODELS.values():
        if key == model_id:
            return model_id, size, elevated
    return name, None, False


def is_elevated(analysis_model: str = "", render_model: str = "") -> bool:
    """True when either selected model needs a user-supplied paid credential."""
    if analysis_model and analysis_model in ELEVATED_ANALYSIS_MODELS:
        return True
    if render_model and resolve_render_model(render_model)[2]:
        return True
    return False


# ── Settings ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    gemini_api_key: str = ""
    data_dir: Path = Path("data")
    analysis_model: str = DEFAULT_ANALYSIS_MODEL
    render_model: str = DEFAULT_RENDER_MODEL
    default_credits: int = 10
    history_limit: int = 60
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db.json"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=os.environ.get("GEMINI_API_KEY", ""),
            data_dir=Path(os.environ.get("VISUAL_LAB_DATA_DIR", "data")),
            analysis_model=os.environ.get("VISUAL_LAB_ANALYSIS_MODEL", DEFAULT_ANALYSIS_MODEL),
            render_model=os.environ.get("VISUAL_LAB_RENDER_MODEL", DEFAULT_RENDER_MODEL),
            default_credits=int(os.environ.get("VISUAL_LAB_DEFAULT_CREDITS", "10")),
            history_limit=int(os.environ.get("VISUAL_LAB_HISTORY_LIMIT", "60")),
            log_level=os.environ.get("VISUAL_LAB_LOG_LEVEL", "INFO").upper(),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
