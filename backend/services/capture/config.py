"""Settings for the capture-and-match service."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MATCH_PRESETS: Dict[str, Dict[str, Any]] = {
    "strict": {
        "threshold": 0.05,
        "tie_epsilon": 1e-6,
    },
    "balanced": {
        "threshold": 0.08,
        "tie_epsilon": 1e-6,
    },
    "lenient": {
        "threshold": 0.12,
        "tie_epsilon": 1e-4,
    },
}


def resolve_match_options(preset: Optional[str], overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Resolve a preset name plus explicit overrides into clamped match options."""
    name = str(preset or "balanced").lower().strip()
    if name not in MATCH_PRESETS:
        name = "balanced"

    merged = dict(MATCH_PRESETS[name])
    cfg = overrides if isinstance(overrides, dict) else {}
    for key in ("threshold", "tie_epsilon"):
        if cfg.get(key) is not None:
            merged[key] = cfg[key]

    merged["threshold"] = float(max(0.0, min(1.0, float(merged["threshold"]))))
    merged["tie_epsilon"] = float(max(0.0, min(0.01, float(merged["tie_epsilon"]))))
    merged["preset"] = name
    return merged


class CaptureSettings(BaseSettings):
    """Explicit configuration handed to the ingestion coordinator."""

    model_config = SettingsConfigDict(env_prefix="HOLODOC_", env_file=".env", extra="ignore")

    data_dir: Optional[Path] = Path("./data")
    default_author: str = "Default author"

    server_host: str = "localhost"
    server_port: int = 8080

    match_preset: str = "balanced"
    match_threshold: Optional[float] = None

    min_area_ratio: float = Field(default=0.1, ge=0.0, le=1.0)
    min_side_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    canonical_long_side: int = Field(default=800, ge=32)
    canny_low: int = 50
    canny_high: int = 150

    def match_options(self) -> Dict[str, Any]:
        return resolve_match_options(self.match_preset, {"threshold": self.match_threshold})
