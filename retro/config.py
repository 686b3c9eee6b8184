from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("RETRO_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / ".retro"


# ---------------------------------------------------------------------------
# Tuning blocks (overridable per run through RunOptions)
# ---------------------------------------------------------------------------


class ClusteringConfig(BaseModel):
    max_gap_hours: float = 4.0
    max_unit_hours: float = 24.0
    max_commits_per_unit: int = 50
    primary_paths_top_n: int = 5
    path_depth: int = 2


class CriticalPath(BaseModel):
    pattern: str
    weight: float


def _default_critical_paths() -> list[CriticalPath]:
    return [
        CriticalPath(pattern="*auth*", weight=2.0),
        CriticalPath(pattern="*payment*", weight=2.5),
        CriticalPath(pattern="*security*", weight=2.0),
        CriticalPath(pattern="*core*", weight=1.8),
        CriticalPath(pattern="*api*", weight=1.5),
        CriticalPath(pattern="*database*", weight=1.8),
        CriticalPath(pattern="*migration*", weight=1.5),
    ]


class ImpactConfig(BaseModel):
    critical_paths: list[CriticalPath] = Field(default_factory=_default_critical_paths)
    critical_scale: float = 0.25
    hotspot_top_n: int = 20
    hotspot_min_touches: int = 2
    hotspot_weight: float = 0.15
    hotfix_bonus: float = 3.0
    revert_penalty: float = 2.0


class SamplingConfig(BaseModel):
    heuristic_threshold: int = 3
    top_per_repo: int = 3
    max_per_repo: int = 6
    max_risk_extras: int = 2
    max_total_samples: int | None = 20
    seed: int | None = None


class ReviewConfig(BaseModel):
    concurrency: int = 5
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 20.0
    max_diff_tokens: int = 4000
    max_commits_per_unit: int = 3
    max_lines_per_file: int = 80
    max_chars_per_file: int = 1500


class RunOptions(BaseModel):
    """Per-run options stored on ``AnalysisRun.options_json``."""

    llm_provider: str | None = None
    llm_model: str | None = None
    exclude_repos: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    include_archived: bool = False
    auto_confirm: bool = False
    # Work from already-ingested commits instead of scanning GitHub
    offline: bool = False
    clustering: dict[str, Any] = Field(default_factory=dict)
    impact: dict[str, Any] = Field(default_factory=dict)
    sampling: dict[str, Any] = Field(default_factory=dict)
    review: dict[str, Any] = Field(default_factory=dict)
    # Set by the confirm/skip operation
    ai_confirmed: bool = False
    skip_ai_review: bool = False


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_path: Path = Field(default_factory=lambda: _resolve_home() / "retro.db")
    config_file: Path = Field(default_factory=lambda: _resolve_home() / "config.yaml")

    github_token: str = ""
    github_api_url: str = "https://api.github.com"
    request_timeout_seconds: float = 15.0
    github_min_interval_seconds: float = 0.1
    scan_repo_concurrency: int = 5
    scan_commit_concurrency: int = 10
    scan_max_retries: int = 3

    llm_provider: str = "anthropic"
    llm_model: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    openai_base_url: str = ""

    embedded_worker: bool = False
    worker_poll_interval_seconds: float = 2.0
    worker_max_concurrent: int = 2
    worker_stale_after_seconds: float = 600.0

    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    impact: ImpactConfig = Field(default_factory=ImpactConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)

    def ensure_directories(self) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def resolve(self, options: RunOptions) -> EffectiveConfig:
        """Merge a run's option overrides on top of these settings."""
        return EffectiveConfig(
            clustering=ClusteringConfig.model_validate({**self.clustering.model_dump(), **options.clustering}),
            impact=ImpactConfig.model_validate({**self.impact.model_dump(), **options.impact}),
            sampling=SamplingConfig.model_validate({**self.sampling.model_dump(), **options.sampling}),
            review=ReviewConfig.model_validate({**self.review.model_dump(), **options.review}),
            llm_provider=options.llm_provider or self.llm_provider,
            llm_model=options.llm_model or self.llm_model,
        )


class EffectiveConfig(BaseModel):
    clustering: ClusteringConfig
    impact: ImpactConfig
    sampling: SamplingConfig
    review: ReviewConfig
    llm_provider: str
    llm_model: str


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


_ENV_OVERRIDES = {
    "RETRO_DB": "database_path",
    "GITHUB_TOKEN": "github_token",
    "GITHUB_API_URL": "github_api_url",
    "LLM_PROVIDER": "llm_provider",
    "LLM_MODEL": "llm_model",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "OPENAI_BASE_URL": "openai_base_url",
    "RETRO_EMBEDDED_WORKER": "embedded_worker",
}


def load_settings(config_file: Path | None = None) -> Settings:
    home = _resolve_home()
    if config_file is None:
        config_file = Path(os.getenv("RETRO_CONFIG", "") or home / "config.yaml").expanduser()
    data: dict[str, Any] = {"home": home, "database_path": home / "retro.db"}
    data.update(load_yaml(config_file))
    for env_name, field in _ENV_OVERRIDES.items():
        value = os.getenv(env_name, "").strip()
        if value:
            data[field] = value
    data["config_file"] = config_file
    return Settings.model_validate(data)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    settings.ensure_directories()
    return settings
