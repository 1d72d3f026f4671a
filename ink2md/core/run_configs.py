from __future__ import annotations

from pathlib import Path

import yaml

from ink2md.core.config import Settings


RUN_CONFIG_SUFFIXES = {".yaml", ".yml"}


def resolve_run_config_path(candidate: str) -> Path:
    raw = Path(candidate).expanduser()
    if raw.is_absolute():
        return raw
    return (Path.cwd() / raw).resolve()


def load_run_config(candidate: str, base: Settings | None = None) -> Settings:
    """Overlay a YAML mapping of setting overrides on ``base`` (or env-derived settings)."""
    path = resolve_run_config_path(candidate)
    if not path.exists() or not path.is_file():
        raise FileNotFoundError(f"Run config file not found: {path}")
    if path.suffix.lower() not in RUN_CONFIG_SUFFIXES:
        raise ValueError("Run config file must end in .yaml or .yml")

    payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValueError("Run config root must be a mapping/object")

    settings = base or Settings()
    merged = settings.model_dump()
    merged.update(payload)
    return Settings.model_validate(merged)
