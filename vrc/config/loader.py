import yaml
from pathlib import Path
from typing import Any, Dict
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into the frozen AppConfig model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Older configs kept target_dirs at the root
    target_dirs = data.pop("target_dirs", None)
    if target_dirs is not None:
        data.setdefault("general", {})["target_dirs"] = target_dirs

    return AppConfig(**data)


def apply_overrides(config: AppConfig, section: str, **values: Any) -> AppConfig:
    """Returns a new config with non-None values replaced in one section."""
    updates: Dict[str, Any] = {k: v for k, v in values.items() if v is not None}
    if not updates:
        return config
    current = getattr(config, section)
    merged = type(current)(**{**current.model_dump(), **updates})
    return config.model_copy(update={section: merged})
