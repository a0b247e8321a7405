import os
from typing import Optional

import yaml

def get_config(filename: str = "config.yaml") -> dict:
    """Loads the configuration from a YAML file."""
    with open(filename, encoding="utf-8") as file:
        return yaml.safe_load(file)

def validate_config(config: dict) -> None:
    """Validate configuration structure and required fields."""
    required_fields = {
        "bot_token": str,
        "providers": dict,
        "models": dict,
        "permissions": dict
    }
    for field, expected_type in required_fields.items():
        if field not in config:
            raise ValueError(f"Missing required config field: {field}")
        if not isinstance(config[field], expected_type):
            raise TypeError(f"Config field {field} must be {expected_type.__name__}")
    if not config["models"]:
        raise ValueError("At least one model must be configured")
    for model_name in config["models"]:
        provider = model_name.split("/", 1)[0]
        if "/" not in model_name or provider not in config["providers"]:
            raise ValueError(f"Model {model_name} must be written as <provider>/<model> with a configured provider")

def gemini_api_key(config: dict) -> Optional[str]:
    """Gemini key from providers.gemini, providers.google or the GEMINI_API_KEY env var."""
    providers = config.get("providers", {})
    gem_cfg = providers.get("gemini") or {}
    goo_cfg = providers.get("google") or {}
    return gem_cfg.get("api_key") or goo_cfg.get("api_key") or os.getenv("GEMINI_API_KEY")
