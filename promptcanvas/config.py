"""
PromptCanvas configuration loader.

Loads configuration from ~/.promptcanvas/config.yaml with fallback defaults.
The config file controls the API endpoint, the title model and generation
defaults. Preferences chosen at runtime (model, resolution) live in the
preference store, not here.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_ROOT = Path.home() / ".promptcanvas"
DEFAULT_CONFIG_FILENAME = "config.yaml"

RESOLUTIONS = ("1K", "2K", "4K")
ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")
UPSCALE_RESOLUTION = "4K"


@dataclass
class APIConfig:
    """Remote inference API settings."""
    base_url: str = "https://openrouter.ai/api/v1"
    # None = no client-side timeout; generations can take minutes
    request_timeout: Optional[float] = None
    title_model: str = "google/gemma-3n-e4b-it"
    api_key: Optional[str] = field(
        default_factory=lambda: os.environ.get("OPENROUTER_API_KEY")
    )


@dataclass
class GenerationConfig:
    """Generation defaults and enrichment polling."""
    default_resolution: str = "1K"
    default_aspect_ratio: str = "1:1"
    usage_retries: int = 5
    usage_retry_delay: float = 2.0  # seconds, fixed between attempts


@dataclass
class PromptCanvasConfig:
    """Complete PromptCanvas configuration."""
    root: Path = DEFAULT_ROOT
    api: APIConfig = field(default_factory=APIConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    config_path: Optional[Path] = None

    # Raw YAML data
    _raw: Dict[str, Any] = field(default_factory=dict)


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw_config.get(name) or {}
    if not isinstance(value, dict):
        logger.warning("Config section '%s' is not a mapping, using defaults", name)
        return {}
    return value


def load_config(
    root: Optional[Path] = None,
    config_path: Optional[Path] = None,
) -> PromptCanvasConfig:
    """
    Load configuration from YAML file.

    Priority:
    1. Explicit config_path parameter
    2. <root>/config.yaml
    3. Default config (no file)
    """
    if root is None:
        root = Path(os.environ.get("PROMPTCANVAS_ROOT", DEFAULT_ROOT))
    root = Path(root).expanduser().resolve()

    if config_path is None:
        config_path = root / DEFAULT_CONFIG_FILENAME

    raw_config: Dict[str, Any] = {}
    if config_path.exists():
        try:
            import yaml
            with open(config_path) as f:
                loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                raw_config = loaded
            elif loaded is not None:
                logger.warning(f"Config at {config_path} is not a mapping, using defaults")
            logger.info(f"Loaded config from {config_path}")
        except Exception as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")
    else:
        logger.debug(f"No config at {config_path}, using defaults")

    api_raw = _section(raw_config, "api")
    gen_raw = _section(raw_config, "generation")

    api = APIConfig(
        base_url=api_raw.get("base_url", APIConfig.base_url),
        request_timeout=api_raw.get("request_timeout"),
        title_model=api_raw.get("title_model", APIConfig.title_model),
    )
    if api_raw.get("api_key"):
        api.api_key = api_raw["api_key"]

    generation = GenerationConfig(
        default_resolution=gen_raw.get("default_resolution", "1K"),
        default_aspect_ratio=gen_raw.get("default_aspect_ratio", "1:1"),
        usage_retries=gen_raw.get("usage_retries", 5),
        usage_retry_delay=gen_raw.get("usage_retry_delay", 2.0),
    )

    # Validate resolution
    if generation.default_resolution not in RESOLUTIONS:
        logger.warning(
            "Unknown resolution '%s', expected one of %s. Falling back to '1K'.",
            generation.default_resolution,
            RESOLUTIONS,
        )
        generation.default_resolution = "1K"

    # Validate aspect ratio
    if generation.default_aspect_ratio not in ASPECT_RATIOS:
        logger.warning(
            "Unknown aspect ratio '%s', expected one of %s. Falling back to '1:1'.",
            generation.default_aspect_ratio,
            ASPECT_RATIOS,
        )
        generation.default_aspect_ratio = "1:1"

    # Validate polling
    if not isinstance(generation.usage_retries, int) or generation.usage_retries < 0:
        logger.warning("Invalid usage_retries %r, using 5", generation.usage_retries)
        generation.usage_retries = 5
    if not isinstance(generation.usage_retry_delay, (int, float)) or generation.usage_retry_delay < 0:
        logger.warning("Invalid usage_retry_delay %r, using 2.0", generation.usage_retry_delay)
        generation.usage_retry_delay = 2.0

    if api.request_timeout is not None and not isinstance(api.request_timeout, (int, float)):
        logger.warning("Invalid request_timeout %r, disabling timeout", api.request_timeout)
        api.request_timeout = None

    return PromptCanvasConfig(
        root=root,
        api=api,
        generation=generation,
        config_path=config_path,
        _raw=raw_config,
    )


# Global configuration instance
_config: Optional[PromptCanvasConfig] = None


def get_config() -> PromptCanvasConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (useful for testing)."""
    global _config
    _config = None
