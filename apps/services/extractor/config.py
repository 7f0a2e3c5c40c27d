"""Extractor configuration module.

Extractor Configuration:
    - EXTRACTOR_DATA_DIR: Root holding input/, processing/, output/, logs/, cache/ (default: .)
    - MAX_BATCH / MAX_CONCURRENT_BATCHES / TOTAL_LIMIT: Worker pool sizing
    - URL_CACHE_MAX_AGE_HOURS / DISABLE_URL_CACHE: Per-URL result cache
    - SMART_CACHE_FRESHNESS_DAYS: Window in which "confirmed absent" fields skip the model call
    - RES_BLOCK_IMAGES / RES_BLOCK_STYLES / RES_BLOCK_SCRIPTS: Page resource blocking
    - SOLVER_URL / SOLVER_MODEL_ID / LLM_API_KEY: Model-driven extraction endpoint
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Built-in vendor registry, overridable via vendors.yaml in the data dir
DEFAULT_VENDOR_REGISTRY: Dict[str, Any] = {
    "domain_exclusions": {
        "harrods.com": [],
        "superdrug.com": ["fashion", "health"],
    },
    "update_defaults": {
        "update_fields": ["price", "stock_status"],
        "stale_days": 0,
    },
}


class ExtractorConfig(BaseSettings):
    """Product extractor configuration.

    Every knob can be set from the environment or a local .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(default=Path("."), alias="EXTRACTOR_DATA_DIR")

    # Worker pool
    max_batch: int = Field(default=5, alias="MAX_BATCH")
    max_concurrent_batches: Optional[int] = Field(default=None, alias="MAX_CONCURRENT_BATCHES")
    total_limit: Optional[int] = Field(default=None, alias="TOTAL_LIMIT")

    # Caches
    url_cache_max_age_hours: float = Field(default=24, alias="URL_CACHE_MAX_AGE_HOURS")
    disable_url_cache: bool = Field(default=False, alias="DISABLE_URL_CACHE")
    smart_cache_freshness_days: float = Field(default=7, alias="SMART_CACHE_FRESHNESS_DAYS")

    # Selector store
    max_selectors_per_field: int = Field(default=5, alias="MAX_SELECTORS_PER_FIELD")

    # Output
    max_items_per_file: int = Field(default=10000, alias="MAX_ITEMS_PER_FILE")

    # Resource blocking (None = derive from session state)
    res_block_images: Optional[bool] = Field(default=None, alias="RES_BLOCK_IMAGES")
    res_block_styles: bool = Field(default=False, alias="RES_BLOCK_STYLES")
    res_block_scripts: bool = Field(default=False, alias="RES_BLOCK_SCRIPTS")

    # Browser sessions
    session_reuse: bool = Field(default=True, alias="BROWSER_SESSION_REUSE")
    session_timeout: int = Field(default=900, alias="BROWSER_SESSION_TIMEOUT")
    cdp_url: Optional[str] = Field(default=None, alias="BROWSER_CDP_URL")
    headless: bool = Field(default=True, alias="PLAYWRIGHT_HEADLESS")

    # Proxy providers
    ps_user: Optional[str] = Field(default=None, alias="PS_USER")
    ps_pass: Optional[str] = Field(default=None, alias="PS_PASS")
    oxy_user: Optional[str] = Field(default=None, alias="OXY_USER")
    oxy_pass: Optional[str] = Field(default=None, alias="OXY_PASS")
    proxy_country: str = Field(default="GB", alias="PROXY_COUNTRY")
    proxy_city: str = Field(default="LONDON", alias="PROXY_CITY")

    # Model-driven extraction
    llm_url: str = Field(
        default="http://127.0.0.1:8000/v1/chat/completions", alias="SOLVER_URL"
    )
    llm_model: str = Field(default="qwen3-coder", alias="SOLVER_MODEL_ID")
    llm_api_key: Optional[str] = Field(default=None, alias="LLM_API_KEY")
    llm_timeout: float = Field(default=60.0, alias="LLM_TIMEOUT")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def input_dir(self) -> Path:
        return self.data_dir / "input"

    @property
    def processing_dir(self) -> Path:
        return self.data_dir / "processing"

    @property
    def output_dir(self) -> Path:
        return self.data_dir / "output"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def selector_store_path(self) -> Path:
        """Get the vendor selector document path."""
        return self.data_dir / "cache" / "vendor-selectors.json"

    def proxy_settings(self) -> List[Dict[str, str]]:
        """Proxy endpoints for every provider with credentials configured."""
        proxies = []
        if self.ps_user and self.ps_pass:
            proxies.append({
                "server": "http://proxy.packetstream.io:31112",
                "username": self.ps_user,
                "password": self.ps_pass,
                "geolocation": f"{self.proxy_country.upper()}/{self.proxy_city.upper()}",
            })
        if self.oxy_user and self.oxy_pass:
            proxies.append({
                "server": "http://pr.oxylabs.io:7777",
                "username": self.oxy_user,
                "password": self.oxy_pass,
            })
        return proxies


def load_vendor_registry(data_dir: Path) -> Dict[str, Any]:
    """Load vendors.yaml from the data dir, merged over the built-in defaults."""
    registry = {key: dict(value) for key, value in DEFAULT_VENDOR_REGISTRY.items()}
    path = Path(data_dir) / "vendors.yaml"
    if not path.exists():
        return registry

    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"[Config] Could not read {path}: {e}")
        return registry

    for section, values in loaded.items():
        if isinstance(values, dict):
            registry.setdefault(section, {}).update(values)
    return registry


@lru_cache()
def get_config() -> ExtractorConfig:
    """Get cached extractor configuration."""
    return ExtractorConfig()
