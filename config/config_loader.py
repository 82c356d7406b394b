"""Load settings.yaml into typed dataclasses. Resolves the API key at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

RACE_POLICIES = ("first_settled", "first_success")


@dataclass
class ApiConfig:
    base_url: str
    api_key_env: str
    referer: str
    title: str
    timeout_sec: float = 600.0


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    max_delay_sec: float = 10.0
    jitter: float = 0.1      # +/- fraction applied to each nominal delay


@dataclass
class PromptsConfig:
    series_enhance: str
    parallel_synthesis: str


@dataclass
class DefaultsConfig:
    chats_dir: Path
    export_dir: Path
    race_policy: str = "first_settled"
    models: list[str] = field(default_factory=list)


@dataclass
class ModelCatalogEntry:
    id: str
    name: str
    model_id: str
    category: str
    description: str = ""
    context: str = ""


@dataclass
class AppConfig:
    api: ApiConfig
    retry: RetryConfig
    defaults: DefaultsConfig
    prompts: PromptsConfig
    api_key: str = ""
    catalog: list[ModelCatalogEntry] = field(default_factory=list)


def _load_catalog(raw: dict) -> list[ModelCatalogEntry]:
    """Flatten the category -> entries mapping, keeping file order."""
    entries: list[ModelCatalogEntry] = []
    seen: set[str] = set()
    for category, items in raw.items():
        for item in items or []:
            entry = ModelCatalogEntry(
                id=str(item["id"]),
                name=str(item.get("name", item["id"])),
                model_id=str(item["model_id"]),
                category=str(category),
                description=str(item.get("description", "")),
                context=str(item.get("context", "")),
            )
            if entry.id in seen:
                raise ValueError(f"Duplicate model catalog id '{entry.id}'")
            seen.add(entry.id)
            entries.append(entry)
    return entries


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing and ValueError on an
    unknown race policy or a duplicate model catalog id. A missing API key
    is only logged; the client refuses to start without one.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    api_raw = raw["api"]
    api = ApiConfig(
        base_url=str(api_raw["base_url"]).rstrip("/"),
        api_key_env=str(api_raw["api_key_env"]),
        referer=str(api_raw.get("referer", "")),
        title=str(api_raw.get("title", "")),
        timeout_sec=float(api_raw.get("timeout_sec", 600)),
    )

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_attempts=int(retry_raw.get("max_attempts", 3)),
        base_delay_sec=float(retry_raw.get("base_delay_sec", 1.0)),
        max_delay_sec=float(retry_raw.get("max_delay_sec", 10.0)),
        jitter=float(retry_raw.get("jitter", 0.1)),
    )
    if retry.max_attempts < 1:
        raise ValueError(f"retry.max_attempts must be >= 1, got {retry.max_attempts}")

    defaults_raw = raw["defaults"]
    race_policy = str(defaults_raw.get("race_policy", "first_settled"))
    if race_policy not in RACE_POLICIES:
        raise ValueError(f"Unknown race_policy '{race_policy}', expected one of {RACE_POLICIES}")
    defaults = DefaultsConfig(
        chats_dir=Path(defaults_raw["chats_dir"]),
        export_dir=Path(defaults_raw["export_dir"]),
        race_policy=race_policy,
        models=[str(m) for m in defaults_raw.get("models", [])],
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        series_enhance=prompts_raw["series_enhance"],
        parallel_synthesis=prompts_raw["parallel_synthesis"],
    )

    catalog = _load_catalog(raw.get("models") or {})

    api_key = os.environ.get(api.api_key_env, "").strip()
    if api_key:
        logger.info("API key found in %s", api.api_key_env)
    else:
        logger.info("No API key set: add %s to .env", api.api_key_env)

    return AppConfig(
        api=api,
        retry=retry,
        defaults=defaults,
        prompts=prompts,
        api_key=api_key,
        catalog=catalog,
    )
