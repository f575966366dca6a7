"""
Configuration management and loading.

Builds the explicit configuration struct injected into adapters, the ledger and the orchestrator.
"""

import os
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.pricing import DEFAULT_RATE_TABLES, ModelRates, RateTable

PROVIDER_NAMES = ("openai", "anthropic", "gemini")

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-20241022",
    "gemini": "gemini-2.5-flash",
}

DEFAULT_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass(frozen=True)
class ProviderSettings:
    """Connection settings for one provider.

    The API key is resolved once when configuration is loaded; adapters
    never consult the environment themselves.
    """
    name: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0

    def __post_init__(self):
        if not self.model:
            raise ValueError(f"providers.{self.name}.model must not be empty")
        if self.timeout <= 0:
            raise ValueError(f"providers.{self.name}.timeout must be > 0")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class LimitSettings:
    """Per-user spending and request ceilings."""
    daily_cost: float = 1.0
    monthly_cost: float = 10.0
    requests_per_window: int = 100
    window_seconds: int = 3600
    warning_threshold: float = 0.8
    critical_threshold: float = 0.95

    def __post_init__(self):
        """Validate limit values are positive."""
        if self.daily_cost <= 0:
            raise ValueError("daily_cost must be > 0")
        if self.monthly_cost <= 0:
            raise ValueError("monthly_cost must be > 0")
        if self.requests_per_window <= 0:
            raise ValueError("requests_per_window must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if not 0 < self.warning_threshold <= self.critical_threshold <= 1:
            raise ValueError("thresholds must satisfy 0 < warning <= critical <= 1")


@dataclass(frozen=True)
class CacheSettings:
    """Result cache time-to-live per operation, in seconds."""
    completion_ttl: float = 300
    normalization_ttl: float = 1800
    notes_ttl: float = 3600
    attributes_ttl: float = 3600
    max_entries: int = 1000

    def __post_init__(self):
        for name in ("completion_ttl", "normalization_ttl", "notes_ttl", "attributes_ttl"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")


@dataclass(frozen=True)
class RetrySettings:
    """Backoff for upstream HTTP 429 responses."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 8.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ValueError("delays must be > 0")


@dataclass(frozen=True)
class BatchSettings:
    """Upper bounds for batch operations."""
    max_complete: int = 10
    max_normalize: int = 10
    max_notes: int = 20
    max_concurrency: int = 4

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 1:
                raise ValueError(f"{f.name} must be >= 1")


@dataclass(frozen=True)
class EfficiencySettings:
    """Weights of the quality/efficiency score.

    Product-tuning constants; the weights must sum to 1.
    """
    confidence_weight: float = 0.4
    data_match_weight: float = 0.3
    latency_weight: float = 0.1
    provider_weight: float = 0.2
    provider_reliability: Dict[str, float] = field(default_factory=lambda: {
        "openai": 0.9,
        "anthropic": 0.85,
        "gemini": 0.85,
    })
    default_reliability: float = 0.5
    latency_ceiling_ms: float = 10000

    def __post_init__(self):
        weights = (
            self.confidence_weight,
            self.data_match_weight,
            self.latency_weight,
            self.provider_weight,
        )
        if any(w < 0 for w in weights):
            raise ValueError("efficiency weights must be >= 0")
        if abs(sum(weights) - 1.0) > 1e-6:
            raise ValueError(f"efficiency weights must sum to 1, got {sum(weights)}")
        if self.latency_ceiling_ms <= 0:
            raise ValueError("latency_ceiling_ms must be > 0")

    def reliability_of(self, provider: str) -> float:
        return self.provider_reliability.get(provider, self.default_reliability)


def _default_providers() -> Dict[str, ProviderSettings]:
    return {name: ProviderSettings(name=name, model=DEFAULT_MODELS[name]) for name in PROVIDER_NAMES}


@dataclass(frozen=True)
class ResolverConfig:
    """Complete resolver configuration."""
    default_provider: str = "openai"
    providers: Dict[str, ProviderSettings] = field(default_factory=_default_providers)
    limits: LimitSettings = field(default_factory=LimitSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    efficiency: EfficiencySettings = field(default_factory=EfficiencySettings)
    rate_tables: Dict[str, RateTable] = field(default_factory=lambda: dict(DEFAULT_RATE_TABLES))
    db_path: str = "scent_resolver.db"
    exemplar_limit: int = 3

    def __post_init__(self):
        if self.default_provider not in PROVIDER_NAMES:
            raise ValueError(f"default_provider must be one of: {list(PROVIDER_NAMES)}")
        if self.exemplar_limit < 0:
            raise ValueError("exemplar_limit must be >= 0")

    def provider_settings(self, name: str) -> ProviderSettings:
        """Get settings for a provider, unconfigured defaults if not specified."""
        return self.providers.get(name, ProviderSettings(name=name, model=DEFAULT_MODELS[name]))

    def rate_table(self, name: str) -> RateTable:
        return self.rate_tables[name]

    def with_api_keys(self, **api_keys: Optional[str]) -> "ResolverConfig":
        """Return a copy with the given provider API keys set."""
        providers = dict(self.providers)
        for name, key in api_keys.items():
            providers[name] = replace(self.provider_settings(name), api_key=key)
        return replace(self, providers=providers)


def load_resolver_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ResolverConfig:
    """Load and validate resolver configuration from a YAML file.

    Strict validation rejects unknown keys at every level so typos cannot
    silently disable a spending limit.

    Args:
        path: Path to YAML configuration file; defaults only when omitted
        environ: Environment used to resolve API keys (defaults to os.environ)

    Returns:
        Validated ResolverConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    raw_config: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Resolver config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not raw_config:
            raise ValueError("Configuration file is empty")
        if not isinstance(raw_config, dict):
            raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {
        'default_provider', 'providers', 'limits', 'cache', 'retry', 'batch',
        'efficiency', 'pricing', 'db_path', 'exemplar_limit',
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    providers_data = _require_dict(raw_config.get('providers', {}), 'providers')
    unknown_providers = set(providers_data.keys()) - set(PROVIDER_NAMES)
    if unknown_providers:
        raise ValueError(f"Unknown providers: {unknown_providers}")

    providers = {
        name: _parse_provider(name, _require_dict(providers_data.get(name) or {}, f"providers.{name}"), environ)
        for name in PROVIDER_NAMES
    }

    efficiency_data = _require_dict(raw_config.get('efficiency', {}), 'efficiency')

    return ResolverConfig(
        default_provider=str(raw_config.get('default_provider', 'openai')).lower(),
        providers=providers,
        limits=_parse_section(raw_config.get('limits', {}), LimitSettings, 'limits'),
        cache=_parse_section(raw_config.get('cache', {}), CacheSettings, 'cache'),
        retry=_parse_section(raw_config.get('retry', {}), RetrySettings, 'retry'),
        batch=_parse_section(raw_config.get('batch', {}), BatchSettings, 'batch'),
        efficiency=_parse_efficiency(efficiency_data),
        rate_tables=_parse_pricing(_require_dict(raw_config.get('pricing', {}), 'pricing')),
        db_path=str(raw_config.get('db_path', 'scent_resolver.db')),
        exemplar_limit=int(raw_config.get('exemplar_limit', 3)),
    )


def _require_dict(data: Any, path: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _parse_provider(name: str, data: Dict[str, Any], environ: Mapping[str, str]) -> ProviderSettings:
    """Parse one provider block, resolving its API key.

    An explicit ``api_key`` wins over ``api_key_env``; without either the
    provider's conventional environment variable is consulted.
    """
    allowed_keys = {'model', 'api_key', 'api_key_env', 'base_url', 'timeout'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in providers.{name}: {unknown_keys}")

    api_key = data.get('api_key')
    if api_key is None:
        env_name = data.get('api_key_env', DEFAULT_API_KEY_ENV[name])
        api_key = environ.get(env_name)

    timeout = data.get('timeout', 30.0)
    if not isinstance(timeout, (int, float)):
        raise ValueError(f"'timeout' in providers.{name} must be a number")

    return ProviderSettings(
        name=name,
        model=str(data.get('model', DEFAULT_MODELS[name])),
        api_key=str(api_key) if api_key else None,
        base_url=data.get('base_url'),
        timeout=float(timeout),
    )


def _parse_section(data: Any, section_cls, path: str):
    """Parse a flat numeric section into its settings dataclass."""
    data = _require_dict(data, path)
    field_types = {f.name: f.type for f in fields(section_cls)}
    unknown_keys = set(data.keys()) - set(field_types)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        values[key] = int(value) if field_types[key] in (int, 'int') else float(value)
    return section_cls(**values)


def _parse_efficiency(data: Dict[str, Any]) -> EfficiencySettings:
    allowed_keys = {'weights', 'provider_reliability', 'default_reliability', 'latency_ceiling_ms'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in efficiency: {unknown_keys}")

    values: Dict[str, Any] = {}
    weights = _require_dict(data.get('weights', {}), 'efficiency.weights')
    allowed_weights = {'confidence', 'data_match', 'latency', 'provider'}
    unknown_weights = set(weights.keys()) - allowed_weights
    if unknown_weights:
        raise ValueError(f"Unknown keys in efficiency.weights: {unknown_weights}")
    for key, value in weights.items():
        values[f"{key}_weight"] = float(value)

    if 'provider_reliability' in data:
        reliability = _require_dict(data['provider_reliability'], 'efficiency.provider_reliability')
        merged = dict(EfficiencySettings().provider_reliability)
        merged.update({str(k): float(v) for k, v in reliability.items()})
        values['provider_reliability'] = merged
    if 'default_reliability' in data:
        values['default_reliability'] = float(data['default_reliability'])
    if 'latency_ceiling_ms' in data:
        values['latency_ceiling_ms'] = float(data['latency_ceiling_ms'])

    return EfficiencySettings(**values)


def _parse_pricing(data: Dict[str, Any]) -> Dict[str, RateTable]:
    """Merge pricing overrides into the built-in rate tables.

    Example::

        pricing:
          openai:
            default_model: gpt-4o
            models:
              gpt-4.1-mini: {input: 0.40, output: 1.60}
    """
    tables = dict(DEFAULT_RATE_TABLES)
    unknown_providers = set(data.keys()) - set(PROVIDER_NAMES)
    if unknown_providers:
        raise ValueError(f"Unknown providers in pricing: {unknown_providers}")

    for provider, provider_data in data.items():
        path = f"pricing.{provider}"
        provider_data = _require_dict(provider_data, path)
        unknown_keys = set(provider_data.keys()) - {'default_model', 'models'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        overrides = {}
        for model, rate_data in _require_dict(provider_data.get('models', {}), f"{path}.models").items():
            rate_data = _require_dict(rate_data, f"{path}.models.{model}")
            if set(rate_data.keys()) != {'input', 'output'}:
                raise ValueError(f"{path}.models.{model} must define exactly 'input' and 'output'")
            try:
                overrides[str(model)] = ModelRates(
                    input_per_million=Decimal(str(rate_data['input'])),
                    output_per_million=Decimal(str(rate_data['output'])),
                )
            except InvalidOperation:
                raise ValueError(f"{path}.models.{model} rates must be numeric")

        tables[provider] = tables[provider].merged(
            overrides, default_model=str(provider_data.get('default_model', ''))
        )
    return tables
