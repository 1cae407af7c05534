"""
Configuration management for memo-echo stores.

The configuration is stored as a TOML file in the store directory.
It specifies which providers to use and the tuning of each component.
Components receive their section at construction time and are re-injected
through explicit update calls; nothing reads configuration globally.
"""

import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "memo-echo.toml"
CONFIG_VERSION = 1
STORE_DIRNAME = ".memo-echo"

SUPPORTED_LANGUAGES = ("auto", "en", "zh", "ja", "ko", "es", "fr", "de")


def get_store_path(vault: Optional[Path] = None) -> Path:
    """Resolve the store directory.

    MEMOECHO_STORE_PATH wins; otherwise the store lives inside the vault,
    or under the home directory when no vault is given.
    """
    env = os.environ.get("MEMOECHO_STORE_PATH")
    if env:
        return Path(env).expanduser()
    if vault is not None:
        return Path(vault) / STORE_DIRNAME
    return Path.home() / STORE_DIRNAME


def _check_unit_interval(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value!r}")


def _check_non_negative_int(name: str, value: int, minimum: int = 0) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        raise ValueError(f"{name} must be an integer >= {minimum}, got {value!r}")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SkipRules:
    """Rules that keep a note out of concept extraction."""
    skip_paths: list[str] = field(default_factory=lambda: ["_me/", "templates/", "daily/"])
    skip_tags: list[str] = field(default_factory=lambda: [
        "vocabulary", "daily", "template", "image-collection",
    ])
    min_text_length: int = 100
    max_image_ratio: float = 0.7

    def validate(self) -> None:
        _check_non_negative_int("min_text_length", self.min_text_length)
        if not isinstance(self.max_image_ratio, (int, float)) or self.max_image_ratio < 0:
            raise ValueError(f"max_image_ratio must be >= 0, got {self.max_image_ratio!r}")


@dataclass
class ConceptCountRule:
    """How many concepts to ask for, by stripped text length.

    max_chars is exclusive; None means unbounded.
    """
    min_chars: int
    max_chars: Optional[int]
    max_concepts: int

    def validate(self) -> None:
        _check_non_negative_int("min_chars", self.min_chars)
        _check_non_negative_int("max_concepts", self.max_concepts, minimum=1)
        if self.max_chars is not None and self.max_chars <= self.min_chars:
            raise ValueError(
                f"max_chars must exceed min_chars ({self.min_chars}), got {self.max_chars!r}"
            )


def default_count_rules() -> list[ConceptCountRule]:
    return [
        ConceptCountRule(0, 200, 1),
        ConceptCountRule(200, 500, 2),
        ConceptCountRule(500, 1000, 3),
        ConceptCountRule(1000, None, 4),
    ]


@dataclass
class ExtractionConfig:
    """Concept extractor settings."""
    max_concepts: int = 5
    min_confidence: float = 0.7
    exclude_generic: list[str] = field(default_factory=lambda: [
        "summary", "overview", "introduction", "技术开发", "总结", "概述", "简介", "设计",
    ])
    focus_on_abstract: bool = True
    language: str = "auto"
    timeout: float = 120.0
    max_content_chars: int = 2000
    max_tokens: int = 1024

    def validate(self) -> None:
        _check_non_negative_int("max_concepts", self.max_concepts, minimum=1)
        _check_unit_interval("min_confidence", self.min_confidence)
        if not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout!r}")
        _check_non_negative_int("max_content_chars", self.max_content_chars, minimum=1)
        _check_non_negative_int("max_tokens", self.max_tokens, minimum=1)
        if not isinstance(self.language, str) or not self.language:
            raise ValueError("language must be a non-empty string")


@dataclass
class RegistryOptions:
    """Concept registry settings."""
    similarity_threshold: float = 0.85
    strict_threshold: float = 0.90
    update_summary: bool = False
    concept_page_prefix: str = "_me"

    def validate(self) -> None:
        _check_unit_interval("similarity_threshold", self.similarity_threshold)
        _check_unit_interval("strict_threshold", self.strict_threshold)
        if not self.concept_page_prefix:
            raise ValueError("concept_page_prefix must not be empty")


@dataclass
class AssociationConfig:
    """Association discovery settings."""
    min_shared_concepts: int = 1
    min_confidence: float = 0.5
    max_associations: int = 20
    exclude_self_associations: bool = True

    def validate(self) -> None:
        _check_non_negative_int("min_shared_concepts", self.min_shared_concepts, minimum=1)
        _check_unit_interval("min_confidence", self.min_confidence)
        _check_non_negative_int("max_associations", self.max_associations)


@dataclass
class PipelineConfig:
    """Per-note pipeline settings."""
    enable_concept_extraction: bool = True
    inject_to_frontmatter: bool = True
    auto_create_concept_page: bool = False
    concept_page_prefix: str = "_me"
    dictionary_path: str = "_me/_concept-dictionary.json"

    def validate(self) -> None:
        if not self.concept_page_prefix:
            raise ValueError("concept_page_prefix must not be empty")
        if not self.dictionary_path:
            raise ValueError("dictionary_path must not be empty")


def updated(section, **changes):
    """
    Return a validated copy of a config section with changes applied.

    The original is never modified, so a rejected change leaves the prior
    configuration in place.

    Raises:
        ValueError: For unknown fields or out-of-range values
    """
    names = {f.name for f in dataclasses.fields(section)}
    unknown = set(changes) - names
    if unknown:
        raise ValueError(
            f"Unknown {type(section).__name__} field(s): {', '.join(sorted(unknown))}"
        )
    candidate = dataclasses.replace(section, **changes)
    candidate.validate()
    return candidate


@dataclass
class MemoEchoConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Provider configurations
    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("sentence-transformers"))
    generation: ProviderConfig = field(default_factory=lambda: ProviderConfig("ollama"))
    concept_store: ProviderConfig = field(default_factory=lambda: ProviderConfig("chroma"))

    # Component sections
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    skip_rules: SkipRules = field(default_factory=SkipRules)
    concept_count_rules: list[ConceptCountRule] = field(default_factory=default_count_rules)
    registry: RegistryOptions = field(default_factory=RegistryOptions)
    associations: AssociationConfig = field(default_factory=AssociationConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def validate(self) -> None:
        self.extraction.validate()
        self.skip_rules.validate()
        for rule in self.concept_count_rules:
            rule.validate()
        self.registry.validate()
        self.associations.validate()
        self.pipeline.validate()


def detect_default_providers() -> dict[str, ProviderConfig]:
    """
    Detect the best default providers for the current environment.

    Generation priority:
    1. Anthropic (if ANTHROPIC_API_KEY is set)
    2. OpenAI (if an OpenAI key is set)
    3. Ollama (local)

    Embeddings stay local (sentence-transformers) for privacy and cost.
    """
    providers = {}

    has_anthropic_key = bool(os.environ.get("ANTHROPIC_API_KEY"))
    has_openai_key = bool(
        os.environ.get("MEMOECHO_OPENAI_API_KEY") or
        os.environ.get("OPENAI_API_KEY")
    )

    providers["embedding"] = ProviderConfig("sentence-transformers")

    if has_anthropic_key:
        providers["generation"] = ProviderConfig("anthropic")
    elif has_openai_key:
        providers["generation"] = ProviderConfig("openai")
    else:
        providers["generation"] = ProviderConfig("ollama")

    providers["concept_store"] = ProviderConfig("chroma")

    return providers


def create_default_config(store_path: Path) -> MemoEchoConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()

    return MemoEchoConfig(
        path=store_path,
        embedding=providers["embedding"],
        generation=providers["generation"],
        concept_store=providers["concept_store"],
    )


def _section(cls, data: dict):
    """Build a section dataclass from TOML, ignoring unknown keys."""
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def load_config(store_path: Path) -> MemoEchoConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    # Parse provider configs
    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    rules_data = data.get("concept_count_rules", {}).get("rules")
    if rules_data is None:
        count_rules = default_count_rules()
    else:
        count_rules = [
            ConceptCountRule(
                min_chars=r.get("min_chars", 0),
                max_chars=r.get("max_chars"),
                max_concepts=r.get("max_concepts", 4),
            )
            for r in rules_data
        ]

    config = MemoEchoConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=parse_provider(data.get("embedding", {"name": "sentence-transformers"})),
        generation=parse_provider(data.get("generation", {"name": "ollama"})),
        concept_store=parse_provider(data.get("concept_store", {"name": "chroma"})),
        extraction=_section(ExtractionConfig, data.get("extraction", {})),
        skip_rules=_section(SkipRules, data.get("skip_rules", {})),
        concept_count_rules=count_rules,
        registry=_section(RegistryOptions, data.get("registry", {})),
        associations=_section(AssociationConfig, data.get("associations", {})),
        pipeline=_section(PipelineConfig, data.get("pipeline", {})),
    )
    config.validate()
    return config


def save_config(config: MemoEchoConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    # Ensure directory exists
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    def rule_to_dict(r: ConceptCountRule) -> dict:
        d = {"min_chars": r.min_chars, "max_concepts": r.max_concepts}
        if r.max_chars is not None:
            d["max_chars"] = r.max_chars
        return d

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": provider_to_dict(config.embedding),
        "generation": provider_to_dict(config.generation),
        "concept_store": provider_to_dict(config.concept_store),
        "extraction": dataclasses.asdict(config.extraction),
        "skip_rules": dataclasses.asdict(config.skip_rules),
        "concept_count_rules": {
            "rules": [rule_to_dict(r) for r in config.concept_count_rules],
        },
        "registry": dataclasses.asdict(config.registry),
        "associations": dataclasses.asdict(config.associations),
        "pipeline": dataclasses.asdict(config.pipeline),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> MemoEchoConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
        return config
