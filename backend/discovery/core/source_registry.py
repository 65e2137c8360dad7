from __future__ import annotations

"""Source registry and YAML loader for the discovery job.

Governance intent:
- Sources switch on/off without code changes.
- Start order follows config priority.
- Disabled sources are skipped silently.
- An invalid file is a ConfigError; the job refuses to start on it.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from discovery.core.errors import ConfigError
from discovery.core.models import AggregatorConfig, SourceConfig


_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}

DEFAULT_SOURCES_YAML = Path(__file__).resolve().parents[1] / "config" / "sources.yaml"


@dataclass(frozen=True, slots=True)
class SourceRegistry:
    sources: list[SourceConfig]
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)

    def enabled_sources(self) -> list[SourceConfig]:
        enabled = [s for s in self.sources if s.enabled]
        return sorted(enabled, key=lambda s: (_PRIORITY_RANK.get(s.priority, 9), s.key))

    def get(self, key: str) -> SourceConfig | None:
        for source in self.sources:
            if source.key == key:
                return source
        return None


def parse_sources(raw: Any) -> SourceRegistry:
    if not isinstance(raw, dict) or "sources" not in raw or not isinstance(raw["sources"], dict):
        raise ConfigError("Invalid sources.yaml: expected top-level mapping with 'sources'.")

    sources: list[SourceConfig] = []
    for key, cfg in raw["sources"].items():
        if not isinstance(cfg, dict):
            continue
        try:
            sources.append(SourceConfig(key=str(key), **cfg))
        except ValidationError as e:
            raise ConfigError(f"Invalid source {key!r}: {e}") from e

    aggregator_raw = raw.get("aggregator") or {}
    if not isinstance(aggregator_raw, dict):
        raise ConfigError("Invalid sources.yaml: 'aggregator' must be a mapping.")
    try:
        aggregator = AggregatorConfig(**aggregator_raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid aggregator config: {e}") from e

    return SourceRegistry(sources=sources, aggregator=aggregator)


def load_sources_yaml(path: Path) -> SourceRegistry:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return parse_sources(raw)
