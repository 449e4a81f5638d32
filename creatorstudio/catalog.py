"""
Creator Studio — catalog.py
─────────────────────────────────────────────────────────────────
Model catalogue lookup: model name → provider, media kind,
cost and the provider-specific api_config.

Prices come from the catalogue as-is; how they are computed
lives elsewhere.

Load from JSON (CATALOG_PATH) or fall back to DEFAULT_MODELS:

    {
      "flux-schnell": {
        "provider": "runpod", "kind": "image", "cost": 0.04,
        "title": "Flux Schnell",
        "api_config": {"width": 1024, "height": 1024}
      }
    }
─────────────────────────────────────────────────────────────────
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List

from creatorstudio.core.config import cfg
from creatorstudio.models.job import JobKind

logger = logging.getLogger("creatorstudio.catalog")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class CatalogError(Exception):
    """Base catalogue exception."""

class UnknownModelError(CatalogError):
    """Model name is not in the catalogue."""


# ─────────────────────────────────────────────
# Entries
# ─────────────────────────────────────────────
@dataclass(frozen=True)
class CatalogEntry:
    model:      str
    provider:   str
    kind:       JobKind
    cost:       float
    title:      str
    api_config: Dict[str, Any] = field(default_factory=dict)


DEFAULT_MODELS: Dict[str, Dict[str, Any]] = {
    "flux-schnell": {
        "provider":   "runpod",
        "kind":       "image",
        "cost":       0.04,
        "title":      "Flux Schnell",
        "api_config": {"width": 1024, "height": 1024, "output_format": "png"},
    },
    "seedream-4": {
        "provider":   "runware",
        "kind":       "image",
        "cost":       0.04,
        "title":      "Seedream 4.0",
        "api_config": {"model": "bytedance:5@0", "sizes": "seedream40"},
    },
    "nano-banana": {
        "provider":   "wavespeed",
        "kind":       "image",
        "cost":       0.06,
        "title":      "Nano Banana",
        "api_config": {"endpoint": "google/nano-banana/text-to-image"},
    },
    "wan-2.5": {
        "provider":   "wavespeed",
        "kind":       "video",
        "cost":       0.50,
        "title":      "Wan 2.5",
        "api_config": {"endpoint": "alibaba/wan-2.5/text-to-video", "duration": 5},
    },
    "kling-motion-control": {
        "provider":   "falai",
        "kind":       "video",
        "cost":       0.80,
        "title":      "Kling Motion Control",
        "api_config": {"endpoint": "fal-ai/kling-video/v2.6/standard/motion-control"},
    },
}


# ─────────────────────────────────────────────
# StaticCatalog
# ─────────────────────────────────────────────
class StaticCatalog:

    def __init__(self, entries: Dict[str, CatalogEntry]):
        self._entries = dict(entries)

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> "StaticCatalog":
        entries = {}
        for name, raw in data.items():
            try:
                entries[name] = CatalogEntry(
                    model      = name,
                    provider   = raw["provider"],
                    kind       = JobKind(raw.get("kind", "image")),
                    cost       = round(float(raw["cost"]), 4),
                    title      = raw.get("title", name),
                    api_config = dict(raw.get("api_config") or {}),
                )
            except (KeyError, ValueError, TypeError) as e:
                raise CatalogError(f"Bad catalogue entry '{name}': {e}")
        return cls(entries)

    @classmethod
    def from_file(cls, path: str) -> "StaticCatalog":
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CatalogError(f"Could not load catalogue {path}: {e}")
        return cls.from_dict(data)

    def resolve(self, model: str) -> CatalogEntry:
        entry = self._entries.get(model)
        if entry is None:
            raise UnknownModelError(f"Unknown model '{model}'.")
        return entry

    def models(self) -> List[CatalogEntry]:
        return list(self._entries.values())


def load_catalog(path: Optional[str] = None) -> StaticCatalog:
    path = path if path is not None else cfg.CATALOG_PATH
    if path:
        catalog = StaticCatalog.from_file(path)
        logger.info(f"✓ Catalogue loaded from {path} ({len(catalog.models())} models)")
        return catalog
    return StaticCatalog.from_dict(DEFAULT_MODELS)
