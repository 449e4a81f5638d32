import json

import pytest

from creatorstudio.catalog import (
    DEFAULT_MODELS, CatalogError, StaticCatalog, UnknownModelError, load_catalog,
)
from creatorstudio.models.job import JobKind


def test_default_catalog_resolves_models():
    catalog = load_catalog("")

    entry = catalog.resolve("wan-2.5")
    assert entry.provider == "wavespeed"
    assert entry.kind == JobKind.VIDEO
    assert entry.cost == 0.50
    assert entry.api_config["endpoint"] == "alibaba/wan-2.5/text-to-video"
    assert len(catalog.models()) == len(DEFAULT_MODELS)


def test_unknown_model():
    with pytest.raises(UnknownModelError):
        load_catalog("").resolve("dall-e-9")


def test_load_from_file(tmp_path):
    path = tmp_path / "models.json"
    path.write_text(json.dumps({
        "my-model": {"provider": "runpod", "cost": 0.123456, "api_config": {"width": 512}},
    }))

    entry = load_catalog(str(path)).resolve("my-model")

    assert entry.kind == JobKind.IMAGE
    assert entry.title == "my-model"
    assert entry.cost == 0.1235


def test_bad_entries_are_rejected(tmp_path):
    with pytest.raises(CatalogError, match="broken"):
        StaticCatalog.from_dict({"broken": {"provider": "runpod"}})
    with pytest.raises(CatalogError):
        StaticCatalog.from_dict({"bad-kind": {"provider": "runpod", "kind": "audio", "cost": 1}})
    with pytest.raises(CatalogError):
        load_catalog(str(tmp_path / "missing.json"))
