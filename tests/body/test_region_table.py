"""Tests for the declarative region table."""

import json

import pytest

from armorfit.body.region_table import (
    RegionSpec, RegionTable, TorsoCorrection, default_region_table, load_region_table,
)


def test_default_table_contents():
    table = default_region_table()
    assert table.names == ["head", "torso", "arms", "hips", "legs"]
    assert table.min_vertex_count == 10
    torso = table.spec("torso")
    assert "spine" in torso.include
    assert "shoulder" in torso.exclude
    assert torso.threshold == pytest.approx(0.3)
    assert table.torso_correction.enabled
    assert table.torso_correction.padding == (0.4, 0.3, 0.4)
    assert table.spec("tail") is None


def test_spec_defaults():
    spec = RegionSpec.from_dict({"name": "tail", "include": ["tail"]})
    assert spec.exclude == ()
    assert spec.threshold == 0.5
    assert spec.fallback_radius == 0.2


def test_duplicate_region_names():
    with pytest.raises(ValueError):
        RegionTable.from_dict({"regions": [{"name": "a"}, {"name": "a"}]})


def test_partial_torso_correction_keeps_defaults():
    corr = TorsoCorrection.from_dict({"enabled": False, "target_height_fraction": 0.5})
    assert not corr.enabled
    assert corr.target_height_fraction == 0.5
    assert corr.min_height_fraction == TorsoCorrection().min_height_fraction


def test_load_from_path(tmp_path):
    path = tmp_path / "regions.json"
    path.write_text(json.dumps({
        "min_vertex_count": 3,
        "regions": [{"name": "wings", "include": ["wing"], "threshold": 0.25}],
    }))
    table = load_region_table(path)
    assert table.names == ["wings"]
    assert table.min_vertex_count == 3
    assert table.spec("wings").include == ("wing",)
