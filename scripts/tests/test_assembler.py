#!/usr/bin/env python3
"""Tests for building grouping, footprint selection and deduplication."""
import pytest
import sys
from pathlib import Path

import numpy as np
import trimesh

sys.path.insert(0, str(Path(__file__).parent.parent))

from citygml_export.assembler import BuildingAssembler, FootprintRegistry
from citygml_export.config import ExtractConfig, ProjectionConfig
from citygml_export.extractor import GeometryExtractor
from citygml_export.gml_tree import load_document
from citygml_export.models import ExtractionStats, footprint_key, open_ring
from citygml_export.reproject import Reprojector


def assemble(doc, reprojector, detailed=False, registry=None, scope="sample"):
    stats = ExtractionStats()
    extractor = GeometryExtractor(stats=stats)
    assembler = BuildingAssembler(
        reprojector,
        ExtractConfig(detailed=detailed),
        registry=registry,
        stats=stats,
        scope=scope,
    )
    assembler.add_all(extractor.iter_fragments(load_document(doc)))
    return assembler.assemble(), stats, assembler


class TestHeight:
    """Tests for height measurement."""

    def test_height_from_z_range(self, gml, reprojector):
        buildings, _, _ = assemble(gml.city_model(gml.building("b1", gml.x, gml.y)), reprojector)
        # 110 ft - 10 ft
        assert buildings[0].height_m == pytest.approx(30.48)

    def test_height_rounded_to_two_decimals(self, gml, reprojector):
        doc = gml.city_model(gml.building("b1", gml.x, gml.y, z0=0.0, z1=33.333))
        buildings, _, _ = assemble(doc, reprojector)
        assert buildings[0].height_m == round(33.333 * 0.3048, 2)

    def test_footprint_hint_counts_toward_height(self, gml, reprojector):
        doc = gml.city_model(gml.building("b1", gml.x, gml.y, z0=10.0, z1=110.0, hint_z=0.0))
        buildings, _, _ = assemble(doc, reprojector)
        # z spans 0 (lod0 footprint) to 110 ft (roof)
        assert buildings[0].height_m == round(110.0 * 0.3048, 2)

    def test_footprint_hint_below_shell(self, gml, reprojector):
        doc = gml.city_model(gml.building("b1", gml.x, gml.y, z0=10.0, z1=110.0, hint_z=-50.0))
        buildings, _, _ = assemble(doc, reprojector)
        assert buildings[0].height_m == round(160.0 * 0.3048, 2)

    def test_flat_building_has_zero_height(self, gml, reprojector):
        square = [(gml.x, gml.y, 5), (gml.x + 10, gml.y, 5), (gml.x + 10, gml.y + 10, 5)]
        buildings, _, _ = assemble(gml.city_model(gml.polygon(square, gml_id="flat")), reprojector)
        assert buildings[0].height_m == 0.0

    def test_building_part_merged_into_parent(self, gml, reprojector):
        part = gml.building("part_1", gml.x, gml.y, z0=10.0, z1=210.0, tag="BuildingPart", hint=False)
        doc = gml.city_model(gml.building(
            "parent", gml.x, gml.y, z0=10.0, z1=60.0,
            extra=f"<bldg:consistsOfBuildingPart>{part}</bldg:consistsOfBuildingPart>",
        ))
        buildings, _, _ = assemble(doc, reprojector)

        assert len(buildings) == 1
        assert buildings[0].id == "parent"
        assert buildings[0].height_m == pytest.approx(200 * 0.3048)


class TestFootprint:
    """Tests for footprint selection."""

    def test_footprint_is_open_ring(self, gml, reprojector):
        buildings, _, _ = assemble(gml.city_model(gml.building("b1", gml.x, gml.y)), reprojector)
        footprint = buildings[0].footprint

        assert len(footprint) == 4
        assert footprint[0] != footprint[-1]
        assert all(len(p) == 2 for p in footprint)

    def test_hint_preferred(self, gml, reprojector):
        hint = [(gml.x + 10, gml.y + 10, 10), (gml.x + 40, gml.y + 10, 10), (gml.x + 40, gml.y + 40, 10)]
        doc = gml.city_model(gml.building("b1", gml.x, gml.y, hint=False, extra=gml.footprint_hint(hint)))
        buildings, _, _ = assemble(doc, reprojector)

        expected = open_ring(reprojector.project_ring_2d(hint))
        assert list(buildings[0].footprint) == expected

    def test_largest_ring_without_hint(self, gml, reprojector):
        doc = gml.city_model(gml.building("b1", gml.x, gml.y, hint=False))
        buildings, _, _ = assemble(doc, reprojector)

        ground = gml.box_rings(gml.x, gml.y, 100.0, 10.0, 110.0)["ground"]
        expected = set(reprojector.project_ring_2d(ground))
        assert set(buildings[0].footprint) == expected

    def test_footprint_in_target_units(self, gml, reprojector):
        buildings, _, _ = assemble(gml.city_model(gml.building("b1", gml.x, gml.y)), reprojector)
        xs = [p[0] for p in buildings[0].footprint]
        # 100 ft square, Web Mercator stretches ~1.3x at this latitude
        assert 30 < max(xs) - min(xs) < 50


class TestIdentity:
    """Tests for identity resolution."""

    def test_explicit_ids(self, sample_citygml, reprojector):
        buildings, _, _ = assemble(sample_citygml, reprojector)
        assert [b.id for b in buildings] == ["bldg_1", "bldg_2", "bldg_3"]

    def test_synthesized_ids_per_container(self, gml, reprojector):
        doc = gml.city_model(
            gml.building(None, gml.x, gml.y),
            gml.building(None, gml.x + 500, gml.y),
        )
        buildings, _, _ = assemble(doc, reprojector, scope="tile_7")
        assert [b.id for b in buildings] == ["tile_7:b0", "tile_7:b1"]

    def test_standalone_polygons_get_own_ids(self, gml, reprojector):
        a = [(gml.x, gml.y, 0), (gml.x + 10, gml.y, 0), (gml.x + 10, gml.y + 10, 5)]
        b = [(gml.x + 50, gml.y, 0), (gml.x + 60, gml.y, 0), (gml.x + 60, gml.y + 10, 5)]
        doc = (
            gml.city_model().replace(
                "</core:CityModel>",
                f"<core:extra>{gml.polygon(a)}{gml.polygon(b)}</core:extra></core:CityModel>",
            )
        )
        buildings, _, _ = assemble(doc, reprojector, scope="loose")
        assert [b.id for b in buildings] == ["loose:b0", "loose:b1"]


class TestDeduplication:
    """Tests for duplicate footprint handling."""

    def test_duplicate_dropped(self, sample_citygml, reprojector):
        buildings, stats, assembler = assemble(sample_citygml, reprojector)

        assert "bldg_dup" not in [b.id for b in buildings]
        assert stats.duplicates == 1
        assert assembler.registry.duplicates == [("bldg_1", "bldg_dup")]

    def test_duplicate_with_synthesized_ids_dropped(self, gml, reprojector):
        doc = gml.city_model(
            gml.building(None, gml.x, gml.y),
            gml.building(None, gml.x, gml.y),
        )
        buildings, stats, assembler = assemble(doc, reprojector, scope="s")

        assert [b.id for b in buildings] == ["s:b0"]
        assert stats.duplicates == 1
        assert assembler.registry.duplicates == [("s:b0", "s:b1")]

    def test_footprints_pairwise_distinct(self, sample_citygml, reprojector):
        buildings, _, _ = assemble(sample_citygml, reprojector)
        keys = [b.footprint_key() for b in buildings]
        assert len(keys) == len(set(keys))

    def test_duplicate_across_documents(self, gml, reprojector):
        registry = FootprintRegistry()
        first, _, _ = assemble(gml.city_model(gml.building("a", gml.x, gml.y)), reprojector, registry=registry)
        second, stats, _ = assemble(gml.city_model(gml.building("b", gml.x, gml.y)), reprojector, registry=registry)

        assert [b.id for b in first] == ["a"]
        assert second == []
        assert stats.duplicates == 1

    def test_reused_id_gets_suffix(self, gml, reprojector):
        registry = FootprintRegistry()
        first, _, _ = assemble(gml.city_model(gml.building("same", gml.x, gml.y)), reprojector, registry=registry)
        second, stats, _ = assemble(
            gml.city_model(gml.building("same", gml.x + 500, gml.y)), reprojector, registry=registry
        )
        third, _, _ = assemble(
            gml.city_model(gml.building("same", gml.x + 900, gml.y)), reprojector, registry=registry
        )

        assert first[0].id == "same"
        assert second[0].id == "same#2"
        assert third[0].id == "same#3"
        assert stats.renamed_ids == 1


class TestFootprintRegistry:
    """Tests for the run-wide registry."""

    def test_register_and_owner(self):
        registry = FootprintRegistry()
        key = footprint_key([(0, 0), (1, 0), (1, 1)])

        assert registry.owner(key) is None
        assert registry.register(key, "a") == "a"
        assert registry.owner(key) == "a"
        assert len(registry) == 1

    def test_register_claimed_key_raises(self):
        registry = FootprintRegistry()
        key = footprint_key([(0, 0), (1, 0), (1, 1)])
        registry.register(key, "a")
        with pytest.raises(ValueError):
            registry.register(key, "b")

    def test_suffix_skips_taken_ids(self):
        registry = FootprintRegistry()
        registry.register(footprint_key([(0, 0), (1, 0), (1, 1)]), "a#2")
        registry.register(footprint_key([(0, 0), (2, 0), (2, 2)]), "a")
        renamed = registry.register(footprint_key([(0, 0), (3, 0), (3, 3)]), "a")
        assert renamed == "a#3"


class TestMeshes:
    """Tests for mesh construction per mode."""

    def test_massing_mesh(self, gml, reprojector):
        buildings, _, _ = assemble(gml.city_model(gml.building("b1", gml.x, gml.y)), reprojector)
        mesh = buildings[0].mesh

        assert mesh.vertex_count == 8
        assert mesh.triangle_count == 12
        assert np.isclose(mesh.vertices[:, 2].max(), buildings[0].height_m)

    def test_detailed_mesh_skips_footprint_hint(self, gml, reprojector):
        buildings, _, _ = assemble(
            gml.city_model(gml.building("b1", gml.x, gml.y)), reprojector, detailed=True
        )
        mesh = buildings[0].mesh
        # 6 quads, 2 triangles each
        assert mesh.triangle_count == 12
        assert mesh.vertex_count == 24

    def test_detailed_box_is_closed_and_outward(self, gml):
        # Recentered so shared corners re-lift to identical positions
        local = Reprojector(ProjectionConfig(recenter_origin=(gml.x, gml.y)))
        buildings, _, _ = assemble(
            gml.city_model(gml.building("b1", gml.x, gml.y)), local, detailed=True
        )
        mesh = buildings[0].mesh
        tm = trimesh.Trimesh(vertices=mesh.vertices, faces=mesh.faces.astype(np.int64))

        assert tm.is_watertight
        assert tm.is_winding_consistent
        assert tm.volume > 0

    def test_degenerate_surface_counted(self, gml, reprojector):
        line = [(gml.x, gml.y, 10), (gml.x + 5, gml.y, 10), (gml.x + 10, gml.y, 10)]
        extra = gml.surface("WallSurface", line)
        buildings, stats, _ = assemble(
            gml.city_model(gml.building("b1", gml.x, gml.y, extra=extra)), reprojector, detailed=True
        )

        assert len(buildings) == 1
        assert buildings[0].mesh is not None
        assert stats.degenerate_surfaces == 1

    def test_building_without_mesh_kept(self, gml, reprojector):
        line = [(gml.x, gml.y, 10), (gml.x + 5, gml.y, 10), (gml.x + 10, gml.y, 10)]
        doc = gml.city_model(gml.polygon(line, gml_id="sliver"))
        buildings, stats, _ = assemble(doc, reprojector, detailed=True)

        assert [b.id for b in buildings] == ["sliver"]
        assert buildings[0].mesh is None
        assert stats.buildings_without_mesh == 1


class TestStats:
    """Tests for counters."""

    def test_group_and_building_counts(self, sample_citygml, reprojector):
        _, stats, _ = assemble(sample_citygml, reprojector)
        assert stats.groups == 4
        assert stats.buildings == 3
        assert stats.fragments == 4 * 7
