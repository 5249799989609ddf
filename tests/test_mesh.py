import numpy as np
import pytest
from shapely.geometry import LineString, Polygon, box

from noisemap.calc.propagation import build_scene
from noisemap.errors import GeometryError
from noisemap.geom.mesh import NO_BUILDING, NO_NEIGHBOR, MeshBuilder
from noisemap.model.entities import Envelope, GroundArea
from noisemap.model.settings import PropagationSettings

SCENE = Envelope(0.0, 0.0, 100.0, 100.0)


def _mesh_with_two_buildings():
    mesh = MeshBuilder()
    mesh.add_geometry(box(10.0, 10.0, 30.0, 30.0), 10.0)
    mesh.add_geometry(box(60.0, 60.0, 80.0, 75.0), 6.0)
    mesh.add_ground_area(box(0.0, 40.0, 100.0, 50.0), 1.0)
    return mesh.finish_polygon_feeding(SCENE)


def test_triangulation_arrays():
    tri = _mesh_with_two_buildings()
    assert tri.vertices.shape[1] == 3
    assert tri.triangles.shape == (tri.triangle_count, 3)
    assert tri.neighbors.shape == tri.triangles.shape
    assert np.all(tri.vertices[:, 2] == 0.0)
    assert len(tri.buildings) == 2
    assert len(tri.ground_areas) == 1


def test_triangulation_covers_envelope():
    tri = _mesh_with_two_buildings()
    xy = tri.vertices[:, :2]
    a, b, c = xy[tri.triangles[:, 0]], xy[tri.triangles[:, 1]], xy[tri.triangles[:, 2]]
    area = np.abs((b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])) / 2.0
    assert abs(area.sum() - 100.0 * 100.0) < 1e-6


def test_boundary_triangles_have_missing_neighbors():
    tri = _mesh_with_two_buildings()
    assert np.any(tri.neighbors == NO_NEIGHBOR)
    valid = tri.neighbors[tri.neighbors != NO_NEIGHBOR]
    assert np.all((valid >= 0) & (valid < tri.triangle_count))


def test_building_labels_cover_footprints():
    tri = _mesh_with_two_buildings()
    xy = tri.vertices[:, :2]
    labelled_area = {1: 0.0, 2: 0.0}
    for t, label in zip(tri.triangles, tri.triangle_buildings):
        if label == NO_BUILDING:
            continue
        labelled_area[int(label)] += Polygon(xy[t]).area
    assert abs(labelled_area[1] - 400.0) < 1e-6
    assert abs(labelled_area[2] - 300.0) < 1e-6


def test_triangulation_is_deterministic():
    first = _mesh_with_two_buildings()
    second = _mesh_with_two_buildings()
    assert np.array_equal(first.vertices, second.vertices)
    assert np.array_equal(first.triangles, second.triangles)
    assert np.array_equal(first.triangle_buildings, second.triangle_buildings)


def test_invalid_polygon_reports_feature():
    mesh = MeshBuilder()
    bowtie = Polygon([(0.0, 0.0), (10.0, 10.0), (10.0, 0.0), (0.0, 10.0)])
    with pytest.raises(GeometryError) as err:
        mesh.add_geometry(bowtie, 5.0, building_id=42)
    assert err.value.feature_id == 42
    assert "feature 42" in str(err.value)


@pytest.mark.parametrize(
    "geometry",
    [Polygon(), Polygon([(0.0, 0.0), (5.0, 0.0), (10.0, 0.0)]), LineString([(0.0, 0.0), (1.0, 1.0)])],
)
def test_degenerate_geometries_are_rejected(geometry):
    with pytest.raises(GeometryError):
        MeshBuilder().add_geometry(geometry, 5.0, building_id=3)


def test_negative_height_is_rejected():
    with pytest.raises(GeometryError) as err:
        MeshBuilder().add_geometry(box(0.0, 0.0, 1.0, 1.0), -2.0, building_id=8)
    assert err.value.feature_id == 8


def test_invalid_ground_area_is_located():
    mesh = MeshBuilder()
    assert mesh.add_ground_area(box(0.0, 0.0, 10.0, 10.0), 0.5) == 1
    bowtie = Polygon([(0.0, 0.0), (10.0, 10.0), (10.0, 0.0), (0.0, 10.0)])
    with pytest.raises(GeometryError) as err:
        mesh.add_ground_area(bowtie, 0.5)
    assert err.value.feature_id == 2
    assert err.value.kind == "ground area"
    assert str(err.value).startswith("ground area 2:")
    with pytest.raises(GeometryError) as err:
        mesh.add_ground_area(box(0.0, 0.0, 1.0, 1.0), 1.5, area_id=7)
    assert err.value.feature_id == 7


def test_non_finite_topographic_point_is_located():
    mesh = MeshBuilder()
    mesh.add_topographic_point((0.0, 0.0, 1.0))
    with pytest.raises(GeometryError) as err:
        mesh.add_topographic_point((5.0, 5.0, float("inf")))
    assert err.value.feature_id == 2
    assert err.value.kind == "topographic point"


def test_scene_reports_ground_area_position():
    areas = [GroundArea(box(0.0, 0.0, 10.0, 10.0), 0.5), GroundArea(box(20.0, 20.0, 30.0, 30.0), 2.0)]
    with pytest.raises(GeometryError) as err:
        build_scene(SCENE, [], PropagationSettings(), ground_areas=areas)
    assert err.value.feature_id == 2
    areas[1].area_id = 31
    with pytest.raises(GeometryError) as err:
        build_scene(SCENE, [], PropagationSettings(), ground_areas=areas)
    assert err.value.feature_id == 31


def test_ids_are_assigned_in_order():
    mesh = MeshBuilder()
    assert mesh.add_geometry(box(0.0, 0.0, 1.0, 1.0), 3.0) == 1
    assert mesh.add_geometry(box(5.0, 5.0, 6.0, 6.0), 3.0, building_id=10) == 10
    assert mesh.add_geometry(box(8.0, 8.0, 9.0, 9.0), 3.0) == 11


def test_overlapping_buildings_are_merged():
    mesh = MeshBuilder()
    mesh.add_geometry(box(20.0, 20.0, 40.0, 40.0), 8.0, building_id=7)
    mesh.add_geometry(box(30.0, 30.0, 50.0, 50.0), 12.0, building_id=3)
    mesh.add_geometry(box(70.0, 70.0, 80.0, 80.0), 5.0, building_id=5)
    tri = mesh.finish_polygon_feeding(SCENE)
    assert [b.building_id for b in tri.buildings] == [3, 5]
    merged = tri.buildings[0]
    assert merged.height == 12.0
    assert merged.merged_ids == [3, 7]
    assert abs(merged.polygon.area - 700.0) < 1e-9
    assert tri.buildings[1].merged_ids == [5]


def test_buildings_touching_at_a_corner_stay_apart():
    mesh = MeshBuilder()
    mesh.add_geometry(box(10.0, 10.0, 20.0, 20.0), 8.0)
    mesh.add_geometry(box(20.0, 20.0, 30.0, 30.0), 8.0)
    tri = mesh.finish_polygon_feeding(SCENE)
    assert len(tri.buildings) == 2


def test_zero_height_building_is_not_an_obstacle():
    mesh = MeshBuilder()
    mesh.add_geometry(box(10.0, 10.0, 20.0, 20.0), 0.0)
    tri = mesh.finish_polygon_feeding(SCENE)
    assert tri.buildings == []
    assert np.all(tri.triangle_buildings == NO_BUILDING)


def test_buildings_are_clipped_to_envelope():
    mesh = MeshBuilder()
    mesh.add_geometry(box(90.0, 40.0, 130.0, 60.0), 8.0)
    tri = mesh.finish_polygon_feeding(SCENE)
    assert abs(tri.buildings[0].polygon.area - 200.0) < 1e-9


def test_first_ground_area_wins():
    mesh = MeshBuilder()
    mesh.add_ground_area(box(0.0, 0.0, 60.0, 100.0), 1.0)
    mesh.add_ground_area(box(40.0, 0.0, 100.0, 100.0), 0.3)
    tri = mesh.finish_polygon_feeding(SCENE)
    soft, mixed = tri.ground_areas
    assert soft.g == 1.0 and abs(soft.polygon.area - 6000.0) < 1e-9
    assert mixed.g == 0.3 and abs(mixed.polygon.area - 4000.0) < 1e-9


def test_ground_coefficient_range():
    with pytest.raises(GeometryError):
        MeshBuilder().add_ground_area(box(0.0, 0.0, 1.0, 1.0), 1.5)


def test_topography_sets_vertex_elevation():
    mesh = MeshBuilder()
    for x in (0.0, 100.0):
        for y in (0.0, 100.0):
            mesh.add_topographic_point((x, y, x / 10.0))
    mesh.add_topographic_point((50.0, 50.0, 5.0))
    tri = mesh.finish_polygon_feeding(SCENE)
    xy = tri.vertices[:, :2]
    assert np.allclose(tri.vertices[:, 2], xy[:, 0] / 10.0)
    assert np.any(np.all(xy == (50.0, 50.0), axis=1))


def test_building_base_follows_terrain():
    mesh = MeshBuilder()
    for x in (0.0, 100.0):
        for y in (0.0, 100.0):
            mesh.add_topographic_point((x, y, x / 10.0))
    mesh.add_geometry(box(40.0, 40.0, 60.0, 60.0), 10.0)
    tri = mesh.finish_polygon_feeding(SCENE)
    building = tri.buildings[0]
    assert abs(building.base - 4.0) < 1e-9
    assert abs(building.top - 14.0) < 1e-9


def test_clipped_building_keeps_its_base():
    mesh = MeshBuilder()
    for x in (0.0, 200.0):
        for y in (0.0, 100.0):
            mesh.add_topographic_point((x, y, (200.0 - x) / 10.0))
    mesh.add_geometry(box(90.0, 40.0, 130.0, 60.0), 8.0)
    tri = mesh.finish_polygon_feeding(SCENE)
    # Lowest corner of the footprint lies outside the envelope, at x=130.
    assert abs(tri.buildings[0].base - 7.0) < 1e-9
    assert tri.elevation([(150.0, 50.0)])[0] == pytest.approx(5.0)


def test_degenerate_envelope_is_rejected():
    with pytest.raises(GeometryError):
        MeshBuilder().finish_polygon_feeding(Envelope(0.0, 0.0, 0.0, 10.0))
