import math

import pytest
from shapely.geometry import box

from noisemap.geom.mesh import ElevationModel, MeshBuilder
from noisemap.geom.obstruction import FastObstructionTest, upper_hull
from noisemap.model.entities import Envelope

SCENE = Envelope(-100.0, -100.0, 200.0, 100.0)


def _obstruction(buildings=(), topography=()):
    mesh = MeshBuilder()
    for polygon, height in buildings:
        mesh.add_geometry(polygon, height)
    for point in topography:
        mesh.add_topographic_point(point)
    return FastObstructionTest(mesh.finish_polygon_feeding(SCENE))


@pytest.fixture
def wall_scene():
    # A single block across the x axis between x=40 and x=60.
    return _obstruction([(box(40.0, -20.0, 60.0, 20.0), 10.0)])


def test_out_of_domain_queries():
    test = _obstruction()
    assert test.locate(500.0, 0.0) == -1
    assert test.elevation_at(500.0, 0.0) is None
    assert test.profile((0.0, 0.0, 1.0), (500.0, 0.0, 1.0)) == []
    sight = test.is_free_field((0.0, 0.0, 1.0), (500.0, 0.0, 1.0))
    assert not sight
    assert sight.in_domain is False
    assert test.vertical_diffraction_path((0.0, 0.0, 1.0), (500.0, 0.0, 1.0)) is None
    assert test.diffraction_contour((0.0, 0.0, 1.0), (500.0, 0.0, 1.0), True) is None


def test_locate_with_hint(wall_scene):
    for x, y in [(0.0, 0.0), (50.0, 0.0), (-99.0, 99.0), (150.0, -50.0)]:
        tri = wall_scene.locate(x, y, hint=0)
        assert tri >= 0
        assert wall_scene._contains(tri, x, y)
        assert wall_scene.elevation_at(x, y, hint=tri) == 0.0


def test_flat_scene_is_free_field():
    test = _obstruction()
    sight = test.is_free_field((0.0, 0.0, 1.0), (150.0, 30.0, 4.0))
    assert sight
    assert sight.in_domain


def test_building_blocks_line_of_sight(wall_scene):
    sight = wall_scene.is_free_field((0.0, 0.0, 1.0), (100.0, 0.0, 4.0), collect=True)
    assert not sight
    assert [w.building_id for w in sight.walls] == [1]
    assert sight.walls[0].top == 10.0
    assert wall_scene.is_free_field((0.0, 0.0, 12.0), (100.0, 0.0, 12.0))
    assert wall_scene.is_free_field((0.0, 50.0, 1.0), (100.0, 50.0, 4.0))


def test_building_at(wall_scene):
    assert wall_scene.building_at(50.0, 0.0).building_id == 1
    assert wall_scene.building_at(0.0, 0.0) is None


def test_profile_follows_roof(wall_scene):
    profile = wall_scene.profile((0.0, 0.0, 1.0), (100.0, 0.0, 4.0))
    assert profile[0].distance == 0.0
    assert abs(profile[-1].distance - 100.0) < 1e-9
    distances = [p.distance for p in profile]
    assert distances == sorted(distances)
    roof = [p for p in profile if p.building]
    assert roof and all(p.z == 10.0 for p in roof)
    assert min(p.distance for p in roof) == pytest.approx(40.0)
    assert max(p.distance for p in roof) == pytest.approx(60.0)


def test_vertical_path_goes_over_the_roof(wall_scene):
    path = wall_scene.vertical_diffraction_path((0.0, 0.0, 1.0), (100.0, 0.0, 4.0))
    assert path[0] == (0.0, 0.0, 1.0)
    assert path[-1] == pytest.approx((100.0, 0.0, 4.0))
    assert len(path) == 4
    assert path[1] == pytest.approx((40.0, 0.0, 10.0))
    assert path[2] == pytest.approx((60.0, 0.0, 10.0))


def test_lateral_contours_on_both_sides(wall_scene):
    src, rcv = (0.0, 0.0, 1.0), (100.0, 0.0, 4.0)
    left = wall_scene.diffraction_contour(src, rcv, True)
    right = wall_scene.diffraction_contour(src, rcv, False)
    assert left[0][:2] == (0.0, 0.0) and left[-1][:2] == (100.0, 0.0)
    assert right[0][:2] == (0.0, 0.0) and right[-1][:2] == (100.0, 0.0)
    assert all(y >= 20.0 for _, y, _ in left[1:-1])
    assert all(y <= -20.0 for _, y, _ in right[1:-1])
    for contour in (left, right):
        length = sum(math.dist(a[:2], b[:2]) for a, b in zip(contour[:-1], contour[1:]))
        assert length == pytest.approx(2.0 * math.hypot(40.0, 20.0) + 20.0)


def test_contour_grows_around_newly_met_buildings():
    test = _obstruction([(box(40.0, -20.0, 60.0, 20.0), 10.0), (box(62.0, 10.0, 70.0, 30.0), 10.0)])
    left = test.diffraction_contour((0.0, 0.0, 1.0), (100.0, 0.0, 4.0), True)
    assert max(y for _, y, _ in left) == pytest.approx(30.0)


def test_no_contour_without_obstacle():
    assert _obstruction().diffraction_contour((0.0, 0.0, 1.0), (100.0, 0.0, 4.0), True) is None


def test_terrain_elevation_and_blocking():
    # A ridge along x=50 rising 20 m above the plain.
    topography = [(x, y, 20.0 if x == 50.0 else 0.0) for x in (-100.0, 0.0, 50.0, 100.0, 200.0) for y in (-100.0, 100.0)]
    test = _obstruction(topography=topography)
    assert test.elevation_at(50.0, 0.0) == pytest.approx(20.0)
    assert test.elevation_at(25.0, 0.0) == pytest.approx(10.0)
    assert not test.is_free_field((0.0, 0.0, 1.0), (100.0, 0.0, 4.0))
    assert test.is_free_field((0.0, 0.0, 30.0), (100.0, 0.0, 30.0))


def test_walls_face_outward(wall_scene):
    walls = wall_scene.walls_near(Envelope(0.0, -50.0, 100.0, 50.0))
    assert len(walls) == 4
    for wall in walls:
        assert wall.building.building_id == 1
        # The footprint centre is on the building side of every wall.
        assert wall.side(50.0, 0.0) > 0.0
    assert wall_scene.walls_near(Envelope(-90.0, -90.0, -80.0, -80.0)) == []


def test_upper_hull():
    hull = upper_hull([(0.0, 0.0), (1.0, 5.0), (2.0, 1.0), (3.0, 5.0), (4.0, 0.0)])
    assert hull == [(0.0, 0.0), (1.0, 5.0), (3.0, 5.0), (4.0, 0.0)]


def test_shared_terrain_overrides_mesh_vertices():
    # The mesh holds no terrain vertex, the ridge comes from the model alone.
    ridge = ElevationModel.of(
        (x, y, 20.0 if x == 50.0 else 0.0) for x in (-100.0, 0.0, 50.0, 100.0, 200.0) for y in (-100.0, 100.0)
    )
    test = FastObstructionTest(MeshBuilder().finish_polygon_feeding(SCENE, ridge))
    assert test.elevation_at(50.0, 0.0) == pytest.approx(20.0)
    assert not test.is_free_field((0.0, 0.0, 1.0), (100.0, 0.0, 4.0))
    top = max(test.profile((0.0, 0.0, 1.0), (100.0, 0.0, 4.0)), key=lambda p: p.ground)
    assert top.distance == pytest.approx(50.0)
    assert top.ground == pytest.approx(20.0)
