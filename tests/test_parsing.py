import numpy as np
import pytest
from shapely.geometry import LineString, Point, Polygon, box

from noisemap.model.entities import Envelope, SourcePoint, energy_from_db, line_discretize, source_points
from noisemap.model.parsing import (
    building_from_row,
    ground_from_row,
    parse_coord_string,
    receivers_from_points,
    rows_to_sources,
    source_from_row,
)


@pytest.mark.parametrize("text", ["1, 2, 3", "1;2;3", "1 2 3", " 1.0 ,2.0; 3 "])
def test_parse_coord_string(text):
    assert parse_coord_string(text) == (1.0, 2.0, 3.0)


@pytest.mark.parametrize("text", ["", "1, 2", "a, b, c", "1, 2, 3, 4"])
def test_parse_coord_string_errors(text):
    with pytest.raises(ValueError):
        parse_coord_string(text)


def test_source_from_row():
    levels = [80.0] * 18
    src, errors = source_from_row(0, Point(1.0, 2.0, 0.5), levels)
    assert errors == []
    assert src.source_id == 1
    assert np.allclose(src.power, energy_from_db(80.0))


def test_missing_bands_do_not_emit():
    levels = [None, ""] + [70.0] * 16
    src, errors = source_from_row(2, Point(0.0, 0.0), levels)
    assert errors == []
    assert src.power[0] == 0.0 and src.power[1] == 0.0
    assert src.source_id == 3


def test_source_rows_collect_errors():
    rows = [
        (Point(0.0, 0.0), [80.0] * 18),
        (Point(1.0, 1.0), [80.0] * 5),
        (Polygon([(0, 0), (1, 0), (1, 1)]), [80.0] * 18),
        (Point(2.0, 2.0), ["x"] + [80.0] * 17),
        (Point(3.0, 3.0), [None] * 18),
    ]
    sources, errors = rows_to_sources(rows)
    assert [s.source_id for s in sources] == [1]
    assert len(errors) == 4
    assert errors[0].startswith("Row 2:")


def test_building_and_ground_rows():
    building = building_from_row(4, box(0.0, 0.0, 5.0, 5.0), None, alpha=0.2)
    assert building.building_id == 5 and building.height == 0.0 and building.alpha == 0.2
    with pytest.raises(ValueError):
        building_from_row(0, box(0.0, 0.0, 1.0, 1.0), -3.0)
    with pytest.raises(ValueError):
        building_from_row(0, Point(0.0, 0.0), 3.0)
    assert ground_from_row(0, box(0.0, 0.0, 1.0, 1.0), 0.5).g == 0.5
    assert ground_from_row(4, box(0.0, 0.0, 1.0, 1.0), 0.5).area_id == 5
    with pytest.raises(ValueError):
        ground_from_row(0, box(0.0, 0.0, 1.0, 1.0), 1.2)


def test_receivers_from_points():
    receivers = receivers_from_points([(10, (0.0, 0.0, 4.0)), (11, (5.0, 5.0, 1.5))])
    assert [r.receiver_id for r in receivers] == [10, 11]
    with pytest.raises(ValueError):
        receivers_from_points([(1, (0.0, 0.0, 4.0)), (1, (5.0, 5.0, 1.5))])


def test_line_source_discretization():
    line = LineString([(0.0, 0.0, 1.0), (100.0, 0.0, 1.0)])
    samples = line_discretize(line, 10.0)
    assert [p.x for p in samples] == pytest.approx([5.0 + 10.0 * i for i in range(10)])
    src, _ = source_from_row(0, line, [80.0] * 18)
    points = source_points(src, 10.0)
    assert len(points) == 10
    assert all(isinstance(p, SourcePoint) and p.source_id == 1 for p in points)
    assert np.allclose(sum(p.power for p in points), src.power)


def test_envelope_helpers():
    env = Envelope(0.0, 0.0, 10.0, 5.0)
    assert env.contains_point(10.0, 5.0)
    assert not env.contains_point(10.1, 5.0)
    assert env.expanded_by(1.0) == Envelope(-1.0, -1.0, 11.0, 6.0)
    assert env.intersects(Envelope(10.0, 5.0, 20.0, 20.0))
    assert env.union(Envelope(-5.0, 2.0, 1.0, 3.0)) == Envelope(-5.0, 0.0, 10.0, 5.0)
