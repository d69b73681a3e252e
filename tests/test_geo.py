import pytest

from geo import DEFAULT_SPEED_KMH, haversine_distance, speed_for, travel_minutes


def test_zero_distance():
    assert haversine_distance(9.06, 7.49, 9.06, 7.49) == 0.0


def test_symmetric():
    a = haversine_distance(9.06, 7.49, 6.52, 3.38)
    b = haversine_distance(6.52, 3.38, 9.06, 7.49)
    assert a == pytest.approx(b)


def test_one_degree_of_latitude():
    assert haversine_distance(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)


def test_antipodal_points_do_not_blow_up():
    assert haversine_distance(0.0, 0.0, 0.0, 180.0) == pytest.approx(20015.09, abs=0.1)


def test_speeds():
    assert speed_for("car") == 50.0
    assert speed_for("motorcycle") == 30.0
    assert speed_for("tricycle") == DEFAULT_SPEED_KMH
    assert speed_for(None) == DEFAULT_SPEED_KMH


def test_travel_minutes():
    assert travel_minutes(25.0, 50.0) == pytest.approx(30.0)
