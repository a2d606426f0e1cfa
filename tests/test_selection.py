"""Tests for candidate metrics, target selection and the aim vector."""

import math

import pytest

from target_pipeline import AimResult, Candidate, FilterBounds, compute_aim, select_target


def rect(area, x=0, y=0, w=40, h=25, perimeter=None):
    if perimeter is None:
        perimeter = 2.0 * (w + h)
    return Candidate(area=area, bounds=(x, y, w, h), perimeter=perimeter)


class TestCandidateMetrics:

    def test_fullness(self):
        assert rect(500, w=20, h=30).fullness == pytest.approx(83.333, abs=1e-3)

    def test_aspect(self):
        assert rect(100, w=40, h=25).aspect == pytest.approx(1.6)

    def test_circularity_of_square(self):
        assert rect(100, w=10, h=10).circularity == pytest.approx(math.pi / 4)

    def test_circularity_of_circle(self):
        r = 10.0
        c = Candidate(area=math.pi * r * r, bounds=(0, 0, 20, 20), perimeter=2 * math.pi * r)
        assert c.circularity == pytest.approx(1.0)

    @pytest.mark.parametrize("w,h", [(0, 10), (10, 0), (0, 0)])
    def test_degenerate_box_does_not_divide(self, w, h):
        c = rect(50, w=w, h=h)
        assert c.degenerate
        assert c.aspect == -1.0
        assert c.fullness == -1.0

    def test_zero_perimeter(self):
        assert rect(0, perimeter=0).circularity == 0.0


class TestSelectTarget:

    def test_no_candidates(self):
        selection = select_target([], FilterBounds())
        assert not selection.found
        assert selection.index == -1
        assert selection.circularity is None

    def test_largest_passing_candidate_wins(self):
        candidates = [rect(500), rect(1000), rect(800)]
        selection = select_target(candidates, FilterBounds())
        assert selection.index == 1
        assert selection.winner is candidates[1]

    def test_equal_area_later_candidate_wins(self):
        candidates = [rect(1000, x=0), rect(1000, x=200)]
        selection = select_target(candidates, FilterBounds())
        assert selection.index == 1
        assert selection.winner.bounds[0] == 200

    def test_area_min_above_all_candidates(self):
        candidates = [rect(500), rect(1000)]
        selection = select_target(candidates, FilterBounds(area_min=1001))
        assert not selection.found

    def test_area_min_is_inclusive(self):
        selection = select_target([rect(1000)], FilterBounds(area_min=1000))
        assert selection.index == 0

    def test_area_max(self):
        candidates = [rect(500), rect(5000)]
        selection = select_target(candidates, FilterBounds(area_max=1000))
        assert selection.index == 0

    def test_aspect_bounds(self):
        tall = rect(500, w=10, h=50)
        wide = rect(400, w=50, h=10)
        selection = select_target([tall, wide], FilterBounds(aspect_min=1.0))
        assert selection.winner is wide

    def test_fullness_bounds(self):
        hollow = rect(300, w=40, h=25)   # 30 %
        solid = rect(900, w=40, h=25)    # 90 %
        selection = select_target([solid, hollow], FilterBounds(fullness_max=50.0))
        assert selection.winner is hollow

    def test_circularity_bound(self):
        thin = rect(500, w=100, h=5)
        selection = select_target([thin], FilterBounds(circularity_min=0.5))
        assert not selection.found
        assert selection.circularity == pytest.approx(4 * math.pi * 500 / 210 ** 2)

    def test_degenerate_candidate_never_wins(self):
        candidates = [rect(0, w=0, h=3, perimeter=6), rect(10, w=5, h=0)]
        selection = select_target(candidates, FilterBounds())
        assert not selection.found

    def test_degenerate_candidate_does_not_hide_others(self):
        good = rect(100, w=10, h=10)
        selection = select_target([good, rect(100, w=0, h=10)], FilterBounds())
        assert selection.winner is good

    def test_circularity_reports_last_evaluated_candidate(self):
        square = rect(100, w=10, h=10)          # circularity ~0.785, wins
        thin = rect(500, w=100, h=5)            # larger, fails circularity
        smaller = rect(50, w=10, h=10)          # rejected on area, never scored
        selection = select_target([square, thin, smaller], FilterBounds(circularity_min=0.7))
        assert selection.winner is square
        assert selection.circularity == pytest.approx(thin.circularity)

    def test_nonsense_bounds_select_nothing(self):
        bounds = FilterBounds(area_min=100, area_max=10)
        assert not select_target([rect(50), rect(500)], bounds).found


class TestComputeAim:

    def test_offsets_from_center(self):
        winner = rect(1000, x=100, y=50, w=40, h=25)
        aim = compute_aim(winner, 320, 240)
        assert aim.found
        assert aim.direction == -40
        assert aim.distance == 58
        assert aim.area == 1000
        assert aim.aspect == pytest.approx(1.6)
        assert aim.fullness == pytest.approx(100.0)

    def test_right_and_below(self):
        aim = compute_aim(rect(100, x=300, y=220, w=10, h=10), 320, 240)
        assert aim.direction > 0
        assert aim.distance < 0

    def test_not_found(self):
        aim = compute_aim(None, 320, 240)
        assert aim == AimResult.not_found()
        assert not aim.found
        assert (aim.direction, aim.distance, aim.area) == (0, 0, 0)
        assert aim.fullness == -1
        assert aim.aspect == -1
