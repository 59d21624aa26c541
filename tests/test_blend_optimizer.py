"""Blend Optimizer tests (pure selection logic)."""

import pytest

from gelatin_erp.middleware.exceptions import InvalidRangeError
from gelatin_erp.services.blend_optimizer import (
    Candidate,
    normalize_target_bags,
    optimize_selection,
    resolve_target_bloom,
)


def candidates(*blooms, **attrs) -> list[Candidate]:
    return [
        Candidate(id=f"b{i}", batch_number=i, bloom=bloom, **{k: v[i - 1] for k, v in attrs.items()})
        for i, bloom in enumerate(blooms, start=1)
    ]


@pytest.mark.unit
class TestHelpers:

    @pytest.mark.parametrize(
        "target, expected",
        [(10, 10), (1, 10), (24, 20), (26, 30), (40, 40), (0, 10)],
    )
    def test_normalize_target_bags(self, target, expected):
        assert normalize_target_bags(target) == expected

    def test_resolve_target_bloom(self):
        assert resolve_target_bloom(190, 210) == 210
        assert resolve_target_bloom(190, 210, 200) == 200
        assert resolve_target_bloom(190, 210, 250) == 210
        assert resolve_target_bloom(190, 210, 100) == 190


@pytest.mark.unit
class TestOptimizeSelection:

    def test_reaches_range(self):
        result = optimize_selection(candidates(150, 180, 200, 220, 260), 195, 205, target_bags=30)
        assert result.within_range
        assert [c.batch_number for c in result.selections] == [2, 3, 4]
        assert result.average_bloom == pytest.approx(200)
        assert result.total_bags == 30
        assert result.total_weight_kg == 750
        assert result.warnings == []

    def test_target_mean_steers_selection(self):
        result = optimize_selection(
            candidates(190, 200, 210), 190, 210, target_mean_bloom=190, target_bags=10
        )
        assert [c.id for c in result.selections] == ["b1"]

    def test_pre_selected_batches_kept(self):
        result = optimize_selection(
            candidates(150, 200, 250, 205), 190, 210, target_bags=20, pre_selected_ids=["b3"]
        )
        ids = {c.id for c in result.selections}
        assert "b3" in ids
        assert len(ids) == 2
        assert result.within_range

    def test_additional_targets_break_ties(self):
        pool = candidates(200, 200, viscosity=[2.0, 3.5])
        result = optimize_selection(
            pool, 190, 210, target_mean_bloom=200, target_bags=10,
            additional_targets={"viscosity": 3.5},
        )
        assert [c.id for c in result.selections] == ["b2"]
        assert any("viscosity" in s for s in result.status)

    def test_additional_target_outside_tolerance_warns(self):
        pool = candidates(200, viscosity=[2.0])
        result = optimize_selection(pool, 190, 210, additional_targets={"viscosity": 3.5})
        assert any("viscosity" in w and "outside tolerance" in w for w in result.warnings)

    def test_swap_improves_out_of_range_result(self):
        # greedy takes 205 then 240 (222.5, above range); swapping 205 for 170 fixes it
        result = optimize_selection(candidates(205, 150, 170, 240), 195, 215, target_bags=20)
        assert result.within_range

    def test_unreachable_range_warns(self):
        result = optimize_selection(candidates(100, 110), 190, 210, target_bags=20)
        assert not result.within_range
        assert result.warnings

    def test_batches_without_bloom_ignored(self):
        result = optimize_selection(candidates(None, 200), 190, 210)
        assert [c.id for c in result.selections] == ["b2"]

    def test_no_candidates(self):
        result = optimize_selection([], 190, 210)
        assert result.selections == []
        assert result.total_bags == 0
        assert not result.within_range
        assert result.message == "No available batches with a bloom reading"

    def test_fewer_candidates_than_needed(self):
        result = optimize_selection(candidates(200), 190, 210, target_bags=30)
        assert len(result.selections) == 1
        assert result.total_bags == 10

    def test_invalid_range(self):
        with pytest.raises(InvalidRangeError):
            optimize_selection(candidates(200), 210, 190)

    def test_output_sorted_by_batch_number(self):
        result = optimize_selection(candidates(220, 180, 200), 190, 210, target_bags=30)
        assert [c.batch_number for c in result.selections] == [1, 2, 3]
