"""Blend Optimizer: automatic batch selection for a target bloom range.

Greedy, one batch at a time (every batch contributes ``bags_per_batch``):

  1. Seed with the user's pre-selected batches.
  2. Pick the candidate whose addition brings the running average bloom
     closest to the target bloom.  Averages outside the range cost +1000.
     While inside the range, additional targets add a small weighted
     relative-deviation term; earlier attributes in ``TARGET_HIERARCHY``
     weigh more.
  3. If the final average is still outside the range, try the single best
     swap of one selected batch for one of the first 50 remaining ones.

The result is a preview only; it is recorded through the blend service
like any manual selection.
"""

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from gelatin_erp.middleware.exceptions import InvalidRangeError
from gelatin_erp.models.batch import NUMERIC_ATTRIBUTES, Batch, BatchType

TARGET_HIERARCHY = ("viscosity", "percentage", "ph", "conductivity", "moisture", "h2o2", "so2")
OUT_OF_RANGE_PENALTY = 1000.0
ADDITIONAL_TARGET_WEIGHT = 0.1
TOLERANCE = 0.05
SWAP_SEARCH_LIMIT = 50


@dataclass
class Candidate:
    id: str
    batch_number: int
    batch_type: str = BatchType.PRODUCTION.value
    bloom: float | None = None
    viscosity: float | None = None
    percentage: float | None = None
    ph: float | None = None
    conductivity: float | None = None
    moisture: float | None = None
    h2o2: float | None = None
    so2: float | None = None

    @classmethod
    def from_batch(cls, batch: Batch) -> "Candidate":
        return cls(
            id=batch.id,
            batch_number=batch.batch_number,
            batch_type=batch.batch_type,
            **{name: getattr(batch, name) for name in NUMERIC_ATTRIBUTES},
        )


@dataclass
class OptimizationResult:
    selections: list[Candidate]
    bags_per_batch: int
    total_bags: int
    total_weight_kg: float
    average_bloom: float | None
    averages: dict[str, float]
    within_range: bool
    message: str
    status: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def normalize_target_bags(target_bags: int, bags_per_batch: int = 10) -> int:
    """Nearest multiple of ``bags_per_batch``, never less than one batch."""
    return max(bags_per_batch, round(target_bags / bags_per_batch) * bags_per_batch)


def resolve_target_bloom(
    target_bloom_min: float,
    target_bloom_max: float,
    target_mean_bloom: float | None = None,
) -> float:
    """Mean clamped into the range; the range maximum when no mean is given."""
    if target_mean_bloom is None:
        return target_bloom_max
    return min(max(target_mean_bloom, target_bloom_min), target_bloom_max)


def _mean(values: Iterable[float | None]) -> float | None:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def _additional_score(averages: dict[str, float | None], targets: dict[str, float]) -> float:
    score = 0.0
    for h, key in enumerate(TARGET_HIERARCHY):
        target = targets.get(key)
        value = averages.get(key)
        if target is None or value is None:
            continue
        deviation = abs((value - target) / max(abs(target), 1))
        score += deviation * (1.0 - h * 0.1)
    return score


def optimize_selection(
    candidates: Sequence[Candidate],
    target_bloom_min: float,
    target_bloom_max: float,
    target_mean_bloom: float | None = None,
    target_bags: int = 10,
    pre_selected_ids: Iterable[str] = (),
    additional_targets: dict[str, float | None] | None = None,
    bags_per_batch: int = 10,
    bag_weight_kg: float = 25.0,
) -> OptimizationResult:
    """Choose batches whose average bloom lands in the target range.

    Candidates without a bloom reading are ignored.  Ties keep the earlier
    candidate, so callers get stable output by passing candidates in
    batch-number order.
    """
    if target_bloom_min > target_bloom_max:
        raise InvalidRangeError(target_bloom_min, target_bloom_max)

    targets = {
        k: v for k, v in (additional_targets or {}).items()
        if k in TARGET_HIERARCHY and v is not None
    }
    target_bloom = resolve_target_bloom(target_bloom_min, target_bloom_max, target_mean_bloom)
    batches_needed = normalize_target_bags(target_bags, bags_per_batch) // bags_per_batch

    def in_range(avg: float) -> bool:
        return target_bloom_min <= avg <= target_bloom_max

    remaining = [c for c in candidates if c.bloom is not None]
    selected: list[Candidate] = []

    for batch_id in pre_selected_ids:
        for i, candidate in enumerate(remaining):
            if candidate.id == batch_id:
                selected.append(remaining.pop(i))
                break

    while len(selected) < batches_needed and remaining:
        best_index, best_score = 0, float("inf")
        for i, candidate in enumerate(remaining):
            trial = selected + [candidate]
            next_avg = _mean(c.bloom for c in trial)
            score = abs(target_bloom - next_avg)
            if not in_range(next_avg):
                score += OUT_OF_RANGE_PENALTY
            elif targets:
                averages = {key: _mean(getattr(c, key) for c in trial) for key in targets}
                score += _additional_score(averages, targets) * ADDITIONAL_TARGET_WEIGHT
            if score < best_score:
                best_index, best_score = i, score
        selected.append(remaining.pop(best_index))

    # One-pass swap when the greedy result misses the range
    if selected and remaining:
        current = _mean(c.bloom for c in selected)
        if not in_range(current):
            best_avg, best_swap = current, None
            for si in range(len(selected)):
                for ri in range(min(SWAP_SEARCH_LIMIT, len(remaining))):
                    trial = selected[:si] + [remaining[ri]] + selected[si + 1:]
                    new_avg = _mean(c.bloom for c in trial)
                    closer = abs(target_bloom - new_avg) < abs(target_bloom - best_avg)
                    if in_range(new_avg):
                        better = closer if in_range(best_avg) else True
                    else:
                        better = not in_range(best_avg) and closer
                    if better:
                        best_avg, best_swap = new_avg, (si, ri)
            if best_swap:
                si, ri = best_swap
                selected[si], remaining[ri] = remaining[ri], selected[si]

    selected.sort(key=lambda c: (c.batch_number, c.batch_type))
    return _summarize(
        selected, target_bloom_min, target_bloom_max, targets, bags_per_batch, bag_weight_kg
    )


def _summarize(
    selected: list[Candidate],
    target_bloom_min: float,
    target_bloom_max: float,
    targets: dict[str, float],
    bags_per_batch: int,
    bag_weight_kg: float,
) -> OptimizationResult:
    total_bags = len(selected) * bags_per_batch
    averages = {}
    for name in NUMERIC_ATTRIBUTES:
        avg = _mean(getattr(c, name) for c in selected)
        if avg is not None:
            averages[name] = avg
    average_bloom = averages.get("bloom")
    status: list[str] = []
    warnings: list[str] = []

    if not selected:
        return OptimizationResult(
            selections=[],
            bags_per_batch=bags_per_batch,
            total_bags=0,
            total_weight_kg=0.0,
            average_bloom=None,
            averages={},
            within_range=False,
            message="No available batches with a bloom reading",
            warnings=["No available batches with a bloom reading"],
        )

    range_label = f"{target_bloom_min:g}-{target_bloom_max:g}"
    within = target_bloom_min <= average_bloom <= target_bloom_max
    if within:
        status.append(f"Bloom average ({average_bloom:.0f}) meets target range ({range_label})")
    else:
        warnings.append(f"Bloom average ({average_bloom:.0f}) is outside target range ({range_label})")

    for key in TARGET_HIERARCHY:
        if key not in targets:
            continue
        target = targets[key]
        value = averages.get(key, 0.0)
        ratio = abs(value - target) / max(abs(target), 1)
        if ratio <= TOLERANCE:
            status.append(f"{key}: {value:.2f} (target: {target:g})")
        else:
            warnings.append(f"{key}: {value:.2f} (target: {target:g}) - outside tolerance")

    return OptimizationResult(
        selections=selected,
        bags_per_batch=bags_per_batch,
        total_bags=total_bags,
        total_weight_kg=total_bags * bag_weight_kg,
        average_bloom=average_bloom,
        averages=averages,
        within_range=within,
        message=f"Selected {len(selected)} batches ({bags_per_batch} bags each) for {total_bags} bags",
        status=status,
        warnings=warnings,
    )
