from __future__ import annotations

from conftest import at

from timeblock.models import EnergyLevel, FreeSlot, Task
from timeblock.scoring import energy_for_hour, is_adjacent, rank_slots, score_slot

MORNING_HIGH = {"09:00-12:00": EnergyLevel.HIGH, "14:00-16:00": EnergyLevel.LOW}


def _placed(start, end) -> Task:
    return Task(id=1, user_id=1, title="placed", estimated_minutes=60, priority=3, scheduled_start=start, scheduled_end=end)


def _score(slot: FreeSlot, **overrides) -> float:
    kwargs = dict(
        energy_map=MORNING_HIGH,
        time_zone="UTC",
        priority=3,
        energy_requirement=EnergyLevel.HIGH,
        placed=[],
        buffer_minutes=5,
        now=at(7),
    )
    kwargs.update(overrides)
    return score_slot(slot, **kwargs)


def test_energy_for_hour_uses_first_matching_range() -> None:
    assert energy_for_hour(9, MORNING_HIGH) == EnergyLevel.HIGH
    assert energy_for_hour(11, MORNING_HIGH) == EnergyLevel.HIGH
    assert energy_for_hour(12, MORNING_HIGH) == EnergyLevel.MEDIUM
    assert energy_for_hour(15, MORNING_HIGH) == EnergyLevel.LOW
    assert energy_for_hour(15, {"bogus": EnergyLevel.HIGH}) == EnergyLevel.MEDIUM


def test_energy_match_and_partial_match() -> None:
    morning = FreeSlot(start=at(9), end=at(10))
    afternoon = FreeSlot(start=at(15), end=at(16))
    assert _score(morning) == 10.0
    assert _score(afternoon) == 0.0
    # a medium task in a high-energy hour gets partial credit
    assert _score(morning, energy_requirement=EnergyLevel.MEDIUM) == 5.0


def test_urgent_tasks_prefer_mornings_and_sooner_slots() -> None:
    slot = FreeSlot(start=at(9), end=at(10))
    # energy 10 + morning 5 + recency (10 - 2h)
    assert _score(slot, priority=5) == 23.0
    far = FreeSlot(start=at(9, day=13), end=at(10, day=13))
    assert _score(far, priority=5) == 15.0


def test_adjacency_is_strictly_inside_buffer() -> None:
    placed = [_placed(at(10), at(11))]
    assert not is_adjacent(FreeSlot(start=at(11, 5), end=at(11, 35)), placed, 5)
    assert is_adjacent(FreeSlot(start=at(11, 4), end=at(11, 34)), placed, 5)
    assert is_adjacent(FreeSlot(start=at(9, 26), end=at(9, 56)), placed, 5)
    assert _score(FreeSlot(start=at(11, 4), end=at(11, 34)), placed=placed) == 13.0


def test_rank_slots_keeps_input_order_on_ties() -> None:
    early = FreeSlot(start=at(9), end=at(9, 30))
    late = FreeSlot(start=at(11, 5), end=at(11, 35))
    low = FreeSlot(start=at(14), end=at(14, 30))
    ranked = rank_slots(
        [low, early, late],
        energy_map=MORNING_HIGH,
        time_zone="UTC",
        priority=3,
        energy_requirement=EnergyLevel.HIGH,
        placed=[],
        buffer_minutes=5,
        now=at(7),
    )
    assert [r.slot for r in ranked] == [early, late, low]
