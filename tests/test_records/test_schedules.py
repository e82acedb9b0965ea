from datetime import UTC, datetime

import pytest

from hearth.exceptions import ScheduleError
from hearth.records import normalize_task_fields
from hearth.schedules import compute_next_run, parse_schedule, schedule_to_text

# Wednesday
NOW = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("text", "canonical"),
    [
        ("every 15m", "every 15m"),
        ("EVERY 2h", "every 2h"),
        ("daily 7:05", "daily 07:05"),
        ("weekly Friday 18:30", "weekly fri 18:30"),
    ],
)
def test_schedule_text_is_canonicalized(text: str, canonical: str):
    assert schedule_to_text(parse_schedule(text)) == canonical


@pytest.mark.parametrize("text", ["", "every 0m", "every 5s", "daily 25:00", "weekly someday 09:00", "hourly"])
def test_bad_schedules_raise(text: str):
    with pytest.raises(ScheduleError):
        parse_schedule(text)


def test_next_run_for_each_kind():
    assert compute_next_run(parse_schedule("every 2h"), NOW) == datetime(2026, 3, 4, 12, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("daily 09:00"), NOW) == datetime(2026, 3, 5, 9, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("daily 11:30"), NOW) == datetime(2026, 3, 4, 11, 30, tzinfo=UTC)
    assert compute_next_run(parse_schedule("weekly wed 10:00"), NOW) == datetime(2026, 3, 11, 10, 0, tzinfo=UTC)
    assert compute_next_run(parse_schedule("weekly mon 08:00"), NOW) == datetime(2026, 3, 9, 8, 0, tzinfo=UTC)


def test_normalize_task_fields_sets_next_run():
    fields = normalize_task_fields({"name": "digest", "schedule": "daily 9:00"}, now=NOW)
    assert fields["schedule"] == "daily 09:00"
    assert fields["next_run_at"] == "2026-03-05T09:00:00+00:00"


def test_normalize_task_fields_clears_empty_schedule():
    fields = normalize_task_fields({"schedule": "  "})
    assert fields == {"schedule": "", "next_run_at": None}
    assert normalize_task_fields({"name": "no schedule"}) == {"name": "no schedule"}
