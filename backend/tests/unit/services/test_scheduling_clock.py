"""Unit tests for wall-clock to UTC conversion and the join window."""

from datetime import date, datetime, time, timedelta
from types import SimpleNamespace

from docket.services import scheduling_clock
from docket.services.scheduling_clock import TimezoneTable


def _case(offset: int, slot_date=date(2030, 6, 10), slot_time=time(10, 0)):
    return SimpleNamespace(scheduled_date=slot_date, scheduled_time=slot_time, timezone_offset=offset)


class TestTimezoneTable:

    def test_lookup_is_case_insensitive(self) -> None:
        table = TimezoneTable({"Texas": -360})

        assert table.offset_for("texas") == -360
        assert table.offset_for(" TEXAS ") == -360

    def test_unknown_state_is_utc(self) -> None:
        table = TimezoneTable({"Texas": -360})

        assert table.offset_for("Atlantis") == 0
        assert table.offset_for(None) == 0

    def test_default_table_covers_us_and_india(self) -> None:
        table = scheduling_clock.default_timezone_table()

        assert table.offset_for("New York") == -300
        assert table.offset_for("California") == -480
        assert table.offset_for("India") == 330


class TestToUtc:

    def test_negative_offset_moves_later(self) -> None:
        # 10:00 in UTC-6 is 16:00 UTC
        assert scheduling_clock.to_utc(date(2030, 6, 10), time(10, 0), -360) == datetime(2030, 6, 10, 16, 0)

    def test_positive_offset_moves_earlier(self) -> None:
        # 10:00 in UTC+5:30 is 04:30 UTC
        assert scheduling_clock.to_utc(date(2030, 6, 10), time(10, 0), 330) == datetime(2030, 6, 10, 4, 30)

    def test_crosses_midnight(self) -> None:
        assert scheduling_clock.to_utc(date(2030, 6, 10), time(22, 0), -300) == datetime(2030, 6, 11, 3, 0)


class TestJoinWindow:

    def test_opens_fifteen_minutes_before(self) -> None:
        case = _case(-360)
        scheduled = datetime(2030, 6, 10, 16, 0)

        window = scheduling_clock.join_window(case, scheduled - timedelta(minutes=20))

        assert window.opens_at == scheduled - timedelta(minutes=15)
        assert window.is_open is False
        assert window.minutes_until_open == 5

    def test_boundary_is_inclusive(self) -> None:
        case = _case(-360)

        window = scheduling_clock.join_window(case, datetime(2030, 6, 10, 15, 45))

        assert window.is_open is True
        assert window.minutes_until_open == 0

    def test_partial_minutes_round_up(self) -> None:
        case = _case(0)

        window = scheduling_clock.join_window(case, datetime(2030, 6, 10, 9, 44, 30))

        assert window.minutes_until_open == 1

    def test_no_schedule_has_no_window(self) -> None:
        case = _case(0, slot_date=None)

        assert scheduling_clock.join_window(case, datetime(2030, 6, 10)) is None
