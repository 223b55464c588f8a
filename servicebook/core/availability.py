from datetime import date, timedelta

import holidays

from .slots import day_window, weekday_name


class PointAvailability:
    def __init__(self, working_hours, country: str | None = None):
        self.working_hours = working_hours
        # Public holidays of the configured country, if any
        self.holidays = holidays.country_holidays(country) if country else None

    def is_holiday(self, check_date: date) -> bool:
        return self.holidays is not None and check_date in self.holidays

    def is_working_day(self, check_date: date) -> bool:
        """Open on that weekday and not a public holiday."""
        if self.is_holiday(check_date):
            return False
        return day_window(self.working_hours, check_date) is not None

    def available_days(self, start: date, days: int) -> list[dict]:
        out: list[dict] = []
        for offset in range(max(0, days)):
            current = start + timedelta(days=offset)
            if not self.is_working_day(current):
                continue
            out.append(
                {
                    "date": current,
                    "day_name": weekday_name(current),
                    "day_number": current.day,
                    "month": current.month,
                    "year": current.year,
                }
            )
        return out
