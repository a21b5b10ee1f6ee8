import re
from datetime import timedelta


class TimeParser:
    """
    Parses duration strings such as ``"10s"``, ``"1m30s"`` or ``"0.5"``
    into seconds. A bare number is read as seconds.
    """

    _units = {
        "s": "seconds",
        "m": "minutes",
        "h": "hours",
        "d": "days",
        "w": "weeks",
    }

    _pattern = re.compile(
        r"(?P<val>\d+(\.\d+)?)(?P<unit>[smhdw]?)",
        flags=re.I,
    )

    _format = re.compile(
        r"(\d+(\.\d+)?[smhdw]?)+",
        flags=re.I,
    )

    def __init__(self, time_amount: str | int | float) -> None:
        self.time = self.parse(time_amount)

    @classmethod
    def parse(cls, time_amount: str | int | float) -> float:
        if isinstance(time_amount, (int, float)):
            if time_amount < 0:
                raise ValueError(f"Invalid duration: {time_amount!r}")

            return float(time_amount)

        time_amount = time_amount.strip()
        if not cls._format.fullmatch(time_amount):
            raise ValueError(f"Invalid duration: {time_amount!r}")

        matches = list(cls._pattern.finditer(time_amount))
        if not matches:
            raise ValueError(f"Invalid duration: {time_amount!r}")

        durations: dict[str, float] = {}
        for match in matches:
            unit = cls._units.get(
                match.group("unit").lower(),
                "seconds",
            )
            durations[unit] = durations.get(unit, 0.0) + float(match.group("val"))

        return float(timedelta(**durations).total_seconds())
