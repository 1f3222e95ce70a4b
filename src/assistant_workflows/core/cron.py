"""
5 段 cron 表达式解析与下次运行时间计算
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..exceptions import SchedulingError, WorkflowValidationError


# 最多向前搜索一年（按分钟计）
MAX_CRON_ITERATIONS = 527040


@dataclass(frozen=True)
class CronField:
    """单个 cron 字段的取值集合"""
    name: str
    minimum: int
    maximum: int
    values: FrozenSet[int]
    wildcard: bool = False

    def matches(self, value: int) -> bool:
        return self.wildcard or value in self.values


FIELD_BOUNDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)


def _parse_number(text: str, name: str, minimum: int, maximum: int) -> int:
    if not text.isdigit():
        raise WorkflowValidationError(f"Invalid value '{text}' in cron field '{name}'")
    value = int(text)
    # 星期字段允许 7 表示周日
    if name == "day_of_week" and value == 7:
        value = 0
    if value < minimum or value > maximum:
        raise WorkflowValidationError(
            f"Value {value} out of range [{minimum}, {maximum}] in cron field '{name}'"
        )
    return value


def parse_field(text: str, name: str, minimum: int, maximum: int) -> CronField:
    """解析单个字段：* / a-b / a,b,c / */n / a-b/n / n"""
    if text == "*":
        return CronField(name, minimum, maximum, frozenset(range(minimum, maximum + 1)), True)

    values = set()
    for item in text.split(","):
        if not item:
            raise WorkflowValidationError(f"Empty list item in cron field '{name}'")

        step = 1
        if "/" in item:
            item, step_text = item.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise WorkflowValidationError(f"Invalid step '{step_text}' in cron field '{name}'")
            step = int(step_text)

        if item == "*":
            start, end = minimum, maximum
        elif "-" in item:
            start_text, end_text = item.split("-", 1)
            start = _parse_number(start_text, name, minimum, maximum)
            end = _parse_number(end_text, name, minimum, maximum)
            if start > end:
                raise WorkflowValidationError(f"Invalid range '{item}' in cron field '{name}'")
        else:
            start = _parse_number(item, name, minimum, maximum)
            end = start if step == 1 else maximum

        # */n 从字段最小值开始每 n 个单位
        values.update(v for v in range(start, end + 1) if (v - start) % step == 0)

    return CronField(name, minimum, maximum, frozenset(values))


def resolve_timezone(name: Optional[str]):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise WorkflowValidationError(f"Unknown timezone: {name}") from e


class CronExpression:
    """5 段 cron 表达式：minute hour day-of-month month day-of-week"""

    def __init__(self, expression: str):
        if not isinstance(expression, str):
            raise WorkflowValidationError("Cron expression must be a string")
        parts = expression.split()
        if len(parts) != 5:
            raise WorkflowValidationError(
                f"Invalid cron expression '{expression}': expected 5 fields, got {len(parts)}"
            )
        self.expression = expression
        self.fields: List[CronField] = [
            parse_field(part, name, minimum, maximum)
            for part, (name, minimum, maximum) in zip(parts, FIELD_BOUNDS)
        ]

    @property
    def minute(self) -> CronField:
        return self.fields[0]

    @property
    def hour(self) -> CronField:
        return self.fields[1]

    @property
    def day_of_month(self) -> CronField:
        return self.fields[2]

    @property
    def month(self) -> CronField:
        return self.fields[3]

    @property
    def day_of_week(self) -> CronField:
        return self.fields[4]

    def matches(self, moment: datetime) -> bool:
        """五个字段各自独立匹配，全部满足才算匹配"""
        return (
            self.minute.matches(moment.minute)
            and self.hour.matches(moment.hour)
            and self.day_of_month.matches(moment.day)
            and self.month.matches(moment.month)
            # Python 中周一为 0，cron 中周日为 0
            and self.day_of_week.matches((moment.weekday() + 1) % 7)
        )

    def next_after(self, after: datetime, tz: str = None) -> datetime:
        """
        计算 after 之后的第一个匹配时间

        Args:
            after: 起始时间（naive 视为 UTC）
            tz: 在哪个时区下匹配字段，默认 UTC

        Returns:
            datetime: naive UTC 时间

        Raises:
            SchedulingError: 一年内没有匹配的时间
        """
        zone = resolve_timezone(tz)
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)

        # 截断到分钟后加一分钟
        candidate = after.astimezone(zone).replace(second=0, microsecond=0)
        candidate = candidate.replace(tzinfo=None) + timedelta(minutes=1)

        iterations = 0
        while iterations < MAX_CRON_ITERATIONS:
            if not self.month.matches(candidate.month):
                skipped = _minutes_to_next_day(candidate)
                candidate += timedelta(minutes=skipped)
                iterations += skipped
                continue
            if not (self.day_of_month.matches(candidate.day)
                    and self.day_of_week.matches((candidate.weekday() + 1) % 7)):
                skipped = _minutes_to_next_day(candidate)
                candidate += timedelta(minutes=skipped)
                iterations += skipped
                continue
            if not self.hour.matches(candidate.hour):
                skipped = 60 - candidate.minute
                candidate += timedelta(minutes=skipped)
                iterations += skipped
                continue
            # 夏令时跳过的本地时间不存在，继续向后查找
            if self.minute.matches(candidate.minute) and _exists(candidate, zone):
                return _to_utc(candidate, zone)
            candidate += timedelta(minutes=1)
            iterations += 1

        raise SchedulingError(
            f"No matching time for cron expression '{self.expression}' within one year"
        )

    def __repr__(self):
        return f"CronExpression({self.expression!r})"


def _minutes_to_next_day(moment: datetime) -> int:
    return 24 * 60 - (moment.hour * 60 + moment.minute)


def _exists(local: datetime, zone) -> bool:
    round_trip = local.replace(tzinfo=zone).astimezone(timezone.utc).astimezone(zone)
    return round_trip.replace(tzinfo=None) == local


def _to_utc(local: datetime, zone) -> datetime:
    aware = local.replace(tzinfo=zone)
    return aware.astimezone(timezone.utc).replace(tzinfo=None)


def next_cron_run(expression: str, after: datetime, tz: str = None) -> datetime:
    return CronExpression(expression).next_after(after, tz)
