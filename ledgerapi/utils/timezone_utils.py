"""
타임존 유틸리티

체크인 날짜, 월간 사이클, 주간 리더보드 경계는 모두 시스템 고정 타임존
(settings.TIMEZONE) 기준으로 계산합니다.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytz

from ledgerapi.config import settings


def get_system_tz():
    """시스템 기준 타임존"""
    return pytz.timezone(settings.TIMEZONE)


def get_utc_now() -> datetime:
    """현재 UTC 시간 (aware)"""
    return datetime.now(timezone.utc)


def get_local_now() -> datetime:
    """현재 시스템 타임존 시간"""
    return get_utc_now().astimezone(get_system_tz())


def to_local(dt: datetime) -> datetime:
    """datetime을 시스템 타임존으로 변환합니다."""
    if dt.tzinfo is None:
        # naive datetime은 UTC로 가정
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(get_system_tz())


def get_local_date(now: Optional[datetime] = None) -> date:
    """시스템 타임존 기준 날짜"""
    return to_local(now).date() if now is not None else get_local_now().date()


def month_bounds(day: date) -> tuple[date, date]:
    """해당 날짜가 속한 달의 [첫날, 다음달 첫날)"""
    start = day.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def cycle_key(day: date) -> str:
    """마일스톤 사이클 키 (YYYY-MM)"""
    return day.strftime("%Y-%m")


def week_start(day: date) -> date:
    """해당 날짜가 속한 주의 월요일"""
    return day - timedelta(days=day.weekday())


def closing_week_start(day: date, lookback_days: int = 3) -> date:
    """리셋 실행일 기준 정산 대상 주의 월요일

    (day - lookback_days)가 속한 주를 정산합니다. 일요일 밤 실행과 월요일 새벽 재시도가
    같은 주 키를 쓰고, 월요일 실행은 직전 주를 닫습니다.
    """
    return week_start(day - timedelta(days=lookback_days))
