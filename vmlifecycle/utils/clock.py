from datetime import datetime, timezone


def utcnow() -> datetime:
    """타임존 정보가 없는 UTC 현재 시각. DB의 DateTime 컬럼과 그대로 비교할 수 있습니다."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
