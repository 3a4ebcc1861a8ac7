from .latest_reading import (
    InMemoryLatestReadingCache,
    LatestReadingCache,
    RedisLatestReadingCache,
    SensorStatus,
)

__all__ = [
    "InMemoryLatestReadingCache",
    "LatestReadingCache",
    "RedisLatestReadingCache",
    "SensorStatus",
]
