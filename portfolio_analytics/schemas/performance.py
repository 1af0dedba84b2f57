from typing import Literal

from pydantic import BaseModel


class PeakHour(BaseModel):
    hour: int  # 0-23, UTC
    count: int


class PerformanceMetrics(BaseModel):
    """Size and query-latency snapshot of stored events."""

    total_records: int = 0
    avg_response_time_ms: float = 0.0
    peak_hour: PeakHour | None = None
    estimated_size_bytes: int = 0
    estimated_data_size_kb: float = 0.0


class Recommendation(BaseModel):
    type: str  # performance, scalability, capacity, maintenance, optimization
    priority: Literal["high", "medium", "low"]
    issue: str
    recommendation: str
    impact: str


class PerformanceReport(BaseModel):
    days: int
    metrics: PerformanceMetrics
    recommendations: list[Recommendation]
