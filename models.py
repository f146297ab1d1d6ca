# models.py - value types shared by every stage of the forecasting pipeline
#
# Input records mirror the Firestore documents; everything else is derived
# and frozen so a recomputation always produces fresh instances.

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, NamedTuple, Optional, Tuple


WEIGHT = 'weight'
ENTRIES = 'entries'
CLIENT_ACTIVITY = 'client_activity'

WEEKLY_PATTERN_MODEL = 'weekly_pattern'
CLIENT_BEHAVIOR_MODEL = 'client_behavior'
ENSEMBLE_MODEL = 'ensemble'


class ModelKey(NamedTuple):
    """Identifies whose confidence an adjustment applies to."""
    model_name: str
    prediction_type: str

    def __str__(self):
        return f"{self.model_name}/{self.prediction_type}"


PATTERN_WEIGHT_KEY = ModelKey(WEEKLY_PATTERN_MODEL, WEIGHT)
PATTERN_ENTRIES_KEY = ModelKey(WEEKLY_PATTERN_MODEL, ENTRIES)
CLIENT_ACTIVITY_KEY = ModelKey(CLIENT_BEHAVIOR_MODEL, CLIENT_ACTIVITY)
ENSEMBLE_WEIGHT_KEY = ModelKey(ENSEMBLE_MODEL, WEIGHT)


# --- Input records ---

@dataclass(frozen=True)
class PickupRecord:
    client_id: str
    timestamp: datetime
    weight: float
    driver_id: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    quantity: float
    unit_price: float


@dataclass(frozen=True)
class InvoiceRecord:
    client_id: str
    date: datetime
    line_items: Tuple[LineItem, ...] = ()

    @property
    def revenue(self):
        return sum(item.quantity * item.unit_price for item in self.line_items)


@dataclass(frozen=True)
class ClientMeta:
    id: str
    name: str


# --- Derived values ---

@dataclass(frozen=True)
class WeeklyPattern:
    day_of_week: int
    day_name: str
    avg_weight: float
    avg_entries: float
    avg_revenue: float
    avg_client_count: float
    peak_hour: int
    raw_confidence: float
    confidence: float
    std_dev: float = 0.0
    sample_days: int = 0
    outlier_days: int = 0
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ClientPrediction:
    client_id: str
    client_name: str
    target_date: date
    likelihood: float
    predicted_weight: float
    predicted_time: str
    raw_confidence: float
    confidence: float
    days_since_last_seen: int
    weekly_presence: Tuple[bool, ...]

    @property
    def last_seen(self):
        if self.days_since_last_seen == 0:
            return 'Today'
        if self.days_since_last_seen == 1:
            return 'Yesterday'
        return f"{self.days_since_last_seen} days ago"


@dataclass(frozen=True)
class DayForecast:
    date: date
    day_name: str
    days_ahead: int
    total_predicted_weight: float
    total_predicted_entries: float
    total_predicted_revenue: float
    predicted_client_count: float
    confidence_level: float
    peak_hours: Tuple[int, ...]
    staffing_recommendation: str
    critical_factors: Tuple[str, ...] = ()
    model_count: int = 1


@dataclass(frozen=True)
class WeightComparison:
    date: date
    day_name: str
    average_weight: float
    predicted_weight: float
    actual_pickup_weight: float
    difference: float
    percentage_difference: float
    accuracy: str
    has_actual_data: bool
    client_count: int
    entry_count: int


@dataclass(frozen=True)
class AccuracyRecord:
    date: date
    model_name: str
    prediction_type: str
    predicted_value: float
    actual_value: float
    error_rate: float
    client_id: Optional[str] = None

    @property
    def model_key(self):
        return ModelKey(self.model_name, self.prediction_type)


@dataclass(frozen=True)
class ForecastAnalysis:
    date: date
    day_name: str
    predicted_weight: float
    historical_avg: float
    difference: float
    percentage_diff: float
    interval_lower: float
    interval_upper: float
    interval_margin: float
    seasonal_multiplier: float
    seasonally_adjusted_weight: float
    z_score: float
    is_anomalous: bool
    trend: float
    accuracy: str
    volatility: str


@dataclass
class PipelineResult:
    """Everything one forecast run produced, for the reporting layer."""
    as_of: datetime
    weekly_patterns: List[WeeklyPattern] = field(default_factory=list)
    client_predictions: List[ClientPrediction] = field(default_factory=list)
    day_forecasts: List[DayForecast] = field(default_factory=list)
    weight_comparisons: List[WeightComparison] = field(default_factory=list)
    accuracy_records: List[AccuracyRecord] = field(default_factory=list)
    confidence_adjustments: dict = field(default_factory=dict)
    analyses: List[ForecastAnalysis] = field(default_factory=list)
    insights: List[dict] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)
