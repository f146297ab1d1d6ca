from dataclasses import replace
from datetime import timedelta

import pandas as pd
import pytest

from forecasting import EnsembleDayForecaster, clamp_forecast_days, staffing_recommendation
from models import ENSEMBLE_WEIGHT_KEY, PickupRecord, WeeklyPattern
from tests.conftest import NOW, at, make_dataset, weekly_dates


def _flat_patterns(confidence=0.8, avg_weight=800.0):
    return [
        WeeklyPattern(
            day_of_week=d, day_name='', avg_weight=avg_weight, avg_entries=20.0, avg_revenue=0.0,
            avg_client_count=5.0, peak_hour=10, raw_confidence=confidence, confidence=confidence,
            std_dev=50.0, sample_days=8,
        )
        for d in range(7)
    ]


def test_clamp_forecast_days():
    assert clamp_forecast_days(0) == 1
    assert clamp_forecast_days(7) == 7
    assert clamp_forecast_days(30) == 14


@pytest.mark.parametrize('weight, confidence, expected', [
    (1500, 0.8, "Heavy day - Add 2+ extra staff"),
    (1100, 0.8, "Busy day - Add 1 extra staff"),
    (700, 0.8, "Normal+ day - Monitor closely"),
    (450, 0.8, "Normal staffing"),
    (200, 0.8, "Light day - Reduced staffing possible"),
    (1500, 0.6, "Normal staffing (Low confidence - monitor actual data)"),
])
def test_staffing_recommendation(weight, confidence, expected):
    assert staffing_recommendation(weight, confidence) == expected


def test_forecast_starts_today(busy_dataset):
    forecasts = EnsembleDayForecaster().forecast(busy_dataset, num_days=7)

    assert len(forecasts) == 7
    assert [f.days_ahead for f in forecasts] == list(range(7))
    assert forecasts[0].date == NOW.date()
    assert forecasts[-1].date == NOW.date() + timedelta(days=6)
    assert "Today - immediate preparation needed" in forecasts[0].critical_factors

    for forecast in forecasts:
        assert 0.0 <= forecast.confidence_level <= 1.0
        assert forecast.total_predicted_weight >= 0
        assert isinstance(forecast.total_predicted_weight, int)
        assert list(forecast.peak_hours) == sorted(set(forecast.peak_hours))
        if forecast.date.weekday() >= 5:
            assert "Weekend patterns - typically reduced activity" in forecast.critical_factors


def test_monday_blends_all_three_models(busy_dataset):
    forecasts = EnsembleDayForecaster().forecast(busy_dataset, num_days=7)
    monday = next(f for f in forecasts if f.date.weekday() == 0)

    assert monday.model_count == 3
    assert monday.total_predicted_weight > 0
    # Revenue follows the weekday's revenue per pound
    assert monday.total_predicted_revenue == pytest.approx(monday.total_predicted_weight * 1.2, abs=2)


def test_default_revenue_rate_without_invoices():
    pickups = [PickupRecord('c1', at(day, 10), 100.0) for day in weekly_dates(NOW.date(), 6)]
    dataset = make_dataset(pickups=pickups)
    today = EnsembleDayForecaster().forecast(dataset, num_days=1)[0]
    assert today.total_predicted_revenue == pytest.approx(today.total_predicted_weight * 2.5, abs=2)


def test_empty_dataset_has_zero_confidence(empty_dataset):
    forecasts = EnsembleDayForecaster().forecast(empty_dataset, num_days=14)
    assert len(forecasts) == 14
    for forecast in forecasts:
        assert forecast.confidence_level == 0.0
        assert forecast.total_predicted_weight == 0
        assert forecast.model_count == 1


def test_confidence_never_rises_with_horizon(empty_dataset):
    forecasts = EnsembleDayForecaster().forecast(empty_dataset, num_days=14, patterns=_flat_patterns())
    confidences = [f.confidence_level for f in forecasts]
    assert all(a >= b for a, b in zip(confidences, confidences[1:]))
    assert confidences[0] > confidences[-1]


def test_weekend_and_monday_adjustments(empty_dataset):
    forecasts = EnsembleDayForecaster().forecast(empty_dataset, num_days=7, patterns=_flat_patterns())
    by_weekday = {f.date.weekday(): f for f in forecasts}

    assert by_weekday[2].total_predicted_weight == 800
    assert by_weekday[5].total_predicted_weight == 560
    assert by_weekday[5].predicted_client_count == round(5 * 0.5)
    assert by_weekday[0].total_predicted_weight == 960
    assert "Monday buildup effect expected" in by_weekday[0].critical_factors


def test_ensemble_multiplier_lowers_confidence(busy_dataset):
    forecaster = EnsembleDayForecaster()
    plain = forecaster.forecast(busy_dataset, num_days=3)
    damped = forecaster.forecast(busy_dataset, num_days=3, adjustments={ENSEMBLE_WEIGHT_KEY: 0.5})
    for before, after in zip(plain, damped):
        assert after.confidence_level == pytest.approx(before.confidence_level * 0.5)


def test_holiday_is_flagged(empty_dataset):
    christmas_eve = replace(empty_dataset, as_of=NOW.replace(month=12, day=24))
    forecasts = EnsembleDayForecaster().forecast(christmas_eve, num_days=2, patterns=_flat_patterns())
    assert "Holiday - expect irregular volume" in forecasts[1].critical_factors
    assert "Holiday - expect irregular volume" not in forecasts[0].critical_factors


def test_trend_runs_oldest_to_newest():
    # Week index 3 is the oldest bucket
    frame = pd.DataFrame({
        'day_of_week': [3] * 4,
        'week': [3, 2, 1, 0],
        'weight': [100.0, 200.0, 300.0, 400.0],
    })
    weight, entries, confidence = EnsembleDayForecaster()._trend_model(frame, 3, pattern_entries=12.0)
    assert weight == pytest.approx(250 + (400 - 100) / 4)
    assert entries == 12.0
    assert confidence == pytest.approx(0.5)


def test_trend_needs_three_weeks():
    frame = pd.DataFrame({'day_of_week': [3] * 4, 'week': [1, 1, 0, 0], 'weight': [100.0] * 4})
    assert EnsembleDayForecaster()._trend_model(frame, 3, 12.0) is None
