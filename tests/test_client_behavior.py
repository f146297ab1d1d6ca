from datetime import date, timedelta

import pytest

from client_behavior import ClientBehaviorPredictor, format_minutes
from models import ClientMeta, PickupRecord
from tests.conftest import MONDAY_EVENING, at, make_dataset, monday_regular_pickups, weekly_dates

NEXT_MONDAY = MONDAY_EVENING.date() + timedelta(days=7)


def test_format_minutes():
    assert format_minutes(540) == '09:00'
    assert format_minutes(14 * 60 + 5) == '14:05'


def test_weekly_regular_is_predicted(monday_dataset):
    predictions = ClientBehaviorPredictor().predict(monday_dataset, NEXT_MONDAY)

    assert len(predictions) == 1
    prediction = predictions[0]
    assert prediction.client_id == 'hotel-azul'
    assert prediction.client_name == 'Hotel Azul'
    assert prediction.target_date == NEXT_MONDAY
    assert prediction.likelihood > 0.8
    assert 480 <= prediction.predicted_weight <= 520
    assert prediction.predicted_time == '09:00'
    assert prediction.confidence == pytest.approx(0.75, abs=0.02)
    assert prediction.weekly_presence == (True, False, False, False, False, False, False)
    assert prediction.days_since_last_seen == 0
    assert prediction.last_seen == 'Today'


def test_clients_with_few_records_never_appear():
    pickups = monday_regular_pickups() + [
        PickupRecord('newcomer', at(day, 10), 300.0)
        for day in weekly_dates(MONDAY_EVENING.date(), 4)
    ]
    dataset = make_dataset(pickups=pickups, as_of=MONDAY_EVENING)
    predictions = ClientBehaviorPredictor().predict(dataset, NEXT_MONDAY, confidence_threshold=0.0)
    assert [p.client_id for p in predictions] == ['hotel-azul']


def test_absent_weekday_is_dropped(monday_dataset):
    tuesday = NEXT_MONDAY + timedelta(days=1)
    assert ClientBehaviorPredictor().predict(monday_dataset, tuesday, confidence_threshold=0.0) == []


def test_long_absence_lowers_likelihood():
    three_weeks_later = MONDAY_EVENING + timedelta(weeks=3)
    dataset = make_dataset(pickups=monday_regular_pickups(), as_of=three_weeks_later)
    predictor = ClientBehaviorPredictor()
    recent = predictor.predict(
        make_dataset(pickups=monday_regular_pickups(), as_of=MONDAY_EVENING), NEXT_MONDAY,
        confidence_threshold=0.0,
    )[0]
    stale = predictor.predict(dataset, NEXT_MONDAY + timedelta(weeks=3), confidence_threshold=0.0)[0]

    assert stale.likelihood < recent.likelihood
    assert stale.days_since_last_seen == 21
    assert stale.last_seen == '21 days ago'


def test_threshold_filters_on_adjusted_confidence(monday_dataset):
    predictor = ClientBehaviorPredictor()
    assert predictor.predict(monday_dataset, NEXT_MONDAY, confidence_threshold=0.9) == []

    boosted = predictor.predict(
        monday_dataset, NEXT_MONDAY, confidence_threshold=0.9, confidence_multiplier=1.3
    )
    assert len(boosted) == 1
    assert boosted[0].raw_confidence < 0.9 <= boosted[0].confidence


def test_irregular_client_is_less_confident():
    mondays = weekly_dates(MONDAY_EVENING.date(), 10)
    # Mondays with gaps, plus a couple of midweek visits
    irregular_days = mondays[:3] + mondays[5:6] + mondays[8:]
    pickups = monday_regular_pickups('steady') + [
        PickupRecord('bursty', at(day, 9), 500.0) for day in irregular_days
    ] + [
        PickupRecord('bursty', at(day + timedelta(days=2), 9), 500.0) for day in mondays[3:5]
    ]
    dataset = make_dataset(pickups=pickups, as_of=MONDAY_EVENING)
    predictions = {
        p.client_id: p
        for p in ClientBehaviorPredictor().predict(dataset, NEXT_MONDAY, confidence_threshold=0.0)
    }
    assert predictions['steady'].confidence > predictions['bursty'].confidence


def test_results_sorted_by_likelihood_times_confidence():
    pickups = monday_regular_pickups('steady') + [
        PickupRecord('light', at(day, 15), 80.0 + 20 * (i % 3))
        for i, day in enumerate(weekly_dates(MONDAY_EVENING.date(), 6))
    ]
    dataset = make_dataset(
        pickups=pickups, as_of=MONDAY_EVENING,
        clients=[ClientMeta('steady', 'Steady Linen'), ClientMeta('light', 'Light Co')],
    )
    predictions = ClientBehaviorPredictor().predict(dataset, NEXT_MONDAY, confidence_threshold=0.0)
    scores = [p.likelihood * p.confidence for p in predictions]
    assert scores == sorted(scores, reverse=True)
    for prediction in predictions:
        assert 0.0 <= prediction.likelihood <= 1.0
        assert 0.0 <= prediction.confidence <= 1.0
        assert prediction.predicted_weight >= 0.0


def test_empty_dataset(empty_dataset):
    assert ClientBehaviorPredictor().predict(empty_dataset, date(2024, 3, 25)) == []
