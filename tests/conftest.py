import operator
import os
import time as host_clock
from collections import defaultdict
from datetime import datetime, time, timedelta, timezone

import pytest

from data_processing import HistoricalDataset
from models import ClientMeta, InvoiceRecord, LineItem, PickupRecord

# Wednesday evening
NOW = datetime(2024, 3, 20, 18, 0)
# The Monday before NOW, evening
MONDAY_EVENING = datetime(2024, 3, 18, 18, 0)


def at(day, hour, minute=0):
    return datetime.combine(day, time(hour, minute))


def weekly_dates(last_day, weeks):
    """`weeks` dates one week apart, oldest first, ending on `last_day`."""
    return [last_day - timedelta(weeks=w) for w in range(weeks - 1, -1, -1)]


def make_dataset(pickups=(), invoices=(), clients=(), as_of=NOW, lookback_days=90):
    return HistoricalDataset.from_records(
        as_of, pickups=pickups, invoices=invoices, clients=clients,
        lookback_days=lookback_days, tz_name=None,
    )


def monday_regular_pickups(client_id='hotel-azul', weeks=10, last_monday=MONDAY_EVENING.date()):
    """One pickup every Monday at 09:00, alternating 490 and 510 lbs."""
    return [
        PickupRecord(client_id, at(day, 9), 490.0 if i % 2 == 0 else 510.0)
        for i, day in enumerate(weekly_dates(last_monday, weeks))
    ]


def busy_week_records(end=NOW.date(), weeks=10):
    """Three regular clients and a matching invoice for every pickup."""
    pickups = []
    invoices = []
    start = end - timedelta(weeks=weeks)
    day = start
    week = 0
    while day <= end:
        weekday = day.weekday()
        if weekday == 0:
            week += 1
            pickups.append(PickupRecord('hotel-azul', at(day, 9), 500.0 + (10 if week % 2 else -10)))
        if weekday in (0, 2, 4):
            pickups.append(PickupRecord('clinic-norte', at(day, 14), 200.0 + 5 * week))
        if weekday in (1, 3):
            pickups.append(PickupRecord('spa-sol', at(day, 11, 30), 150.0))
        day += timedelta(days=1)

    for pickup in pickups:
        invoices.append(InvoiceRecord(
            pickup.client_id, pickup.timestamp, (LineItem(quantity=pickup.weight, unit_price=1.2),)
        ))
    clients = [
        ClientMeta('hotel-azul', 'Hotel Azul'),
        ClientMeta('clinic-norte', 'Clinica Norte'),
        ClientMeta('spa-sol', 'Spa Sol'),
    ]
    return pickups, invoices, clients


@pytest.fixture
def empty_dataset():
    return HistoricalDataset.empty(NOW)


@pytest.fixture
def monday_dataset():
    return make_dataset(
        pickups=monday_regular_pickups(),
        clients=[ClientMeta('hotel-azul', 'Hotel Azul')],
        as_of=MONDAY_EVENING,
    )


@pytest.fixture
def busy_dataset():
    pickups, invoices, clients = busy_week_records()
    return make_dataset(pickups, invoices, clients)


# --- In-memory Firestore ---

OPERATORS = {
    '==': operator.eq,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
}


def _kind(value):
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, datetime):
        return 'timestamp'
    return type(value).__name__


class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, store, doc_id):
        self._store = store
        self.id = doc_id

    def get(self):
        return FakeSnapshot(self.id, self._store.get(self.id))

    def set(self, data, merge=False):
        if merge and self.id in self._store:
            self._store[self.id].update(data)
        else:
            self._store[self.id] = dict(data)


class FakeQuery:
    def __init__(self, db, name, filters=()):
        self._db = db
        self._name = name
        self._filters = filters

    @property
    def _store(self):
        return self._db.collections[self._name]

    def where(self, filter=None):
        return FakeQuery(self._db, self._name, self._filters + (filter,))

    def _matches(self, data):
        # Range filters only match values of the same type, as in Firestore
        for f in self._filters:
            value = data.get(f.field_path)
            if value is None or _kind(value) != _kind(f.value):
                return False
            if not OPERATORS[f.op_string](value, f.value):
                return False
        return True

    def stream(self):
        if self._name in self._db.failing:
            raise RuntimeError(f"{self._name} unavailable")
        for doc_id, data in list(self._store.items()):
            if self._matches(data):
                yield FakeSnapshot(doc_id, data)


class FakeCollection(FakeQuery):
    def document(self, doc_id):
        if self._name in self._db.failing:
            raise RuntimeError(f"{self._name} unavailable")
        return FakeDocumentRef(self._store, doc_id)


class FakeFirestore:
    """Just enough of the Firestore client for the loaders and writers."""

    def __init__(self):
        self.collections = defaultdict(dict)
        self.failing = set()

    def collection(self, name):
        return FakeCollection(self, name)

    def seed(self, name, documents):
        for i, doc in enumerate(documents):
            self.collections[name][doc.pop('id', f"{name}-{i}")] = doc


@pytest.fixture
def fake_db():
    return FakeFirestore()


@pytest.fixture
def seeded_db(fake_db):
    pickups, invoices, clients = busy_week_records()
    fake_db.seed('pickup_entries', [
        # Firestore hands timestamps back as aware UTC
        {'clientId': p.client_id, 'timestamp': p.timestamp.astimezone(timezone.utc),
         'weight': p.weight, 'driverName': 'Luis'}
        for p in pickups
    ])
    fake_db.seed('invoices', [
        {'clientId': inv.client_id, 'date': inv.date.isoformat(),
         'carts': [{'items': [{'quantity': item.quantity, 'price': item.unit_price} for item in inv.line_items]}]}
        for inv in invoices
    ])
    fake_db.seed('clients', [{'id': c.id, 'name': c.name} for c in clients])
    return fake_db


@pytest.fixture
def puerto_rico_host():
    """Runs the test with the host clock at UTC-4 and no daylight saving."""
    if not hasattr(host_clock, 'tzset'):
        pytest.skip("host time zone cannot be switched on this platform")
    previous = os.environ.get('TZ')
    os.environ['TZ'] = 'America/Puerto_Rico'
    host_clock.tzset()
    yield
    if previous is None:
        del os.environ['TZ']
    else:
        os.environ['TZ'] = previous
    host_clock.tzset()
