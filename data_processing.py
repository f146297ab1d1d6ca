import logging
import math
from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd
from google.cloud.firestore_v1.base_query import FieldFilter

import config

logger = logging.getLogger(__name__)

PICKUP_COLUMNS = ['client_id', 'timestamp', 'weight', 'driver_id']
INVOICE_COLUMNS = ['client_id', 'date', 'revenue']
CLIENT_COLUMNS = ['id', 'name']
DAILY_COLUMNS = ['weight', 'entry_count', 'revenue', 'client_ids', 'client_count']


class DataSourceError(Exception):
    """Raised when the document store cannot be read."""
    pass


def _local_clock(tz_name=None):
    """The zone record times are read in: `tz_name`, or the host's local zone."""
    return ZoneInfo(tz_name) if tz_name else None


def parse_timestamp(value, tz_name=None):
    """
    Coerces Firestore timestamps, datetimes, dates, ISO strings and epoch
    milliseconds into a naive local datetime. Returns None for anything
    unreadable so callers can drop the record.

    Aware values are converted to `tz_name` when given, else to the host's
    local zone, and then stripped, so grouping by calendar date happens on
    local wall time.
    """
    if value is None or value is pd.NaT or isinstance(value, bool):
        return None

    try:
        if isinstance(value, dict) and 'seconds' in value:
            # Serialized Firestore Timestamp
            seconds = value['seconds'] + value.get('nanoseconds', 0) / 1e9
            value = datetime.fromtimestamp(seconds, tz=timezone.utc)
        elif isinstance(value, (int, float, np.integer, np.floating)):
            if not math.isfinite(value):
                return None
            value = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None

    if isinstance(value, str):
        parsed = pd.to_datetime(value.strip(), errors='coerce') if value.strip() else pd.NaT
        if pd.isna(parsed):
            return None
        value = parsed.to_pydatetime()
    elif isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    elif isinstance(value, datetime):
        pass
    elif isinstance(value, date):
        value = datetime.combine(value, time.min)
    else:
        return None

    if value.tzinfo is not None:
        try:
            value = value.astimezone(_local_clock(tz_name)).replace(tzinfo=None)
        except (ValueError, OverflowError, OSError):
            return None
    return value


def query_bound(moment, tz_name=None):
    """Naive local `moment` as an aware datetime, for range filters on stored timestamps."""
    if tz_name:
        return moment.replace(tzinfo=ZoneInfo(tz_name))
    return moment.astimezone()


def parse_weight(value):
    """Returns a finite, non-negative float or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(weight) or weight < 0:
        return None
    return weight


def _number(value):
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _as_dict(raw):
    if is_dataclass(raw) and not isinstance(raw, type):
        return asdict(raw)
    if hasattr(raw, 'to_dict'):
        # Firestore DocumentSnapshot
        return {'id': getattr(raw, 'id', None), **(raw.to_dict() or {})}
    return dict(raw)


def _field(record, *names):
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return None


def invoice_revenue(record):
    """
    Revenue of one invoice: sum of quantity x unit price over its line items.
    Legacy documents nest items under carts, with `price` instead of
    `unit_price`; missing numbers count as zero.
    """
    items = _field(record, 'line_items', 'lineItems')
    if items is None:
        items = []
        for cart in record.get('carts') or []:
            items.extend(_as_dict(cart).get('items') or [])

    total = 0.0
    for item in items:
        item = _as_dict(item)
        quantity = _number(_field(item, 'quantity'))
        price = _number(_field(item, 'unit_price', 'unitPrice', 'price'))
        total += quantity * price
    return total


def _in_window(moment, start, end):
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def normalize_pickups(raw_records, tz_name=None, start=None, end=None):
    """Builds the pickup frame, dropping records without a usable timestamp or weight."""
    rows = []
    dropped = 0
    for raw in raw_records:
        record = _as_dict(raw)
        timestamp = parse_timestamp(_field(record, 'timestamp'), tz_name)
        weight = parse_weight(_field(record, 'weight'))
        if timestamp is None or weight is None:
            dropped += 1
            continue
        if not _in_window(timestamp, start, end):
            continue
        rows.append({
            'client_id': str(_field(record, 'client_id', 'clientId') or 'unknown'),
            'timestamp': timestamp,
            'weight': weight,
            'driver_id': _field(record, 'driver_id', 'driverId', 'driverName'),
        })

    if dropped:
        logger.warning("Excluded %d malformed pickup records", dropped)

    df = pd.DataFrame(rows, columns=PICKUP_COLUMNS)
    df['timestamp'] = pd.to_datetime(df['timestamp'])
    df['weight'] = df['weight'].astype(float)
    return df.sort_values('timestamp', kind='stable').reset_index(drop=True)


def normalize_invoices(raw_records, tz_name=None, start=None, end=None):
    """Builds the invoice frame with one revenue figure per invoice."""
    rows = []
    dropped = 0
    for raw in raw_records:
        record = _as_dict(raw)
        invoice_date = parse_timestamp(_field(record, 'date'), tz_name)
        if invoice_date is None:
            dropped += 1
            continue
        if not _in_window(invoice_date, start, end):
            continue
        rows.append({
            'client_id': str(_field(record, 'client_id', 'clientId') or 'unknown'),
            'date': invoice_date,
            'revenue': invoice_revenue(record),
        })

    if dropped:
        logger.warning("Excluded %d invoices without a date", dropped)

    df = pd.DataFrame(rows, columns=INVOICE_COLUMNS)
    df['date'] = pd.to_datetime(df['date'])
    df['revenue'] = df['revenue'].astype(float)
    return df.sort_values('date', kind='stable').reset_index(drop=True)


def normalize_clients(raw_records):
    rows = []
    for raw in raw_records:
        record = _as_dict(raw)
        client_id = _field(record, 'id')
        if client_id is None:
            continue
        rows.append({'id': str(client_id), 'name': record.get('name') or 'Unknown'})
    return pd.DataFrame(rows, columns=CLIENT_COLUMNS).drop_duplicates(subset=['id'], keep='last')


def window_bounds(now, lookback_days):
    """First instant of the lookback window and last instant of `now`'s day."""
    start = datetime.combine((now - timedelta(days=lookback_days)).date(), time.min)
    end = datetime.combine(now.date(), time.max)
    return start, end


@dataclass(frozen=True, eq=False)
class HistoricalDataset:
    """
    Read-only snapshot of pickups, invoices and clients for one forecast run.

    `as_of` is the snapshot's notion of "now"; every computation that needs
    the current time reads it from here unless the caller passes one.
    Frames are never modified after construction.
    """
    pickups: pd.DataFrame
    invoices: pd.DataFrame
    clients: pd.DataFrame
    as_of: datetime
    start: Optional[datetime] = None

    @classmethod
    def from_records(cls, as_of, pickups=(), invoices=(), clients=(),
                     lookback_days=config.PATTERN_LOOKBACK_DAYS, tz_name=config.LOCAL_TIMEZONE):
        """Normalises raw documents or record dataclasses into a snapshot."""
        as_of = parse_timestamp(as_of, tz_name)
        if as_of is None:
            raise ValueError("as_of must be a readable timestamp")
        start, end = window_bounds(as_of, lookback_days)
        return cls(
            pickups=normalize_pickups(pickups, tz_name, start, end),
            invoices=normalize_invoices(invoices, tz_name, start, end),
            clients=normalize_clients(clients),
            as_of=as_of,
            start=start,
        )

    @classmethod
    def empty(cls, as_of):
        return cls.from_records(as_of)

    @property
    def client_names(self):
        return dict(zip(self.clients['id'], self.clients['name']))

    @property
    def is_empty(self):
        return self.pickups.empty and self.invoices.empty

    def truncated(self, before):
        """Snapshot as it looked at `before`: later records are left out."""
        return HistoricalDataset(
            pickups=self.pickups[self.pickups['timestamp'] < before].reset_index(drop=True),
            invoices=self.invoices[self.invoices['date'] < before].reset_index(drop=True),
            clients=self.clients,
            as_of=before,
            start=self.start,
        )


def build_daily_aggregates(dataset):
    """
    Groups pickups and invoices by local calendar date.

    Returns a frame indexed by day (midnight timestamps) with weight,
    entry_count, revenue, client_ids (frozenset) and client_count. Dates with
    only invoices appear with zero weight.
    """
    frames = []

    pickups = dataset.pickups
    if not pickups.empty:
        grouped = pickups.groupby(pickups['timestamp'].dt.normalize())
        frames.append(pd.DataFrame({
            'weight': grouped['weight'].sum(),
            'entry_count': grouped['weight'].size(),
            'client_ids': grouped['client_id'].apply(frozenset),
        }))

    invoices = dataset.invoices
    if not invoices.empty:
        revenue = invoices.groupby(invoices['date'].dt.normalize())['revenue'].sum()
        frames.append(revenue.to_frame('revenue'))

    if not frames:
        return pd.DataFrame(columns=DAILY_COLUMNS, index=pd.DatetimeIndex([], name='day'))

    daily = pd.concat(frames, axis=1).sort_index()
    daily.index.name = 'day'

    for column in ('weight', 'entry_count', 'revenue'):
        if column not in daily:
            daily[column] = 0.0
        daily[column] = daily[column].fillna(0)

    if 'client_ids' in daily:
        daily['client_ids'] = daily['client_ids'].apply(
            lambda ids: ids if isinstance(ids, frozenset) else frozenset()
        )
    else:
        daily['client_ids'] = pd.Series([frozenset()] * len(daily), index=daily.index, dtype=object)

    daily['weight'] = daily['weight'].astype(float)
    daily['revenue'] = daily['revenue'].astype(float)
    daily['entry_count'] = daily['entry_count'].astype(int)
    daily['client_count'] = daily['client_ids'].apply(len).astype(int)
    return daily[DAILY_COLUMNS]


def days_between(later, earlier):
    """Fractional days from `earlier` to `later`; works on scalars and Series."""
    return pd.to_timedelta(later - earlier) / pd.Timedelta(days=1)


# --- Firestore boundary ---

def _stream(query, collection_name):
    try:
        return [{'id': doc.id, **(doc.to_dict() or {})} for doc in query.stream()]
    except Exception as e:
        raise DataSourceError(f"Failed to read '{collection_name}': {e}") from e


def _range_query(db_client, collection_name, field, low, high):
    return (
        db_client.collection(collection_name)
        .where(filter=FieldFilter(field, '>=', low))
        .where(filter=FieldFilter(field, '<=', high))
    )


def fetch_pickup_records(db_client, start_date, end_date, tz_name=config.LOCAL_TIMEZONE):
    """Pickup entries whose timestamp falls inside [start_date, end_date], local time."""
    query = _range_query(
        db_client, config.PICKUP_COLLECTION, 'timestamp',
        query_bound(start_date, tz_name), query_bound(end_date, tz_name),
    )
    records = _stream(query, config.PICKUP_COLLECTION)
    return normalize_pickups(records, tz_name, start_date, end_date)


def fetch_invoice_records(db_client, start_date, end_date, tz_name=config.LOCAL_TIMEZONE):
    """
    Invoices dated inside the window.

    Invoice dates are stored as ISO strings, Firestore timestamps or epoch
    milliseconds. A range filter only matches values of its own type, so
    each format gets its own bounded query and the results are merged by
    document id. The string range is a day wider on each side for
    UTC-stamped strings. Strings that are not ISO-8601 do not sort by date
    and are not matched.
    """
    low, high = query_bound(start_date, tz_name), query_bound(end_date, tz_name)
    ranges = [
        ((start_date - timedelta(days=1)).date().isoformat(),
         (end_date + timedelta(days=1)).date().isoformat() + '\uf8ff'),
        (low, high),
        (low.timestamp() * 1000, high.timestamp() * 1000),
    ]

    # Step 1: One bounded query per stored date format
    by_id = {}
    for range_low, range_high in ranges:
        query = _range_query(db_client, config.INVOICE_COLLECTION, 'date', range_low, range_high)
        for record in _stream(query, config.INVOICE_COLLECTION):
            by_id[record['id']] = record

    # Step 2: Exact window on local time
    return normalize_invoices(list(by_id.values()), tz_name, start_date, end_date)


def fetch_clients(db_client):
    records = _stream(db_client.collection(config.CLIENT_COLLECTION), config.CLIENT_COLLECTION)
    return normalize_clients(records)


def load_dataset(db_client, now, lookback_days=config.PATTERN_LOOKBACK_DAYS, tz_name=config.LOCAL_TIMEZONE):
    """Reads one snapshot from Firestore for a pipeline run ending at `now`."""
    start, end = window_bounds(now, lookback_days)
    dataset = HistoricalDataset(
        pickups=fetch_pickup_records(db_client, start, end, tz_name),
        invoices=fetch_invoice_records(db_client, start, end, tz_name),
        clients=fetch_clients(db_client),
        as_of=now,
        start=start,
    )
    logger.info(
        "Loaded %d pickups, %d invoices, %d clients for %s to %s",
        len(dataset.pickups), len(dataset.invoices), len(dataset.clients),
        start.date(), end.date(),
    )
    return dataset


def fetch_forecast_log(db_client):
    """Previously logged forecasts, one document per forecast date."""
    return _stream(db_client.collection(config.FORECAST_LOG_COLLECTION), config.FORECAST_LOG_COLLECTION)
