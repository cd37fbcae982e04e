#!/usr/bin/env python3
"""Nightly synchronizer for the CCL / CCL3 spot-price series."""
from __future__ import annotations

import logging
import math
import os
import sys
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote_plus

import requests
from sqlalchemy import MetaData, Table, create_engine, func, select
from sqlalchemy.exc import ArgumentError, DBAPIError


SPOT_PRICES_ENDPOINT = "https://apicem.matbarofex.com.ar/api/v2/spot-prices"
DEFAULT_TABLE = "ccl3"
DEFAULT_START_DATE = date(2019, 1, 1)
ENV_FILE = Path(".env")
LOG_DIR = Path("logs")
LOG_FILE = LOG_DIR / "ccl_updater.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
PAGE_SIZE = 32000

CCL_PREFIX = "CCL"
CCL_LABEL = "CCL"
CCL3_LABEL = "CCL3"
RECOGNIZED_LABELS = (CCL_LABEL, CCL3_LABEL)


@dataclass
class Config:
    db_url: str
    api_url: str = SPOT_PRICES_ENDPOINT
    table_name: str = DEFAULT_TABLE
    start_date: date = DEFAULT_START_DATE
    request_timeout: Optional[float] = None


@dataclass(frozen=True)
class Quote:
    timestamp: str
    spot: str
    price: Any


@dataclass(frozen=True)
class DailyRow:
    date: date
    ccl: float
    ccl3: float

    def as_params(self) -> Dict[str, Any]:
        return {"date": self.date, "ccl": self.ccl, "ccl3": self.ccl3}


@dataclass
class SyncStats:
    outcome: str = "pending"
    received: int = 0
    filtered: int = 0
    inserted: int = 0
    start: Optional[date] = None
    end: Optional[date] = None


def load_env(path: Path) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if not path.exists():
        return env
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip().strip('"').strip("'")
        env[key.strip()] = value
    return env


def build_config(env: Dict[str, str]) -> Config:
    host = env.get("POSTGRES_HOST") or "localhost"
    port = env.get("POSTGRES_PORT") or "5432"
    user = env.get("POSTGRES_USER")
    password = env.get("POSTGRES_PASSWORD")
    database = env.get("POSTGRES_DB")
    if not user or not password or not database:
        raise ValueError(
            "Database credentials (POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB) are required"
        )
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ValueError(f"POSTGRES_PORT must be numeric, got {port!r}") from exc
    if not 0 < port_number < 65536:
        raise ValueError(f"POSTGRES_PORT out of range: {port_number}")
    sslmode = env.get("POSTGRES_SSLMODE") or "disable"
    url = (
        "postgresql+psycopg2://"
        f"{quote_plus(user)}:{quote_plus(password)}@{host}:{port_number}/{quote_plus(database)}"
        f"?sslmode={quote_plus(sslmode)}"
    )

    start_raw = env.get("CCL_START_DATE")
    start_date = DEFAULT_START_DATE
    if start_raw:
        try:
            start_date = date.fromisoformat(start_raw)
        except ValueError as exc:
            raise ValueError(f"CCL_START_DATE must be an ISO date, got {start_raw!r}") from exc

    timeout_raw = env.get("CCL_REQUEST_TIMEOUT")
    timeout: Optional[float] = None
    if timeout_raw:
        try:
            timeout = float(timeout_raw)
        except ValueError as exc:
            raise ValueError(f"CCL_REQUEST_TIMEOUT must be numeric, got {timeout_raw!r}") from exc
        if timeout <= 0:
            raise ValueError("CCL_REQUEST_TIMEOUT must be positive")

    return Config(
        db_url=url,
        api_url=env.get("CCL_API_URL") or SPOT_PRICES_ENDPOINT,
        table_name=env.get("CCL_TABLE") or DEFAULT_TABLE,
        start_date=start_date,
        request_timeout=timeout,
    )


def build_log_handlers(log_file: Path = LOG_FILE) -> List[logging.Handler]:
    """Console and file handlers sharing one format, both at INFO."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setLevel(logging.INFO)
        handler.setFormatter(formatter)
    return handlers


def setup_logging() -> None:
    logging.basicConfig(level=logging.INFO, handlers=build_log_handlers())


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an API ``dateTime`` keeping the calendar date as reported."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        try:
            return datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            try:
                return datetime.strptime(value, "%Y-%m-%d")
            except ValueError:
                return None


def parse_price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and (not value.strip() or "_" in value):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price):
        return None
    return price


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_timestamp(str(value))
    return parsed.date() if parsed else None


def get_watermark(engine, table: Table) -> Optional[date]:
    query = select(func.max(table.c.date))
    with engine.connect() as connection:
        value = connection.execute(query).scalar_one_or_none()
    return _as_date(value)


def compute_fetch_window(
    watermark: Optional[date],
    now: datetime,
    default_start: date = DEFAULT_START_DATE,
) -> Optional[Tuple[date, date]]:
    if watermark is None:
        start_day = default_start
    else:
        start_day = watermark + timedelta(days=1)
    start = datetime.combine(start_day, time.min)
    if now.tzinfo is not None:
        start = start.replace(tzinfo=now.tzinfo)
    if start >= now:
        return None
    return start_day, now.date()


def normalize_payload(raw: Any) -> List[Quote]:
    if isinstance(raw, dict):
        records = raw.get("data")
    else:
        records = None
    if not isinstance(records, list):
        return []
    quotes: List[Quote] = []
    for item in records:
        if not isinstance(item, dict):
            continue
        timestamp = item.get("dateTime")
        spot = item.get("spot")
        if not timestamp or not isinstance(spot, str):
            continue
        quotes.append(Quote(timestamp=str(timestamp), spot=spot, price=item.get("normalizedPrice")))
    return quotes


def fetch_quotes(
    session: requests.Session,
    config: Config,
    start: date,
    end: date,
    logger: logging.Logger,
) -> List[Quote]:
    params = {
        "spot": "",
        "from": start.isoformat(),
        "to": end.isoformat(),
        "page": 1,
        "pageSize": PAGE_SIZE,
    }
    response = session.get(config.api_url, params=params, timeout=config.request_timeout)
    if not response.ok:
        logger.error("Failed request %s: %s - %s", config.api_url, response.status_code, response.text)
        response.raise_for_status()
    try:
        payload = response.json()
    except ValueError as exc:
        logger.error("Failed to parse JSON from %s: %s", config.api_url, exc)
        raise
    quotes = normalize_payload(payload)
    logger.info(
        "Fetched %s spot quotes between %s and %s",
        len(quotes),
        start.isoformat(),
        end.isoformat(),
    )
    return quotes


def filter_ccl_quotes(quotes: List[Quote]) -> List[Quote]:
    return [quote for quote in quotes if quote.spot.startswith(CCL_PREFIX)]


def pivot_quotes(quotes: List[Quote], logger: logging.Logger) -> Dict[str, Dict[str, float]]:
    """Group recognized CCL quotes as ``timestamp -> label -> price``.

    The entry for a timestamp exists as soon as one recognized quote is seen,
    even when its price turns out to be unusable.
    """
    pivot: Dict[str, Dict[str, float]] = {}
    for quote in quotes:
        if quote.spot not in RECOGNIZED_LABELS:
            logger.debug("Discarding unrecognized spot %s at %s", quote.spot, quote.timestamp)
            continue
        prices = pivot.setdefault(quote.timestamp, {})
        price = parse_price(quote.price)
        if price is None:
            logger.warning(
                "Skipping %s quote at %s with invalid normalizedPrice %r",
                quote.spot,
                quote.timestamp,
                quote.price,
            )
            continue
        prices[quote.spot] = price
    return pivot


def merge_pivot(pivot: Dict[str, Dict[str, float]], logger: logging.Logger) -> List[DailyRow]:
    rows: List[DailyRow] = []
    for timestamp, spots in pivot.items():
        parsed = parse_timestamp(timestamp)
        if parsed is None:
            logger.warning("Skipping quotes with unparseable dateTime %r", timestamp)
            continue
        ccl3 = spots.get(CCL3_LABEL, 0.0)
        ccl = spots.get(CCL_LABEL, ccl3)
        # Zero means "missing" in the ccl3 table; such rows are still stored.
        rows.append(DailyRow(date=parsed.date(), ccl=ccl, ccl3=ccl3))
    return rows


def build_daily_rows(ccl_quotes: List[Quote], logger: logging.Logger) -> List[DailyRow]:
    """Pivot and merge quotes that already passed the CCL filter."""
    rows = merge_pivot(pivot_quotes(ccl_quotes, logger), logger)
    rows.sort(key=lambda row: row.date)
    return rows


def transform_quotes(quotes: List[Quote], logger: logging.Logger) -> List[DailyRow]:
    return build_daily_rows(filter_ccl_quotes(quotes), logger)


def insert_rows(engine, table: Table, rows: List[DailyRow], logger: logging.Logger) -> int:
    if not rows:
        return 0
    params = [row.as_params() for row in rows]
    try:
        with engine.begin() as connection:
            connection.execute(table.insert(), params)
    except DBAPIError as exc:
        logger.error("Failed to insert %s rows into %s, transaction rolled back: %s", len(rows), table.name, exc)
        raise
    logger.info("Inserted %s rows into %s", len(rows), table.name)
    return len(rows)


def run_sync(
    config: Config,
    engine,
    table: Table,
    session: requests.Session,
    logger: logging.Logger,
    now: Optional[datetime] = None,
) -> SyncStats:
    stats = SyncStats()
    now = now or datetime.now()

    watermark = get_watermark(engine, table)
    if watermark is None:
        logger.info("No data present yet in %s; starting from %s", table.name, config.start_date)
    else:
        logger.info("Latest stored date in %s is %s", table.name, watermark.isoformat())

    window = compute_fetch_window(watermark, now, config.start_date)
    if window is None:
        logger.info("Data is up-to-date; nothing to update")
        stats.outcome = "up_to_date"
        return stats
    stats.start, stats.end = window

    quotes = fetch_quotes(session, config, stats.start, stats.end, logger)
    stats.received = len(quotes)
    if not quotes:
        logger.info(
            "No data to insert: the API returned an empty response (weekend or holiday?)"
        )
        stats.outcome = "no_data"
        return stats

    ccl_quotes = filter_ccl_quotes(quotes)
    stats.filtered = len(ccl_quotes)
    if not ccl_quotes:
        logger.info("No data to insert: no spot starting with %r in the response", CCL_PREFIX)
        stats.outcome = "no_ccl"
        return stats

    rows = build_daily_rows(ccl_quotes, logger)
    if not rows:
        logger.info("No valid rows to insert after merging CCL quotes")
        stats.outcome = "no_rows"
        return stats

    stats.inserted = insert_rows(engine, table, rows, logger)
    stats.outcome = "inserted"
    return stats


def main() -> None:
    setup_logging()
    logger = logging.getLogger("ccl_updater")
    logger.info("Updating CCL at %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
    try:
        env = {**load_env(ENV_FILE), **os.environ}
        config = build_config(env)
        engine = create_engine(config.db_url, pool_pre_ping=True, future=True)
    except (OSError, ValueError, ArgumentError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)

    session = requests.Session()
    try:
        table = Table(config.table_name, MetaData(), autoload_with=engine)
        stats = run_sync(config, engine, table, session, logger)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("CCL synchronization aborted: %s", exc)
        sys.exit(1)
    finally:
        session.close()
        engine.dispose()

    logger.info(
        "Resumen CCL: outcome=%s, rango=%s..%s, recibidas=%s, ccl=%s, insertadas=%s",
        stats.outcome,
        stats.start,
        stats.end,
        stats.received,
        stats.filtered,
        stats.inserted,
    )


if __name__ == "__main__":
    main()
