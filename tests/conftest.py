"""
Pytest fixtures for the CCL synchronizer.

Provides:
- A file-backed SQLite sink with the ``ccl3`` table
- A mocked ``requests.Session`` for the spot-prices API
"""

import logging
from datetime import date
from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy import Column, Date, Float, MetaData, Table, create_engine

import ccl_updater


# ============================================================
# DATABASE FIXTURES
# ============================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database holding an empty ``ccl3`` table."""
    db_engine = create_engine(f"sqlite:///{tmp_path / 'ccl.db'}", future=True)
    metadata = MetaData()
    Table(
        "ccl3",
        metadata,
        Column("date", Date, primary_key=True),
        Column("ccl", Float, nullable=False),
        Column("ccl3", Float, nullable=False),
    )
    metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def table(engine):
    """The ``ccl3`` table reflected the same way the job does it."""
    return Table("ccl3", MetaData(), autoload_with=engine)


@pytest.fixture
def seed_rows(engine, table):
    """Insert already-synchronized rows."""
    def _seed(*rows):
        with engine.begin() as connection:
            connection.execute(
                table.insert(),
                [{'date': d, 'ccl': ccl, 'ccl3': ccl3} for d, ccl, ccl3 in rows],
            )
    return _seed


@pytest.fixture
def stored_rows(engine, table):
    """Read back everything in the sink, ordered by date."""
    def _read():
        with engine.connect() as connection:
            result = connection.execute(table.select().order_by(table.c.date))
            return [(row.date, row.ccl, row.ccl3) for row in result]
    return _read


# ============================================================
# API FIXTURES
# ============================================================

def make_response(payload=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = '' if payload is None else str(payload)
    response.json.return_value = payload
    if not response.ok:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Server Error")
    return response


@pytest.fixture
def api_session():
    """Mock session; tests set ``session.get.return_value``."""
    session = MagicMock(spec=requests.Session)
    session.get.return_value = make_response({'data': []})
    return session


@pytest.fixture
def config():
    return ccl_updater.Config(
        db_url='sqlite://',
        api_url='https://example.test/api/v2/spot-prices',
        start_date=date(2024, 1, 1),
    )


@pytest.fixture
def logger():
    return logging.getLogger('ccl_updater.tests')


@pytest.fixture
def api_response():
    """Factory building mocked API responses."""
    return make_response
