"""
Shared pytest fixtures for the deduction calculator tests.

Provides small in-memory reference tables, a calculator and record factories.
"""

import os
import sys
from datetime import date
from decimal import Decimal

import pandas as pd
import pytest

# Add the project directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from models import Flight, NonFlightDay, Reimbursement, Settings
from services import ReferenceDataService, TaxCalculatorService


AIRPORT_ROWS = [
    ("FRA", "DE", "", "false"),
    ("MUC", "DE", "", "false"),
    ("HAM", "DE", "", "false"),
    ("LHR", "GB", "London", "false"),
    ("MAN", "GB", "", "false"),
    ("JFK", "US", "New York", "true"),
    ("DEN", "US", "", "true"),
    ("BOM", "IN", "Mumbai", "true"),
    ("CPT", "ZA", "Kapstadt", "true"),
    ("XQQ", "QQ", "", "false"),
]

RATE_ROWS = [
    ("DE", "Deutschland", "", "14", "28", "2025-01-01", "2025-12-31"),
    ("GB", "Großbritannien", "", "35", "52", "2025-01-01", "2025-12-31"),
    ("GB", "Großbritannien", "London", "44", "66", "2025-01-01", "2025-12-31"),
    ("US", "USA", "", "40", "59", "2025-01-01", "2025-12-31"),
    ("US", "USA", "New York", "44", "66", "2025-01-01", "2025-12-31"),
    ("IN", "Indien", "", "15", "22", "2025-01-01", "2025-12-31"),
    ("IN", "Indien", "Mumbai", "36", "53", "2025-01-01", "2025-12-31"),
    ("ZA", "Südafrika", "", "20", "29", "2025-01-01", "2025-12-31"),
    ("ZA", "Südafrika", "Kapstadt", "22", "33", "2025-01-01", "2025-12-31"),
    ("LU", "Luxemburg", "", "42", "63", "2025-01-01", "2025-12-31"),
    ("DE", "Deutschland", "", "14", "28", "2024-01-01", "2024-12-31"),
    ("GB", "Großbritannien", "", "30", "45", "2024-01-01", "2024-12-31"),
]


@pytest.fixture
def airports_df():
    """Airport table covering the airports used in the tests."""
    return pd.DataFrame(AIRPORT_ROWS, columns=ReferenceDataService.AIRPORT_COLUMNS)


@pytest.fixture
def rates_df():
    """Per-diem table for 2025 plus a partial 2024 table."""
    return pd.DataFrame(RATE_ROWS, columns=ReferenceDataService.RATE_COLUMNS)


@pytest.fixture
def reference(airports_df, rates_df):
    return ReferenceDataService.from_frames(airports_df, rates_df)


@pytest.fixture(scope="session")
def shipped_reference():
    """Reference data loaded from the CSV files in data/."""
    return ReferenceDataService()


@pytest.fixture
def calculator(reference):
    return TaxCalculatorService(reference)


@pytest.fixture
def settings():
    """30 km to the airport, i.e. 15 minutes commute."""
    return Settings(distance_to_work_km=Decimal("30"))


@pytest.fixture
def make_flight():
    """Factory for flight legs with sensible defaults."""
    def factory(day, departure, arrival, departure_time, arrival_time, block_time="1:00", **kwargs):
        return Flight(
            date=day,
            flight_number=kwargs.pop("flight_number", "LH100"),
            departure=departure,
            arrival=arrival,
            departure_time=departure_time,
            arrival_time=arrival_time,
            block_time=block_time,
            **kwargs,
        )
    return factory


@pytest.fixture
def make_day():
    """Factory for non-flight duty records."""
    def factory(day, duty_type, country=None, description=""):
        return NonFlightDay(date=day, duty_type=duty_type, description=description, country=country)
    return factory


@pytest.fixture
def new_york_trip(make_flight):
    """FRA-JFK on 10 March, layover, JFK-FRA overnight on 12 March."""
    return [
        make_flight(date(2025, 3, 10), "FRA", "JFK", "10:00", "12:30", "8:30",
                    flight_number="LH400", aircraft_type="A350"),
        make_flight(date(2025, 3, 12), "JFK", "FRA", "18:00", "08:00", "8:00",
                    flight_number="LH401", aircraft_type="A350"),
    ]


@pytest.fixture
def reimbursement():
    def factory(year, month, amount):
        return Reimbursement(year=year, month=month, amount=Decimal(str(amount)))
    return factory
