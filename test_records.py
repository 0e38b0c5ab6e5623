#!/usr/bin/env python3
"""
Tests for record loading, validation and flight preprocessing
"""

import json
from dataclasses import FrozenInstanceError
from datetime import date
from decimal import Decimal

import pytest

from models import DayRole, Flight, MalformedDutyRecord
from services import FlightPreprocessor, RecordLoader, TripDayClassifier
from utils import parse_block_time, parse_hhmm


FLIGHT_DATA = {
    "date": "2025-03-10",
    "flightNumber": "lh400",
    "departure": "fra",
    "arrival": "jfk",
    "departureTime": "10:00",
    "arrivalTime": "12:30",
    "blockTime": "8:30",
    "aircraftType": "a350",
}


class TestRecordLoader:
    """Parser output to duty records"""

    def test_load_flight(self):
        flight = RecordLoader().load_flight(FLIGHT_DATA)

        assert flight.date == date(2025, 3, 10)
        assert flight.flight_number == "LH400"
        assert (flight.departure, flight.arrival) == ("FRA", "JFK")
        assert flight.aircraft_type == "A350"
        assert not flight.is_continuation

    @pytest.mark.parametrize("key,value", [
        ("departureTime", "25:00"),
        ("arrivalTime", "12h30"),
        ("blockTime", "8:75"),
        ("date", "10.03.2025"),
        ("departure", ""),
    ])
    def test_malformed_flight_fields(self, key, value):
        data = dict(FLIGHT_DATA, **{key: value})

        with pytest.raises(MalformedDutyRecord):
            RecordLoader().load_flight(data)

    def test_missing_flight_field(self):
        data = {k: v for k, v in FLIGHT_DATA.items() if k != "arrival"}

        with pytest.raises(MalformedDutyRecord) as excinfo:
            RecordLoader().load_flight(data)

        assert excinfo.value.field_name == "arrival"

    def test_load_non_flight_day_accepts_both_keys(self):
        loader = RecordLoader()

        first = loader.load_non_flight_day({"date": "2025-05-06", "type": "fl", "country": "gb"})
        second = loader.load_non_flight_day({"date": "2025-05-07", "dutyType": "ME"})

        assert (first.duty_type, first.country) == ("FL", "GB")
        assert second.duty_type == "ME"
        assert second.country is None

    def test_reimbursement_month_out_of_range(self):
        with pytest.raises(MalformedDutyRecord):
            RecordLoader().load_reimbursement({"year": 2025, "month": 13, "amount": "10"})

    def test_reimbursement_with_comma(self):
        reimbursement = RecordLoader().load_reimbursement({"year": "2025", "month": "3", "amount": "12,50"})

        assert reimbursement.amount == Decimal("12.50")
        assert reimbursement.month == 3

    def test_load_json(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps({
            "flights": [FLIGHT_DATA],
            "nonFlightDays": [{"date": "2025-03-11", "type": "FL", "country": "US"}],
            "reimbursements": [{"year": 2025, "month": 3, "amount": 24}],
        }), encoding="utf-8")

        flights, days, reimbursements = RecordLoader().load_json(str(path))

        assert len(flights) == 1
        assert days[0].country == "US"
        assert reimbursements[0].amount == Decimal("24")

    def test_load_json_rejects_list(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text("[]", encoding="utf-8")

        with pytest.raises(MalformedDutyRecord):
            RecordLoader().load_json(str(path))


class TestValidation:
    """Malformed records are rejected before any computation"""

    def test_calculate_rejects_bad_time(self, calculator, settings, make_flight):
        flights = [make_flight(date(2025, 3, 10), "FRA", "MUC", "7am", "08:00")]

        with pytest.raises(MalformedDutyRecord) as excinfo:
            calculator.calculate(flights, [], settings)

        assert excinfo.value.field_name == "departure_time"

    def test_calculate_rejects_missing_duty_type(self, calculator, settings, make_day):
        with pytest.raises(MalformedDutyRecord):
            calculator.calculate([], [make_day(date(2025, 3, 10), "")], settings)

    def test_time_helpers(self):
        assert parse_hhmm("00:00") == 0
        assert parse_hhmm("23:59") == 1439
        assert parse_block_time("12:05") == 725
        assert parse_block_time("") == 0


class TestFlightPreprocessor:
    """Continuation merging and flight classification"""

    def test_continuation_is_merged(self, reference, make_flight):
        flights = [
            make_flight(date(2025, 6, 20), "FRA", "BOM", "21:40", "23:59", "2:20", flight_number="LH756"),
            make_flight(date(2025, 6, 21), "FRA", "BOM", "00:00", "09:55", "6:35", flight_number="LH756",
                        is_continuation=True, continuation_of="LH756"),
        ]

        prepared, warnings = FlightPreprocessor(reference).prepare(flights)

        assert warnings == []
        assert len(prepared) == 1
        merged = prepared[0]
        assert merged.date == date(2025, 6, 20)
        assert merged.departure_time == "21:40"
        assert merged.arrival_time == "09:55"
        assert merged.block_time == "8:55"
        assert not merged.is_continuation

    def test_orphaned_continuation_is_kept_with_warning(self, reference, make_flight):
        flights = [make_flight(date(2025, 6, 21), "FRA", "BOM", "00:00", "09:55", "6:35",
                               flight_number="LH756", is_continuation=True, continuation_of="LH756")]

        prepared, warnings = FlightPreprocessor(reference).prepare(flights)

        assert len(prepared) == 1
        assert [w.type for w in warnings] == ["orphaned_continuation"]

    def test_flights_sorted_by_date_and_time(self, reference, make_flight):
        later = make_flight(date(2025, 1, 2), "FRA", "MUC", "07:00", "08:00")
        evening = make_flight(date(2025, 1, 1), "MUC", "FRA", "18:00", "19:00")
        morning = make_flight(date(2025, 1, 1), "FRA", "MUC", "06:00", "07:00")

        prepared, _ = FlightPreprocessor(reference).prepare([later, evening, morning])

        assert prepared == [morning, evening, later]

    def test_simulator_detection(self, reference, make_flight):
        preprocessor = FlightPreprocessor(reference)
        by_number = make_flight(date(2025, 1, 1), "FRA", "FRA", "08:00", "12:00", "4:00", flight_number="LH9123")
        by_code = make_flight(date(2025, 1, 1), "MUC", "MUC", "08:00", "14:00", "6:00", duty_code="SI")
        regular = make_flight(date(2025, 1, 1), "FRA", "MUC", "08:00", "09:00")

        assert preprocessor.is_simulator(by_number)
        assert preprocessor.is_simulator(by_code)
        assert not preprocessor.is_simulator(regular)
        assert preprocessor.briefing_minutes(by_code, "cockpit") == 60

    def test_longhaul_classification(self, reference, make_flight):
        preprocessor = FlightPreprocessor(reference)
        wide_body = make_flight(date(2025, 1, 1), "FRA", "LHR", "08:00", "09:00", aircraft_type="B787-9")
        narrow_body = make_flight(date(2025, 1, 1), "FRA", "JFK", "08:00", "09:00", aircraft_type="A320")
        no_type = make_flight(date(2025, 1, 1), "FRA", "JFK", "08:00", "09:00")
        europe = make_flight(date(2025, 1, 1), "FRA", "MAN", "08:00", "09:00")

        assert preprocessor.is_longhaul(wide_body)
        assert not preprocessor.is_longhaul(narrow_body)
        assert preprocessor.is_longhaul(no_type)
        assert not preprocessor.is_longhaul(europe)

    @pytest.mark.parametrize("crew_role,expected", [("cockpit", 80), ("cabin", 85)])
    def test_shorthaul_briefing_by_crew_role(self, reference, make_flight, crew_role, expected):
        flight = make_flight(date(2025, 1, 1), "FRA", "MAN", "08:00", "09:00")

        assert FlightPreprocessor(reference).briefing_minutes(flight, crew_role) == expected


class TestTripDayClassifier:
    """Day roles within a trip"""

    def test_new_york_roles(self, calculator, new_york_trip):
        trips, _ = calculator.trip_builder.build(new_york_trip, [])

        roles = TripDayClassifier(calculator.preprocessor).classify(trips[0])

        assert list(roles.values()) == [
            DayRole.DEPARTURE_DAY, DayRole.INTERMEDIATE_DAY,
            DayRole.INTERMEDIATE_DAY, DayRole.ARRIVAL_DAY,
        ]

    def test_return_and_new_departure_same_day(self, calculator, make_flight):
        flights = [
            make_flight(date(2025, 5, 5), "FRA", "LHR", "09:00", "09:45"),
            make_flight(date(2025, 5, 6), "LHR", "FRA", "07:00", "09:45", flight_number="LH101"),
            make_flight(date(2025, 5, 6), "FRA", "MAN", "15:00", "16:00", flight_number="LH102"),
            make_flight(date(2025, 5, 7), "MAN", "FRA", "10:00", "12:45", flight_number="LH103"),
        ]
        trips, _ = calculator.trip_builder.build(flights, [])

        roles = calculator.classifier.classify(trips[0])

        assert roles[date(2025, 5, 6)] is DayRole.DEPARTURE_DAY

    def test_trip_starting_abroad(self, calculator, make_flight):
        flights = [make_flight(date(2025, 5, 6), "LHR", "FRA", "07:00", "09:45")]
        trips, _ = calculator.trip_builder.build(flights, [])

        roles = calculator.classifier.classify(trips[0])

        assert roles[date(2025, 5, 6)] is DayRole.ARRIVAL_DAY

    def test_records_are_frozen(self, make_flight):
        flight = make_flight(date(2025, 1, 1), "FRA", "MUC", "08:00", "09:00")

        with pytest.raises(FrozenInstanceError):
            flight.arrival = "HAM"
        assert isinstance(flight, Flight)
