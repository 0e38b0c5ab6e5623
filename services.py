"""
Business logic services for the Crew Tax Deduction Calculator
"""
import os
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pandas as pd

from config import TaxConfig
from models import (
    CleaningCosts, CountryAllowance, CountryRate, DailyAllowanceInfo, DataWarning, DayAbsence,
    DayRole, Flight, HotelNight, MalformedDutyRecord, MealAllowances, MonthlyBreakdown,
    NonFlightDay, RateType, ReferenceDataError, Reimbursement, Settings, TaxCalculation,
    TravelCosts, TravelExpenses, Trip,
)
from performance import CalculationCache, timed
from utils import (
    format_minutes, is_overnight, parse_block_time, parse_date, parse_hhmm, resource_path,
    to_decimal, validate_integer_input,
)


ZERO = Decimal("0")


class ReferenceDataService:
    """Read-only airport and per-diem rate tables"""

    AIRPORT_COLUMNS = ['iata_code', 'country_code', 'allowance_city', 'longhaul']
    RATE_COLUMNS = ['country_code', 'country_name', 'city', 'partial_rate', 'full_rate',
                    'valid_from', 'valid_to']

    def __init__(self, airport_csv: Optional[str] = None, rates_csv: Optional[str] = None,
                 airports_df: Optional[pd.DataFrame] = None, rates_df: Optional[pd.DataFrame] = None):
        self.logger = logging.getLogger(__name__)
        self.airport_csv = airport_csv or resource_path(os.path.join("data", "airports.csv"))
        self.rates_csv = rates_csv or resource_path(os.path.join("data", "country_rates.csv"))

        if airports_df is None:
            airports_df = self._read_table(self.airport_csv, self.AIRPORT_COLUMNS)
        if rates_df is None:
            rates_df = self._read_table(self.rates_csv, self.RATE_COLUMNS)

        self.airports: Dict[str, Tuple[str, Optional[str], bool]] = {}
        self.country_names: Dict[str, str] = {}
        self.rates: Dict[Tuple[date, date], Dict[Tuple[str, Optional[str]], CountryRate]] = {}
        self._load_airports(airports_df)
        self._load_rates(rates_df)
        self.logger.info(f"Loaded {len(self.airports)} airports and {len(self.rates)} rate tables")

    @classmethod
    def from_frames(cls, airports_df: pd.DataFrame, rates_df: pd.DataFrame) -> "ReferenceDataService":
        """Build the service from in-memory tables"""
        return cls(airports_df=airports_df, rates_df=rates_df)

    def _read_table(self, csv_path: str, required: List[str]) -> pd.DataFrame:
        """Load a reference CSV trying the usual separators and encodings"""
        if not os.path.exists(csv_path):
            raise ReferenceDataError(f"Reference table not found: {csv_path}")

        for sep in [';', ',', '\t']:
            for encoding in ['utf-8', 'latin1', 'cp1252']:
                try:
                    df = pd.read_csv(csv_path, sep=sep, encoding=encoding, dtype=str, keep_default_na=False)
                except (UnicodeDecodeError, pd.errors.ParserError, ValueError):
                    continue
                if all(col in df.columns for col in required):
                    return df

        raise ReferenceDataError(f"Could not parse CSV '{csv_path}' with any known format.")

    def _load_airports(self, df: pd.DataFrame) -> None:
        for _, row in df.iterrows():
            code = str(row['iata_code']).strip().upper()
            if not code:
                continue
            city = str(row.get('allowance_city', '') or '').strip() or None
            longhaul = str(row.get('longhaul', '')).strip().lower() in ('true', '1', 'yes')
            self.airports[code] = (str(row['country_code']).strip().upper(), city, longhaul)

    def _load_rates(self, df: pd.DataFrame) -> None:
        for _, row in df.iterrows():
            code = str(row['country_code']).strip().upper()
            city = str(row.get('city', '') or '').strip() or None
            try:
                rate = CountryRate(
                    country_code=code,
                    country_name=str(row['country_name']).strip(),
                    city=city,
                    partial_rate=to_decimal(row['partial_rate'], 'partial_rate'),
                    full_rate=to_decimal(row['full_rate'], 'full_rate'),
                    valid_from=date.fromisoformat(str(row['valid_from']).strip()),
                    valid_to=date.fromisoformat(str(row['valid_to']).strip()),
                )
            except ValueError as e:
                raise ReferenceDataError(f"Invalid rate row for {code}: {e}")

            period = (rate.valid_from, rate.valid_to)
            self.rates.setdefault(period, {})[(code, self._city_key(city))] = rate
            if city is None:
                self.country_names[code] = rate.country_name

    @staticmethod
    def _city_key(city: Optional[str]) -> Optional[str]:
        return city.casefold() if city else None

    def _period_for(self, on_date: date) -> Optional[Tuple[date, date]]:
        """Rate table in force on a date; dates outside every table use the nearest one"""
        if not self.rates:
            return None
        for period in self.rates:
            if period[0] <= on_date <= period[1]:
                return period

        def distance(period: Tuple[date, date]) -> int:
            if on_date < period[0]:
                return (period[0] - on_date).days
            return (on_date - period[1]).days

        return min(self.rates, key=distance)

    def is_known_airport(self, iata_code: str) -> bool:
        return (iata_code or '').upper() in self.airports

    def get_country(self, iata_code: str) -> str:
        """ISO country of an airport, XX for unknown codes"""
        entry = self.airports.get((iata_code or '').upper())
        return entry[0] if entry else TaxConfig.UNKNOWN_COUNTRY

    def get_allowance_city(self, iata_code: str) -> Optional[str]:
        entry = self.airports.get((iata_code or '').upper())
        return entry[1] if entry else None

    def is_domestic(self, iata_code: str) -> bool:
        return self.get_country(iata_code) == TaxConfig.HOME_COUNTRY

    def is_longhaul_airport(self, iata_code: str) -> bool:
        entry = self.airports.get((iata_code or '').upper())
        if entry is None:
            return True
        country, _, longhaul = entry
        return longhaul or country not in TaxConfig.SHORTHAUL_COUNTRIES

    def country_name(self, country_code: str) -> str:
        return self.country_names.get(country_code, country_code)

    def get_country_rate(self, country_code: str, city: Optional[str], on_date: date) -> Optional[CountryRate]:
        """City rate when listed, else the country rate, else None"""
        period = self._period_for(on_date)
        if period is None:
            return None
        table = self.rates[period]
        if city:
            city_rate = table.get((country_code, self._city_key(city)))
            if city_rate is not None:
                return city_rate
        return table.get((country_code, None))

    def get_domestic_rate(self, on_date: date) -> CountryRate:
        rate = self.get_country_rate(TaxConfig.HOME_COUNTRY, None, on_date)
        if rate is not None:
            return rate
        return CountryRate(TaxConfig.HOME_COUNTRY, "Deutschland", None, TaxConfig.DOMESTIC_PARTIAL_RATE,
                           TaxConfig.DOMESTIC_FULL_RATE, on_date, on_date)

    def get_fallback_rate(self, on_date: date) -> CountryRate:
        """Rate for countries missing from the table (Luxembourg rate)"""
        rate = self.get_country_rate(TaxConfig.FALLBACK_COUNTRY, None, on_date)
        if rate is not None:
            return rate
        return CountryRate(TaxConfig.FALLBACK_COUNTRY, "Luxemburg", None, TaxConfig.FALLBACK_PARTIAL_RATE,
                           TaxConfig.FALLBACK_FULL_RATE, on_date, on_date)


class RecordLoader:
    """Turns parser output (camelCase dictionaries) into immutable duty records"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _required(data: Dict[str, Any], key: str) -> Any:
        value = data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MalformedDutyRecord(key, value, "missing required field")
        return value

    @staticmethod
    def _optional_code(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip().upper()
        return text or None

    def load_flight(self, data: Dict[str, Any]) -> Flight:
        if not isinstance(data, dict):
            raise MalformedDutyRecord("flight", data, "expected an object")
        departure_time = str(self._required(data, "departureTime")).strip()
        arrival_time = str(self._required(data, "arrivalTime")).strip()
        parse_hhmm(departure_time, "departureTime")
        parse_hhmm(arrival_time, "arrivalTime")
        block_time = str(data.get("blockTime") or "0:00").strip()
        parse_block_time(block_time, "blockTime")

        return Flight(
            date=parse_date(self._required(data, "date")),
            flight_number=str(data.get("flightNumber") or "").strip().upper(),
            departure=str(self._required(data, "departure")).strip().upper(),
            arrival=str(self._required(data, "arrival")).strip().upper(),
            departure_time=departure_time,
            arrival_time=arrival_time,
            block_time=block_time,
            duty_code=self._optional_code(data.get("dutyCode")),
            aircraft_type=self._optional_code(data.get("aircraftType")),
            country=self._optional_code(data.get("country")),
            is_continuation=bool(data.get("isContinuation", False)),
            continuation_of=self._optional_code(data.get("continuationOf")),
        )

    def load_non_flight_day(self, data: Dict[str, Any]) -> NonFlightDay:
        if not isinstance(data, dict):
            raise MalformedDutyRecord("nonFlightDay", data, "expected an object")
        duty_type = data.get("type", data.get("dutyType"))
        if duty_type is None or not str(duty_type).strip():
            raise MalformedDutyRecord("type", duty_type, "missing required field")
        return NonFlightDay(
            date=parse_date(self._required(data, "date")),
            duty_type=str(duty_type).strip().upper(),
            description=str(data.get("description") or ""),
            country=self._optional_code(data.get("country")),
        )

    def load_reimbursement(self, data: Dict[str, Any]) -> Reimbursement:
        if not isinstance(data, dict):
            raise MalformedDutyRecord("reimbursement", data, "expected an object")
        try:
            year = validate_integer_input(self._required(data, "year"), "year")
            month = validate_integer_input(self._required(data, "month"), "month")
            amount = to_decimal(self._required(data, "amount"), "amount")
        except ValueError as e:
            raise MalformedDutyRecord("reimbursement", data, str(e))
        if not 1 <= month <= 12:
            raise MalformedDutyRecord("month", month, "month out of range")
        return Reimbursement(year=year, month=month, amount=amount)

    def load_records(self, data: Dict[str, Any]) -> Tuple[List[Flight], List[NonFlightDay], List[Reimbursement]]:
        """Load every record kind from one parser payload"""
        flights = [self.load_flight(item) for item in data.get("flights", [])]
        non_flight_days = [self.load_non_flight_day(item) for item in data.get("nonFlightDays", [])]
        reimbursements = [self.load_reimbursement(item) for item in data.get("reimbursements", [])]
        self.logger.info(f"Loaded {len(flights)} flights, {len(non_flight_days)} non-flight days "
                         f"and {len(reimbursements)} reimbursements")
        return flights, non_flight_days, reimbursements

    def load_json(self, path: str) -> Tuple[List[Flight], List[NonFlightDay], List[Reimbursement]]:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise MalformedDutyRecord("document", type(data).__name__, "expected an object at top level")
        return self.load_records(data)


def arrival_date(flight: Flight) -> date:
    """Calendar date on which a flight lands"""
    if is_overnight(flight.departure_time, flight.arrival_time):
        return flight.date + timedelta(days=1)
    return flight.date


def flights_departing(trip: Trip, day: date) -> List[Flight]:
    return [f for f in trip.flights if f.date == day]


def flights_arriving(trip: Trip, day: date) -> List[Flight]:
    return [f for f in trip.flights if arrival_date(f) == day]


def non_flight_days_on(trip: Trip, day: date) -> List[NonFlightDay]:
    return [d for d in trip.non_flight_days if d.date == day]


class FlightPreprocessor:
    """Merges continuation legs, orders records and classifies flights"""

    def __init__(self, reference: ReferenceDataService):
        self.reference = reference
        self.logger = logging.getLogger(__name__)

    def prepare(self, flights: Sequence[Flight]) -> Tuple[List[Flight], List[DataWarning]]:
        """Merge continuation flights with their parent leg and sort chronologically"""
        warnings: List[DataWarning] = []
        merged: List[Optional[Flight]] = list(flights)

        for index, flight in enumerate(flights):
            if not flight.is_continuation:
                continue
            parent_index = self._find_parent(merged, flight)
            if parent_index is None:
                message = f"Continuation flight {flight.flight_number} on {flight.date.isoformat()} has no parent leg"
                self.logger.warning(message)
                warnings.append(DataWarning("orphaned_continuation", message, flight.continuation_of))
                continue

            parent = merged[parent_index]
            block_minutes = (parse_block_time(parent.block_time) + parse_block_time(flight.block_time))
            merged[parent_index] = replace(
                parent,
                arrival=flight.arrival,
                arrival_time=flight.arrival_time,
                block_time=format_minutes(block_minutes),
                country=flight.country or parent.country,
                is_continuation=False,
                continuation_of=None,
            )
            merged[index] = None
            self.logger.debug(f"Merged continuation {flight.flight_number} into leg of {parent.date.isoformat()}")

        result = [f for f in merged if f is not None]
        return self.sort_flights(result), warnings

    @staticmethod
    def _find_parent(flights: List[Optional[Flight]], continuation: Flight) -> Optional[int]:
        parent_date = continuation.date - timedelta(days=1)
        parent_number = continuation.continuation_of or continuation.flight_number
        for index, candidate in enumerate(flights):
            if (candidate is not None and not candidate.is_continuation
                    and candidate.date == parent_date and candidate.flight_number == parent_number):
                return index
        return None

    @staticmethod
    def sort_flights(flights: Iterable[Flight]) -> List[Flight]:
        return sorted(flights, key=lambda f: (f.date, parse_hhmm(f.departure_time, "departure_time")))

    @staticmethod
    def sort_non_flight_days(days: Iterable[NonFlightDay]) -> List[NonFlightDay]:
        # sorted() is stable, input order survives within a date
        return sorted(days, key=lambda d: d.date)

    def departure_country(self, flight: Flight) -> str:
        return self.reference.get_country(flight.departure)

    def arrival_country(self, flight: Flight) -> str:
        country = self.reference.get_country(flight.arrival)
        if country == TaxConfig.UNKNOWN_COUNTRY and flight.country:
            return flight.country
        return country

    def touches_foreign(self, flight: Flight) -> bool:
        return (self.departure_country(flight) != TaxConfig.HOME_COUNTRY
                or self.arrival_country(flight) != TaxConfig.HOME_COUNTRY)

    def is_simulator(self, flight: Flight) -> bool:
        if flight.duty_code == TaxConfig.SIMULATOR_CODE:
            return True
        return (flight.flight_number.upper().startswith(TaxConfig.SIMULATOR_FLIGHT_PREFIX)
                and flight.departure == flight.arrival
                and self.reference.is_domestic(flight.departure)
                and parse_block_time(flight.block_time) == parse_block_time(TaxConfig.SIMULATOR_BLOCK_TIME))

    def is_longhaul(self, flight: Flight) -> bool:
        if flight.aircraft_type:
            aircraft = flight.aircraft_type.strip().upper()
            return any(aircraft.startswith(t) for t in TaxConfig.LONGHAUL_AIRCRAFT_TYPES)
        return (self.reference.is_longhaul_airport(flight.departure)
                or self.reference.is_longhaul_airport(flight.arrival))

    def briefing_minutes(self, flight: Flight, crew_role: str) -> int:
        if self.is_simulator(flight):
            return TaxConfig.SIMULATOR_PRE_BRIEFING_MINUTES
        return TaxConfig.get_briefing_minutes(self.is_longhaul(flight), crew_role)

    def debriefing_minutes(self, flight: Flight) -> int:
        if self.is_simulator(flight):
            return TaxConfig.SIMULATOR_POST_BRIEFING_MINUTES
        return TaxConfig.DEBRIEFING_MINUTES


@dataclass
class DayState:
    """Where the crew member is around one date of a trip"""
    date: date
    away_before: bool
    away_after: bool
    home_touch: bool
    overnight_abroad: bool
    touched_foreign: bool
    location: Optional[str]
    location_country: Optional[str]


class TripDayClassifier:
    """Assigns single/departure/intermediate/arrival roles to trip dates.

    The crew member is away at a midnight when the last leg of the day ended
    abroad, when an overnight leg is airborne, or on an abroad day (FL).
    A date with a midnight away on both sides is wholly abroad.
    """

    def __init__(self, preprocessor: FlightPreprocessor):
        self.preprocessor = preprocessor

    def walk(self, trip: Trip) -> List[DayState]:
        home = TaxConfig.HOME_COUNTRY
        states: List[DayState] = []
        abroad = False
        location: Optional[str] = None
        location_country: Optional[str] = None
        previous_away = False

        for day in trip.dates:
            departing = flights_departing(trip, day)
            arriving = [f for f in flights_arriving(trip, day) if f.date != day]
            records = non_flight_days_on(trip, day)
            abroad_day_only = (not departing and not arriving and bool(records)
                               and all(r.duty_type == TaxConfig.ABROAD_DAY_CODE for r in records))

            if not previous_away:
                location = location_country = None

            # First leg of the day starts abroad without a known outbound leg
            orphan = (bool(departing) and not previous_away
                      and self.preprocessor.departure_country(departing[0]) != home)
            if orphan:
                location = departing[0].departure
                location_country = self.preprocessor.departure_country(departing[0])

            away_before = previous_away or abroad_day_only or orphan
            touched = any(self.preprocessor.touches_foreign(f) for f in departing + arriving)
            home_touch = False

            for flight in departing:
                arrival_country = self.preprocessor.arrival_country(flight)
                departure_country = self.preprocessor.departure_country(flight)
                if arrival_country != home:
                    location, location_country = flight.arrival, arrival_country
                    abroad = True
                else:
                    if departure_country != home:
                        location, location_country = flight.departure, departure_country
                    abroad = False
                    if not is_overnight(flight.departure_time, flight.arrival_time):
                        home_touch = True

            if not departing:
                foreign = [r for r in records if r.country and r.country != home]
                if foreign:
                    if foreign[-1].country != location_country:
                        location, location_country = None, foreign[-1].country
                    abroad = True
                    touched = True
                elif abroad_day_only:
                    if location_country is None:
                        location_country = TaxConfig.UNKNOWN_COUNTRY
                    abroad = True
                elif records and not arriving:
                    abroad = False

            airborne = any(is_overnight(f.departure_time, f.arrival_time) for f in departing)
            away_after = abroad or airborne
            states.append(DayState(
                date=day,
                away_before=away_before,
                away_after=away_after,
                home_touch=home_touch,
                overnight_abroad=abroad and not airborne,
                touched_foreign=touched or away_before or away_after,
                location=location,
                location_country=location_country,
            ))
            previous_away = away_after

        return states

    @staticmethod
    def role_for(state: DayState) -> DayRole:
        if state.away_before and state.away_after:
            # Returned home and left again on the same date
            return DayRole.DEPARTURE_DAY if state.home_touch else DayRole.INTERMEDIATE_DAY
        if state.away_after:
            return DayRole.DEPARTURE_DAY
        if state.away_before:
            return DayRole.ARRIVAL_DAY
        return DayRole.SINGLE_DAY

    def classify(self, trip: Trip) -> Dict[date, DayRole]:
        return {state.date: self.role_for(state) for state in self.walk(trip)}

    def starts_abroad(self, trip: Trip) -> bool:
        """First record of the trip is a departure from abroad or an abroad day"""
        first = trip.dates[0]
        departing = flights_departing(trip, first)
        if departing:
            return self.preprocessor.departure_country(departing[0]) != TaxConfig.HOME_COUNTRY
        return any(r.duty_type == TaxConfig.ABROAD_DAY_CODE and r.country != TaxConfig.HOME_COUNTRY
                   for r in non_flight_days_on(trip, first))


class TripBuilder:
    """Groups duty records into trips of consecutive dates"""

    def __init__(self, classifier: TripDayClassifier):
        self.classifier = classifier
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def activity_dates(flights: Sequence[Flight], non_flight_days: Sequence[NonFlightDay]) -> List[date]:
        dates: Set[date] = set()
        for flight in flights:
            dates.add(flight.date)
            dates.add(arrival_date(flight))
        dates.update(d.date for d in non_flight_days)
        return sorted(dates)

    @staticmethod
    def _make_trip(dates: Sequence[date], flights: Sequence[Flight],
                   non_flight_days: Sequence[NonFlightDay]) -> Trip:
        date_set = set(dates)
        return Trip(
            dates=tuple(dates),
            flights=[f for f in flights if f.date in date_set],
            non_flight_days=[d for d in non_flight_days if d.date in date_set],
        )

    def build(self, flights: Sequence[Flight],
              non_flight_days: Sequence[NonFlightDay]) -> Tuple[List[Trip], List[DataWarning]]:
        warnings: List[DataWarning] = []
        runs: List[List[date]] = []
        for day in self.activity_dates(flights, non_flight_days):
            if runs and day - runs[-1][-1] == timedelta(days=1):
                runs[-1].append(day)
            else:
                runs.append([day])

        trips: List[Trip] = []
        for run in runs:
            trip = self._make_trip(run, flights, non_flight_days)
            if trips and self.classifier.walk(trips[-1])[-1].away_after:
                previous = trips[-1]
                gap_days = (run[0] - previous.end_date).days - 1
                if gap_days <= TaxConfig.MAX_LAYOVER_GAP_DAYS and self.classifier.starts_abroad(trip):
                    gap = [previous.end_date + timedelta(days=i) for i in range(1, gap_days + 1)]
                    self.logger.debug(f"Layover {previous.end_date.isoformat()} - {run[0].isoformat()} "
                                      f"bridges {gap_days} days without records")
                    trips[-1] = self._make_trip(list(previous.dates) + gap + run, flights, non_flight_days)
                    continue
                message = (f"Trip abroad from {previous.start_date.isoformat()} has no return "
                           f"before {run[0].isoformat()}")
                self.logger.warning(message)
                warnings.append(DataWarning("incomplete_trip", message))
            trips.append(trip)

        self.logger.debug(f"Built {len(trips)} trips from {len(runs)} runs of duty dates")
        return trips, warnings


class AbsenceCalculator:
    """Absence from home in minutes per calendar date of a trip"""

    def __init__(self, reference: ReferenceDataService, classifier: TripDayClassifier):
        self.reference = reference
        self.classifier = classifier
        self.preprocessor = classifier.preprocessor
        self.logger = logging.getLogger(__name__)

    def calculate(self, trip: Trip, settings: Settings) -> List[DayAbsence]:
        commute = settings.commute_minutes
        absences: List[DayAbsence] = []

        for state in self.classifier.walk(trip):
            day = state.date
            role = self.classifier.role_for(state)
            departing = flights_departing(trip, day)
            arriving = flights_arriving(trip, day)
            records = non_flight_days_on(trip, day)

            if role is DayRole.INTERMEDIATE_DAY:
                minutes = TaxConfig.MINUTES_PER_DAY
            elif role is DayRole.DEPARTURE_DAY:
                minutes = self._departure_day_minutes(departing, commute, settings)
            elif role is DayRole.ARRIVAL_DAY:
                minutes = self._arrival_day_minutes(arriving, commute)
            else:
                minutes = self._single_day_minutes(departing, arriving, records, commute, settings)

            country = state.location_country if state.touched_foreign else None
            location = state.location if country else None

            absences.append(DayAbsence(
                date=day,
                role=role,
                minutes=minutes,
                country_code=country or TaxConfig.HOME_COUNTRY,
                city=self.reference.get_allowance_city(location) if location else None,
                location=location,
                is_domestic=country is None or country == TaxConfig.HOME_COUNTRY,
                is_simulator=any(self.preprocessor.is_simulator(f) for f in departing),
                has_flight_activity=bool(departing or arriving),
                overnight_abroad=state.overnight_abroad,
                items=list(departing) + list(records),
            ))
            self.logger.debug(f"{day.isoformat()}: {role.value}, {minutes} min, {country or 'domestic'}")

        return absences

    def _departure_day_minutes(self, departing: List[Flight], commute: int, settings: Settings) -> int:
        if not departing:
            return TaxConfig.MINUTES_PER_DAY
        first = departing[0]
        until_midnight = TaxConfig.MINUTES_PER_DAY - parse_hhmm(first.departure_time, "departure_time")
        minutes = commute + self.preprocessor.briefing_minutes(first, settings.crew_role) + until_midnight
        return min(TaxConfig.MINUTES_PER_DAY, minutes)

    def _arrival_day_minutes(self, arriving: List[Flight], commute: int) -> int:
        if not arriving:
            return 0
        last = max(arriving, key=lambda f: parse_hhmm(f.arrival_time, "arrival_time"))
        minutes = parse_hhmm(last.arrival_time, "arrival_time") + self.preprocessor.debriefing_minutes(last) + commute
        return min(TaxConfig.MINUTES_PER_DAY, minutes)

    def _single_day_minutes(self, departing: List[Flight], arriving: List[Flight],
                            records: List[NonFlightDay], commute: int, settings: Settings) -> int:
        if departing:
            first, last = departing[0], departing[-1]
            start = parse_hhmm(first.departure_time, "departure_time")
            end = parse_hhmm(last.arrival_time, "arrival_time")
            if is_overnight(last.departure_time, last.arrival_time):
                end += TaxConfig.MINUTES_PER_DAY
            block = sum(parse_block_time(f.block_time) for f in departing)
            duty = max(end - start, block)
            if any(self.preprocessor.is_simulator(f) for f in departing):
                pre = TaxConfig.SIMULATOR_PRE_BRIEFING_MINUTES
                post = TaxConfig.SIMULATOR_POST_BRIEFING_MINUTES
            else:
                pre = self.preprocessor.briefing_minutes(first, settings.crew_role)
                post = TaxConfig.DEBRIEFING_MINUTES
            return min(TaxConfig.MINUTES_PER_DAY, commute + pre + duty + post + commute)
        if arriving:
            return self._arrival_day_minutes(arriving, commute)
        if records and all(r.duty_type == TaxConfig.ABROAD_DAY_CODE for r in records):
            return TaxConfig.MINUTES_PER_DAY
        return 0


class RateResolver:
    """Picks the per-diem rate for one calendar date"""

    def __init__(self, reference: ReferenceDataService):
        self.reference = reference
        self.logger = logging.getLogger(__name__)

    def resolve(self, absence: DayAbsence, settings: Settings) -> Optional[DailyAllowanceInfo]:
        """First qualifying duty item of the date wins.

        Flights come first (ordered by departure time), then non-flight
        records in input order.
        """
        trip_rate: Optional[DailyAllowanceInfo] = None
        evaluated = False
        for item in absence.items or [None]:
            if (isinstance(item, NonFlightDay)
                    and item.duty_type in TaxConfig.ALLOWANCE_GROUND_DUTY_CODES
                    and item.duty_type in settings.workday_duty_codes):
                return self._domestic(absence, source=item.duty_type)
            if not evaluated:
                trip_rate = self._trip_rate(absence)
                evaluated = True
            if trip_rate is not None:
                return trip_rate
        return None

    def _domestic(self, absence: DayAbsence, source: str) -> DailyAllowanceInfo:
        rate = self.reference.get_domestic_rate(absence.date)
        return DailyAllowanceInfo(
            date=absence.date,
            rate=rate.partial_rate,
            rate_type=RateType.PARTIAL,
            role=absence.role,
            country_code=TaxConfig.HOME_COUNTRY,
            country_name=rate.country_name,
            absence_minutes=absence.minutes,
            source=source,
        )

    def _trip_rate(self, absence: DayAbsence) -> Optional[DailyAllowanceInfo]:
        over_threshold = absence.minutes > TaxConfig.PARTIAL_RATE_THRESHOLD_MINUTES

        if absence.is_domestic:
            if not over_threshold:
                return None
            return self._domestic(absence, source="simulator" if absence.is_simulator else "flight")

        if absence.country_code == TaxConfig.UNKNOWN_COUNTRY:
            self.logger.debug(f"{absence.date.isoformat()}: unknown location, no allowance")
            return None

        if absence.role is DayRole.INTERMEDIATE_DAY:
            rate_type = RateType.FULL
        elif absence.role is DayRole.DEPARTURE_DAY or over_threshold:
            rate_type = RateType.PARTIAL
        else:
            return None

        country_rate = self.reference.get_country_rate(absence.country_code, absence.city, absence.date)
        is_fallback = country_rate is None
        if country_rate is None:
            country_rate = self.reference.get_fallback_rate(absence.date)
            self.logger.debug(f"No per-diem rate for {absence.country_code}, using fallback rate")

        return DailyAllowanceInfo(
            date=absence.date,
            rate=country_rate.rate_for(rate_type),
            rate_type=rate_type,
            role=absence.role,
            country_code=absence.country_code,
            country_name=self.reference.country_name(absence.country_code),
            city=country_rate.city if not is_fallback else None,
            location=absence.location,
            absence_minutes=absence.minutes,
            source="flight" if absence.has_flight_activity else "abroad_day",
            is_fallback_rate=is_fallback,
        )


class MealAllowanceAggregator:
    """Sums daily allowances per country and offsets employer reimbursements"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def aggregate(self, allowances: Iterable[DailyAllowanceInfo],
                  reimbursements: Iterable[Reimbursement] = ()) -> MealAllowances:
        groups: "OrderedDict[Tuple[str, Optional[str]], CountryAllowance]" = OrderedDict()
        for info in sorted(allowances, key=lambda a: a.date):
            key = (info.country_code, info.city)
            entry = groups.get(key)
            if entry is None:
                entry = CountryAllowance(info.country_code, info.country_name, info.city)
                groups[key] = entry
            if info.rate_type is RateType.FULL:
                entry.full_days += 1
                entry.full_total += info.rate
            else:
                entry.partial_days += 1
                entry.partial_total += info.rate

        total = sum((entry.total for entry in groups.values()), ZERO)
        reimbursed = sum((r.amount for r in reimbursements), ZERO)
        difference = total - reimbursed
        excess = ZERO
        if difference < 0:
            excess = -difference
            difference = ZERO
            self.logger.warning(f"Employer reimbursement {reimbursed} exceeds meal allowances {total} by {excess}")

        return MealAllowances(
            by_country=list(groups.values()),
            total_allowances=total,
            employer_reimbursement=reimbursed,
            deductible_difference=difference,
            excess_reimbursement=excess,
        )


class TravelCostCalculator:
    """Commute distance deduction (Entfernungspauschale)"""

    @staticmethod
    def commute_dates(flights: Iterable[Flight], non_flight_days: Iterable[NonFlightDay],
                      settings: Settings) -> List[date]:
        """Workdays that count as one commute trip each.

        Flight days always count. Ground duty days count only when
        count_ground_duty_as_trip is set, and never for FL or RE.
        """
        dates = {f.date for f in flights}
        if settings.count_ground_duty_as_trip:
            dates.update(
                d.date for d in non_flight_days
                if d.duty_type in settings.workday_duty_codes
                and d.duty_type in TaxConfig.GROUND_DUTY_CODES
                and d.duty_type not in TaxConfig.NON_COMMUTE_CODES
            )
        return sorted(dates)

    @staticmethod
    def split_deduction(year: int, distance: Decimal) -> Tuple[Decimal, Decimal]:
        """Deduction for one trip: (first 20 km, every further km)"""
        first_rate, above_rate = TaxConfig.get_distance_rates(year)
        first = min(distance, TaxConfig.DISTANCE_TIER_KM) * first_rate
        above = max(distance - TaxConfig.DISTANCE_TIER_KM, ZERO) * above_rate
        return first, above

    def trip_deduction(self, year: int, distance: Decimal) -> Decimal:
        first, above = self.split_deduction(year, distance)
        return first + above

    def calculate(self, trip_dates: Sequence[date], settings: Settings) -> TravelCosts:
        distance = settings.effective_distance_km
        first_total = ZERO
        above_total = ZERO
        for day in trip_dates:
            first, above = self.split_deduction(day.year, distance)
            first_total += first
            above_total += above

        rate_year = min((d.year for d in trip_dates), default=TaxConfig.DEFAULT_TAX_YEAR)
        rate_first, rate_above = TaxConfig.get_distance_rates(rate_year)
        return TravelCosts(
            trips=len(trip_dates),
            distance_km=distance,
            total_km=distance * len(trip_dates),
            deduction_first_20km=first_total,
            deduction_above_20km=above_total,
            total=first_total + above_total,
            rate_first_20km=rate_first,
            rate_above_20km=rate_above,
        )


class CleaningCostCalculator:
    """Uniform cleaning allowance per workday"""

    @staticmethod
    def workday_dates(flights: Iterable[Flight], non_flight_days: Iterable[NonFlightDay],
                      settings: Settings) -> List[date]:
        dates = {f.date for f in flights}
        dates.update(d.date for d in non_flight_days if d.duty_type in settings.workday_duty_codes)
        return sorted(dates)

    def calculate(self, workdays: Sequence[date], settings: Settings) -> CleaningCosts:
        return CleaningCosts(
            work_days=len(workdays),
            rate_per_day=settings.cleaning_cost_per_day,
            total=settings.cleaning_cost_per_day * len(workdays),
        )


class MonthlyAggregator:
    """Per-month breakdown of every deduction category"""

    def __init__(self, travel_calculator: TravelCostCalculator):
        self.travel_calculator = travel_calculator

    def aggregate(self, flights: Iterable[Flight], allowances: Iterable[DailyAllowanceInfo],
                  workdays: Iterable[date], trip_dates: Iterable[date], hotel_nights: Iterable[HotelNight],
                  reimbursements: Iterable[Reimbursement], settings: Settings) -> List[MonthlyBreakdown]:
        months: Dict[Tuple[int, int], MonthlyBreakdown] = {}

        def month(year: int, number: int) -> MonthlyBreakdown:
            key = (year, number)
            if key not in months:
                months[key] = MonthlyBreakdown(year, number, TaxConfig.MONTH_NAMES[number - 1])
            return months[key]

        for flight in flights:
            month(flight.date.year, flight.date.month).flight_minutes += parse_block_time(flight.block_time)

        for info in allowances:
            month(info.date.year, info.date.month).meal_allowance += info.rate

        for day in workdays:
            entry = month(day.year, day.month)
            entry.work_days += 1
            entry.cleaning_costs += settings.cleaning_cost_per_day

        distance = settings.effective_distance_km
        for day in trip_dates:
            entry = month(day.year, day.month)
            entry.trips += 1
            entry.distance_deduction += self.travel_calculator.trip_deduction(day.year, distance)

        for night in hotel_nights:
            entry = month(night.date.year, night.date.month)
            entry.hotel_nights += 1
            entry.tips += settings.tip_per_night

        for reimbursement in reimbursements:
            month(reimbursement.year, reimbursement.month).employer_reimbursement += reimbursement.amount

        return [months[key] for key in sorted(months)]


class TaxCalculatorService:
    """Main service for calculating the annual deduction report"""

    def __init__(self, reference: ReferenceDataService, cache_enabled: bool = True, cache_size: int = 32):
        self.reference = reference
        self.preprocessor = FlightPreprocessor(reference)
        self.classifier = TripDayClassifier(self.preprocessor)
        self.trip_builder = TripBuilder(self.classifier)
        self.absence_calculator = AbsenceCalculator(reference, self.classifier)
        self.rate_resolver = RateResolver(reference)
        self.meal_aggregator = MealAllowanceAggregator()
        self.travel_calculator = TravelCostCalculator()
        self.cleaning_calculator = CleaningCostCalculator()
        self.monthly_aggregator = MonthlyAggregator(self.travel_calculator)
        self.cache = CalculationCache(cache_size) if cache_enabled else None
        self.logger = logging.getLogger(__name__)

    def validate_records(self, flights: Sequence[Flight], non_flight_days: Sequence[NonFlightDay]) -> None:
        """Reject malformed records before any computation"""
        for flight in flights:
            if not isinstance(flight, Flight):
                raise MalformedDutyRecord("flight", flight, "not a Flight record")
            if not isinstance(flight.date, date):
                raise MalformedDutyRecord("date", flight.date, "expected a date")
            parse_hhmm(flight.departure_time, "departure_time")
            parse_hhmm(flight.arrival_time, "arrival_time")
            parse_block_time(flight.block_time, "block_time")
            if not flight.departure or not flight.arrival:
                raise MalformedDutyRecord("airport", flight, "missing departure or arrival")
        for day in non_flight_days:
            if not isinstance(day, NonFlightDay):
                raise MalformedDutyRecord("nonFlightDay", day, "not a NonFlightDay record")
            if not isinstance(day.date, date):
                raise MalformedDutyRecord("date", day.date, "expected a date")
            if not day.duty_type:
                raise MalformedDutyRecord("duty_type", day.duty_type, "missing duty type")

    def _unknown_airport_warnings(self, flights: Sequence[Flight]) -> List[DataWarning]:
        unknown: Dict[str, List[str]] = {}
        for flight in flights:
            for code in (flight.departure, flight.arrival):
                if not self.reference.is_known_airport(code):
                    unknown.setdefault(code, []).append(flight.date.isoformat())

        warnings = []
        for code, dates in sorted(unknown.items()):
            message = f"Unknown airport {code}, no country-specific allowance"
            self.logger.warning(f"{message} ({len(dates)} flights)")
            warnings.append(DataWarning("unknown_airport", message, ", ".join(sorted(set(dates)))))
        return warnings

    @timed
    def calculate(self, flights: Sequence[Flight], non_flight_days: Sequence[NonFlightDay],
                  settings: Settings, reimbursements: Sequence[Reimbursement] = ()) -> TaxCalculation:
        """
        Calculate the complete deduction report

        Returns:
            TaxCalculation with meal allowances, travel costs, cleaning costs,
            tips, monthly breakdown and the per-date allowance map
        """
        self.validate_records(flights, non_flight_days)

        cache_key = (tuple(flights), tuple(non_flight_days), settings, tuple(reimbursements))
        if self.cache is not None:
            cached_result = self.cache.get(cache_key)
            if cached_result is not None:
                self.logger.debug("Returning cached calculation")
                return cached_result

        warnings: List[DataWarning] = []
        prepared, prepare_warnings = self.preprocessor.prepare(flights)
        warnings.extend(prepare_warnings)
        days = self.preprocessor.sort_non_flight_days(non_flight_days)
        warnings.extend(self._unknown_airport_warnings(prepared))

        trips, trip_warnings = self.trip_builder.build(prepared, days)
        warnings.extend(trip_warnings)

        absences: List[DayAbsence] = []
        for trip in trips:
            absences.extend(self.absence_calculator.calculate(trip, settings))

        daily: Dict[date, DailyAllowanceInfo] = {}
        fallback_dates: Dict[str, List[str]] = {}
        for absence in absences:
            info = self.rate_resolver.resolve(absence, settings)
            if info is None or absence.date in daily:
                continue
            daily[absence.date] = info
            if info.is_fallback_rate:
                fallback_dates.setdefault(info.country_code, []).append(absence.date.isoformat())

        for country, dates in sorted(fallback_dates.items()):
            message = f"No per-diem rate for {country}, fallback rate applied"
            self.logger.warning(f"{message} on {len(dates)} days")
            warnings.append(DataWarning("fallback_rate", message, ", ".join(dates)))

        hotel_nights = [
            HotelNight(a.date, a.location, a.country_code)
            for a in absences if a.overnight_abroad and not a.is_domestic
        ]
        workdays = self.cleaning_calculator.workday_dates(prepared, days, settings)
        trip_dates = self.travel_calculator.commute_dates(prepared, days, settings)

        meal = self.meal_aggregator.aggregate(daily.values(), reimbursements)
        travel_costs = self.travel_calculator.calculate(trip_dates, settings)
        cleaning_costs = self.cleaning_calculator.calculate(workdays, settings)
        travel_expenses = TravelExpenses(
            hotel_nights=len(hotel_nights),
            tip_rate=settings.tip_per_night,
            total=settings.tip_per_night * len(hotel_nights),
        )
        monthly = self.monthly_aggregator.aggregate(
            prepared, daily.values(), workdays, trip_dates, hotel_nights, reimbursements, settings
        )

        grand_total = (meal.deductible_difference + travel_costs.total
                       + cleaning_costs.total + travel_expenses.total)

        result = TaxCalculation(
            meal_allowances=meal,
            travel_costs=travel_costs,
            cleaning_costs=cleaning_costs,
            travel_expenses=travel_expenses,
            grand_total=grand_total,
            monthly=monthly,
            daily_allowances={day.isoformat(): daily[day] for day in sorted(daily)},
            hotel_nights=hotel_nights,
            warnings=warnings,
        )

        self.logger.info(
            f"Calculated {len(trips)} trips, {len(daily)} allowance days, "
            f"{travel_costs.trips} commute trips, {cleaning_costs.work_days} workdays, "
            f"{len(hotel_nights)} hotel nights: total {grand_total}"
        )

        if self.cache is not None:
            self.cache.set(cache_key, result)
        return result
