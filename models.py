"""
Data models for the Crew Tax Deduction Calculator
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from config import TaxConfig


class DayRole(Enum):
    """Per-diem role of a calendar date within a trip"""
    SINGLE_DAY = "single-day"
    DEPARTURE_DAY = "departure-day"
    INTERMEDIATE_DAY = "intermediate-day"
    ARRIVAL_DAY = "arrival-day"


class RateType(Enum):
    """Per-diem tier"""
    PARTIAL = "partial"
    FULL = "full"


@dataclass(frozen=True)
class Flight:
    """A single flight leg as delivered by the document parser.

    Times are local clock times (HH:MM); an arrival earlier than the
    departure means the flight lands on the next calendar date.
    """
    date: date
    flight_number: str
    departure: str
    arrival: str
    departure_time: str
    arrival_time: str
    block_time: str = "0:00"
    duty_code: Optional[str] = None
    aircraft_type: Optional[str] = None
    country: Optional[str] = None
    is_continuation: bool = False
    continuation_of: Optional[str] = None


@dataclass(frozen=True)
class NonFlightDay:
    """Ground duty, medical, abroad day or other non-flying duty"""
    date: date
    duty_type: str
    description: str = ""
    country: Optional[str] = None


DutyItem = Union[Flight, NonFlightDay]


@dataclass(frozen=True)
class Reimbursement:
    """Tax-free meal allowance paid by the employer for one month"""
    year: int
    month: int
    amount: Decimal


@dataclass(frozen=True)
class Settings:
    """User settings for a calculation run"""
    distance_to_work_km: Decimal = Decimal("30")
    commute_minutes_override: Optional[int] = None
    cleaning_cost_per_day: Decimal = Decimal("1.60")
    tip_per_night: Decimal = Decimal("3.60")
    workday_duty_codes: FrozenSet[str] = TaxConfig.GROUND_DUTY_CODES | {TaxConfig.ABROAD_DAY_CODE}
    count_ground_duty_as_trip: bool = True
    crew_role: str = "cockpit"

    def __post_init__(self):
        # Settings are part of the calculation cache key
        for name in ("distance_to_work_km", "cleaning_cost_per_day", "tip_per_night"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, Decimal(str(value)))
        object.__setattr__(self, "workday_duty_codes", frozenset(self.workday_duty_codes))
        if self.crew_role not in TaxConfig.CREW_ROLES:
            raise ValueError(f"Unknown crew role: {self.crew_role}")

    @property
    def effective_distance_km(self) -> Decimal:
        """Distance used for deductions; zero or negative distances count as zero"""
        return max(Decimal(self.distance_to_work_km), Decimal("0"))

    @property
    def commute_minutes(self) -> int:
        """One-way travel time to the airport (1 minute per 2 km)"""
        if self.commute_minutes_override is not None and self.commute_minutes_override >= 0:
            return int(self.commute_minutes_override)
        minutes = self.effective_distance_km / 2
        return int(minutes.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CountryRate:
    """Statutory per-diem rates for a country or city"""
    country_code: str
    country_name: str
    city: Optional[str]
    partial_rate: Decimal
    full_rate: Decimal
    valid_from: date
    valid_to: date

    def rate_for(self, rate_type: RateType) -> Decimal:
        return self.full_rate if rate_type is RateType.FULL else self.partial_rate


@dataclass
class Trip:
    """Contiguous run of duty dates with the records that fall on them"""
    dates: Tuple[date, ...]
    flights: List[Flight] = field(default_factory=list)
    non_flight_days: List[NonFlightDay] = field(default_factory=list)

    @property
    def start_date(self) -> date:
        return self.dates[0]

    @property
    def end_date(self) -> date:
        return self.dates[-1]

    @property
    def is_multi_day(self) -> bool:
        return len(self.dates) > 1


@dataclass
class DayAbsence:
    """Absence from home on one calendar date of a trip"""
    date: date
    role: DayRole
    minutes: int
    country_code: str
    city: Optional[str] = None
    location: Optional[str] = None
    is_domestic: bool = True
    is_simulator: bool = False
    has_flight_activity: bool = False
    overnight_abroad: bool = False
    items: List[DutyItem] = field(default_factory=list)


@dataclass(frozen=True)
class DailyAllowanceInfo:
    """Meal allowance granted for one calendar date"""
    date: date
    rate: Decimal
    rate_type: RateType
    role: DayRole
    country_code: str
    country_name: str
    city: Optional[str] = None
    location: Optional[str] = None
    absence_minutes: int = 0
    source: str = "flight"
    is_fallback_rate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "rate": self.rate,
            "rateType": self.rate_type.value,
            "role": self.role.value,
            "country": self.country_code,
            "countryName": self.country_name,
            "city": self.city,
            "location": self.location,
            "absenceMinutes": self.absence_minutes,
            "source": self.source,
            "isFallbackRate": self.is_fallback_rate,
        }


@dataclass
class CountryAllowance:
    """Per-country subtotal of partial and full allowance days"""
    country_code: str
    country_name: str
    city: Optional[str] = None
    partial_days: int = 0
    partial_total: Decimal = Decimal("0")
    full_days: int = 0
    full_total: Decimal = Decimal("0")

    @property
    def display_name(self) -> str:
        return f"{self.country_name} - {self.city}" if self.city else self.country_name

    @property
    def days(self) -> int:
        return self.partial_days + self.full_days

    @property
    def total(self) -> Decimal:
        return self.partial_total + self.full_total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.display_name,
            "countryCode": self.country_code,
            "city": self.city,
            "days": self.days,
            "partialDays": self.partial_days,
            "partialTotal": self.partial_total,
            "fullDays": self.full_days,
            "fullTotal": self.full_total,
            "total": self.total,
        }


@dataclass
class MealAllowances:
    """Verpflegungsmehraufwand"""
    by_country: List[CountryAllowance]
    total_allowances: Decimal
    employer_reimbursement: Decimal
    deductible_difference: Decimal
    excess_reimbursement: Decimal = Decimal("0")


@dataclass
class TravelCosts:
    """Entfernungspauschale"""
    trips: int
    distance_km: Decimal
    total_km: Decimal
    deduction_first_20km: Decimal
    deduction_above_20km: Decimal
    total: Decimal
    rate_first_20km: Decimal
    rate_above_20km: Decimal


@dataclass
class CleaningCosts:
    """Reinigungskosten"""
    work_days: int
    rate_per_day: Decimal
    total: Decimal


@dataclass
class TravelExpenses:
    """Reisenebenkosten (tips per hotel night)"""
    hotel_nights: int
    tip_rate: Decimal
    total: Decimal


@dataclass(frozen=True)
class HotelNight:
    """Layover night abroad"""
    date: date
    location: Optional[str]
    country_code: str


@dataclass
class MonthlyBreakdown:
    """Monthly totals of every deduction category"""
    year: int
    month: int
    month_name: str
    flight_minutes: int = 0
    work_days: int = 0
    trips: int = 0
    distance_deduction: Decimal = Decimal("0")
    meal_allowance: Decimal = Decimal("0")
    employer_reimbursement: Decimal = Decimal("0")
    tips: Decimal = Decimal("0")
    cleaning_costs: Decimal = Decimal("0")
    hotel_nights: int = 0

    @property
    def flight_hours(self) -> Decimal:
        return (Decimal(self.flight_minutes) / Decimal(60)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def meal_difference(self) -> Decimal:
        """Meal allowance minus reimbursement, not clamped at zero.

        Summed over all months this equals the annual deductible difference
        minus any excess reimbursement.
        """
        return self.meal_allowance - self.employer_reimbursement

    def to_dict(self) -> Dict[str, Any]:
        return {
            "month": self.month,
            "year": self.year,
            "monthName": self.month_name,
            "flightHours": self.flight_hours,
            "workDays": self.work_days,
            "trips": self.trips,
            "distanceDeduction": self.distance_deduction,
            "mealAllowance": self.meal_allowance,
            "employerReimbursement": self.employer_reimbursement,
            "mealDifference": self.meal_difference,
            "tips": self.tips,
            "cleaningCosts": self.cleaning_costs,
            "hotelNights": self.hotel_nights,
        }


@dataclass(frozen=True)
class DataWarning:
    """Data quality issue found during a calculation"""
    type: str
    message: str
    details: Optional[str] = None


@dataclass
class TaxCalculation:
    """Complete deduction report (Endabrechnung)"""
    meal_allowances: MealAllowances
    travel_costs: TravelCosts
    cleaning_costs: CleaningCosts
    travel_expenses: TravelExpenses
    grand_total: Decimal
    monthly: List[MonthlyBreakdown] = field(default_factory=list)
    daily_allowances: Dict[str, DailyAllowanceInfo] = field(default_factory=dict)
    hotel_nights: List[HotelNight] = field(default_factory=list)
    warnings: List[DataWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Render the report with the field names export collaborators rely on"""
        meal = self.meal_allowances
        travel = self.travel_costs
        return {
            "mealAllowances": {
                "byCountry": [entry.to_dict() for entry in meal.by_country],
                "totalAllowances": meal.total_allowances,
                "employerReimbursement": meal.employer_reimbursement,
                "deductibleDifference": meal.deductible_difference,
                "excessReimbursement": meal.excess_reimbursement,
            },
            "travelCosts": {
                "trips": travel.trips,
                "distanceKm": travel.distance_km,
                "totalKm": travel.total_km,
                "deductionFirst20km": travel.deduction_first_20km,
                "deductionAbove20km": travel.deduction_above_20km,
                "total": travel.total,
                "rateFirst20km": travel.rate_first_20km,
                "rateAbove20km": travel.rate_above_20km,
            },
            "cleaningCosts": {
                "workDays": self.cleaning_costs.work_days,
                "ratePerDay": self.cleaning_costs.rate_per_day,
                "total": self.cleaning_costs.total,
            },
            "travelExpenses": {
                "hotelNights": self.travel_expenses.hotel_nights,
                "tipRate": self.travel_expenses.tip_rate,
                "total": self.travel_expenses.total,
            },
            "grandTotal": self.grand_total,
            "monthly": [month.to_dict() for month in self.monthly],
            "dailyAllowances": {key: info.to_dict() for key, info in self.daily_allowances.items()},
            "warnings": [
                {"type": w.type, "message": w.message, "details": w.details} for w in self.warnings
            ],
        }


class MalformedDutyRecord(ValueError):
    """Exception raised when a duty record cannot be interpreted"""
    def __init__(self, field_name: str, value: Any, reason: str = "invalid value"):
        self.field_name = field_name
        self.value = value
        super().__init__(f"Malformed duty record field '{field_name}': {value!r} ({reason})")


class ReferenceDataError(IOError):
    """Exception raised when a reference table cannot be loaded"""
