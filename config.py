"""
Configuration module for the Crew Tax Deduction Calculator
Contains statutory rates, briefing times, duty codes and constants
"""
from decimal import Decimal
from typing import Tuple


class TaxConfig:
    """Configuration class containing all tax-related constants and data"""

    HOME_COUNTRY = "DE"
    UNKNOWN_COUNTRY = "XX"

    # Briefing and de-briefing times in minutes
    BRIEFING_LONGHAUL_MINUTES = 110
    BRIEFING_SHORTHAUL_COCKPIT_MINUTES = 80
    BRIEFING_SHORTHAUL_CABIN_MINUTES = 85
    SIMULATOR_PRE_BRIEFING_MINUTES = 60
    SIMULATOR_POST_BRIEFING_MINUTES = 60
    DEBRIEFING_MINUTES = 30

    # Meal allowance thresholds
    PARTIAL_RATE_THRESHOLD_MINUTES = 480
    MINUTES_PER_DAY = 24 * 60
    # Days without records between two duty dates abroad that still count as a layover
    MAX_LAYOVER_GAP_DAYS = 14

    # Fallback rates when the reference table has no row
    DOMESTIC_PARTIAL_RATE = Decimal("14")
    DOMESTIC_FULL_RATE = Decimal("28")
    FALLBACK_COUNTRY = "LU"  # BMF: countries not listed use the Luxembourg rates
    FALLBACK_PARTIAL_RATE = Decimal("42")
    FALLBACK_FULL_RATE = Decimal("63")

    # Commute distance tiers: (from_year, rate_first_20km, rate_above_20km)
    DISTANCE_TIER_KM = Decimal("20")
    DISTANCE_RATES = [
        (2022, Decimal("0.30"), Decimal("0.38")),
        (2021, Decimal("0.30"), Decimal("0.35")),
        (0, Decimal("0.30"), Decimal("0.30")),
    ]

    # Duty codes and their meanings
    DUTY_CODES = {
        "A": "Fahrt zur Arbeit",
        "E": "Fahrt von Arbeit",
        "ME": "Medizinische Untersuchung",
        "FL": "Auslandstag",
        "EM": "Emergency Schulung",
        "RE": "Reserve",
        "RB": "Rufbereitschaft",
        "DP": "Dispatch",
        "DT": "Duty Time",
        "SI": "Simulator",
        "TK": "Training Kurzschulung",
        "SB": "Standby",
    }

    ABROAD_DAY_CODE = "FL"
    SIMULATOR_CODE = "SI"
    GROUND_DUTY_CODES = frozenset({"ME", "EM", "RE", "RB", "DP", "DT", "SI", "TK", "SB"})
    # Ground duty that earns the domestic partial rate regardless of absence
    ALLOWANCE_GROUND_DUTY_CODES = ("ME", "SB", "EM")
    # Ground duty that never counts as a commute trip
    NON_COMMUTE_CODES = frozenset({"FL", "RE"})

    LONGHAUL_AIRCRAFT_TYPES = ("A330", "A340", "A350", "A380", "B747", "B777", "B787")

    SHORTHAUL_COUNTRIES = frozenset({
        "DE", "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR", "GR", "HU",
        "IE", "IT", "LV", "LT", "LU", "MT", "NL", "PL", "PT", "RO", "SK", "SI", "ES",
        "SE", "GB", "CH", "NO", "IS", "LI", "AL", "BA", "XK", "MD", "ME", "MK", "RS",
        "UA", "BY", "TR", "IL", "MA", "DZ", "TN", "EG", "LY", "RU",
    })

    SIMULATOR_FLIGHT_PREFIX = "LH9"
    SIMULATOR_BLOCK_TIME = "4:00"

    CREW_ROLES = ("cockpit", "cabin")

    MONTH_NAMES = [
        "Januar", "Februar", "März", "April", "Mai", "Juni",
        "Juli", "August", "September", "Oktober", "November", "Dezember",
    ]

    DEFAULT_TAX_YEAR = 2025

    @classmethod
    def get_distance_rates(cls, year: int) -> Tuple[Decimal, Decimal]:
        """Return (rate for the first 20 km, rate for every further km) for a tax year"""
        for from_year, first_rate, above_rate in cls.DISTANCE_RATES:
            if year >= from_year:
                return first_rate, above_rate
        return cls.DISTANCE_RATES[-1][1], cls.DISTANCE_RATES[-1][2]

    @classmethod
    def get_briefing_minutes(cls, longhaul: bool, crew_role: str) -> int:
        """Briefing before departure for a non-simulator flight"""
        if longhaul:
            return cls.BRIEFING_LONGHAUL_MINUTES
        if crew_role == "cabin":
            return cls.BRIEFING_SHORTHAUL_CABIN_MINUTES
        return cls.BRIEFING_SHORTHAUL_COCKPIT_MINUTES
