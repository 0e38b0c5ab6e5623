"""
Utility functions for the Crew Tax Deduction Calculator
"""
import os
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from models import MalformedDutyRecord


def resource_path(relative_path: str) -> str:
    """Get absolute path to a resource shipped next to the modules"""
    base_path = os.path.dirname(os.path.abspath(__file__))
    return os.path.join(base_path, relative_path)


def parse_hhmm(value: str, field_name: str = "time") -> int:
    """
    Convert a clock time "HH:MM" to minutes after midnight

    Args:
        value: Clock time string
        field_name: Name of the field for error messages

    Returns:
        Minutes after midnight (0-1439)

    Raises:
        MalformedDutyRecord: If the value is not a valid clock time
    """
    if not isinstance(value, str) or ":" not in value:
        raise MalformedDutyRecord(field_name, value, "expected HH:MM")
    hours, _, minutes = value.strip().partition(":")
    try:
        hours_int = int(hours)
        minutes_int = int(minutes)
    except ValueError:
        raise MalformedDutyRecord(field_name, value, "expected HH:MM")
    if not (0 <= hours_int <= 23 and 0 <= minutes_int <= 59):
        raise MalformedDutyRecord(field_name, value, "clock time out of range")
    return hours_int * 60 + minutes_int


def parse_block_time(value: Optional[str], field_name: str = "block_time") -> int:
    """Convert a block time "H:MM" (hours may exceed 23) to minutes"""
    if value is None or value == "":
        return 0
    if not isinstance(value, str) or ":" not in value:
        raise MalformedDutyRecord(field_name, value, "expected H:MM")
    hours, _, minutes = value.strip().partition(":")
    try:
        hours_int = int(hours)
        minutes_int = int(minutes)
    except ValueError:
        raise MalformedDutyRecord(field_name, value, "expected H:MM")
    if hours_int < 0 or not 0 <= minutes_int <= 59:
        raise MalformedDutyRecord(field_name, value, "block time out of range")
    return hours_int * 60 + minutes_int


def is_overnight(departure_time: str, arrival_time: str) -> bool:
    """A flight lands on the next calendar date when it arrives before it departs"""
    return parse_hhmm(arrival_time, "arrival_time") < parse_hhmm(departure_time, "departure_time")


def parse_date(value: Any, field_name: str = "date") -> date:
    """Accept a date, a datetime or an ISO formatted string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise MalformedDutyRecord(field_name, value, "expected YYYY-MM-DD")


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert user input to Decimal, accepting a comma as decimal separator

    Raises:
        ValueError: If value is not a valid number
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        cleaned_value = str(value).strip().replace(',', '.')
        return Decimal(cleaned_value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid numeric value for {field_name}: {value}")


def round_currency(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal, symbol: str = "€") -> str:
    """Format an amount in German notation, e.g. 1.234,56 €"""
    text = f"{round_currency(Decimal(amount)):,.2f}"
    text = text.replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{text} {symbol}" if symbol else text


def format_minutes(minutes: int) -> str:
    """Render a duration in minutes as H:MM"""
    sign = "-" if minutes < 0 else ""
    minutes = abs(int(minutes))
    return f"{sign}{minutes // 60}:{minutes % 60:02d}"


def setup_logging(debug: bool = False, log_file: Optional[str] = "tax_calculator.log") -> logging.Logger:
    """Setup logging configuration"""
    level = logging.DEBUG if debug else logging.INFO

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )

    return logging.getLogger(__name__)


def validate_integer_input(value: str, field_name: str) -> int:
    """
    Validate and convert integer input

    Raises:
        ValueError: If value is not a valid integer
    """
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer value for {field_name}: {value}")
