"""
Booking duration and price calculation.
"""
import math
from datetime import date, datetime, time, timedelta
from typing import Tuple

from errors import BusinessRuleViolation
from schemas import Car

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


def parse_clock_time(value: str) -> time:
    """Parse an "HH:MM" (or "H:MM") clock time."""
    return datetime.strptime(value, "%H:%M").time()


def booking_window(
    start_date: date,
    end_date: date,
    start_time: str,
    end_time: str,
) -> Tuple[datetime, datetime]:
    """
    Combine each date with its clock time.

    These are the instants a booking occupies the car, for both booking
    types; overlap checks and the stored booking use them.
    """
    start = datetime.combine(start_date, parse_clock_time(start_time))
    end = datetime.combine(end_date, parse_clock_time(end_time))
    return start, end


def compute_booking_details(
    car: Car,
    start_date: date,
    end_date: date,
    start_time: str,
    end_time: str,
    booking_type: str,
) -> Tuple[int, float]:
    """
    Calculate the billed duration and the total amount for a booking.

    Daily bookings count calendar days from the start of the first date;
    the end date is also taken at 00:00 (not 23:59:59.999), so 1st to 3rd
    is two days.
    Hourly bookings count hours between the two combined instants. Partial
    units are always rounded up.

    Args:
        car: the car being booked (provides the rates)
        start_date: first day of the booking
        end_date: last day of the booking
        start_time: pickup time, "HH:MM"
        end_time: dropoff time, "HH:MM"
        booking_type: "daily" or "hourly"

    Returns:
        Tuple of (duration, total_amount)

    Raises:
        BusinessRuleViolation: if the total amount is zero or negative
    """
    if booking_type == "daily":
        start = datetime.combine(start_date, time.min)
        end = datetime.combine(end_date, time.min)
        duration = math.ceil((end - start) / DAY)
        total_amount = duration * car.price_per_day
    else:
        start, end = booking_window(start_date, end_date, start_time, end_time)
        duration = math.ceil((end - start) / HOUR)
        total_amount = duration * car.price_per_hour

    if total_amount <= 0:
        raise BusinessRuleViolation("Calculated total amount is zero or negative.")

    return duration, total_amount


def to_minor_units(amount: float) -> int:
    """Convert an amount to the smallest currency unit (e.g. paise)."""
    return int(round(amount * 100))
