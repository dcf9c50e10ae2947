"""
Admin dashboard statistics.
"""
import logging
from datetime import datetime

from pymongo import DESCENDING

from bookings import populate_bookings
from data_processor import CAR_SUMMARY_FIELDS, USER_SUMMARY_FIELDS
from mongo_database import BOOKINGS, CARS, USERS, utc_now
from schemas import ACTIVE_BOOKING_STATUSES

logger = logging.getLogger(__name__)

RECENT_BOOKINGS_LIMIT = 5


async def total_revenue(db) -> float:
    """Sum of total_amount over completed bookings."""
    cursor = db[BOOKINGS].aggregate([
        {"$match": {"status": "completed"}},
        {"$group": {"_id": None, "total_revenue": {"$sum": "$total_amount"}}},
    ])
    result = await cursor.to_list(length=None)
    return result[0]["total_revenue"] if result else 0


async def monthly_stats(db, year: int) -> list:
    """Booking count and revenue per month of `year`, by creation date."""
    cursor = db[BOOKINGS].aggregate([
        {"$match": {"created_at": {"$gte": datetime(year, 1, 1), "$lt": datetime(year + 1, 1, 1)}}},
        {"$group": {
            "_id": {"$month": "$created_at"},
            "count": {"$sum": 1},
            "revenue": {"$sum": "$total_amount"},
        }},
        {"$sort": {"_id": 1}},
    ])
    rows = await cursor.to_list(length=None)
    return [{"month": row["_id"], "count": row["count"], "revenue": row["revenue"]} for row in rows]


async def get_dashboard(db) -> dict:
    """
    Fleet-wide statistics for the admin dashboard. Read-only.

    Returns:
        {"stats": {...}, "recent_bookings": [...], "monthly_stats": [...]}
    """
    total_cars = await db[CARS].count_documents({})
    total_users = await db[USERS].count_documents({"role": {"$ne": "admin"}})
    total_bookings = await db[BOOKINGS].count_documents({})
    active_bookings = await db[BOOKINGS].count_documents({"status": {"$in": ACTIVE_BOOKING_STATUSES}})
    revenue = await total_revenue(db)

    cursor = db[BOOKINGS].find({}).sort([("created_at", DESCENDING)]).limit(RECENT_BOOKINGS_LIMIT)
    recent_docs = await cursor.to_list(length=None)
    recent_bookings = await populate_bookings(db, recent_docs, CAR_SUMMARY_FIELDS, USER_SUMMARY_FIELDS)

    monthly = await monthly_stats(db, utc_now().year)

    logger.info(
        f"Dashboard: {total_cars} cars, {total_users} users, {total_bookings} bookings "
        f"({active_bookings} active), revenue {revenue}"
    )
    return {
        "stats": {
            "total_cars": total_cars,
            "total_users": total_users,
            "total_bookings": total_bookings,
            "active_bookings": active_bookings,
            "total_revenue": revenue,
        },
        "recent_bookings": recent_bookings,
        "monthly_stats": monthly,
    }
