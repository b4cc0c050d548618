"""Read-only reports over the booking history archive.

Every report is a plain function of a ``BookingHistory`` queryset, so the same
filters apply to all of them. Empty archives produce zeros, never errors.
"""
import calendar

from django.db.models import Avg, Count, F, Max, Min, Sum
from django.db.models.functions import ExtractMonth, ExtractYear

from .models import BookingHistory


def filter_history(history=None, room_type=None, room_no=None, status=None, start_date=None,
                   end_date=None, min_nights=None, max_nights=None, guest_name=None):
    if history is None:
        history = BookingHistory.objects.all()
    if room_type:
        history = history.filter(room_type=room_type)
    if room_no is not None:
        history = history.filter(room_no=room_no)
    if status:
        history = history.filter(status=status)
    if start_date:
        history = history.filter(check_out_date__date__gte=start_date)
    if end_date:
        history = history.filter(check_out_date__date__lte=end_date)
    if min_nights is not None:
        history = history.filter(actual_nights_stayed__gte=min_nights)
    if max_nights is not None:
        history = history.filter(actual_nights_stayed__lte=max_nights)
    if guest_name:
        history = history.filter(guest_name__icontains=guest_name)
    return history


def _zeroed(totals):
    return {key: value if value is not None else 0 for key, value in totals.items()}


def _percentage(count, total):
    return round(count * 100 / total, 2) if total else 0


def overview(history):
    return _zeroed(history.aggregate(
        totalRevenue=Sum("actual_total_amount"),
        totalBookings=Count("id"),
        averageStayDuration=Avg("actual_nights_stayed"),
    ))


def status_breakdown(history):
    total = history.count()
    rows = history.values("status").annotate(count=Count("id")).order_by("status")
    return [
        {"status": row["status"], "count": row["count"], "percentage": _percentage(row["count"], total)}
        for row in rows
    ]


def dashboard_stats(history):
    return {**overview(history), "statusBreakdown": status_breakdown(history)}


def total_revenue(history):
    return _zeroed(history.aggregate(
        totalRevenue=Sum("actual_total_amount"),
        totalBookings=Count("id"),
        totalNights=Sum("actual_nights_stayed"),
        averageRevenuePerBooking=Avg("actual_total_amount"),
    ))


def revenue_by_room_type(history):
    rows = list(
        history.values(roomType=F("room_type"))
        .annotate(
            totalRevenue=Sum("actual_total_amount"),
            bookingCount=Count("id"),
            averageStay=Avg("actual_nights_stayed"),
        )
        .order_by("roomType")
    )
    for row in rows:
        row["rooms"] = list(
            history.filter(room_type=row["roomType"])
            .order_by("room_no")
            .values_list("room_no", flat=True)
            .distinct()
        )
    return rows


def revenue_by_room_no(history):
    # actual_total_amount / actual_nights_stayed is the locked nightly rate
    return list(
        history.values(roomNo=F("room_no"))
        .annotate(
            roomType=Max("room_type"),
            totalRevenue=Sum("actual_total_amount"),
            bookingCount=Count("id"),
            totalNights=Sum("actual_nights_stayed"),
            averageRevenuePerNight=Avg("price_per_night"),
        )
        .order_by("roomNo")
    )


def revenue_by_month(history):
    rows = (
        history.annotate(year=ExtractYear("check_out_date"), month=ExtractMonth("check_out_date"))
        .values("year", "month")
        .annotate(totalRevenue=Sum("actual_total_amount"), bookingCount=Count("id"))
        .order_by("year", "month")
    )
    return [{**row, "monthName": calendar.month_abbr[row["month"]]} for row in rows]


def average_stay_duration(history):
    return _zeroed(history.aggregate(
        averageStayDuration=Avg("actual_nights_stayed"),
        minStay=Min("actual_nights_stayed"),
        maxStay=Max("actual_nights_stayed"),
        totalBookings=Count("id"),
    ))


def guest_repeat_count(history):
    return list(
        history.values(guestName=F("guest_name"))
        .annotate(
            visitCount=Count("id"),
            totalSpent=Sum("actual_total_amount"),
            totalNights=Sum("actual_nights_stayed"),
            lastVisit=Max("check_out_date"),
        )
        .filter(visitCount__gt=1)
        .order_by("-visitCount", "guestName")
    )


def stay_comparison(history):
    total = history.count()
    rows = list(
        history.values("status")
        .annotate(
            count=Count("id"),
            totalRevenue=Sum("actual_total_amount"),
            averageNights=Avg("actual_nights_stayed"),
        )
        .order_by("status")
    )
    for row in rows:
        row["percentage"] = _percentage(row["count"], total)
    return rows


REPORTS = {
    "dashboard-stats": dashboard_stats,
    "total-revenue": total_revenue,
    "revenue-by-room-type": revenue_by_room_type,
    "revenue-by-room-no": revenue_by_room_no,
    "revenue-by-month": revenue_by_month,
    "average-stay-duration": average_stay_duration,
    "guest-repeat-count": guest_repeat_count,
    "stay-comparison": stay_comparison,
}


def run_report(report_type, history):
    return REPORTS[report_type](history)
