"""Text and HTML rendering of a NearbyResult."""

from datetime import datetime, tzinfo
from html import escape
from typing import List, Optional

from .models import ArrivalRow, NearbyResult, RankedStop, StopArrivals

MAPS_URL = "https://www.google.com/maps/search/?api=1&query={lat},{lon}"

NO_DATA = "No data available"
NO_ARRIVALS = "No upcoming arrivals"


def stop_number(stop_id: str) -> str:
    """Rider-facing stop number: the last six digits of the AtcoCode, without leading zeros."""
    tail = stop_id[-6:]
    if tail.isdigit():
        return str(int(tail))
    return stop_id


def maps_link(ranked: RankedStop) -> str:
    return MAPS_URL.format(lat=ranked.stop.latitude, lon=ranked.stop.longitude)


def _clock(value: datetime, tz: Optional[tzinfo]) -> str:
    if tz is not None:
        value = value.astimezone(tz)
    return value.strftime("%H:%M:%S")


def format_arrival(row: ArrivalRow, tz: Optional[tzinfo] = None) -> str:
    """e.g. '39A → Ongar | Real-time: 12:04:10 | Scheduled: 12:02:00'"""
    text = f"{row.route} → {row.headsign}"
    if row.realtime_time is not None:
        text += f" | Real-time: {_clock(row.realtime_time, tz)}"
    if row.scheduled_time is not None:
        text += f" | Scheduled: {_clock(row.scheduled_time, tz)}"
    return text


def _arrival_lines(stop: StopArrivals, tz: Optional[tzinfo]) -> List[str]:
    if not stop.available:
        return [NO_DATA]
    if not stop.arrivals:
        return [NO_ARRIVALS]
    return [format_arrival(row, tz) for row in stop.arrivals]


def render_text(result: NearbyResult, tz: Optional[tzinfo] = None) -> str:
    """Plain-text rendering for terminals and logs."""
    if not result.ok:
        return f"Error: {result.error}"

    lines = []
    for stop in result.stops:
        ranked = stop.ranked_stop
        lines.append(f"{ranked.stop.name} (#{stop_number(ranked.stop.stop_id)})")
        lines.append(f"  {round(ranked.distance)} m ({ranked.compass})  {maps_link(ranked)}")
        for line in _arrival_lines(stop, tz):
            lines.append(f"    {line}")
        lines.append("")

    if not result.stops:
        lines.append("No bus stops nearby")
    if result.realtime_error:
        lines.append("Real-time information is unavailable.")
    return "\n".join(lines).rstrip() + "\n"


def render_html(result: NearbyResult, tz: Optional[tzinfo] = None) -> str:
    """HTML fragment for the stops container of the page."""
    if not result.ok:
        return f'<p class="error">{escape(result.error)}</p>'

    parts = []
    for stop in result.stops:
        ranked = stop.ranked_stop
        parts.append('<div class="stop">')
        parts.append(f"<h3>{escape(ranked.stop.name)} (#{escape(stop_number(ranked.stop.stop_id))})</h3>")
        parts.append(
            f'<a href="{escape(maps_link(ranked))}" target="_blank">{round(ranked.distance)} m</a>'
            f"<span> • {escape(ranked.compass)}</span>"
        )
        parts.append("<ul>")
        for line in _arrival_lines(stop, tz):
            parts.append(f"<li>{escape(line)}</li>")
        parts.append("</ul>")
        parts.append("</div>")

    if result.realtime_error:
        parts.append('<p class="notice">Real-time information is unavailable.</p>')
    return "\n".join(parts)
