"""NiceGUI web pages: daily timeline journal with a map of stays."""

import datetime

from nicegui import ui

from database import SessionLocal
from geocoding import build_resolver
from geocoding_providers import get_provider_chain
from models import User
from timeline_service import TimelineRequestRouter
from timeline_types import end_of_day, start_of_day, utcnow

_MOVEMENT_ICONS = {"WALK": "directions_walk", "BICYCLE": "directions_bike", "CAR": "directions_car"}


def _format_duration(seconds: float) -> str:
    """Format seconds into human-readable duration."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    remaining_min = minutes % 60
    if hours < 24:
        return f"{hours}h {remaining_min}m"
    days = hours // 24
    remaining_hrs = hours % 24
    return f"{days}d {remaining_hrs}h"


def _timeline_rows(timeline) -> list[dict]:
    rows = []
    for event in timeline.events():
        row = {
            "start": event.start.strftime("%Y-%m-%d %H:%M"),
            "end": event.end.strftime("%H:%M"),
            "duration": _format_duration(event.duration_seconds),
        }
        if event.kind.value == "stay":
            row["what"] = event.location_name or f"{event.latitude:.5f}, {event.longitude:.5f}"
        elif event.kind.value == "trip":
            row["what"] = f"{event.movement_type.title()} {event.distance_meters / 1000:.1f} km"
        else:
            row["what"] = "No data"
        rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Timeline page
# ---------------------------------------------------------------------------
@ui.page("/")
def timeline_page():
    db = SessionLocal()
    users = db.query(User).order_by(User.username).all()
    db.close()

    with ui.header().classes("items-center"):
        ui.label("Timeline").classes("text-h6")

    with ui.column().classes("q-pa-md w-full"):
        with ui.row().classes("items-end q-gutter-md"):
            user_select = ui.select(
                options={u.id: u.username for u in users},
                label="User",
                value=users[0].id if users else None,
            ).classes("w-64")
            day_input = ui.input("Day (YYYY-MM-DD)", value=utcnow().date().isoformat()).classes("w-48")

        content = ui.column().classes("w-full")

        def render():
            content.clear()
            if user_select.value is None:
                with content:
                    ui.label("No users yet.").classes("text-grey")
                return
            try:
                day = datetime.datetime.fromisoformat(day_input.value)
            except ValueError:
                ui.notify("Enter the day as YYYY-MM-DD", type="warning")
                return

            inner_db = SessionLocal()
            try:
                timeline_router = TimelineRequestRouter(inner_db, build_resolver(inner_db, get_provider_chain()))
                timeline = timeline_router.get_timeline(int(user_select.value), start_of_day(day), end_of_day(day))
            finally:
                inner_db.close()

            with content:
                ui.label(
                    f"{len(timeline.stays)} stays, {len(timeline.trips)} trips, "
                    f"{len(timeline.data_gaps)} gaps ({timeline.data_source.value.lower()})"
                ).classes("text-caption text-grey")
                if timeline.stays:
                    first = timeline.stays[0]
                    m = ui.leaflet(center=(first.latitude, first.longitude), zoom=13).classes("w-full").style(
                        "height: 400px"
                    )
                    for stay in timeline.stays:
                        m.marker(latlng=(stay.latitude, stay.longitude))
                    for trip in timeline.trips:
                        if len(trip.path) > 1:
                            m.generic_layer(
                                name="polyline",
                                args=[[[p.latitude, p.longitude] for p in trip.path], {"weight": 3}],
                            )
                for t in timeline.trips:
                    icon = _MOVEMENT_ICONS.get(t.movement_type, "route")
                    with ui.row().classes("items-center q-mt-xs"):
                        ui.icon(icon).classes("text-blue-8")
                        ui.label(f"{t.start:%H:%M} {_format_duration(t.duration_seconds)}")

                columns = [
                    {"name": "start", "label": "From", "field": "start", "align": "left"},
                    {"name": "end", "label": "To", "field": "end"},
                    {"name": "duration", "label": "Duration", "field": "duration"},
                    {"name": "what", "label": "What", "field": "what", "align": "left"},
                ]
                ui.table(columns=columns, rows=_timeline_rows(timeline)).classes("w-full q-mt-md")

        ui.button("Show", on_click=render).props("icon=timeline")
        render()
