"""GTFS static data loader for the canonical schedule."""

import logging
import zipfile
from datetime import date, datetime, tzinfo
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import pandas as pd

from .models import GtfsRoute, GtfsStop, GtfsStopTime, GtfsTrip, ServiceCalendar

logger = logging.getLogger(__name__)

GTFS_TABLES = ("agency", "stops", "routes", "trips", "stop_times", "calendar", "calendar_dates")

DAY_COLUMNS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class GTFSLoader:
    """Loads and indexes a GTFS feed: stops, routes, trips, stop times and calendars."""

    def __init__(self):
        """Initialize an empty loader."""
        self.agency_timezone: Optional[str] = None
        self.stops: Dict[str, GtfsStop] = {}
        self.routes: Dict[str, GtfsRoute] = {}
        self.trips: Dict[str, GtfsTrip] = {}
        self.calendars: Dict[str, ServiceCalendar] = {}
        self.calendar_dates: Dict[str, List[Tuple[date, int]]] = {}  # service_id -> [(date, exception_type)]
        self._trips_by_route: Dict[str, List[GtfsTrip]] = {}
        self._stop_times_by_trip: Dict[str, List[GtfsStopTime]] = {}

    def load_from_path(self, path: str) -> None:
        """Load GTFS data from a directory of .txt files or a .zip archive."""
        logger.info(f"Loading GTFS data from {path}")
        self.load_tables(read_gtfs_tables(path))
        logger.info(
            f"Loaded {len(self.stops)} stops, {len(self.routes)} routes and {len(self.trips)} trips"
        )

    def load_tables(self, tables: Dict[str, pd.DataFrame]) -> None:
        """Index already-read GTFS tables (all columns as strings)."""
        self._load_agency(tables.get("agency"))
        self._load_stops(tables.get("stops"))
        self._load_routes(tables.get("routes"))
        self._load_trips(tables.get("trips"))
        self._load_stop_times(tables.get("stop_times"))
        self._load_calendar(tables.get("calendar"))
        self._load_calendar_dates(tables.get("calendar_dates"))

    def _load_agency(self, df: Optional[pd.DataFrame]) -> None:
        self.agency_timezone = None
        if df is None or "agency_timezone" not in df.columns:
            return
        for value in df["agency_timezone"]:
            if value:
                self.agency_timezone = value
                return

    def _load_stops(self, df: Optional[pd.DataFrame]) -> None:
        self.stops = {}
        if df is None:
            return
        for row in df.itertuples(index=False):
            if not row.stop_lat or not row.stop_lon:
                continue
            self.stops[row.stop_id] = GtfsStop(
                id=row.stop_id,
                name=getattr(row, "stop_name", ""),
                lat=float(row.stop_lat),
                lon=float(row.stop_lon),
            )

    def _load_routes(self, df: Optional[pd.DataFrame]) -> None:
        self.routes = {}
        if df is None:
            return
        for row in df.itertuples(index=False):
            self.routes[row.route_id] = GtfsRoute(
                id=row.route_id,
                short_name=getattr(row, "route_short_name", None) or None,
                long_name=getattr(row, "route_long_name", None) or None,
            )

    def _load_trips(self, df: Optional[pd.DataFrame]) -> None:
        self.trips = {}
        self._trips_by_route = {}
        if df is None:
            return
        for row in df.itertuples(index=False):
            trip = GtfsTrip(
                id=row.trip_id,
                route_id=row.route_id,
                service_id=row.service_id,
                block_id=getattr(row, "block_id", None) or None,
                direction_id=getattr(row, "direction_id", None) or None,
            )
            self.trips[trip.id] = trip
            self._trips_by_route.setdefault(trip.route_id, []).append(trip)

    def _load_stop_times(self, df: Optional[pd.DataFrame]) -> None:
        self._stop_times_by_trip = {}
        if df is None or df.empty:
            return
        df = df.assign(stop_sequence=df["stop_sequence"].astype(int))
        df = df.sort_values(["trip_id", "stop_sequence"], kind="stable")
        for trip_id, group in df.groupby("trip_id", sort=False):
            self._stop_times_by_trip[trip_id] = [
                GtfsStopTime(
                    trip_id=trip_id,
                    stop_id=row.stop_id,
                    stop_sequence=row.stop_sequence,
                    arrival_time=parse_gtfs_time(row.arrival_time),
                    departure_time=parse_gtfs_time(row.departure_time),
                )
                for row in group.itertuples(index=False)
            ]

    def _load_calendar(self, df: Optional[pd.DataFrame]) -> None:
        self.calendars = {}
        if df is None:
            return
        for row in df.itertuples(index=False):
            days = "".join(str(getattr(row, day) or "0") for day in DAY_COLUMNS)
            self.calendars[row.service_id] = ServiceCalendar(
                service_id=row.service_id,
                days=days,
                start_date=parse_gtfs_date(row.start_date),
                end_date=parse_gtfs_date(row.end_date),
            )

    def _load_calendar_dates(self, df: Optional[pd.DataFrame]) -> None:
        self.calendar_dates = {}
        if df is None:
            return
        for row in df.itertuples(index=False):
            self.calendar_dates.setdefault(row.service_id, []).append(
                (parse_gtfs_date(row.date), int(row.exception_type))
            )

    @property
    def timezone(self) -> tzinfo:
        """The first agency time zone, or the local zone when none is declared."""
        if self.agency_timezone:
            return ZoneInfo(self.agency_timezone)
        return datetime.now().astimezone().tzinfo

    def get_trips_for_route(self, route_id: str) -> List[GtfsTrip]:
        return list(self._trips_by_route.get(route_id, []))

    def get_stop_times_for_trip(self, trip_id: str) -> List[GtfsStopTime]:
        """Stop times of a trip ordered by stop_sequence."""
        return list(self._stop_times_by_trip.get(trip_id, []))

    def get_service_dates_for_service_id(self, service_id: str) -> List[date]:
        """Dates a service id is active, from calendar.txt plus calendar_dates.txt exceptions."""
        dates = set()
        calendar = self.calendars.get(service_id)
        if calendar is not None:
            for day in pd.date_range(calendar.start_date, calendar.end_date, freq="D"):
                if calendar.days[day.weekday()] == "1":
                    dates.add(day.date())
        for service_date, exception_type in self.calendar_dates.get(service_id, []):
            if exception_type == 1:
                dates.add(service_date)
            elif exception_type == 2:
                dates.discard(service_date)
        return sorted(dates)

    def clear(self) -> None:
        """Clear all loaded data to free memory."""
        self.stops.clear()
        self.routes.clear()
        self.trips.clear()
        self.calendars.clear()
        self.calendar_dates.clear()
        self._trips_by_route.clear()
        self._stop_times_by_trip.clear()


def read_gtfs_tables(path: str) -> Dict[str, pd.DataFrame]:
    """Read every known GTFS table present at path (directory or zip)."""
    tables: Dict[str, pd.DataFrame] = {}
    source = Path(path)
    if source.is_dir():
        for name in GTFS_TABLES:
            table_path = source / f"{name}.txt"
            if table_path.exists():
                tables[name] = _read_csv(table_path)
        return tables

    with zipfile.ZipFile(source) as zip_file:
        names = set(zip_file.namelist())
        for name in GTFS_TABLES:
            if f"{name}.txt" in names:
                with zip_file.open(f"{name}.txt") as f:
                    tables[name] = _read_csv(f)
    return tables


def _read_csv(source) -> pd.DataFrame:
    df = pd.read_csv(source, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    df.columns = [column.strip() for column in df.columns]
    return df


def parse_gtfs_time(value: Optional[str]) -> Optional[int]:
    """'HH:MM:SS' (hours may exceed 24) to seconds; None when blank."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    hours, minutes, seconds = value.split(":")
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds)


def parse_gtfs_date(value: str) -> date:
    """'YYYYMMDD' to a date."""
    return datetime.strptime(value.strip(), "%Y%m%d").date()
