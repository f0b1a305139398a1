import math
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..errors import NotFound
from ..models.transit import (
    BusResult, BusStop, LiveBus, LiveLocation, LocationSummary,
    Route, RouteDetails, RouteRef, RouteStop, RouteSummary, SearchResult,
)
from .fixture_store import FixtureStore, utcnow

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20
ROUTE_DETAIL_STOPS = 5
MINUTES_BETWEEN_STOPS = 10
DEGREES_PER_KM = 0.01  # flat-earth approximation, not a geodesic distance


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def eta_minutes(estimated_arrival: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole minutes until arrival, rounded up; 0 when unknown or already due."""
    if estimated_arrival is None:
        return 0
    now = now or utcnow()
    seconds = (_aware(estimated_arrival) - _aware(now)).total_seconds()
    return max(0, math.ceil(seconds / 60))


def degree_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return math.sqrt((lat1 - lat2) ** 2 + (lng1 - lng2) ** 2)


class QueryService:
    """Read-side queries over the fixture store."""

    def __init__(self, store: FixtureStore, clock=utcnow):
        self.store = store
        self.clock = clock

    def search(self, query: str, latitude: Optional[float] = None,
               longitude: Optional[float] = None) -> List[SearchResult]:
        """Find active routes whose number, name or endpoints contain `query`.

        `latitude` and `longitude` are accepted for interface parity with the
        networked backend and do not narrow the results.
        """
        needle = (query or "").lower()
        now = self.clock()
        results = []

        for route in self.store.routes():
            if not route.is_active:
                continue
            if needle and not self._matches(route, needle):
                continue
            results.append(SearchResult(
                route=RouteSummary(**route.model_dump(include=set(RouteSummary.model_fields))),
                buses=[
                    self._bus_result(bus, now)
                    for bus in self.store.buses()
                    if bus.route_id == route.id and bus.is_active
                ],
            ))
            if len(results) >= SEARCH_LIMIT:
                break

        logger.debug(f"Search {query!r} matched {len(results)} routes")
        return results

    @staticmethod
    def _matches(route: Route, needle: str) -> bool:
        fields = (route.route_number, route.route_name, route.start_location, route.end_location)
        return any(needle in field.lower() for field in fields)

    def _bus_result(self, bus, now: datetime) -> BusResult:
        location = self.store.current_location(bus.id)
        summary = None
        if location is not None:
            next_stop = self.store.get_stop(location.next_stop_id)
            summary = LocationSummary(
                latitude=location.latitude,
                longitude=location.longitude,
                speed=location.speed,
                status=location.status,
                estimated_arrival=location.estimated_arrival,
                next_stop=next_stop.stop_name if next_stop else "Unknown",
                last_updated=location.recorded_at,
                eta_minutes=eta_minutes(location.estimated_arrival, now),
            )
        return BusResult(
            id=bus.id,
            bus_number=bus.bus_number,
            current_passengers=bus.current_passengers,
            capacity=bus.capacity,
            location=summary,
        )

    def get_routes(self) -> List[Route]:
        return [route for route in self.store.routes() if route.is_active]

    def get_live_locations(self, window_seconds: int = 600) -> List[LiveLocation]:
        """Locations recorded within the window for active buses, newest first."""
        cutoff = self.clock() - timedelta(seconds=window_seconds)
        live = []
        for location in self.store.locations():
            if _aware(location.recorded_at) < cutoff:
                continue
            bus = self.store.get_bus(location.bus_id)
            if bus is None or not bus.is_active:
                continue
            route = self.store.get_route(bus.route_id)
            live.append(LiveLocation(
                **location.model_dump(),
                bus=LiveBus(
                    id=bus.id,
                    bus_number=bus.bus_number,
                    current_passengers=bus.current_passengers,
                    capacity=bus.capacity,
                    route=RouteRef(route_number=route.route_number, route_name=route.route_name) if route else None,
                ),
                next_stop=self.store.get_stop(location.next_stop_id),
            ))
        live.sort(key=lambda loc: loc.recorded_at, reverse=True)
        return live

    def get_nearby_stops(self, latitude: float, longitude: float, radius_km: float = 2) -> List[BusStop]:
        """Active stops within `radius_km * 0.01` degrees of the point."""
        limit = radius_km * DEGREES_PER_KM
        return [
            stop for stop in self.store.stops()
            if stop.is_active and degree_distance(stop.latitude, stop.longitude, latitude, longitude) <= limit
        ]

    def get_route_details(self, route_id: str) -> RouteDetails:
        route = self.store.get_route(route_id)
        if route is None:
            raise NotFound("Route not found", details=route_id)

        route_stops = [
            RouteStop(stop_sequence=index + 1, estimated_travel_time=index * MINUTES_BETWEEN_STOPS, bus_stop=stop)
            for index, stop in enumerate(self.store.stops()[:ROUTE_DETAIL_STOPS])
        ]
        return RouteDetails(**route.model_dump(), route_stops=route_stops)

