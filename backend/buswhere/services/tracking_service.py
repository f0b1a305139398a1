import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..errors import BusWhereError, Conflict, InvalidInput, NotFound, UpstreamFailure
from ..models.transit import (
    Bus, BusLocation, BusResult, BusStatusUpdate, BusStop, LiveLocation, LocationSummary,
    LocationUpdate, PassengerBoarding, Route, RouteDetails, RouteStop, RouteSummary, SearchResult,
)
from .fixture_store import FixtureStore, new_id, utcnow
from .query_service import ROUTE_DETAIL_STOPS, SEARCH_LIMIT, QueryService, eta_minutes
from .supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


class TrackingService(ABC):
    """Bus search and live tracking operations, independent of the backend."""

    @abstractmethod
    async def search_buses(self, query: str, latitude: Optional[float] = None,
                           longitude: Optional[float] = None) -> List[SearchResult]:
        ...

    @abstractmethod
    async def get_live_locations(self) -> List[LiveLocation]:
        ...

    @abstractmethod
    async def get_routes(self) -> List[Route]:
        ...

    @abstractmethod
    async def get_nearby_stops(self, latitude: Optional[float] = None, longitude: Optional[float] = None,
                               radius: float = 2) -> List[BusStop]:
        ...

    @abstractmethod
    async def get_route_details(self, route_id: str) -> RouteDetails:
        ...

    @abstractmethod
    async def update_bus_location(self, update: LocationUpdate) -> BusLocation:
        ...

    @abstractmethod
    async def update_bus_status(self, update: BusStatusUpdate) -> Bus:
        ...

    @abstractmethod
    async def record_passenger_boarding(self, boarding: PassengerBoarding) -> Dict[str, Any]:
        ...


def _bus_with(bus: Bus, **changes) -> Bus:
    try:
        return Bus.model_validate({**bus.model_dump(), **changes})
    except ValidationError as e:
        raise InvalidInput("Invalid bus update", details=str(e))


class MockTrackingService(TrackingService):
    """Fixture-backed implementation with an optional simulated network delay."""

    def __init__(self, store: FixtureStore, delay: float = 0.0, live_window: int = 600, clock=utcnow):
        self.store = store
        self.delay = delay
        self.live_window = live_window
        self.clock = clock
        self.queries = QueryService(store, clock=clock)

    async def _latency(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    async def search_buses(self, query, latitude=None, longitude=None):
        await self._latency()
        return self.queries.search(query, latitude, longitude)

    async def get_live_locations(self):
        await self._latency()
        return self.queries.get_live_locations(self.live_window)

    async def get_routes(self):
        await self._latency()
        return self.queries.get_routes()

    async def get_nearby_stops(self, latitude=None, longitude=None, radius=2):
        await self._latency()
        if latitude is None or longitude is None:
            return [stop for stop in self.store.stops() if stop.is_active]
        return self.queries.get_nearby_stops(latitude, longitude, radius)

    async def get_route_details(self, route_id):
        await self._latency()
        return self.queries.get_route_details(route_id)

    async def update_bus_location(self, update):
        await self._latency()
        bus = self.store.get_bus(update.bus_id)
        if bus is None:
            raise NotFound("Bus not found", details=update.bus_id)
        updated_bus = None
        if update.current_passengers is not None:
            updated_bus = _bus_with(bus, current_passengers=update.current_passengers)

        fields = update.model_dump(exclude={"bus_id", "current_passengers"}, exclude_none=True)
        location = self.store.insert_location(BusLocation(
            id=new_id(), bus_id=update.bus_id, recorded_at=self.clock(), **fields
        ))
        if updated_bus is not None:
            self.store.replace_bus(updated_bus)
        logger.info(f"Recorded location for bus {update.bus_id}")
        return location

    async def update_bus_status(self, update):
        await self._latency()
        bus = self.store.get_bus(update.bus_id)
        if bus is None:
            raise NotFound("Bus not found", details=update.bus_id)
        changes = update.model_dump(exclude={"bus_id"}, exclude_none=True)
        return self.store.replace_bus(_bus_with(bus, **changes))

    async def record_passenger_boarding(self, boarding):
        await self._latency()
        bus = self.store.get_bus(boarding.bus_id)
        if bus is None:
            raise NotFound("Bus not found", details=boarding.bus_id)
        if bus.current_passengers >= bus.capacity:
            raise Conflict("Bus is at full capacity", details=bus.id)
        self.store.replace_bus(_bus_with(bus, current_passengers=bus.current_passengers + 1))
        return {"bus_id": bus.id, "boarding_time": self.clock().isoformat()}


SEARCH_SELECT = (
    "*,buses!inner(id,bus_number,current_passengers,capacity,is_active,"
    "bus_locations!inner(latitude,longitude,speed,status,estimated_arrival,next_stop_id,recorded_at,"
    "bus_stops!bus_locations_next_stop_id_fkey(stop_name,stop_code)))"
)
LIVE_SELECT = (
    "*,buses!inner(id,bus_number,current_passengers,capacity,is_active,routes(route_number,route_name)),"
    "bus_stops!bus_locations_next_stop_id_fkey(*)"
)
ROUTE_DETAILS_SELECT = "*,route_stops!inner(stop_sequence,estimated_travel_time,bus_stops(*))"


def _ilike_term(query: str) -> str:
    # PostgREST uses , and () as filter syntax
    return "".join(ch for ch in query if ch not in ",()")


class SupabaseTrackingService(TrackingService):
    """Networked implementation backed by Supabase tables."""

    def __init__(self, client: SupabaseClient, live_window: int = 600, clock=utcnow):
        self.client = client
        self.live_window = live_window
        self.clock = clock

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    async def search_buses(self, query, latitude=None, longitude=None):
        params = {
            "select": SEARCH_SELECT,
            "is_active": "eq.true",
            "buses.is_active": "eq.true",
            "order": "route_number",
            "limit": str(SEARCH_LIMIT),
        }
        term = _ilike_term(query or "")
        if term:
            params["or"] = "(" + ",".join(
                f"{field}.ilike.*{term}*"
                for field in ("route_number", "route_name", "start_location", "end_location")
            ) + ")"
        rows = await self._call(self.client.select, "routes", params)
        now = self.clock()
        return [self._search_result(row, now) for row in rows]

    @staticmethod
    def _search_result(row: Dict[str, Any], now) -> SearchResult:
        buses = []
        for bus in row.get("buses") or []:
            locations = sorted(bus.get("bus_locations") or [], key=lambda loc: loc["recorded_at"], reverse=True)
            summary = None
            if locations:
                latest = locations[0]
                stop = latest.get("bus_stops") or {}
                summary = LocationSummary(
                    latitude=latest["latitude"],
                    longitude=latest["longitude"],
                    speed=latest.get("speed") or 0,
                    status=latest.get("status") or "on-time",
                    estimated_arrival=latest.get("estimated_arrival"),
                    next_stop=stop.get("stop_name") or "Unknown",
                    last_updated=latest["recorded_at"],
                )
                summary.eta_minutes = eta_minutes(summary.estimated_arrival, now)
            buses.append(BusResult(
                id=bus["id"],
                bus_number=bus["bus_number"],
                current_passengers=bus["current_passengers"],
                capacity=bus["capacity"],
                location=summary,
            ))
        return SearchResult(route=RouteSummary.model_validate(row), buses=buses)

    async def get_live_locations(self):
        cutoff = self.clock() - timedelta(seconds=self.live_window)
        rows = await self._call(self.client.select, "bus_locations", {
            "select": LIVE_SELECT,
            "recorded_at": f"gte.{cutoff.isoformat()}",
            "buses.is_active": "eq.true",
            "order": "recorded_at.desc",
        })
        live = []
        for row in rows:
            bus = row.get("buses")
            if bus is not None:
                bus = {**bus, "route": bus.get("routes")}
            live.append(LiveLocation.model_validate({**row, "bus": bus, "next_stop": row.get("bus_stops")}))
        return live

    async def get_routes(self):
        rows = await self._call(self.client.select, "routes", {
            "select": "*", "is_active": "eq.true", "order": "route_number",
        })
        return [Route.model_validate(row) for row in rows]

    async def get_nearby_stops(self, latitude=None, longitude=None, radius=2):
        if latitude is None or longitude is None:
            rows = await self._call(self.client.select, "bus_stops", {
                "select": "*", "is_active": "eq.true", "order": "stop_name", "limit": "50",
            })
        else:
            rows = await self._call(
                self.client.rpc, "nearby_stops",
                {"lat": latitude, "lng": longitude, "radius_km": radius},
                {"order": "stop_name", "limit": "50"},
            )
        return [BusStop.model_validate(row) for row in rows or []]

    async def get_route_details(self, route_id):
        row = await self._call(self.client.select_one, "routes", {
            "select": ROUTE_DETAILS_SELECT, "id": f"eq.{route_id}", "is_active": "eq.true",
        })
        if row is None:
            raise NotFound("Route not found", details=route_id)
        stops = sorted(row.get("route_stops") or [], key=lambda rs: rs["stop_sequence"])
        route_stops = [
            RouteStop(
                stop_sequence=rs["stop_sequence"],
                estimated_travel_time=rs.get("estimated_travel_time") or 0,
                bus_stop=BusStop.model_validate(rs["bus_stops"]),
            )
            for rs in stops[:ROUTE_DETAIL_STOPS]
        ]
        return RouteDetails.model_validate({**row, "route_stops": route_stops})

    async def update_bus_location(self, update):
        row = update.model_dump(mode="json", exclude={"current_passengers"}, exclude_none=True)
        row["recorded_at"] = self.clock().isoformat()
        inserted = await self._call(self.client.insert, "bus_locations", row)
        if not inserted:
            raise UpstreamFailure("Failed to update location", details="no row returned")

        if update.current_passengers is not None:
            try:
                await self._call(
                    self.client.update, "buses", {"id": f"eq.{update.bus_id}"},
                    {"current_passengers": update.current_passengers},
                )
            except BusWhereError as e:
                # the location is already stored; the count catches up on the next report
                logger.error(f"Failed to update passenger count for bus {update.bus_id}: {e.details}")

        return BusLocation.model_validate(inserted[0])

    async def update_bus_status(self, update):
        changes = update.model_dump(exclude={"bus_id"}, exclude_none=True)
        rows = await self._call(self.client.update, "buses", {"id": f"eq.{update.bus_id}"}, changes)
        if not rows:
            raise NotFound("Bus not found", details=update.bus_id)
        return Bus.model_validate(rows[0])

    async def record_passenger_boarding(self, boarding):
        row = {**boarding.model_dump(exclude_none=True), "boarding_time": self.clock().isoformat()}
        inserted = await self._call(self.client.insert, "passenger_tracking", row)
        return inserted[0] if inserted else row
