import asyncio
import enum
import logging
from typing import List, Optional, Set

from ..models.transit import BusStop, LiveLocation, LocationChange, RouteDetails, SearchResult
from .live_updates import LiveUpdateSimulator, Subscription
from .tracking_service import TrackingService

logger = logging.getLogger(__name__)


class SearchState(str, enum.Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    READY = "ready"
    FAILED = "failed"


class TrackingController:
    """Latest search results and live locations for the presentation layer.

    Only the most recently started `search` may write results: each call
    takes a sequence number and a result is applied only if its number is
    still the latest issued. Live-location refreshes are independent of the
    search state and are triggered by the simulator's global tick.
    """

    def __init__(self, service: TrackingService, simulator: Optional[LiveUpdateSimulator] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.service = service
        self.state = SearchState.IDLE
        self.results: List[SearchResult] = []
        self.error: Optional[str] = None
        self.live_locations: List[LiveLocation] = []
        self.live_error: Optional[str] = None
        self.route_details: Optional[RouteDetails] = None
        self.route_error: Optional[str] = None
        self.nearby_stops: List[BusStop] = []
        self.stops_error: Optional[str] = None

        self._search_seq = 0
        self._live_seq = 0
        self._route_seq = 0
        self._stops_seq = 0
        self._live_applied = 0
        self._refreshing = 0
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        self._loop = loop
        self._subscription: Optional[Subscription] = None
        if simulator is not None:
            self._subscription = simulator.subscribe(self._on_location_change)

    @property
    def loading(self) -> bool:
        return self.state is SearchState.SEARCHING

    @property
    def live_refreshing(self) -> bool:
        return self._refreshing > 0

    async def search(self, query: str, latitude: Optional[float] = None,
                     longitude: Optional[float] = None) -> bool:
        """Run a search; returns False when a newer search superseded this one."""
        self._search_seq += 1
        seq = self._search_seq
        self.state = SearchState.SEARCHING
        self.error = None

        try:
            results = await self.service.search_buses(query, latitude, longitude)
        except Exception as e:
            if seq != self._search_seq:
                return False
            logger.error(f"Search for {query!r} failed: {str(e)}")
            self.results = []
            self.error = str(e) or "Failed to search buses"
            self.state = SearchState.FAILED
            return True

        if seq != self._search_seq:
            logger.debug(f"Discarding stale search #{seq} for {query!r}")
            return False
        self.results = results
        self.state = SearchState.READY
        return True

    async def refresh_live_locations(self) -> None:
        """Replace the stored live-location snapshot with a fresh one."""
        self._live_seq += 1
        seq = self._live_seq
        self._refreshing += 1
        try:
            locations = await self.service.get_live_locations()
            if seq > self._live_applied:
                self._live_applied = seq
                self.live_locations = locations
                self.live_error = None
        except Exception as e:
            logger.error(f"Failed to refresh live locations: {str(e)}")
            self.live_error = str(e)
        finally:
            self._refreshing -= 1

    async def load_route_details(self, route_id: Optional[str]) -> bool:
        """Load one route's details; returns False when a newer load superseded this one."""
        self._route_seq += 1
        seq = self._route_seq
        if not route_id:
            self.route_details = None
            return True
        self.route_error = None
        try:
            details = await self.service.get_route_details(route_id)
        except Exception as e:
            if seq != self._route_seq:
                return False
            self.route_details = None
            self.route_error = str(e) or "Failed to get route details"
            return True
        if seq != self._route_seq:
            logger.debug(f"Discarding stale details for route {route_id}")
            return False
        self.route_details = details
        return True

    async def load_nearby_stops(self, latitude: Optional[float], longitude: Optional[float],
                                radius: float = 2) -> bool:
        self._stops_seq += 1
        seq = self._stops_seq
        if latitude is None or longitude is None:
            self.nearby_stops = []
            return True
        self.stops_error = None
        try:
            stops = await self.service.get_nearby_stops(latitude, longitude, radius)
        except Exception as e:
            if seq != self._stops_seq:
                return False
            self.nearby_stops = []
            self.stops_error = str(e) or "Failed to get nearby stops"
            return True
        if seq != self._stops_seq:
            return False
        self.nearby_stops = stops
        return True

    def _on_location_change(self, event: LocationChange) -> None:
        # Called from the simulator's timer thread.
        if self._closed or self._loop is None or self._loop.is_closed():
            return
        logger.debug(f"Bus location {event.event_type}, refreshing live locations")
        self._loop.call_soon_threadsafe(self._spawn_refresh)

    def _spawn_refresh(self) -> None:
        if self._closed:
            return
        task = self._loop.create_task(self.refresh_live_locations())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for refreshes triggered by simulator ticks to finish."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        self._closed = True
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        for task in list(self._pending):
            task.cancel()
