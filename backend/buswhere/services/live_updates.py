import itertools
import logging
import random
import threading
from typing import Callable, Dict, Hashable, Optional

from ..models.transit import BusLocation, LocationChange
from .fixture_store import FixtureStore, utcnow
from .scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

Handler = Callable[[LocationChange], None]

POSITION_JITTER = 0.0005  # degrees either way
SPEED_JITTER = 5.0  # km/h either way
PASSENGER_JITTER = 2


class Subscription:
    """Returned by the simulator's subscribe calls; `cancel()` stops delivery."""

    def __init__(self, simulator: "LiveUpdateSimulator", key: Hashable, token: int):
        self._simulator = simulator
        self.key = key
        self._token = token
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._simulator._remove(self.key, self._token)


class LiveUpdateSimulator:
    """Stands in for a real-time location feed by jittering stored records.

    Every subscription key (all buses, one bus, one route) owns a single
    periodic task shared by its subscribers; the task is cancelled when the
    last subscriber leaves. `shutdown()` cancels everything still running.
    """

    def __init__(self, store: FixtureStore, scheduler: Scheduler, global_period: float = 10.0,
                 bus_period: float = 5.0, route_period: float = 15.0,
                 rng: Optional[random.Random] = None, clock=utcnow):
        self.store = store
        self.scheduler = scheduler
        self.global_period = global_period
        self.bus_period = bus_period
        self.route_period = route_period
        self.rng = rng or random.Random()
        self.clock = clock
        self._lock = threading.RLock()
        self._handlers: Dict[Hashable, Dict[int, Handler]] = {}
        self._timers: Dict[Hashable, ScheduledTask] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, handler: Handler) -> Subscription:
        """Receive an INSERT event each time a random bus moves."""
        return self._add(("global",), self.global_period, self._global_tick, handler)

    def subscribe_to_bus(self, bus_id: str, handler: Handler) -> Subscription:
        """Receive UPDATE events for one bus."""
        return self._add(("bus", bus_id), self.bus_period, lambda: self._bus_tick(bus_id), handler)

    def subscribe_to_route(self, route_id: str, handler: Handler) -> Subscription:
        """Receive passenger-count UPDATE events for buses on one route."""
        return self._add(("route", route_id), self.route_period, lambda: self._route_tick(route_id), handler)

    @property
    def active_timers(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._handlers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            logger.info(f"Live update simulator stopped {len(timers)} timers")

    def _add(self, key: Hashable, period: float, tick: Callable[[], None], handler: Handler) -> Subscription:
        token = next(self._tokens)
        with self._lock:
            self._handlers.setdefault(key, {})[token] = handler
            if key not in self._timers:
                self._timers[key] = self.scheduler.schedule(period, tick)
                logger.info(f"Started live update timer {key} every {period}s")
        return Subscription(self, key, token)

    def _remove(self, key: Hashable, token: int) -> None:
        timer = None
        with self._lock:
            handlers = self._handlers.get(key)
            if handlers is None:
                return
            handlers.pop(token, None)
            if not handlers:
                del self._handlers[key]
                timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
            logger.info(f"Stopped live update timer {key}")

    def _emit(self, key: Hashable, event: LocationChange) -> None:
        with self._lock:
            handlers = list(self._handlers.get(key, {}).values())
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Live update handler failed for {key}: {str(e)}", exc_info=True)

    def _jitter(self, location: BusLocation, with_speed: bool) -> BusLocation:
        update = {
            "latitude": location.latitude + self.rng.uniform(-POSITION_JITTER, POSITION_JITTER),
            "longitude": location.longitude + self.rng.uniform(-POSITION_JITTER, POSITION_JITTER),
            "recorded_at": self.clock(),
        }
        if with_speed:
            update["speed"] = max(0.0, location.speed + self.rng.uniform(-SPEED_JITTER, SPEED_JITTER))
        return location.model_copy(update=update)

    def _global_tick(self) -> None:
        current = (self.store.current_location(bus.id) for bus in self.store.buses())
        locations = [loc for loc in current if loc is not None]
        if not locations:
            return
        location = self.rng.choice(locations)
        stored = self.store.replace_location(self._jitter(location, with_speed=True))
        self._emit(("global",), LocationChange(event_type="INSERT", new=stored.model_dump(mode="json")))

    def _bus_tick(self, bus_id: str) -> None:
        location = self.store.current_location(bus_id)
        if location is None:
            return
        stored = self.store.replace_location(self._jitter(location, with_speed=False))
        self._emit(("bus", bus_id), LocationChange(
            event_type="UPDATE",
            new=stored.model_dump(mode="json"),
            old=location.model_dump(mode="json"),
        ))

    def _route_tick(self, route_id: str) -> None:
        buses = [bus for bus in self.store.buses() if bus.route_id == route_id]
        if not buses:
            return
        bus = self.rng.choice(buses)
        count = bus.current_passengers + self.rng.randint(-PASSENGER_JITTER, PASSENGER_JITTER)
        updated = bus.model_copy(update={"current_passengers": max(0, min(bus.capacity, count))})
        self.store.replace_bus(updated)
        self._emit(("route", route_id), LocationChange(
            event_type="UPDATE",
            new=updated.model_dump(mode="json"),
            old=bus.model_dump(mode="json"),
        ))
