"""
Tests for the fixture-backed read queries: search, live locations,
nearby stops and route details.
"""
from datetime import timedelta

import pytest

from buswhere.errors import NotFound
from buswhere.models.transit import Bus, BusLocation, Route
from buswhere.services.fixture_store import ROUTES, FixtureStore
from buswhere.services.query_service import QueryService, degree_distance, eta_minutes

from conftest import FIXED_NOW


@pytest.fixture
def queries(fixed_store):
    return QueryService(fixed_store, clock=lambda: FIXED_NOW)


def _route_numbers(results):
    return [result.route.route_number for result in results]


# ============================================================
# SEARCH
# ============================================================

class TestSearch:

    def test_matches_route_name_case_insensitively(self, queries):
        results = queries.search("gachibowli")

        assert _route_numbers(results) == ["45A"]
        assert "12B" not in _route_numbers(results)

    def test_matches_route_number(self, queries):
        assert _route_numbers(queries.search("45a")) == ["45A"]

    def test_matches_end_location(self, queries):
        assert _route_numbers(queries.search("Ameerpet")) == ["12B"]

    def test_no_match_returns_empty_list(self, queries):
        assert queries.search("Vijayawada") == []

    def test_whitespace_is_part_of_the_query(self, queries):
        assert queries.search(" 45a") == []

    def test_empty_query_returns_every_active_route(self):
        routes = [Route(**{**r, "is_active": r["id"] != "3"}) for r in ROUTES]
        store = FixtureStore(routes=routes, stops=[], buses=[], locations=[])

        results = QueryService(store).search("")

        assert _route_numbers(results) == ["45A", "12B", "156", "290U"]
        assert all(result.buses == [] for result in results)

    def test_results_are_capped(self):
        routes = [
            Route(id=str(i), route_number=f"R{i}", route_name="Loop", start_location="A", end_location="B")
            for i in range(25)
        ]
        store = FixtureStore(routes=routes, stops=[], buses=[], locations=[])

        assert len(QueryService(store).search("loop")) == 20

    def test_bus_carries_latest_location_and_eta(self, fixed_store):
        queries = QueryService(fixed_store, clock=lambda: FIXED_NOW + timedelta(seconds=30))

        bus = queries.search("45A")[0].buses[0]

        assert bus.bus_number == "TS09AB1234"
        assert bus.location.next_stop == "Ameerpet Metro"
        assert bus.location.status == "on-time"
        assert bus.location.eta_minutes == 5
        assert bus.location.last_updated == FIXED_NOW

    def test_unknown_next_stop(self, queries):
        bus = queries.search("156")[0].buses[0]
        assert bus.location.next_stop == "Unknown"

    def test_bus_without_location(self):
        route = Route(**ROUTES[0])
        bus = Bus(id="b1", bus_number="TS01", route_id=route.id, capacity=40)
        store = FixtureStore(routes=[route], stops=[], buses=[bus], locations=[])

        result = QueryService(store).search("45A")[0].buses[0]

        assert result.location is None

    def test_inactive_buses_are_left_out(self, fixed_store, queries):
        fixed_store.replace_bus(fixed_store.get_bus("1").model_copy(update={"is_active": False}))

        assert queries.search("45A")[0].buses == []

    def test_coordinates_do_not_narrow_results(self, queries):
        assert queries.search("", latitude=0.0, longitude=0.0) == queries.search("")


# ============================================================
# ETA
# ============================================================

class TestEta:

    def test_rounds_up_to_whole_minutes(self):
        assert eta_minutes(FIXED_NOW + timedelta(seconds=61), FIXED_NOW) == 2

    def test_past_arrival_is_zero(self):
        assert eta_minutes(FIXED_NOW - timedelta(minutes=3), FIXED_NOW) == 0

    def test_missing_arrival_is_zero(self):
        assert eta_minutes(None, FIXED_NOW) == 0

    def test_naive_arrival_is_treated_as_utc(self):
        naive = (FIXED_NOW + timedelta(minutes=4)).replace(tzinfo=None)
        assert eta_minutes(naive, FIXED_NOW) == 4


# ============================================================
# LIVE LOCATIONS
# ============================================================

class TestLiveLocations:

    def test_recent_locations_are_enriched(self, queries):
        live = queries.get_live_locations()

        assert len(live) == 5
        first_bus = next(loc for loc in live if loc.bus_id == "1")
        assert first_bus.bus.bus_number == "TS09AB1234"
        assert first_bus.bus.route.route_number == "45A"
        assert first_bus.next_stop.stop_code == "AME003"

    def test_stale_locations_are_dropped(self, fixed_store):
        queries = QueryService(fixed_store, clock=lambda: FIXED_NOW + timedelta(minutes=11))
        assert queries.get_live_locations() == []

    def test_newest_first(self, fixed_store):
        later = FIXED_NOW + timedelta(minutes=1)
        fixed_store.insert_location(BusLocation(
            id="fresh", bus_id="3", latitude=17.48, longitude=78.41, recorded_at=later,
        ))

        live = QueryService(fixed_store, clock=lambda: later).get_live_locations()

        assert live[0].id == "fresh"
        assert [loc.recorded_at for loc in live] == sorted((loc.recorded_at for loc in live), reverse=True)

    def test_inactive_buses_are_left_out(self, fixed_store, queries):
        fixed_store.replace_bus(fixed_store.get_bus("2").model_copy(update={"is_active": False}))

        assert "2" not in {loc.bus_id for loc in queries.get_live_locations()}


# ============================================================
# NEARBY STOPS
# ============================================================

class TestNearbyStops:

    def test_stop_at_point(self, queries):
        stops = queries.get_nearby_stops(17.4374, 78.4482)
        assert [stop.stop_code for stop in stops] == ["AME003"]

    def test_radius_is_measured_in_degrees(self, queries):
        # about 2.15 km away, but 0.0198 degrees
        stops = queries.get_nearby_stops(17.4374 + 0.014, 78.4482 + 0.014, radius_km=2)
        assert [stop.stop_code for stop in stops] == ["AME003"]

    def test_small_radius_excludes(self, queries):
        assert queries.get_nearby_stops(17.4374 + 0.014, 78.4482 + 0.014, radius_km=1) == []

    def test_degree_distance(self):
        assert degree_distance(0, 0, 3, 4) == pytest.approx(5)


# ============================================================
# ROUTE DETAILS
# ============================================================

class TestRouteDetails:

    def test_first_stops_with_travel_times(self, queries):
        details = queries.get_route_details("1")

        assert details.route_number == "45A"
        assert [rs.stop_sequence for rs in details.route_stops] == [1, 2, 3, 4, 5]
        assert [rs.estimated_travel_time for rs in details.route_stops] == [0, 10, 20, 30, 40]
        assert details.route_stops[0].bus_stop.stop_code == "SEC001"

    def test_unknown_route(self, queries):
        with pytest.raises(NotFound):
            queries.get_route_details("999")
