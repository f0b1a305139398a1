"""
Tests for the Supabase-backed services.
Uses mocks to avoid real network calls.
"""
from datetime import timedelta
from unittest.mock import MagicMock, Mock

import pytest
import requests

from buswhere.errors import Conflict, InvalidInput, NotFound, Unauthorized, UpstreamFailure
from buswhere.models.auth import DriverSignup, PassengerSignup
from buswhere.models.transit import LocationUpdate
from buswhere.services.auth_service import SupabaseAuthService
from buswhere.services.supabase_client import SupabaseClient, SupabaseError
from buswhere.services.tracking_service import SupabaseTrackingService, _ilike_term

from conftest import FIXED_NOW


def _response(status_code=200, body=None):
    response = Mock()
    response.status_code = status_code
    response.content = b"" if body is None else b"x"
    response.json.return_value = body
    response.text = str(body)
    return response


@pytest.fixture
def session():
    http = MagicMock()
    http.headers = {}
    return http


@pytest.fixture
def supabase(session):
    return SupabaseClient("https://project.supabase.co/", "service-key", timeout=3, session=session)


@pytest.fixture
def client_mock():
    return Mock(spec=SupabaseClient)


# ============================================================
# CLIENT
# ============================================================

class TestSupabaseClient:

    def test_authenticates_with_service_key(self, supabase, session):
        assert session.headers["apikey"] == "service-key"
        assert session.headers["Authorization"] == "Bearer service-key"

    def test_select(self, supabase, session):
        session.request.return_value = _response(body=[{"id": "1"}])

        rows = supabase.select("routes", {"select": "*"})

        assert rows == [{"id": "1"}]
        session.request.assert_called_once_with(
            "GET", "https://project.supabase.co/rest/v1/routes", timeout=3, params={"select": "*"},
        )

    def test_select_one_limits_to_one_row(self, supabase, session):
        session.request.return_value = _response(body=[])

        assert supabase.select_one("drivers", {"employee_id": "eq.DRV001"}) is None
        assert session.request.call_args.kwargs["params"]["limit"] == "1"

    def test_update_asks_for_rows_back(self, supabase, session):
        session.request.return_value = _response(body=[{"id": "1"}])

        supabase.update("buses", {"id": "eq.1"}, {"is_active": False})

        kwargs = session.request.call_args.kwargs
        assert session.request.call_args.args[0] == "PATCH"
        assert kwargs["headers"] == {"Prefer": "return=representation"}

    def test_error_status_raises(self, supabase, session):
        session.request.return_value = _response(422, {"msg": "User already registered"})

        with pytest.raises(SupabaseError) as excinfo:
            supabase.create_user("a@example.com", "pw", {})

        assert excinfo.value.upstream_status == 422
        assert excinfo.value.details == "User already registered"
        assert excinfo.value.status_code == 500

    def test_network_error_raises(self, supabase, session):
        session.request.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(SupabaseError):
            supabase.select("routes", {})

    def test_empty_body(self, supabase, session):
        session.request.return_value = _response(204)
        assert supabase.delete_user("u1") is None


# ============================================================
# TRACKING
# ============================================================

class TestSupabaseTracking:

    @pytest.mark.asyncio
    async def test_search_builds_filters_and_summaries(self, client_mock):
        client_mock.select.return_value = [{
            "id": "1", "route_number": "45A", "route_name": "Secunderabad to Gachibowli",
            "start_location": "Secunderabad", "end_location": "Gachibowli", "estimated_duration": 90,
            "buses": [{
                "id": "b1", "bus_number": "TS09AB1234", "current_passengers": 10, "capacity": 45,
                "bus_locations": [
                    {"latitude": 17.40, "longitude": 78.40, "speed": 20, "status": "on-time",
                     "estimated_arrival": None, "recorded_at": "2024-05-01T08:00:00+00:00", "bus_stops": None},
                    {"latitude": 17.43, "longitude": 78.49, "speed": 35, "status": "delayed",
                     "estimated_arrival": (FIXED_NOW + timedelta(minutes=7)).isoformat(),
                     "recorded_at": "2024-05-01T08:29:00+00:00",
                     "bus_stops": {"stop_name": "Ameerpet Metro", "stop_code": "AME003"}},
                ],
            }],
        }]
        service = SupabaseTrackingService(client_mock, clock=lambda: FIXED_NOW)

        results = await service.search_buses("gachi(bowli)")

        table, params = client_mock.select.call_args.args
        assert table == "routes"
        assert "route_name.ilike.*gachibowli*" in params["or"]
        location = results[0].buses[0].location
        assert location.status == "delayed"
        assert location.next_stop == "Ameerpet Metro"
        assert location.eta_minutes == 7

    @pytest.mark.asyncio
    async def test_empty_search_has_no_filter(self, client_mock):
        client_mock.select.return_value = []
        service = SupabaseTrackingService(client_mock)

        assert await service.search_buses("") == []
        assert "or" not in client_mock.select.call_args.args[1]

    @pytest.mark.asyncio
    async def test_live_locations_use_window(self, client_mock):
        client_mock.select.return_value = [{
            "id": "l1", "bus_id": "b1", "latitude": 17.4, "longitude": 78.4,
            "recorded_at": FIXED_NOW.isoformat(),
            "buses": {"id": "b1", "bus_number": "TS09", "current_passengers": 3, "capacity": 40,
                      "routes": {"route_number": "45A", "route_name": "Secunderabad to Gachibowli"}},
            "bus_stops": None,
        }]
        service = SupabaseTrackingService(client_mock, live_window=600, clock=lambda: FIXED_NOW)

        live = await service.get_live_locations()

        params = client_mock.select.call_args.args[1]
        assert params["recorded_at"] == f"gte.{(FIXED_NOW - timedelta(minutes=10)).isoformat()}"
        assert live[0].bus.route.route_number == "45A"

    @pytest.mark.asyncio
    async def test_missing_route(self, client_mock):
        client_mock.select_one.return_value = None

        with pytest.raises(NotFound):
            await SupabaseTrackingService(client_mock).get_route_details("9")

    @pytest.mark.asyncio
    async def test_passenger_count_failure_is_not_fatal(self, client_mock):
        client_mock.insert.return_value = [{
            "id": "l9", "bus_id": "b1", "latitude": 17.4, "longitude": 78.4,
            "recorded_at": FIXED_NOW.isoformat(),
        }]
        client_mock.update.side_effect = SupabaseError("Datastore request failed", details="boom")
        service = SupabaseTrackingService(client_mock, clock=lambda: FIXED_NOW)

        location = await service.update_bus_location(LocationUpdate(
            bus_id="b1", latitude=17.4, longitude=78.4, current_passengers=12,
        ))

        assert location.id == "l9"
        client_mock.update.assert_called_once()

    @pytest.mark.asyncio
    async def test_insert_without_row(self, client_mock):
        client_mock.insert.return_value = []

        with pytest.raises(UpstreamFailure):
            await SupabaseTrackingService(client_mock).update_bus_location(
                LocationUpdate(bus_id="b1", latitude=1, longitude=2)
            )

    def test_ilike_term_drops_filter_syntax_only(self):
        assert _ilike_term(" a,b(c) ") == " abc "


# ============================================================
# AUTH
# ============================================================

class TestSupabaseAuth:

    @pytest.mark.asyncio
    async def test_passenger_signup_duplicate(self, client_mock):
        client_mock.create_user.side_effect = SupabaseError("x", details="exists", upstream_status=422)

        with pytest.raises(Conflict):
            await SupabaseAuthService(client_mock).passenger_signup(
                PassengerSignup(email="a@example.com", password="pw", full_name="A")
            )

    @pytest.mark.asyncio
    async def test_signup_rejected_for_other_reasons(self, client_mock):
        client_mock.create_user.side_effect = SupabaseError("x", details="weak password", upstream_status=400)

        with pytest.raises(InvalidInput):
            await SupabaseAuthService(client_mock).passenger_signup(
                PassengerSignup(email="a@example.com", password="pw", full_name="A")
            )

    @pytest.mark.asyncio
    async def test_profile_failure_removes_auth_user(self, client_mock):
        client_mock.create_user.return_value = {"id": "u1", "email": "a@example.com"}
        client_mock.insert.side_effect = SupabaseError("x", details="constraint")

        with pytest.raises(UpstreamFailure):
            await SupabaseAuthService(client_mock).passenger_signup(
                PassengerSignup(email="a@example.com", password="pw", full_name="A")
            )

        client_mock.delete_user.assert_called_once_with("u1")

    @pytest.mark.asyncio
    async def test_driver_signup_existing_employee(self, client_mock):
        client_mock.select_one.return_value = {"employee_id": "DRV001"}

        with pytest.raises(Conflict):
            await SupabaseAuthService(client_mock).driver_signup(DriverSignup(
                employee_id="DRV001", full_name="R", phone_number="1", license_number="L",
            ))
        client_mock.create_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_passenger_login_bad_credentials(self, client_mock):
        client_mock.sign_in_with_password.side_effect = SupabaseError("x", upstream_status=400)

        with pytest.raises(Unauthorized):
            await SupabaseAuthService(client_mock).passenger_login("a@example.com", "bad")

    @pytest.mark.asyncio
    async def test_passenger_login_session(self, client_mock):
        client_mock.sign_in_with_password.return_value = {
            "access_token": "at", "refresh_token": "rt", "expires_at": 1714552200,
            "user": {"id": "u1", "email": "a@example.com"},
        }
        client_mock.select_one.return_value = {"id": "u1", "full_name": "A"}

        response = await SupabaseAuthService(client_mock).passenger_login("a@example.com", "pw")

        assert response["session"]["expires_at"] == 1714552200 * 1000
        assert response["profile"]["full_name"] == "A"

    @pytest.mark.asyncio
    async def test_driver_login_checks_otp_first(self, client_mock):
        with pytest.raises(InvalidInput):
            await SupabaseAuthService(client_mock).driver_login("DRV001", "123")
        client_mock.select_one.assert_not_called()
