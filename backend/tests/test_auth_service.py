"""
Tests for the fixture-backed account service.
"""
import base64
import random

import pytest

from buswhere.errors import Conflict, Forbidden, InvalidInput, NotFound, Unauthorized
from buswhere.models.auth import DriverSignup, DriverVerification, PassengerSignup, ProfileUpdate
from buswhere.services.auth_service import MockAuthService, check_otp_format, generate_otp

from conftest import FIXED_NOW


@pytest.fixture
def auth(fixed_store):
    return MockAuthService(fixed_store, clock=lambda: FIXED_NOW, rng=random.Random(42))


def _signup(**overrides):
    data = {"email": "asha@example.com", "password": "s3cret", "full_name": "Asha Rao"}
    data.update(overrides)
    return PassengerSignup(**data)


def _driver(**overrides):
    data = {"employee_id": "DRV100", "full_name": "Imran Khan",
            "phone_number": "+91 9000000000", "license_number": "TS0000000001"}
    data.update(overrides)
    return DriverSignup(**data)


class TestPassengers:

    @pytest.mark.asyncio
    async def test_signup_then_login(self, auth):
        created = await auth.passenger_signup(_signup())
        login = await auth.passenger_login("asha@example.com", "s3cret")

        assert created["success"] is True
        assert login["user"]["id"] == created["user"]["id"]
        assert login["profile"]["full_name"] == "Asha Rao"
        assert login["session"]["expires_at"] > int(FIXED_NOW.timestamp() * 1000)

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, auth):
        await auth.passenger_signup(_signup())
        with pytest.raises(Conflict):
            await auth.passenger_signup(_signup(full_name="Someone Else"))

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth):
        await auth.passenger_signup(_signup())
        with pytest.raises(Unauthorized):
            await auth.passenger_login("asha@example.com", "guess")

    @pytest.mark.asyncio
    async def test_unknown_email(self, auth):
        with pytest.raises(Unauthorized):
            await auth.passenger_login("nobody@example.com", "x")

    @pytest.mark.asyncio
    async def test_seeded_passenger_signs_in(self, auth):
        login = await auth.passenger_login("john.doe@example.com", "anything")
        assert login["user"]["id"] == "1"

    @pytest.mark.asyncio
    async def test_profile_update(self, auth, fixed_store):
        await auth.update_profile(ProfileUpdate(
            user_id="2", user_type="passenger", updates={"preferred_language": "te"},
        ))

        assert fixed_store.get_passenger("2").preferred_language == "te"
        assert (await auth.get_profile("2", "passenger"))["preferred_language"] == "te"

    @pytest.mark.asyncio
    async def test_profile_update_rejects_other_fields(self, auth):
        with pytest.raises(InvalidInput):
            await auth.update_profile(ProfileUpdate(user_id="2", updates={"email": "new@example.com"}))

    @pytest.mark.asyncio
    async def test_missing_profile(self, auth):
        with pytest.raises(NotFound):
            await auth.get_profile("404", "passenger")


class TestDrivers:

    @pytest.mark.asyncio
    async def test_signup_awaits_verification(self, auth):
        response = await auth.driver_signup(_driver())
        status = await auth.get_driver_status("DRV100")

        assert response["employee_id"] == "DRV100"
        assert status == {"employee_id": "DRV100", "full_name": "Imran Khan",
                          "is_verified": False, "is_active": False}

    @pytest.mark.asyncio
    async def test_duplicate_employee_id(self, auth):
        with pytest.raises(Conflict):
            await auth.driver_signup(_driver(employee_id="DRV001"))

    @pytest.mark.asyncio
    async def test_unverified_driver_gets_no_otp(self, auth):
        await auth.driver_signup(_driver())
        with pytest.raises(Forbidden):
            await auth.send_driver_otp("DRV100")

    @pytest.mark.asyncio
    async def test_unknown_driver_gets_no_otp(self, auth):
        with pytest.raises(NotFound):
            await auth.send_driver_otp("DRV999")

    @pytest.mark.asyncio
    async def test_verified_driver_flow(self, auth, fixed_store):
        await auth.driver_signup(_driver())
        driver = fixed_store.find_driver("DRV100")
        await auth.verify_driver(DriverVerification(driver_id=driver.id, is_verified=True, is_active=True))

        otp = (await auth.send_driver_otp("DRV100"))["debug_otp"]
        login = await auth.driver_login("DRV100", otp)

        assert len(otp) == 6 and otp.isdigit()
        assert login["driver"]["employee_id"] == "DRV100"
        token = base64.b64decode(login["session_token"]).decode()
        assert token == f"{driver.id}:{int(FIXED_NOW.timestamp() * 1000)}"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("otp", [None, "", "12345", "1234567"])
    async def test_malformed_otp_rejected_before_lookup(self, auth, otp):
        with pytest.raises(InvalidInput, match="Invalid OTP format"):
            await auth.driver_login("DRV999", otp)

    @pytest.mark.asyncio
    async def test_any_six_character_otp_is_accepted(self, auth):
        login = await auth.driver_login("DRV001", "abcdef")
        assert login["driver"]["full_name"] == "Rajesh Kumar"

    @pytest.mark.asyncio
    async def test_login_of_unverified_driver(self, auth):
        await auth.driver_signup(_driver())
        with pytest.raises(NotFound):
            await auth.driver_login("DRV100", "123456")

    @pytest.mark.asyncio
    async def test_verify_unknown_driver(self, auth):
        with pytest.raises(NotFound):
            await auth.verify_driver(DriverVerification(driver_id="nope", is_verified=True, is_active=True))


def test_generated_otp_has_six_digits():
    rng = random.Random(0)
    for _ in range(50):
        otp = generate_otp(rng)
        check_otp_format(otp)
        assert otp.isdigit()
