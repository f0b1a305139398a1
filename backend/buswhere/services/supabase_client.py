import logging
from typing import Any, Dict, List, Optional

import requests

from ..errors import UpstreamFailure

logger = logging.getLogger(__name__)


class SupabaseError(UpstreamFailure):
    """A Supabase REST or auth call failed."""

    def __init__(self, message: str, details: Optional[Any] = None, upstream_status: Optional[int] = None):
        super().__init__(message, details)
        self.upstream_status = upstream_status


class SupabaseClient:
    """Minimal client for a hosted Supabase project.

    Talks to PostgREST (`/rest/v1`) for table access and to GoTrue
    (`/auth/v1`) for accounts, authenticating with the service-role key.
    """

    def __init__(self, url: str, service_role_key: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Supabase request {method} {path} failed: {str(e)}")
            raise SupabaseError("Datastore request failed", details=str(e))

        if response.status_code >= 400:
            try:
                body = response.json()
                detail = body.get("message") or body.get("msg") or body.get("error_description") or body
            except ValueError:
                detail = response.text
            logger.error(f"Supabase {method} {path} returned {response.status_code}: {detail}")
            raise SupabaseError("Datastore request failed", details=detail, upstream_status=response.status_code)

        if not response.content:
            return None
        return response.json()

    # PostgREST

    def select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        return self._request("GET", f"/rest/v1/{table}", params=params) or []

    def select_one(self, table: str, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        rows = self.select(table, {**params, "limit": "1"})
        return rows[0] if rows else None

    def insert(self, table: str, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._request(
            "POST", f"/rest/v1/{table}", json=row, headers={"Prefer": "return=representation"}
        ) or []

    def update(self, table: str, filters: Dict[str, str], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._request(
            "PATCH", f"/rest/v1/{table}", params=filters, json=values,
            headers={"Prefer": "return=representation"},
        ) or []

    def rpc(self, function: str, args: Dict[str, Any], params: Optional[Dict[str, str]] = None) -> Any:
        return self._request("POST", f"/rest/v1/rpc/{function}", json=args, params=params)

    # GoTrue

    def create_user(self, email: str, password: str, user_metadata: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/auth/v1/admin/users", json={
            "email": email,
            "password": password,
            "email_confirm": True,
            "user_metadata": user_metadata,
        })

    def delete_user(self, user_id: str) -> None:
        self._request("DELETE", f"/auth/v1/admin/users/{user_id}")

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        return self._request(
            "POST", "/auth/v1/token", params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
