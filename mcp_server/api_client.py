"""
API client for the Conclusion Evaluation Labeler backend.

Wraps all HTTP calls to the FastAPI backend, handling authentication
and mapping error responses back onto the labeler's exceptions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from evalblocks import CatalogExhausted, ReservationConflict, TransientStoreError


@dataclass
class APIConfig:
    """Configuration for the API client."""
    base_url: str = "http://127.0.0.1:8000"
    email: str = "annotator@example.org"
    password: str = "annotator-password"
    timeout: float = 30.0


class EvalApiClient:
    """
    Client for the Conclusion Evaluation Labeler API.

    Handles authentication via session cookies and provides typed methods
    for the survey, block and evaluation endpoints. An existing httpx.Client
    (for example a FastAPI TestClient) can be passed in instead of opening
    a new connection.
    """

    def __init__(self, config: Optional[APIConfig] = None, client: Optional[httpx.Client] = None):
        self.config = config or APIConfig()
        self._client = client or httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            follow_redirects=True,
        )
        self._authenticated = False

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request; transport failures and 5xx become TransientStoreError."""
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientStoreError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientStoreError(
                f"{method} {path} returned {response.status_code}: {_error_message(response)}"
            )
        return response

    def _ensure_auth(self) -> None:
        """Ensure we have a valid session."""
        if self._authenticated:
            return

        credentials = {"email": self.config.email, "password": self.config.password}

        # Try to register first (400 if the email is taken)
        response = self._request("POST", "/api/auth/register", json=credentials)
        if response.status_code == 200:
            self._authenticated = True
            return

        # Fall back to login
        response = self._request("POST", "/api/auth/login", json=credentials)
        response.raise_for_status()
        self._authenticated = True

    def get_auth_status(self) -> dict:
        """Get authentication mode."""
        response = self._request("GET", "/api/auth/status")
        response.raise_for_status()
        return response.json()

    def get_me(self) -> dict:
        """Get current user info."""
        self._ensure_auth()
        response = self._request("GET", "/api/me")
        response.raise_for_status()
        return response.json()

    def get_tasks(self) -> dict:
        """Get the normalized task catalog."""
        response = self._request("GET", "/api/tasks")
        response.raise_for_status()
        return response.json()

    def get_profile(self) -> dict:
        """Get (or create) the caller's annotator profile."""
        self._ensure_auth()
        response = self._request("GET", "/api/annotator")
        response.raise_for_status()
        return response.json()

    def submit_survey(self, expertise_group: str) -> dict:
        """Record the caller's expertise group."""
        self._ensure_auth()
        response = self._request(
            "PUT", "/api/annotator/survey", json={"expertise_group": expertise_group}
        )
        response.raise_for_status()
        return response.json()

    def get_next_block(self) -> dict:
        """
        Ask the allocator for a block decision.

        Raises CatalogExhausted when no block is left.
        """
        self._ensure_auth()
        response = self._request("GET", "/api/blocks/next")
        if response.status_code == 400:
            raise _exhausted(response)
        response.raise_for_status()
        return response.json()

    def reserve_block(self, block_number: int, expected_epoch: Optional[int] = None) -> dict:
        """
        Reserve a decided block for the caller.

        Raises ReservationConflict when the server rejects the write (409),
        CatalogExhausted when the block lies past the catalog (400).
        """
        self._ensure_auth()
        payload = {"block_number": block_number}
        if expected_epoch is not None:
            payload["expected_epoch"] = expected_epoch

        response = self._request("POST", "/api/blocks/reserve", json=payload)
        if response.status_code == 409:
            raise ReservationConflict(block_number, _error_message(response))
        if response.status_code == 400:
            raise _exhausted(response)
        response.raise_for_status()
        return response.json()

    def get_block_tasks(self, block_number: int) -> Optional[dict]:
        """Get the tasks of a block, or None if the block does not exist."""
        self._ensure_auth()
        response = self._request("GET", f"/api/blocks/{block_number}/tasks")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def get_progress(self) -> dict:
        """Get progress through the caller's block."""
        self._ensure_auth()
        response = self._request("GET", "/api/progress")
        response.raise_for_status()
        return response.json()

    def submit_evaluation(
        self,
        task_id: str,
        score_a: int,
        score_b: int,
        session_start_time: Optional[datetime] = None,
        evaluation_end_time: Optional[datetime] = None,
    ) -> dict:
        """Submit scores for one task of the caller's block."""
        self._ensure_auth()
        payload = {"task_id": task_id, "score_a": score_a, "score_b": score_b}
        if session_start_time:
            payload["session_start_time"] = session_start_time.isoformat()
        if evaluation_end_time:
            payload["evaluation_end_time"] = evaluation_end_time.isoformat()

        response = self._request("POST", "/api/evaluations", json=payload)
        response.raise_for_status()
        return response.json()

    def list_evaluations(self) -> dict:
        """List the caller's evaluations."""
        self._ensure_auth()
        response = self._request("GET", "/api/evaluations")
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _error_message(response: httpx.Response) -> str:
    """Pull a readable message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body.get("error") or body)
    return str(body)


def _exhausted(response: httpx.Response) -> CatalogExhausted:
    return CatalogExhausted(message=_error_message(response))
