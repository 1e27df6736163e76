"""Metering portal session client.

The portal uses a cookie-backed ASP.NET session. Logging in is a two-step
handshake: an anonymous GET of the login page hands out the session cookie,
then a form-encoded POST with account and password binds that cookie to the
account. Every later call must go through the same cookie jar.

The portal answers HTTP 200 whether or not login succeeded; the outcome is
the ``Tag`` field of the JSON body (1 means success).
"""

import json
import logging
from typing import Optional

import httpx

from .errors import AuthError, FetchError

logger = logging.getLogger("dorm-collector.portal")

LOGIN_PAGE = "/Login/Login"
LOGIN_ENDPOINT = "/Login/LoginJson"

# Body tag the portal uses for a successful call
SUCCESS_TAG = 1

# Default headers (the portal only answers XHR-looking requests)
DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "application/json, text/javascript, */*; q=0.01",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "X-Requested-With": "XMLHttpRequest",
}


def upstream_message(payload: object) -> str:
    """Best-effort human-readable message from a portal response body."""
    if isinstance(payload, dict):
        for key in ("Message", "Msg", "message"):
            if payload.get(key):
                return str(payload[key])
    return str(payload)[:200]


class PortalSession:
    """Authenticated portal session.

    Opaque handle around the cookie jar established at login. Callers reuse it
    for every authenticated request and close it when done. Expiry is not
    tracked; a rejected call surfaces as FetchError.
    """

    def __init__(self, client: httpx.AsyncClient, account: str):
        self.client = client
        self.account = account

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the underlying HTTP client."""
        if not self.client.is_closed:
            await self.client.aclose()

    async def post_json(self, path: str) -> dict:
        """POST to an authenticated endpoint and decode the JSON body.

        Raises:
            FetchError: On timeout, transport error, HTTP error or non-JSON body
        """
        try:
            response = await self.client.post(path)
        except httpx.TimeoutException:
            raise FetchError(f"Timeout calling {path}")
        except httpx.HTTPError as e:
            raise FetchError(f"Error calling {path}: {e}")

        if response.status_code != 200:
            raise FetchError(f"HTTP {response.status_code} from {path}")

        try:
            payload = response.json()
        except json.JSONDecodeError:
            # Expired sessions get redirected to the HTML login page
            raise FetchError(f"Non-JSON response from {path} (session expired?)")

        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected response shape from {path}")
        return payload


class PortalClient:
    """Factory for authenticated portal sessions.

    Attributes:
        base_url: Portal root URL
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize portal client.

        Args:
            base_url: Portal root URL, e.g. https://wpp.nnnu.edu.cn
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _new_client(self) -> httpx.AsyncClient:
        """Create a fresh HTTP client with its own cookie jar."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            follow_redirects=True,
            timeout=self.timeout,
            headers={
                **DEFAULT_HEADERS,
                "Origin": self.base_url,
                "Referer": f"{self.base_url}{LOGIN_PAGE}",
            },
            transport=self._transport,
        )

    async def establish_session(self, account: str, password: str) -> PortalSession:
        """Log in and return a session bound to the account.

        Args:
            account: Portal account (usually a phone number)
            password: Portal password

        Returns:
            Authenticated PortalSession; the caller must close it

        Raises:
            AuthError: If the handshake fails for any reason. Not retried.
        """
        client = self._new_client()
        try:
            await self._step1_load_login_page(client)
            await self._step2_submit_credentials(client, account, password)
        except AuthError:
            await client.aclose()
            raise

        logger.info(f"Logged in as {mask_account(account)}")
        return PortalSession(client, account)

    async def _step1_load_login_page(self, client: httpx.AsyncClient):
        """Step 1: Load the login page to obtain the session cookie."""
        logger.debug("Step 1: Loading login page...")
        try:
            resp = await client.get(LOGIN_PAGE)
        except httpx.TimeoutException:
            raise AuthError("Timeout loading login page")
        except httpx.HTTPError as e:
            raise AuthError(f"Error loading login page: {e}")

        if resp.status_code != 200:
            raise AuthError(f"Login page returned HTTP {resp.status_code}")

    async def _step2_submit_credentials(self, client: httpx.AsyncClient, account: str, password: str):
        """Step 2: Submit account and password as form data."""
        logger.debug("Step 2: Submitting credentials...")
        data = {"account": account, "password": password}
        try:
            resp = await client.post(LOGIN_ENDPOINT, data=data)
        except httpx.TimeoutException:
            raise AuthError("Timeout submitting credentials")
        except httpx.HTTPError as e:
            raise AuthError(f"Error submitting credentials: {e}")

        if resp.status_code != 200:
            raise AuthError(f"Credential submission failed: HTTP {resp.status_code}")

        try:
            result = resp.json()
        except json.JSONDecodeError:
            raise AuthError(f"Unexpected login response: {resp.text[:200]}")

        if not isinstance(result, dict) or result.get("Tag") != SUCCESS_TAG:
            raise AuthError(f"Login rejected: {upstream_message(result)}")


def mask_account(account: str) -> str:
    """Mask an account for logging, e.g. 19940686925 -> 199****6925."""
    if len(account) <= 7:
        return "*" * len(account)
    return f"{account[:3]}****{account[-4:]}"
