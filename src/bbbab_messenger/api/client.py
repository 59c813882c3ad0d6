"""BBBAB Messenger REST API client."""

from __future__ import annotations

import logging
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from ..errors import ApiConnectionError, ApiError, AuthenticationError
from ..utils.config import TokenProvider
from .models import Chat, HistoryPage, User

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)


class ChatApiClient:
    """Async client for the BBBAB Messenger REST API."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root, e.g. ``http://localhost:8080/api``
            token_provider: Source of the bearer token for authenticated calls
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ChatApiClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            follow_redirects=True,
            http2=True,
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not connected."""
        if self._client is None:
            raise ApiError("Client not connected. Call connect() first.")
        return self._client

    def _headers(self, authenticated: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if authenticated and self.token_provider is not None:
            token = self.token_provider.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        """Make an API request and return the decoded JSON body."""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        params = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            response = await self.client.request(
                method,
                url,
                params=params,
                json=json_data,
                headers=self._headers(authenticated),
            )
        except httpx.ConnectError as e:
            raise ApiConnectionError(f"Failed to connect to server: {e}") from e
        except httpx.TimeoutException as e:
            raise ApiConnectionError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ApiConnectionError(f"Request failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(self._error_message(response), status=401)

        if response.status_code >= 400:
            raise ApiError(
                f"HTTP {response.status_code}: {self._error_message(response)}",
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(
                f"Failed to parse response (status={response.status_code}): {e}. "
                f"Response: {response.text[:500]}"
            ) from e

        logger.debug("%s %s -> %d", method, endpoint, response.status_code)
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return response.reason_phrase

    @staticmethod
    def _parse(model: type[_M], data: Any) -> _M:
        """Validate a response body into a model, as an ApiError on failure."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ApiError(f"Unexpected {model.__name__} payload: {e.error_count()} validation error(s)") from e

    async def _get(self, endpoint: str, authenticated: bool = True, **params: Any) -> Any:
        """Make a GET request."""
        return await self._request("GET", endpoint, params=params, authenticated=authenticated)

    # System endpoints

    async def ping(self) -> bool:
        """Test server connectivity."""
        try:
            await self._get("ping", authenticated=False)
            return True
        except ApiError:
            return False

    # User endpoints

    async def get_current_user(self) -> User:
        """Return the authenticated user's profile."""
        data = await self._get("me")
        return self._parse(User, data)

    async def get_user(self, user_id: int) -> User:
        """Retrieve a user profile by id."""
        data = await self._get(f"user/{user_id}")
        return self._parse(User, data)

    async def search_users(self, prompt: str) -> list[User]:
        """Search users by partial username match."""
        data = await self._get(f"search/{quote(prompt, safe='')}")
        return [self._parse(User, u) for u in data or []]

    # Chat endpoints

    async def list_chats(self) -> list[Chat]:
        """Get the chats of the authenticated user."""
        data = await self._get("chat/list")
        if not isinstance(data, list):
            return []
        return [self._parse(Chat, c) for c in data]

    async def get_chat_messages(
        self,
        chat_id: int,
        cursor: str | None = None,
        limit: int = 20,
        direction: str = "older",
    ) -> HistoryPage:
        """
        Get a page of chat messages.

        Args:
            chat_id: Chat id
            cursor: Opaque cursor from a previous page, or None for the newest page
            limit: Maximum messages to return
            direction: "older" or "newer" relative to the cursor
        """
        data = await self._get(
            f"chat/{chat_id}/messages",
            cursor=cursor,
            limit=limit,
            direction=direction,
        )
        if not isinstance(data, dict):
            return HistoryPage()
        return self._parse(HistoryPage, data)
