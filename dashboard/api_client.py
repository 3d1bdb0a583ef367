"""
Dashboard API client
JSON over httpx with the session cookie; every failed call, including network errors, raises ApiError
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SESSION_COOKIE = 'ozvps_session'

# status of an ApiError raised when no response arrived
NETWORK_ERROR_STATUS = 0


class ApiError(Exception):
    """Non-2xx response from the dashboard API"""

    def __init__(self, status: int, message: str, code: Optional[str] = None,
                 data: Optional[Dict[str, Any]] = None):
        self.status = status
        self.message = message
        self.code = code
        self.data = data or {}
        super().__init__(message)


def error_from_response(response: httpx.Response) -> ApiError:
    """Prefer the API's own {"error": ...} message, else "<status>: <body text>" """
    data: Optional[Dict[str, Any]] = None
    try:
        parsed = response.json()
        if isinstance(parsed, dict):
            data = parsed
    except ValueError:
        data = None

    if data and data.get('error'):
        return ApiError(response.status_code, str(data['error']), data.get('code'), data)

    text = response.text or response.reason_phrase
    return ApiError(response.status_code, f"{response.status_code}: {text}", None, data)


class ApiClient:
    """Async client for the /api endpoints"""

    def __init__(self, base_url: str, session_id: Optional[str] = None,
                 on_session_error: Optional[Callable[[ApiError], None]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        cookies = {SESSION_COOKIE: session_id} if session_id else None
        self.on_session_error = on_session_error
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            cookies=cookies,
            timeout=timeout,
            transport=transport,
            headers={'Accept': 'application/json'},
        )

    async def request(self, method: str, path: str, json: Optional[Any] = None,
                      params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ {method} {path} failed: {e}")
            raise ApiError(NETWORK_ERROR_STATUS, str(e) or "Network error") from e

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise ApiError(response.status_code, "Invalid response from server") from e

        error = error_from_response(response)
        # only coded 401s come from the session middleware
        if response.status_code == 401 and error.code and self.on_session_error is not None:
            logger.info(f"🔒 Session rejected ({error.code or 'no code'})")
            self.on_session_error(error)
        raise error

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request('GET', path, params=params)

    async def post(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request('POST', path, json=json)

    async def put(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request('PUT', path, json=json)

    async def patch(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request('PATCH', path, json=json)

    async def delete(self, path: str, json: Optional[Any] = None) -> Any:
        return await self.request('DELETE', path, json=json)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> 'ApiClient':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
