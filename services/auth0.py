"""
Auth0 identity service
Password-grant login, database signup and Management API user lookups
"""

import logging
import time
from typing import Dict, Optional, Any
from urllib.parse import quote

import httpx

from config import get_config

logger = logging.getLogger(__name__)

DB_CONNECTION = 'Username-Password-Authentication'
BLOCKED_ACCOUNT_MESSAGE = ("Your account has been banned by Support. "
                           "Please contact us at support@ozvps.com.au for further info.")


class Auth0Error(Exception):
    """Login/signup rejection or Auth0 API failure; message is safe to show the user"""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


def _user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'user_id': user.get('user_id') or user.get('sub'),
        'email': user.get('email'),
        'name': user.get('name') or user.get('nickname'),
        'email_verified': bool(user.get('email_verified')),
        'blocked': bool(user.get('blocked')),
        'app_metadata': user.get('app_metadata') or {},
    }


class Auth0Service:
    """Auth0 Authentication + Management API wrapper"""

    def __init__(self) -> None:
        auth0_config = get_config().auth0
        self.domain = auth0_config.domain
        self.client_id = auth0_config.client_id
        self.client_secret = auth0_config.client_secret
        self.base_url = f'https://{self.domain}' if self.domain else None

        self._management_token: Optional[str] = None
        self._management_token_expiry = 0.0

        if self.is_available():
            logger.info(f"🔧 Auth0 service initialized for {self.domain}")
        else:
            logger.info("🔧 Auth0 service initialized (missing credentials)")

    def is_available(self) -> bool:
        return bool(self.domain and self.client_id and self.client_secret)

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=15.0) as client:
            return await client.post(f'{self.base_url}{path}', json=payload)

    async def get_management_token(self) -> str:
        """Client-credentials token for the Management API, cached until 60s before expiry"""
        if self._management_token and time.time() < self._management_token_expiry:
            return self._management_token

        if not self.is_available():
            raise Auth0Error("Authentication service not configured", 503)

        response = await self._post('/oauth/token', {
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'audience': f'{self.base_url}/api/v2/',
        })
        if response.status_code != 200:
            logger.error(f"❌ Failed to get Auth0 management token: {response.status_code} {response.text[:200]}")
            raise Auth0Error("Failed to get management token", 502)

        data = response.json()
        self._management_token = data['access_token']
        self._management_token_expiry = time.time() + max(int(data.get('expires_in', 3600)) - 60, 0)
        return self._management_token

    async def _management_request(self, method: str, path: str, json: Optional[Dict] = None,
                                  params: Optional[Dict] = None) -> Optional[Any]:
        token = await self.get_management_token()
        async with httpx.AsyncClient(timeout=15.0) as client:
            response = await client.request(
                method,
                f'{self.base_url}/api/v2{path}',
                headers={'Authorization': f'Bearer {token}'},
                json=json,
                params=params,
            )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(f"❌ Auth0 management {method} {path} failed: {response.status_code} {response.text[:200]}")
            raise Auth0Error(f"Auth0 management API error: {response.status_code}", 502)
        return response.json() if response.content else {}

    async def authenticate_user(self, email: str, password: str) -> Dict[str, Any]:
        """Resource-owner password login; returns the user profile or raises Auth0Error"""
        if not self.is_available():
            raise Auth0Error("Authentication service not configured", 503)

        try:
            response = await self._post('/oauth/token', {
                'grant_type': 'password',
                'username': email,
                'password': password,
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'scope': 'openid profile email',
            })
        except httpx.HTTPError as e:
            logger.error(f"❌ Auth0 authentication error: {e}")
            raise Auth0Error("Authentication service unavailable", 503) from e

        if response.status_code != 200:
            error = response.json() if response.content else {}
            description = error.get('error_description') or ''
            logger.warning(f"⚠️ Auth0 login failed for {email}: {description}")
            if 'block' in description.lower():
                raise Auth0Error(BLOCKED_ACCOUNT_MESSAGE, 403)
            if error.get('error') == 'invalid_grant':
                raise Auth0Error("Invalid email or password", 401)
            raise Auth0Error(description or "Authentication failed", 401)

        access_token = response.json().get('access_token')
        async with httpx.AsyncClient(timeout=15.0) as client:
            info = await client.get(f'{self.base_url}/userinfo',
                                    headers={'Authorization': f'Bearer {access_token}'})
        if info.status_code != 200:
            logger.error(f"❌ Failed to get user info from Auth0: {info.status_code}")
            raise Auth0Error("Failed to get user information", 502)
        return _user_summary(info.json())

    async def create_user(self, email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        """Database-connection signup (does not need Management API scopes)"""
        if not self.is_available():
            raise Auth0Error("Authentication service not configured", 503)

        display_name = name or email.split('@')[0]
        try:
            response = await self._post('/dbconnections/signup', {
                'client_id': self.client_id,
                'email': email,
                'password': password,
                'connection': DB_CONNECTION,
                'name': display_name,
            })
        except httpx.HTTPError as e:
            logger.error(f"❌ Auth0 user creation error: {e}")
            raise Auth0Error("Account creation service unavailable", 503) from e

        if response.status_code >= 400:
            error = response.json() if response.content else {}
            logger.warning(f"⚠️ Auth0 user creation failed for {email}: {error}")
            description = error.get('description')
            if error.get('code') == 'invalid_signup' or (isinstance(description, str) and 'already exists' in description):
                raise Auth0Error("An account with this email already exists", 409)
            if error.get('code') == 'password_strength_error' or error.get('name') == 'PasswordStrengthError':
                raise Auth0Error("Password is too weak. Please use a stronger password.", 400)
            raise Auth0Error(description if isinstance(description, str) else
                             error.get('message') or "Failed to create account", 400)

        data = response.json()
        user_id = data.get('_id')
        return {
            'user_id': user_id if str(user_id).startswith('auth0|') else f'auth0|{user_id}',
            'email': data.get('email', email),
            'name': display_name,
            'email_verified': False,
            'blocked': False,
            'app_metadata': {},
        }

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        users = await self._management_request('GET', '/users-by-email', params={'email': email})
        if not users:
            return None
        return _user_summary(users[0])

    async def get_user(self, auth0_user_id: str) -> Optional[Dict[str, Any]]:
        user = await self._management_request('GET', f'/users/{quote(auth0_user_id, safe="")}')
        return _user_summary(user) if user else None

    async def set_virtfusion_user_id(self, auth0_user_id: str, virtfusion_user_id: Optional[int]) -> None:
        await self._management_request('PATCH', f'/users/{quote(auth0_user_id, safe="")}',
                                       json={'app_metadata': {'virtfusion_user_id': virtfusion_user_id}})
        logger.info(f"Stored VirtFusion user id {virtfusion_user_id} in Auth0 metadata for {auth0_user_id}")

    async def set_user_blocked(self, auth0_user_id: str, blocked: bool) -> None:
        await self._management_request('PATCH', f'/users/{quote(auth0_user_id, safe="")}',
                                       json={'blocked': blocked})


# Global instance
try:
    auth0_service = Auth0Service()
except Exception as e:
    logger.warning(f"Auth0 service not initialized: {e}")
    auth0_service = None
