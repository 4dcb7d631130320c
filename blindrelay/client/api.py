"""
HTTP client for the relay's REST interface.

Every body sent here is either public key material, SRP values, or opaque
ciphertext; the relay never receives a password or a private key.
"""

import logging
from typing import Any, Dict, Optional
import httpx

from .errors import InvalidCredentials, RelayError, UsernameTaken


logger = logging.getLogger(__name__)


class RelayClient:
    """
    Thin async wrapper over the relay endpoints.
    """

    def __init__(self, server_url: str = "http://localhost:8000",
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 10.0):
        """
        Initialize relay client.

        Args:
            server_url: Base URL of the relay
            transport: Optional httpx transport (in-process ASGI app in tests)
            timeout: Request timeout in seconds
        """
        self.server_url = server_url
        self.token: Optional[str] = None
        self.http_client = httpx.AsyncClient(
            base_url=server_url,
            transport=transport,
            timeout=timeout,
        )

    def set_token(self, token: Optional[str]):
        self.token = token

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        token = token or self.token
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> Any:
        response = await self.http_client.request(method, path, headers=self._headers(token), **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("detail", response.text) if isinstance(body, dict) else response.text
            logger.debug("%s %s -> %s", method, path, response.status_code)
            raise RelayError(response.status_code, str(detail))
        if not response.content:
            return {}
        return response.json()

    async def register(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create the account.

        Raises:
            UsernameTaken: If the username already exists
        """
        try:
            return await self._request("POST", "/auth/register", json=body)
        except RelayError as e:
            if e.status_code == 409:
                raise UsernameTaken(e.detail)
            raise

    async def get_kdf_params(self, username: str) -> Dict[str, Any]:
        """Fetch {kdf_salt, kdf_iterations} for master key derivation"""
        return await self._request("GET", f"/auth/params/{username}")

    async def srp_start(self, username: str, A: str) -> Dict[str, Any]:
        """SRP round 1: send A, receive {salt, B}"""
        try:
            return await self._request("POST", "/auth/srp/start", json={"username": username, "A": A})
        except RelayError as e:
            if e.status_code in (400, 401, 404):
                raise InvalidCredentials()
            raise

    async def srp_verify(self, username: str, A: str, M1: str) -> Dict[str, Any]:
        """SRP round 2: send M1, receive {token, M2, keys}"""
        try:
            return await self._request(
                "POST", "/auth/srp/verify",
                json={"username": username, "A": A, "M1": M1}
            )
        except RelayError as e:
            if e.status_code in (400, 401, 404):
                raise InvalidCredentials()
            raise

    async def update_transport_key(self, public_transport_key: str,
                                   encrypted_transport_key: str,
                                   encrypted_transport_iv: str) -> Dict[str, Any]:
        """Publish a rotated transport key and its sealed private half"""
        return await self._request(
            "PATCH", "/auth/keys/transport",
            json={
                "public_transport_key": public_transport_key,
                "encrypted_transport_key": encrypted_transport_key,
                "encrypted_transport_iv": encrypted_transport_iv,
            }
        )

    async def lookup_directory(self, handle: str) -> Dict[str, Any]:
        """Look up {handle, public_identity_key, public_transport_key}"""
        return await self._request("GET", "/api/directory", params={"handle": handle})

    async def send_message(self, recipient_handle: str, encrypted_blob: str,
                           message_id: str, event_type: str = "message") -> Dict[str, Any]:
        """Deliver an opaque serialized envelope to a handle"""
        return await self._request(
            "POST", "/messages/send",
            json={
                "recipient_handle": recipient_handle,
                "encrypted_blob": encrypted_blob,
                "message_id": message_id,
                "event_type": event_type,
            }
        )

    async def logout(self, token: Optional[str] = None) -> None:
        """End the session identified by token"""
        await self._request("POST", "/auth/logout", token=token)

    async def delete_account(self, token: Optional[str] = None) -> None:
        await self._request("DELETE", "/auth/account", token=token)

    async def aclose(self):
        await self.http_client.aclose()
