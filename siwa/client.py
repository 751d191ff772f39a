"""
SIWA Agent Client.

Signs in to a SIWA-protected service on behalf of an agent: fetches a
challenge, signs it with the agent's Ed25519 key and exchanges the
signature for a session token.

Example:
    ```python
    import asyncio
    import os
    from siwa.client import create_client

    async def main():
        async with create_client(os.environ["AGENT_SECRET_KEY"]) as client:
            session = await client.sign_in("https://api.example.com")
            headers = client.auth_headers(session)

    asyncio.run(main())
    ```
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx

from siwa.errors import SIWAError
from siwa.keys import KeyPair
from siwa.message import DEFAULT_CHAIN_ID, create_message, serialize_message
from siwa.server import Session

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class SIWAClientError(SIWAError):
    """The service rejected a sign-in request or returned an unusable response."""

    code = "client_error"
    http_status = 502
    message = "SIWA request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[Any] = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class SignedMessage:
    """A serialized message and its base58 signature."""

    message: str
    signature: str


class SIWAClient:
    """
    Async client for signing in to SIWA services.

    The client owns its httpx.AsyncClient unless one is passed in, in which
    case closing it is left to the caller.
    """

    def __init__(
        self,
        keypair: KeyPair,
        chain_id: str = DEFAULT_CHAIN_ID,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize the client.

        Args:
            keypair: The agent's signing key.
            chain_id: Network named in messages built by create_signed_message.
            http_client: Optional preconfigured httpx.AsyncClient.
            timeout: Request timeout in seconds for the owned client.
        """
        self.keypair = keypair
        self.chain_id = chain_id
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def address(self) -> str:
        """The agent's base58 public key."""
        return self.keypair.address

    def sign(self, message: str) -> str:
        """Sign message text, returning a base58 signature."""
        return self.keypair.sign_base58(message)

    def create_signed_message(
        self,
        domain: str,
        uri: str,
        statement: Optional[str] = None,
        resources: Optional[List[str]] = None,
        nonce: Optional[str] = None,
    ) -> SignedMessage:
        """Build and sign a message locally, without contacting a service."""
        message = create_message(
            domain=domain,
            address=self.address,
            uri=uri,
            statement=statement,
            chain_id=self.chain_id,
            nonce=nonce,
            resources=resources,
        )
        text = serialize_message(message)
        return SignedMessage(message=text, signature=self.sign(text))

    async def sign_in(self, service_url: str) -> Session:
        """
        Run the challenge/verify exchange against a service.

        Args:
            service_url: Base URL of the service; "/siwa/..." paths are appended.

        Returns:
            The session issued by the service.

        Raises:
            SIWAClientError: On a non-2xx response, a malformed response body
                or a connection failure.
        """
        base = service_url.rstrip("/")

        challenge = await self._request(
            "GET", f"{base}/siwa/challenge", params={"pubkey": self.address}
        )
        message = challenge.get("message")
        if not isinstance(message, str):
            raise SIWAClientError("Challenge response has no message", body=challenge)

        data = await self._request(
            "POST",
            f"{base}/siwa/verify",
            json={"message": message, "pubkey": self.address, "signature": self.sign(message)},
        )

        try:
            session = Session(
                token=data["token"],
                address=data.get("address", self.address),
                expires_at=data["expiresAt"],
                scopes=list(data.get("scopes") or []),
            )
        except (KeyError, TypeError):
            raise SIWAClientError("Verify response is missing session fields", body=data) from None

        logger.info(f"Signed in to {base} as {self.address}")
        return session

    @staticmethod
    def auth_headers(session: Union[Session, str]) -> Dict[str, str]:
        """Return the Authorization header for a session or raw token."""
        token = session.token if isinstance(session, Session) else session
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise SIWAClientError(f"Cannot reach {url}: {e}") from e

        self._handle_error_status(response)
        try:
            data = response.json()
        except ValueError:
            raise SIWAClientError(
                f"Invalid JSON from {url}", status_code=response.status_code, body=response.text
            ) from None
        if not isinstance(data, dict):
            raise SIWAClientError(
                f"Unexpected response from {url}", status_code=response.status_code, body=data
            )
        return data

    def _handle_error_status(self, response: httpx.Response) -> None:
        """Raise SIWAClientError for non-2xx responses."""
        if response.is_success:
            return
        try:
            body: Any = response.json()
            detail = body.get("error", "Unknown error") if isinstance(body, dict) else body
        except ValueError:
            body = response.text
            detail = body or f"HTTP {response.status_code}"
        logger.debug(f"SIWA request to {response.request.url} failed: {response.status_code}")
        raise SIWAClientError(
            f"Request failed ({response.status_code}): {detail}",
            status_code=response.status_code,
            body=body,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SIWAClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_client(
    secret_key: Union[str, bytes],
    chain_id: str = DEFAULT_CHAIN_ID,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SIWAClient:
    """
    Create a client from a secret key.

    Args:
        secret_key: Base58 text or raw bytes, either a 32-byte seed or the
            64-byte seed+public layout used by Solana wallets.
        chain_id: Network named in locally built messages.
        http_client: Optional preconfigured httpx.AsyncClient.
    """
    return SIWAClient(KeyPair.from_secret_key(secret_key), chain_id=chain_id, http_client=http_client)
