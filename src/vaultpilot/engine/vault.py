"""HashiCorp Vault engine client.

Talks to the ``sys/`` endpoints of a single Vault node:

- ``GET/PUT /v1/sys/init`` - one-time initialize with PGP-encrypted shares
- ``GET /v1/sys/seal-status`` - seal state and unseal progress
- ``PUT /v1/sys/unseal`` - submit one share
- ``PUT /v1/sys/policy/<name>`` - write an ACL policy (needs a token)
"""

import logging
import ssl
from typing import Any

import httpx

from vaultpilot.engine.base import InitResult, SecretEngine
from vaultpilot.errors import AlreadyInitialized, EngineError
from vaultpilot.models import RecipientIdentity, SealStatus

logger = logging.getLogger(__name__)


class HashiCorpVaultEngine(SecretEngine):
    """Vault HTTP API client for one node."""

    def __init__(
        self,
        vault_addr: str = "http://127.0.0.1:8200",
        vault_token: str | None = None,
        vault_namespace: str | None = None,
        timeout: float = 30.0,
        node: int | None = None,
        ca_cert: str | None = None,
    ):
        """Initialize Vault client.

        Args:
            vault_addr: Vault server address
            vault_token: Token used for policy writes (not needed to init or unseal)
            vault_namespace: Vault namespace (enterprise feature)
            timeout: Request timeout in seconds
            node: Node index, used in error reports
            ca_cert: CA certificate file to trust for https addresses;
                the system trust store is used when omitted

        Raises:
            EngineError: If the CA certificate cannot be loaded
        """
        self.vault_addr = vault_addr
        self.vault_token = vault_token
        self.vault_namespace = vault_namespace
        self.node = node
        self.ca_cert = ca_cert

        self.client = httpx.AsyncClient(
            base_url=vault_addr,
            headers=self._get_headers(),
            timeout=timeout,
            verify=self._verify(ca_cert),
        )

    def _verify(self, ca_cert: str | None) -> ssl.SSLContext | bool:
        if not ca_cert:
            return True
        try:
            return ssl.create_default_context(cafile=ca_cert)
        except (OSError, ssl.SSLError) as e:
            raise EngineError(
                f"Cannot load CA certificate {ca_cert}: {e}", node=self.node, step="connect"
            ) from e

    def _get_headers(self) -> dict[str, str]:
        """Get HTTP headers for Vault requests."""
        headers = {}
        if self.vault_token:
            headers["X-Vault-Token"] = self.vault_token
        if self.vault_namespace:
            headers["X-Vault-Namespace"] = self.vault_namespace
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise EngineError(
                f"Failed to connect to Vault at {self.vault_addr}: {e}", node=self.node
            ) from e

    @staticmethod
    def _errors(response: httpx.Response) -> str:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            errors = []
        return "; ".join(errors) if errors else response.text

    async def is_initialized(self) -> bool:
        response = await self._request("GET", "/v1/sys/init")
        if response.status_code != 200:
            raise EngineError(
                f"Vault error: {response.status_code} - {self._errors(response)}",
                node=self.node,
                step="init-status",
            )
        return bool(response.json().get("initialized"))

    async def initialize(self, identities: list[RecipientIdentity], threshold: int) -> InitResult:
        """Initialize Vault with one PGP-encrypted share per identity.

        Args:
            identities: Recipients; their base64 PGP keys go to ``pgp_keys``
            threshold: ``secret_threshold``

        Returns:
            Raw init output (hex-encoded encrypted keys + root token)
        """
        if await self.is_initialized():
            raise AlreadyInitialized("Vault is already initialized", node=self.node, step="init")

        payload = {
            "secret_shares": len(identities),
            "secret_threshold": threshold,
            "pgp_keys": [identity.public_key for identity in identities],
        }
        response = await self._request("PUT", "/v1/sys/init", json=payload)

        if response.status_code == 400 and "already initialized" in self._errors(response):
            raise AlreadyInitialized("Vault is already initialized", node=self.node, step="init")
        if response.status_code != 200:
            raise EngineError(
                f"Failed to initialize: {response.status_code} - {self._errors(response)}",
                node=self.node,
                step="init",
            )

        data = response.json()
        logger.info("Vault at %s initialized (%d shares)", self.vault_addr, len(data["keys"]))
        return InitResult(keys=data["keys"], root_token=data["root_token"])

    @staticmethod
    def _parse_status(data: dict[str, Any]) -> SealStatus:
        return SealStatus(
            sealed=data["sealed"],
            threshold=data.get("t", 0),
            share_count=data.get("n", 0),
            progress=data.get("progress", 0),
            initialized=data.get("initialized", True),
        )

    async def seal_status(self) -> SealStatus:
        response = await self._request("GET", "/v1/sys/seal-status")
        if response.status_code != 200:
            raise EngineError(
                f"Vault error: {response.status_code} - {self._errors(response)}",
                node=self.node,
                step="seal-status",
            )
        return self._parse_status(response.json())

    async def unseal(self, share: str) -> SealStatus:
        response = await self._request("PUT", "/v1/sys/unseal", json={"key": share})
        if response.status_code != 200:
            raise EngineError(
                f"Unseal rejected: {response.status_code} - {self._errors(response)}",
                node=self.node,
                step="unseal",
            )
        return self._parse_status(response.json())

    async def write_policy(self, name: str, document: str) -> None:
        if not self.vault_token:
            raise EngineError("Vault token required to write policies", node=self.node)

        response = await self._request(
            "PUT", f"/v1/sys/policy/{name}", json={"policy": document}
        )
        if response.status_code not in (200, 204):
            raise EngineError(
                f"Failed to write policy '{name}': {response.status_code} - "
                f"{self._errors(response)}",
                node=self.node,
                step="policy",
            )
        logger.info("Wrote policy '%s' via %s", name, self.vault_addr)

    async def close(self) -> None:
        await self.client.aclose()
