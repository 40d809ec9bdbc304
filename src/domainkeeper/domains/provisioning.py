"""Certificate and routing provisioning collaborators.

The provisioning API registers an activated domain with the edge (routing
plus certificate) and removes it again on teardown. Failures are raised as
ProvisioningError; ``retryable`` tells the orchestrator whether the binding
may stay pending or must fail.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from domainkeeper.core.exceptions import ProvisioningError

logger = structlog.get_logger()

RETRYABLE_STATUS_CODES = frozenset({408, 409, 423, 425, 429})


def _is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


class BaseProvisioner(ABC):
    """Interface of the certificate/routing provisioning API."""

    @abstractmethod
    async def provision(self, domain: str, tenant_id: str, idempotency_key: str) -> None:
        """Register the domain with routing and request its certificate.

        Raises:
            ProvisioningError: If the downstream system rejected the request.
        """

    @abstractmethod
    async def teardown(self, domain: str, tenant_id: str) -> None:
        """Remove routing and certificate coverage for the domain.

        Raises:
            ProvisioningError: If the downstream system could not remove it.
        """

    async def close(self) -> None:
        """Release client resources."""


class HTTPProvisioner(BaseProvisioner):
    """Client for the provisioning HTTP API.

    ``POST {api_url}/domains`` provisions and ``DELETE {api_url}/domains/{domain}``
    tears down. Requests carry an ``Idempotency-Key`` header, so a retried
    provision for the same token is safe on the server side.
    """

    def __init__(
        self,
        api_url: str,
        api_token: str | None = None,
        timeout: float = 120.0,
        teardown_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.teardown_timeout = teardown_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        try:
            return await client.request(method, path, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ProvisioningError(
                f"Provisioning API did not respond within {timeout:g}s", retryable=True
            ) from e
        except httpx.ConnectError as e:
            raise ProvisioningError(
                f"Cannot reach provisioning API at {self.api_url}", retryable=True
            ) from e
        except httpx.RequestError as e:
            raise ProvisioningError(
                f"Provisioning request failed: {type(e).__name__}", retryable=True
            ) from e

    async def provision(self, domain: str, tenant_id: str, idempotency_key: str) -> None:
        resp = await self._request(
            "POST",
            "/domains",
            self.timeout,
            json={"domain": domain, "tenant_id": tenant_id},
            headers={"Idempotency-Key": idempotency_key},
        )
        if resp.is_success:
            logger.debug("Provisioning API accepted domain", domain=domain, status=resp.status_code)
            return

        retryable = _is_retryable_status(resp.status_code)
        raise ProvisioningError(
            f"Provisioning API returned {resp.status_code}: {_error_detail(resp)}",
            retryable=retryable,
        )

    async def teardown(self, domain: str, tenant_id: str) -> None:
        resp = await self._request(
            "DELETE",
            f"/domains/{domain}",
            self.teardown_timeout,
            params={"tenant_id": tenant_id},
        )
        # Already gone counts as torn down.
        if resp.is_success or resp.status_code == 404:
            return

        raise ProvisioningError(
            f"Teardown returned {resp.status_code}: {_error_detail(resp)}",
            retryable=_is_retryable_status(resp.status_code),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SimulatedProvisioner(BaseProvisioner):
    """Development provisioner that records calls and always succeeds."""

    def __init__(self) -> None:
        self.provisioned: dict[str, str] = {}

    async def provision(self, domain: str, tenant_id: str, idempotency_key: str) -> None:
        logger.info("Simulated provisioning", domain=domain, tenant_id=tenant_id)
        self.provisioned[domain] = tenant_id

    async def teardown(self, domain: str, tenant_id: str) -> None:
        logger.info("Simulated teardown", domain=domain, tenant_id=tenant_id)
        self.provisioned.pop(domain, None)
