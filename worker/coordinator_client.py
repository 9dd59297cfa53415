"""
Coordinator client for worker-coordinator communication.

Handles all HTTP communication with the coordinator server: session
handshake, assignment and model retrieval, delta reporting and leaving.
"""

import asyncio
import logging
from typing import Optional, Dict, Any

import httpx

from core.model import Model, ParameterDelta
from worker.identity import WorkerIdentity


logger = logging.getLogger(__name__)


class CoordinatorClient:
    """
    Client for communicating with the meshfed coordinator.

    Transport failures surface as httpx.HTTPError after the configured
    retries; malformed responses surface as ValueError.
    """

    def __init__(
        self,
        coordinator_url: str,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        hostname: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize coordinator client.

        Args:
            coordinator_url: URL of coordinator server
            timeout: Request timeout in seconds
            retry_attempts: Number of attempts per request
            retry_delay: Base delay between retries (exponential backoff)
            hostname: Reported to the coordinator during the handshake
            transport: Optional httpx transport (used by tests)
        """
        self.coordinator_url = coordinator_url.rstrip('/')
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.hostname = hostname

        # HTTP client (async)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._identity: Optional[WorkerIdentity] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic.

        Client errors (4xx) are not retried.

        Args:
            method: HTTP method (GET, POST, DELETE, etc.)
            endpoint: API endpoint (e.g., "/sessions/connect")
            **kwargs: Additional arguments for httpx request

        Returns:
            HTTP response

        Raises:
            httpx.HTTPError: If all retry attempts fail
        """
        client = await self._get_client()
        url = f"{self.coordinator_url}{endpoint}"

        last_exception = None
        for attempt in range(self.retry_attempts):
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    logger.error(
                        f"Request to {endpoint} rejected ({e.response.status_code}): "
                        f"{e.response.text}"
                    )
                    raise
                last_exception = e

            except httpx.HTTPError as e:
                last_exception = e

            if attempt < self.retry_attempts - 1:
                delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                logger.warning(
                    f"Request to {endpoint} failed (attempt {attempt + 1}/{self.retry_attempts}): "
                    f"{last_exception}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"Request to {endpoint} failed after {self.retry_attempts} attempts: "
                    f"{last_exception}"
                )

        raise last_exception

    async def connect(
        self,
        model_id: str,
        worker_id: Optional[str] = None,
        scope_id: Optional[str] = None
    ) -> WorkerIdentity:
        """
        Perform the session handshake.

        Without a scope id the coordinator creates a scope and makes this
        worker its creator; without a worker id it assigns one.

        Args:
            model_id: Model the worker wants to train
            worker_id: Existing worker id, if any
            scope_id: Existing scope id, if any

        Returns:
            Resolved identity
        """
        payload = {
            "model_id": model_id,
            "worker_id": worker_id,
            "scope_id": scope_id,
            "hostname": self.hostname
        }

        response = await self._request_with_retry(
            "POST",
            "/sessions/connect",
            json=payload
        )

        self._identity = WorkerIdentity.from_dict(response.json())
        logger.info(
            f"Connected as {self._identity.role.value} {self._identity.worker_id} "
            f"in scope {self._identity.scope_id}"
        )
        return self._identity

    async def fetch_assignment(self, identity: WorkerIdentity) -> Dict[str, Any]:
        """
        Get this worker's protocol/plan assignment and the scope roster.

        Returns:
            Raw assignment dictionary
        """
        response = await self._request_with_retry(
            "GET",
            f"/scopes/{identity.scope_id}/workers/{identity.worker_id}/assignment"
        )

        data = response.json()
        logger.info(
            f"Fetched assignment: protocol={data.get('protocol')}, "
            f"plans={data.get('plans')}, participants={len(data.get('participants', {}))}"
        )
        return data

    async def fetch_model(self, model_id: str) -> Model:
        """
        Download the canonical model.

        Args:
            model_id: Model identifier

        Returns:
            Model with deserialized parameters
        """
        response = await self._request_with_retry(
            "GET",
            f"/models/{model_id}"
        )

        model = Model.from_payload(response.json())
        logger.info(
            f"Fetched model {model.model_id} v{model.version} "
            f"({len(model)} tensors, {model.count_parameters():,} parameters)"
        )
        return model

    async def report(self, identity: WorkerIdentity, delta: ParameterDelta) -> Dict[str, Any]:
        """
        Report a parameter delta.

        Args:
            identity: Reporting worker
            delta: Delta computed by the round

        Returns:
            Acknowledgment from the coordinator
        """
        response = await self._request_with_retry(
            "POST",
            f"/scopes/{identity.scope_id}/workers/{identity.worker_id}/report",
            json=delta.to_payload()
        )

        ack = response.json()
        logger.info(f"Report accepted: {ack.get('reports_received')}/{ack.get('reports_expected')}")
        return ack

    async def leave(self, identity: WorkerIdentity) -> bool:
        """
        Leave the scope.

        Returns:
            True if successful, False otherwise
        """
        try:
            await self._request_with_retry(
                "DELETE",
                f"/scopes/{identity.scope_id}/workers/{identity.worker_id}"
            )
            logger.info(f"Worker {identity.worker_id} left scope {identity.scope_id}")
            return True

        except httpx.HTTPError as e:
            logger.warning(f"Failed to leave scope: {e}")
            return False

    def get_identity(self) -> Optional[WorkerIdentity]:
        """Identity from the last successful handshake."""
        return self._identity
