import asyncio
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from loguru import logger

from resource_reconciler.classifier import ErrorClassifier, ErrorRule
from resource_reconciler.errors import RemoteAPIError, WaitTimeoutError
from resource_reconciler.models import (
    ABSENT_STATUS,
    ErrorKind,
    LifecycleConfig,
    NotFoundPolicy,
    ResourceHandle,
    StatusSnapshot,
    WaitSpec,
)
from resource_reconciler.probe import FinderStatusProbe
from resource_reconciler.resource_reconciler import Phase, reconcile, wait_for
from resource_reconciler.retry import retry_on_transient

STATUS_CREATING = "CREATING"
STATUS_ACTIVE = "ACTIVE"
STATUS_UPDATING = "UPDATING"
STATUS_DISABLING = "DISABLING"
STATUS_DISABLED = "DISABLED"
STATUS_DELETING = "DELETING"
# Never reported; a deleted resource simply stops being found
STATUS_DELETED = "DELETED"

CONTROL_PLANE_ERROR_RULES = [
    ErrorRule(kind=ErrorKind.not_found, code="ResourceNotFound"),
    ErrorRule(kind=ErrorKind.transient, code="ThrottlingException"),
    ErrorRule(kind=ErrorKind.transient, code="ConcurrentModification"),
]


class ControlPlaneClient:
    """Finder and mutating requests for resources of one control plane"""

    def __init__(self, base_url: str, session: aiohttp.ClientSession):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.classifier = ErrorClassifier(CONTROL_PLANE_ERROR_RULES)
        self.logger = logger

    def _collection_url(self, parent_id: Optional[str]) -> str:
        if parent_id is None:
            return f"{self.base_url}/resources"
        return f"{self.base_url}/parents/{parent_id}/resources"

    def _url(self, handle: ResourceHandle) -> str:
        return f"{self._collection_url(handle.parent_id)}/{handle.id}"

    async def _request(self, method: str, url: str, payload: Optional[dict] = None) -> dict:
        """Sends one request, raising RemoteAPIError for error responses"""
        async with self.session.request(method, url, json=payload) as response:
            if response.status >= 400:
                try:
                    body = await response.json()
                except (aiohttp.ContentTypeError, ValueError):
                    body = {}
                error = RemoteAPIError(
                    code=body.get("code", str(response.status)),
                    message=body.get("message", response.reason or ""),
                    status=response.status,
                )
                self.logger.debug(f"{method} {url} failed: {error}")
                raise error
            return await response.json()

    async def find_resource(self, handle: ResourceHandle) -> Optional[dict]:
        try:
            return await self._request("GET", self._url(handle))
        except RemoteAPIError as e:
            if e.code == "ResourceNotFound":
                return None
            raise

    async def create_resource(self, handle: ResourceHandle, properties: dict) -> dict:
        self.logger.debug(f"Creating {handle}")
        return await self._request(
            "POST",
            self._collection_url(handle.parent_id),
            {"id": handle.id, "properties": properties},
        )

    async def update_resource(self, handle: ResourceHandle, properties: dict) -> dict:
        self.logger.debug(f"Updating {handle}")
        return await self._request("PATCH", self._url(handle), {"properties": properties})

    async def disable_resource(self, handle: ResourceHandle) -> dict:
        self.logger.debug(f"Disabling {handle}")
        return await self._request("POST", f"{self._url(handle)}/disable")

    async def delete_resource(self, handle: ResourceHandle) -> dict:
        self.logger.debug(f"Deleting {handle}")
        return await self._request("DELETE", self._url(handle))

    def status_probe(self, handle: ResourceHandle) -> FinderStatusProbe:
        return FinderStatusProbe(handle, self.find_resource, lambda r: r["status"])


class ResourceLifecycle:
    """Create, read, update and delete handlers that wait for convergence"""

    def __init__(
        self,
        client: ControlPlaneClient,
        config: Optional[LifecycleConfig] = None,
        on_status_change: Optional[Callable[[StatusSnapshot], Awaitable[Any]]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.client = client
        self.config = config or LifecycleConfig()
        self.on_status_change = on_status_change
        self.cancel_event = cancel_event
        self.logger = logger

    def _wait_spec(self, timeout: float, **kwargs: Any) -> WaitSpec:
        return WaitSpec(
            timeout=timeout,
            min_delay=self.config.min_delay,
            max_delay=self.config.max_delay,
            backoff_factor=self.config.backoff_factor,
            **kwargs,
        )

    def _options(self) -> dict:
        return {
            "classifier": self.client.classifier,
            "on_status_change": self.on_status_change,
            "cancel_event": self.cancel_event,
        }

    async def create(self, handle: ResourceHandle, properties: dict) -> StatusSnapshot:
        # Newly created resources may 404 for a while before showing up
        phase = Phase(
            name="create",
            action=lambda: self.client.create_resource(handle, properties),
            spec=self._wait_spec(
                self.config.create_timeout,
                target={STATUS_ACTIVE},
                pending={STATUS_CREATING},
                not_found_policy=NotFoundPolicy.continue_polling,
                not_found_checks=self.config.not_found_checks,
            ),
            resume_statuses={STATUS_CREATING},
        )
        return await reconcile([phase], self.client.status_probe(handle), **self._options())

    async def read(self, handle: ResourceHandle) -> Optional[dict]:
        return await self.client.find_resource(handle)

    async def update(self, handle: ResourceHandle, properties: dict) -> StatusSnapshot:
        loop = asyncio.get_event_loop()
        started = loop.time()
        await retry_on_transient(
            lambda: self.client.update_resource(handle, properties),
            timeout=self.config.update_timeout,
            classifier=self.client.classifier,
            min_delay=self.config.min_delay,
            max_delay=self.config.max_delay,
            backoff_factor=self.config.backoff_factor,
        )
        # The request and the wait share the update timeout
        remaining = self.config.update_timeout - (loop.time() - started)
        if remaining <= 0:
            raise WaitTimeoutError(
                f"{handle}: update accepted too late to wait for it",
                handle=handle,
                elapsed_time=loop.time() - started,
            )
        spec = self._wait_spec(
            remaining,
            target={STATUS_ACTIVE},
            pending={STATUS_UPDATING},
        )
        return await wait_for(self.client.status_probe(handle), spec, **self._options())

    async def delete(self, handle: ResourceHandle) -> StatusSnapshot:
        """Disables the resource, then deletes it and waits for it to disappear"""
        disable = Phase(
            name="disable",
            action=lambda: self.client.disable_resource(handle),
            spec=self._wait_spec(
                self.config.delete_timeout,
                target={STATUS_DISABLED},
                pending={STATUS_DISABLING},
            ),
            skip_statuses={STATUS_DELETING, ABSENT_STATUS},
            resume_statuses={STATUS_DISABLING},
        )
        delete = Phase(
            name="delete",
            action=lambda: self.client.delete_resource(handle),
            spec=self._wait_spec(
                self.config.delete_timeout,
                target={STATUS_DELETED},
                pending={STATUS_DISABLED, STATUS_DELETING},
                not_found_policy=NotFoundPolicy.success,
            ),
            resume_statuses={STATUS_DELETING},
        )
        return await reconcile(
            [disable, delete], self.client.status_probe(handle), **self._options()
        )
