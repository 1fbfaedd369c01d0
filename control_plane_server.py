import random
from datetime import datetime
from typing import Optional

from aiohttp import web
from loguru import logger

# In-flight status -> status reached once the transition has converged.
# None means the resource disappears.
TRANSITIONS = {
    "CREATING": "ACTIVE",
    "UPDATING": "ACTIVE",
    "DISABLING": "DISABLED",
    "DELETING": None,
}


class ControlPlaneServer:
    def __init__(
        self,
        convergence_time: float = 2.0,
        visibility_lag: float = 0.0,
        error_rate: float = 0.0,
    ):
        self.convergence_time = convergence_time
        self.visibility_lag = visibility_lag
        self.error_rate = error_rate
        self.resources = {}
        self.requests = []
        self.runner = None
        self.app = web.Application()
        for prefix in ("", "/parents/{parent_id}"):
            self.app.router.add_post(f"{prefix}/resources", self.handle_create)
            self.app.router.add_get(f"{prefix}/resources/{{id}}", self.handle_get)
            self.app.router.add_patch(f"{prefix}/resources/{{id}}", self.handle_update)
            self.app.router.add_post(
                f"{prefix}/resources/{{id}}/disable", self.handle_disable
            )
            self.app.router.add_delete(f"{prefix}/resources/{{id}}", self.handle_delete)
        self.logger = logger

    @staticmethod
    def _error(status: int, code: str, message: str = "") -> web.Response:
        return web.json_response({"code": code, "message": message}, status=status)

    @staticmethod
    def _key(request: web.Request, resource_id: Optional[str] = None) -> str:
        parent_id = request.match_info.get("parent_id")
        resource_id = resource_id or request.match_info["id"]
        return resource_id if parent_id is None else f"{parent_id}/{resource_id}"

    def _settle(self, key: str) -> Optional[dict]:
        """Applies a converged transition and returns the current resource, if any"""
        resource = self.resources.get(key)
        if resource is None or resource["status"] not in TRANSITIONS:
            return resource

        elapsed = (datetime.now() - resource["changed_at"]).total_seconds()
        if elapsed < self.convergence_time:
            return resource

        next_status = TRANSITIONS[resource["status"]]
        if next_status is None:
            self.logger.info(f"Resource {key} deleted")
            del self.resources[key]
            return None
        self.logger.info(f"Resource {key} is now {next_status}")
        resource["status"] = next_status
        return resource

    def _throttled(self) -> bool:
        return random.random() < self.error_rate

    def _transition(self, resource: dict, status: str) -> None:
        resource["status"] = status
        resource["changed_at"] = datetime.now()

    def _mutable(self, key: str, allowed: str):
        """Returns the resource, or an error response when it cannot change now"""
        resource = self._settle(key)
        if resource is None:
            return self._error(404, "ResourceNotFound", f"no resource {key}")
        if resource["status"] in TRANSITIONS:
            return self._error(
                409,
                "ConcurrentModification",
                f"resource {key} is {resource['status']}",
            )
        if resource["status"] != allowed:
            return self._error(
                409,
                "InvalidState",
                f"resource {key} is {resource['status']}, must be {allowed}",
            )
        return resource

    @staticmethod
    def _view(key: str, resource: dict) -> dict:
        return {
            "id": resource["id"],
            "parent_id": resource["parent_id"],
            "key": key,
            "status": resource["status"],
            "properties": resource["properties"],
        }

    async def handle_create(self, request: web.Request) -> web.Response:
        self.requests.append(("create", request.path))
        if self._throttled():
            return self._error(429, "ThrottlingException", "rate exceeded")

        body = await request.json()
        key = self._key(request, body["id"])
        if self._settle(key) is not None:
            return self._error(409, "ResourceAlreadyExists", f"{key} already exists")

        now = datetime.now()
        self.resources[key] = {
            "id": body["id"],
            "parent_id": request.match_info.get("parent_id"),
            "properties": body.get("properties", {}),
            "status": "CREATING",
            "changed_at": now,
            "created_at": now,
        }
        self.logger.info(f"Creating resource {key}")
        return web.json_response(self._view(key, self.resources[key]), status=201)

    async def handle_get(self, request: web.Request) -> web.Response:
        if self._throttled():
            self.logger.info("Returning throttling error")
            return self._error(429, "ThrottlingException", "rate exceeded")

        key = self._key(request)
        resource = self._settle(key)
        if resource is not None:
            age = (datetime.now() - resource["created_at"]).total_seconds()
            if age < self.visibility_lag:
                resource = None
        if resource is None:
            return self._error(404, "ResourceNotFound", f"no resource {key}")
        return web.json_response(self._view(key, resource))

    async def handle_update(self, request: web.Request) -> web.Response:
        self.requests.append(("update", request.path))
        key = self._key(request)
        resource = self._mutable(key, "ACTIVE")
        if isinstance(resource, web.Response):
            return resource

        body = await request.json()
        resource["properties"].update(body.get("properties", {}))
        self._transition(resource, "UPDATING")
        return web.json_response(self._view(key, resource))

    async def handle_disable(self, request: web.Request) -> web.Response:
        self.requests.append(("disable", request.path))
        key = self._key(request)
        resource = self._mutable(key, "ACTIVE")
        if isinstance(resource, web.Response):
            return resource

        self._transition(resource, "DISABLING")
        return web.json_response(self._view(key, resource))

    async def handle_delete(self, request: web.Request) -> web.Response:
        self.requests.append(("delete", request.path))
        key = self._key(request)
        resource = self._mutable(key, "DISABLED")
        if isinstance(resource, web.Response):
            return resource

        self._transition(resource, "DELETING")
        return web.json_response(self._view(key, resource))

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Control plane started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
