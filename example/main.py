import asyncio

import aiohttp
from control_plane_server import ControlPlaneServer
from resource_reconciler.control_plane_client import ControlPlaneClient, ResourceLifecycle
from resource_reconciler.errors import WaitError
from resource_reconciler.models import LifecycleConfig, ResourceHandle


async def status_changed(snapshot):
    print(f"Status changed to: {snapshot.status or '<absent>'}")
    print(f"Elapsed time: {snapshot.elapsed_time:.6f}s")


async def main():
    PORT = 8000
    server = ControlPlaneServer(convergence_time=5.0, visibility_lag=1.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Control plane started on http://localhost:{PORT}")

    config = LifecycleConfig(
        create_timeout=60.0, delete_timeout=60.0, min_delay=0.5, max_delay=4.0
    )
    handle = ResourceHandle(id="demo")

    async with aiohttp.ClientSession() as session:
        client = ControlPlaneClient(f"http://localhost:{PORT}", session)
        lifecycle = ResourceLifecycle(client, config, on_status_change=status_changed)

        try:
            created = await lifecycle.create(handle, {"size": 1})
            print(f"Created: {created.status} after {created.elapsed_time:.6f}s")

            deleted = await lifecycle.delete(handle)
            print(f"Deleted: absent={deleted.absent}")
        except TimeoutError as e:
            print(f"Timed out: {e}")
        except WaitError as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
