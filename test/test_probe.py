import pytest
from resource_reconciler.errors import RemoteAPIError
from resource_reconciler.models import Found, NotFound, PollError, ResourceHandle
from resource_reconciler.probe import FinderStatusProbe

HANDLE = ResourceHandle(id="res-1")


def finder(result):
    async def lookup(handle):
        if isinstance(result, Exception):
            raise result
        return result

    return lookup


@pytest.mark.asyncio
async def test_found():
    probe = FinderStatusProbe(HANDLE, finder({"status": "ACTIVE"}), lambda r: r["status"])

    result = await probe.probe()

    assert isinstance(result, Found)
    assert result.snapshot.status == "ACTIVE"
    assert result.snapshot.raw_response == {"status": "ACTIVE"}


@pytest.mark.asyncio
async def test_absent():
    probe = FinderStatusProbe(HANDLE, finder(None), lambda r: r["status"])

    assert isinstance(await probe.probe(), NotFound)


@pytest.mark.asyncio
async def test_lookup_error_returned():
    denied = RemoteAPIError("AccessDenied", status=403)
    probe = FinderStatusProbe(HANDLE, finder(denied), lambda r: r["status"])

    result = await probe.probe()

    assert isinstance(result, PollError)
    assert result.error is denied


@pytest.mark.asyncio
async def test_status_extractor_error_returned():
    """Test a broken status extractor being reported instead of raised."""
    probe = FinderStatusProbe(HANDLE, finder({"status": "ACTIVE"}), lambda r: r.status)

    result = await probe.probe()

    assert isinstance(result, PollError)
    assert isinstance(result.error, AttributeError)
