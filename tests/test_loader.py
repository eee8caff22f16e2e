import asyncio

import httpx
import pytest

from querydb.core import loader as loader_module
from querydb.core.exceptions import ErrorKind, QueryNotFoundError, QueryTimeoutError
from querydb.core.loader import ResourceLoader, join_path


def test_join_path():
    assert join_path("queries", "a.sql") == "queries/a.sql"
    assert join_path("queries/", "a.sql") == "queries/a.sql"
    assert join_path("queries", "db_migration", "main", "") == "queries/db_migration/main/"
    assert join_path("", "a.sql") == "a.sql"
    assert join_path("https://example.com/q/", "/a.sql") == "https://example.com/q/a.sql"


@pytest.mark.asyncio
async def test_reads_local_file(tmp_path):
    (tmp_path / "q.sql").write_text("select 1")

    assert await ResourceLoader().read_text(str(tmp_path / "q.sql")) == "select 1"


@pytest.mark.asyncio
async def test_missing_local_file(tmp_path):
    with pytest.raises(QueryNotFoundError) as error:
        await ResourceLoader().read_text(str(tmp_path / "missing.sql"))
    assert error.value.kind == ErrorKind.NOT_FOUND

    with pytest.raises(QueryNotFoundError):
        await ResourceLoader().read_text(str(tmp_path))


@pytest.mark.asyncio
async def test_local_read_times_out(tmp_path, monkeypatch):
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    monkeypatch.setattr(loader_module.asyncio, "to_thread", slow)

    with pytest.raises(QueryTimeoutError) as error:
        await ResourceLoader(timeout=0.01).read_text(str(tmp_path / "q.sql"))
    assert error.value.kind == ErrorKind.TIMEOUT


def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/queries/q.sql":
        return httpx.Response(200, text="select 2")
    if request.url.path == "/queries/slow.sql":
        raise httpx.ReadTimeout("timed out", request=request)
    return httpx.Response(404)


@pytest.mark.asyncio
async def test_reads_remote_resource():
    loader = ResourceLoader(transport=httpx.MockTransport(handler))

    assert await loader.read_text("http://test/queries/q.sql") == "select 2"


@pytest.mark.asyncio
async def test_remote_resource_not_found():
    loader = ResourceLoader(transport=httpx.MockTransport(handler))

    with pytest.raises(QueryNotFoundError) as error:
        await loader.read_text("http://test/queries/missing.sql")
    assert error.value.path == "http://test/queries/missing.sql"


@pytest.mark.asyncio
async def test_remote_resource_timeout():
    loader = ResourceLoader(timeout=1.0, transport=httpx.MockTransport(handler))

    with pytest.raises(QueryTimeoutError):
        await loader.read_text("https://test/queries/slow.sql")
