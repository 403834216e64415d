# -*- coding: utf-8 -*-
"""
S3 兼容存储测试
"""

import pytest

from picnexus.core.s3 import S3Store
from picnexus.errors import AuthError, StorageError, ValidationError
from picnexus.utils.config import S3Config
from tests.conftest import PNG_BYTES


@pytest.fixture
def store(s3_http, s3_config, no_retry_delay):
    return S3Store(s3_http, s3_config, no_retry_delay)


def test_r2_config():
    config = S3Config.for_r2("acc123", "AK", "SK", "pics")
    assert config.endpoint == "https://acc123.r2.cloudflarestorage.com"
    assert config.host == "acc123.r2.cloudflarestorage.com"
    assert config.scheme == "https"
    assert config.region == "auto"


async def test_incomplete_config(s3_http):
    with pytest.raises(ValidationError):
        S3Store(s3_http, S3Config(endpoint="https://example.com", bucket="pics"))


async def test_upload(store, s3_server):
    result = await store.upload(PNG_BYTES, "folder/a b.png")

    assert result.url == "https://img.example.com/folder/a b.png"
    assert result.key == "folder/a b.png"
    assert result.etag == s3_server.objects["folder/a b.png"]["etag"]
    assert s3_server.objects["folder/a b.png"]["data"] == PNG_BYTES

    request = s3_server.requests[-1]
    assert request.method == "PUT"
    assert request.url.raw_path == b"/pics/folder/a%20b.png"
    assert request.headers["content-type"] == "image/png"
    assert "/auto/s3/aws4_request" in request.headers["authorization"]
    assert request.headers["x-amz-content-sha256"] == "UNSIGNED-PAYLOAD"


async def test_upload_url_without_public_domain(s3_http, no_retry_delay):
    store = S3Store(s3_http, S3Config.for_r2("acc123", "AK", "SK", "pics"), no_retry_delay)
    result = await store.upload(b"x", "/a.png", content_type="image/png")
    assert result.url == "https://acc123.r2.cloudflarestorage.com/pics/a.png"


async def test_upload_file(store, s3_server, tmp_path):
    path = tmp_path / "local.gif"
    path.write_bytes(b"GIF89a")
    result = await store.upload_file(path, key="gifs/remote.gif")
    assert result.size == 6
    assert s3_server.requests[-1].headers["content-type"] == "image/gif"


async def test_upload_requires_key(store):
    with pytest.raises(ValidationError):
        await store.upload(b"x", "/")


async def test_connection_ok(store):
    assert "pics" in await store.test_connection()


async def test_connection_missing_bucket(s3_http, s3_server, no_retry_delay):
    store = S3Store(s3_http, S3Config.for_r2("acc123", "AK", "SK", "missing"), no_retry_delay)
    with pytest.raises(StorageError) as exc_info:
        await store.test_connection()
    assert exc_info.value.code == "NoSuchBucket"
    assert len(s3_server.requests) == 1


async def test_connection_denied_not_retried(store, s3_server):
    s3_server.deny = True
    with pytest.raises(AuthError):
        await store.test_connection()
    assert len(s3_server.requests) == 1


async def test_list_with_delimiter(store, s3_server):
    s3_server.put("a.png")
    s3_server.put("dir/b.png")
    s3_server.put("dir/c.png")

    result = await store.list_objects(delimiter="/")

    assert [o.key for o in result.objects] == ["a.png"]
    assert result.common_prefixes == ["dir/"]
    assert result.next_token is None
    assert result.objects[0].etag == s3_server.objects["a.png"]["etag"]


async def test_list_pagination(store, s3_server):
    for name in ("1.png", "2.png", "3.png"):
        s3_server.put(name)

    page = await store.list_objects(max_keys=2)
    assert len(page.objects) == 2
    assert page.is_truncated

    rest = await store.list_objects(max_keys=2, continuation_token=page.next_token)
    assert [o.key for o in rest.objects] == ["3.png"]
    assert not rest.is_truncated


async def test_list_all_sorted_newest_first(store, s3_server):
    s3_server.put("old.png", last_modified="2023-01-01T00:00:00.000Z")
    s3_server.put("new.png", last_modified="2024-06-01T00:00:00.000Z")
    s3_server.put("mid.png", last_modified="2024-01-01T00:00:00.000Z")

    objects = await store.list_all_objects(page_size=1)

    assert [o.key for o in objects] == ["new.png", "mid.png", "old.png"]
    list_requests = [r for r in s3_server.requests if r.method == "GET"]
    assert len(list_requests) == 3


async def test_list_rejects_bad_max_keys(store):
    with pytest.raises(ValidationError):
        await store.list_objects(max_keys=0)


async def test_delete_object_retries_network_errors(store, s3_server):
    s3_server.put("a.png")
    s3_server.delete_timeouts = 1

    await store.delete_object("a.png")

    assert "a.png" not in s3_server.objects
    assert [r.method for r in s3_server.requests] == ["DELETE", "DELETE"]


async def test_delete_objects_collects_failures(store, s3_server):
    for name in ("a.png", "b.png", "c.png"):
        s3_server.put(name)
    s3_server.failing_keys = {"b.png"}

    result = await store.delete_objects(["a.png", "b.png", "c.png"])

    assert result.succeeded == ["a.png", "c.png"]
    assert [key for key, _ in result.failed] == ["b.png"]
    assert "InternalError" in result.failed[0][1]
    assert set(s3_server.objects) == {"b.png"}


async def test_create_folder(store, s3_server):
    key = await store.create_folder("/photos/2024/")
    assert key == "photos/2024/"
    assert s3_server.objects["photos/2024/"]["data"] == b""

    result = await store.list_objects(prefix="photos/")
    assert result.objects[0].is_folder
    assert result.objects[0].name == "2024"


async def test_create_folder_requires_path(store):
    with pytest.raises(ValidationError):
        await store.create_folder("  / ")
