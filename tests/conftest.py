# -*- coding: utf-8 -*-
"""
测试夹具：基于 httpx.MockTransport 的假 TOS/CDN/STS 服务和假 S3 服务
"""

import hashlib
import itertools
from datetime import datetime, timezone
from typing import Dict, List, Set
from xml.sax.saxutils import escape

import httpx
import orjson
import pytest

from picnexus.utils.base_api import HttpClient
from picnexus.utils.config import HttpConfig, NamiConfig, RetryConfig, S3Config

TOS_HOST = "n-so.tos-cn-shanghai.volces.com"
CDN_HOST = "bfns.zhaomi.cn"
STS_HOST = "www.n.cn"
S3_HOST = "acc123.r2.cloudflarestorage.com"
BUCKET = "pics"

# 1x1 PNG
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)


class FakeTosServer:
    """纳米 STS + TOS 分片上传 + CDN 的内存实现

    对象只有在 complete 成功后才会在 CDN 上可见。
    """

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, Dict] = {}
        self.requests: List[httpx.Request] = []
        self.sts_calls = 0
        self.aborted: List[str] = []
        self._ids = itertools.count(1)

        # 故障注入
        self.part_timeouts = 0          # 接下来 N 次分片上传抛出超时
        self.init_status = None         # 初始化分片上传返回的状态码
        self.init_body = ""
        self.complete_status = None
        self.sts_response = None        # 覆盖 STS 响应 (status, body)
        self.xml_upload_id = False      # 以 XML 返回 UploadId

    @property
    def signed_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == TOS_HOST]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == STS_HOST:
            return self._sts(request)
        if host == CDN_HOST:
            return self._cdn(request)
        if host == TOS_HOST:
            if not request.headers.get("authorization", "").startswith("TOS4-HMAC-SHA256 "):
                return httpx.Response(403, text="<Error><Code>AccessDenied</Code></Error>")
            return self._tos(request)
        return httpx.Response(404)

    def _sts(self, request: httpx.Request) -> httpx.Response:
        self.sts_calls += 1
        if self.sts_response is not None:
            status, body = self.sts_response
            return httpx.Response(status, text=body)
        return httpx.Response(200, json={
            "code": 0,
            "data": {
                "access_key": f"AKTP{self.sts_calls}",
                "secret_access_key": "secret",
                "session_token": f"token-{self.sts_calls}",
            },
        })

    def _cdn(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.lstrip("/")
        if key in self.objects:
            return httpx.Response(200, headers={"content-length": str(len(self.objects[key]))})
        return httpx.Response(404)

    def _tos(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.lstrip("/")
        params = request.url.params

        if request.method == "POST" and "uploads" in params:
            if self.init_status is not None:
                return httpx.Response(self.init_status, text=self.init_body)
            upload_id = f"uid-{next(self._ids)}"
            self.uploads[upload_id] = {"key": key, "parts": {}}
            if self.xml_upload_id:
                return httpx.Response(200, text=(
                    '<?xml version="1.0" encoding="UTF-8"?>\r\n'
                    "<InitiateMultipartUploadResult>\r\n"
                    f"  <UploadId>{upload_id}</UploadId>\r\n"
                    "</InitiateMultipartUploadResult>"
                ))
            return httpx.Response(200, json={"Bucket": "n-so", "Key": key, "UploadId": upload_id})

        upload = self.uploads.get(params.get("uploadId", ""))
        if upload is None:
            return httpx.Response(404, text="<Error><Code>NoSuchUpload</Code></Error>")

        if request.method == "PUT":
            if self.part_timeouts > 0:
                self.part_timeouts -= 1
                raise httpx.ReadTimeout("mock part timeout", request=request)
            part_number = int(params["partNumber"])
            body = request.read()
            upload["parts"][part_number] = body
            return httpx.Response(200, headers={"ETag": f'"{hashlib.md5(body).hexdigest()}"'})

        if request.method == "POST":
            if self.complete_status is not None:
                return httpx.Response(self.complete_status, text="")
            parts = orjson.loads(request.read())["Parts"]
            numbers = [p["PartNumber"] for p in parts]
            self.objects[upload["key"]] = b"".join(upload["parts"][n] for n in numbers)
            del self.uploads[params["uploadId"]]
            return httpx.Response(200, json={"Key": upload["key"]})

        if request.method == "DELETE":
            self.aborted.append(params["uploadId"])
            del self.uploads[params["uploadId"]]
            return httpx.Response(204)

        return httpx.Response(405)


class FakeS3Server:
    """路径风格的 S3 兼容存储内存实现"""

    def __init__(self, bucket: str = BUCKET):
        self.bucket = bucket
        self.objects: Dict[str, Dict] = {}
        self.requests: List[httpx.Request] = []
        self.deny = False                # 模拟凭证无效
        self.failing_keys: Set[str] = set()
        self.delete_timeouts = 0
        self._clock = itertools.count(1)

    def put(self, key: str, data: bytes = b"x", last_modified: str = None):
        self.objects[key] = {
            "data": data,
            "last_modified": last_modified or f"2024-01-{next(self._clock):02d}T00:00:00.000Z",
            "etag": hashlib.md5(data).hexdigest(),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.deny or not request.headers.get("authorization", "").startswith("AWS4-HMAC-SHA256 "):
            return httpx.Response(403, text=(
                "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
                "<Error><Code>AccessDenied</Code><Message>Access Denied</Message></Error>"
            ))

        path = request.url.path
        bucket, _, key = path.lstrip("/").partition("/")
        if bucket != self.bucket:
            if request.method == "HEAD":
                return httpx.Response(404)
            return httpx.Response(404, text=(
                "<Error><Code>NoSuchBucket</Code><Message>The specified bucket does not exist</Message></Error>"
            ))

        if not key:
            if request.method == "HEAD":
                return httpx.Response(200)
            if request.method == "GET":
                return self._list(request)
            return httpx.Response(405)

        if request.method == "PUT":
            self.put(key, request.read())
            return httpx.Response(200, headers={"ETag": f'"{self.objects[key]["etag"]}"'})

        if request.method == "DELETE":
            if self.delete_timeouts > 0:
                self.delete_timeouts -= 1
                raise httpx.ConnectTimeout("mock delete timeout", request=request)
            if key in self.failing_keys:
                return httpx.Response(500, text=(
                    "<Error><Code>InternalError</Code><Message>We encountered an internal error</Message></Error>"
                ))
            self.objects.pop(key, None)
            return httpx.Response(204)

        return httpx.Response(405)

    def _list(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter")
        max_keys = int(params.get("max-keys", "1000"))
        start = int(params.get("continuation-token", "0") or 0)

        keys = sorted(k for k in self.objects if k.startswith(prefix))
        prefixes = []
        if delimiter:
            direct = []
            for k in keys:
                rest = k[len(prefix):]
                if delimiter in rest:
                    p = prefix + rest.split(delimiter, 1)[0] + delimiter
                    if p not in prefixes:
                        prefixes.append(p)
                else:
                    direct.append(k)
            keys = direct

        page = keys[start:start + max_keys]
        truncated = start + max_keys < len(keys)

        contents = "".join(
            "<Contents>"
            f"<Key>{escape(k)}</Key>"
            f"<LastModified>{self.objects[k]['last_modified']}</LastModified>"
            f"<ETag>&quot;{self.objects[k]['etag']}&quot;</ETag>"
            f"<Size>{len(self.objects[k]['data'])}</Size>"
            "<StorageClass>STANDARD</StorageClass>"
            "</Contents>"
            for k in page
        )
        common = "".join(f"<CommonPrefixes><Prefix>{escape(p)}</Prefix></CommonPrefixes>" for p in prefixes)
        token = f"<NextContinuationToken>{start + max_keys}</NextContinuationToken>" if truncated else ""
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
            f"<Name>{self.bucket}</Name><Prefix>{escape(prefix)}</Prefix>"
            f"<KeyCount>{len(page)}</KeyCount><MaxKeys>{max_keys}</MaxKeys>"
            f"<IsTruncated>{'true' if truncated else 'false'}</IsTruncated>"
            f"{contents}{common}{token}"
            "</ListBucketResult>"
        )
        return httpx.Response(200, text=body, headers={"content-type": "application/xml"})


def fixed_clock():
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def no_retry_delay():
    return RetryConfig(max_retries=3, delay=0)


@pytest.fixture
def tos_server():
    return FakeTosServer()


@pytest.fixture
def s3_server():
    return FakeS3Server()


@pytest.fixture
async def tos_http(tos_server):
    client = HttpClient(HttpConfig(), transport=httpx.MockTransport(tos_server))
    yield client
    await client.aclose()


@pytest.fixture
async def s3_http(s3_server):
    client = HttpClient(HttpConfig(), transport=httpx.MockTransport(s3_server))
    yield client
    await client.aclose()


@pytest.fixture
def nami_config():
    return NamiConfig(cookie="sid=abc", auth_token="token")


@pytest.fixture
def s3_config():
    return S3Config.for_r2("acc123", "AKIDEXAMPLE", "secretkey", BUCKET, public_domain="https://img.example.com/")
