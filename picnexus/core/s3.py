"""
S3 兼容对象存储（Cloudflare R2 等）

使用路径风格寻址 /{bucket}/{key}，所有请求共用同一个 AWS4 签名器。
"""

from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

import httpx

from picnexus.core.models import DeleteResult, ListResult, StoredObject, UploadResult
from picnexus.core.parsers import classify_response, parse_list_result
from picnexus.core.signer import AWS4, Credentials, RequestSigner, build_url, encode_object_key
from picnexus.errors import InternalError, PicNexusError, StorageError, ValidationError
from picnexus.utils.base_api import HttpClient, async_retry
from picnexus.utils.config import RetryConfig, S3Config
from picnexus.utils.files import guess_content_type, read_file_bytes
from picnexus.utils.logger import bot_logger
from picnexus.utils.progress import ProgressReporter, ProgressSink

SERVICE_NAME = "S3"
MAX_KEYS_LIMIT = 1000


class S3Store:
    """S3 兼容存储客户端"""

    def __init__(self, http: HttpClient, config: S3Config, retry: Optional[RetryConfig] = None):
        config.validate()
        self.http = http
        self.config = config
        self.retry = retry or RetryConfig()
        self.signer = RequestSigner(
            Credentials(config.access_key_id, config.secret_key, config.session_token),
            host=config.host,
            region=config.region,
            service=config.service,
            preset=AWS4,
        )

    def _object_path(self, key: str) -> str:
        return f"/{self.config.bucket}/{encode_object_key(key)}"

    def public_url(self, key: str) -> str:
        if self.config.public_domain:
            return f"{self.config.public_domain}/{key}"
        return f"{self.config.endpoint}/{self.config.bucket}/{key}"

    async def _send(
        self,
        method: str,
        uri: str,
        action: str,
        query: Optional[Mapping[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        content: bytes = b"",
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        request_headers = self.signer.signed_headers(method, uri, query)
        if headers:
            request_headers.update(headers)
        url = build_url(self.config.scheme, self.config.host, uri, query)

        response = await self.http.request(
            method, url, headers=request_headers, content=content,
            timeout=timeout or self.http.config.timeout, action=action,
        )
        return classify_response(response, SERVICE_NAME, action)

    async def _with_retry(self, func, *args):
        return await async_retry(max_retries=self.retry.max_retries, delay=self.retry.delay)(func)(*args)

    # ------------------------------------------------------------------
    # 上传
    # ------------------------------------------------------------------

    async def upload(
        self,
        data: bytes,
        key: str,
        content_type: Optional[str] = None,
        upload_id: str = "",
        progress: Optional[ProgressSink] = None,
    ) -> UploadResult:
        """
        单次 PUT 上传对象。

        Args:
            data: 文件内容
            key: 对象 Key
            content_type: 为空时按扩展名推断
            upload_id: 进度事件里的任务ID
            progress: 进度回调

        Returns:
            UploadResult: 包含公开访问链接和 ETag
        """
        key = key.lstrip("/")
        if not key:
            raise ValidationError("对象 Key 不能为空")

        reporter = ProgressReporter(upload_id, progress)
        reporter.report(20, "签名请求中...", 1, 2)
        bot_logger.info(f"[S3] 上传 {key} ({len(data)} bytes) -> {self.config.bucket}")

        reporter.report(50, "上传中...", 2, 2)
        response = await self._send(
            "PUT", self._object_path(key), "上传对象",
            headers={"content-type": content_type or guess_content_type(key)},
            content=data,
            timeout=self.http.config.upload_timeout,
        )

        etag = response.headers.get("etag")
        url = self.public_url(key)
        bot_logger.info(f"[S3] 上传成功: {url}")
        return UploadResult(url=url, size=len(data), key=key, etag=etag.strip('"') if etag else None)

    async def upload_file(
        self,
        file_path: Union[str, Path],
        key: Optional[str] = None,
        content_type: Optional[str] = None,
        upload_id: str = "",
        progress: Optional[ProgressSink] = None,
    ) -> UploadResult:
        data, _ = await read_file_bytes(file_path)
        return await self.upload(data, key or Path(file_path).name, content_type, upload_id, progress)

    async def create_folder(self, path: str) -> str:
        """创建"文件夹"，即 Key 以 / 结尾的空对象"""
        key = path.strip().strip("/")
        if not key:
            raise ValidationError("文件夹路径不能为空")
        key += "/"
        await self._send(
            "PUT", self._object_path(key), "创建文件夹",
            headers={"content-type": "application/x-directory"},
        )
        bot_logger.info(f"[S3] 文件夹已创建: {key}")
        return key

    # ------------------------------------------------------------------
    # 连接测试
    # ------------------------------------------------------------------

    async def test_connection(self) -> str:
        """HEAD 存储桶，检查凭证和存储桶是否可用"""
        return await self._with_retry(self._test_connection_once)

    async def _test_connection_once(self) -> str:
        try:
            await self._send("HEAD", f"/{self.config.bucket}", "连接测试")
        except StorageError as e:
            if e.code in ("NotFound", "NoSuchBucket"):
                raise StorageError(f"存储桶不存在: {self.config.bucket}", code="NoSuchBucket")
            raise
        bot_logger.info(f"[S3] 连接测试成功: {self.config.bucket}")
        return f"连接成功，存储桶 {self.config.bucket} 可访问"

    # ------------------------------------------------------------------
    # 列举
    # ------------------------------------------------------------------

    async def list_objects(
        self,
        prefix: Optional[str] = None,
        continuation_token: Optional[str] = None,
        delimiter: Optional[str] = None,
        max_keys: Optional[int] = None,
    ) -> ListResult:
        """ListObjectsV2 单页"""
        query = {"list-type": "2"}
        if prefix:
            query["prefix"] = prefix
        if continuation_token:
            query["continuation-token"] = continuation_token
        if delimiter:
            query["delimiter"] = delimiter
        if max_keys is not None:
            if not 1 <= max_keys <= MAX_KEYS_LIMIT:
                raise ValidationError(f"max_keys 必须在 1-{MAX_KEYS_LIMIT} 之间")
            query["max-keys"] = str(max_keys)

        response = await self._send("GET", f"/{self.config.bucket}", "列举对象", query=query)
        return parse_list_result(response.text)

    async def list_all_objects(
        self, prefix: Optional[str] = None, page_size: Optional[int] = None
    ) -> List[StoredObject]:
        """跟随 continuation token 列出全部对象，按修改时间倒序"""
        objects: List[StoredObject] = []
        seen_tokens = set()
        token = None
        while True:
            page = await self.list_objects(prefix=prefix, continuation_token=token, max_keys=page_size)
            objects.extend(page.objects)
            token = page.next_token
            if token is None:
                break
            if token in seen_tokens:
                raise InternalError(f"列举对象时 continuation token 重复: {token}")
            seen_tokens.add(token)

        objects.sort(key=lambda o: o.last_modified, reverse=True)
        bot_logger.debug(f"[S3] 共列出 {len(objects)} 个对象 (prefix={prefix!r})")
        return objects

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------

    async def delete_object(self, key: str) -> str:
        key = key.lstrip("/")
        if not key:
            raise ValidationError("对象 Key 不能为空")
        await self._with_retry(self._send, "DELETE", self._object_path(key), "删除对象")
        bot_logger.info(f"[S3] 已删除: {key}")
        return f"已删除 {key}"

    async def delete_objects(self, keys: Iterable[str]) -> DeleteResult:
        """逐个删除，失败的 Key 收集到结果里，不会中断整个批次"""
        result = DeleteResult()
        for key in keys:
            try:
                await self.delete_object(key)
            except PicNexusError as e:
                bot_logger.warning(f"[S3] 删除 {key} 失败: {e}")
                result.failed.append((key, str(e)))
            else:
                result.succeeded.append(key)

        if result.failed:
            bot_logger.warning(f"[S3] 批量删除完成: 成功 {len(result.succeeded)}，失败 {len(result.failed)}")
        return result
