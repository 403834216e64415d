"""
分片上传状态机

    initiate -> upload_part x N -> complete

任何一步返回非 2xx 都会让本次上传失败，不做单步重试；
已经初始化的会话会尽量 abort，避免在远端留下孤立的分片会话。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Mapping, Optional, Tuple

import httpx
import orjson

from picnexus.core.parsers import classify_response, parse_upload_id
from picnexus.core.signer import RequestSigner, build_url, encode_object_key
from picnexus.errors import InternalError, PicNexusError, ValidationError
from picnexus.utils.base_api import HttpClient
from picnexus.utils.logger import bot_logger

MAX_PART_NUMBER = 10000


class SessionState(str, Enum):
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class MultipartSession:
    """一次分片上传会话，只存在于内存中"""
    object_key: str
    upload_id: str
    parts: List[Tuple[int, str]] = field(default_factory=list)   # (分片号, ETag)
    state: SessionState = SessionState.INITIATED

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.INITIATED, SessionState.UPLOADING)

    def add_part(self, part_number: int, etag: str):
        if not self.is_active:
            raise InternalError(f"会话已结束 ({self.state.value})，不能再添加分片")
        if any(n == part_number for n, _ in self.parts):
            raise InternalError(f"分片 {part_number} 重复上传")
        self.parts.append((part_number, etag))
        self.state = SessionState.UPLOADING

    def ordered_parts(self) -> List[Tuple[int, str]]:
        return sorted(self.parts)


def split_parts(data: bytes, part_size: int) -> List[bytes]:
    """按 part_size 切分，数据不超过 part_size 时只有一个分片"""
    if part_size <= 0:
        raise ValidationError("分片大小必须大于 0")
    if len(data) <= part_size:
        return [data]
    parts = [data[i:i + part_size] for i in range(0, len(data), part_size)]
    if len(parts) > MAX_PART_NUMBER:
        raise ValidationError(f"分片数量 {len(parts)} 超过上限 {MAX_PART_NUMBER}")
    return parts


class MultipartUploader:
    """基于签名请求的分片上传器"""

    def __init__(
        self,
        http: HttpClient,
        signer: RequestSigner,
        service: str = "TOS",
        scheme: str = "https",
        timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
    ):
        self.http = http
        self.signer = signer
        self.service = service
        self.scheme = scheme
        self.timeout = timeout if timeout is not None else http.config.timeout
        self.upload_timeout = upload_timeout if upload_timeout is not None else http.config.upload_timeout

    async def _send(
        self,
        method: str,
        key: str,
        query: Mapping[str, str],
        action: str,
        timeout: float,
        headers: Optional[Mapping[str, str]] = None,
        content: bytes = b"",
    ) -> httpx.Response:
        uri = "/" + encode_object_key(key)
        request_headers = self.signer.signed_headers(method, uri, query)
        if headers:
            request_headers.update(headers)
        url = build_url(self.scheme, self.signer.host, uri, query)

        response = await self.http.request(
            method, url, headers=request_headers, content=content, timeout=timeout, action=action
        )
        return classify_response(response, self.service, action)

    async def initiate(self, key: str, content_type: str) -> MultipartSession:
        """初始化分片上传，获取 UploadId"""
        response = await self._send(
            "POST", key, {"uploads": ""}, "初始化分片上传", self.timeout,
            headers={"content-type": content_type},
        )
        upload_id = parse_upload_id(response.text, self.service)
        bot_logger.debug(f"[Multipart] {key} UploadId: {upload_id}")
        return MultipartSession(object_key=key, upload_id=upload_id)

    async def upload_part(self, session: MultipartSession, part_number: int, data: bytes) -> str:
        """上传单个分片，返回 ETag"""
        if not session.is_active:
            raise InternalError(f"会话已结束 ({session.state.value})，不能上传分片")
        if not 1 <= part_number <= MAX_PART_NUMBER:
            raise ValidationError(f"分片号必须在 1-{MAX_PART_NUMBER} 之间: {part_number}")

        query = {"partNumber": str(part_number), "uploadId": session.upload_id}
        response = await self._send(
            "PUT", session.object_key, query, f"上传分片 {part_number}", self.upload_timeout, content=data,
        )

        etag = response.headers.get("etag")
        if not etag:
            raise InternalError(f"分片 {part_number} 的响应中没有 ETag")
        session.add_part(part_number, etag)
        bot_logger.debug(f"[Multipart] Part {part_number} ETag: {etag}")
        return etag

    async def complete(self, session: MultipartSession):
        """提交分片列表，成功后对象才可见"""
        if not session.is_active:
            raise InternalError(f"会话已结束 ({session.state.value})，不能完成上传")
        if not session.parts:
            raise InternalError("没有已上传的分片，不能完成上传")

        body = orjson.dumps({
            "Parts": [{"PartNumber": n, "ETag": etag} for n, etag in session.ordered_parts()]
        })
        await self._send(
            "POST", session.object_key, {"uploadId": session.upload_id}, "完成分片上传", self.timeout,
            headers={"content-type": "application/json"}, content=body,
        )
        session.state = SessionState.COMPLETED

    async def abort(self, session: MultipartSession) -> bool:
        """取消分片上传，失败只记录日志"""
        try:
            await self._send(
                "DELETE", session.object_key, {"uploadId": session.upload_id}, "取消分片上传", self.timeout,
            )
        except PicNexusError as e:
            bot_logger.warning(f"[Multipart] 取消分片上传失败 {session.object_key} ({session.upload_id}): {e}")
            return False
        session.state = SessionState.ABORTED
        bot_logger.info(f"[Multipart] 分片上传已取消: {session.object_key}")
        return True

    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        part_size: int,
        on_part: Optional[Callable[[int, int], None]] = None,
    ) -> MultipartSession:
        """完整执行 initiate -> upload_part -> complete"""
        chunks = split_parts(data, part_size)
        session = await self.initiate(key, content_type)
        try:
            for part_number, chunk in enumerate(chunks, start=1):
                await self.upload_part(session, part_number, chunk)
                if on_part:
                    on_part(part_number, len(chunks))
            await self.complete(session)
        except Exception:
            session.state = SessionState.FAILED
            await self.abort(session)
            raise
        return session
