"""
纳米图床上传

底层是火山引擎 TOS 对象存储，使用 TOS4-HMAC-SHA256 签名和分片上传。
对象 Key 由文件内容的 SHA-1 决定，相同内容总是映射到同一个 Key，
上传前先对 CDN 做一次 HEAD 探测，已存在则直接返回（秒传）。
"""

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Union

from picnexus.core.models import UploadResult
from picnexus.core.multipart import MultipartUploader
from picnexus.core.parsers import check_json_result, parse_json
from picnexus.core.signer import TOS4, Credentials, RequestSigner, uri_encode
from picnexus.errors import AuthError, InternalError, NetworkError, ProviderError, ValidationError
from picnexus.utils.base_api import HttpClient, retry_call
from picnexus.utils.config import NamiConfig, RetryConfig
from picnexus.utils.files import get_extension, guess_content_type, read_file_bytes
from picnexus.utils.logger import bot_logger
from picnexus.utils.progress import ProgressReporter, ProgressSink

SERVICE_NAME = "纳米"
ALLOWED_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "bmp")
PROBE_KEY = "web/test.png"

# 根据对象 Key 获取本次上传会话的 STS 临时凭证
CredentialProvider = Callable[[str], Awaitable[Credentials]]


def compute_file_hash(data: bytes) -> str:
    """文件内容的 SHA-1（40 位 hex）"""
    return hashlib.sha1(data).hexdigest()


def build_object_key(data: bytes, file_name: str, prefix: str = "web") -> str:
    """web/{sha1}.{ext}，与文件名无关，只取扩展名"""
    return f"{prefix}/{compute_file_hash(data)}.{get_extension(file_name)}"


class NamiStsProvider:
    """通过 Cookie + Auth-Token 获取 STS 临时凭证

    dynamic_headers 是浏览器侧生成的动态请求头（access-token、zm-token 等），
    由调用方获取后传入。
    """

    def __init__(
        self,
        http: HttpClient,
        cookie: str,
        auth_token: str,
        dynamic_headers: Optional[Dict[str, str]] = None,
        sts_url: str = NamiConfig.sts_url,
    ):
        if not cookie or not auth_token:
            raise ValidationError("纳米 Cookie 和 Auth-Token 均不能为空")
        self.http = http
        self.cookie = cookie
        self.auth_token = auth_token
        self.dynamic_headers = dict(dynamic_headers or {})
        self.sts_url = sts_url

    def _headers(self) -> Dict[str, str]:
        headers = {
            "accept": "*/*",
            "accept-language": "zh-CN,zh;q=0.9",
            "auth-token": self.auth_token,
            "cloud_src": "video",
            "content-type": "application/x-www-form-urlencoded;charset=UTF-8",
            "cookie": self.cookie,
            "device-platform": "Web",
            "func-ver": "1",
            "nami-platform": "Windows",
            "origin": "https://www.n.cn",
            "referer": "https://www.n.cn/",
            "zm-ver": "1.2",
        }
        headers.update(self.dynamic_headers)
        return headers

    async def __call__(self, file_key: str) -> Credentials:
        body = f"filename%5B0%5D={uri_encode(file_key)}"
        response = await self.http.post(
            self.sts_url, headers=self._headers(), content=body.encode("utf-8"), action="获取 STS 凭证"
        )

        if response.status_code in (401, 403):
            raise AuthError(f"STS 请求被拒绝 (HTTP {response.status_code})，Cookie 或 Auth-Token 已失效")
        if not response.is_success:
            raise ProviderError(SERVICE_NAME, f"STS 请求失败 (HTTP {response.status_code}): {response.text[:200]}",
                                code=response.status_code)

        payload = check_json_result(parse_json(response.text, SERVICE_NAME), SERVICE_NAME)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ProviderError(SERVICE_NAME, "STS 响应中没有 data", code=payload.get("code"))

        try:
            return Credentials(
                access_key_id=data["access_key"],
                secret_key=data["secret_access_key"],
                session_token=data.get("session_token"),
            )
        except KeyError as e:
            raise InternalError(f"STS 响应缺少字段: {e}")


class NamiUploader:
    """纳米图床上传器"""

    def __init__(
        self,
        http: HttpClient,
        credential_provider: CredentialProvider,
        config: Optional[NamiConfig] = None,
        retry: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.http = http
        self.credential_provider = credential_provider
        self.config = config or NamiConfig()
        self.retry = retry or RetryConfig()
        self._clock = clock

    def public_url(self, key: str) -> str:
        return f"{self.config.cdn_base.rstrip('/')}/{key}"

    async def exists(self, key: str) -> bool:
        """HEAD 探测 CDN，网络异常视为不存在"""
        try:
            response = await self.http.head(
                self.public_url(key), timeout=self.http.config.probe_timeout, action="秒传检测"
            )
        except NetworkError as e:
            bot_logger.debug(f"[Nami] 秒传检测失败，按不存在处理: {e}")
            return False
        return response.is_success

    def _validate(self, data: bytes, file_name: str) -> str:
        if not data:
            raise ValidationError("文件内容为空")
        ext = get_extension(file_name)
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(f"不支持的文件格式: .{ext}，仅支持 {', '.join(ALLOWED_EXTENSIONS)}")
        if len(data) > self.config.max_file_size:
            raise ValidationError(
                f"文件大小 ({len(data) / 1024 / 1024:.2f}MB) 超过限制 "
                f"({self.config.max_file_size / 1024 / 1024:.0f}MB)"
            )
        return ext

    def _signer(self, credentials: Credentials) -> RequestSigner:
        return RequestSigner(
            credentials,
            host=self.config.tos_host,
            region=self.config.region,
            service=self.config.service,
            preset=TOS4,
            clock=self._clock,
        )

    async def upload(
        self,
        data: bytes,
        file_name: str,
        upload_id: str = "",
        progress: Optional[ProgressSink] = None,
    ) -> UploadResult:
        """
        上传图片。

        Args:
            data: 文件内容
            file_name: 文件名，只用来取扩展名
            upload_id: 进度事件里的任务ID
            progress: 进度回调

        Returns:
            UploadResult: instant=True 表示秒传
        """
        self._validate(data, file_name)
        key = build_object_key(data, file_name, self.config.key_prefix)
        reporter = ProgressReporter(upload_id, progress)
        bot_logger.info(f"[Nami] 开始上传 {file_name} ({len(data)} bytes) -> {key}")

        return await retry_call(
            self._upload_once, data, key, file_name, reporter,
            max_retries=self.retry.max_retries, delay=self.retry.delay,
        )

    async def upload_file(
        self,
        file_path: Union[str, Path],
        upload_id: str = "",
        progress: Optional[ProgressSink] = None,
    ) -> UploadResult:
        data, _ = await read_file_bytes(file_path)
        return await self.upload(data, Path(file_path).name, upload_id, progress)

    async def _upload_once(self, data: bytes, key: str, file_name: str, reporter: ProgressReporter) -> UploadResult:
        url = self.public_url(key)
        if await self.exists(key):
            bot_logger.info(f"[Nami] 文件已存在，秒传成功: {url}")
            return UploadResult(url=url, size=len(data), key=key, instant=True)

        # 临时凭证可能很快过期，每次尝试都重新获取
        reporter.report(20, "获取STS凭证中...", 1, 4)
        credentials = await self.credential_provider(key)

        reporter.report(40, "初始化分片上传中...", 2, 4)
        uploader = MultipartUploader(self.http, self._signer(credentials), service=SERVICE_NAME)

        def on_part(part_number: int, total: int):
            reporter.report(40 + 40 * part_number // total, f"上传分片 {part_number}/{total}", 3, 4)

        session = await uploader.upload(
            key, data, guess_content_type(file_name), self.config.part_size, on_part=on_part,
        )

        reporter.report(90, "完成上传", 4, 4)
        bot_logger.info(f"[Nami] 上传成功: {url}")
        etag = session.parts[-1][1] if len(session.parts) == 1 else None
        return UploadResult(url=url, size=len(data), key=key, etag=etag, instant=False)

    async def test_connection(self) -> str:
        """验证 Cookie 和 Auth-Token 是否还能换到 STS 凭证"""
        try:
            await self.credential_provider(PROBE_KEY)
        except AuthError:
            raise AuthError("Cookie 或 Auth-Token 无效或已过期，请重新获取")
        bot_logger.info("[Nami] STS 凭证获取成功，Cookie 和 Auth-Token 有效")
        return "纳米 Cookie 和 Auth-Token 有效，连接成功"
