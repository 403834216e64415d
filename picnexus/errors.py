"""
统一错误类型

上层（UI、CLI）通过 ``kind`` 字段区分错误类型：
认证错误提示重新登录，网络错误提示重试，其它错误直接展示消息。
"""

from typing import Any, Dict, Optional

import httpx


class PicNexusError(Exception):
    """错误基类"""

    kind = "INTERNAL"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return self.message

    def payload(self) -> Dict[str, Any]:
        return {"message": self.message}

    def to_dict(self) -> Dict[str, Any]:
        """序列化为 {"type": ..., "data": {...}} 结构"""
        return {"type": self.kind, "data": self.payload()}


class NetworkError(PicNexusError):
    """网络错误：超时、连接失败、DNS 等，可重试"""

    kind = "NETWORK"
    retryable = True

    @property
    def user_message(self) -> str:
        return f"网络错误: {self.message}，请稍后重试"


class AuthError(PicNexusError):
    """认证错误：凭证过期或无效"""

    kind = "AUTH"

    @property
    def user_message(self) -> str:
        return f"认证失败: {self.message}，请重新登录或更新凭证"


class ValidationError(PicNexusError):
    """输入校验失败"""

    kind = "VALIDATION"


class FileIOError(PicNexusError):
    """本地文件读写失败"""

    kind = "FILE_IO"


class ProviderError(PicNexusError):
    """图床返回的结构化错误，保留服务方自己的错误码"""

    kind = "UPLOAD"

    def __init__(self, service: str, message: str, code: Optional[Any] = None):
        self.service = service
        self.code = code
        super().__init__(message)

    def payload(self) -> Dict[str, Any]:
        return {"service": self.service, "code": self.code, "message": self.message}

    def __str__(self) -> str:
        if self.code is None:
            return f"{self.service} 上传错误: {self.message}"
        return f"{self.service} 上传错误 ({self.code}): {self.message}"


class StorageError(PicNexusError):
    """对象存储错误：存储桶不存在、签名不匹配等"""

    kind = "STORAGE"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)

    def payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InternalError(PicNexusError):
    """意外的解析失败或内部状态错误"""

    kind = "INTERNAL"


class SigningError(InternalError):
    """签名计算失败"""


def is_retryable(exc: BaseException) -> bool:
    """默认重试判定：仅网络错误可重试"""
    return isinstance(exc, PicNexusError) and exc.retryable


def from_httpx(exc: httpx.HTTPError, action: str = "请求") -> NetworkError:
    """将 httpx 传输层异常转换为 NetworkError"""
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"{action}超时")
    if isinstance(exc, httpx.ConnectError):
        return NetworkError(f"{action}连接失败: {exc}")
    return NetworkError(f"{action}失败: {type(exc).__name__} - {exc}")
