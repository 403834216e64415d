import asyncio
import os
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from picnexus.errors import from_httpx, is_retryable
from picnexus.utils.config import HttpConfig
from picnexus.utils.logger import bot_logger

T = TypeVar("T")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    delay: float = 0.5,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    **kwargs: Any,
) -> T:
    """按整体操作粒度重试一个异步调用，指数退避

    只有 retry_on 判定为可重试的异常才会重试，其余异常立即抛出。
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1
            if attempt >= max_retries or not retry_on(e):
                raise
            wait_time = delay * (2 ** (attempt - 1))
            bot_logger.warning(
                f"[Retry] {getattr(func, '__name__', func)} 第 {attempt}/{max_retries} 次失败，"
                f"{wait_time}秒后重试: {e}"
            )
            await asyncio.sleep(wait_time)


def async_retry(
    max_retries: int = 3,
    delay: float = 0.5,
    retry_on: Callable[[BaseException], bool] = is_retryable,
):
    """异步重试装饰器"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_call(
                func, *args, max_retries=max_retries, delay=delay, retry_on=retry_on, **kwargs
            )
        return wrapper
    return decorator


class HttpClient:
    """共享的异步 HTTP 客户端

    整个进程共用一个连接池，由调用方构造后注入到各个上传组件中。
    传入 transport 可替换底层传输（测试中使用 httpx.MockTransport）。
    """

    def __init__(
        self,
        config: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or HttpConfig()
        self._client = self._build_client(transport)

    @staticmethod
    def _get_proxy_url() -> Optional[str]:
        return os.getenv('HTTPS_PROXY') or os.getenv('HTTP_PROXY') or None

    def _build_client(self, transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
        client_config = {
            "timeout": self.config.timeout,
            "limits": httpx.Limits(
                max_keepalive_connections=self.config.max_keepalive_connections,
                max_connections=self.config.max_connections,
                keepalive_expiry=self.config.keepalive_expiry,
            ),
            "verify": self.config.verify_ssl,
            "follow_redirects": True,
            "headers": {"User-Agent": USER_AGENT},
        }
        if transport is not None:
            client_config["transport"] = transport
        else:
            proxy_url = self.config.proxy or self._get_proxy_url()
            if proxy_url:
                client_config["proxy"] = proxy_url
                bot_logger.debug(f"[HttpClient] 使用代理: {proxy_url}")
        return httpx.AsyncClient(**client_config)

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def request(
        self,
        method: str,
        url: str,
        *,
        timeout: Optional[float] = None,
        action: str = "请求",
        **kwargs: Any,
    ) -> httpx.Response:
        """发送请求，传输层异常统一转换为 NetworkError"""
        request_timeout = timeout if timeout is not None else self.config.timeout
        bot_logger.debug(f"[HttpClient] {method} {url}")
        try:
            return await self._client.request(method, url, timeout=request_timeout, **kwargs)
        except httpx.TransportError as e:
            bot_logger.error(f"[HttpClient] {action}失败: {method} {url} - {type(e).__name__}: {e}")
            raise from_httpx(e, action) from e

    async def head(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("HEAD", url, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self):
        if not self._client.is_closed:
            await self._client.aclose()
            bot_logger.debug("[HttpClient] HTTP 客户端已关闭")

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
