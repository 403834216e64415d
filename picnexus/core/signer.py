"""
对象存储请求签名

AWS Signature V4 (R2 / S3 兼容存储) 与火山引擎 TOS V4 共用同一套实现，
两者只在算法名、密钥前缀、scope 结尾和头部前缀上不同，由 SigningPreset 描述。

签名流程：
    1. 规范请求：METHOD / URI / 排序后的查询串 / 排序后的小写头部 / 签名头列表 / payload 标记
    2. 待签名字符串：ALGORITHM / 时间戳 / scope / sha256(规范请求)
    3. 签名密钥：四次链式 HMAC-SHA256（date -> region -> service -> terminator）
    4. 签名：hex(HMAC(签名密钥, 待签名字符串))
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple

from picnexus.errors import SigningError, ValidationError

UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

_UNRESERVED = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~"
)
_TIMESTAMP_RE = re.compile(r"^\d{8}T\d{6}Z$")


@dataclass(frozen=True)
class Credentials:
    """访问凭证，STS 临时凭证会带 session_token"""
    access_key_id: str
    secret_key: str
    session_token: Optional[str] = None

    def __post_init__(self):
        if not self.access_key_id or not self.secret_key:
            raise ValidationError("凭证不完整: AccessKey 和 SecretKey 均不能为空")

    def __repr__(self) -> str:
        return f"Credentials(access_key_id={self.access_key_id!r}, secret_key='***')"


@dataclass(frozen=True)
class SigningPreset:
    """签名算法变体"""
    algorithm: str
    key_prefix: str              # 派生密钥时拼在 secret 前面的前缀
    scope_terminator: str        # scope 最后一段
    header_prefix: str           # x-amz / x-tos

    @property
    def date_header(self) -> str:
        return f"{self.header_prefix}-date"

    @property
    def content_sha256_header(self) -> str:
        return f"{self.header_prefix}-content-sha256"

    @property
    def security_token_header(self) -> str:
        return f"{self.header_prefix}-security-token"


AWS4 = SigningPreset(
    algorithm="AWS4-HMAC-SHA256",
    key_prefix="AWS4",
    scope_terminator="aws4_request",
    header_prefix="x-amz",
)

# TOS V4 直接使用 secret 派生密钥，不加前缀
TOS4 = SigningPreset(
    algorithm="TOS4-HMAC-SHA256",
    key_prefix="",
    scope_terminator="request",
    header_prefix="x-tos",
)


@dataclass(frozen=True)
class SigningScope:
    """凭证范围 date/region/service/terminator"""
    date: str
    region: str
    service: str
    terminator: str = AWS4.scope_terminator

    def __str__(self) -> str:
        return f"{self.date}/{self.region}/{self.service}/{self.terminator}"


# ---------------------------------------------------------------------------
# URI 编码
# ---------------------------------------------------------------------------

def uri_encode(value: str, encode_slash: bool = True) -> str:
    """RFC 3986 百分号编码，仅保留 A-Z a-z 0-9 - _ . ~，十六进制大写"""
    result = []
    for byte in str(value).encode("utf-8"):
        if byte in _UNRESERVED or (byte == 0x2F and not encode_slash):
            result.append(chr(byte))
        else:
            result.append(f"%{byte:02X}")
    return "".join(result)


def encode_object_key(key: str) -> str:
    """逐段编码对象 Key，保留斜杠"""
    return uri_encode(key, encode_slash=False)


# ---------------------------------------------------------------------------
# 规范请求
# ---------------------------------------------------------------------------

def canonical_query_string(query_params: Optional[Mapping[str, str]]) -> str:
    """编码后按 key 排序；空参数返回空字符串"""
    if not query_params:
        return ""
    pairs = sorted(
        (uri_encode(str(key)), uri_encode("" if value is None else str(value)))
        for key, value in query_params.items()
    )
    return "&".join(f"{key}={value}" for key, value in pairs)


def canonical_headers(headers: Mapping[str, str]) -> Tuple[str, str]:
    """返回 (规范头部块, 签名头列表)"""
    normalized: Dict[str, str] = {}
    for name, value in headers.items():
        key = name.strip().lower()
        if key in normalized:
            raise SigningError(f"重复的签名头部: {key}")
        normalized[key] = str(value).strip()

    names = sorted(normalized)
    block = "\n".join(f"{name}:{normalized[name]}" for name in names)
    return block, ";".join(names)


def build_canonical_request(
    method: str,
    uri_path: str,
    query_params: Optional[Mapping[str, str]],
    headers: Mapping[str, str],
    payload_hash: str = UNSIGNED_PAYLOAD,
) -> str:
    """
    构建规范请求。

    Args:
        method: HTTP 方法
        uri_path: 已编码的请求路径，空路径视为 /
        query_params: 未编码的查询参数
        headers: 参与签名的头部
        payload_hash: payload 哈希标记，本项目统一为 UNSIGNED-PAYLOAD

    Returns:
        str: METHOD\\nURI\\nQUERY\\nHEADERS\\n\\nSIGNED_HEADERS\\nPAYLOAD_HASH
    """
    header_block, signed_headers = canonical_headers(headers)
    return "\n".join([
        method.upper(),
        uri_path or "/",
        canonical_query_string(query_params),
        header_block,
        "",
        signed_headers,
        payload_hash,
    ])


def build_string_to_sign(algorithm: str, timestamp: str, scope: str, canonical_request: str) -> str:
    hashed = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{algorithm}\n{timestamp}\n{scope}\n{hashed}"


# ---------------------------------------------------------------------------
# 密钥派生与签名
# ---------------------------------------------------------------------------

def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(
    secret_key: str,
    date: str,
    region: str,
    service: str,
    preset: SigningPreset = AWS4,
) -> bytes:
    """四次链式 HMAC 派生签名密钥"""
    try:
        k_date = _hmac_sha256((preset.key_prefix + secret_key).encode("utf-8"), date)
        k_region = _hmac_sha256(k_date, region)
        k_service = _hmac_sha256(k_region, service)
        return _hmac_sha256(k_service, preset.scope_terminator)
    except (TypeError, ValueError, AttributeError) as e:
        raise SigningError(f"派生签名密钥失败: {e}") from e


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    try:
        return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    except (TypeError, ValueError, AttributeError) as e:
        raise SigningError(f"计算签名失败: {e}") from e


def format_timestamp(moment: datetime) -> str:
    """UTC 时间戳 YYYYMMDDTHHMMSSZ"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_url(scheme: str, host: str, uri_path: str, query_params: Optional[Mapping[str, str]] = None) -> str:
    """用与签名相同的规范查询串拼接 URL，保证发送内容与签名一致"""
    query = canonical_query_string(query_params)
    url = f"{scheme}://{host}{uri_path or '/'}"
    return f"{url}?{query}" if query else url


class RequestSigner:
    """请求签名器

    每次 sign 只取一次时间戳，同时用于日期头、scope 和待签名字符串。
    """

    def __init__(
        self,
        credentials: Credentials,
        host: str,
        region: str,
        service: str,
        preset: SigningPreset = AWS4,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.credentials = credentials
        self.host = host
        self.region = region
        self.service = service
        self.preset = preset
        self._clock = clock or _utcnow

    def _base_headers(self, timestamp: str) -> Dict[str, str]:
        headers = {
            "host": self.host,
            self.preset.content_sha256_header: UNSIGNED_PAYLOAD,
            self.preset.date_header: timestamp,
        }
        if self.credentials.session_token:
            headers[self.preset.security_token_header] = self.credentials.session_token
        return headers

    def sign(
        self,
        method: str,
        uri: str,
        query_params: Optional[Mapping[str, str]] = None,
        timestamp: Optional[str] = None,
    ) -> Tuple[str, Dict[str, str]]:
        """
        签名请求。

        Returns:
            Tuple[str, Dict[str, str]]: Authorization 头的值，以及必须原样发送的签名头部
        """
        timestamp = timestamp or format_timestamp(self._clock())
        if not _TIMESTAMP_RE.match(timestamp):
            raise SigningError(f"时间戳格式错误: {timestamp}")

        headers = self._base_headers(timestamp)
        canonical_request = build_canonical_request(method, uri, query_params, headers)

        scope = SigningScope(timestamp[:8], self.region, self.service, self.preset.scope_terminator)
        string_to_sign = build_string_to_sign(self.preset.algorithm, timestamp, str(scope), canonical_request)
        signing_key = derive_signing_key(
            self.credentials.secret_key, scope.date, self.region, self.service, self.preset
        )
        signature = compute_signature(signing_key, string_to_sign)

        _, signed_headers = canonical_headers(headers)
        authorization = (
            f"{self.preset.algorithm} Credential={self.credentials.access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return authorization, headers

    def signed_headers(
        self,
        method: str,
        uri: str,
        query_params: Optional[Mapping[str, str]] = None,
        timestamp: Optional[str] = None,
    ) -> Dict[str, str]:
        """返回包含 Authorization 的完整请求头"""
        authorization, headers = self.sign(method, uri, query_params, timestamp)
        headers = dict(headers)
        headers["authorization"] = authorization
        return headers
