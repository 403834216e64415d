import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from picnexus.errors import ValidationError
from picnexus.utils.logger import bot_logger

# 默认配置文件路径，可通过 PICNEXUS_CONFIG 覆盖
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.yaml"

MB = 1024 * 1024


@dataclass
class HttpConfig:
    """HTTP 客户端配置"""
    timeout: float = 30.0             # 普通请求超时(秒)
    probe_timeout: float = 5.0        # 秒传探测超时(秒)
    upload_timeout: float = 120.0     # 上传请求超时(秒)
    verify_ssl: bool = True
    max_connections: int = 100
    max_keepalive_connections: int = 20
    keepalive_expiry: float = 30.0
    proxy: Optional[str] = None       # 为空时读取 HTTP_PROXY / HTTPS_PROXY

    def validate(self):
        for name in ("timeout", "probe_timeout", "upload_timeout"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"http.{name} 必须大于 0")
        if self.max_connections < 1:
            raise ValidationError("http.max_connections 必须 >= 1")


@dataclass
class RetryConfig:
    """整体操作重试配置"""
    max_retries: int = 3              # 最大尝试次数
    delay: float = 0.5                # 初始退避(秒)，按 2 的幂递增

    def validate(self):
        if self.max_retries < 1:
            raise ValidationError("retry.max_retries 必须 >= 1")
        if self.delay < 0:
            raise ValidationError("retry.delay 必须 >= 0")


@dataclass
class NamiConfig:
    """纳米图床（火山引擎 TOS）配置"""
    tos_host: str = "n-so.tos-cn-shanghai.volces.com"
    region: str = "tos-cn-shanghai"
    service: str = "tos"
    cdn_base: str = "https://bfns.zhaomi.cn"
    sts_url: str = "https://www.n.cn/api/byte/assumerole?appsource=so"
    key_prefix: str = "web"
    part_size: int = 64 * MB          # 超过此大小才会拆成多个分片
    max_file_size: int = 100 * MB
    cookie: str = ""
    auth_token: str = ""

    def validate(self):
        if not self.tos_host:
            raise ValidationError("nami.tos_host 不能为空")
        if self.part_size < 5 * MB:
            raise ValidationError("nami.part_size 不能小于 5MB")
        if self.max_file_size <= 0:
            raise ValidationError("nami.max_file_size 必须大于 0")


@dataclass
class S3Config:
    """S3 兼容存储配置（R2、COS、OSS 等）"""
    endpoint: str = ""
    access_key_id: str = ""
    secret_key: str = ""
    bucket: str = ""
    region: str = "auto"
    public_domain: str = ""
    session_token: Optional[str] = None
    service: str = "s3"

    def __post_init__(self):
        self.endpoint = (self.endpoint or "").rstrip("/")
        self.public_domain = (self.public_domain or "").rstrip("/")

    @classmethod
    def for_r2(cls, account_id: str, access_key_id: str, secret_key: str, bucket: str,
               public_domain: str = "") -> "S3Config":
        """构建 Cloudflare R2 配置"""
        return cls(
            endpoint=f"https://{account_id}.r2.cloudflarestorage.com",
            access_key_id=access_key_id,
            secret_key=secret_key,
            bucket=bucket,
            region="auto",
            public_domain=public_domain,
        )

    @property
    def host(self) -> str:
        return self.endpoint.split("://", 1)[-1].split("/", 1)[0]

    @property
    def scheme(self) -> str:
        return self.endpoint.split("://", 1)[0] if "://" in self.endpoint else "https"

    def validate(self):
        if not (self.endpoint and self.access_key_id and self.secret_key and self.bucket):
            raise ValidationError("配置不完整: Endpoint、AccessKey、SecretKey 和 Bucket 均为必填项。")


def _section(cls, data: Optional[Dict[str, Any]]):
    """用字典构造配置段，忽略未知字段"""
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        bot_logger.warning(f"[Config] {cls.__name__} 忽略未知配置项: {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Settings:
    """应用配置"""
    http: HttpConfig = field(default_factory=HttpConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    nami: NamiConfig = field(default_factory=NamiConfig)
    s3: S3Config = field(default_factory=S3Config)
    log_level: str = "INFO"
    log_dir: str = "logs"
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        data = data or {}
        logging_conf = data.get("logging", {}) or {}
        settings = cls(
            http=_section(HttpConfig, data.get("http")),
            retry=_section(RetryConfig, data.get("retry")),
            nami=_section(NamiConfig, data.get("nami")),
            s3=_section(S3Config, data.get("s3")),
            log_level=logging_conf.get("level", "INFO"),
            log_dir=logging_conf.get("dir", "logs"),
            raw=data,
        )
        settings.http.validate()
        settings.retry.validate()
        settings.nami.validate()
        return settings

    @classmethod
    def load(cls, path: Union[str, Path, None] = None) -> "Settings":
        """从 YAML 文件读取配置，文件不存在时使用默认值"""
        config_path = Path(path or os.getenv("PICNEXUS_CONFIG") or DEFAULT_CONFIG_PATH)
        if not config_path.exists():
            return cls.from_dict({})

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"配置文件不是合法的 YAML: {config_path}: {e}")
        if data is not None and not isinstance(data, dict):
            raise ValidationError(f"配置文件格式错误: {config_path}")

        try:
            return cls.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"配置项类型错误: {config_path}: {e}")

    def get(self, key, default=None):
        """
        使用点号路径读取原始配置，例如 settings.get("nami.cdn_base")
        """
        value = self.raw
        try:
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

