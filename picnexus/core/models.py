from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class UploadResult:
    """上传结果"""
    url: str
    size: int
    key: str = ""
    etag: Optional[str] = None
    instant: bool = False            # 是否秒传

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StoredObject:
    """存储桶中的一个对象"""
    key: str
    size: int = 0
    last_modified: str = ""
    etag: Optional[str] = None

    @property
    def name(self) -> str:
        return self.key.rstrip("/").rsplit("/", 1)[-1]

    @property
    def is_folder(self) -> bool:
        return self.key.endswith("/")


@dataclass
class ListResult:
    """列举结果"""
    objects: List[StoredObject] = field(default_factory=list)
    common_prefixes: List[str] = field(default_factory=list)
    next_token: Optional[str] = None

    @property
    def is_truncated(self) -> bool:
        return self.next_token is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeleteResult:
    """批量删除结果"""
    succeeded: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)   # (key, 错误信息)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [{"key": key, "error": error} for key, error in self.failed],
        }
