from pathlib import Path
from typing import Tuple, Union

import aiofiles
import aiofiles.os

from picnexus.errors import FileIOError, ValidationError

IMAGE_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
}


async def read_file_bytes(file_path: Union[str, Path]) -> Tuple[bytes, int]:
    """
    读取整个文件。

    Args:
        file_path: 文件路径

    Returns:
        Tuple[bytes, int]: 文件内容和文件大小
    """
    path = Path(file_path)
    try:
        stat = await aiofiles.os.stat(path)
        async with aiofiles.open(path, "rb") as f:
            content = await f.read()
    except FileNotFoundError:
        raise FileIOError(f"文件不存在: {path}")
    except OSError as e:
        raise FileIOError(f"无法读取文件 {path}: {e}")
    return content, stat.st_size


def get_extension(file_name: str) -> str:
    """获取小写扩展名（不含点）"""
    name = Path(file_name).name
    if "." not in name or name.endswith("."):
        raise ValidationError(f"无法获取文件扩展名: {file_name}")
    return name.rsplit(".", 1)[-1].lower()


def guess_content_type(file_name: str) -> str:
    """根据扩展名推断 Content-Type，未知类型返回 application/octet-stream"""
    try:
        ext = get_extension(file_name)
    except ValidationError:
        return "application/octet-stream"
    return IMAGE_CONTENT_TYPES.get(ext, "application/octet-stream")
