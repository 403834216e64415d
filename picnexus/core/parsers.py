"""
图床/对象存储响应解析

需要区分三种结果：结构正确的成功响应、结构正确的错误响应（带错误码）、
无法解析的内容（比如登录失效时返回的 HTML 页面）。
XML 先用 ElementTree 解析，失败后退回到宽松的正则匹配。
"""

import html
import re
import xml.etree.ElementTree as ET
from typing import Any, Iterable, List, Optional, Tuple

import httpx
import orjson

from picnexus.core.models import ListResult, StoredObject
from picnexus.errors import AuthError, InternalError, ProviderError, StorageError

_HTML_RE = re.compile(r"^\s*(?:<!doctype\s+html|<html[\s>]|<head[\s>]|<body[\s>])", re.IGNORECASE)

AUTH_ERROR_CODES = frozenset({
    "AccessDenied",
    "InvalidAccessKeyId",
    "ExpiredToken",
    "InvalidToken",
    "TokenRefreshRequired",
})

STORAGE_ERROR_CODES = frozenset({
    "SignatureDoesNotMatch",
    "NoSuchBucket",
    "NoSuchKey",
    "NoSuchUpload",
    "RequestTimeTooSkewed",
    "InvalidBucketName",
})


def looks_like_html(text: str) -> bool:
    return bool(text) and bool(_HTML_RE.match(text))


def parse_json(text: str, service: str) -> Any:
    """解析 JSON，HTML 页面视为登录失效"""
    if not text or not text.strip():
        raise InternalError(f"{service} 返回了空响应")
    if looks_like_html(text):
        raise AuthError(f"{service} 返回了 HTML 页面而不是 JSON，登录状态可能已失效")
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise InternalError(f"{service} 响应解析失败: {e}，原始响应: {text[:200]}")


def check_json_result(
    payload: Any,
    service: str,
    code_field: str = "code",
    ok_values: Iterable[Any] = (0,),
    message_fields: Iterable[str] = ("msg", "message"),
) -> dict:
    """检查业务错误码，错误时抛出保留原始错误码的 ProviderError"""
    if not isinstance(payload, dict) or code_field not in payload:
        raise InternalError(f"{service} 响应结构异常: {str(payload)[:200]}")

    code = payload.get(code_field)
    if code in tuple(ok_values):
        return payload

    message = next((payload[f] for f in message_fields if payload.get(f)), "未知错误")
    raise ProviderError(service, str(message), code=code)


# ---------------------------------------------------------------------------
# XML
# ---------------------------------------------------------------------------

def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_xml(text: str) -> Optional[ET.Element]:
    try:
        return ET.fromstring(text.strip().encode("utf-8"))
    except (ET.ParseError, ValueError):
        return None


def _regex_find_all(text: str, tag: str) -> List[str]:
    pattern = re.compile(
        rf"<(?:\w+:)?{re.escape(tag)}(?:\s[^>]*)?>\s*(.*?)\s*</(?:\w+:)?{re.escape(tag)}\s*>",
        re.DOTALL,
    )
    return [html.unescape(m) for m in pattern.findall(text)]


def find_xml_text(text: str, tag: str) -> Optional[str]:
    """查找第一个指定标签的文本，忽略命名空间"""
    if not text:
        return None
    root = _parse_xml(text)
    if root is not None:
        for element in root.iter():
            if _local_name(element.tag) == tag:
                return (element.text or "").strip()
        return None

    matches = _regex_find_all(text, tag)
    return matches[0] if matches else None


def parse_upload_id(text: str, service: str = "TOS") -> str:
    """从初始化分片上传的响应中取 UploadId，兼容 JSON 和 XML"""
    stripped = (text or "").strip()
    if looks_like_html(stripped):
        raise AuthError(f"{service} 返回了 HTML 页面，登录状态可能已失效")

    if stripped.startswith("{"):
        payload = parse_json(stripped, service)
        upload_id = payload.get("UploadId") if isinstance(payload, dict) else None
    else:
        upload_id = find_xml_text(stripped, "UploadId")

    if not upload_id:
        raise InternalError(f"无法解析 UploadId: {stripped[:200]}")
    return upload_id


def parse_s3_error(text: str) -> Tuple[Optional[str], Optional[str]]:
    """解析错误响应，返回 (Code, Message)"""
    stripped = (text or "").strip()
    if not stripped or looks_like_html(stripped):
        return None, None

    if stripped.startswith("{"):
        try:
            payload = orjson.loads(stripped)
        except orjson.JSONDecodeError:
            return None, None
        if isinstance(payload, dict):
            return payload.get("Code") or payload.get("code"), payload.get("Message") or payload.get("message")
        return None, None

    return find_xml_text(stripped, "Code"), find_xml_text(stripped, "Message")


def _object_from_fields(get) -> Optional[StoredObject]:
    key = get("Key")
    if not key:
        return None
    size_text = get("Size") or "0"
    try:
        size = int(size_text)
    except ValueError:
        size = 0
    etag = get("ETag")
    return StoredObject(
        key=key,
        size=size,
        last_modified=get("LastModified") or "",
        etag=etag.strip('"') if etag else None,
    )


def _list_result_from_tree(root: ET.Element) -> ListResult:
    result = ListResult()
    truncated = False
    next_token = None

    for child in root:
        name = _local_name(child.tag)
        if name == "Contents":
            values = {_local_name(e.tag): (e.text or "").strip() for e in child}
            obj = _object_from_fields(values.get)
            if obj:
                result.objects.append(obj)
        elif name == "CommonPrefixes":
            for e in child:
                if _local_name(e.tag) == "Prefix" and e.text:
                    result.common_prefixes.append(e.text.strip())
        elif name == "IsTruncated":
            truncated = (child.text or "").strip().lower() == "true"
        elif name == "NextContinuationToken":
            next_token = (child.text or "").strip() or None

    result.next_token = next_token if truncated else None
    return result


def _list_result_from_regex(text: str) -> ListResult:
    result = ListResult()
    for fragment in _regex_find_all(text, "Contents"):
        obj = _object_from_fields(lambda tag: next(iter(_regex_find_all(fragment, tag)), None))
        if obj:
            result.objects.append(obj)
    for fragment in _regex_find_all(text, "CommonPrefixes"):
        result.common_prefixes.extend(_regex_find_all(fragment, "Prefix"))

    truncated = next(iter(_regex_find_all(text, "IsTruncated")), "false").lower() == "true"
    token = next(iter(_regex_find_all(text, "NextContinuationToken")), None)
    result.next_token = token if truncated and token else None
    return result


def parse_list_result(text: str) -> ListResult:
    """解析 ListObjectsV2 的 ListBucketResult"""
    if looks_like_html(text):
        raise AuthError("列举对象时返回了 HTML 页面，登录状态可能已失效")

    root = _parse_xml(text)
    if root is not None:
        if _local_name(root.tag) != "ListBucketResult":
            raise InternalError(f"列举对象响应格式异常: {text[:200]}")
        return _list_result_from_tree(root)

    if "ListBucketResult" not in (text or ""):
        raise InternalError(f"无法解析列举对象响应: {(text or '')[:200]}")
    return _list_result_from_regex(text)


# ---------------------------------------------------------------------------
# HTTP 状态分类
# ---------------------------------------------------------------------------

def classify_response(response: httpx.Response, service: str, action: str) -> httpx.Response:
    """2xx 原样返回，其余按错误类型抛出"""
    if response.is_success:
        return response

    status = response.status_code
    body = response.text if response.content else ""
    code, message = parse_s3_error(body)
    detail = message or body[:200] or response.reason_phrase
    text = f"{action}失败 (HTTP {status}{', ' + code if code else ''}): {detail}"

    if code in STORAGE_ERROR_CODES:
        raise StorageError(text, code=code)
    if code in AUTH_ERROR_CODES or status in (401, 403):
        raise AuthError(text)
    if status == 404:
        raise StorageError(text, code=code or "NotFound")
    raise ProviderError(service, text, code=code or status)
