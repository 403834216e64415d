# -*- coding: utf-8 -*-
"""
命令行入口。解析参数、配置日志，并调用对应的上传/存储操作。
结果以 JSON 输出到 stdout，错误输出 {"type": ..., "data": ...} 并以非零状态退出。
"""
import argparse
import asyncio
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import orjson

from picnexus.core.nami import NamiStsProvider, NamiUploader
from picnexus.core.s3 import S3Store
from picnexus.errors import PicNexusError, ValidationError
from picnexus.utils.base_api import HttpClient
from picnexus.utils.config import Settings
from picnexus.utils.logger import bot_logger, close_logging, initialize_logging


def _add_header_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-H", "--header", action="append", default=[], metavar="NAME=VALUE",
        help="STS 请求附加的动态请求头，可重复",
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="picnexus", description="PicNexus 图床上传工具")
    parser.add_argument("-c", "--config", help="配置文件路径，默认读取 PICNEXUS_CONFIG 或 config/config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("upload-s3", help="上传文件到 S3 兼容存储")
    p.add_argument("file", help="本地文件路径")
    p.add_argument("--key", help="对象 Key，默认使用文件名")
    p.add_argument("--content-type", help="Content-Type，默认按扩展名推断")

    p = sub.add_parser("upload-nami", help="上传图片到纳米图床")
    p.add_argument("file", help="本地图片路径")
    _add_header_option(p)

    sub.add_parser("test-s3", help="测试 S3 连接")
    _add_header_option(sub.add_parser("test-nami", help="测试纳米 Cookie 和 Auth-Token"))

    p = sub.add_parser("list-s3", help="列举 S3 对象")
    p.add_argument("--prefix")
    p.add_argument("--delimiter")
    p.add_argument("--max-keys", type=int)
    p.add_argument("--token", help="continuation token")
    p.add_argument("--all", action="store_true", help="列出全部对象（按修改时间倒序）")

    p = sub.add_parser("delete-s3", help="删除 S3 对象")
    p.add_argument("keys", nargs="+")

    p = sub.add_parser("mkdir-s3", help="在 S3 中创建文件夹")
    p.add_argument("path")

    return parser.parse_args(argv)


def _parse_headers(items: List[str]) -> Dict[str, str]:
    headers = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValidationError(f"请求头格式错误，应为 NAME=VALUE: {item}")
        headers[name.strip().lower()] = value.strip()
    return headers


def _print_progress(event) -> None:
    bot_logger.info(f"[Progress] {event.progress}% {event.step}")


async def _run(args: argparse.Namespace, settings: Settings) -> Any:
    async with HttpClient(settings.http) as http:
        if args.command in ("upload-nami", "test-nami"):
            sts = NamiStsProvider(
                http,
                cookie=settings.nami.cookie,
                auth_token=settings.nami.auth_token,
                dynamic_headers=_parse_headers(args.header),
                sts_url=settings.nami.sts_url,
            )
            uploader = NamiUploader(http, sts, settings.nami, settings.retry)
            if args.command == "test-nami":
                return {"message": await uploader.test_connection()}
            result = await uploader.upload_file(args.file, progress=_print_progress)
            return result.to_dict()

        store = S3Store(http, settings.s3, settings.retry)
        if args.command == "upload-s3":
            result = await store.upload_file(
                args.file, key=args.key, content_type=args.content_type, progress=_print_progress,
            )
            return result.to_dict()
        if args.command == "test-s3":
            return {"message": await store.test_connection()}
        if args.command == "list-s3":
            if args.all:
                objects = await store.list_all_objects(prefix=args.prefix)
                return [asdict(o) for o in objects]
            result = await store.list_objects(
                prefix=args.prefix, continuation_token=args.token,
                delimiter=args.delimiter, max_keys=args.max_keys,
            )
            return result.to_dict()
        if args.command == "delete-s3":
            if len(args.keys) == 1:
                return {"message": await store.delete_object(args.keys[0])}
            return (await store.delete_objects(args.keys)).to_dict()
        if args.command == "mkdir-s3":
            return {"key": await store.create_folder(args.path)}

    raise ValidationError(f"未知命令: {args.command}")


def _dump(value: Any) -> str:
    return orjson.dumps(value, option=orjson.OPT_INDENT_2).decode("utf-8")


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        settings = Settings.load(args.config)
    except PicNexusError as e:
        print(_dump(e.to_dict()), file=sys.stderr)
        return 2

    initialize_logging(log_level="DEBUG" if args.verbose else settings.log_level, log_dir=settings.log_dir)
    try:
        output = asyncio.run(_run(args, settings))
    except PicNexusError as e:
        bot_logger.error(f"[CLI] {args.command} 失败: {e.user_message}")
        print(_dump(e.to_dict()), file=sys.stderr)
        return 1
    finally:
        close_logging()

    print(_dump(output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
