#!/usr/bin/env python3
"""
mediavault operator CLI

Runs single storage operations against the configured backend.

Usage:
    python -m mediavault put posts/clip.mp4 ./clip.mp4 --public
    python -m mediavault get posts/clip.mp4 --range bytes=0-99 -o head.bin
    python -m mediavault head posts/clip.mp4
    python -m mediavault url posts/clip.mp4 --ttl 60
    python -m mediavault upload-url products/42/a.jpg --content-type image/jpeg
    python -m mediavault delete posts/clip.mp4

    # Configuration comes from the environment
    MEDIAVAULT_DRIVER=s3 MEDIAVAULT_S3_PRIVATE_BUCKET=media python -m mediavault head a.jpg
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from mediavault.core.config import StorageConfig
from mediavault.core.errors import ConfigurationError
from mediavault.core.types import Visibility
from mediavault.observability.logging import setup_logging
from mediavault.storage.store import ContentStore, create_store


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediavault", description=__doc__.split("\n\n")[1])
    parser.add_argument("--env-prefix", default="MEDIAVAULT", help="environment variable prefix")
    commands = parser.add_subparsers(dest="command", required=True)

    def add_visibility(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--public", action="store_true", help="object is public")

    put = commands.add_parser("put", help="upload a local file")
    put.add_argument("key")
    put.add_argument("path", type=Path)
    put.add_argument("--content-type")
    add_visibility(put)

    get = commands.add_parser("get", help="download an object (or a byte range)")
    get.add_argument("key")
    get.add_argument("--range", dest="range_header", help="e.g. bytes=0-99")
    get.add_argument("-o", "--output", type=Path, help="file to write (default: stdout)")
    add_visibility(get)

    head = commands.add_parser("head", help="show object metadata")
    head.add_argument("key")
    add_visibility(head)

    url = commands.add_parser("url", help="issue an access URL")
    url.add_argument("key")
    url.add_argument("--ttl", type=int)
    add_visibility(url)

    upload_url = commands.add_parser("upload-url", help="issue a presigned upload URL")
    upload_url.add_argument("key")
    upload_url.add_argument("--content-type", required=True)
    upload_url.add_argument("--ttl", type=int)
    add_visibility(upload_url)

    delete = commands.add_parser("delete", help="remove an object")
    delete.add_argument("key")
    add_visibility(delete)

    return parser


async def run(store: ContentStore, args: argparse.Namespace) -> int:
    visibility = Visibility.PUBLIC if args.public else Visibility.PRIVATE

    if args.command == "put":
        result = await store.upload(args.key, args.path, args.content_type, visibility)
        if result.is_err():
            print(f"Upload failed: {result.error}", file=sys.stderr)
            return 1
        stored = result.unwrap()
        print(f"{stored.key} ({stored.size_bytes} bytes, {stored.content_type})")
        return 0

    if args.command == "get":
        result = await store.read(args.key, args.range_header, visibility)
        if result.is_err():
            print(f"Read failed: {result.error}", file=sys.stderr)
            return 2 if result.error.is_not_found else 1
        opened = result.unwrap()
        print(f"HTTP {opened.status} {json.dumps(opened.headers())}", file=sys.stderr)
        sink = args.output.open("wb") if args.output else sys.stdout.buffer
        try:
            async with opened.stream as stream:
                async for chunk in stream:
                    sink.write(chunk)
        finally:
            if args.output:
                sink.close()
        return 0

    if args.command == "head":
        result = await store.head(args.key, visibility)
        if result.is_err():
            print(f"Head failed: {result.error}", file=sys.stderr)
            return 2 if result.error.is_not_found else 1
        stored = result.unwrap()
        print(json.dumps({
            "key": stored.key.value,
            "size": stored.size_bytes,
            "contentType": stored.content_type,
            "lastModified": stored.last_modified.isoformat(),
            "etag": stored.etag,
        }))
        return 0

    if args.command in ("url", "upload-url"):
        if args.command == "url":
            result = await store.url_for(args.key, visibility, args.ttl)
        else:
            result = await store.upload_url_for(args.key, args.content_type, visibility, args.ttl)
        if result.is_err():
            print(f"Signing failed: {result.error}", file=sys.stderr)
            return 1
        print(json.dumps(result.unwrap().to_dict()))
        return 0

    removed = await store.delete(args.key, visibility)
    print("deleted" if removed else "nothing deleted")
    return 0


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config_result = StorageConfig.from_env(args.env_prefix)
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}", file=sys.stderr)
        return 78
    config = config_result.unwrap()
    setup_logging(config.observability.log_level, json_output=config.observability.log_json)

    try:
        store = create_store(config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 78

    async with store:
        return await run(store, args)


def main(argv: Optional[Sequence[str]] = None) -> None:
    sys.exit(asyncio.run(main_async(argv)))


if __name__ == "__main__":
    main()
