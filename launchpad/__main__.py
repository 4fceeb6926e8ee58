"""Launchpad Sites - command line entry point.

Usage:
    launchpad serve [--host 0.0.0.0] [--port 3001]
    launchpad upload FOLDER [--name NAME] [--url URL] [--token TOKEN]
    launchpad token OWNER_ID
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from . import auth, config
from .client import SiteUploader
from .errors import LaunchpadError

_LOG = logging.getLogger("launchpad")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP service under uvicorn."""
    import uvicorn

    from .app import create_app

    _LOG.info("Starting Launchpad Sites on %s:%d (base URL %s)", args.host, args.port, config.BASE_URL)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)
    return 0


async def _upload(args: argparse.Namespace) -> int:
    async with SiteUploader(args.url, token=args.token) as uploader:
        report = await uploader.upload_folder(Path(args.folder), site_name=args.name)

    print(json.dumps({
        "siteId": report.site_id,
        "url": report.url,
        "chunks": report.chunks,
        "files": report.files_total,
        "failedFiles": report.failed_paths,
        "complete": report.complete,
    }, indent=2))
    if not report.success:
        _LOG.warning("Upload finished with %d failed files", len(report.failed_paths))
        return 1
    return 0


def cmd_upload(args: argparse.Namespace) -> int:
    """Upload a built site folder and finalize it."""
    try:
        return asyncio.run(_upload(args))
    except (LaunchpadError, NotADirectoryError) as e:
        _LOG.error("Upload failed: %s", e)
        return 1


def cmd_token(args: argparse.Namespace) -> int:
    """Print a signed owner token."""
    if not auth.is_configured():
        _LOG.error("LAUNCHPAD_AUTH_SECRET environment variable not set")
        return 1
    print(auth.generate_token(args.owner_id))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="launchpad", description="Launchpad static site hosting")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the upload and serving API")
    serve.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3001")))
    serve.set_defaults(func=cmd_serve)

    upload = sub.add_parser("upload", help="Upload a built site folder")
    upload.add_argument("folder", help="Folder containing index.html and its assets")
    upload.add_argument("--name", help="Display name for the site")
    upload.add_argument("--url", default=config.BASE_URL, help=f"Service URL (default {config.BASE_URL})")
    upload.add_argument("--token", default=os.environ.get("LAUNCHPAD_TOKEN"), help="Owner token")
    upload.set_defaults(func=cmd_upload)

    token = sub.add_parser("token", help="Generate a signed owner token")
    token.add_argument("owner_id")
    token.set_defaults(func=cmd_token)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
