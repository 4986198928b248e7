import argparse
import asyncio
import json
import os
import time

import httpx

from resumable_upload.client import HttpUploadTransport
from resumable_upload.config import client_settings
from resumable_upload.driver import UploadDriver, UploadProgress, UploadState
from resumable_upload.models import StorageMode


def _print_progress(progress: UploadProgress) -> None:
    print(
        f"[{progress.state.value}] session={progress.session_id} "
        f"{progress.received}/{progress.total} chunks ({progress.percentage:.2f}%)"
    )


async def _run(args: argparse.Namespace) -> dict:
    started = time.perf_counter()
    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.request_timeout_seconds) as client:
        driver = UploadDriver.from_settings(
            HttpUploadTransport(client),
            args.path,
            chunk_size=args.chunk_size_bytes,
            concurrency=args.concurrency,
            max_retries=args.max_retries,
            request_timeout_seconds=args.request_timeout_seconds,
            session_id=args.session_id or None,
            file_name=args.file_name or None,
            storage_mode=StorageMode(args.storage_mode),
            on_progress=None if args.quiet else _print_progress,
        )
        progress = await driver.start()

    summary = {
        "base_url": args.base_url,
        "path": args.path,
        "session_id": progress.session_id,
        "state": progress.state.value,
        "file_size_bytes": driver.file_size,
        "chunk_size_bytes": driver.chunk_size,
        "total_chunks": progress.total,
        "received_chunks": progress.received,
        "failed_chunk": progress.failed_chunk,
        "error": progress.error,
        "error_code": progress.error_code,
        "final_path": progress.result.final_path if progress.result else None,
        "elapsed_seconds": round(time.perf_counter() - started, 3),
    }
    elapsed = summary["elapsed_seconds"]
    summary["throughput_mb_per_s"] = round(driver.file_size / (1024 * 1024) / elapsed, 3) if elapsed > 0 else 0.0
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload a file to resumable-upload-service in chunks.")
    parser.add_argument("path", help="Local file to upload")
    parser.add_argument("--base-url", default=client_settings.base_url, help="API base URL")
    parser.add_argument("--session-id", default="", help="Resume an existing upload session")
    parser.add_argument("--file-name", default="", help="Name to register on the server (defaults to the basename)")
    parser.add_argument(
        "--storage-mode",
        choices=[mode.value for mode in StorageMode],
        default=StorageMode.on_disk.value,
        help="How the server buffers chunk bodies.",
    )
    parser.add_argument("--chunk-size-bytes", type=int, default=client_settings.chunk_size_bytes)
    parser.add_argument("--concurrency", type=int, default=client_settings.concurrency)
    parser.add_argument("--max-retries", type=int, default=client_settings.max_retries)
    parser.add_argument("--request-timeout-seconds", type=float, default=client_settings.request_timeout_seconds)
    parser.add_argument("--quiet", action="store_true", help="Only print the final summary")
    parser.add_argument("--output", default="", help="Optional path to write JSON summary")
    args = parser.parse_args()

    summary = asyncio.run(_run(args))

    print("Upload summary:")
    for key, value in summary.items():
        print(f"- {key}: {value}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"\nWrote summary to {args.output}")

    if summary["state"] != UploadState.completed.value:
        print(f"\nResume later with --session-id {summary['session_id']}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
