#!/usr/bin/env python3
"""
Manual driver for the Viral Clips API.

Submits a YouTube video, follows the job until it finishes and prints the
resulting clips.

Usage:
    python submit_job.py https://youtu.be/dQw4w9WgXcQ
    python submit_job.py <url> --max-clips 5 --min-duration 15 --max-duration 45
    python submit_job.py <url> --caption-style neon --no-music
    python submit_job.py --metadata-only <url>      # Preview metadata, no job
    python submit_job.py --status <job_id>          # Follow an existing job
    python submit_job.py --cancel <job_id>

Reads VIRALCLIPS_API_URL and VIRALCLIPS_TOKEN from the environment / .env.
"""

import argparse
import asyncio
import os
import time
from typing import Any, get_args

from dotenv import load_dotenv

from viralclips.client import ClipJobsApiError, ClipJobsClient, JobPoller, PollListener
from viralclips.client.poller import DEFAULT_INTERVAL_SECONDS
from viralclips.schemas.requests import CaptionStyleInput

# Load .env file
load_dotenv()

# Configuration
BASE_URL = os.getenv("VIRALCLIPS_API_URL", "http://localhost:8000")
TOKEN = os.getenv("VIRALCLIPS_TOKEN")


class ConsoleListener(PollListener):
    """Prints stage changes and the final result."""

    def __init__(self):
        self.start_time = time.time()
        self.last_stage = ""

    def on_update(self, status: dict[str, Any]) -> None:
        stage = status.get("stage", "")
        if stage != self.last_stage:
            elapsed = time.time() - self.start_time
            print(f"   [{status.get('progress', 0):3d}%] [{elapsed:6.1f}s] {status.get('status')}: {stage}")
            self.last_stage = stage

    def on_completed(self, status: dict[str, Any], clips: list[dict[str, Any]]) -> None:
        elapsed = time.time() - self.start_time
        print(f"\n✅ Job completed in {elapsed:.1f}s with {len(clips)} clip(s)")
        for index, clip in enumerate(clips, start=1):
            print(f"\n   Clip {index}: {clip.get('title')}")
            print(f"      Time: {clip.get('startTime', 0):.1f}s - {clip.get('endTime', 0):.1f}s "
                  f"({clip.get('durationSeconds', 0):.1f}s)")
            if clip.get("predictedEngagement") is not None:
                print(f"      Engagement: {clip['predictedEngagement']:.2f}")
            print(f"      Video: {clip.get('videoUrl') or '(none)'}")

    def on_failed(self, status: dict[str, Any], error: str) -> None:
        print(f"\n❌ Job failed: {error}")

    def on_cancelled(self, status: dict[str, Any], message: str) -> None:
        print(f"\n🛑 Job cancelled. {message}")

    def on_error(self, error: Exception) -> None:
        print(f"\n❌ Stopped polling: {error}")


def build_options(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "captionStyle": args.caption_style,
        "musicEnabled": not args.no_music,
        "sfxEnabled": not args.no_sfx,
        "maxClips": args.max_clips,
        "minDuration": args.min_duration,
        "maxDuration": args.max_duration,
    }


async def run(args: argparse.Namespace) -> int:
    async with ClipJobsClient(BASE_URL, token=TOKEN) as client:
        poller = JobPoller(client, ConsoleListener(), interval_seconds=args.interval)

        try:
            if args.metadata_only:
                result = await client.preview_metadata(args.metadata_only)
                metadata = result["metadata"]
                print(f"   Title: {metadata['title']}")
                print(f"   Duration: {metadata['durationSeconds']}s")
                print(f"   Views: {metadata.get('statistics', {}).get('viewCount', 'n/a')}")
                return 0

            if args.cancel:
                result = await client.cancel_job(args.cancel)
                print(f"   Job {result['jobId']}: {result['status']}")
                return 0

            if args.status:
                handle = poller.start(args.status)
            else:
                if not args.url:
                    print("❌ A YouTube URL is required")
                    return 2
                print(f"\n🚀 Submitting {args.url}")
                job = await client.create_job(args.url, build_options(args))
                print(f"✅ Job submitted: {job['jobId']} ({job['status']})")
                handle = poller.follow(job)
                if handle is None:
                    return 0 if job["status"] == "completed" else 1

            print(f"\n⏳ Waiting for job {handle.job_id}...")
            final = await handle.wait()
            return 0 if final and final.get("status") == "completed" else 1

        except ClipJobsApiError as e:
            print(f"❌ {e.code}: {e.message}")
            if e.job_id:
                print(f"   Job id: {e.job_id}")
            return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Submit a YouTube video to the Viral Clips API and follow the job",
    )
    parser.add_argument("url", nargs="?", help="YouTube video URL")
    parser.add_argument("--caption-style", choices=get_args(CaptionStyleInput), default="modern")
    parser.add_argument("--no-music", action="store_true", help="Disable background music")
    parser.add_argument("--no-sfx", action="store_true", help="Disable sound effects")
    parser.add_argument("--max-clips", type=int, default=3, help="Maximum clips to generate")
    parser.add_argument("--min-duration", type=int, default=15, help="Minimum clip duration in seconds")
    parser.add_argument("--max-duration", type=int, default=60, help="Maximum clip duration in seconds")
    parser.add_argument(
        "--interval", type=float, default=DEFAULT_INTERVAL_SECONDS, help="Seconds between status checks"
    )
    parser.add_argument("--metadata-only", type=str, metavar="URL", help="Only preview metadata for URL")
    parser.add_argument("--status", type=str, metavar="JOB_ID", help="Follow an existing job")
    parser.add_argument("--cancel", type=str, metavar="JOB_ID", help="Cancel a job")
    return parser


def main():
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
