import argparse
import json
import sys
import time
import uuid
from pathlib import Path

from tqdm import tqdm

from .config import resolve_config
from .encoder import FfmpegRunner, check_encoder
from .errors import DuplicateJobError, JobNotFoundError
from .log import configure_logging
from .service import build_services

TERMINAL = ("completed", "failed")


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, help="Config YAML (default: config/default.yaml)")
    common.add_argument("--db", type=str, help="Queue database path")
    common.add_argument("--database-url", type=str, help="SQLAlchemy URL of the video records")
    common.add_argument("--output-root", type=str, help="Published HLS output root")
    common.add_argument("--redis-url", type=str, help="Redis URL for progress events")
    common.add_argument("--log-level", type=str, help="Log level (DEBUG, INFO, ...)")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="vod-transcoder", description="HLS adaptive bitrate transcoding service"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", parents=[common], help="Run the worker pool")
    worker_parser.add_argument("--concurrency", "-c", type=int, help="Concurrent jobs")

    # API
    api_parser = subparsers.add_parser("api", parents=[common], help="Run the HTTP API")
    api_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    api_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", parents=[common], help="Enqueue a source file")
    submit_parser.add_argument("file", type=str, help="Source video file")
    submit_parser.add_argument("--video-id", type=str, help="Video id (default: random)")
    submit_parser.add_argument("--uploader-id", type=str, required=True, help="Uploader id")
    submit_parser.add_argument("--title", type=str, help="Video title")
    submit_parser.add_argument(
        "--wait", action="store_true", help="Show progress until the job finishes"
    )

    # STATUS
    status_parser = subparsers.add_parser("status", parents=[common], help="Show a job's status")
    status_parser.add_argument("job_id", type=str, help="Job id")

    # QUEUE subcommands (stats, reclaim)
    queue_parser = subparsers.add_parser("queue", help="Inspect the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("stats", parents=[common], help="Jobs per state")
    queue_subparsers.add_parser(
        "reclaim", parents=[common], help="Redeliver jobs with expired leases"
    )

    # CHECK ENCODER
    subparsers.add_parser("check", parents=[common], help="Verify the encoder binary")

    return parser


def _config_from_args(args: argparse.Namespace):
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config_path = Path(args.config) if getattr(args, "config", None) else None
    return resolve_config(cli_dict, config_path=config_path)


def _print_rule(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _wait_for_job(transcoder, job_id: str, poll_s: float = 1.0) -> dict:
    with tqdm(total=100, desc="Transcoding", unit="%") as bar:
        while True:
            status = transcoder.get_job_status(job_id)
            bar.update(max(0, status["progress"] - bar.n))
            bar.set_postfix(state=status["state"], attempt=status["attempts"])
            if status["state"] in TERMINAL:
                return status
            time.sleep(poll_s)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "queue" and args.queue_command is None:
        parser.parse_args(["queue", "--help"])
        return 0

    config = _config_from_args(args)
    long_running = args.command in ("worker", "api")
    configure_logging(config.logging.level, json_output=long_running and config.logging.json_output)

    if args.command == "check":
        print("Checking dependencies...")
        if check_encoder(config.encoder):
            print(f"✅ encoder found: {FfmpegRunner(config.encoder).get_ffmpeg_exe()}")
            return 0
        print("❌ encoder NOT found or not runnable.")
        return 1

    services = build_services(config)
    try:
        if args.command == "worker":
            services.worker_pool().run_forever()
            return 0

        if args.command == "api":
            import uvicorn

            from .api.main import create_app

            uvicorn.run(create_app(services), host=args.host, port=args.port)
            return 0

        if args.command == "submit":
            video_id = args.video_id or uuid.uuid4().hex
            if services.videos.get_video(video_id) is None:
                services.videos.create_video(video_id, args.uploader_id, args.title)
            try:
                job_id = services.transcoder.submit(
                    str(Path(args.file).resolve()),
                    video_id=video_id,
                    uploader_id=args.uploader_id,
                    title=args.title,
                )
            except DuplicateJobError as e:
                print(f"❌ {e}", file=sys.stderr)
                return 1
            print(f"Submitted job {job_id} for video {video_id}")
            if not args.wait:
                return 0
            status = _wait_for_job(services.transcoder, job_id)
            if status["state"] == "completed":
                print(f"✅ Published: {status['result']['manifest_url']}")
                return 0
            print(f"❌ Failed: {status['error']}")
            return 1

        if args.command == "status":
            try:
                status = services.transcoder.get_job_status(args.job_id)
            except JobNotFoundError as e:
                print(f"❌ {e}", file=sys.stderr)
                return 1
            print(json.dumps(status, indent=2))
            return 0

        if args.command == "queue":
            if args.queue_command == "stats":
                stats = services.transcoder.stats()
                _print_rule("QUEUE STATUS")
                print(f"Waiting:              {stats['waiting']}")
                print(f"Active:               {stats['active']}")
                print(f"Completed:            {stats['completed']}")
                print(f"Failed:               {stats['failed']}")
                print(f"Total:                {sum(stats.values())}")
                print("=" * 60)
                return 0

            if args.queue_command == "reclaim":
                failed = services.worker_pool().reclaim_once()
                print(f"Reclaimed expired leases; {len(failed)} job(s) failed permanently")
                for job in failed:
                    print(f"  {job.job_id} (video {job.payload.video_id})")
                return 0
    finally:
        services.close()

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
