import argparse
import logging
import sys
from pathlib import Path

from .config import configure_logging, resolve_config
from .errors import PipelineError

logger = logging.getLogger(__name__)


def _services(args):
    from .services import PipelineServices

    overrides = {}
    if getattr(args, "db", None):
        overrides["queue.db_path"] = args.db
    config = resolve_config(overrides)
    configure_logging(config)
    return PipelineServices(config)


def _print_queue_status(stats):
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Waiting:              {stats['waiting']}")
    print(f"Delayed:              {stats['delayed']}")
    print(f"Active:               {stats['active']}")
    print(f"Completed:            {stats['completed']}")
    print(f"Failed:               {stats['failed']}")
    print(f"Total:                {stats['total']}")
    print("=" * 60)


def _print_video(video, job):
    print(f"Video:                {video.id} ({video.title})")
    print(f"Status:               {video.status.value}")
    print(f"Provider asset:       {video.external_asset_id or '-'}")
    print(f"Embed URL:            {video.embed_url or '-'}")
    if video.error_message:
        print(f"Error:                {video.error_message}")
    if job is not None:
        print(
            f"Job:                  {job.id} {job.state.value} {job.progress}% "
            f"(attempts {job.attempts_made}/{job.max_attempts})"
        )


def main():
    parser = argparse.ArgumentParser(
        prog="video-pipeline", description="Video ingestion and processing pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # API
    api_parser = subparsers.add_parser("api", help="Run the HTTP/WebSocket API")
    api_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    api_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the processing worker")
    worker_parser.add_argument("--concurrency", "-c", type=int, help="Concurrent job slots")
    worker_parser.add_argument(
        "--once", action="store_true", help="Process due jobs, then exit"
    )
    worker_parser.add_argument("--db", type=str, help="Queue database path")
    worker_parser.add_argument(
        "--no-events",
        action="store_true",
        help="Run with the local realtime backend, status events are dropped",
    )

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Upload a video file and queue it")
    submit_parser.add_argument("--chapter", required=True, type=str, help="Chapter id")
    submit_parser.add_argument("--file", "-f", required=True, type=str, help="Video file")
    submit_parser.add_argument("--title", "-t", required=True, type=str, help="Video title")
    submit_parser.add_argument("--description", type=str, help="Video description")
    submit_parser.add_argument("--order-index", type=int, default=0, help="Position in chapter")
    submit_parser.add_argument("--duration", type=int, help="Duration in seconds")
    submit_parser.add_argument("--db", type=str, help="Queue database path")

    # RESUBMIT
    resubmit_parser = subparsers.add_parser(
        "resubmit", help="Queue a PENDING video that has no job"
    )
    resubmit_parser.add_argument("video_id", type=str, help="Video id")
    resubmit_parser.add_argument("--db", type=str, help="Queue database path")

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show a video's status")
    status_parser.add_argument("video_id", type=str, help="Video id")
    status_parser.add_argument("--db", type=str, help="Queue database path")

    # QUEUE subcommands (status, job, prune, recover)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    queue_status_parser.add_argument("--db", type=str, help="Queue database path")

    job_parser = queue_subparsers.add_parser("job", help="Show one job")
    job_parser.add_argument("job_id", type=str, help="Job id")
    job_parser.add_argument("--db", type=str, help="Queue database path")

    prune_parser = queue_subparsers.add_parser("prune", help="Apply retention to finished jobs")
    prune_parser.add_argument("--db", type=str, help="Queue database path")

    recover_parser = queue_subparsers.add_parser(
        "recover", help="Return stale active jobs to waiting"
    )
    recover_parser.add_argument("--db", type=str, help="Queue database path")
    recover_parser.add_argument("--timeout", type=int, help="Stale after this many seconds")

    # INIT-DB
    subparsers.add_parser("init-db", help="Create the video table")

    # CHECK
    subparsers.add_parser("check", help="Verify provider credentials")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "queue" and args.queue_command is None:
        queue_parser.print_help()
        return

    try:
        _dispatch(args)
    except PipelineError as e:
        print(f"❌ {e.code}: {e.message}")
        sys.exit(1)


def _dispatch(args):
    if args.command == "api":
        import uvicorn

        uvicorn.run(
            "video_pipeline.api.main:build_app", factory=True, host=args.host, port=args.port
        )
        return

    services = _services(args)
    try:
        if args.command == "worker":
            if args.no_events:
                logger.warning("Worker started with --no-events, status events are dropped")
            else:
                services.check_standalone_worker()
            worker = services.build_worker(args.concurrency)
            if args.once:
                worker.sweep()
                processed = 0
                while worker.run_once():
                    processed += 1
                print(f"Dispatched {processed} job(s).")
                _print_queue_status(services.queue.counts())
            else:
                try:
                    worker.run()
                except KeyboardInterrupt:
                    print("Worker interrupted.")

        elif args.command == "submit":
            path = Path(args.file)
            if not path.is_file():
                print(f"❌ File not found: {path}")
                sys.exit(1)
            with open(path, "rb") as f:
                result = services.ingest.submit(
                    args.chapter,
                    f,
                    args.title,
                    args.description,
                    args.order_index,
                    args.duration,
                )
            print(f"✅ Video {result.video.id} queued as job {result.job_id}")
            print(f"Provider asset:       {result.video.external_asset_id}")

        elif args.command == "resubmit":
            result = services.ingest.resubmit(args.video_id)
            print(f"✅ Video {result.video.id} queued as job {result.job_id}")

        elif args.command == "status":
            video = services.store.get_video(args.video_id)
            job = None
            if video.processing_job_id:
                job = services.queue.get_job(video.processing_job_id)
            else:
                job = services.queue.find_live_job(services.config.queue.job_name, video.id)
            _print_video(video, job)

        elif args.command == "queue":
            queue = services.queue
            if args.queue_command == "status":
                _print_queue_status(queue.counts())

            elif args.queue_command == "job":
                job = queue.get_job(args.job_id)
                if job is None:
                    print(f"❌ Job {args.job_id} not found")
                    sys.exit(1)
                print(job.model_dump_json(indent=2))

            elif args.queue_command == "prune":
                cfg = services.config.queue
                removed = queue.prune(cfg.job_name, cfg.remove_on_complete, cfg.remove_on_fail)
                print(f"Removed {removed} finished job(s).")

            elif args.queue_command == "recover":
                timeout = args.timeout or services.config.queue.stale_timeout_s
                reset = queue.reset_stale_active(timeout)
                print(f"Reset {reset} stale job(s).")
                orphaned = services.processor.reconcile(queue)
                print(f"Failed {orphaned} video(s) left PROCESSING without a job.")

        elif args.command == "init-db":
            print("Creating tables...")
            services.store.create_tables()
            print("Tables created.")

        elif args.command == "check":
            print("Checking provider credentials...")
            if services.provider.verify_credentials():
                print("✅ Provider token is valid.")
            else:
                print("❌ Provider token missing or rejected.")
                sys.exit(1)
    finally:
        services.close()


if __name__ == "__main__":
    main()
