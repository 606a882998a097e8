import argparse
import json
import sys
from datetime import datetime

from . import config as config_lib
from . import service
from .converter import check_kepubify
from .errors import BookifyError, DuplicateAccountError, NotFoundError
from .logging_config import setup_logging
from .queue import Account, CleanupSweeper


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookify", description="EPUB to KEPUB conversion queue with Google Drive upload"
    )
    parser.add_argument("--config", type=str, help="Config YAML (default: config/default.yaml)")
    parser.add_argument("--db", type=str, help="Job store database path")
    parser.add_argument("--temp-dir", type=str, help="Shared temp directory")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the queue worker and cleanup sweeper")
    worker_parser.add_argument("--poll-interval", type=float, help="Seconds between queue polls")

    # ACCOUNT subcommands (add, list, check)
    account_parser = subparsers.add_parser("account", help="Manage Drive accounts")
    account_subparsers = account_parser.add_subparsers(
        dest="account_command", help="Account commands"
    )

    add_parser = account_subparsers.add_parser("add", help="Register an account")
    add_parser.add_argument("--name", required=True, help="Unique account name")
    add_parser.add_argument("--folder-id", required=True, help="Destination Drive folder ID")
    add_parser.add_argument("--access-token", required=True, help="OAuth access token")
    add_parser.add_argument("--refresh-token", required=True, help="OAuth refresh token")
    add_parser.add_argument("--expiry", type=str, help="Access token expiry (ISO 8601)")
    add_parser.add_argument("--email", type=str, default="", help="Authorizing user's email")

    account_subparsers.add_parser("list", help="List accounts")

    check_account_parser = account_subparsers.add_parser(
        "check", help="Test Drive connection and folder access"
    )
    check_account_parser.add_argument("name", help="Account name")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue EPUB files for conversion")
    enqueue_parser.add_argument("--account", "-a", required=True, help="Destination account name")
    enqueue_parser.add_argument("files", nargs="+", help="EPUB files")

    # QUEUE subcommands (status, recent, process)
    queue_parser = subparsers.add_parser("queue", help="Inspect the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", help="Show queue status")

    recent_parser = queue_subparsers.add_parser("recent", help="Show recent jobs")
    recent_parser.add_argument("--limit", "-n", type=int, default=50, help="Number of jobs")

    process_parser = queue_subparsers.add_parser(
        "process", help="Process queued jobs once, then exit"
    )
    process_parser.add_argument("--max-jobs", type=int, help="Maximum number of jobs to process")

    # JOB
    job_parser = subparsers.add_parser("job", help="Show one job")
    job_parser.add_argument("job_id", help="Job ID")

    # CLEANUP
    subparsers.add_parser("cleanup", help="Run one temp directory sweep")

    # CHECK KEPUBIFY
    subparsers.add_parser("check", help="Verify dependencies")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict, config_path=args.config)
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(2)

    if args.command == "check":
        print("Checking dependencies...")
        if check_kepubify(conf.converter.executable):
            print("✅ kepubify found.")
        else:
            print("❌ kepubify NOT found in PATH.")
            sys.exit(1)
        return

    if args.command == "worker":
        service.run_service(conf)
        return

    setup_logging(conf.logging.level, conf.logging.file)

    if args.command == "cleanup":
        sweeper = CleanupSweeper(
            conf.storage.temp_dir, max_age_s=conf.cleanup.max_age_s
        )
        removed = sweeper.tick()
        print(f"Removed {len(removed)} file(s) from {conf.storage.temp_dir}")
        for name in removed:
            print(f"  - {name}")
        return

    store = service.build_store(conf)
    try:
        if args.command == "account":
            _account_command(args, conf, store)
        elif args.command == "enqueue":
            _enqueue_command(args, conf, store)
        elif args.command == "queue":
            _queue_command(args, conf, store)
        elif args.command == "job":
            job = store.get_job(args.job_id)
            print(json.dumps(job.to_record(), indent=2))
    except NotFoundError as e:
        print(f"❌ {e}")
        sys.exit(1)
    except BookifyError as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
    finally:
        store.close()


def _account_command(args, conf, store):
    if args.account_command == "add":
        try:
            expiry = datetime.fromisoformat(args.expiry) if args.expiry else None
        except ValueError as e:
            print(f"❌ Invalid --expiry {args.expiry!r}: {e}")
            sys.exit(1)
        account = Account(
            name=args.name,
            folder_id=args.folder_id,
            access_token=args.access_token,
            refresh_token=args.refresh_token,
            token_expiry=expiry,
            user_email=args.email,
        )
        try:
            account = store.create_account(account)
        except DuplicateAccountError as e:
            print(f"❌ {e}")
            sys.exit(1)
        print(f"✅ Added account '{account.name}' (id={account.id})")

    elif args.account_command == "list":
        accounts = store.list_accounts()
        if not accounts:
            print("No accounts registered.")
            return
        for account in accounts:
            email = f" <{account.user_email}>" if account.user_email else ""
            print(f"{account.id:>4}  {account.name}{email}  folder={account.folder_id}")

    elif args.account_command == "check":
        account = store.get_account_by_name(args.name)
        uploader = service.build_uploader(conf, store)
        try:
            user = uploader.test_connection(account)
            print(f"✅ Connected as {user.get('displayName', '?')} ({user.get('emailAddress', '?')})")
            folder = uploader.test_folder_access(account)
            print(f"✅ Folder access OK: {folder.get('name')} ({folder.get('id')})")
        finally:
            uploader.close()

    else:
        print("Usage: bookify account {add,list,check}")


def _enqueue_command(args, conf, store):
    account = store.get_account_by_name(args.account)
    stats = service.enqueue_files(store, account, args.files, conf.storage.temp_dir)

    print("\n" + "=" * 60)
    print("ENQUEUE SUMMARY")
    print("=" * 60)
    print(f"Enqueued:             {stats['enqueued']}")
    print(f"Skipped:              {stats['skipped']}")
    for job_id in stats["job_ids"]:
        print(f"  + {job_id}")
    print("=" * 60)


def _queue_command(args, conf, store):
    if args.queue_command == "status":
        stats = service.get_queue_stats(store)
        print("\n" + "=" * 60)
        print("QUEUE STATUS")
        print("=" * 60)
        print(f"Queued:               {stats['queued']}")
        print(f"Processing:           {stats['processing']}")
        print(f"Completed:            {stats['completed']}")
        print(f"Failed:               {stats['failed']}")
        print(f"Total:                {stats['total']}")
        print("=" * 60)

    elif args.queue_command == "recent":
        jobs = store.list_recent_jobs(limit=args.limit)
        if not jobs:
            print("No jobs.")
            return
        for job in jobs:
            detail = job.drive_url or job.error or job.stage
            print(f"{job.id}  {job.status:<10} {job.progress:>3}%  {job.original_filename}  {detail}")

    elif args.queue_command == "process":
        components = service.build_components(conf, store=store)
        try:
            processed = components.worker.drain(max_jobs=args.max_jobs)
        finally:
            components.uploader.close()
        succeeded = sum(1 for job in processed if job.status == "completed")
        print("\n" + "=" * 60)
        print("PROCESSING SUMMARY")
        print("=" * 60)
        print(f"Succeeded:            {succeeded}")
        print(f"Failed:               {len(processed) - succeeded}")
        print("=" * 60)

    else:
        print("Usage: bookify queue {status,recent,process}")


if __name__ == "__main__":
    main()
