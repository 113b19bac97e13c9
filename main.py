#!/usr/bin/env python3
"""
Review Report Worker - Main Entry Point

Usage:
    # Run API server (control surface + scheduler)
    python main.py server

    # Run the scheduler without the API
    python main.py worker

    # Manage the store
    python main.py init-db
    python main.py enqueue --url https://www.google.com/maps/reviews/... --reason "Spam"
    python main.py add-account --identity someone@gmail.com --token ya29...
    python main.py add-proxy --address gw.proxy.example --port 7000 --username user --password pass
"""

import sys
import signal
import asyncio
import argparse
import logging

from api.config import config

logger = logging.getLogger("review_reporter")


def check_environment() -> bool:
    """Check that required environment variables are set."""
    missing = config.validate()
    if missing:
        print("❌ Missing required environment variables:")
        for var in missing:
            print(f"  - {var}")
        print("\nPlease set these in your .env file or environment.")
        return False
    return True


def run_server(host: str, port: int, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    print(f"🚀 Starting server on {host}:{port}")
    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.LOG_LEVEL.lower(),
    )


async def run_worker():
    """Run the scheduler until SIGINT/SIGTERM."""
    from api.database import init_database
    from api.scheduler import JobScheduler

    await init_database()
    scheduler = JobScheduler()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    await scheduler.start()
    logger.info("Worker running, press Ctrl+C to stop")
    try:
        await stop.wait()
    finally:
        await scheduler.shutdown()
        stats = scheduler.state.stats.to_dict()
        logger.info(
            f"Worker stopped: {stats['successful']} succeeded, "
            f"{stats['failed']} failed of {stats['totalProcessed']}"
        )


async def init_db():
    from api import database

    await database.init_database()
    print(f"✅ Database ready at {database.DB_PATH}")


async def enqueue(url: str, reason: str = None, label: str = None):
    from api.database import init_database, enqueue_job

    await init_database()
    job = await enqueue_job(url, reason, label)
    print(f"✅ Enqueued job {job['id']}")


async def add_account(identity: str, token: str = None):
    from api.database import init_database, add_account as store_add_account

    await init_database()
    account = await store_add_account(identity, token)
    if account is None:
        print(f"❌ Account {identity} already exists")
        return False
    print(f"✅ Added account {account['id']} ({identity})")
    return True


async def add_proxy(args):
    from api.database import init_database, add_proxy_endpoint

    await init_database()
    proxy_id = await add_proxy_endpoint(
        args.address,
        args.port,
        args.protocol,
        args.username,
        args.password,
        max_sessions=args.max_sessions,
        rotation_enabled=not args.no_rotation,
        priority=args.priority,
        location=args.location,
    )
    print(f"✅ Added proxy {proxy_id} ({args.address}:{args.port})")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Review Report Worker - unattended Google Maps review reporting"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run API server')
    server_parser.add_argument('--host', default=config.HOST, help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=config.PORT, help='Port to bind to')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    subparsers.add_parser('worker', help='Run the job scheduler without the API')
    subparsers.add_parser('init-db', help='Create or migrate the database')

    enqueue_parser = subparsers.add_parser('enqueue', help='Queue a review report job')
    enqueue_parser.add_argument('--url', required=True, help='Review, place or report-form URL')
    enqueue_parser.add_argument('--reason', help='Report reason text')
    enqueue_parser.add_argument('--label', help='Display name (e.g. business name)')

    account_parser = subparsers.add_parser('add-account', help='Register a reporting account')
    account_parser.add_argument('--identity', required=True, help='Account email')
    account_parser.add_argument('--token', help='OAuth access token for verification')

    proxy_parser = subparsers.add_parser('add-proxy', help='Register a proxy endpoint')
    proxy_parser.add_argument('--address', required=True)
    proxy_parser.add_argument('--port', type=int, required=True)
    proxy_parser.add_argument('--protocol', default='http')
    proxy_parser.add_argument('--username')
    proxy_parser.add_argument('--password')
    proxy_parser.add_argument('--max-sessions', type=int, default=10000)
    proxy_parser.add_argument('--no-rotation', action='store_true', help='Use the username as-is')
    proxy_parser.add_argument('--priority', type=int, default=0)
    proxy_parser.add_argument('--location')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if args.command in ('server', 'worker') and not check_environment():
        sys.exit(1)

    if args.command == 'server':
        run_server(args.host, args.port, args.reload)

    elif args.command == 'worker':
        asyncio.run(run_worker())

    elif args.command == 'init-db':
        asyncio.run(init_db())

    elif args.command == 'enqueue':
        asyncio.run(enqueue(args.url, args.reason, args.label))

    elif args.command == 'add-account':
        if not asyncio.run(add_account(args.identity, args.token)):
            sys.exit(1)

    elif args.command == 'add-proxy':
        asyncio.run(add_proxy(args))


if __name__ == "__main__":
    main()
