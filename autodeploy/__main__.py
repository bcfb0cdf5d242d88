"""
Entry point for running autodeploy via `python -m autodeploy`.

Usage:
    python -m autodeploy --token TOKEN --deploy "make run"

Both flags fall back to AUTODEPLOY_TOKEN and AUTODEPLOY_COMMAND (a .env
file in the working directory is honoured).
"""

import argparse
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from . import __version__
from .config import Config, config
from .detector import ChangeDetector
from .process import ProcessGroupController
from .repo import GitRepo
from .runner import DeployRunner
from .state import SupervisorState
from .supervisor import Supervisor

logger = logging.getLogger("autodeploy")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser(cfg: Config = config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autodeploy",
        description="Redeploy whenever the current git branch moves on the hosting service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Restart a server on every push to the checked-out branch
    autodeploy --token "$GITHUB_TOKEN" --deploy "python -m http.server 8000"

    # Watch a checkout elsewhere and log to a rotating file
    autodeploy --repo-dir /srv/app --deploy "./run.sh" --log-file /var/log/autodeploy.log

Environment Variables:
    AUTODEPLOY_TOKEN     - Default for --token
    AUTODEPLOY_COMMAND   - Default for --deploy
    AUTODEPLOY_API_URL   - API base URL (default https://api.github.com)
""",
    )
    parser.add_argument("--token", "-t", default=cfg.token, help="GitHub token (required)")
    parser.add_argument(
        "--deploy", "-d", default=cfg.deploy_command, help="deploy command, run with sh -c (required)"
    )
    parser.add_argument(
        "--repo-dir", type=Path, default=cfg.repo_dir, help="git working copy (default: current directory)"
    )
    parser.add_argument(
        "--interval", type=float, default=cfg.poll_interval, help="seconds between polls"
    )
    parser.add_argument(
        "--retry-delay", type=float, default=cfg.retry_delay, help="seconds between failed attempts"
    )
    parser.add_argument("--log-file", type=Path, default=cfg.log_file, help="also log to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_args(argv=None, cfg: Config = config) -> argparse.Namespace:
    parser = build_parser(cfg)
    args = parser.parse_args(argv)
    if not args.token or not args.deploy:
        parser.error("flags --token and --deploy are required")
    return args


def configure_logging(log_file: Path | None = None, verbose: bool = False, cfg: Config = config):
    log_formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    handlers = [console_handler]

    if log_file:
        # Rotating file handler (auto-compaction)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=cfg.log_max_bytes,
            backupCount=cfg.log_backup_count,
        )
        file_handler.setFormatter(log_formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=handlers,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_supervisor(args: argparse.Namespace) -> Supervisor:
    state = SupervisorState()
    repo = GitRepo(args.repo_dir)
    controller = ProcessGroupController(state, cwd=args.repo_dir)
    runner = DeployRunner(repo, controller, args.deploy, retry_delay=args.retry_delay)
    detector = ChangeDetector(state, repo, args.token)
    return Supervisor(state, detector, controller, runner, poll_interval=args.interval)


async def serve(args: argparse.Namespace):
    supervisor = build_supervisor(args)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, supervisor.stop)

    await supervisor.run_forever()


def main(argv=None):
    """Run the autodeploy supervisor."""
    args = parse_args(argv)
    configure_logging(args.log_file, args.verbose)
    logger.info(f"autodeploy {__version__} starting in {args.repo_dir.resolve()}")
    asyncio.run(serve(args))
    return 0


if __name__ == "__main__":
    sys.exit(main())
