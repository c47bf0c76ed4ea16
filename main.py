
import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

from marksync.config import DEFAULT_CONFIG_PATH, load_config
from marksync.client.scheduler import BookmarkFileWatcher, SyncScheduler
from marksync.client.session import SyncSession
from marksync.sync.engine import SyncResult, SyncTrigger

logger = logging.getLogger(__name__)


def setup_logging(args, log_file: Path):
    """Console plus a log file in the data directory"""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    level = logging.INFO
    if args.debug:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )


def print_result(result: SyncResult):
    line = f"[{result.source_id}] {result.status.value}: {result.action}"
    if result.success:
        line += (
            f" ({result.bookmark_count} bookmarks, +{result.added_locally} "
            f"-{result.deleted_locally} ~{result.updated_locally} locally"
            f"{', pushed' if result.pushed else ''}{', unchanged' if result.skipped else ''})"
        )
    elif result.error:
        line += f" - {result.error}"
    print(line)


def confirm(args, message: str) -> bool:
    if args.yes:
        return True
    answer = input(f"{message} [y/N] ")
    return answer.strip().lower() in ('y', 'yes')


async def run_sync(session: SyncSession, args) -> int:
    if args.source or len(session.engines) == 1:
        results = [await session.sync(args.source)]
    else:
        results = list((await session.sync_all()).values())

    for result in results:
        print_result(result)
    return 0 if all(r.success for r in results) else 1


async def run_force(session: SyncSession, args) -> int:
    direction = 'push' if args.command == 'force-push' else 'pull'
    target = 'remote' if direction == 'push' else 'local browser'
    if not confirm(args, f"Overwrite all bookmarks in the {target}?"):
        print("Aborted")
        return 1

    if direction == 'push':
        result = await session.force_push(args.source)
    else:
        result = await session.force_pull(args.source)
    print_result(result)
    return 0 if result.success else 1


async def run_watch(session: SyncSession, args) -> int:
    """Scheduled sync plus sync-on-change until interrupted"""
    config = session.config
    scheduler = SyncScheduler(session, args.interval or config.sync_interval_minutes)
    watcher = BookmarkFileWatcher(
        config.browser.bookmarks_path,
        on_change=lambda: session.sync_all(SyncTrigger.BOOKMARK_CHANGE),
        loop=asyncio.get_running_loop(),
        debounce_seconds=config.debounce_seconds,
        is_busy=lambda: session.is_syncing,
    )

    if config.auto_sync:
        scheduler.start()
    watcher.start()
    logger.info("Watching for changes. Press Ctrl+C to stop.")

    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        watcher.stop()
        if scheduler.running:
            await scheduler.stop()
        logger.info(f"Sync stats: {scheduler.get_stats()}")
    return 0


async def run_command(session: SyncSession, args) -> int:
    if args.command == 'sync':
        return await run_sync(session, args)

    if args.command in ('force-push', 'force-pull'):
        return await run_force(session, args)

    if args.command == 'status':
        print(json.dumps(session.status(), indent=2, default=str))
        return 0

    if args.command == 'reset':
        await session.reset(args.source)
        print("Failure counter reset")
        return 0

    if args.command == 'watch':
        return await run_watch(session, args)

    if args.command == 'devices':
        states = await session.device_sync_states(args.source)
        for device in await session.list_devices(args.source):
            marker = '*' if device.id == session.device_id else ' '
            state = states.get(device.id)
            synced = f"v{state.version} at {state.last_sync_at}" if state else "never synced"
            print(f"{marker} {device.id}  {device.name}  {device.browser}  "
                  f"{device.last_seen_at}  {synced}")
        return 0

    if args.command == 'history':
        for entry in await session.history(args.limit, args.source):
            summary = entry.change_summary
            print(f"v{entry.version}  {entry.created_at}  {entry.device_name or '-'}  "
                  f"{entry.bookmark_count} bookmarks  {summary.get('type', 'sync')} "
                  f"+{summary.get('added', 0)} -{summary.get('removed', 0)} "
                  f"~{summary.get('modified', 0)}")
        return 0

    if args.command == 'rollback':
        if args.to_version is None:
            print("--to-version is required")
            return 2
        if not confirm(args, f"Replace the cloud bookmarks with version {args.to_version}?"):
            print("Aborted")
            return 1
        result = await session.rollback(args.to_version, args.source)
        print_result(result)
        return 0 if result.success else 1

    if args.command == 'remove-device':
        if not args.device:
            print("--device is required")
            return 2
        await session.remove_device(args.device, args.source)
        print(f"Removed device {args.device}")
        return 0

    if args.command == 'delete-cloud-data':
        if not confirm(args, "Delete all bookmarks stored in the cloud?"):
            print("Aborted")
            return 1
        await session.delete_cloud_data(args.source)
        print("Cloud data deleted")
        return 0

    if args.command == 'logout':
        await session.logout()
        print("Logged out")
        return 0

    raise ValueError(f"Unknown command {args.command}")


def create_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        description='marksync - keep browser bookmarks in sync across devices',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync with the selected source
  marksync sync

  # Sync one source
  marksync sync --source github

  # Replace the remote copy with this browser's bookmarks
  marksync force-push --source dropbox

  # Keep syncing in the background
  marksync watch --interval 15

  # Restore an earlier cloud version
  marksync history --source cloud
  marksync rollback --source cloud --to-version 12
        """
    )

    parser.add_argument(
        'command',
        choices=['sync', 'force-push', 'force-pull', 'status', 'reset', 'watch',
                 'devices', 'remove-device', 'delete-cloud-data', 'history', 'rollback', 'logout'],
        help='Command to run'
    )
    parser.add_argument(
        '--config',
        default=str(DEFAULT_CONFIG_PATH),
        help=f'Config file (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--source',
        help='Source id (default: selected_source from the config)'
    )
    parser.add_argument(
        '--device',
        help='Device id for remove-device'
    )
    parser.add_argument(
        '--to-version',
        type=int,
        help='Cloud version to restore for rollback'
    )
    parser.add_argument(
        '--limit',
        type=int,
        default=20,
        help='Number of versions shown by history (default: 20)'
    )
    parser.add_argument(
        '--interval',
        type=int,
        help='Sync interval in minutes for watch'
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Do not ask for confirmation'
    )

    # Logging
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Minimal output'
    )

    return parser


async def async_main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    config = load_config(Path(args.config))
    setup_logging(args, config.data_path / 'marksync.log')

    if not config.sources:
        logger.error(f"No sources configured in {args.config}")
        return 2

    try:
        async with await SyncSession.open(config) as session:
            return await run_command(session, args)
    except KeyError as e:
        logger.error(str(e))
        return 2
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def main():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
