"""
Incremental MongoDB backups to Backblaze B2.
"""
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from dynaconf import Dynaconf
from loguru import logger

from mongo_b2_backup.mongo.dumper import DumpTarget, MongoDumper
from mongo_b2_backup.pipeline.chunker import convert_to_chunks
from mongo_b2_backup.pipeline.diff import DiffMode
from mongo_b2_backup.pipeline.orchestrator import BackupRunner
from mongo_b2_backup.storage.b2 import B2Client
from mongo_b2_backup.storage.base import RemoteStore, StoreTarget
from mongo_b2_backup.storage.disk import DiskStore
from mongo_b2_backup.storage.retry import RetryPolicy
from mongo_b2_backup.utils.config import parse_config
from mongo_b2_backup.utils.converters import parse_chunk_name
from mongo_b2_backup.utils.errors import BackupError, RunCancelledError
from mongo_b2_backup.utils.logging import setup_logging


class CtxArgs:
    """
    Cache object for arguments between click group and commands.
    """

    def __init__(self, config_folder: Path, settings: Dynaconf, store: RemoteStore):
        self.config_folder = Path(config_folder)
        self.settings = settings
        self.store = store


def create_store(settings: Dynaconf) -> RemoteStore:
    """
    Create the upload target configured in backup.target.
    :param settings: settings
    :return: store
    """
    if StoreTarget(settings('backup.target', default='B2')) == StoreTarget.DISK:
        return DiskStore(settings('backup.disk_dir', cast=Path))
    return B2Client(
        key_id=settings('b2.key_id'),
        application_key=settings('b2.application_key'),
        bucket_name=settings('b2.bucket_name'),
        auth_url=settings('b2.auth_url', default='https://api.backblazeb2.com'),
        retry_policy=RetryPolicy(
            max_retries=settings('upload.max_retries', cast=int, default=5),
            base_delay=settings('upload.base_delay', cast=float, default=1.0),
            max_delay=settings('upload.max_delay', cast=float, default=64.0),
        ),
        timeout=settings('upload.timeout', cast=float, default=300),
        single_shot_threshold=settings('upload.single_shot_threshold', cast=int,
                                       default=100 * 1024 * 1024),
        part_size=settings('upload.part_size', cast=int, default=100 * 1024 * 1024),
        skip_existing=settings('upload.skip_existing', cast=bool, default=True),
    )


def create_runner(settings: Dynaconf, store: RemoteStore,
                  stop_event: Optional[threading.Event] = None) -> BackupRunner:
    """
    Create the backup pipeline from the settings.
    """
    dumper = MongoDumper(
        uri=settings('mongo.uri', default='mongodb://localhost:27017'),
        output_dir=settings('backup.dir', cast=Path),
        target=DumpTarget(settings('mongo.target', default='Local')),
        container=settings('mongo.container', default=None) or None,
        authentication_database=settings('mongo.authentication_database',
                                         default='admin') or None,
    )
    return BackupRunner(
        dumper=dumper,
        store=store,
        chunk_size=settings('backup.chunk_size', cast=int, default=10 * 1024 * 1024),
        diff_mode=DiffMode(settings('backup.diff_mode', default='folder')),
        keep_local=settings('backup.keep_local', cast=bool, default=False),
        stop_event=stop_event,
    )


@click.group()
@click.option(
    '-c',
    '--config-folder',
    help='Folder where the config files are stored. /etc/mongo-b2-backup by default.'
         ' Make sure that the user has read and write access to the folder.',
    default='/etc/mongo-b2-backup',
)
@click.pass_context
@click.version_option()
def main(ctx, config_folder):
    """
    Back up MongoDB to Backblaze B2 as chunked JSON lines.
    Only collections which do not exist in the bucket yet are uploaded.
    """
    try:
        settings = parse_config(Path(config_folder))
        log_dir = settings('logging.dir', cast=Path, default=None)
        if log_dir:
            setup_logging(log_dir, settings('logging.level', default='INFO'))
        store = create_store(settings)
    except Exception as e:
        logger.exception(f'Error during config parsing! {e}')
        sys.exit(1)
    ctx.obj = CtxArgs(config_folder, settings, store)


@main.command('backup')
@click.pass_context
def backup_command(ctx):
    """
    Perform one backup run.
    Dumps the database, converts it, uploads new collections and cleans up.
    """
    args: CtxArgs = ctx.obj
    try:
        create_runner(args.settings, args.store).run()
    except BackupError as e:
        logger.critical(f'Backup failed! {e}')
        sys.exit(1)


@main.command('schedule')
@click.option(
    '-i', '--interval-hours',
    type=float, default=None,
    help='Hours between two runs. Default: backup.interval_hours (12).'
)
@click.pass_context
def schedule_command(ctx, interval_hours):
    """
    Perform a backup now and then repeatedly until SIGINT/SIGTERM.
    Runs never overlap. A failed run is logged and retried at the next interval.
    """
    args: CtxArgs = ctx.obj
    interval = interval_hours or args.settings('backup.interval_hours', cast=float, default=12)
    stop_event = threading.Event()

    def shutdown(signum, _frame):
        logger.info(f'Received {signal.Signals(signum).name}. Stopping after the current step...')
        stop_event.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    runner = create_runner(args.settings, args.store, stop_event)
    while not stop_event.is_set():
        try:
            runner.run()
        except RunCancelledError:
            break
        except BackupError as e:
            logger.critical(f'Backup failed! {e}')
        logger.info(f'Next backup in {interval} hours')
        stop_event.wait(interval * 3600)
    logger.info('Scheduler stopped')


@main.command('list')
@click.option('-p', '--prefix', default=None, help='Only list objects starting with this prefix.')
@click.pass_context
def list_command(ctx, prefix):
    """
    List all objects in the bucket.
    """
    args: CtxArgs = ctx.obj
    try:
        args.store.authenticate()
        objects = args.store.list_objects(prefix)
    except BackupError as e:
        click.secho(f'Listing failed: {e}', fg='red', file=sys.stderr)
        sys.exit(1)
    if len(objects) == 0:
        click.secho('None! You have to create a backup first...', fg='red', file=sys.stderr)
        sys.exit(1)
    output = click.style('Listing objects:\n', fg='green', bold=True)
    for obj in objects:
        uploaded = obj.upload_timestamp.strftime('%Y-%m-%d %H:%M') if obj.upload_timestamp else '?'
        output += click.style(f'{obj.name}', fg='cyan')
        output += click.style(f' {obj.content_length} bytes @ {uploaded}\n', fg='yellow')
    click.echo(output)


@main.command('download')
@click.argument('name', required=True)
@click.argument('dest', required=True, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def download_command(ctx, name, dest):
    """
    Download the object NAME to DEST.
    Use the output of the list command to view available objects.
    """
    args: CtxArgs = ctx.obj
    try:
        args.store.authenticate()
        args.store.download_object(name, dest)
    except BackupError as e:
        click.secho(f'Download failed: {e}', fg='red', file=sys.stderr)
        sys.exit(1)
    click.secho(f'Downloaded {name} to {dest}', fg='green')


@main.command('convert')
@click.argument('source', required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('output_dir', required=True, type=click.Path(file_okay=False, path_type=Path))
@click.option('-s', '--chunk-size', type=int, default=None,
              help='Size threshold of a part in bytes. Default: backup.chunk_size.')
@click.pass_context
def convert_command(ctx, source, output_dir, chunk_size):
    """
    Convert the BSON file SOURCE to JSONL parts in OUTPUT_DIR without uploading.
    """
    args: CtxArgs = ctx.obj
    chunk_size = chunk_size or args.settings('backup.chunk_size', cast=int,
                                             default=10 * 1024 * 1024)
    try:
        paths = convert_to_chunks(source, output_dir, chunk_size=chunk_size)
    except (BackupError, OSError) as e:
        click.secho(f'Conversion failed: {e}', fg='red', file=sys.stderr)
        sys.exit(1)
    for path in paths:
        info = parse_chunk_name(path)
        click.echo(f'{path} (part {info["index"]} of {info["base_name"]}, '
                   f'{path.stat().st_size} bytes)')


if __name__ == '__main__':
    main()
