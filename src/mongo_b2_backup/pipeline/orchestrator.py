"""
Runs one backup: dump -> convert -> diff -> upload -> cleanup.
"""
import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from mongo_b2_backup.mongo.dumper import MongoDumper
from mongo_b2_backup.pipeline.chunker import DEFAULT_CHUNK_SIZE, convert_to_chunks
from mongo_b2_backup.pipeline.diff import DiffMode, compute_worklist
from mongo_b2_backup.storage.base import RemoteStore
from mongo_b2_backup.utils.converters import METADATA_SUFFIX, base_name_of
from mongo_b2_backup.utils.datatypes import RemoteObject, UploadItem
from mongo_b2_backup.utils.errors import BackupError, RunCancelledError


@dataclass
class BackupReport:
    """
    Summary of a finished run.
    """
    dump_dir: Path
    artifacts: int = 0
    uploaded: List[RemoteObject] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.artifacts - len(self.uploaded)


class BackupRunner:
    """
    Sequences the pipeline. One instance must not run twice at the same time.
    """

    def __init__(self, dumper: MongoDumper, store: RemoteStore,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 diff_mode: DiffMode = DiffMode.FOLDER,
                 keep_local: bool = False,
                 stop_event: Optional[threading.Event] = None):
        """
        :param dumper: creates the dump
        :param store: upload target
        :param chunk_size: size threshold of the JSONL parts
        :param diff_mode: how to detect already uploaded files
        :param keep_local: keep the dump directory after a successful run
        :param stop_event: set it to abort the run before the next step
        """
        self.dumper = dumper
        self.store = store
        self.chunk_size = chunk_size
        self.diff_mode = diff_mode
        self.keep_local = keep_local
        self.stop_event = stop_event or threading.Event()

    def _check_stop(self):
        if self.stop_event.is_set():
            raise RunCancelledError('Backup run cancelled')

    def run(self) -> BackupReport:
        """
        Perform a backup. The first error stops the run and is raised.
        The next run continues where this one stopped.
        :return: report of the run
        """
        self.store.authenticate()
        self._check_stop()
        dump_dir = self.dumper.create_dump()
        report = BackupReport(dump_dir=dump_dir)

        artifacts = self.convert_dump(dump_dir, dump_dir.parent / 'chunks')
        report.artifacts = sum(len(x) for x in artifacts.values())

        self._check_stop()
        remote_objects = self.store.list_objects()
        worklist = compute_worklist(artifacts, remote_objects, self.diff_mode)
        logger.info(f'{len(worklist)} of {report.artifacts} file(s) have to be uploaded')

        for item in worklist:
            self._check_stop()
            report.uploaded.append(self._upload(item))
            self._remove_file(item.path, dump_dir.parent / 'chunks')

        self.cleanup(dump_dir)
        logger.info(f'Backup finished. Uploaded {len(report.uploaded)} file(s), '
                    f'skipped {report.skipped}.')
        return report

    def convert_dump(self, dump_dir: Path, chunks_dir: Path) -> Dict[str, List[Path]]:
        """
        Convert all .bson files of a dump to JSONL parts.
        :param dump_dir: output of mongodump
        :param chunks_dir: parts are written to chunks_dir/<base name>/
        :return: base name -> parts followed by the metadata file if present
        """
        artifacts: Dict[str, List[Path]] = {}
        for source in sorted(Path(dump_dir).rglob('*.bson')):
            self._check_stop()
            base_name = base_name_of(source)
            if base_name in artifacts:
                raise BackupError(
                    f'Duplicate base name {base_name} ({source}). Remote folders would collide.')
            files = convert_to_chunks(source, chunks_dir / base_name, base_name, self.chunk_size)
            metadata = source.with_name(f'{base_name}{METADATA_SUFFIX}')
            if metadata.is_file():
                files.append(metadata)
            artifacts[base_name] = files
        logger.info(f'Converted {len(artifacts)} collection(s) from {dump_dir}')
        return artifacts

    def _upload(self, item: UploadItem) -> RemoteObject:
        try:
            return self.store.upload_object(item.path, item.remote_name,
                                            overwrite=self.diff_mode == DiffMode.CHECKSUM)
        except BackupError as e:
            logger.critical(f'Failed to upload {item.path} as {item.remote_name}: {e}')
            raise

    @staticmethod
    def _remove_file(path: Path, chunks_dir: Path):
        """
        Delete an uploaded part. Files outside of the chunk dir belong to the dump.
        """
        if chunks_dir not in path.parents:
            return
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f'Could not delete uploaded chunk {path}: {e}')

    def cleanup(self, dump_dir: Path):
        """
        Remove the local files of the run. Failures are logged and ignored.
        :param dump_dir: dump directory of the run
        """
        run_dir = Path(dump_dir).parent
        if self.keep_local:
            logger.info(f'Keeping local files in {run_dir}')
            return
        try:
            shutil.rmtree(run_dir)
            logger.info(f'Deleted local files in {run_dir}')
        except OSError as e:
            logger.warning(f'Could not delete {run_dir}: {e}')
