"""
MongoDB dumps via mongodump
"""
import os
import subprocess
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from loguru import logger

from mongo_b2_backup.utils.converters import format_timestamp, mask_uri
from mongo_b2_backup.utils.errors import DumpError

CONTAINER_DUMP_DIR = '/dump'


class DumpTarget(Enum):
    """
    Represents where mongodump is executed.
    """
    LOCAL = 'Local'
    DOCKER = 'Docker'


class MongoDumper:
    """
    Creates a dump directory of .bson files per run.
    """

    def __init__(self, uri: str = 'mongodb://localhost:27017',
                 output_dir: Path = Path('backups'),
                 target: DumpTarget = DumpTarget.LOCAL,
                 container: Optional[str] = None,
                 authentication_database: Optional[str] = 'admin',
                 mongodump: str = 'mongodump',
                 docker: str = 'docker'):
        """
        Init a new dumper.
        :param uri: connection string. default: mongodb://localhost:27017
        :param output_dir: parent dir of the per run dump directories
        :param target: default: Local
        :param container: name of the MongoDB container. Required for Docker.
        :param authentication_database: default: admin
        :param mongodump: mongodump binary
        :param docker: docker binary
        """
        match target:
            case DumpTarget.DOCKER:
                if not container:
                    raise ValueError('container must be provided when using the Docker target')
            case DumpTarget.LOCAL:
                pass
            case _:
                raise ValueError(f'Invalid dump target: {target}')

        self._uri = uri
        self._authentication_database = authentication_database
        self._mongodump = mongodump
        self._docker = docker
        self.output_dir = Path(output_dir)
        self.target = target
        self.container = container

    def _mongodump_command(self, out: str) -> List[str]:
        command = [self._mongodump, f'--uri={self._uri}', f'--out={out}']
        if self._authentication_database:
            command.append(f'--authenticationDatabase={self._authentication_database}')
        return command

    def _run(self, command: List[str]) -> str:
        """
        Run a command. The connection string is masked in logs and errors.
        :return: stdout
        """
        printable = ' '.join(mask_uri(x) for x in command)
        logger.debug(f'Running {printable}')
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=True)
        except FileNotFoundError as e:
            raise DumpError(f'{command[0]} not found: {e}') from e
        except subprocess.CalledProcessError as e:
            raise DumpError(
                f'{printable} failed with exit code {e.returncode}: '
                f'{mask_uri(e.stderr or "").strip()}') from e
        return result.stdout

    def create_dump(self, timestamp: Optional[datetime] = None) -> Path:
        """
        Dump all databases into a new timestamped directory.
        :param timestamp: default: now
        :return: directory containing <database>/<collection>.bson files
        """
        run_dir = self.output_dir / format_timestamp(timestamp or datetime.now()) / 'dump'
        try:
            os.makedirs(run_dir.parent, exist_ok=True)
        except OSError as e:
            raise DumpError(f'Failed to create {run_dir.parent}: {e}') from e
        logger.info(f'Creating a MongoDB dump of {mask_uri(self._uri)} in {run_dir}')

        match self.target:
            case DumpTarget.LOCAL:
                self._run(self._mongodump_command(str(run_dir)))
            case DumpTarget.DOCKER:
                self._run([self._docker, 'exec', self.container,
                           *self._mongodump_command(CONTAINER_DUMP_DIR)])
                self._run([self._docker, 'cp', f'{self.container}:{CONTAINER_DUMP_DIR}',
                           str(run_dir)])
                self._cleanup_container()

        logger.info(f'Created MongoDB dump {run_dir}')
        return run_dir

    def _cleanup_container(self):
        """
        Remove the dump inside the container. The dump itself already succeeded, so only log.
        """
        try:
            self._run([self._docker, 'exec', self.container, 'rm', '-rf', CONTAINER_DUMP_DIR])
        except DumpError as e:
            logger.error(f'Failed to clean up {CONTAINER_DUMP_DIR} in container '
                         f'{self.container}: {e}')

