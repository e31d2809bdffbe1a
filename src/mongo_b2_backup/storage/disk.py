import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from loguru import logger

from mongo_b2_backup.storage.base import RemoteStore
from mongo_b2_backup.utils.checksum import sha1_file
from mongo_b2_backup.utils.datatypes import RemoteObject
from mongo_b2_backup.utils.errors import DownloadError, ListError, UploadError


class DiskStore(RemoteStore):
    """
    Disk store for keeping the uploaded objects in a local directory.
    Object names map to relative paths below the root.
    """

    def __init__(self, root: Path):
        """
        :param root: main dir for objects
        """
        self.root = Path(root)

    def _object(self, path: Path) -> RemoteObject:
        stat = path.stat()
        return RemoteObject(
            name=path.relative_to(self.root).as_posix(),
            file_id=str(stat.st_ino),
            content_length=stat.st_size,
            content_sha1=sha1_file(path),
            upload_timestamp=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def list_objects(self, prefix: Optional[str] = None) -> List[RemoteObject]:
        """
        Get all objects sorted by name.
        :param prefix: only return names starting with prefix
        :return: list with existing objects.
        """
        if not os.path.isdir(self.root):
            return []
        try:
            objects = [self._object(x) for x in self.root.rglob('*')
                       if x.is_file() and not x.name.endswith('.tmp')]
        except OSError as e:
            raise ListError(f'Failed to list {self.root}: {e}') from e
        if prefix:
            objects = [x for x in objects if x.name.startswith(prefix)]
        return sorted(objects, key=lambda x: x.name)

    def get_object(self, name: str) -> Optional[RemoteObject]:
        path = self.root / name
        return self._object(path) if path.is_file() else None

    def upload_object(self, path: Path, name: str, overwrite: bool = False) -> RemoteObject:
        existing = None if overwrite else self.get_object(name)
        if existing:
            logger.info(f'{name} already exists in {self.root}. Skipping.')
            return existing
        target = self.root / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # copy to a temporary name first. a crashed copy must not look uploaded
            tmp = target.with_name(f'.{target.name}.tmp')
            shutil.copyfile(path, tmp)
            os.replace(tmp, target)
        except OSError as e:
            raise UploadError(f'Failed to copy {path} to {target}: {e}', e) from e
        logger.info(f'Stored {path} as {target}')
        return self._object(target)

    def download_object(self, name: str, dest: Path) -> Path:
        try:
            shutil.copyfile(self.root / name, dest)
        except OSError as e:
            raise DownloadError(f'Failed to copy {name} to {dest}: {e}') from e
        return Path(dest)
