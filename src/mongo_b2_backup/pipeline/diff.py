"""
Decides which local artifacts still have to be uploaded.
"""
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

from loguru import logger

from mongo_b2_backup.utils.checksum import sha1_file
from mongo_b2_backup.utils.converters import remote_object_name
from mongo_b2_backup.utils.datatypes import RemoteObject, UploadItem


class DiffMode(Enum):
    """
    Supported strategies for comparing local and remote files.
    """
    FOLDER = 'folder'
    CHECKSUM = 'checksum'


def compute_worklist(artifacts: Dict[str, Sequence[Path]],
                     remote_objects: Iterable[RemoteObject],
                     mode: DiffMode = DiffMode.FOLDER) -> List[UploadItem]:
    """
    Compute the upload worklist.
    :param artifacts: base name -> local files of that base name, in upload order
    :param remote_objects: complete listing of the bucket
    :param mode: FOLDER skips a base name as a whole as soon as anything exists
        below {base_name}/. CHECKSUM compares every file with its remote counterpart.
    :return: (path, remote name) pairs in local order
    """
    remote = {x.name: x for x in remote_objects}
    if mode == DiffMode.CHECKSUM:
        return _checksum_diff(artifacts, remote)
    return _folder_diff(artifacts, remote)


def _folder_diff(artifacts: Dict[str, Sequence[Path]],
                 remote: Dict[str, RemoteObject]) -> List[UploadItem]:
    folders = {name.split('/', 1)[0] for name in remote if '/' in name}
    worklist = []
    for base_name, paths in artifacts.items():
        if base_name in folders:
            logger.info(f'{base_name}/ already exists remotely. Skipping {len(paths)} file(s).')
            continue
        for path in paths:
            name = remote_object_name(base_name, path)
            if name in remote:
                continue
            worklist.append(UploadItem(path=Path(path), remote_name=name))
    return worklist


def _checksum_diff(artifacts: Dict[str, Sequence[Path]],
                   remote: Dict[str, RemoteObject]) -> List[UploadItem]:
    worklist = []
    for base_name, paths in artifacts.items():
        for path in paths:
            path = Path(path)
            name = remote_object_name(base_name, path)
            existing = remote.get(name)
            if existing and _matches(path, existing):
                continue
            worklist.append(UploadItem(path=path, remote_name=name))
    return worklist


def _matches(path: Path, existing: RemoteObject) -> bool:
    if existing.content_sha1:
        return sha1_file(path) == existing.content_sha1
    # no digest for large files uploaded by other tools
    return path.stat().st_size == existing.content_length
