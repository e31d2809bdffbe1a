from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import List, Optional

from mongo_b2_backup.utils.datatypes import RemoteObject


class StoreTarget(Enum):
    """
    Represents supported upload targets.
    """
    B2 = 'B2'
    DISK = 'Disk'


class RemoteStore(ABC):
    """
    ABC for storage implementations.
    Implements how to list, upload and download objects of a bucket.
    """

    def authenticate(self) -> None:
        """
        Open a session with the store. No-op for stores without authentication.
        """

    @abstractmethod
    def list_objects(self, prefix: Optional[str] = None) -> List[RemoteObject]:
        """
        Returns all objects, optionally limited to names starting with prefix.
        Never returns a partial listing.
        """
        pass

    @abstractmethod
    def get_object(self, name: str) -> Optional[RemoteObject]:
        """
        Returns the object with exactly this name or None.
        """
        pass

    @abstractmethod
    def upload_object(self, path: Path, name: str, overwrite: bool = False) -> RemoteObject:
        """
        Uploads the local file as name. Uploading an existing name is a no-op.
        :param path: local file
        :param name: object name
        :param overwrite: upload a new version even if the name exists
        :return: metadata of the stored object
        """
        pass

    @abstractmethod
    def download_object(self, name: str, dest: Path) -> Path:
        """
        Downloads the object to dest.
        """
        pass
