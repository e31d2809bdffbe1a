"""
Contains the value objects passed between the pipeline stages.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional


@dataclass(frozen=True)
class AuthSession:
    """
    Result of b2_authorize_account. Shared read-only by all requests until it expires.
    """
    authorization_token: str
    api_url: str
    download_url: str
    account_id: str = ''

    @classmethod
    def from_b2(cls, data: dict) -> 'AuthSession':
        return cls(
            authorization_token=data['authorizationToken'],
            api_url=data['apiUrl'].rstrip('/'),
            download_url=data['downloadUrl'].rstrip('/'),
            account_id=data.get('accountId', ''),
        )


@dataclass(frozen=True)
class RemoteObject:
    """
    Object (file version) stored in the bucket.
    """
    name: str
    file_id: str
    content_length: int
    content_sha1: Optional[str] = None
    upload_timestamp: Optional[datetime] = None

    @classmethod
    def from_b2(cls, data: dict) -> 'RemoteObject':
        """
        :param data: file info as returned by the B2 API
        """
        timestamp = data.get('uploadTimestamp')
        sha1 = data.get('contentSha1')
        if sha1 == 'none':
            # large files only have a digest if the uploader set large_file_sha1
            sha1 = (data.get('fileInfo') or {}).get('large_file_sha1')
        return cls(
            name=data['fileName'],
            file_id=data.get('fileId', ''),
            content_length=int(data.get('contentLength') or 0),
            content_sha1=sha1,
            upload_timestamp=(datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
                              if timestamp else None),
        )


@dataclass
class UploadSession:
    """
    State of one large file upload: the ordered SHA-1 of each uploaded part.
    """
    file_id: str
    name: str
    part_sha1s: List[str] = field(default_factory=list)

    @property
    def next_part_number(self) -> int:
        return len(self.part_sha1s) + 1


@dataclass(frozen=True)
class UploadItem:
    """
    Entry of the upload worklist.
    """
    path: Path
    remote_name: str
