"""
Backblaze B2 client. Uses the native B2 API (v2).
"""
import math
import os
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional, TypeVar
from urllib.parse import quote

import requests
from loguru import logger

from mongo_b2_backup.storage.base import RemoteStore
from mongo_b2_backup.storage.retry import RetryPolicy, RetryState
from mongo_b2_backup.utils.checksum import sha1_bytes, sha1_file
from mongo_b2_backup.utils.datatypes import AuthSession, RemoteObject, UploadSession
from mongo_b2_backup.utils.errors import (AuthError, B2ApiError, DownloadError,
                                          ListError, NotAuthenticatedError,
                                          UploadError)

AUTH_URL = 'https://api.backblazeb2.com'
API_PREFIX = '/b2api/v2/'
CONTENT_TYPE = 'b2/x-auto'

SINGLE_SHOT_THRESHOLD = 100 * 1024 * 1024
PART_SIZE = 100 * 1024 * 1024
LIST_PAGE_SIZE = 1000
DOWNLOAD_BLOCK_SIZE = 1024 * 1024

T = TypeVar('T')

# network level failures worth another try. HTTP errors are classified by B2ApiError.
TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout,
                    requests.exceptions.ChunkedEncodingError)


class B2Client(RemoteStore):
    """
    Client for one B2 bucket.
    """

    def __init__(self, key_id: str, application_key: str, bucket_name: str,
                 bucket_id: Optional[str] = None,
                 auth_session: Optional[AuthSession] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 http: Optional[requests.Session] = None,
                 timeout: float = 300,
                 auth_url: str = AUTH_URL,
                 single_shot_threshold: int = SINGLE_SHOT_THRESHOLD,
                 part_size: int = PART_SIZE,
                 skip_existing: bool = True):
        """
        Init a new client. Call authenticate() before using it unless an
        auth_session and bucket_id are given.
        :param key_id: application key id
        :param application_key: application key
        :param bucket_name: name of the bucket
        :param bucket_id: id of the bucket. looked up by name if not given.
        :param auth_session: already authorized session
        :param retry_policy: backoff for uploads. default: 5 attempts
        :param http: requests session
        :param timeout: timeout of a single HTTP call in seconds
        :param auth_url: B2 authorization endpoint
        :param single_shot_threshold: files larger than this use the large file API
        :param part_size: part size of large files
        :param skip_existing: do not upload objects which already exist
        """
        if not key_id:
            raise ValueError('key_id must be provided')
        if not application_key:
            raise ValueError('application_key must be provided')
        if not bucket_name:
            raise ValueError('bucket_name must be provided')
        if part_size <= 0 or single_shot_threshold <= 0:
            raise ValueError('part_size and single_shot_threshold must be positive')

        self._key_id = key_id
        self._application_key = application_key
        self._auth_url = auth_url.rstrip('/')
        self._http = http or requests.Session()
        self._timeout = timeout

        self.bucket_name = bucket_name
        self.bucket_id = bucket_id
        self.auth_session = auth_session
        self.retry_policy = retry_policy or RetryPolicy()
        self.single_shot_threshold = single_shot_threshold
        self.part_size = part_size
        self.skip_existing = skip_existing

    @property
    def is_authenticated(self) -> bool:
        return self.auth_session is not None and bool(self.bucket_id)

    def authenticate(self) -> None:
        """
        Exchange the application key for an authorization token.
        Also resolves the bucket id on the first call.
        """
        logger.debug('Authenticating with B2...')
        try:
            response = self._http.get(
                f'{self._auth_url}{API_PREFIX}b2_authorize_account',
                auth=(self._key_id, self._application_key),
                timeout=self._timeout,
            )
            data = self._json(response)
            session = AuthSession.from_b2(data)
            if not self.bucket_id:
                self.bucket_id = self._find_bucket_id(session, data.get('allowed') or {})
        except (B2ApiError, requests.RequestException, KeyError, ValueError) as e:
            self.auth_session = None
            logger.error(f'Failed to authenticate with B2: {e}')
            raise AuthError(f'Failed to authenticate with B2: {e}') from e
        self.auth_session = session
        logger.info(f'Authenticated with B2. Bucket: {self.bucket_name} ({self.bucket_id})')

    def _find_bucket_id(self, session: AuthSession, allowed: dict) -> str:
        """
        Keys restricted to one bucket report it in "allowed". Otherwise ask b2_list_buckets.
        """
        if allowed.get('bucketName') == self.bucket_name and allowed.get('bucketId'):
            return allowed['bucketId']
        data = self._json(self._http.post(
            f'{session.api_url}{API_PREFIX}b2_list_buckets',
            json={'accountId': session.account_id, 'bucketName': self.bucket_name},
            headers={'Authorization': session.authorization_token},
            timeout=self._timeout,
        ))
        for bucket in data.get('buckets', []):
            if bucket.get('bucketName') == self.bucket_name:
                return bucket['bucketId']
        raise KeyError(f'Bucket {self.bucket_name} not found')

    def _require_auth(self) -> AuthSession:
        if not self.is_authenticated:
            raise NotAuthenticatedError('Not authenticated with B2. Call authenticate() first.')
        return self.auth_session

    @staticmethod
    def _json(response: requests.Response) -> dict:
        """
        Raise B2ApiError for error responses, return the JSON body otherwise.
        """
        B2Client._raise_for_status(response)
        return response.json()

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.ok:
            return
        code, message = '', response.reason or ''
        try:
            body = response.json()
            code = body.get('code', '')
            message = body.get('message', message)
        except ValueError:
            pass
        retry_after = None
        if response.headers.get('Retry-After', '').isdigit():
            retry_after = float(response.headers['Retry-After'])
        raise B2ApiError(response.status_code, code, message, retry_after)

    def _api(self, endpoint: str, payload: dict) -> dict:
        """
        Call an endpoint of the B2 API.
        :param endpoint: e.g. b2_list_file_names
        :param payload: JSON body
        :return: JSON response
        """
        session = self._require_auth()
        return self._json(self._http.post(
            f'{session.api_url}{API_PREFIX}{endpoint}',
            json=payload,
            headers={'Authorization': session.authorization_token},
            timeout=self._timeout,
        ))

    def _authorized(self, func: Callable[[], T], state: RetryState) -> T:
        """
        Run func. An expired token triggers one re-authentication and one more try
        per logical call. A second expiry propagates.
        """
        while True:
            try:
                return func()
            except B2ApiError as e:
                if not e.expired_auth or state.reauthenticated:
                    raise
                state.reauthenticated = True
                logger.warning('B2 authorization token expired. Re-authenticating...')
                self.authenticate()

    def _with_retry(self, description: str, func: Callable[[], T]) -> T:
        """
        Run one request with retries and backoff.
        :param description: used in log and error messages
        :param func: the request. Must be safe to repeat as a whole.
        :return: result of func
        :raises UploadError: on a permanent failure or when all attempts failed
        """
        state = RetryState()
        max_retries = self.retry_policy.max_retries
        while state.attempt < max_retries:
            minimum_delay = None
            try:
                return func()
            except B2ApiError as e:
                state.last_error = e
                if e.expired_auth:
                    if state.reauthenticated:
                        raise UploadError(
                            f'{description} failed: authorization expired again after '
                            're-authentication', e) from e
                    # the try with the fresh token does not use up an attempt
                    state.reauthenticated = True
                    logger.warning(f'{description}: authorization token expired. '
                                   'Re-authenticating...')
                    self.authenticate()
                    continue
                if not e.retryable:
                    raise UploadError(f'{description} failed: {e}', e) from e
                minimum_delay = e.retry_after
            except TRANSIENT_ERRORS as e:
                state.last_error = e
            except (KeyError, ValueError, requests.RequestException) as e:
                raise UploadError(f'{description} failed: unexpected response from B2: {e!r}',
                                  e) from e

            state.attempt += 1
            if state.attempt < max_retries:
                delay = self.retry_policy.wait(state.attempt - 1, minimum_delay)
                logger.warning(f'{description}: attempt {state.attempt}/{max_retries} failed: '
                               f'{state.last_error}. Retrying in {delay:.1f}s')
        raise UploadError(
            f'{description} failed after {max_retries} attempts: {state.last_error}',
            state.last_error) from state.last_error

    def _find(self, name: str) -> Optional[RemoteObject]:
        data = self._api('b2_list_file_names', {
            'bucketId': self.bucket_id,
            'startFileName': name,
            'maxFileCount': 1,
        })
        files = data.get('files', [])
        if files and files[0]['fileName'] == name:
            return RemoteObject.from_b2(files[0])
        return None

    def list_objects(self, prefix: Optional[str] = None) -> List[RemoteObject]:
        """
        List all objects of the bucket. Follows nextFileName until the last page.
        :param prefix: only list names starting with prefix
        :return: merged list of all pages
        """
        self._require_auth()
        state = RetryState()
        objects: List[RemoteObject] = []
        start_file_name = None
        pages = 0
        try:
            while True:
                payload = {'bucketId': self.bucket_id, 'maxFileCount': LIST_PAGE_SIZE}
                if prefix:
                    payload['prefix'] = prefix
                if start_file_name:
                    payload['startFileName'] = start_file_name
                data = self._authorized(partial(self._api, 'b2_list_file_names', payload),
                                        state)
                objects.extend(RemoteObject.from_b2(x) for x in data['files'])
                pages += 1
                start_file_name = data.get('nextFileName')
                if not start_file_name:
                    break
        except (B2ApiError, AuthError, requests.RequestException, KeyError, ValueError) as e:
            logger.error(f'Failed to list files after {pages} page(s): {e}')
            raise ListError(f'Failed to list files: {e}') from e
        logger.debug(f'Listed {len(objects)} object(s) in {pages} page(s)')
        return objects

    def get_object(self, name: str) -> Optional[RemoteObject]:
        self._require_auth()
        try:
            return self._authorized(partial(self._find, name), RetryState())
        except (B2ApiError, AuthError, requests.RequestException, KeyError, ValueError) as e:
            raise ListError(f'Failed to look up {name}: {e}') from e

    def upload_object(self, path: Path, name: str, overwrite: bool = False) -> RemoteObject:
        """
        Upload a file. Small files are sent in one request, others as large file in parts.
        :param path: local file
        :param name: object name
        :param overwrite: upload a new version even if skip_existing is set
        :return: metadata of the uploaded (or already existing) object
        """
        self._require_auth()
        if self.skip_existing and not overwrite:
            existing = self._with_retry(f'Lookup of {name}', partial(self._find, name))
            if existing:
                logger.info(f'{name} already exists in B2 ({existing.file_id}). Skipping.')
                return existing
        try:
            size = os.path.getsize(path)
            if size <= self.single_shot_threshold:
                uploaded = self._upload_single(Path(path), name, size)
            else:
                uploaded = self._upload_large(Path(path), name, size)
        except (KeyError, ValueError, requests.RequestException) as e:
            raise UploadError(f'Unexpected response from B2 for {name}: {e!r}', e) from e
        except OSError as e:
            raise UploadError(f'Failed to read {path}: {e}', e) from e
        logger.info(f'Uploaded {path} as {name} ({size} bytes)')
        return uploaded

    def _upload_single(self, path: Path, name: str, size: int) -> RemoteObject:
        sha1 = sha1_file(path)

        def attempt() -> dict:
            target = self._api('b2_get_upload_url', {'bucketId': self.bucket_id})
            with open(path, 'rb') as f:
                return self._json(self._http.post(
                    target['uploadUrl'],
                    data=f,
                    headers={
                        'Authorization': target['authorizationToken'],
                        'X-Bz-File-Name': quote(name),
                        'Content-Type': CONTENT_TYPE,
                        'Content-Length': str(size),
                        'X-Bz-Content-Sha1': sha1,
                    },
                    timeout=self._timeout,
                ))

        return RemoteObject.from_b2(self._with_retry(f'Upload of {name}', attempt))

    def _upload_large(self, path: Path, name: str, size: int) -> RemoteObject:
        total_parts = math.ceil(size / self.part_size)
        payload = {
            'bucketId': self.bucket_id,
            'fileName': name,
            'contentType': CONTENT_TYPE,
            'fileInfo': {'large_file_sha1': sha1_file(path)},
        }
        file_id = self._with_retry(
            f'Start of large file {name}',
            lambda: self._api('b2_start_large_file', payload)['fileId'])
        session = UploadSession(file_id=file_id, name=name)
        logger.info(f'Uploading {path} as large file {name} in {total_parts} parts')
        try:
            with open(path, 'rb') as f:
                while session.next_part_number <= total_parts:
                    part_number = session.next_part_number
                    f.seek((part_number - 1) * self.part_size)
                    chunk = f.read(self.part_size)
                    sha1 = sha1_bytes(chunk)
                    self._with_retry(
                        f'Upload of part {part_number}/{total_parts} of {name}',
                        partial(self._upload_part, session.file_id, part_number, chunk, sha1))
                    session.part_sha1s.append(sha1)
                    logger.debug(f'Uploaded part {part_number}/{total_parts} of {name}')
            finished = self._with_retry(f'Finish of large file {name}', partial(
                self._api, 'b2_finish_large_file', {
                    'fileId': session.file_id,
                    'partSha1Array': session.part_sha1s,
                }))
        except (UploadError, OSError):
            self._cancel_large_file(session)
            raise
        return RemoteObject.from_b2(finished)

    def _upload_part(self, file_id: str, part_number: int, chunk: bytes, sha1: str) -> dict:
        target = self._api('b2_get_upload_part_url', {'fileId': file_id})
        return self._json(self._http.post(
            target['uploadUrl'],
            data=chunk,
            headers={
                'Authorization': target['authorizationToken'],
                'X-Bz-Part-Number': str(part_number),
                'Content-Length': str(len(chunk)),
                'X-Bz-Content-Sha1': sha1,
            },
            timeout=self._timeout,
        ))

    def _cancel_large_file(self, session: UploadSession) -> None:
        """
        Drop the unfinished large file. Best effort, B2 also expires them.
        """
        try:
            self._api('b2_cancel_large_file', {'fileId': session.file_id})
            logger.info(f'Cancelled unfinished large file {session.name}')
        except (B2ApiError, NotAuthenticatedError, requests.RequestException) as e:
            logger.warning(f'Could not cancel unfinished large file {session.name}: {e}')

    def download_object(self, name: str, dest: Path) -> Path:
        """
        Download an object by name. The SHA-1 is verified if B2 knows it.
        :param name: object name
        :param dest: target file
        :return: dest
        """
        self._require_auth()
        dest = Path(dest)
        try:
            response = self._authorized(partial(self._open_download, name), RetryState())
            with response:
                expected = response.headers.get('X-Bz-Content-Sha1', 'none')
                with open(dest, 'wb') as f:
                    for block in response.iter_content(DOWNLOAD_BLOCK_SIZE):
                        f.write(block)
        except (B2ApiError, AuthError, requests.RequestException, OSError) as e:
            raise DownloadError(f'Failed to download {name}: {e}') from e
        expected = expected.removeprefix('unverified:')
        if expected != 'none' and sha1_file(dest) != expected:
            raise DownloadError(f'SHA-1 mismatch for {name}. Expected {expected}')
        logger.info(f'Downloaded {name} to {dest}')
        return dest

    def _open_download(self, name: str) -> requests.Response:
        session = self._require_auth()
        response = self._http.get(
            f'{session.download_url}/file/{self.bucket_name}/{quote(name)}',
            headers={'Authorization': session.authorization_token},
            stream=True,
            timeout=self._timeout,
        )
        self._raise_for_status(response)
        return response
