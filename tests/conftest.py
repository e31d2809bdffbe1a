import json
import random
from typing import Dict, List, Optional

import bson
import pytest
import requests
from bson import ObjectId

from mongo_b2_backup.storage.b2 import B2Client
from mongo_b2_backup.storage.retry import RetryPolicy
from mongo_b2_backup.utils.datatypes import AuthSession

API_URL = 'https://api.test'
DOWNLOAD_URL = 'https://download.test'
UPLOAD_URL = 'https://upload.test/upload'
PART_URL = 'https://upload.test/part'


def make_response(status: int = 200, body: Optional[dict] = None,
                  headers: Optional[dict] = None, content: Optional[bytes] = None):
    response = requests.Response()
    response.status_code = status
    response.reason = 'OK' if status < 400 else 'Error'
    response._content = content if content is not None else json.dumps(body or {}).encode()
    response._content_consumed = True
    response.headers.update(headers or {})
    return response


def b2_error(status: int, code: str, headers: Optional[dict] = None):
    return make_response(status, {'status': status, 'code': code, 'message': code},
                         headers=headers)


def file_info(name: str, size: int = 10, sha1: str = 'abc', file_id: Optional[str] = None):
    return {
        'fileName': name,
        'fileId': file_id or f'id-{name}',
        'contentLength': size,
        'contentSha1': sha1,
        'uploadTimestamp': 1700000000000,
    }


class FakeHttp:
    """
    Stands in for requests.Session. Responses are queued per route.
    The route of an API call is the endpoint name, upload URLs map to upload / upload_part.
    The last queued response of a route is reused.
    """

    def __init__(self):
        self.routes: Dict[str, list] = {}
        self.calls: List[dict] = []

    def on(self, route: str, *responses):
        self.routes.setdefault(route, []).extend(responses)
        return self

    def calls_to(self, route: str) -> List[dict]:
        return [x for x in self.calls if x['route'] == route]

    @staticmethod
    def _route(url: str) -> str:
        if url == UPLOAD_URL:
            return 'upload'
        if url == PART_URL:
            return 'upload_part'
        if url.startswith(DOWNLOAD_URL):
            return 'download'
        return url.rsplit('/', 1)[-1]

    def _handle(self, method: str, url: str, kwargs: dict):
        route = self._route(url)
        data = kwargs.get('data')
        if hasattr(data, 'read'):
            data = data.read()
        self.calls.append({'method': method, 'url': url, 'route': route, 'body': data,
                           **kwargs})
        queue = self.routes.get(route)
        if not queue:
            raise AssertionError(f'Unexpected request to {url}')
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(url, kwargs)
        return item

    def get(self, url, **kwargs):
        return self._handle('GET', url, kwargs)

    def post(self, url, **kwargs):
        return self._handle('POST', url, kwargs)


def auth_response(token: str = 'token'):
    return make_response(body={
        'accountId': 'account',
        'authorizationToken': token,
        'apiUrl': API_URL,
        'downloadUrl': DOWNLOAD_URL,
        'allowed': {'bucketId': 'bucket-id', 'bucketName': 'bucket'},
    })


def upload_url_response():
    return make_response(body={'uploadUrl': UPLOAD_URL, 'authorizationToken': 'upload-token'})


def part_url_response():
    return make_response(body={'uploadUrl': PART_URL, 'authorizationToken': 'part-token'})


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(http, sleeps):
    def factory(max_retries: int = 5, **kwargs) -> B2Client:
        return B2Client(
            'key-id', 'app-key', 'bucket',
            bucket_id='bucket-id',
            auth_session=AuthSession('token', API_URL, DOWNLOAD_URL, 'account'),
            retry_policy=RetryPolicy(max_retries=max_retries, sleep=sleeps.append,
                                     rng=random.Random(0)),
            http=http,
            **kwargs,
        )
    return factory


def make_documents(count: int, prefix: str = 'doc') -> List[dict]:
    return [{'_id': ObjectId(f'{i:024x}'), 'name': f'{prefix}-{i}', 'n': i}
            for i in range(count)]


def encode_documents(documents: List[dict]) -> bytes:
    return b''.join(bson.encode(x) for x in documents)
