"""
SHA-1 fingerprints of files and buffers.
"""
import hashlib
from pathlib import Path
from typing import BinaryIO

BLOCK_SIZE = 1024 * 1024


def sha1_stream(stream: BinaryIO, block_size: int = BLOCK_SIZE) -> str:
    """
    Hash the stream until EOF. Read errors propagate, no partial digest is returned.
    :param stream: binary stream
    :param block_size: bytes per read
    :return: hex digest
    """
    digest = hashlib.sha1()
    while True:
        block = stream.read(block_size)
        if not block:
            break
        digest.update(block)
    return digest.hexdigest()


def sha1_file(path: str or Path, block_size: int = BLOCK_SIZE) -> str:
    """
    Hash the given file without loading it into memory.
    :param path: file to hash
    :param block_size: bytes per read
    :return: hex digest
    """
    with open(path, 'rb') as f:
        return sha1_stream(f, block_size)


def sha1_bytes(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()
