"""
Splits the JSONL output into fixed-size part files.
"""
import os
from pathlib import Path
from typing import BinaryIO, List, Optional

from loguru import logger

from mongo_b2_backup.pipeline.transcoder import RecordTranscoder
from mongo_b2_backup.utils.converters import chunk_file_name
from mongo_b2_backup.utils.errors import ChunkWriteError, TranscodeError

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
READ_SIZE = 1024 * 1024


class ChunkWriter:
    """
    Writes units (whole JSON lines) to {base_name}.jsonl.part{N}.
    A new part is started before a unit once the current part reached the threshold,
    so units are never split and every part except the last one is >= chunk_size.
    """

    def __init__(self, output_dir: Path, base_name: str,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        :param output_dir: directory for the part files
        :param base_name: name of the source file without extension
        :param chunk_size: size threshold of a part in bytes
        """
        if chunk_size <= 0:
            raise ValueError(f'chunk_size must be positive, got {chunk_size}')
        self.output_dir = Path(output_dir)
        self.base_name = base_name
        self.chunk_size = chunk_size
        self.paths: List[Path] = []
        self._current: Optional[BinaryIO] = None
        self._current_size = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.close()
        else:
            self._close_current()

    def write(self, unit: bytes):
        """
        Append one unit to the current part, rolling over to a new part first if needed.
        :param unit: complete output unit
        """
        if self._current is None or self._current_size >= self.chunk_size:
            self._open_next()
        try:
            self._current.write(unit)
        except OSError as e:
            raise ChunkWriteError(f'Failed to write {self.paths[-1]}: {e}') from e
        self._current_size += len(unit)

    def close(self) -> List[Path]:
        """
        Close the open part.
        :return: ordered list of all written parts
        """
        self._close_current()
        return list(self.paths)

    def _open_next(self):
        self._close_current()
        path = self.output_dir / chunk_file_name(self.base_name, len(self.paths) + 1)
        try:
            self._current = open(path, 'wb')
        except OSError as e:
            raise ChunkWriteError(f'Failed to create {path}: {e}') from e
        self.paths.append(path)
        self._current_size = 0
        logger.debug(f'Writing chunk {path}')

    def _close_current(self):
        if self._current is None:
            return
        current, self._current = self._current, None
        try:
            current.close()
        except OSError as e:
            raise ChunkWriteError(f'Failed to close {self.paths[-1]}: {e}') from e


def convert_to_chunks(source: Path, output_dir: Path, base_name: Optional[str] = None,
                      chunk_size: int = DEFAULT_CHUNK_SIZE,
                      read_size: int = READ_SIZE) -> List[Path]:
    """
    Convert a BSON file to JSONL part files.
    Partially written parts are kept if the conversion fails.
    :param source: BSON file
    :param output_dir: directory for the parts. Created if missing.
    :param base_name: defaults to the file name without .bson
    :param chunk_size: size threshold of a part in bytes
    :param read_size: bytes per read from the source
    :return: ordered list of written parts. Empty for an empty source.
    """
    source = Path(source)
    base_name = base_name or source.name.removesuffix('.bson')
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise ChunkWriteError(f'Failed to create {output_dir}: {e}') from e

    transcoder = RecordTranscoder()
    try:
        with open(source, 'rb') as f, ChunkWriter(output_dir, base_name, chunk_size) as writer:
            while True:
                data = f.read(read_size)
                if not data:
                    break
                for line in transcoder.feed(data):
                    writer.write(line)
            transcoder.finish()
    except OSError as e:
        raise TranscodeError(f'Failed to read {source}: {e}') from e
    logger.info(f'Converted {source} ({transcoder.records} documents) '
                f'into {len(writer.paths)} chunk(s)')
    return list(writer.paths)
