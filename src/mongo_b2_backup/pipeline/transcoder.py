"""
Converts a stream of BSON documents into JSON lines.
"""
import struct
from typing import List

import bson
from bson import json_util
from bson.errors import BSONError

from mongo_b2_backup.utils.errors import CorruptStreamError, TruncatedStreamError

# 4 size bytes + the trailing NUL of an empty document
MIN_RECORD_SIZE = 5
MAX_RECORD_SIZE = 16 * 1024 * 1024

_LENGTH = struct.Struct('<i')


class RecordTranscoder:
    """
    Incremental BSON -> JSONL converter.
    Feed it arbitrary slices of the input. Records may span several slices.
    """

    def __init__(self, json_options: json_util.JSONOptions = json_util.RELAXED_JSON_OPTIONS):
        """
        :param json_options: extended JSON flavour used for the output
        """
        self._json_options = json_options
        self._buffer = bytearray()
        # absolute stream offset of self._buffer[0]; only used in error messages
        self._offset = 0
        self.records = 0

    @property
    def pending(self) -> int:
        """
        Number of buffered bytes that do not form a complete record yet.
        """
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """
        Absorb one buffer.
        :param data: next slice of the input
        :return: complete JSON lines (newline terminated) found so far
        """
        self._buffer += data
        lines = []
        position = 0
        while len(self._buffer) - position >= _LENGTH.size:
            (size,) = _LENGTH.unpack_from(self._buffer, position)
            if size < MIN_RECORD_SIZE or size > MAX_RECORD_SIZE:
                raise CorruptStreamError(
                    f'Invalid BSON document size {size} at offset {self._offset + position}')
            if len(self._buffer) - position < size:
                break
            lines.append(self._encode(bytes(self._buffer[position:position + size]),
                                      self._offset + position))
            position += size
        if position:
            del self._buffer[:position]
            self._offset += position
        return lines

    def finish(self):
        """
        Signal the end of the input.
        :raises TruncatedStreamError: if a record was cut off
        """
        if self._buffer:
            raise TruncatedStreamError(
                f'Incomplete BSON document at end of input: {len(self._buffer)} bytes '
                f'left at offset {self._offset}')

    def _encode(self, record: bytes, offset: int) -> bytes:
        try:
            document = bson.decode(record)
        except (BSONError, ValueError) as e:
            raise CorruptStreamError(
                f'Failed to parse BSON document at offset {offset}: {e}') from e
        self.records += 1
        return (json_util.dumps(document, json_options=self._json_options) + '\n').encode('utf-8')
