"""
Newline-delimited JSON framing.

One JSON object per line. Readers feed raw transport chunks into an
NDJSONBuffer, which returns only complete records and keeps the remainder
(including a multi-byte UTF-8 character split across chunks) for the next
read. An optional SSE-style ``data: `` prefix is accepted, and blank lines
and ``:`` comment lines (heartbeats) are skipped.
"""

import codecs
import json
import logging
from typing import Optional, Union

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/x-ndjson"


def encode_record(record: dict) -> str:
    return json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str) + "\n"


class NDJSONBuffer:
    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._pending = ""

    @property
    def pending(self) -> str:
        """Text received after the last complete record."""
        return self._pending

    def feed(self, chunk: Union[bytes, str]) -> list[dict]:
        """Add a chunk and return every record it completes."""
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return [record for record in map(self._parse_line, lines) if record is not None]

    def flush(self) -> list[dict]:
        """Parse whatever is left once the stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        remainder, self._pending = self._pending, ""
        record = self._parse_line(remainder)
        return [record] if record is not None else []

    @staticmethod
    def _parse_line(line: str) -> Optional[dict]:
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            line = line[5:].strip()
            if not line:
                return None

        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed record: {line[:100]}")
            return None

        if not isinstance(record, dict):
            logger.warning(f"Skipping non-object record: {line[:100]}")
            return None
        return record
