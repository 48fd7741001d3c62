"""
Progress Streaming Service

Converts unit state transitions into newline-delimited JSON records.

Usage:
    publisher = ProgressPublisher()
    publisher.attach(job)

    async for record in publisher.subscribe(job.id):
        wire.write(encode_record(record))

    # In a client
    buffer = NDJSONBuffer()
    for record in buffer.feed(chunk):
        ...
"""

from .ndjson import CONTENT_TYPE, NDJSONBuffer, encode_record
from .progress_publisher import EventType, ProgressEvent, ProgressPublisher

__all__ = [
    "CONTENT_TYPE",
    "EventType",
    "NDJSONBuffer",
    "ProgressEvent",
    "ProgressPublisher",
    "encode_record",
]
