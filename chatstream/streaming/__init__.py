"""Stream decoding, reconstruction and activity tracking.

The stream controller lives in ``chatstream.streaming.controller`` and is not
re-exported here, since it depends on the message store.
"""

from chatstream.streaming.activity import (
    ActivityEntry,
    ActivitySnapshot,
    ActivityStatus,
    ActivityTracker,
    ActivityType,
    ErrorInfo,
    ErrorKind,
)
from chatstream.streaming.decoder import EventDecoder, decode_stream
from chatstream.streaming.merger import (
    extract_plan_steps,
    finalize,
    merge,
    new_draft,
    parse_tool_args,
    resolve_target,
)

__all__ = [
    "ActivityEntry",
    "ActivitySnapshot",
    "ActivityStatus",
    "ActivityTracker",
    "ActivityType",
    "ErrorInfo",
    "ErrorKind",
    "EventDecoder",
    "decode_stream",
    "extract_plan_steps",
    "finalize",
    "merge",
    "new_draft",
    "parse_tool_args",
    "resolve_target",
]
