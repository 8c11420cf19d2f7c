"""Display synchronisation: chunk pushing, stream runs and console rendering."""

from chatrelay.display.pusher import ContentPusher, DisplaySink, PushResult, StreamAccumulator
from chatrelay.display.runner import EmptyResponseError, run_stream_attempt, run_turn

__all__ = [
    "ContentPusher",
    "DisplaySink",
    "EmptyResponseError",
    "PushResult",
    "StreamAccumulator",
    "run_stream_attempt",
    "run_turn",
]
