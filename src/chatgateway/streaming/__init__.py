from chatgateway.streaming.accumulator import StreamAccumulator, ToolCallSlot
from chatgateway.streaming.framing import SSEMessage, iter_ndjson, iter_sse, parse_json_frame

__all__ = [
    "SSEMessage",
    "StreamAccumulator",
    "ToolCallSlot",
    "iter_ndjson",
    "iter_sse",
    "parse_json_frame",
]
