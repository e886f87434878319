"""
Incremental server-sent event frame decoder.

Network chunks arrive at arbitrary boundaries, possibly in the middle of a
multi-byte character or of a frame. The decoder keeps the unfinished tail and
only returns complete frames.
"""

from typing import List, Optional
import codecs


class FrameDecoder:
    """Split a byte stream into SSE data payloads"""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one chunk; return the data payloads of every completed frame"""

        text = self._decoder.decode(chunk)
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        payloads: List[str] = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            payload = self._payload(raw)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> List[str]:
        """End of stream: return a final frame that lacked its delimiter"""

        self._buffer = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        raw, self._buffer = self._buffer, ""
        payload = self._payload(raw)
        return [payload] if payload is not None else []

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _payload(raw: str) -> Optional[str]:
        data_lines = []
        for line in raw.split("\n"):
            if not line or line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip(" "))
        if not data_lines:
            return None
        return "\n".join(data_lines)
