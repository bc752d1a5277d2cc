import json
import datetime
from typing import Dict, Any


class NdjsonEmitter:
    """Emitter producing NDJSON bytes for unified event schema"""

    def __init__(self, turn_id: str = ""):
        self.turn_id = turn_id

    def emit(self, event: Dict[str, Any]) -> bytes:
        out = {
            "type": str(event.get("type", "")),
            "turn_id": event.get("turn_id", self.turn_id),
            "data": event.get("data", {}),
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        # tool outputs are not guaranteed to be JSON-native
        return (json.dumps(out, default=str) + "\n").encode("utf-8")
