class ToolExecutionError(Exception):
    """Raised by tools when a call cannot be completed."""


class SpawnDepthExceeded(ToolExecutionError):
    def __init__(self, depth: int, limit: int):
        super().__init__(f"Sub-agent depth {depth} exceeds the limit of {limit}")
        self.depth = depth
        self.limit = limit
