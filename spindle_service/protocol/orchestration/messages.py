"""
Turn state and the message shapes recorded on it.

Messages may carry a "ttl": "agent_step" messages live for one model step,
"user_prompt" messages until the next user prompt.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

AGENT_STEP = "agent_step"
USER_PROMPT = "user_prompt"

_EXPIRES = {
    AGENT_STEP: {AGENT_STEP},
    USER_PROMPT: {AGENT_STEP, USER_PROMPT},
}


def new_run_id() -> str:
    return f"run-{uuid4().hex[:12]}"


def expire_messages(messages: List[Dict[str, Any]], end_of: str) -> List[Dict[str, Any]]:
    """Drop messages whose ttl ends with `end_of` ("agent_step" or "user_prompt")."""
    if end_of not in _EXPIRES:
        raise ValueError(f"Unknown ttl boundary: {end_of!r}")
    expired = _EXPIRES[end_of]
    return [m for m in messages if m.get("ttl") not in expired]


def user_message(text: str, ttl: Optional[str] = None) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"role": "user", "content": text}
    if ttl:
        msg["ttl"] = ttl
    return msg


def assistant_text(text: str) -> Dict[str, Any]:
    return {"role": "assistant", "content": text}


def assistant_tool_call(tool_call_id: str, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    return {"role": "assistant", "tool_call_id": tool_call_id, "tool": tool_name, "args": args}


def tool_result_message(tool_call_id: str, tool_name: str, result: Any) -> Dict[str, Any]:
    return {"role": "tool", "tool_call_id": tool_call_id, "tool": tool_name, "result": result}


@dataclass
class TurnState:
    run_id: str = field(default_factory=new_run_id)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    agent_state: Dict[str, Any] = field(default_factory=dict)
    subgoals: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    ancestor_run_ids: List[str] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.ancestor_run_ids)

    def spawn_child(self, prompt: str, agent_type: Optional[str] = None) -> "TurnState":
        """Fresh state for a sub-agent; nothing mutable is shared with the parent."""
        agent_state: Dict[str, Any] = {}
        if agent_type:
            agent_state["agent_type"] = agent_type
        return TurnState(
            messages=[user_message(prompt)],
            agent_state=agent_state,
            ancestor_run_ids=[*self.ancestor_run_ids, self.run_id],
        )
