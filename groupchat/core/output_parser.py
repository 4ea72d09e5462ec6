"""Agent output parsing.

Agent CLIs either print plain text or wrap their answer in JSON/JSONL
events. parse_agent_output() extracts the text to log plus whatever
telemetry the events carry:
- text: the "result" event wins; otherwise streamed text parts joined by newlines
- usage: token counts and cost (UsageStats)
- agent_session_id: the agent's own session GUID, if reported

Output whose first non-empty line is not a JSON object is returned as-is.
"""

import json
from dataclasses import dataclass
from typing import Any

from groupchat.core.models import UsageStats


@dataclass
class ParsedOutput:
    text: str
    usage: UsageStats | None = None
    agent_session_id: str | None = None


def _is_json_output(raw_output: str) -> bool:
    for line in raw_output.splitlines():
        if line.strip():
            return line.strip().startswith("{")
    return False


def _event_text(event: dict[str, Any]) -> str | None:
    text = event.get("text")
    if isinstance(text, str):
        return text
    part = event.get("part")
    if isinstance(part, dict) and isinstance(part.get("text"), str):
        return part["text"]
    message = event.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return None


def _context_window(event: dict[str, Any]) -> int:
    # Claude: {"modelUsage": {"<model>": {"contextWindow": 200000, ...}}}
    model_usage = event.get("modelUsage")
    if isinstance(model_usage, dict):
        for stats in model_usage.values():
            if isinstance(stats, dict) and stats.get("contextWindow"):
                return int(stats["contextWindow"])
    return int(event.get("context_window") or 0)


def _event_usage(event: dict[str, Any]) -> UsageStats | None:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        return None
    return UsageStats(
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        cache_read_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
        cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens") or 0),
        total_cost_usd=float(event.get("total_cost_usd") or 0.0),
        context_window=_context_window(event),
    )


def parse_agent_output(raw_output: str) -> ParsedOutput:
    """Extract response text and telemetry from raw agent output."""
    if not _is_json_output(raw_output):
        return ParsedOutput(text=raw_output)

    result_text: str | None = None
    text_parts: list[str] = []
    usage: UsageStats | None = None
    agent_session_id: str | None = None

    for line in raw_output.splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            # Stray non-JSON lines in a JSONL stream are still content
            if not line.lstrip().startswith("{"):
                text_parts.append(line)
            continue
        if not isinstance(event, dict):
            continue

        session = event.get("session_id") or event.get("sessionID")
        if isinstance(session, str) and session:
            agent_session_id = session

        usage = _event_usage(event) or usage

        if isinstance(event.get("result"), str):
            result_text = event["result"]
            continue
        text = _event_text(event)
        if text:
            text_parts.append(text)

    return ParsedOutput(
        text=result_text if result_text is not None else "\n".join(text_parts),
        usage=usage,
        agent_session_id=agent_session_id,
    )
