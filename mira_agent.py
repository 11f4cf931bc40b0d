"""
Default agent behind the voice front end.

Sends the finalized query to Claude with a short voice-oriented prompt and a
Timer tool. A Timer call is handed back to the caller as a ``timer_set`` event
so the session can schedule the reminder itself.
"""

import json
import logging
import os
import uuid
from typing import Any, Dict, List, Optional

import anthropic

from config import DEFAULT_AGENT_MODEL
from location_context import UNKNOWN

log = logging.getLogger("mira_voice")

# Prompt templates
VOICE_PROMPT = """
# Mira, a voice assistant on smart glasses

You answer questions the user speaks out loud. Your answer is shown on a tiny
display, so follow these rules:

1. Answer in one or two short sentences
2. DO NOT use markdown formatting symbols (no *, #, `, [], etc.)
3. Write in plain natural language
4. When the user asks for a timer or reminder, call the Timer tool instead of answering
5. If the question depends on place or local time, use the location context below

{location_context}{notifications_context}{formatted_history}
Now answer the user's latest request.
"""

TIMER_TOOL = {
    "name": "Timer",
    "description": "Set a countdown timer that notifies the user when it is up.",
    "input_schema": {
        "type": "object",
        "properties": {
            "duration": {
                "type": "integer",
                "description": "Timer length in seconds",
            },
            "label": {
                "type": "string",
                "description": "Optional short name for the timer, such as 'pasta'",
            },
        },
        "required": ["duration"],
    },
}


def format_notifications(notifications: Optional[List[Any]]) -> str:
    if not notifications:
        return ""
    lines = []
    for idx, notification in enumerate(notifications, start=1):
        if isinstance(notification, dict):
            app = notification.get("app", "Unknown app")
            title = notification.get("title", "")
            content = notification.get("content", "")
            lines.append(f"{idx}. From {app}: {title} {content}".strip())
        else:
            lines.append(f"{idx}. {notification}")
    return "Recent notifications:\n" + "\n".join(lines) + "\n\n"


def format_location(location) -> str:
    if location is None or not location.is_known:
        return ""
    text = f"For context the user is currently in {location.city}, {location.state}, {location.country}."
    tz = location.timezone
    if tz.name != UNKNOWN:
        text += f" Their timezone is {tz.name} ({tz.short_name})."
        local_time = location.local_time()
        if local_time:
            text += f" Their local date and time is {local_time}."
    return text + "\n\n"


class MiraAgent:
    def __init__(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        model: str = DEFAULT_AGENT_MODEL,
        client=None,
        max_tokens: int = 512,
        history_limit: int = 10,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.model = model
        self.max_tokens = max_tokens
        self.history_limit = history_limit
        self.conversation_history: List[Dict[str, str]] = []
        self.client = client or anthropic.AsyncAnthropic(
            api_key=os.environ.get("ANTHROPIC_API_KEY")
        )

    def format_conversation_history(self) -> str:
        """Format the conversation history in the required format"""
        if not self.conversation_history:
            return ""

        formatted_history = "# Conversation History\n\n"

        for entry in self.conversation_history:
            role = entry["role"].capitalize()
            content = entry["content"]
            formatted_history += f"## {role}\n{content}\n\n"

        return formatted_history

    def _remember(self, query: str, answer: str) -> None:
        self.conversation_history.append({"role": "user", "content": query})
        self.conversation_history.append({"role": "assistant", "content": answer})
        # Keep the last N exchanges
        overflow = len(self.conversation_history) - self.history_limit * 2
        if overflow > 0:
            del self.conversation_history[:overflow]

    async def handle(self, query: str, context: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Answer a query. Returns plain text, a timer event as JSON, or None."""
        context = context or {}
        system = VOICE_PROMPT.format(
            location_context=format_location(context.get("location")),
            notifications_context=format_notifications(context.get("notifications")),
            formatted_history=self.format_conversation_history(),
        )

        log.info(f'[Session {self.session_id}]: Asking {self.model}: "{query}"')
        message = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            tools=[TIMER_TOOL],
            messages=[{"role": "user", "content": query}],
        )

        text_parts = []
        for block in message.content:
            if block.type == "tool_use" and block.name == TIMER_TOOL["name"]:
                event = self._timer_event(block.input)
                if event is None:
                    continue
                self._remember(query, f"Set a timer for {event['duration']} seconds.")
                return json.dumps(event)
            if block.type == "text":
                text_parts.append(block.text)

        answer = "".join(text_parts).strip()
        if not answer:
            log.warning(f"[Session {self.session_id}]: Empty answer from {self.model}")
            return None
        self._remember(query, answer)
        return answer

    def _timer_event(self, tool_input: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(tool_input, dict):
            return None
        try:
            duration = int(tool_input.get("duration"))
        except (TypeError, ValueError):
            log.warning(f"[Session {self.session_id}]: Timer tool called without a valid duration: {tool_input!r}")
            return None
        if duration <= 0:
            return None
        event = {
            "event": "timer_set",
            "duration": duration,
            "timerId": uuid.uuid4().hex[:8],
        }
        if tool_input.get("label"):
            event["label"] = str(tool_input["label"])
        return event
