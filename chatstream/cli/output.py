"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from rich.console import Console, Group, RenderableType
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from chatstream.chat.events import ChatState
from chatstream.chat.models import ChatContext, ConversationMessage, MessageStatus, Role
from chatstream.llm.types import AdaptedResponse

ROLE_COLORS = {
    Role.USER: "blue",
    Role.ASSISTANT: "green",
    Role.SYSTEM: "dim",
    Role.THINKING: "magenta",
    Role.TOOL: "yellow",
}

STATE_COLORS = {
    ChatState.COMPLETED: "green",
    ChatState.ERROR: "red",
    ChatState.IDLE: "dim",
}


class OutputFormatter:
    """Rich-based output formatting for the chatstream CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Live rendering
    # ------------------------------------------------------------------

    def render_turn(self, state: ChatState, context: ChatContext, show_thinking: bool = False) -> RenderableType:
        """The in-progress view of the latest turn, for ``rich.live.Live``."""
        parts: list[RenderableType] = []
        if show_thinking and context.current_thinking:
            parts.append(Panel(Text(context.current_thinking[-600:], style="magenta"), title="thinking"))
        tool = context.conversation.current_tool
        if tool is not None:
            parts.append(Text(f"[{tool.name}] {tool.status}", style="yellow"))

        for msg in reversed(context.conversation.messages):
            if msg.role == Role.USER:
                break
            if msg.role == Role.ASSISTANT and msg.event_type is not None and msg.event_type.value.startswith("ECHARTS"):
                continue
            if msg.role == Role.ASSISTANT:
                parts.append(Markdown(msg.content or "..."))
                break

        color = STATE_COLORS.get(state, "cyan")
        parts.append(Text(state.value, style=color))
        return Group(*parts)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def format_message(self, msg: ConversationMessage) -> None:
        color = ROLE_COLORS.get(msg.role, "white")
        ts = datetime.fromtimestamp(msg.timestamp).strftime("%H:%M:%S")
        marker = ""
        if msg.status == MessageStatus.ERROR:
            marker = " [red](error)[/red]"
        elif msg.status == MessageStatus.SENDING:
            marker = " [dim](sending)[/dim]"
        self.console.print(f"[{color}]{ts} {msg.role:>9s}[/{color}]{marker}", end="  ")
        if msg.role == Role.ASSISTANT:
            self.console.print(Markdown(msg.content))
        else:
            self.console.print(Text(msg.content))

    def format_conversation(self, context: ChatContext, show_thinking: bool = False) -> None:
        for msg in context.conversation.messages:
            if msg.role == Role.THINKING and not show_thinking:
                continue
            self.format_message(msg)

    def format_stats(self, stats: dict[str, Any]) -> None:
        table = Table(title="Session", show_header=False)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Value")
        for key, value in stats.items():
            if isinstance(value, dict):
                value = json.dumps(value, default=str)
            table.add_row(key, str(value))
        self.console.print(table)

    def format_error(self, state: ChatState, context: ChatContext) -> None:
        error = context.metadata.get("lastError", "unknown error")
        self.console.print(f"[red]Conversation ended in {state.value}:[/red] {error}")

    # ------------------------------------------------------------------
    # Responses / config
    # ------------------------------------------------------------------

    def format_response(self, response: AdaptedResponse) -> None:
        if response.status == "error":
            self.console.print(f"[red]{response.content}[/red]")
            return
        self.console.print(Markdown(response.content))
        meta = {k: v for k, v in response.metadata.items() if v is not None}
        if meta:
            self.console.print(f"[dim]{response.provider} {json.dumps(meta, default=str)[:200]}[/dim]")

    def format_config(self, config: dict) -> None:
        json_str = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(json_str, "json", theme="monokai"))
