"""
Shared parser result types.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from aiobscura.models.canonical import (
    Checkpoint,
    Message,
    Plan,
    Project,
    Session,
    Thread,
)


@dataclass
class ParseResult:
    """
    Everything one parse invocation extracted from a file.

    Attributes:
        project: Project the session ran against, if known
        session: Session the file belongs to, if any record identified it
        threads: Threads seen in this parse
        messages: New messages in emit order
        plans: Plan documents referenced by the session
        new_checkpoint: Offset after the last complete line
        warnings: Non-fatal problems (malformed lines, truncation, ...)
        agent_spawn_map: Sub-agent id -> seq of the spawning ToolCall in
            this parse
        agent_spawn_tool_use_ids: Sub-agent id -> tool_use_id of a spawning
            ToolCall that an earlier parse already committed
    """

    project: Optional[Project] = None
    session: Optional[Session] = None
    threads: List[Thread] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)
    plans: List[Plan] = field(default_factory=list)
    new_checkpoint: Checkpoint = field(default_factory=Checkpoint.none)
    warnings: List[str] = field(default_factory=list)
    agent_spawn_map: dict[str, int] = field(default_factory=dict)
    agent_spawn_tool_use_ids: dict[str, str] = field(default_factory=dict)

    def add_warning(self, message: str, line_number: Optional[int] = None) -> None:
        """Add a warning (non-fatal issue)."""
        if line_number is not None:
            message = f"Line {line_number}: {message}"
        self.warnings.append(message)

    @property
    def has_content(self) -> bool:
        return bool(self.messages or self.threads or self.plans or self.session)
