from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from topic_relay.transport import InboundMessage

_RELAY_COMMAND = re.compile(r"^/oc(?:@\w+)?(?:\s+(\w+))?(?:\s+([\s\S]+))?$", re.IGNORECASE)

HELP_TEXT = "\n".join(
    [
        "Commands:",
        "/oc new <absolute_workspace_path>",
        "/oc import [list]",
        "/oc import <session_id>",
        "/oc sessions",
        "/oc status",
        "/oc set <model|effort|summary|verbosity> <value>",
        "/oc perm <permission_id> <once|always|reject>",
        "/oc rename <title>",
        "/oc undo",
        "/oc redo",
        "/oc stop",
        "/oc close",
    ]
)

Handler = Callable[[InboundMessage, str], Awaitable[None]]


@dataclass(frozen=True)
class RelayCommand:
    name: str
    args: str


def parse_relay_command(text: str) -> RelayCommand | None:
    match = _RELAY_COMMAND.match(text.strip())
    if not match:
        return None
    return RelayCommand(name=(match.group(1) or "help").lower(), args=(match.group(2) or "").strip())


class CommandRouter:
    def __init__(
        self,
        *,
        on_new: Handler,
        on_import: Handler,
        on_sessions: Handler,
        on_status: Handler,
        on_set: Handler,
        on_permission: Handler,
        on_rename: Handler,
        on_undo: Handler,
        on_redo: Handler,
        on_stop: Handler,
        on_close: Handler,
        on_help: Handler,
    ) -> None:
        self._handlers: dict[str, Handler] = {
            "new": on_new,
            "import": on_import,
            "sessions": on_sessions,
            "status": on_status,
            "set": on_set,
            "perm": on_permission,
            "permission": on_permission,
            "rename": on_rename,
            "undo": on_undo,
            "redo": on_redo,
            "stop": on_stop,
            "close": on_close,
        }
        self._on_help = on_help

    async def try_handle(self, message: InboundMessage) -> bool:
        command = parse_relay_command(message.text or "")
        if command is None:
            return False

        handler = self._handlers.get(command.name, self._on_help)
        await handler(message, command.args)
        return True
