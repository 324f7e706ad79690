"""
relaymcp CLI Completer - prompt_toolkit completion for the REPL.

Provides dropdown suggestions for slash commands, qualified capability
names after "/tools info ", and server names after "/reconnect ".
"""

from typing import Callable, Iterable, List, Optional

from prompt_toolkit.completion import Completer, Completion


# (command, description) for dropdown display
SLASH_COMMANDS = [
    ("/help", "Show help"),
    ("/?", "Show help"),
    ("/servers", "Configured servers and connection status"),
    ("/tools", "List the capability catalog"),
    ("/tools info", "Show the parameter schema of one capability"),
    ("/reconnect", "Reconnect a server and rebuild its catalog"),
    ("/exit", "Exit relaymcp"),
    ("/quit", "Exit relaymcp"),
    ("/q", "Exit relaymcp"),
]


class RelayCompleter(Completer):
    """Completer for the relaymcp REPL.

    Capability and server names are looked up lazily through callables so
    the dropdown follows reconnects.
    """

    def __init__(
        self,
        capability_names: Optional[Callable[[], Iterable[str]]] = None,
        server_names: Optional[Callable[[], Iterable[str]]] = None,
    ):
        self._capability_names = capability_names
        self._server_names = server_names

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor

        if not text.startswith("/"):
            return

        if text.startswith("/tools info "):
            yield from self._complete_from(self._capability_names, text[len("/tools info "):], "capability")
            return

        if text.startswith("/reconnect "):
            yield from self._complete_from(self._server_names, text[len("/reconnect "):], "server")
            return

        for cmd, description in SLASH_COMMANDS:
            if cmd.startswith(text):
                yield Completion(
                    cmd,
                    start_position=-len(text),
                    display_meta=description,
                )

    @staticmethod
    def _complete_from(source, prefix: str, label: str):
        if source is None:
            return
        names: List[str] = sorted(source())
        for name in names:
            if name.startswith(prefix):
                yield Completion(name, start_position=-len(prefix), display_meta=label)
