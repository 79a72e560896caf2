"""
Approval Gate
=============

Turns a pending tool invocation into a yes/no decision from a human.

The human surface is a "confirmer": any callable `(title, message)` that
returns True (approve), False (reject) or None (dismissed / unknown, which
counts as a rejection). The gate blocks the calling thread until the
confirmer answers. There is no timeout; the only way out of a pending prompt
is cancelling the run, which abandons the prompt and counts as "not approved".
"""

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm

logger = logging.getLogger(__name__)

Confirmer = Callable[[str, str], Optional[bool]]

APPROVAL_TITLE = "Tool execution approval"
PREVIEW_LIMIT = 100
POLL_INTERVAL = 0.05


# =========================================================================
# Summaries
# =========================================================================

def preview(text: Any, limit: int = PREVIEW_LIMIT) -> str:
    """First `limit` characters of `text`, with an ellipsis when cut."""
    text = "" if text is None else str(text)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _command_lines(args: Dict[str, Any]) -> List[str]:
    return [f"script: {args.get('command', 'unknown script')}"]


def _url_lines(args: Dict[str, Any]) -> List[str]:
    return [f"url: {args.get('url', 'unknown url')}"]


def _path_lines(args: Dict[str, Any]) -> List[str]:
    return [f"path: {args.get('path', 'unknown path')}"]


def _create_file_lines(args: Dict[str, Any]) -> List[str]:
    return _path_lines(args) + [f"content: {preview(args.get('content', ''))}"]


def _write_lines(args: Dict[str, Any]) -> List[str]:
    return _path_lines(args) + [
        f"mode: {args.get('mode', 'overwrite')}",
        f"content: {preview(args.get('content', ''))}",
    ]


SUMMARY_BUILDERS: Dict[str, Callable[[Dict[str, Any]], List[str]]] = {
    "run_command": _command_lines,
    "fetch_web_page": _url_lines,
    "create_file": _create_file_lines,
    "read_file": _path_lines,
    "write_to_file": _write_lines,
    "delete_file": _path_lines,
    "path_exists": _path_lines,
    "create_directory": _path_lines,
}


def build_summary(tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
    """
    Human-readable description of a tool call.

    Known tools get their key arguments listed under the function name;
    anything else is shown as just `function: <name>`.
    """
    lines = [f"function: {tool_name}"]
    builder = SUMMARY_BUILDERS.get(tool_name)
    if builder is not None:
        lines.extend(builder(arguments or {}))
    return "\n".join(lines)


# =========================================================================
# Confirmers
# =========================================================================

class ConsoleConfirmer:
    """Asks on the terminal with a rich panel and a y/n prompt."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def __call__(self, title: str, message: str) -> Optional[bool]:
        self.console.print(Panel(escape(message), title=escape(title), border_style="yellow"))
        try:
            return Confirm.ask("Approve this call?", console=self.console, default=False)
        except (EOFError, KeyboardInterrupt):
            return None


class ScriptedConfirmer:
    """
    Replays a fixed list of answers and records every prompt it was shown.
    Once the script runs out it keeps returning `default`.
    """

    def __init__(self, answers: Optional[List[Optional[bool]]] = None, default: Optional[bool] = False):
        self.answers = list(answers or [])
        self.default = default
        self.prompts: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def __call__(self, title: str, message: str) -> Optional[bool]:
        with self._lock:
            self.prompts.append((title, message))
            if self.answers:
                return self.answers.pop(0)
            return self.default


def auto_approve(title: str, message: str) -> bool:
    logger.info(f"Auto-approved: {message.splitlines()[0] if message else title}")
    return True


# =========================================================================
# Gate
# =========================================================================

class ApprovalGate:
    """Blocking approval checkpoint in front of every gated tool."""

    def __init__(self, confirmer: Confirmer, title: str = APPROVAL_TITLE, poll_interval: float = POLL_INTERVAL):
        self.confirmer = confirmer
        self.title = title
        self.poll_interval = poll_interval

    def review(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None, cancel_token=None) -> bool:
        """Summarise a tool call and ask for approval."""
        return self.request_approval(tool_name, build_summary(tool_name, arguments), cancel_token)

    def request_approval(self, tool_name: str, summary: str, cancel_token=None) -> bool:
        """
        Ask the human whether `tool_name` may run.

        Args:
            tool_name: Name of the tool being called
            summary: Text produced by `build_summary`
            cancel_token: Optional token with an `is_cancelled` flag. When it
                fires while the prompt is open, the prompt is abandoned.

        Returns:
            True only on an explicit approval
        """
        message = f"Allow the following call?\n\n{summary}"

        if cancel_token is None:
            answer = self._ask(message)
        else:
            if cancel_token.is_cancelled:
                logger.info(f"Approval for {tool_name} skipped: run cancelled")
                return False
            answer = self._ask_until_cancelled(tool_name, message, cancel_token)

        approved = answer is True
        logger.info(f"{'✅ Approved' if approved else '⛔ Rejected'}: {tool_name}")
        return approved

    def _ask(self, message: str) -> Optional[bool]:
        try:
            return self.confirmer(self.title, message)
        except Exception:
            logger.exception("Confirmer failed; treating as rejection")
            return None

    def _ask_until_cancelled(self, tool_name: str, message: str, cancel_token) -> Optional[bool]:
        answers: "queue.Queue[Optional[bool]]" = queue.Queue(maxsize=1)
        worker = threading.Thread(
            target=lambda: answers.put(self._ask(message)),
            name=f"approval-{tool_name}",
            daemon=True
        )
        worker.start()

        while True:
            try:
                return answers.get(timeout=self.poll_interval)
            except queue.Empty:
                if cancel_token.is_cancelled:
                    logger.info(f"Approval prompt for {tool_name} abandoned: run cancelled")
                    return None
