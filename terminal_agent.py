"""
Terminal front-end for the agent.

Usage:
  terminal-agent "what time is it?"
  terminal-agent                      # interactive session
  terminal-agent --yes "list the files in this folder"
  terminal-agent --template translate "some text"
  terminal-agent --image chart.png    # runs the selected image prompt
  terminal-agent --list-templates

Inside an interactive session:
  /clear          start a new conversation
  /templates      list the prompt templates
  /use NAME       make NAME the text template for Ctrl+T C
  /image PATH     run the selected image template on PATH
  /exit           quit
Ctrl+T then C runs the selected text template on the current input line.
Ctrl+C cancels the active run; Ctrl+C at the prompt quits. With --yes,
Escape cancels a run as well.
"""

import argparse
import logging
import mimetypes
import sys
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Callable, List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.filters import Condition
from prompt_toolkit.input import create_input
from prompt_toolkit.key_binding import KeyBindings
from rich.console import Console

from agent_config import ConfigurationError, EnvConfig, load_config, save_config
from agent_tools import default_registry
from agentic_orchestrator import AgentOrchestrator, RunState
from approval_gate import ApprovalGate, ConsoleConfirmer, auto_approve
from chat_session import ConversationSession
from key_sequence import DetectorState, KeySequenceDetector
from model_client_wrapper import ModelClientWrapper, create_model_client
from prompt_templates import (
    DEFAULT_PROMPTS_DIR,
    PromptKind,
    PromptLibrary,
    PromptNotFoundError,
    PromptTemplate,
    stream_template,
)

logger = logging.getLogger(__name__)

JOIN_INTERVAL = 0.1
KEY_POLL_INTERVAL = 0.05
CHORD = ("ctrl+t", "c")
CANCEL_KEYS = ("escape", "ctrl+c")
TEXT_SLOT = "LLMPrompt1"
IMAGE_SLOT = "VLMPrompt1"
DEFAULT_IMAGE_TYPE = "image/jpeg"


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        filename=log_file,
        format='[%(asctime)s] %(levelname)s %(message)s',
        encoding='utf-8'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terminal-agent",
        description="Chat agent that asks before running any tool."
    )
    parser.add_argument("prompt", nargs="?", help="Run a single prompt and exit")
    parser.add_argument("--yes", action="store_true", help="Approve every tool call without asking")
    parser.add_argument("--env-file", help="Path to the .env file (default: ./.env)")
    parser.add_argument("--model", help="Override OPENAI_CHAT_MODEL")
    parser.add_argument("--base-url", help="Override OPENAI_BASE_URL")
    parser.add_argument("--instructions", help="Override the system instructions")
    parser.add_argument("--save-config", action="store_true",
                        help="Write the resolved model settings (with overrides) back to the .env file")
    parser.add_argument("--workdir", default=".", help="Directory relative paths resolve against")
    parser.add_argument("--prompts-dir", default=DEFAULT_PROMPTS_DIR, help="Directory of prompt templates")
    parser.add_argument("--template", help="Run this prompt template once over the prompt text or --image")
    parser.add_argument("--image", help="Image file to run the image prompt template on")
    parser.add_argument("--list-templates", action="store_true", help="List prompt templates and exit")
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    return parser


class WaitingIndicator:
    """Spinner shown while the model is thinking."""

    def __init__(self, console: Console):
        self.console = console
        self._status = None
        self._lock = threading.Lock()

    def __call__(self, waiting: bool):
        with self._lock:
            if waiting and self._status is None:
                self._status = self.console.status("Waiting for the model...")
                self._status.start()
            elif not waiting and self._status is not None:
                self._status.stop()
                self._status = None


# =========================================================================
# KEYBOARD
# =========================================================================

def key_name(key: Any) -> str:
    """prompt_toolkit key ('c-t', Keys.Escape, 'x') -> detector name ('ctrl+t', 'escape', 'x')"""
    name = str(getattr(key, "value", key))
    if name.startswith("c-") and len(name) > 2:
        return "ctrl+" + name[2:]
    return name


def build_key_bindings(detector: KeySequenceDetector, first: str = "c-t", second: str = "c",
                       cancel: str = "escape") -> KeyBindings:
    """
    Key bindings that feed the prompt's key presses to `detector`.

    `second` is only captured while the detector waits for the end of a chord;
    otherwise it types normally. A late `second` key is typed as well.
    """
    bindings = KeyBindings()
    waiting = Condition(lambda: detector.state is DetectorState.WAITING_FOR_SECOND_KEY)

    @bindings.add(first)
    def _(event):
        detector.on_key_down(key_name(first))

    @bindings.add(second, filter=waiting)
    def _(event):
        if not detector.on_key_down(key_name(second)):
            event.current_buffer.insert_text(event.data)

    @bindings.add(cancel, eager=True)
    def _(event):
        detector.on_key_down(key_name(cancel))

    return bindings


class KeyWatcher:
    """
    Feeds raw terminal key presses to a detector while a run is active.

    The terminal is in raw mode for as long as the watcher runs, so it must
    not be used while anything else reads stdin (e.g. approval prompts).
    """

    def __init__(self, detector: KeySequenceDetector, input_factory: Callable[[], Any] = create_input,
                 interval: float = KEY_POLL_INTERVAL):
        self.detector = detector
        self.input_factory = input_factory
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "KeyWatcher":
        self._stop.clear()
        self._thread = threading.Thread(target=self._watch, name="key-watcher", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(1)
        return False

    def _watch(self):
        try:
            terminal_input = self.input_factory()
            with terminal_input.raw_mode():
                while not self._stop.is_set():
                    # flush_keys() releases a lone Escape the parser is holding back
                    for press in terminal_input.read_keys() + terminal_input.flush_keys():
                        self.detector.on_key_down(key_name(press.key))
                    self._stop.wait(self.interval)
        except Exception:
            logger.exception("Key watcher stopped")


def install_hotkeys(
    detector: KeySequenceDetector,
    orchestrator: AgentOrchestrator,
    chord_action: Callable[[], None],
    chord=CHORD,
    cancel_keys=CANCEL_KEYS
):
    """Bind the chord to `chord_action` and every key of `cancel_keys` to cancelling the run."""
    detector.bind(chord[0], chord[1], chord_action)
    for key in cancel_keys:
        detector.bind_single(key, orchestrator.cancel)


# =========================================================================
# APPLICATION
# =========================================================================

class TemplateRequest:
    """Returned by the REPL prompt when the chord asks for a template run."""

    def __init__(self, text: str):
        self.text = text


class TerminalApp:
    """Everything a terminal session needs, built once from the command line."""

    def __init__(
        self,
        config: EnvConfig,
        orchestrator: AgentOrchestrator,
        client: ModelClientWrapper,
        prompts: PromptLibrary,
        console: Console,
        watch_keys: bool = False
    ):
        self.config = config
        self.orchestrator = orchestrator
        self.client = client
        self.prompts = prompts
        self.console = console
        self.watch_keys = watch_keys
        self.detector = KeySequenceDetector()
        self.prompt_session: Optional[PromptSession] = None
        self._vision_client: Optional[ModelClientWrapper] = None

    def request_template(self):
        """Chord action: hand the current input line to the REPL as a template run."""
        session = self.prompt_session
        if session is None or not session.app.is_running:
            logger.info("Template chord ignored: no input line to run it on")
            return
        session.app.exit(result=TemplateRequest(session.default_buffer.text))

    @property
    def vision_client(self) -> ModelClientWrapper:
        if self._vision_client is None:
            self._vision_client = create_model_client(self.config, vision=True)
        return self._vision_client

    def watcher(self):
        """Key watcher for a run, or a no-op context when keys cannot be read raw."""
        if self.watch_keys:
            return KeyWatcher(self.detector)
        return nullcontext()

    def run_template(self, template: Optional[PromptTemplate], text: str = "",
                     image_path: Optional[str] = None) -> bool:
        """Stream one template run to the console. Returns False on failure."""
        if template is None:
            kind = PromptKind.VLM if image_path else PromptKind.LLM
            self.console.print(f"[red]No prompt templates in {self.prompts.root / kind.value}[/red]")
            return False

        try:
            image = None
            mime_type = None
            client = self.client
            if image_path:
                image = Path(image_path).read_bytes()
                mime_type = mimetypes.guess_type(image_path)[0] or DEFAULT_IMAGE_TYPE
                client = self.vision_client
            deltas = stream_template(client, template, text, image, mime_type)
        except (OSError, ValueError, ConfigurationError) as e:
            self.console.print(f"[red]{e}[/red]")
            return False

        try:
            for delta in deltas:
                self.console.print(delta, end="", markup=False, highlight=False, soft_wrap=True)
        except KeyboardInterrupt:
            self.console.print("\n[yellow]Cancelled.[/yellow]")
            return False
        except Exception as e:
            logger.exception(f"Prompt template {template.name} failed")
            self.console.print(f"\n[red]Error:[/red] {e}")
            return False
        finally:
            deltas.close()
        self.console.print()
        return True

    def run_template_from_args(self, args: argparse.Namespace) -> bool:
        kind = PromptKind.VLM if args.image else PromptKind.LLM
        try:
            if args.template:
                template = self.prompts.get(kind, args.template)
            else:
                template = self.prompts.current(IMAGE_SLOT if args.image else TEXT_SLOT)
        except PromptNotFoundError as e:
            self.console.print(f"[red]{e.args[0]}[/red]")
            return False
        return self.run_template(template, args.prompt or "", args.image)


def build_app(args: argparse.Namespace, console: Console) -> TerminalApp:
    config = load_config(args.env_file)
    if args.model:
        config.chat_model = args.model
    if args.base_url:
        config.chat_base_url = args.base_url
    if args.instructions:
        config.instructions = args.instructions

    client = create_model_client(config)
    registry = default_registry(args.workdir, command_timeout=config.command_timeout)
    session = ConversationSession(client, registry, instructions=config.instructions)
    gate = ApprovalGate(auto_approve if args.yes else ConsoleConfirmer(console))

    orchestrator = AgentOrchestrator(
        session,
        gate,
        final_prompt=config.final_prompt,
        on_output=lambda text: console.print(text, end="", markup=False, highlight=False, soft_wrap=True),
        on_waiting=WaitingIndicator(console)
    )
    prompts = PromptLibrary(args.prompts_dir).load()
    # Raw key reading would steal the answers of interactive approval prompts
    watch_keys = args.yes and sys.stdin.isatty()
    return TerminalApp(config, orchestrator, client, prompts, console, watch_keys=watch_keys)


# =========================================================================
# RUNNING
# =========================================================================

def run_prompt(orchestrator: AgentOrchestrator, prompt: str, console: Console, watcher=None) -> bool:
    """
    Run one prompt in the background and wait for it.
    The first Ctrl+C cancels the run, a second one gives up waiting.
    """
    worker = orchestrator.start(prompt)
    if worker is None:
        return False

    interrupted = False
    with watcher if watcher is not None else nullcontext():
        while worker.is_alive():
            try:
                worker.join(JOIN_INTERVAL)
            except KeyboardInterrupt:
                if interrupted:
                    raise
                interrupted = True
                if orchestrator.cancel():
                    console.print("\n[yellow]Cancelling...[/yellow]")
    console.print()
    return True


def list_templates(prompts: PromptLibrary, console: Console):
    for kind, slot in ((PromptKind.LLM, TEXT_SLOT), (PromptKind.VLM, IMAGE_SLOT)):
        current = prompts.current(slot)
        console.print(f"[bold]{kind.value}[/bold]")
        names = prompts.names(kind)
        if not names:
            console.print("  (none)")
        for name in names:
            marker = "*" if current is not None and current.name == name else " "
            console.print(f" {marker} {name}", markup=False)


def create_prompt_session(app: TerminalApp) -> PromptSession:
    """Prompt whose key presses drive the hotkey detector."""
    app.prompt_session = PromptSession(key_bindings=build_key_bindings(app.detector))
    return app.prompt_session


def handle_command(app: TerminalApp, line: str) -> bool:
    """Run a slash command. Returns False when the session should end."""
    command, _, argument = line.partition(" ")
    argument = argument.strip()
    console = app.console

    if command in ("/exit", "/quit"):
        return False
    if command == "/clear":
        if app.orchestrator.clear_context():
            console.print("[green]Conversation cleared.[/green]")
    elif command == "/templates":
        list_templates(app.prompts, console)
    elif command == "/use":
        try:
            template = app.prompts.select(TEXT_SLOT, argument)
        except PromptNotFoundError as e:
            console.print(f"[red]{e.args[0]}[/red]")
        else:
            app.prompts.save_selection()
            console.print(f"[green]Ctrl+T C now runs {template.name}.[/green]")
    elif command == "/image":
        if not argument:
            console.print("[red]Usage: /image PATH[/red]")
        else:
            app.run_template(app.prompts.current(IMAGE_SLOT), image_path=argument)
    else:
        console.print(f"[red]Unknown command {command}[/red]")
    return True


def repl(app: TerminalApp, session=None):
    console = app.console
    session = session or create_prompt_session(app)
    console.print("[bold]Terminal agent[/bold]  (/templates, /clear, /exit; Ctrl+T C runs the text template)")
    while True:
        try:
            line = session.prompt("> ")
        except (EOFError, KeyboardInterrupt):
            console.print()
            return

        if isinstance(line, TemplateRequest):
            if line.text.strip():
                app.run_template(app.prompts.current(TEXT_SLOT), text=line.text)
            continue

        line = line.strip()
        if not line:
            continue
        if line.startswith("/"):
            if not handle_command(app, line):
                return
            continue
        run_prompt(app.orchestrator, line, console, app.watcher())


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)
    console = Console()

    if args.list_templates:
        list_templates(PromptLibrary(args.prompts_dir).load(), console)
        return 0

    try:
        app = build_app(args, console)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 2
    install_hotkeys(app.detector, app.orchestrator, app.request_template)

    if args.save_config:
        path = save_config(app.config, args.env_file)
        console.print(f"[green]Settings saved to {path}[/green]")

    try:
        if args.template or args.image:
            return 0 if app.run_template_from_args(args) else 1
        if args.prompt:
            run_prompt(app.orchestrator, args.prompt, console, app.watcher())
            trace = app.orchestrator.trace
            return 1 if trace and trace.error else 0
        repl(app)
    except KeyboardInterrupt:
        if app.orchestrator.state is not RunState.IDLE:
            app.orchestrator.cancel()
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
