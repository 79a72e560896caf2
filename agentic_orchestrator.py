"""
Agentic Orchestrator for the Terminal Agent
Drives one conversation through its tool-calling loop:
- Submit the user's input
- Put every gated tool call in front of a human
- Execute what was approved and send the whole batch back
- Stream the closing answer

At most one run is active per orchestrator. A second `run()` while one is in
progress returns immediately and changes nothing. Cancellation is cooperative:
it is checked before every blocking step and never kills a tool that is
already executing.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from agent_config import DEFAULT_FINAL_PROMPT
from agent_tools import CapabilityRegistry
from approval_gate import ApprovalGate
from chat_session import (
    AgentThread,
    ApprovalDecision,
    ConversationSession,
    Message,
    SubmitInput,
    ToolInvocationRequest,
)
from tool_state import record_approval, clear_history

logger = logging.getLogger(__name__)

CANCELLED_NOTICE = "\n[cancelled] The run was cancelled by the user."
ERROR_PREFIX = "\n[error] "


class RunState(Enum):
    """Lifecycle of the orchestrator"""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"


class RunPhase(Enum):
    """Where an active run currently is"""
    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_APPROVAL = "awaiting_approval"
    STREAMING_FINAL = "streaming_final"
    CANCELLING = "cancelling"


class CancellationToken:
    """One-shot cooperative cancellation flag, created fresh for every run."""

    def __init__(self):
        self._event = threading.Event()
        self.disposed = False

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def dispose(self):
        self.disposed = True


@dataclass
class RunTrace:
    """What happened during one run"""
    user_input: str
    phase: RunPhase = RunPhase.SUBMITTING
    batches: List[List[str]] = field(default_factory=list)
    decisions: List[ApprovalDecision] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def add_step(self, note: str):
        self.steps.append(note)
        logger.info(f"💭 {note}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_input": self.user_input,
            "phase": self.phase.value,
            "batches": self.batches,
            "decisions": [
                {"request_id": d.request_id, "approved": d.approved, "result": d.result}
                for d in self.decisions
            ],
            "steps": self.steps,
            "cancelled": self.cancelled,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at
        }


class _Cancelled(Exception):
    """Internal signal: stop the current run."""


class AgentOrchestrator:
    """
    Human-in-the-loop control loop over a ConversationSession.

    Observers (all optional, called on the running thread):
        on_output(text): every piece of text appended to the output
        on_state_change(state): every RunState transition
        on_waiting(bool): show / hide a "waiting for the model" indicator
    """

    def __init__(
        self,
        session: ConversationSession,
        gate: ApprovalGate,
        registry: Optional[CapabilityRegistry] = None,
        final_prompt: str = DEFAULT_FINAL_PROMPT,
        on_output: Optional[Callable[[str], None]] = None,
        on_state_change: Optional[Callable[[RunState], None]] = None,
        on_waiting: Optional[Callable[[bool], None]] = None
    ):
        self.session = session
        self.gate = gate
        self.registry = registry or session.registry
        self.final_prompt = final_prompt
        self.on_output = on_output or (lambda text: None)
        self.on_state_change = on_state_change or (lambda state: None)
        self.on_waiting = on_waiting or (lambda waiting: None)

        self._lock = threading.Lock()
        self._state = RunState.IDLE
        self._token: Optional[CancellationToken] = None
        self._output: List[str] = []
        self._waiting = False
        self.trace: Optional[RunTrace] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is not RunState.IDLE

    @property
    def output(self) -> str:
        with self._lock:
            return "".join(self._output)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def run(self, user_input: SubmitInput) -> bool:
        """
        Run one full turn of the agent loop on the calling thread.

        Returns:
            False if another run was already active (nothing was done),
            True once this run has finished, whatever the outcome.
        """
        description = _describe(user_input)
        with self._lock:
            if self._state is not RunState.IDLE:
                logger.info("Run ignored: agent is already running")
                return False
            self._state = RunState.RUNNING
            self._output = []
            token = CancellationToken()
            self._token = token
            self.trace = RunTrace(user_input=description)

        thread: Optional[AgentThread] = None
        try:
            self._notify(self.on_state_change, RunState.RUNNING)
            thread = self.session.ensure_thread()
            self._drive(user_input, thread, token)
        except _Cancelled:
            self._finish_cancelled(thread)
        except Exception as e:
            logger.exception("Agent run failed")
            self._finish_failed(thread, e)
        finally:
            self._set_waiting(False)
            with self._lock:
                self._state = RunState.IDLE
                self._token = None
            token.dispose()
            self.trace.phase = RunPhase.IDLE
            self.trace.finished_at = time.time()
            self._notify(self.on_state_change, RunState.IDLE)

        return True

    def start(self, user_input: SubmitInput) -> Optional[threading.Thread]:
        """Run on a daemon thread. Returns None if a run is already active."""
        if self.is_running:
            logger.info("Start ignored: agent is already running")
            return None
        worker = threading.Thread(target=self.run, args=(user_input,), name="agent-run", daemon=True)
        worker.start()
        return worker

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False when idle."""
        with self._lock:
            if self._state is RunState.IDLE or self._token is None:
                return False
            self._state = RunState.CANCELLING
            token = self._token
        token.cancel()
        logger.info("🛑 Cancellation requested")
        self._notify(self.on_state_change, RunState.CANCELLING)
        return True

    def clear_context(self) -> bool:
        """Forget the conversation. Refused while a run is active."""
        if self.is_running:
            return False
        self.session.clear_context()
        clear_history()
        with self._lock:
            self._output = []
        return True

    # =========================================================================
    # CORE LOOP
    # =========================================================================

    def _drive(self, user_input: SubmitInput, thread: AgentThread, token: CancellationToken):
        self._checkpoint(token)
        self.trace.phase = RunPhase.SUBMITTING
        response = self._submit(user_input, thread)

        while response.pending_requests:
            self._checkpoint(token)
            decisions = self._resolve_batch(response.pending_requests, thread, token)

            self._checkpoint(token, thread, decisions)
            self.trace.phase = RunPhase.SUBMITTING
            response = self._submit(decisions, thread)

        self._checkpoint(token)
        self._stream_final(thread, token)

    def _submit(self, items, thread: AgentThread):
        self._set_waiting(True)
        try:
            response = self.session.submit(items, thread)
        finally:
            self._set_waiting(False)
        self._append(response.text)
        return response

    def _resolve_batch(
        self,
        requests: List[ToolInvocationRequest],
        thread: AgentThread,
        token: CancellationToken
    ) -> List[ApprovalDecision]:
        """Ask about every request first, then execute the approved ones."""
        self.trace.phase = RunPhase.AWAITING_APPROVAL
        self.trace.batches.append([r.id for r in requests])
        self.trace.add_step(f"Reviewing {len(requests)} tool call(s)")

        verdicts: List[bool] = []
        for request in requests:
            self._checkpoint(token, thread)
            approved = self.gate.review(request.tool_name, request.arguments, cancel_token=token)
            record_approval(request.id, request.tool_name, approved)
            verdicts.append(approved)
        self._checkpoint(token, thread)

        decisions: List[ApprovalDecision] = []
        for request, approved in zip(requests, verdicts):
            self._checkpoint(token, thread, decisions)
            result = None
            if approved:
                self.trace.add_step(f"Executing {request.tool_name}")
                result = self.registry.execute(request.tool_name, request.arguments)
            decision = ApprovalDecision(request.id, approved, result)
            decisions.append(decision)
            self.trace.decisions.append(decision)
        return decisions

    def _stream_final(self, thread: AgentThread, token: CancellationToken):
        self.trace.phase = RunPhase.STREAMING_FINAL
        self._set_waiting(True)
        deltas = self.session.stream_final(self.final_prompt, thread)
        try:
            for delta in deltas:
                self._set_waiting(False)
                self._checkpoint(token)
                self._append(delta)
        finally:
            deltas.close()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _checkpoint(self, token: CancellationToken, thread: Optional[AgentThread] = None,
                    decisions: Optional[List[ApprovalDecision]] = None):
        if not token.is_cancelled:
            return
        if thread is not None:
            settled = self.session.abandon_pending(thread, decisions or [])
            if settled:
                self.trace.add_step(f"Marked {settled} pending call(s) as not approved")
        raise _Cancelled()

    def _finish_cancelled(self, thread: Optional[AgentThread]):
        self.trace.phase = RunPhase.CANCELLING
        self.trace.cancelled = True
        # The model may have handed back new requests before cancellation was seen
        self._settle(thread)
        self._append(CANCELLED_NOTICE)
        logger.info("Run cancelled")

    def _finish_failed(self, thread: Optional[AgentThread], error: Exception):
        self.trace.error = str(error)
        # Unanswered requests would block every later submit
        self._settle(thread)
        self._append(f"{ERROR_PREFIX}{error}")

    def _settle(self, thread: Optional[AgentThread]):
        if thread is None:
            return
        try:
            settled = self.session.abandon_pending(thread)
        except Exception:
            logger.exception("Could not settle pending tool calls")
            return
        if settled:
            self.trace.add_step(f"Marked {settled} pending call(s) as not approved")

    def _append(self, text: Optional[str]):
        if not text:
            return
        with self._lock:
            self._output.append(text)
        self._notify(self.on_output, text)

    def _set_waiting(self, waiting: bool):
        if self._waiting == waiting:
            return
        self._waiting = waiting
        self._notify(self.on_waiting, waiting)

    @staticmethod
    def _notify(observer: Callable[[Any], None], value: Any):
        """Observers belong to the front-end; a broken one must not end the run."""
        try:
            observer(value)
        except Exception:
            logger.exception("Observer callback failed")


def _describe(user_input: Any) -> str:
    if isinstance(user_input, str):
        return user_input
    if isinstance(user_input, Message):
        return user_input.content
    return repr(user_input)
