"""
Hotkey sequence detection.

Recognises ordered two-key chords such as Ctrl+T followed by C: the second key
has to arrive within SEQUENCE_TIMEOUT_MS of the first. Anything else (a late
second key, an unexpected key) silently returns the detector to idle. Single-key
triggers (e.g. Escape to cancel a run) are supported as well.

The detector only consumes key-down events; where they come from (a global OS
hook, a terminal, a test) is up to the caller.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

SEQUENCE_TIMEOUT_MS = 2000

Action = Callable[[], None]
Dispatcher = Callable[[Action], None]


class DetectorState(Enum):
    IDLE = "idle"
    WAITING_FOR_SECOND_KEY = "waiting_for_second_key"


def normalize_key(key: str) -> str:
    """'Ctrl + T' -> 'ctrl+t'"""
    return "+".join(part.strip().lower() for part in key.split("+"))


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class KeySequenceDetector:
    """
    Small state machine over key-down events.

    Args:
        timeout_ms: Window for the second key of a chord
        dispatcher: Runs a bound action; defaults to calling it inline. Pass the
            UI loop's "call soon" function to run actions on the UI thread.
        clock: Millisecond clock used when an event carries no timestamp
    """

    def __init__(
        self,
        timeout_ms: float = SEQUENCE_TIMEOUT_MS,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], float] = _monotonic_ms
    ):
        self.timeout_ms = timeout_ms
        self.dispatcher = dispatcher or (lambda action: action())
        self.clock = clock
        self._chords: Dict[str, Dict[str, Action]] = {}
        self._singles: Dict[str, Action] = {}
        self._lock = threading.Lock()
        self._first_key: Optional[str] = None
        self._started_at: Optional[float] = None

    @property
    def state(self) -> DetectorState:
        with self._lock:
            if self._first_key is None:
                return DetectorState.IDLE
            return DetectorState.WAITING_FOR_SECOND_KEY

    def bind(self, first: str, second: str, action: Action):
        """Bind the chord `first` then `second` to `action`."""
        self._chords.setdefault(normalize_key(first), {})[normalize_key(second)] = action

    def bind_single(self, key: str, action: Action):
        self._singles[normalize_key(key)] = action

    def reset(self):
        with self._lock:
            self._reset()

    def _reset(self):
        self._first_key = None
        self._started_at = None

    def on_key_down(self, key: str, timestamp: Optional[float] = None) -> bool:
        """
        Feed one key-down event.

        Args:
            key: Key name, with modifiers joined by '+', e.g. 'ctrl+t'
            timestamp: Event time in milliseconds; the clock is used when omitted

        Returns:
            True if an action was dispatched
        """
        key = normalize_key(key)
        now = self.clock() if timestamp is None else timestamp
        action: Optional[Action] = None

        with self._lock:
            if self._first_key is not None:
                expected = self._chords.get(self._first_key, {})
                elapsed = now - self._started_at
                first = self._first_key
                self._reset()
                if key in expected:
                    if elapsed <= self.timeout_ms:
                        logger.info(f"Chord {first} {key} detected")
                        action = expected[key]
                    else:
                        logger.debug(f"Chord {first} {key} timed out after {elapsed:.0f} ms")
                        return False

            if action is None:
                if key in self._chords:
                    self._first_key = key
                    self._started_at = now
                    logger.debug(f"{key} pressed, waiting for the second key")
                    return False
                action = self._singles.get(key)

        if action is None:
            return False
        self._dispatch(action)
        return True

    def _dispatch(self, action: Action):
        def invoke():
            try:
                action()
            except Exception:
                logger.exception("Hotkey action failed")

        try:
            self.dispatcher(invoke)
        except Exception:
            logger.exception("Could not dispatch hotkey action")
