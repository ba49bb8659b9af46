"""
Layer 1 — Auto-Capture Engine
Feeds live frames to the decision engine without ever blocking the producer.

Features:
- Single background worker, at most one frame in flight
- Keep-only-latest backpressure: frames arriving while busy are dropped
- Stopping discards the frame in flight before it reaches the frame buffer
- One event per processed frame, delivered in submission order
- Stops analyzing a side once it is captured
- Immutable status snapshots for UI-facing readers
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .frame import CaptureState, DocumentSide, Frame

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Configuration for auto-capture engine."""
    stop_when_captured: bool = True   # Drop frames once the side is final
    worker_name: str = "auto-capture-worker"


@dataclass(frozen=True)
class CaptureEvent:
    """Delivered to listeners once per processed frame."""
    sequence: int
    side: DocumentSide
    state: CaptureState
    outcome: Any = None           # FrameOutcome from the decision engine
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        result = {
            'sequence': self.sequence,
            'side': self.side.value,
            'state': self.state.value,
            'error': self.error,
            'timestamp': self.timestamp,
        }
        if self.outcome is not None:
            result['outcome'] = self.outcome.to_dict()
        return result


@dataclass(frozen=True)
class CaptureStatus:
    """Point-in-time view of the auto-capture loop."""
    running: bool
    side: Optional[DocumentSide]
    state: CaptureState
    busy: bool
    submitted: int
    processed: int
    dropped: int
    last_event: Optional[CaptureEvent] = None

    def to_dict(self) -> Dict:
        return {
            'running': self.running,
            'side': self.side.value if self.side else None,
            'state': self.state.value,
            'busy': self.busy,
            'submitted': self.submitted,
            'processed': self.processed,
            'dropped': self.dropped,
            'last_event': self.last_event.to_dict() if self.last_event else None,
        }


class AutoCaptureEngine:
    """
    Keep-latest frame pump in front of a decision engine.

    The engine must provide analyze_frame(frame, side, commit=...) returning an
    object with a ``state`` attribute (CaptureState) and a to_dict() method.
    ``commit`` is a context manager factory; the engine only writes session
    state inside it, and only when it yields True.
    """

    def __init__(self, engine, config: Optional[CaptureConfig] = None):
        """
        Initialize auto-capture engine.

        Args:
            engine: Decision engine for one capture session
            config: Capture configuration (uses defaults if not provided)
        """
        self.engine = engine
        self.config = config or CaptureConfig()

        self._lock = threading.Lock()
        self._commit_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._listeners: List[Callable[[CaptureEvent], None]] = []

        # State tracking
        self._running = False
        self._side: Optional[DocumentSide] = None
        self._state = CaptureState.SEARCHING
        self._busy = False
        self._generation = 0
        self._sequence = 0
        self._submitted = 0
        self._processed = 0
        self._dropped = 0
        self._last_event: Optional[CaptureEvent] = None

        logger.info("AutoCaptureEngine initialized")
        logger.debug(f"Config: {self.config}")

    def add_listener(self, callback: Callable[[CaptureEvent], None]):
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[CaptureEvent], None]):
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def start(self, side) -> CaptureStatus:
        """
        Start analyzing frames for one side.

        Args:
            side: 'front' or 'back'
        """
        side = DocumentSide.parse(side)
        if hasattr(self.engine, "start_side"):
            self.engine.start_side(side)
        with self._commit_lock, self._lock:
            self._generation += 1
            self._running = True
            self._side = side
            self._state = CaptureState.SEARCHING
        logger.info(f"Auto-capture started for {side.value} side")
        return self.status()

    def stop(self) -> CaptureStatus:
        """Stop accepting frames; any in-flight result is discarded."""
        with self._commit_lock, self._lock:
            self._generation += 1
            self._running = False
        logger.info("Auto-capture stopped")
        return self.status()

    def submit(self, frame: Frame) -> bool:
        """
        Offer a frame. Never blocks.

        Args:
            frame: Raw frame

        Returns:
            bool: True if the frame was accepted, False if dropped
        """
        with self._lock:
            self._submitted += 1
            if not self._running or self._busy:
                self._dropped += 1
                return False
            if self.config.stop_when_captured and self._state in (CaptureState.CAPTURED, CaptureState.ERROR):
                self._dropped += 1
                return False

            self._busy = True
            self._idle.clear()
            self._sequence += 1
            sequence = self._sequence
            generation = self._generation
            side = self._side

        worker = threading.Thread(
            target=self._process,
            args=(frame, side, generation, sequence),
            name=self.config.worker_name,
            daemon=True,
        )
        worker.start()
        return True

    def _process(self, frame: Frame, side: DocumentSide, generation: int, sequence: int):
        """Worker body: analyze one frame and publish its event."""
        try:
            outcome = self.engine.analyze_frame(frame, side, commit=lambda: self._commit(generation))
            event = CaptureEvent(sequence, side, outcome.state, outcome=outcome)
        except Exception as e:
            logger.error(f"Frame {sequence} processing failed: {e}")
            logger.exception("Full traceback:")
            event = CaptureEvent(sequence, side, CaptureState.ERROR, error=str(e))

        with self._lock:
            current = generation == self._generation
            if current:
                self._processed += 1
                self._state = event.state
                self._last_event = event
                listeners = list(self._listeners)
            else:
                listeners = []

        if not current:
            logger.debug(f"Discarding frame {sequence} from a stopped run")
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Capture listener failed: {e}")

        if current and event.state is CaptureState.CAPTURED:
            logger.info(f"✓ {side.value.capitalize()} side captured at frame {sequence}")

        with self._lock:
            self._busy = False
            self._idle.set()

    @contextmanager
    def _commit(self, generation: int):
        """Hold off stop/start while the engine writes; yields False for a stale run."""
        with self._commit_lock:
            yield generation == self._generation

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no frame is in flight. Returns False on timeout."""
        return self._idle.wait(timeout)

    def status(self) -> CaptureStatus:
        with self._lock:
            return CaptureStatus(
                running=self._running,
                side=self._side,
                state=self._state,
                busy=self._busy,
                submitted=self._submitted,
                processed=self._processed,
                dropped=self._dropped,
                last_event=self._last_event,
            )
