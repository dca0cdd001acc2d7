"""
Session Lifecycle - State machine for a single therapy session.

Tracks one appointment's session from not-started through completion or
expiry. State is persisted through a SessionStateStore on every change so
that a restarted app resumes a running session with the correct elapsed
time, and a periodic tick enforces the maximum session length.
"""

from datetime import timezone
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple

from loguru import logger

from healtrack.config import get_settings
from healtrack.models.appointment import Appointment
from healtrack.models.results import PaymentTarget, TransitionResult
from healtrack.models.session import ImageRef, SessionPhase, SessionState, TherapySubmission
from healtrack.scheduling import AsyncioScheduler, Clock, Scheduler, SystemClock, TimerHandle
from healtrack.services.session_store import SessionStateStore
from healtrack.services.therapy import TherapyService


class SessionEvent(str, Enum):
    """Inputs to the session state machine."""

    START = "start"
    RESUME = "resume"
    TICK = "tick"
    EXPIRE = "expire"
    END = "end"
    CANCEL = "cancel"


TRANSITIONS: Dict[Tuple[SessionPhase, SessionEvent], SessionPhase] = {
    (SessionPhase.NOT_STARTED, SessionEvent.START): SessionPhase.IN_PROGRESS,
    (SessionPhase.NOT_STARTED, SessionEvent.RESUME): SessionPhase.IN_PROGRESS,
    (SessionPhase.NOT_STARTED, SessionEvent.CANCEL): SessionPhase.CANCELLED,
    (SessionPhase.IN_PROGRESS, SessionEvent.TICK): SessionPhase.IN_PROGRESS,
    (SessionPhase.IN_PROGRESS, SessionEvent.EXPIRE): SessionPhase.EXPIRED,
    (SessionPhase.IN_PROGRESS, SessionEvent.END): SessionPhase.COMPLETED,
}


class InvalidTransitionError(Exception):
    """An action was requested that the current phase does not allow."""

    def __init__(self, phase: SessionPhase, action: str):
        super().__init__(f"'{action}' is not allowed while session is {phase.value}")
        self.phase = phase
        self.action = action


def next_phase(phase: SessionPhase, event: SessionEvent) -> SessionPhase:
    """
    The single transition function of the session state machine.

    Raises:
        InvalidTransitionError: If ``event`` is not accepted in ``phase``
    """
    try:
        return TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidTransitionError(phase, event.value) from None


def format_elapsed(seconds: int) -> str:
    """Format elapsed seconds as HH:MM:SS."""
    hours, remainder = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


ChangeListener = Callable[[SessionPhase, SessionState], None]
ExpiryListener = Callable[[], None]


class SessionLifecycle:
    """
    State machine managing one appointment's therapy session.

    Phases: NOT_STARTED -> IN_PROGRESS -> COMPLETED, with EXPIRED as the
    alternate terminal phase and CANCELLED as a non-persisting exit. Call
    ``load()`` once after construction to resume any stored session.
    """

    def __init__(
        self,
        appointment: Appointment,
        therapy_service: TherapyService,
        store: SessionStateStore,
        clock: Optional[Clock] = None,
        scheduler: Optional[Scheduler] = None,
        max_session_seconds: Optional[int] = None,
        tick_interval_seconds: Optional[float] = None,
        on_change: Optional[ChangeListener] = None,
        on_expired: Optional[ExpiryListener] = None,
    ):
        settings = get_settings()
        self.appointment = appointment
        self.max_session_seconds = max_session_seconds or settings.max_session_seconds
        self.tick_interval_seconds = tick_interval_seconds or settings.tick_interval_seconds
        self._therapy = therapy_service
        self._store = store
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._on_change = on_change
        self._on_expired = on_expired

        self._phase = SessionPhase.NOT_STARTED
        self._state = SessionState()
        self._timer: Optional[TimerHandle] = None
        self._in_flight = False
        self._ending = False
        self._closed = False

    # ==================== Accessors ====================

    @property
    def appointment_id(self) -> str:
        return self.appointment.id

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def state(self) -> SessionState:
        """A copy of the current session state."""
        return self._state.model_copy(deep=True)

    @property
    def elapsed_seconds(self) -> int:
        return self._state.elapsed_seconds

    @property
    def elapsed_label(self) -> str:
        return format_elapsed(self._state.elapsed_seconds)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def is_ticking(self) -> bool:
        return self._timer is not None

    # ==================== Resumption ====================

    async def load(self) -> SessionPhase:
        """
        Restore a stored session for this appointment, if any.

        A stored running session resumes directly into IN_PROGRESS with its
        original start time, so elapsed time survives an app restart. It
        expires immediately if the time limit passed while the app was away.
        """
        stored = await self._store.load(self.appointment_id)
        if stored is None:
            return self._phase

        if not stored.is_resumable:
            logger.warning(f"Removing stale session state for appointment {self.appointment_id}")
            await self._store.delete(self.appointment_id)
            return self._phase

        if stored.start_time.tzinfo is None:
            stored = stored.model_copy(
                update={"start_time": stored.start_time.replace(tzinfo=timezone.utc)}
            )
        self._state = stored
        self._phase = next_phase(self._phase, SessionEvent.RESUME)
        logger.info(
            f"Resumed therapy session for appointment {self.appointment_id} "
            f"started at {stored.start_time.isoformat()}"
        )

        await self.tick()
        if self._phase is SessionPhase.IN_PROGRESS:
            self._start_ticking()
        return self._phase

    # ==================== Transitions ====================

    async def start(
        self,
        pre_remarks: Optional[str] = None,
        pre_images: Optional[Iterable[ImageRef]] = None,
    ) -> TransitionResult:
        """
        Start the therapy session.

        Args:
            pre_remarks: Pre-session remarks (defaults to the current draft)
            pre_images: Pre-session images (defaults to the current draft)

        Returns:
            TransitionResult; on failure nothing is persisted and the user
            may retry
        """
        next_phase(self._phase, SessionEvent.START)
        if self._in_flight:
            return self._rejected_in_flight()

        submission = TherapySubmission(
            remarks=self._state.pre_remarks if pre_remarks is None else pre_remarks,
            images=list(self._state.pre_images if pre_images is None else pre_images),
        )

        self._in_flight = True
        try:
            accepted = await self._therapy.start(self.appointment_id, submission)
        finally:
            self._in_flight = False

        if not accepted:
            logger.warning(f"Therapy start rejected for appointment {self.appointment_id}")
            return TransitionResult(
                success=False,
                phase=self._phase,
                message="Failed to start therapy session.",
                error_code="START_FAILED",
                retryable=True,
            )

        started = self._state.model_copy(
            update={
                "is_started": True,
                "start_time": self._clock.now(),
                "elapsed_seconds": 0,
                "pre_remarks": submission.remarks,
                "pre_images": submission.images,
            }
        )
        await self._store.save(self.appointment_id, started)
        self._state = started
        self._phase = next_phase(self._phase, SessionEvent.START)
        self._start_ticking()
        self._notify()

        logger.info(f"Therapy session started for appointment {self.appointment_id}")
        return TransitionResult(
            success=True, phase=self._phase, message="Therapy session started."
        )

    async def tick(self) -> SessionPhase:
        """
        Recompute elapsed time from the wall clock.

        Expires the session instead once the maximum duration is reached.
        While an end request is awaiting the backend, its answer decides the
        outcome, so expiry waits and nothing is written.
        """
        next_phase(self._phase, SessionEvent.TICK)

        elapsed = self._compute_elapsed()
        if self._ending:
            self._state = self._state.model_copy(update={"elapsed_seconds": elapsed})
            self._notify()
            return self._phase

        if elapsed >= self.max_session_seconds:
            await self._expire()
            return self._phase

        self._state = self._state.model_copy(update={"elapsed_seconds": elapsed})
        await self._store.save(self.appointment_id, self._state)
        self._notify()
        return self._phase

    async def end(
        self,
        post_remarks: Optional[str] = None,
        post_images: Optional[Iterable[ImageRef]] = None,
    ) -> TransitionResult:
        """
        End the therapy session.

        On success the stored state is cleared and the result carries the
        payment reconciliation target, even if the time limit passed while
        the request was pending. On failure the session keeps running
        unchanged, unless the limit has passed by then, in which case it
        expires.
        """
        next_phase(self._phase, SessionEvent.END)
        if self._in_flight:
            return self._rejected_in_flight()

        submission = TherapySubmission(
            remarks=self._state.post_remarks if post_remarks is None else post_remarks,
            images=list(self._state.post_images if post_images is None else post_images),
        )

        self._in_flight = True
        self._ending = True
        try:
            accepted = await self._therapy.end(self.appointment_id, submission)
        finally:
            self._in_flight = False
            self._ending = False

        if not accepted and self._compute_elapsed() >= self.max_session_seconds:
            logger.warning(f"Therapy end rejected for appointment {self.appointment_id} after the time limit")
            await self._expire()
            return TransitionResult(
                success=False,
                phase=self._phase,
                message="Session time limit was reached before it could be ended.",
                error_code="SESSION_EXPIRED",
            )

        if not accepted:
            logger.warning(f"Therapy end rejected for appointment {self.appointment_id}")
            return TransitionResult(
                success=False,
                phase=self._phase,
                message="Failed to end therapy session.",
                error_code="END_FAILED",
                retryable=True,
            )

        completed_phase = next_phase(self._phase, SessionEvent.END)
        self._stop_ticking()
        await self._store.delete(self.appointment_id)
        self._state = self._state.model_copy(
            update={
                "post_remarks": submission.remarks,
                "post_images": submission.images,
                "is_completed": True,
            }
        )
        self._phase = completed_phase
        self._notify()

        logger.info(
            f"Therapy session completed for appointment {self.appointment_id} "
            f"after {format_elapsed(self._state.elapsed_seconds)}"
        )
        return TransitionResult(
            success=True,
            phase=self._phase,
            message="Therapy session completed.",
            payment=PaymentTarget(
                plan_id=self.appointment.plan_id, patient_id=self.appointment.patient_id
            ),
        )

    async def cancel(self) -> TransitionResult:
        """Abandon a session that has not started. The backend is not contacted."""
        cancelled_phase = next_phase(self._phase, SessionEvent.CANCEL)
        if self._in_flight:
            return self._rejected_in_flight()

        await self._store.delete(self.appointment_id)
        self._state = SessionState()
        self._phase = cancelled_phase
        self._notify()

        logger.info(f"Therapy session cancelled for appointment {self.appointment_id}")
        return TransitionResult(success=True, phase=self._phase, message="Session cancelled.")

    def close(self) -> None:
        """
        Tear down timers when the view goes away.

        A running session is left in the store and resumes on the next load.
        """
        self._closed = True
        self._stop_ticking()

    # ==================== Draft editing ====================

    async def update_pre_remarks(self, remarks: str) -> None:
        self._require(SessionPhase.NOT_STARTED, "update_pre_remarks")
        self._state = self._state.model_copy(update={"pre_remarks": remarks or ""})
        self._notify()

    async def add_pre_image(self, image: ImageRef) -> None:
        self._require(SessionPhase.NOT_STARTED, "add_pre_image")
        self._state = self._state.model_copy(update={"pre_images": [*self._state.pre_images, image]})
        self._notify()

    async def remove_pre_image(self, uri: str) -> None:
        self._require(SessionPhase.NOT_STARTED, "remove_pre_image")
        images = [image for image in self._state.pre_images if image.uri != uri]
        self._state = self._state.model_copy(update={"pre_images": images})
        self._notify()

    async def update_post_remarks(self, remarks: str) -> None:
        self._require(SessionPhase.IN_PROGRESS, "update_post_remarks")
        await self._commit(self._state.model_copy(update={"post_remarks": remarks or ""}))

    async def add_post_image(self, image: ImageRef) -> None:
        self._require(SessionPhase.IN_PROGRESS, "add_post_image")
        await self._commit(
            self._state.model_copy(update={"post_images": [*self._state.post_images, image]})
        )

    async def remove_post_image(self, uri: str) -> None:
        self._require(SessionPhase.IN_PROGRESS, "remove_post_image")
        images = [image for image in self._state.post_images if image.uri != uri]
        await self._commit(self._state.model_copy(update={"post_images": images}))

    # ==================== Internals ====================

    def _require(self, phase: SessionPhase, action: str) -> None:
        if self._phase is not phase:
            raise InvalidTransitionError(self._phase, action)

    async def _commit(self, state: SessionState) -> None:
        await self._store.save(self.appointment_id, state)
        self._state = state
        self._notify()

    def _compute_elapsed(self) -> int:
        elapsed = int((self._clock.now() - self._state.start_time).total_seconds())
        return max(elapsed, 0)

    async def _expire(self) -> None:
        expired_phase = next_phase(self._phase, SessionEvent.EXPIRE)
        self._stop_ticking()
        await self._store.delete(self.appointment_id)
        self._phase = expired_phase
        self._notify()

        logger.warning(
            f"Therapy session for appointment {self.appointment_id} expired after "
            f"{format_elapsed(self.max_session_seconds)}"
        )
        if self._on_expired is not None:
            self._on_expired()

    def _start_ticking(self) -> None:
        if self._timer is None and not self._closed:
            self._timer = self._scheduler.call_every(self.tick_interval_seconds, self._on_timer)

    def _stop_ticking(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _on_timer(self) -> None:
        if self._phase is SessionPhase.IN_PROGRESS:
            await self.tick()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self._phase, self.state)

    def _rejected_in_flight(self) -> TransitionResult:
        return TransitionResult(
            success=False,
            phase=self._phase,
            message="Another session action is still in progress.",
            error_code="IN_FLIGHT",
        )
