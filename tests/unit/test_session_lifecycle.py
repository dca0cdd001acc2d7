"""
Unit tests for the therapy session state machine.

The lifecycle runs on a virtual clock and scheduler so elapsed time and
expiry can be fast-forwarded.
"""

import asyncio
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from healtrack.models.appointment import Appointment
from healtrack.models.session import ImageRef, SessionPhase, SessionState, TherapySubmission
from healtrack.scheduling import VirtualClock, VirtualScheduler
from healtrack.services.session_lifecycle import (
    InvalidTransitionError,
    SessionEvent,
    SessionLifecycle,
    format_elapsed,
    next_phase,
)
from healtrack.services.session_store import InMemorySessionStateStore

START = datetime(2026, 10, 19, 4, 30, tzinfo=timezone.utc)
MAX_SECONDS = 3 * 60 * 60

APPOINTMENT = Appointment(
    id="appt-42",
    plan_id="plan-7",
    patient_id="pat-3",
    therapy_type="Physiotherapy",
    date=date(2026, 10, 19),
    start_time=time(10, 0),
)


class FakeTherapyService:
    """Records submissions and answers with configurable outcomes."""

    def __init__(self, start_ok: bool = True, end_ok: bool = True):
        self.start_ok = start_ok
        self.end_ok = end_ok
        self.started: List[Tuple[str, TherapySubmission]] = []
        self.ended: List[Tuple[str, TherapySubmission]] = []
        self.gate: Optional[asyncio.Event] = None

    async def start(self, appointment_id: str, submission: TherapySubmission) -> bool:
        self.started.append((appointment_id, submission))
        if self.gate is not None:
            await self.gate.wait()
        return self.start_ok

    async def end(self, appointment_id: str, submission: TherapySubmission) -> bool:
        self.ended.append((appointment_id, submission))
        if self.gate is not None:
            await self.gate.wait()
        return self.end_ok


@pytest.fixture
def clock():
    return VirtualClock(START)


@pytest.fixture
def scheduler(clock):
    return VirtualScheduler(clock)


@pytest.fixture
def store():
    return InMemorySessionStateStore()


@pytest.fixture
def therapy():
    return FakeTherapyService()


@pytest.fixture
def events():
    """Collected (phase, state) change notifications and expiry notices."""
    return {"changes": [], "expired": 0}


@pytest.fixture
def make_lifecycle(therapy, store, clock, scheduler, events):
    def factory(**overrides) -> SessionLifecycle:
        def on_change(phase, state):
            events["changes"].append((phase, state))

        def on_expired():
            events["expired"] += 1

        options = dict(
            appointment=APPOINTMENT,
            therapy_service=therapy,
            store=store,
            clock=clock,
            scheduler=scheduler,
            max_session_seconds=MAX_SECONDS,
            tick_interval_seconds=1.0,
            on_change=on_change,
            on_expired=on_expired,
        )
        options.update(overrides)
        return SessionLifecycle(**options)

    return factory


async def running_lifecycle(make_lifecycle) -> SessionLifecycle:
    lifecycle = make_lifecycle()
    await lifecycle.load()
    result = await lifecycle.start("Shoulder pain")
    assert result.success
    return lifecycle


class TestTransitionTable:
    """Test the single transition function."""

    @pytest.mark.parametrize("phase,event,expected", [
        (SessionPhase.NOT_STARTED, SessionEvent.START, SessionPhase.IN_PROGRESS),
        (SessionPhase.NOT_STARTED, SessionEvent.CANCEL, SessionPhase.CANCELLED),
        (SessionPhase.IN_PROGRESS, SessionEvent.TICK, SessionPhase.IN_PROGRESS),
        (SessionPhase.IN_PROGRESS, SessionEvent.END, SessionPhase.COMPLETED),
        (SessionPhase.IN_PROGRESS, SessionEvent.EXPIRE, SessionPhase.EXPIRED),
    ])
    def test_allowed(self, phase, event, expected):
        assert next_phase(phase, event) is expected

    @pytest.mark.parametrize("phase,event", [
        (SessionPhase.NOT_STARTED, SessionEvent.END),
        (SessionPhase.NOT_STARTED, SessionEvent.TICK),
        (SessionPhase.IN_PROGRESS, SessionEvent.START),
        (SessionPhase.IN_PROGRESS, SessionEvent.CANCEL),
        (SessionPhase.EXPIRED, SessionEvent.START),
        (SessionPhase.EXPIRED, SessionEvent.END),
        (SessionPhase.COMPLETED, SessionEvent.TICK),
        (SessionPhase.CANCELLED, SessionEvent.START),
    ])
    def test_rejected(self, phase, event):
        with pytest.raises(InvalidTransitionError):
            next_phase(phase, event)

    def test_format_elapsed(self):
        assert format_elapsed(0) == "00:00:00"
        assert format_elapsed(3725) == "01:02:05"
        assert format_elapsed(MAX_SECONDS) == "03:00:00"


class TestStart:
    """Test starting a session."""

    @pytest.mark.asyncio
    async def test_start_success(self, make_lifecycle, therapy, store, scheduler):
        lifecycle = make_lifecycle()
        image = ImageRef(uri="file:///pre.jpg")

        result = await lifecycle.start("Shoulder pain", [image])

        assert result.success is True
        assert lifecycle.phase is SessionPhase.IN_PROGRESS
        assert therapy.started == [
            ("appt-42", TherapySubmission(remarks="Shoulder pain", images=[image]))
        ]

        stored = await store.load("appt-42")
        assert stored.is_started is True
        assert stored.start_time == START
        assert stored.pre_remarks == "Shoulder pain"
        assert stored.pre_images == [image]
        assert lifecycle.is_ticking
        assert scheduler.active_timers == 1

    @pytest.mark.asyncio
    async def test_start_failure_persists_nothing(self, make_lifecycle, therapy, store, scheduler):
        therapy.start_ok = False
        lifecycle = make_lifecycle()

        result = await lifecycle.start("Shoulder pain")

        assert result.success is False
        assert result.retryable is True
        assert result.error_code == "START_FAILED"
        assert lifecycle.phase is SessionPhase.NOT_STARTED
        assert store.records == {}
        assert scheduler.active_timers == 0

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, make_lifecycle, therapy):
        therapy.start_ok = False
        lifecycle = make_lifecycle()
        await lifecycle.start("Shoulder pain")

        therapy.start_ok = True
        result = await lifecycle.start("Shoulder pain")

        assert result.success is True
        assert len(therapy.started) == 2

    @pytest.mark.asyncio
    async def test_start_uses_drafts(self, make_lifecycle, therapy, store):
        """Remarks and images edited before starting are submitted by default."""
        lifecycle = make_lifecycle()
        await lifecycle.update_pre_remarks("Neck stiffness")
        await lifecycle.add_pre_image(ImageRef(uri="file:///a.jpg"))
        await lifecycle.add_pre_image(ImageRef(uri="file:///b.jpg"))
        await lifecycle.remove_pre_image("file:///a.jpg")

        # Drafts are not persisted before the session starts
        assert store.records == {}

        await lifecycle.start()

        submission = therapy.started[0][1]
        assert submission.remarks == "Neck stiffness"
        assert [image.uri for image in submission.images] == ["file:///b.jpg"]

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, make_lifecycle):
        lifecycle = await running_lifecycle(make_lifecycle)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.start("again")

    @pytest.mark.asyncio
    async def test_concurrent_start_rejected(self, make_lifecycle, therapy):
        """A second start while the first is awaiting the backend is rejected."""
        therapy.gate = asyncio.Event()
        lifecycle = make_lifecycle()

        first = asyncio.create_task(lifecycle.start("first"))
        await asyncio.sleep(0)
        assert lifecycle.in_flight

        second = await lifecycle.start("second")
        assert second.success is False
        assert second.error_code == "IN_FLIGHT"

        therapy.gate.set()
        assert (await first).success is True
        assert len(therapy.started) == 1


class TestTicking:
    """Test elapsed time tracking."""

    @pytest.mark.asyncio
    async def test_elapsed_follows_wall_clock(self, make_lifecycle, scheduler, store):
        lifecycle = await running_lifecycle(make_lifecycle)

        await scheduler.advance(5)

        assert lifecycle.elapsed_seconds == 5
        assert lifecycle.elapsed_label == "00:00:05"
        assert (await store.load("appt-42")).elapsed_seconds == 5

    @pytest.mark.asyncio
    async def test_elapsed_is_difference_not_counter(self, make_lifecycle, clock):
        """A suspended app catches up on the next tick instead of drifting."""
        lifecycle = await running_lifecycle(make_lifecycle)

        clock.advance(600)
        await lifecycle.tick()

        assert lifecycle.elapsed_seconds == 600

    @pytest.mark.asyncio
    async def test_elapsed_never_decreases(self, make_lifecycle, scheduler, events):
        lifecycle = await running_lifecycle(make_lifecycle)
        await scheduler.advance(30)

        elapsed = [state.elapsed_seconds for phase, state in events["changes"]
                   if phase is SessionPhase.IN_PROGRESS]
        assert elapsed == sorted(elapsed)
        assert elapsed[-1] == 30
        assert lifecycle.elapsed_seconds == 30

    @pytest.mark.asyncio
    async def test_elapsed_recomputed_after_clock_change(self, make_lifecycle, clock):
        """Elapsed time is always the wall-clock difference, never a stored high-water mark."""
        lifecycle = await running_lifecycle(make_lifecycle)
        clock.advance(100)
        await lifecycle.tick()

        clock.set(START + timedelta(seconds=40))
        await lifecycle.tick()

        assert lifecycle.elapsed_seconds == 40

    @pytest.mark.asyncio
    async def test_clock_before_start_clamps_to_zero(self, make_lifecycle, clock):
        lifecycle = await running_lifecycle(make_lifecycle)

        clock.set(START - timedelta(seconds=30))
        await lifecycle.tick()

        assert lifecycle.elapsed_seconds == 0

    @pytest.mark.asyncio
    async def test_tick_before_start_rejected(self, make_lifecycle):
        with pytest.raises(InvalidTransitionError):
            await make_lifecycle().tick()


class TestExpiry:
    """Test the maximum session length."""

    @pytest.mark.asyncio
    async def test_one_second_before_limit_stays_running(self, make_lifecycle, clock):
        lifecycle = await running_lifecycle(make_lifecycle)

        clock.set(START + timedelta(seconds=MAX_SECONDS - 1))
        await lifecycle.tick()

        assert lifecycle.phase is SessionPhase.IN_PROGRESS
        assert lifecycle.elapsed_seconds == MAX_SECONDS - 1

    @pytest.mark.asyncio
    async def test_limit_expires_and_clears_state(self, make_lifecycle, clock, store, scheduler, events):
        lifecycle = await running_lifecycle(make_lifecycle)

        clock.set(START + timedelta(seconds=MAX_SECONDS))
        await lifecycle.tick()

        assert lifecycle.phase is SessionPhase.EXPIRED
        assert store.records == {}
        assert not lifecycle.is_ticking
        assert scheduler.active_timers == 0
        assert events["expired"] == 1

    @pytest.mark.asyncio
    async def test_timer_drives_expiry(self, make_lifecycle, scheduler, store, events):
        lifecycle = make_lifecycle(max_session_seconds=5)
        await lifecycle.start("short")

        await scheduler.advance(20)

        assert lifecycle.phase is SessionPhase.EXPIRED
        assert lifecycle.elapsed_seconds == 4
        assert store.records == {}
        assert events["expired"] == 1

    @pytest.mark.asyncio
    async def test_no_transitions_after_expiry(self, make_lifecycle, clock):
        lifecycle = await running_lifecycle(make_lifecycle)
        clock.set(START + timedelta(seconds=MAX_SECONDS + 30))
        await lifecycle.tick()

        for action in (lifecycle.tick(), lifecycle.end("x"), lifecycle.cancel(), lifecycle.start("x")):
            with pytest.raises(InvalidTransitionError):
                await action


class TestEnd:
    """Test ending a session."""

    @pytest.mark.asyncio
    async def test_end_success(self, make_lifecycle, therapy, store, scheduler):
        lifecycle = await running_lifecycle(make_lifecycle)
        await scheduler.advance(90)

        result = await lifecycle.end("Range of motion improved")

        assert result.success is True
        assert lifecycle.phase is SessionPhase.COMPLETED
        assert result.payment.plan_id == "plan-7"
        assert result.payment.patient_id == "pat-3"
        assert therapy.ended[0][1].remarks == "Range of motion improved"
        assert store.records == {}
        assert scheduler.active_timers == 0
        assert lifecycle.state.is_completed is True

    @pytest.mark.asyncio
    async def test_end_failure_keeps_running(self, make_lifecycle, therapy, store, scheduler):
        therapy.end_ok = False
        lifecycle = await running_lifecycle(make_lifecycle)
        await scheduler.advance(10)
        before = await store.load("appt-42")

        result = await lifecycle.end("notes")

        assert result.success is False
        assert result.error_code == "END_FAILED"
        assert result.retryable is True
        assert result.payment is None
        assert lifecycle.phase is SessionPhase.IN_PROGRESS
        assert await store.load("appt-42") == before

        await scheduler.advance(1)
        assert lifecycle.elapsed_seconds == 11

    @pytest.mark.asyncio
    async def test_end_uses_persisted_post_drafts(self, make_lifecycle, therapy, store):
        lifecycle = await running_lifecycle(make_lifecycle)
        await lifecycle.update_post_remarks("Tolerated well")
        await lifecycle.add_post_image(ImageRef(uri="file:///post.jpg"))

        stored = await store.load("appt-42")
        assert stored.post_remarks == "Tolerated well"
        assert [image.uri for image in stored.post_images] == ["file:///post.jpg"]

        await lifecycle.end()
        submission = therapy.ended[0][1]
        assert submission.remarks == "Tolerated well"
        assert len(submission.images) == 1

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, make_lifecycle, therapy):
        with pytest.raises(InvalidTransitionError):
            await make_lifecycle().end("notes")
        assert therapy.ended == []

    @pytest.mark.asyncio
    async def test_post_remarks_before_start_rejected(self, make_lifecycle):
        with pytest.raises(InvalidTransitionError):
            await make_lifecycle().update_post_remarks("too early")

    @pytest.mark.asyncio
    async def test_accepted_end_wins_over_limit_passing_meanwhile(
        self, make_lifecycle, therapy, scheduler, store, events
    ):
        """Once the backend accepts the end, the session completes even if the limit passed while waiting."""
        lifecycle = make_lifecycle(max_session_seconds=5)
        await lifecycle.start("short")
        therapy.gate = asyncio.Event()

        pending = asyncio.create_task(lifecycle.end("late"))
        await asyncio.sleep(0)
        await scheduler.advance(10)
        assert lifecycle.phase is SessionPhase.IN_PROGRESS

        therapy.gate.set()
        result = await pending

        assert result.success is True
        assert result.payment.plan_id == "plan-7"
        assert lifecycle.phase is SessionPhase.COMPLETED
        assert len(therapy.ended) == 1
        assert events["expired"] == 0
        assert store.records == {}
        assert scheduler.active_timers == 0

    @pytest.mark.asyncio
    async def test_rejected_end_after_limit_expires(
        self, make_lifecycle, therapy, scheduler, store, events
    ):
        """A rejected end whose wait outlasted the limit leaves the session expired."""
        therapy.end_ok = False
        lifecycle = make_lifecycle(max_session_seconds=5)
        await lifecycle.start("short")
        therapy.gate = asyncio.Event()

        pending = asyncio.create_task(lifecycle.end("late"))
        await asyncio.sleep(0)
        await scheduler.advance(10)
        therapy.gate.set()
        result = await pending

        assert result.success is False
        assert result.error_code == "SESSION_EXPIRED"
        assert result.payment is None
        assert lifecycle.phase is SessionPhase.EXPIRED
        assert events["expired"] == 1
        assert store.records == {}
        assert scheduler.active_timers == 0


class TestCancel:
    """Test abandoning a session before it starts."""

    @pytest.mark.asyncio
    async def test_cancel(self, make_lifecycle, therapy, store):
        lifecycle = make_lifecycle()
        await lifecycle.update_pre_remarks("draft")

        result = await lifecycle.cancel()

        assert result.success is True
        assert lifecycle.phase is SessionPhase.CANCELLED
        assert lifecycle.state.pre_remarks == ""
        assert therapy.started == []
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_cancel_while_running_rejected(self, make_lifecycle):
        lifecycle = await running_lifecycle(make_lifecycle)
        with pytest.raises(InvalidTransitionError):
            await lifecycle.cancel()


class TestResumption:
    """Test crash-safe resumption from the store."""

    @pytest.mark.asyncio
    async def test_resume_two_hours_in(self, make_lifecycle, store, clock, scheduler):
        await store.save(
            "appt-42",
            SessionState(
                is_started=True,
                start_time=START - timedelta(hours=2),
                elapsed_seconds=300,
                pre_remarks="Before restart",
            ),
        )

        lifecycle = make_lifecycle()
        phase = await lifecycle.load()

        assert phase is SessionPhase.IN_PROGRESS
        assert lifecycle.elapsed_seconds == 7200
        assert lifecycle.state.pre_remarks == "Before restart"
        assert lifecycle.is_ticking

        await scheduler.advance(3)
        assert lifecycle.elapsed_seconds == 7203

    @pytest.mark.asyncio
    async def test_resume_past_limit_expires(self, make_lifecycle, store, events):
        await store.save(
            "appt-42",
            SessionState(is_started=True, start_time=START - timedelta(hours=4)),
        )

        lifecycle = make_lifecycle()
        phase = await lifecycle.load()

        assert phase is SessionPhase.EXPIRED
        assert store.records == {}
        assert events["expired"] == 1
        assert not lifecycle.is_ticking

    @pytest.mark.asyncio
    async def test_stored_elapsed_ahead_of_clock_is_recomputed(self, make_lifecycle, store):
        await store.save(
            "appt-42",
            SessionState(
                is_started=True,
                start_time=START - timedelta(minutes=5),
                elapsed_seconds=9000,
            ),
        )

        lifecycle = make_lifecycle()
        await lifecycle.load()

        assert lifecycle.phase is SessionPhase.IN_PROGRESS
        assert lifecycle.elapsed_seconds == 300
        assert (await store.load("appt-42")).elapsed_seconds == 300

    @pytest.mark.asyncio
    async def test_stale_record_removed(self, make_lifecycle, store):
        await store.save("appt-42", SessionState(is_started=False, pre_remarks="orphan"))

        lifecycle = make_lifecycle()
        assert await lifecycle.load() is SessionPhase.NOT_STARTED
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_naive_start_time_treated_as_utc(self, make_lifecycle, store):
        await store.save(
            "appt-42",
            SessionState(is_started=True, start_time=(START - timedelta(minutes=10)).replace(tzinfo=None)),
        )

        lifecycle = make_lifecycle()
        await lifecycle.load()
        assert lifecycle.elapsed_seconds == 600

    @pytest.mark.asyncio
    async def test_close_keeps_session_for_next_mount(self, make_lifecycle, store, scheduler):
        """Leaving the screen stops timers but the session resumes on the next load."""
        lifecycle = await running_lifecycle(make_lifecycle)
        await scheduler.advance(42)

        lifecycle.close()
        assert scheduler.active_timers == 0
        assert (await store.load("appt-42")).is_started

        await scheduler.advance(18)
        remounted = make_lifecycle()
        await remounted.load()

        assert remounted.phase is SessionPhase.IN_PROGRESS
        assert remounted.elapsed_seconds == 60
        assert scheduler.active_timers == 1

    @pytest.mark.asyncio
    async def test_no_record_stays_not_started(self, make_lifecycle):
        lifecycle = make_lifecycle()
        assert await lifecycle.load() is SessionPhase.NOT_STARTED
        assert not lifecycle.is_ticking
