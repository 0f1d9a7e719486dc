import asyncio
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from outreach import metrics
from outreach.config import (
    STATE_BACKOFF_BASE_S,
    STATE_HISTORY_LIMIT,
    STATE_MAX_ATTEMPTS,
    STATE_TIMEOUT_S,
    VOICE_AGENT_SERVICE,
)
from outreach.errors import (
    CircuitOpenError,
    ErrorCode,
    RateLimitedError,
    StateTimeoutError,
    category_for,
    error_code_for,
)
from outreach.logging_config import get_logger, mask_phone
from outreach.models.enums import CallOutcome, CallState
from outreach.schemas.voice import AppointmentResult, ConversationResult
from outreach.services.backoff import NO_RETRY
from outreach.services.circuit_breaker import CircuitBreaker
from outreach.services.rate_limiter import RateLimiter
from outreach.services.voice_agent_client import VoiceAgent

logger = get_logger(__name__)

TRANSITIONS = {
    CallState.INITIALIZING: frozenset({CallState.DIALING, CallState.FAILED}),
    CallState.DIALING: frozenset(
        {CallState.NAVIGATING_MENU, CallState.SPEAKING, CallState.LEAVING_VOICEMAIL, CallState.FAILED}
    ),
    CallState.NAVIGATING_MENU: frozenset({CallState.SPEAKING, CallState.FAILED}),
    CallState.SPEAKING: frozenset({CallState.SCHEDULING, CallState.CLOSING, CallState.FAILED}),
    CallState.SCHEDULING: frozenset({CallState.CLOSING, CallState.FAILED}),
    CallState.LEAVING_VOICEMAIL: frozenset({CallState.ENDED, CallState.FAILED}),
    CallState.CLOSING: frozenset({CallState.ENDED, CallState.FAILED}),
    CallState.ENDED: frozenset(),
    CallState.FAILED: frozenset(),
}


def is_valid_transition(from_state: CallState, to_state: CallState) -> bool:
    return to_state in TRANSITIONS.get(from_state, ())


@dataclass(frozen=True)
class CallContext:
    phone_number: str
    contact: Dict[str, Any]
    started_at: float
    last_transition_at: float
    retry_count: int = 0
    outcome: Optional[CallOutcome] = None
    last_error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    conversation: Optional[ConversationResult] = None
    appointment: Optional[AppointmentResult] = None
    voicemail: bool = False
    no_answer: bool = False
    connected: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransitionRecord:
    from_state: CallState
    to_state: CallState
    timestamp: float
    duration: float

    def as_dict(self) -> dict:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "timestamp": self.timestamp,
            "duration": round(self.duration, 3),
        }


def resolve_outcome(state: CallState, context: CallContext) -> CallOutcome:
    if state == CallState.ENDED:
        if context.voicemail:
            return CallOutcome.VOICEMAIL
        if context.appointment is not None and context.appointment.success:
            return CallOutcome.MEETING_SCHEDULED
        return CallOutcome.DECLINED
    if context.no_answer:
        return CallOutcome.NO_ANSWER
    return CallOutcome.FAILED


class CallStateMachine:
    """
    Drives one call from INITIALIZING to ENDED or FAILED.

    Each state body runs under ``state_timeout_s`` and is retried in place up
    to ``max_attempts`` invocations with ``base * 2**(attempt - 1)`` backoff.
    Voice agent calls go through the rate limiter and the ``voice-agent``
    circuit with no breaker-level retries, so this per-state budget is the
    only one. A machine is single use: build a new one per call.
    """

    def __init__(
        self,
        voice_agent: VoiceAgent,
        breakers: CircuitBreaker,
        limiter: Optional[RateLimiter],
        phone_number: str,
        contact: Optional[Dict[str, Any]] = None,
        *,
        state_timeout_s: float = STATE_TIMEOUT_S,
        max_attempts: int = STATE_MAX_ATTEMPTS,
        backoff_base_s: float = STATE_BACKOFF_BASE_S,
        history_limit: int = STATE_HISTORY_LIMIT,
        on_transition: Optional[Callable[[TransitionRecord], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.voice_agent = voice_agent
        self.breakers = breakers
        self.limiter = limiter
        self.state_timeout_s = state_timeout_s
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self._on_transition = on_transition
        self._sleep = sleep
        self._clock = clock

        now = clock()
        self._state = CallState.INITIALIZING
        self._context = CallContext(
            phone_number=phone_number,
            contact=dict(contact or {}),
            started_at=now,
            last_transition_at=now,
        )
        self._history = deque(maxlen=history_limit)
        self._started = False

        self._bodies = {
            CallState.INITIALIZING: self._initializing,
            CallState.DIALING: self._dialing,
            CallState.NAVIGATING_MENU: self._navigating_menu,
            CallState.SPEAKING: self._speaking,
            CallState.SCHEDULING: self._scheduling,
            CallState.LEAVING_VOICEMAIL: self._leaving_voicemail,
            CallState.CLOSING: self._closing,
        }
        self.log = logger.bind(phone=mask_phone(phone_number))

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def context(self) -> CallContext:
        return self._context

    @property
    def outcome(self) -> Optional[CallOutcome]:
        return self._context.outcome

    @property
    def history(self) -> List[TransitionRecord]:
        return list(self._history)

    async def start(self) -> CallOutcome:
        if self._started:
            raise RuntimeError("CallStateMachine instances are single use")
        self._started = True
        self.log.info("Starting call state machine", state=self._state.value)

        while not self._state.is_terminal:
            next_state = await self._execute_state(self._state)
            self._transition(next_state)

        if self._state == CallState.FAILED and self._context.connected:
            await self._hang_up()

        self.log.info(
            "Call state machine finished",
            state=self._state.value,
            outcome=self._context.outcome.value,
            transitions=len(self._history),
        )
        return self._context.outcome

    async def _execute_state(self, state: CallState) -> CallState:
        body = self._bodies[state]
        attempt = 0
        while True:
            attempt += 1
            started = self._clock()
            try:
                return await asyncio.wait_for(body(), timeout=self.state_timeout_s)
            except asyncio.TimeoutError:
                error = StateTimeoutError(f"State {state.value} timed out after {self.state_timeout_s}s")
                # the cancelled breaker call recorded nothing; a hung agent still counts against its circuit
                if self.breakers.is_registered(VOICE_AGENT_SERVICE):
                    self.breakers.record_failure(VOICE_AGENT_SERVICE, error)
            except Exception as exc:
                error = exc

            self._context = replace(
                self._context,
                retry_count=self._context.retry_count + 1,
                last_error=str(error) or error.__class__.__name__,
                error_code=error_code_for(error),
            )
            self.log.error(
                "State execution failed",
                state=state.value,
                attempt=attempt,
                max_attempts=self.max_attempts,
                duration_s=round(self._clock() - started, 3),
                error_code=self._context.error_code.value,
                error=self._context.last_error,
            )

            if attempt >= self.max_attempts or not self._should_retry(error):
                return CallState.FAILED

            delay = self.backoff_base_s * 2 ** (attempt - 1)
            if isinstance(error, RateLimitedError):
                delay = max(delay, error.retry_after)
            self.log.info("Retrying state", state=state.value, attempt=attempt + 1, delay_s=delay)
            await self._sleep(delay)

    @staticmethod
    def _should_retry(error: BaseException) -> bool:
        if isinstance(error, CircuitOpenError):
            return False
        return category_for(error_code_for(error)).retryable

    def _transition(self, next_state: CallState) -> None:
        from_state = self._state
        if not is_valid_transition(from_state, next_state):
            self.log.error("Invalid state transition", from_state=from_state.value, to_state=next_state.value)
            self._context = replace(
                self._context,
                last_error=f"Invalid state transition from {from_state.value} to {next_state.value}",
                error_code=ErrorCode.INVALID_TRANSITION,
            )
            next_state = CallState.FAILED

        now = self._clock()
        record = TransitionRecord(
            from_state=from_state,
            to_state=next_state,
            timestamp=now,
            duration=now - self._context.last_transition_at,
        )
        self._history.append(record)
        self._state = next_state
        self._context = replace(self._context, last_transition_at=now)
        if next_state.is_terminal and self._context.outcome is None:
            self._context = replace(self._context, outcome=resolve_outcome(next_state, self._context))

        metrics.call_state_transitions_total.labels(from_state.value, next_state.value).inc()
        self.log.info(
            "State transition",
            from_state=from_state.value,
            to_state=next_state.value,
            duration_s=round(record.duration, 3),
        )
        if self._on_transition is not None:
            self._on_transition(record)

    async def _voice(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        # an open circuit is reported as CircuitOpenError, not as a rate limit
        if self.limiter is not None and not self.breakers.is_open(VOICE_AGENT_SERVICE):
            self.limiter.acquire(VOICE_AGENT_SERVICE)
        return await self.breakers.execute(VOICE_AGENT_SERVICE, operation, retry_policy=NO_RETRY)

    async def _hang_up(self) -> None:
        """Best-effort end_call for a connected call that failed mid-way."""
        try:
            await asyncio.wait_for(
                self.breakers.execute(VOICE_AGENT_SERVICE, self.voice_agent.end_call, retry_policy=NO_RETRY),
                timeout=self.state_timeout_s,
            )
        except Exception as exc:
            self.log.warning("Hang-up after failure did not complete", error=str(exc) or exc.__class__.__name__)

    def _update(self, **changes) -> None:
        self._context = replace(self._context, **changes)

    async def _initializing(self) -> CallState:
        ctx = self._context
        connected = await self._voice(lambda: self.voice_agent.start_call(ctx.phone_number, ctx.contact))
        if not connected:
            self._update(no_answer=True, last_error="Call was not answered")
            return CallState.FAILED
        self._update(connected=True)
        return CallState.DIALING

    async def _dialing(self) -> CallState:
        # voicemail detection is optional; agents without it never take that branch
        detect_voicemail = getattr(self.voice_agent, "detect_voicemail", None)
        if detect_voicemail is not None and await self._voice(detect_voicemail) is True:
            return CallState.LEAVING_VOICEMAIL
        menu_detected = await self._voice(self.voice_agent.handle_phone_tree)
        return CallState.NAVIGATING_MENU if menu_detected else CallState.SPEAKING

    async def _navigating_menu(self) -> CallState:
        navigated = await self._voice(self.voice_agent.handle_phone_tree)
        if not navigated:
            self._update(last_error="Phone tree navigation failed", error_code=ErrorCode.PHONE_TREE_NAV)
            return CallState.FAILED
        return CallState.SPEAKING

    async def _speaking(self) -> CallState:
        conversation = await self._voice(self.voice_agent.conduct_conversation)
        self._update(conversation=conversation)
        return CallState.SCHEDULING if conversation.schedule_requested else CallState.CLOSING

    async def _scheduling(self) -> CallState:
        details = dict(self._context.conversation.appointment_details) if self._context.conversation else {}
        details.setdefault("contact", self._context.contact)
        appointment = await self._voice(lambda: self.voice_agent.schedule_appointment(details))
        self._update(appointment=appointment)
        return CallState.CLOSING

    async def _leaving_voicemail(self) -> CallState:
        await self._voice(self.voice_agent.end_call)
        self._update(voicemail=True)
        return CallState.ENDED

    async def _closing(self) -> CallState:
        await self._voice(self.voice_agent.end_call)
        return CallState.ENDED
