"""
Local arbitration state machine.

Each peer keeps a read-only mirror of its session's arbitration state
(controller identity, pending queue, epoch) and one ``LocalRequestState``
for its own request. Broadcasts replace the mirror; acknowledgements and
broadcasts together drive the request state:

    Idle      --request-->             Pending
    Pending   --ack ok-->               Sent
    Pending   --ack failed-->           Error      (expires to Idle)
    Sent      --became controller-->    Result{approved}
    Sent      --denied-->               Result{denied}
    Pending   --cancel ack ok-->        Cancelled  (expires to Idle)
    Sent      --cancel ack ok-->        Cancelled  (expires to Idle)
    any       --controller role flip--> Idle

Denial is taken from an explicit ``controller_request_denied`` broadcast
when one arrives. Otherwise it is derived: not controller, absent from a
queue update newer than the one the request was accepted at, and no
cancel in flight.
"""

from collections.abc import Callable
from typing import Any

import structlog

from conductor.arbitration.models import (
    Acknowledgement,
    ControllerClientChange,
    ControllerRequest,
    ControllerRequestDenied,
    ControllerRequestsUpdate,
    SessionArbitrationState,
    parse_broadcast,
)
from conductor.core.clock import TimerHandle, TimerScheduler
from conductor.core.config import DEFAULT_CONFIG, ArbitrationConfig
from conductor.core.errors import StaleOrdering
from conductor.peer.state import (
    IDLE,
    AnyRequestState,
    Cancelled,
    Error,
    Idle,
    Pending,
    Result,
    ResultKind,
    Sent,
    is_expiring,
)

logger = structlog.get_logger()

StateListener = Callable[[AnyRequestState, AnyRequestState], None]
ControllerListener = Callable[[str | None, str | None], None]


class LocalArbitrationStateMachine:
    """
    One peer's view of controller arbitration.

    Not thread-safe; it is driven from a single event loop.
    """

    def __init__(
        self,
        client_id: str,
        timers: TimerScheduler,
        config: ArbitrationConfig = DEFAULT_CONFIG,
        mirror: SessionArbitrationState | None = None,
    ) -> None:
        self._client_id = client_id
        self._timers = timers
        self._config = config
        self._mirror = mirror
        self._state: AnyRequestState = IDLE
        self._expiry: TimerHandle | None = None
        self._state_listeners: list[StateListener] = []
        self._controller_listeners: list[ControllerListener] = []
        self._stale_dropped = 0
        self._log = logger.bind(component="state_machine", client_id=client_id)

    # --- Queries ---

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def mirror(self) -> SessionArbitrationState | None:
        return self._mirror

    @property
    def epoch(self) -> int:
        return self._mirror.epoch if self._mirror else 0

    @property
    def controller_client_id(self) -> str | None:
        return self._mirror.controller_client_id if self._mirror else None

    @property
    def pending_requests(self) -> tuple[ControllerRequest, ...]:
        return self._mirror.pending_requests if self._mirror else ()

    @property
    def stale_dropped(self) -> int:
        return self._stale_dropped

    def is_controller(self, client_id: str | None = None) -> bool:
        """Whether ``client_id`` (default: this peer) holds the role in the mirror."""
        if self._mirror is None:
            return False
        return self._mirror.is_controller(client_id or self._client_id)

    def has_pending_request(self, client_id: str | None = None) -> bool:
        if self._mirror is None:
            return False
        return self._mirror.has_pending(client_id or self._client_id)

    def current_state(self) -> AnyRequestState:
        return self._state

    # --- Observers ---

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener(old, new)`` after every request state change."""
        self._state_listeners.append(listener)

    def add_controller_listener(self, listener: ControllerListener) -> None:
        """Call ``listener(previous, current)`` whenever the mirrored controller changes."""
        self._controller_listeners.append(listener)

    # --- Mirror seeding ---

    def seed(self, snapshot: SessionArbitrationState) -> None:
        """Install a full snapshot, e.g. the one returned when joining."""
        if self._mirror is not None and snapshot.session_id != self._mirror.session_id:
            self._mirror = None
        if self._mirror is not None and snapshot.epoch < self._mirror.epoch:
            raise StaleOrdering("snapshot", snapshot.epoch, self._mirror.epoch)

        previous = self.controller_client_id
        self._mirror = snapshot
        self._log.debug("mirror_seeded", session_id=snapshot.session_id, epoch=snapshot.epoch)
        if previous != snapshot.controller_client_id:
            self._on_controller_changed(previous, snapshot.controller_client_id)

    def reset(self) -> None:
        """Forget the mirror and any request in flight, e.g. after leaving."""
        self._mirror = None
        if not isinstance(self._state, Idle):
            self._transition(IDLE)
        self._log.debug("mirror_reset")

    # --- User intents and acknowledgements ---

    def begin_request(self) -> bool:
        """
        Move to ``Pending`` for a new request.

        Returns False (and changes nothing) when a request is already in
        flight, the mirrored queue already holds this peer, or this peer
        is already the controller.
        """
        if not isinstance(self._state, Idle):
            self._log.debug("request_ignored", reason="in_flight", status=self._state.status)
            return False
        if self.has_pending_request():
            self._log.debug("request_ignored", reason="already_queued")
            return False
        if self.is_controller():
            self._log.debug("request_ignored", reason="already_controller")
            return False
        self._transition(Pending(since=self._timers.now()))
        return True

    def ack_request(self, ack: Acknowledgement) -> None:
        """Apply the acknowledgement of ``request_controller``."""
        state = self._state
        if not isinstance(state, Pending):
            # A broadcast already settled the request (e.g. the role flipped).
            self._log.debug("late_request_ack", status=state.status, success=ack.success)
            return

        if not ack.success:
            self._transition(
                Error(until=self._timers.now() + self._config.error_ms, reason=ack.error)
            )
            return

        self._transition(Sent(since=state.since, epoch=ack.epoch, cancelling=state.cancelling))
        self._check_denied()

    def begin_cancel(self) -> bool:
        """
        Mark the request in flight as being cancelled; False if there is none.

        A request still awaiting its own ack keeps the mark when it moves to
        ``Sent``, so the queue update caused by the cancel is not read as a
        denial.
        """
        state = self._state
        if not isinstance(state, Pending | Sent):
            return False
        self._transition(state.model_copy(update={"cancelling": True}))
        return True

    def ack_cancel(self, ack: Acknowledgement) -> None:
        """Apply the acknowledgement of ``cancel_controller_request``."""
        state = self._state
        if not isinstance(state, Pending | Sent) or not state.cancelling:
            self._log.debug("late_cancel_ack", status=state.status, success=ack.success)
            return
        if ack.success:
            self._transition(Cancelled(until=self._timers.now() + self._config.cancelled_ms))
            return
        self._transition(state.model_copy(update={"cancelling": False}))
        if isinstance(state, Sent):
            self._check_denied()

    # --- Broadcasts ---

    def apply_broadcast(self, event: str, payload: Any) -> None:
        """
        Apply a coordinator broadcast to the mirror and the request state.

        Raises:
            StaleOrdering: the broadcast's epoch is older than the mirror's
            ValueError: the event name is unknown
        """
        if self._mirror is None:
            self._log.warning("broadcast_before_seed", event_name=event)
            return

        parsed = parse_broadcast(event, payload)
        match parsed:
            case ControllerClientChange():
                self._check_epoch(event, parsed.epoch)
                self._apply_controller(parsed.controller_client_id, parsed.epoch)
            case ControllerRequestsUpdate():
                self._check_epoch(event, parsed.epoch)
                # The snapshot's controller belongs to the same epoch; applying
                # it first keeps an approval from being read as a denial.
                self._apply_controller(parsed.controller_client_id, parsed.epoch)
                self._mirror = self._mirror.model_copy(
                    update={"pending_requests": parsed.pending_requests, "epoch": parsed.epoch}
                )
                self._check_denied()
            case ControllerRequestDenied():
                self._check_epoch(event, parsed.epoch)
                self._mirror = self._mirror.model_copy(update={"epoch": parsed.epoch})
                if parsed.requester_client_id == self._client_id and isinstance(self._state, Sent):
                    self._finish(ResultKind.DENIED)
            case _:
                # Peer-directed notifications carry no arbitration state.
                pass

    def _check_epoch(self, event: str, epoch: int) -> None:
        current = self.epoch
        if epoch < current:
            self._stale_dropped += 1
            raise StaleOrdering(event, epoch, current)

    def _apply_controller(self, controller_client_id: str | None, epoch: int) -> None:
        assert self._mirror is not None
        previous = self._mirror.controller_client_id
        self._mirror = self._mirror.model_copy(
            update={"controller_client_id": controller_client_id, "epoch": epoch}
        )
        if previous != controller_client_id:
            self._on_controller_changed(previous, controller_client_id)

    def _on_controller_changed(self, previous: str | None, current: str | None) -> None:
        was_controller = previous == self._client_id
        now_controller = current is not None and current == self._client_id
        self._log.info(
            "controller_changed",
            previous=previous,
            current=current,
            epoch=self.epoch,
        )
        for listener in list(self._controller_listeners):
            listener(previous, current)

        if was_controller == now_controller:
            return

        # Role flip: all in-flight request bookkeeping is void.
        if now_controller and isinstance(self._state, Sent):
            self._finish(ResultKind.APPROVED)
        else:
            self._transition(IDLE)

    def _check_denied(self) -> None:
        state = self._state
        if not isinstance(state, Sent) or state.cancelling:
            return
        if self.is_controller() or self.has_pending_request():
            return
        if state.epoch is not None and self.epoch <= state.epoch:
            return
        self._log.info("denial_derived", epoch=self.epoch, request_epoch=state.epoch)
        self._finish(ResultKind.DENIED)

    # --- Transitions ---

    def _finish(self, kind: ResultKind) -> None:
        self._transition(Result(kind=kind, until=self._timers.now() + self._config.result_ms))

    def _transition(self, new_state: AnyRequestState) -> None:
        old_state = self._state
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

        self._state = new_state
        if is_expiring(new_state):
            delay = new_state.until - self._timers.now()  # type: ignore[union-attr]
            self._expiry = self._timers.call_later(delay, self._expire)

        if old_state != new_state:
            self._log.info(
                "request_state_changed",
                old=old_state.status,
                new=new_state.status,
                kind=getattr(new_state, "kind", None),
            )
        for listener in list(self._state_listeners):
            listener(old_state, new_state)

    def _expire(self) -> None:
        self._expiry = None
        if is_expiring(self._state):
            self._transition(IDLE)
