"""Tests for the notification scheduler."""

import pytest

from conductor.arbitration.models import ControllerOfferReceived, ControllerRequestReceived
from conductor.core.clock import VirtualTimerScheduler
from conductor.core.config import ArbitrationConfig
from conductor.peer.notifications import NotificationCategory, NotificationScheduler
from conductor.peer.state import IDLE, Cancelled, Result, ResultKind, Sent

Category = NotificationCategory


class RoleFlag:
    """Mutable stand-in for the state machine's is_controller()."""

    def __init__(self, controller: bool = False) -> None:
        self.controller = controller

    def __call__(self) -> bool:
        return self.controller


def offer() -> ControllerOfferReceived:
    return ControllerOfferReceived(offerer_client_id="c1", offerer_name="Carol")


def incoming_request() -> ControllerRequestReceived:
    return ControllerRequestReceived(requester_client_id="r1", requester_name="Rita", request_time=0)


class TestNotificationScheduler:
    @pytest.fixture
    def timers(self) -> VirtualTimerScheduler:
        return VirtualTimerScheduler()

    @pytest.fixture
    def role(self) -> RoleFlag:
        return RoleFlag()

    @pytest.fixture
    def scheduler(self, timers: VirtualTimerScheduler, role: RoleFlag) -> NotificationScheduler:
        return NotificationScheduler(timers, ArbitrationConfig(), is_controller=role)

    def test_request_received_expires(
        self, scheduler: NotificationScheduler, timers: VirtualTimerScheduler, role: RoleFlag
    ) -> None:
        role.controller = True
        assert scheduler.on_event(Category.REQUEST_RECEIVED, incoming_request())
        assert scheduler.active_categories() == {Category.REQUEST_RECEIVED}
        assert scheduler.get(Category.REQUEST_RECEIVED).expires_at == 5000

        timers.advance(4999)
        assert scheduler.is_visible(Category.REQUEST_RECEIVED)
        timers.advance(1)
        assert scheduler.active_categories() == set()

    def test_same_category_replaces_timer(
        self, scheduler: NotificationScheduler, timers: VirtualTimerScheduler, role: RoleFlag
    ) -> None:
        role.controller = True
        scheduler.on_event(Category.OFFER_SENT, "first")
        timers.advance(3000)
        scheduler.on_event(Category.OFFER_SENT, "second")

        timers.advance(3000)
        assert scheduler.is_visible(Category.OFFER_SENT)
        assert scheduler.get(Category.OFFER_SENT).payload == "second"
        timers.advance(1000)
        assert not scheduler.is_visible(Category.OFFER_SENT)
        assert timers.pending == 0

    def test_offer_received_has_no_timer(
        self, scheduler: NotificationScheduler, timers: VirtualTimerScheduler
    ) -> None:
        scheduler.on_event(Category.OFFER_RECEIVED, offer())
        assert scheduler.get(Category.OFFER_RECEIVED).expires_at is None
        timers.advance(600_000)
        assert scheduler.is_visible(Category.OFFER_RECEIVED)

    def test_offer_and_request_received_are_exclusive(
        self, scheduler: NotificationScheduler, role: RoleFlag
    ) -> None:
        role.controller = True
        scheduler.on_event(Category.REQUEST_RECEIVED, incoming_request())
        role.controller = False
        scheduler.on_event(Category.OFFER_RECEIVED, offer())
        assert scheduler.active_categories() == {Category.OFFER_RECEIVED}

        role.controller = True
        scheduler.on_event(Category.REQUEST_RECEIVED, incoming_request())
        assert scheduler.active_categories() == {Category.REQUEST_RECEIVED}

    def test_offer_hides_result_banner(self, scheduler: NotificationScheduler) -> None:
        scheduler.project_request_state(Result(kind=ResultKind.DENIED, until=4000))
        assert scheduler.is_visible(Category.REQUEST_STATUS)

        scheduler.on_event(Category.OFFER_RECEIVED, offer())
        assert scheduler.active_categories() == {Category.OFFER_RECEIVED}

    def test_offer_keeps_sent_banner(self, scheduler: NotificationScheduler) -> None:
        scheduler.project_request_state(Sent(since=0, epoch=1))
        scheduler.on_event(Category.OFFER_RECEIVED, offer())
        assert scheduler.active_categories() == {Category.OFFER_RECEIVED, Category.REQUEST_STATUS}

    def test_scenario_d_reset_hides_everything_now(
        self, scheduler: NotificationScheduler, timers: VirtualTimerScheduler
    ) -> None:
        scheduler.on_event(Category.OFFER_RECEIVED, offer())
        scheduler.project_request_state(Cancelled(until=2000))
        assert len(scheduler.active_categories()) == 2

        scheduler.reset()
        assert scheduler.active_categories() == set()
        assert timers.pending == 0
        assert all(not visible for visible, _ in scheduler.snapshot().values())

    def test_role_gating(self, scheduler: NotificationScheduler, role: RoleFlag) -> None:
        assert not scheduler.on_event(Category.REQUEST_RECEIVED, incoming_request())
        assert not scheduler.on_event(Category.OFFER_DECLINED, None)

        role.controller = True
        assert not scheduler.on_event(Category.OFFER_RECEIVED, offer())
        assert scheduler.active_categories() == set()

    def test_request_status_projection(
        self, scheduler: NotificationScheduler, timers: VirtualTimerScheduler
    ) -> None:
        assert scheduler.project_request_state(Result(kind=ResultKind.APPROVED, until=4000))
        assert scheduler.get(Category.REQUEST_STATUS).expires_at == 4000

        assert not scheduler.project_request_state(IDLE)
        assert not scheduler.is_visible(Category.REQUEST_STATUS)
        assert timers.pending == 0

    def test_dismiss(self, scheduler: NotificationScheduler) -> None:
        scheduler.on_event("offer_received", offer())
        scheduler.dismiss("offer_received")
        assert not scheduler.is_visible(Category.OFFER_RECEIVED)

    def test_configured_durations(self, timers: VirtualTimerScheduler) -> None:
        config = ArbitrationConfig(offer_received_ms=1000)
        scheduler = NotificationScheduler(timers, config)
        scheduler.on_event(Category.OFFER_RECEIVED, offer())
        timers.advance(1000)
        assert not scheduler.is_visible(Category.OFFER_RECEIVED)
