"""Tests for flow-controlled result streams."""

import pytest

from dbplane.core.errors import RpcCancelledError, RpcError, StatusCode
from dbplane.rpc.streaming import ResultStreamObserver, StreamingCall
from tests._support.fakes import FakeStreamController, RecordingConsumer, StatusError


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def observer(consumer, clock):
    return ResultStreamObserver(consumer, clock=clock)


class TestFlowControl:
    def test_start_disables_automatic_flow_control(self, observer):
        controller = FakeStreamController()
        observer.on_start(controller)
        assert controller.auto_flow_control is False
        assert controller.requested == []

    def test_requests_before_start_are_flushed_on_start(self, observer):
        observer.request(2)
        observer.request(3)
        controller = FakeStreamController()
        observer.on_start(controller)
        assert controller.requested == [5]

    def test_requests_after_start_go_straight_through(self, observer):
        controller = FakeStreamController()
        observer.on_start(controller)
        StreamingCall(observer).request(4)
        assert controller.requested == [4]

    def test_outstanding_tracks_demand(self, observer, consumer):
        observer.on_start(FakeStreamController())
        observer.request(2)
        observer.on_response("row-1")
        assert observer.outstanding == 1
        observer.on_response("row-2")
        assert observer.outstanding == 0
        assert consumer.results == ["row-1", "row-2"]

    def test_responses_update_activity(self, observer, clock):
        observer.on_start(FakeStreamController())
        clock.advance(30)
        observer.on_response("row")
        assert observer.last_activity == clock.monotonic()

    @pytest.mark.parametrize("count", [0, -1])
    def test_non_positive_request_rejected(self, observer, count):
        with pytest.raises(ValueError):
            observer.request(count)


class TestTermination:
    def test_completion_delivered_once(self, observer, consumer):
        observer.on_start(FakeStreamController())
        observer.on_complete()
        observer.on_complete()
        assert consumer.completed == 1
        assert observer.finished is True

    def test_cancel_delivers_cancellation_once(self, observer, consumer):
        controller = FakeStreamController()
        observer.on_start(controller)
        call = StreamingCall(observer)

        call.cancel("caller gave up")
        call.cancel()
        observer.on_error(StatusError(StatusCode.CANCELLED))

        [error] = consumer.errors
        assert isinstance(error, RpcCancelledError)
        assert error.message == "caller gave up"
        assert controller.cancelled is True
        assert call.finished is True

    def test_transport_errors_are_translated(self, observer, consumer):
        observer.on_start(FakeStreamController())
        observer.on_error(StatusError(StatusCode.UNAVAILABLE, "connection reset"))
        [error] = consumer.errors
        assert isinstance(error, RpcError)
        assert error.status_code is StatusCode.UNAVAILABLE

    def test_expire_cancels_stream(self, observer, consumer):
        controller = FakeStreamController()
        observer.on_start(controller)
        observer.expire(RpcError("stream wait timeout", status_code=StatusCode.DEADLINE_EXCEEDED))
        assert controller.cancelled is True
        assert consumer.errors[0].status_code is StatusCode.DEADLINE_EXCEEDED

    def test_nothing_delivered_after_termination(self, observer, consumer):
        observer.on_start(FakeStreamController())
        observer.request(1)
        observer.cancel()
        observer.on_response("late row")
        observer.on_complete()
        observer.request(1)
        assert consumer.results == []
        assert consumer.completed == 0
        assert len(consumer.errors) == 1

    def test_cancel_before_start(self, observer, consumer):
        observer.cancel()
        controller = FakeStreamController()
        assert isinstance(consumer.errors[0], RpcCancelledError)
        observer.on_start(controller)
        assert controller.requested == []
        assert controller.cancelled is True
