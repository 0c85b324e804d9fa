"""Events reported while a run progresses, and the listeners receiving them.

Events are plain pydantic records so they can be marshaled across an
isolation boundary with :func:`to_wire` / :func:`from_wire` and replayed on
the other side without sharing any live objects.
"""

import time
from typing import Annotated, Any, ClassVar, Iterable, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from suiterunner.core.model import FaultInfo, NodeInfo, Rollup, TestOutcome

log = structlog.get_logger("suiterunner.events")


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    handler: ClassVar[str]
    timestamp: float = Field(default_factory=time.time)

    def dispatch(self, listener: "EventListener") -> None:
        getattr(listener, self.handler)(self)


class RunStarted(_Event):
    handler: ClassVar[str] = "run_started"
    kind: Literal["run_started"] = "run_started"
    name: str
    test_count: int
    root: Optional[NodeInfo] = None


class SuiteStarted(_Event):
    handler: ClassVar[str] = "suite_started"
    kind: Literal["suite_started"] = "suite_started"
    suite: NodeInfo


class TestStarted(_Event):
    __test__ = False
    handler: ClassVar[str] = "test_started"
    kind: Literal["test_started"] = "test_started"
    test: NodeInfo


class TestFinished(_Event):
    __test__ = False
    handler: ClassVar[str] = "test_finished"
    kind: Literal["test_finished"] = "test_finished"
    test: NodeInfo
    outcome: TestOutcome


class SuiteFinished(_Event):
    handler: ClassVar[str] = "suite_finished"
    kind: Literal["suite_finished"] = "suite_finished"
    suite: NodeInfo
    rollup: Rollup
    fault: Optional[FaultInfo] = None


class RunFinished(_Event):
    handler: ClassVar[str] = "run_finished"
    kind: Literal["run_finished"] = "run_finished"
    rollup: Optional[Rollup] = None
    fatal: Optional[FaultInfo] = None

    @property
    def is_fatal(self) -> bool:
        return self.fatal is not None


class UnhandledException(_Event):
    handler: ClassVar[str] = "unhandled_exception"
    kind: Literal["unhandled_exception"] = "unhandled_exception"
    fault: FaultInfo
    test_name: Optional[str] = None


Event = Annotated[
    Union[
        RunStarted,
        SuiteStarted,
        TestStarted,
        TestFinished,
        SuiteFinished,
        RunFinished,
        UnhandledException,
    ],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter = TypeAdapter(Event)


def to_wire(event: _Event) -> dict[str, Any]:
    """Flatten an event to JSON-compatible data."""
    return event.model_dump(mode="json")


def from_wire(data: dict[str, Any]) -> _Event:
    """Rebuild an event from :func:`to_wire` output."""
    return _event_adapter.validate_python(data)


class EventListener:
    """Receives run events. Every method defaults to doing nothing.

    Events arrive strictly in order from a single producer. Listeners that
    keep state should key it by full name so a repeated delivery is harmless.
    """

    def run_started(self, event: RunStarted) -> None:
        pass

    def suite_started(self, event: SuiteStarted) -> None:
        pass

    def test_started(self, event: TestStarted) -> None:
        pass

    def test_finished(self, event: TestFinished) -> None:
        pass

    def suite_finished(self, event: SuiteFinished) -> None:
        pass

    def run_finished(self, event: RunFinished) -> None:
        pass

    def unhandled_exception(self, event: UnhandledException) -> None:
        pass


class ForwardingListener(EventListener):
    """Listener that routes every event through :meth:`forward`."""

    def forward(self, event: _Event) -> None:
        raise NotImplementedError

    def run_started(self, event: RunStarted) -> None:
        self.forward(event)

    def suite_started(self, event: SuiteStarted) -> None:
        self.forward(event)

    def test_started(self, event: TestStarted) -> None:
        self.forward(event)

    def test_finished(self, event: TestFinished) -> None:
        self.forward(event)

    def suite_finished(self, event: SuiteFinished) -> None:
        self.forward(event)

    def run_finished(self, event: RunFinished) -> None:
        self.forward(event)

    def unhandled_exception(self, event: UnhandledException) -> None:
        self.forward(event)


class EventBroadcaster(ForwardingListener):
    """Fans each event out to several listeners, in registration order.

    A listener that raises is logged and skipped for that event; the others
    still receive it.
    """

    def __init__(self, listeners: Iterable[EventListener] = ()):
        self.listeners: list[EventListener] = list(listeners)

    def add(self, listener: EventListener) -> None:
        self.listeners.append(listener)

    def forward(self, event: _Event) -> None:
        for listener in self.listeners:
            try:
                event.dispatch(listener)
            except Exception:
                log.exception(
                    "Event listener failed",
                    listener=type(listener).__name__,
                    handler=event.handler,
                )


class QueueSink(ForwardingListener):
    """Marshals events onto a channel for delivery in another execution context.

    The channel is anything with ``put`` (a queue) or ``send`` (a pipe end).
    """

    def __init__(self, channel: Any):
        self.channel = channel
        self._put = getattr(channel, "put", None) or channel.send

    def forward(self, event: _Event) -> None:
        self._put(to_wire(event))


def pump_events(messages: Iterable[dict[str, Any]], listener: EventListener) -> bool:
    """Deliver marshaled events to ``listener`` in order.

    Returns:
        True once a ``RunFinished`` has been delivered; later messages are not read
    """
    for data in messages:
        event = from_wire(data)
        event.dispatch(listener)
        if isinstance(event, RunFinished):
            return True
    return False


class RecordingListener(ForwardingListener):
    """Keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: list[_Event] = []

    def forward(self, event: _Event) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> list[_Event]:
        return [event for event in self.events if event.handler == kind]

    def replay(self, listener: EventListener) -> None:
        for event in self.events:
            event.dispatch(listener)
