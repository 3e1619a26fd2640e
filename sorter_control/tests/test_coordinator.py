"""Tests for order fulfilment.

Validates the status state machine around a send:
    - Success path ends Completed via Processing
    - Every failure after Processing reverts to Pending
    - Pre-flight rejections leave the order untouched
    - The original error is re-raised, never masked by the rollback
    - Attempts never overlap on the robot stream
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from sorter_control.errors import (
    ConfigError,
    NotConnectedError,
    OrderStateError,
    ProtocolError,
    TemplateError,
    TransmitError,
)
from sorter_control.fulfillment.coordinator import (
    FulfillmentResult,
    OrderFulfillmentCoordinator,
    describe_failure,
)
from sorter_control.hardware.robot_connection import RobotConnection
from sorter_control.orders.model import (
    Category,
    OrderStatus,
    SortingLineItem,
    SortingOrder,
)
from sorter_control.orders.store import InMemoryOrderStore
from sorter_control.program.slots import CategorySlots, SlotMap
from sorter_control.program.template_engine import ScriptTemplateEngine
from sorter_control.tests.conftest import MockRobotServer, wait_for
from sorter_control.utils.logging_config import get_context

SHIPPED_TEMPLATE = (
    Path(__file__).resolve().parent.parent / "programs" / "sorter_color.script"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeConnection:
    """Records programs; optionally fails or dawdles inside send_program."""

    def __init__(self, connected: bool = True) -> None:
        self.is_connected = connected
        self.sent: list[str] = []
        self.error: BaseException | None = None
        self.delay = 0.0
        self.contexts: list[dict] = []
        self.threads: list[str] = []
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def send_program(self, program: str) -> None:
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            self.contexts.append(get_context())
            self.threads.append(threading.current_thread().name)
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            self.sent.append(program)
        finally:
            with self._lock:
                self._active -= 1


class RecordingStore(InMemoryOrderStore):
    """In-memory store that records status writes and can refuse reverts."""

    def __init__(self) -> None:
        super().__init__()
        self.history: list[tuple[int, OrderStatus]] = []
        self.fail_revert = False
        self.fail_complete = False

    def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        if self.fail_revert and status is OrderStatus.PENDING:
            raise RuntimeError("database unavailable")
        if self.fail_complete and status is OrderStatus.COMPLETED:
            raise RuntimeError("write conflict")
        super().set_order_status(order_id, status)
        self.history.append((order_id, status))


class StatusBlindStore:
    """Store offering only get_order and set_order_status."""

    def __init__(self) -> None:
        self.inner = InMemoryOrderStore()
        self.history: list[OrderStatus] = []

    def get_order(self, order_id: int) -> SortingOrder:
        return self.inner.get_order(order_id)

    def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        self.inner.set_order_status(order_id, status)
        self.history.append(status)


@pytest.fixture()
def engine() -> ScriptTemplateEngine:
    return ScriptTemplateEngine.from_file(SHIPPED_TEMPLATE)


@pytest.fixture()
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture()
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture()
def coordinator(connection, store, engine):
    coord = OrderFulfillmentCoordinator(connection, store, engine)
    yield coord
    coord.shutdown()


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


class TestSuccess:
    def test_completes(self, coordinator, connection, store) -> None:
        order_id = store.create_order("ACME", {Category.RED: 3, Category.GREEN: 5})
        result = coordinator.fulfill(order_id)

        assert isinstance(result, FulfillmentResult)
        assert result.status is OrderStatus.COMPLETED
        assert store.get_order_status(order_id) is OrderStatus.COMPLETED
        assert store.history == [
            (order_id, OrderStatus.PROCESSING),
            (order_id, OrderStatus.COMPLETED),
        ]
        assert connection.sent == [result.program]

    def test_program_contents(self, coordinator, connection, store) -> None:
        order_id = store.create_order("ACME", {Category.RED: 3, Category.GREEN: 5})
        coordinator.fulfill(order_id)
        program = connection.sent[0]
        assert "global SortRedToOrder=True\n" in program
        assert "global RedRemaining=3\n" in program
        assert "global GreenRemaining=5\n" in program
        assert "global SortBlueToOrder=False\n" in program
        assert "global YellowRemaining=0\n" in program

    def test_order_context_during_send(self, coordinator, connection, store) -> None:
        order_id = store.create_order("ACME", {Category.BLUE: 1})
        coordinator.fulfill(order_id)
        assert connection.contexts[0].get("order") == order_id
        assert "order" not in get_context()

    def test_not_busy_afterwards(self, coordinator, store) -> None:
        order_id = store.create_order("ACME", {Category.BLUE: 1})
        coordinator.fulfill(order_id)
        assert not coordinator.busy
        assert coordinator.in_flight is None


class TestPoses:
    def test_template_default_kept(self, coordinator, connection, store, engine) -> None:
        order_id = store.create_order("ACME", {Category.RED: 1})
        coordinator.fulfill(order_id)
        default_line = next(
            line for line in engine.template.splitlines()
            if "global ResortDropPose=" in line
        )
        assert default_line in connection.sent[0].splitlines()

    def test_caller_override(self, coordinator, connection, store) -> None:
        order_id = store.create_order("ACME", {Category.RED: 1})
        coordinator.fulfill(order_id, order_drop_pose="p[1, 2, 3, 0, 0, 0]")
        assert "global OrderDropPose=p[1, 2, 3, 0, 0, 0]\n" in connection.sent[0]

    def test_configured_default_then_override(self, connection, store, engine) -> None:
        coord = OrderFulfillmentCoordinator(
            connection, store, engine,
            default_order_drop_pose="p[4, 4, 4, 0, 0, 0]",
            default_resort_drop_pose="p[5, 5, 5, 0, 0, 0]",
        )
        order_id = store.create_order("ACME", {Category.RED: 1})
        coord.fulfill(order_id, resort_drop_pose="p[6, 6, 6, 0, 0, 0]")
        program = connection.sent[0]
        assert "global OrderDropPose=p[4, 4, 4, 0, 0, 0]\n" in program
        assert "global ResortDropPose=p[6, 6, 6, 0, 0, 0]\n" in program


# ---------------------------------------------------------------------------
# Failures after Processing: rollback
# ---------------------------------------------------------------------------


class TestRollback:
    def test_transmit_failure_reverts(self, coordinator, connection, store) -> None:
        error = TransmitError("broken pipe")
        connection.error = error
        order_id = store.create_order("ACME", {Category.RED: 1})

        with pytest.raises(TransmitError) as excinfo:
            coordinator.fulfill(order_id)

        assert excinfo.value is error
        assert store.get_order_status(order_id) is OrderStatus.PENDING
        assert store.history == [
            (order_id, OrderStatus.PROCESSING),
            (order_id, OrderStatus.PENDING),
        ]

    def test_unexpected_error_reverts(self, coordinator, connection, store) -> None:
        connection.error = RuntimeError("boom")
        order_id = store.create_order("ACME", {Category.RED: 1})
        with pytest.raises(RuntimeError, match="boom"):
            coordinator.fulfill(order_id)
        assert store.get_order_status(order_id) is OrderStatus.PENDING

    def test_missing_slot_reverts_and_sends_nothing(self, connection, store) -> None:
        template = ScriptTemplateEngine.from_file(SHIPPED_TEMPLATE).template
        engine = ScriptTemplateEngine(
            template.replace("global YellowRemaining=0", "global YellowLeft=0"),
        )
        coord = OrderFulfillmentCoordinator(connection, store, engine)
        order_id = store.create_order("ACME", {Category.RED: 1})

        with pytest.raises(TemplateError, match="YellowRemaining"):
            coord.fulfill(order_id)

        assert connection.sent == []
        assert store.get_order_status(order_id) is OrderStatus.PENDING
        assert [s for _, s in store.history] == [
            OrderStatus.PROCESSING, OrderStatus.PENDING,
        ]

    def test_failed_completion_write_reverts(self, coordinator, store) -> None:
        store.fail_complete = True
        order_id = store.create_order("ACME", {Category.RED: 1})
        with pytest.raises(RuntimeError, match="write conflict"):
            coordinator.fulfill(order_id)
        assert store.get_order_status(order_id) is OrderStatus.PENDING

    def test_rollback_failure_does_not_mask_cause(
        self, coordinator, connection, store,
    ) -> None:
        error = TransmitError("connection reset")
        connection.error = error
        store.fail_revert = True
        order_id = store.create_order("ACME", {Category.RED: 1})

        with pytest.raises(TransmitError) as excinfo:
            coordinator.fulfill(order_id)
        assert excinfo.value is error

    def test_retry_after_failure(self, coordinator, connection, store) -> None:
        connection.error = TransmitError("down")
        order_id = store.create_order("ACME", {Category.RED: 1})
        with pytest.raises(TransmitError):
            coordinator.fulfill(order_id)

        connection.error = None
        result = coordinator.fulfill(order_id)
        assert result.status is OrderStatus.COMPLETED


# ---------------------------------------------------------------------------
# Pre-flight rejections: order untouched
# ---------------------------------------------------------------------------


class TestPreflight:
    def test_not_connected(self, store, engine) -> None:
        connection = FakeConnection(connected=False)
        coord = OrderFulfillmentCoordinator(connection, store, engine)
        order_id = store.create_order("ACME", {Category.RED: 1})

        with pytest.raises(NotConnectedError):
            coord.fulfill(order_id)
        assert store.history == []
        assert connection.sent == []

    def test_nothing_to_sort(self, coordinator, connection, store) -> None:
        order = SortingOrder(
            5, "ACME",
            [
                SortingLineItem(1, "Red block", Category.RED, 0),
                SortingLineItem(2, "Blue block", Category.BLUE, -3),
            ],
        )
        store.add_order(order)

        with pytest.raises(OrderStateError):
            coordinator.fulfill(5)
        assert store.history == []
        assert store.get_order_status(5) is OrderStatus.PENDING
        assert connection.sent == []

    def test_not_pending(self, coordinator, connection, store) -> None:
        order_id = store.create_order("ACME", {Category.RED: 1})
        coordinator.fulfill(order_id)
        store.history.clear()

        with pytest.raises(OrderStateError):
            coordinator.fulfill(order_id)
        assert store.history == []
        assert len(connection.sent) == 1

    def test_unknown_order(self, coordinator, store) -> None:
        with pytest.raises(KeyError):
            coordinator.fulfill(404)

    def test_incomplete_slot_map(self, connection, store) -> None:
        slot_map = SlotMap(
            categories={Category.RED: CategorySlots("SortRedToOrder", "RedRemaining")},
        )
        engine = ScriptTemplateEngine("global RedRemaining=0\n", slot_map=slot_map)
        with pytest.raises(ConfigError):
            OrderFulfillmentCoordinator(connection, store, engine)


class TestMinimalStore:
    def test_completes(self, connection, engine) -> None:
        store = StatusBlindStore()
        coord = OrderFulfillmentCoordinator(connection, store, engine)
        order_id = store.inner.create_order("ACME", {Category.GREEN: 2})

        result = coord.fulfill(order_id)
        assert result.status is OrderStatus.COMPLETED
        assert store.history == [OrderStatus.PROCESSING, OrderStatus.COMPLETED]

    def test_completed_order_refused_by_transition(self, connection, engine) -> None:
        store = StatusBlindStore()
        coord = OrderFulfillmentCoordinator(connection, store, engine)
        order_id = store.inner.create_order("ACME", {Category.GREEN: 2})
        coord.fulfill(order_id)
        store.history.clear()

        with pytest.raises(OrderStateError):
            coord.fulfill(order_id)
        assert store.history == []
        assert len(connection.sent) == 1
        assert store.inner.get_order_status(order_id) is OrderStatus.COMPLETED


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


class TestSerialisation:
    def test_concurrent_calls_do_not_overlap(self, coordinator, connection, store) -> None:
        connection.delay = 0.05
        order_ids = [
            store.create_order(f"C{i}", {Category.RED: i + 1}) for i in range(4)
        ]
        threads = [
            threading.Thread(target=coordinator.fulfill, args=(oid,))
            for oid in order_ids
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5.0)

        assert connection.max_active == 1
        assert len(connection.sent) == 4
        for oid in order_ids:
            assert store.get_order_status(oid) is OrderStatus.COMPLETED

    def test_submit(self, coordinator, store) -> None:
        first = store.create_order("A", {Category.RED: 1})
        second = store.create_order("B", {Category.GREEN: 2})
        futures = [coordinator.submit(first), coordinator.submit(second)]
        results = [f.result(timeout=5.0) for f in futures]
        assert [r.order_id for r in results] == [first, second]
        assert all(r.status is OrderStatus.COMPLETED for r in results)

    def test_concurrent_submit_uses_one_worker(
        self, coordinator, connection, store,
    ) -> None:
        order_ids = [
            store.create_order(f"C{i}", {Category.BLUE: 1}) for i in range(8)
        ]
        futures = []
        futures_lock = threading.Lock()
        start = threading.Barrier(len(order_ids))

        def submit(order_id: int) -> None:
            start.wait()
            future = coordinator.submit(order_id)
            with futures_lock:
                futures.append(future)

        threads = [
            threading.Thread(target=submit, args=(oid,)) for oid in order_ids
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5.0)

        results = [f.result(timeout=5.0) for f in futures]
        assert sorted(r.order_id for r in results) == order_ids
        assert len(set(connection.threads)) == 1
        assert connection.threads[0].startswith("sorter-fulfill")

    def test_submit_propagates_error(self, coordinator, connection, store) -> None:
        connection.error = TransmitError("down")
        order_id = store.create_order("A", {Category.RED: 1})
        future = coordinator.submit(order_id)
        with pytest.raises(TransmitError):
            future.result(timeout=5.0)
        assert store.get_order_status(order_id) is OrderStatus.PENDING


# ---------------------------------------------------------------------------
# Operator messages
# ---------------------------------------------------------------------------


class TestDescribeFailure:
    @pytest.mark.parametrize(
        "exc, prefix",
        [
            (NotConnectedError("x"), "Not connected"),
            (OrderStateError("empty"), "Order rejected"),
            (TemplateError("slot"), "Template error"),
            (TransmitError("pipe"), "Transmit failed"),
            (ProtocolError("closed"), "Transmit failed"),
            (RuntimeError("?"), "Sorting error"),
        ],
    )
    def test_prefix(self, exc: BaseException, prefix: str) -> None:
        assert describe_failure(exc).startswith(prefix)


# ---------------------------------------------------------------------------
# End to end over sockets
# ---------------------------------------------------------------------------


class TestWithMockRobot:
    def test_program_reaches_stream(
        self, mock_robot: MockRobotServer, store, engine,
    ) -> None:
        conn = RobotConnection(mock_robot.endpoint, connect_timeout=3.0, io_timeout=3.0)
        conn.connect()
        try:
            coord = OrderFulfillmentCoordinator(conn, store, engine)
            order_id = store.create_order("ACME", {Category.YELLOW: 4})
            result = coord.fulfill(order_id)
        finally:
            conn.disconnect()

        expected = (result.program + "\n").encode("ascii")
        assert wait_for(lambda: mock_robot.received == expected)
        assert b"global YellowRemaining=4\n" in mock_robot.received

    def test_disconnected_robot_rejected(
        self, mock_robot: MockRobotServer, store, engine,
    ) -> None:
        conn = RobotConnection(mock_robot.endpoint, connect_timeout=3.0)
        conn.connect()
        conn.disconnect()
        coord = OrderFulfillmentCoordinator(conn, store, engine)
        order_id = store.create_order("ACME", {Category.RED: 1})

        with pytest.raises(NotConnectedError):
            coord.fulfill(order_id)
        assert store.get_order_status(order_id) is OrderStatus.PENDING
        assert mock_robot.received == b""
