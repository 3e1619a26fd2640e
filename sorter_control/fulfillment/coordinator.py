"""Order fulfilment -- drive one order through the sorter robot.

State machine per order::

    Pending --[submit]--> Processing --[transmit success]--> Completed
    Processing --[transmit failure]--> Pending

``Processing`` is transient: it always resolves to ``Completed`` or back
to ``Pending`` before :meth:`OrderFulfillmentCoordinator.fulfill`
returns or raises.

Pre-flight checks (connection up, order Pending, at least one positive
line) run before the order is touched.  Stores without
``get_order_status`` enforce the Pending check by refusing the
Processing transition, so a rejected order keeps its
status and nothing reaches the template engine or the wire.

Attempts are serialised: one lock per coordinator, held for the whole
attempt, so two orders never interleave bytes on the robot's stream.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from sorter_control.errors import (
    NotConnectedError,
    OrderStateError,
    ProtocolError,
    RobotConnectionError,
    TemplateError,
)
from sorter_control.hardware.robot_connection import RobotConnection
from sorter_control.orders.model import (
    OrderStatus,
    ProgramParameters,
    derive_parameters,
)
from sorter_control.orders.store import OrderStore
from sorter_control.program.template_engine import ScriptTemplateEngine
from sorter_control.utils.logging_config import log_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FulfillmentResult:
    """Outcome of a successful fulfilment."""

    order_id: int
    status: OrderStatus
    parameters: ProgramParameters
    program: str


def describe_failure(exc: BaseException) -> str:
    """Operator-facing message for a failed fulfilment."""
    if isinstance(exc, NotConnectedError):
        return "Not connected: connect to the robot before sorting."
    if isinstance(exc, OrderStateError):
        return f"Order rejected: {exc}"
    if isinstance(exc, TemplateError):
        return f"Template error: {exc}"
    if isinstance(exc, (ProtocolError, RobotConnectionError, OSError)):
        return f"Transmit failed: {exc}"
    return f"Sorting error: {exc}"


class OrderFulfillmentCoordinator:
    """Send orders to the sorter robot, one at a time.

    Parameters
    ----------
    connection : RobotConnection
        Robot connection (connected by the caller).
    store : OrderStore
        Order persistence.
    engine : ScriptTemplateEngine
        Program renderer.  Its slot map must cover every category.
    default_order_drop_pose, default_resort_drop_pose : str | None
        Pose overrides applied when the caller passes none.

    Raises
    ------
    ConfigError
        If the engine's slot map is incomplete.
    """

    def __init__(
        self,
        connection: RobotConnection,
        store: OrderStore,
        engine: ScriptTemplateEngine,
        *,
        default_order_drop_pose: str | None = None,
        default_resort_drop_pose: str | None = None,
    ) -> None:
        engine.slot_map.check_complete()

        self._connection = connection
        self._store = store
        self._engine = engine
        self._default_order_drop = default_order_drop_pose
        self._default_resort_drop = default_resort_drop_pose

        self._lock = threading.Lock()
        self._in_flight: int | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        """``True`` while an attempt holds the robot."""
        return self._lock.locked()

    @property
    def in_flight(self) -> int | None:
        """Id of the order currently being sent, if any."""
        return self._in_flight

    # ------------------------------------------------------------------
    # Fulfilment
    # ------------------------------------------------------------------

    def fulfill(
        self,
        order_id: int,
        *,
        order_drop_pose: str | None = None,
        resort_drop_pose: str | None = None,
    ) -> FulfillmentResult:
        """Render and send the program for *order_id*.

        Blocks while another attempt is in progress.

        Returns
        -------
        FulfillmentResult
            Parameters and program that were sent; status ``COMPLETED``.

        Raises
        ------
        NotConnectedError
            Robot not connected.  Order untouched.
        OrderStateError
            Order not Pending, or has nothing to sort.  Order untouched.
        TemplateError, ProtocolError
            Rendering or transmission failed.  Order reverted to Pending
            and the original exception re-raised.
        """
        with self._lock, log_context(order=order_id):
            self._in_flight = order_id
            try:
                return self._fulfill_locked(
                    order_id, order_drop_pose, resort_drop_pose,
                )
            finally:
                self._in_flight = None

    def _fulfill_locked(
        self,
        order_id: int,
        order_drop_pose: str | None,
        resort_drop_pose: str | None,
    ) -> FulfillmentResult:
        if not self._connection.is_connected:
            raise NotConnectedError("Connect to the robot before sorting")

        # Early status check when the store can answer it; otherwise the
        # store refuses the Processing transition below
        status_of = getattr(self._store, "get_order_status", None)
        if status_of is not None:
            status = status_of(order_id)
            if status is not OrderStatus.PENDING:
                raise OrderStateError(
                    f"Order #{order_id} is {status.value}; only pending orders "
                    f"can be sent"
                )

        snapshot = self._store.get_order(order_id)
        params = (
            derive_parameters(snapshot, tuple(self._engine.slot_map.categories))
            .with_poses(self._default_order_drop, self._default_resort_drop)
            .with_poses(order_drop_pose, resort_drop_pose)
        )

        self._store.set_order_status(order_id, OrderStatus.PROCESSING)
        logger.info(
            "Order #%d processing (%s)",
            order_id,
            ", ".join(
                f"{c.value}={n}" for c, n in params.remaining.items() if n
            ),
        )

        try:
            program = self._engine.render_parameters(params)
            self._connection.send_program(program)
            self._store.set_order_status(order_id, OrderStatus.COMPLETED)
        except BaseException as exc:
            self._rollback(order_id, exc)
            raise

        logger.info("Order #%d completed (%d bytes sent)", order_id, len(program))
        return FulfillmentResult(
            order_id=order_id,
            status=OrderStatus.COMPLETED,
            parameters=params,
            program=program,
        )

    def _rollback(self, order_id: int, cause: BaseException) -> None:
        """Revert *order_id* to Pending without masking *cause*."""
        logger.error("Order #%d failed: %s", order_id, cause)
        try:
            self._store.set_order_status(order_id, OrderStatus.PENDING)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Could not revert order #%d to pending: %s", order_id, exc,
            )
        else:
            logger.info("Order #%d reverted to pending", order_id)

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def submit(
        self,
        order_id: int,
        *,
        order_drop_pose: str | None = None,
        resort_drop_pose: str | None = None,
    ) -> Future[FulfillmentResult]:
        """Run :meth:`fulfill` on the coordinator's worker thread.

        Submissions queue behind each other in arrival order.
        """
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="sorter-fulfill",
                )
            return self._executor.submit(
                self.fulfill,
                order_id,
                order_drop_pose=order_drop_pose,
                resort_drop_pose=resort_drop_pose,
            )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker thread started by :meth:`submit`."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
