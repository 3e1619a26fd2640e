"""Order fulfilment coordination."""

from sorter_control.fulfillment.coordinator import (
    FulfillmentResult,
    OrderFulfillmentCoordinator,
    describe_failure,
)

__all__ = ["FulfillmentResult", "OrderFulfillmentCoordinator", "describe_failure"]
