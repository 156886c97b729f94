"""
Unit tests for engine commands and API request schemas.
"""
from decimal import Decimal
from typing import Any, Dict

import pytest
from pydantic import ValidationError as PydanticValidationError

from api.schemas import (
    CreateOrderRequest,
    RefundRequest,
    UpdateOrderStatusRequest,
    VerifyPaymentRequest,
)
from core.commands import (
    CustomerDetails,
    LineItem,
    PlaceOrder,
    RefundPayment,
    UpdateOrderStatus,
    VerifyPayment,
)
from core.exceptions import ValidationError
from core.state import FulfillmentStatus

CUSTOMER = CustomerDetails(
    name="Asha Rao",
    email="asha@example.com",
    phone="9876543210",
    address={"street": "12 MG Road", "city": "Bengaluru", "state": "KA", "pincode": "560001"},
)


class TestPlaceOrder:

    @pytest.mark.unit
    def test_amount_must_match_items(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            PlaceOrder(
                amount=Decimal("100"),
                items=(LineItem("p1", "Tee", 2, Decimal("450")),),
                customer=CUSTOMER,
            )
        assert exc_info.value.errors[0]["field"] == "amount"

    @pytest.mark.unit
    def test_requires_items(self) -> None:
        with pytest.raises(ValidationError, match="at least one item"):
            PlaceOrder(amount=Decimal("1"), items=(), customer=CUSTOMER)

    @pytest.mark.unit
    def test_rejects_zero_quantity(self) -> None:
        with pytest.raises(ValidationError, match="quantity"):
            PlaceOrder(
                amount=Decimal("0"),
                items=(LineItem("p1", "Tee", 0, Decimal("450")),),
                customer=CUSTOMER,
            )

    @pytest.mark.unit
    def test_subtotal(self) -> None:
        command = PlaceOrder(
            amount=Decimal("959.97"),
            items=(
                LineItem("p1", "Tee", 2, Decimal("450")),
                LineItem("p2", "Socks", 3, Decimal("19.99")),
            ),
            customer=CUSTOMER,
        )
        assert command.subtotal == Decimal("959.97")


class TestOtherCommands:

    @pytest.mark.unit
    def test_verify_requires_all_fields(self) -> None:
        with pytest.raises(ValidationError):
            VerifyPayment(remote_order_id="order_1", remote_payment_id="", signature="abc")

    @pytest.mark.unit
    def test_shipped_requires_tracking_number(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            UpdateOrderStatus(status=FulfillmentStatus.SHIPPED)
        assert exc_info.value.errors[0]["field"] == "tracking_number"

    @pytest.mark.unit
    def test_notes_length_limited(self) -> None:
        with pytest.raises(ValidationError):
            UpdateOrderStatus(status=FulfillmentStatus.DELIVERED, notes="x" * 501)

    @pytest.mark.unit
    def test_refund_amount_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            RefundPayment(amount=Decimal("0"))
        assert RefundPayment().amount is None


class TestRequestSchemas:

    @pytest.mark.unit
    def test_create_order_request_builds_command(self, create_order_payload: Dict[str, Any]) -> None:
        request = CreateOrderRequest.model_validate(create_order_payload)
        command = request.to_command({"ip_address": "127.0.0.1"})

        assert command.subtotal == Decimal("900.00")
        assert command.customer.address["country"] == "India"
        assert command.client_info == {"ip_address": "127.0.0.1"}

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "path,value",
        [
            (("userDetails", "phone"), "12345"),
            (("userDetails", "address", "pincode"), "5600"),
            (("userDetails", "email"), "not-an-email"),
            (("currency",), "USD"),
        ],
    )
    def test_create_order_request_rejects_bad_input(
        self, create_order_payload: Dict[str, Any], path: Any, value: str
    ) -> None:
        target = create_order_payload
        for key in path[:-1]:
            target = target[key]
        target[path[-1]] = value

        with pytest.raises(PydanticValidationError):
            CreateOrderRequest.model_validate(create_order_payload)

    @pytest.mark.unit
    def test_create_order_request_forbids_unknown_fields(
        self, create_order_payload: Dict[str, Any]
    ) -> None:
        create_order_payload["total_amount"] = 1
        with pytest.raises(PydanticValidationError):
            CreateOrderRequest.model_validate(create_order_payload)

    @pytest.mark.unit
    def test_verify_request_accepts_gateway_field_names(self) -> None:
        request = VerifyPaymentRequest.model_validate(
            {
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": "sig",
            }
        )
        assert request.to_command().remote_payment_id == "pay_1"

    @pytest.mark.unit
    def test_update_status_request_rejects_protected_fields(self) -> None:
        with pytest.raises(PydanticValidationError):
            UpdateOrderStatusRequest.model_validate(
                {"status": "confirmed", "payment_status": "success"}
            )

    @pytest.mark.unit
    def test_verify_request_rejects_unknown_fields(self) -> None:
        with pytest.raises(PydanticValidationError):
            VerifyPaymentRequest.model_validate(
                {
                    "razorpay_order_id": "order_1",
                    "razorpay_payment_id": "pay_1",
                    "razorpay_signature": "sig",
                    "payment_status": "refunded",
                }
            )

    @pytest.mark.unit
    def test_refund_request_rejects_unknown_fields(self) -> None:
        with pytest.raises(PydanticValidationError):
            RefundRequest.model_validate(
                {"amount": 10, "total_amount": 1, "payment_id": "pay_other"}
            )
        assert RefundRequest.model_validate({"amount": 10}).to_command().amount == Decimal("10")

    @pytest.mark.unit
    def test_update_status_request_shipped_needs_tracking(self) -> None:
        with pytest.raises(PydanticValidationError):
            UpdateOrderStatusRequest.model_validate({"status": "shipped"})
