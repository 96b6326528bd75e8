"""Tests for order models: status graph and document layout."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from orderflow.config import Settings
from orderflow.models import (
    TERMINAL_STATUSES,
    Amount,
    CourierInfo,
    Customer,
    Order,
    OrderStatus,
    Product,
    TenantSecrets,
    Timeline,
    can_advance,
    flag_path,
    timeline_path,
)


class TestStatusGraph:
    """Forward-only reachability over the lifecycle DAG."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING, OrderStatus.CANCELLED),
            (OrderStatus.CONFIRMED, OrderStatus.FULFILLED),
            (OrderStatus.FULFILLED, OrderStatus.OUT_FOR_DELIVERY),
            (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED),
            (OrderStatus.CONFIRMED, OrderStatus.DELIVERED),
        ],
    )
    def test_forward_moves_allowed(self, current, target):
        assert can_advance(current, target) is True

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.CONFIRMED, OrderStatus.PENDING),
            (OrderStatus.DELIVERED, OrderStatus.OUT_FOR_DELIVERY),
            (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
            (OrderStatus.PENDING, OrderStatus.PENDING),
        ],
    )
    def test_backward_and_self_moves_rejected(self, current, target):
        assert can_advance(current, target) is False

    @given(st.sampled_from(sorted(TERMINAL_STATUSES)), st.sampled_from(list(OrderStatus)))
    def test_terminal_states_reach_nothing(self, terminal, target):
        assert can_advance(terminal, target) is False

    @given(st.sampled_from(list(OrderStatus)), st.sampled_from(list(OrderStatus)))
    def test_no_cycles(self, a, b):
        assert not (can_advance(a, b) and can_advance(b, a))


class TestOrderDocument:
    """Persisted layout stays compatible with existing store contents."""

    def _order(self) -> Order:
        return Order(
            tenant_id="t1",
            order_id="1001",
            order_name="#1001",
            customer=Customer(name="Ali", phone="923001234567", city="Lahore"),
            amount=Amount(total="1500", currency="PKR"),
            product=Product(name="Shirt", qty=2),
            timeline=Timeline(created_at=10),
        )

    def test_document_keys(self):
        doc = self._order().to_document()
        assert doc["order_name"] == "#1001"
        assert doc["status"] == "pending"
        assert doc["timeline"] == {"createdAt": 10}
        assert doc["whatsapp"]["confirmation_sent"] is False
        assert doc["customer"]["city"] == "Lahore"
        assert "address" not in doc["customer"]
        assert "courier" not in doc

    def test_courier_section_written_once_booked(self):
        order = self._order()
        order.courier = CourierInfo(tracking_number="TRK1", booked_at=20)
        assert order.to_document()["courier"] == {"trackingNumber": "TRK1", "bookedAt": 20}

    def test_from_document_tolerates_legacy_placeholders(self):
        doc = {
            "order_name": "#7",
            "status": "confirmed",
            "timeline": {"createdAt": 5, "confirmedAt": "waiting", "deliveredAt": True},
        }
        order = Order.from_document("t1", "7", doc)
        assert order.status == OrderStatus.CONFIRMED
        assert order.timeline.created_at == 5
        assert order.timeline.confirmed_at is None
        assert order.timeline.delivered_at is None
        assert order.customer.name == "Customer"
        assert order.product.qty == 1

    def test_unknown_status_reads_as_pending(self):
        assert Order.from_document("t1", "1", {"status": "exploded"}).status == OrderStatus.PENDING

    def test_recency_prefers_last_message(self):
        older = Order("t1", "1", timeline=Timeline(created_at=100, last_msg_sent_at=500))
        newer = Order("t2", "2", timeline=Timeline(created_at=400))
        assert older.recency > newer.recency

    def test_recency_tie_broken_by_creation(self):
        a = Order("t1", "1", timeline=Timeline(created_at=100, last_msg_sent_at=500))
        b = Order("t2", "2", timeline=Timeline(created_at=200, last_msg_sent_at=500))
        assert b.recency > a.recency

    def test_field_paths(self):
        assert timeline_path("confirmed_at") == "timeline/confirmedAt"
        assert flag_path("delivered_sent") == "whatsapp/delivered_sent"


class TestTenantSecrets:
    def test_reads_provisioned_keys(self):
        secrets = TenantSecrets.model_validate({
            "SHOPIFY_SHOP": "acme.myshopify.com",
            "SHOPIFY_WEBHOOK_SECRET": "s",
            "AUTO_BOOK_COURIER": "true",
            "COUNTRY_CODE": 44,
            "UNRELATED": "ignored",
        })
        assert secrets.shop == "acme.myshopify.com"
        assert secrets.auto_book_courier is True
        assert secrets.country_code == "44"

    def test_defaults(self):
        secrets = TenantSecrets()
        assert secrets.auto_book_courier is False
        assert secrets.shop_name is None

    @pytest.mark.parametrize("raw,expected", [("+92", "92"), (" 0044 ", "0044"), ("+", None), ("", None)])
    def test_country_code_reduced_to_digits(self, raw, expected):
        assert TenantSecrets.model_validate({"COUNTRY_CODE": raw}).country_code == expected


class TestSettingsCountryCode:
    def test_plus_prefix_stripped(self):
        assert Settings(_env_file=None, default_country_code="+92").default_country_code == "92"

    def test_no_digits_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, default_country_code="+")
