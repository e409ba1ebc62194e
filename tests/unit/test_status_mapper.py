"""Status mapping: totality, default tables, YAML overrides."""

import pytest

from recon_api.billing.status_mapper import (
    GiftPaymentStatus,
    GiftStatus,
    OrderStatus,
    StatusMapper,
    SubscriptionStatus,
    load_status_mapper,
)


class TestDefaultTables:
    """Default gateway → internal mapping."""

    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("approved", OrderStatus.PAID),
            ("authorized", OrderStatus.PAID),
            ("pending", OrderStatus.PENDING),
            ("in_process", OrderStatus.PROCESSING),
            ("rejected", OrderStatus.CANCELLED),
            ("cancelled", OrderStatus.CANCELLED),
            ("refunded", OrderStatus.REFUNDED),
            ("charged_back", OrderStatus.REFUNDED),
        ],
    )
    def test_order_table(self, gateway_status, expected):
        assert StatusMapper().map_order(gateway_status) is expected

    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("approved", GiftPaymentStatus.PAID),
            ("in_process", GiftPaymentStatus.PENDING),
            ("rejected", GiftPaymentStatus.FAILED),
            ("cancelled", GiftPaymentStatus.FAILED),
        ],
    )
    def test_gift_table(self, gateway_status, expected):
        assert StatusMapper().map_gift_payment(gateway_status) is expected

    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("authorized", SubscriptionStatus.ACTIVE),
            ("paused", SubscriptionStatus.PAUSED),
            ("cancelled", SubscriptionStatus.CANCELLED),
            ("pending", SubscriptionStatus.PENDING),
        ],
    )
    def test_subscription_table(self, gateway_status, expected):
        assert StatusMapper().map_subscription(gateway_status) is expected

    @pytest.mark.parametrize("gateway_status", [None, "", "something_new", 42, "  "])
    def test_unknown_status_maps_to_pending(self, gateway_status):
        mapper = StatusMapper()
        assert mapper.map_order(gateway_status) is OrderStatus.PENDING
        assert mapper.map_gift_payment(gateway_status) is GiftPaymentStatus.PENDING
        assert mapper.map_subscription(gateway_status) is SubscriptionStatus.PENDING

    def test_lookup_is_case_and_whitespace_insensitive(self):
        assert StatusMapper().map_order(" APPROVED ") is OrderStatus.PAID


class TestGiftStatusDerivation:
    def test_paid_not_yet_notified(self):
        assert StatusMapper.derive_gift_status(GiftPaymentStatus.PAID, False) is GiftStatus.PAID

    def test_paid_already_notified_stays_notified(self):
        assert StatusMapper.derive_gift_status(GiftPaymentStatus.PAID, True) is GiftStatus.NOTIFIED

    @pytest.mark.parametrize("payment_status", [GiftPaymentStatus.PENDING, GiftPaymentStatus.FAILED])
    def test_unpaid_is_pending(self, payment_status):
        assert StatusMapper.derive_gift_status(payment_status, False) is GiftStatus.PENDING


class TestInjectedTables:
    def test_custom_table_replaces_default(self):
        mapper = StatusMapper(order_table={"approved": OrderStatus.PROCESSING})
        assert mapper.map_order("approved") is OrderStatus.PROCESSING
        assert mapper.map_order("rejected") is OrderStatus.PENDING


class TestLoadStatusMapper:
    def test_no_path_returns_defaults(self):
        assert load_status_mapper(None).map_order("approved") is OrderStatus.PAID

    def test_yaml_overrides_merge_onto_defaults(self, tmp_path):
        path = tmp_path / "mapping.yaml"
        path.write_text(
            "order:\n"
            "  partially_refunded: refunded\n"
            "subscription:\n"
            "  expired: Cancelled\n",
            encoding="utf-8",
        )

        mapper = load_status_mapper(str(path))

        assert mapper.map_order("partially_refunded") is OrderStatus.REFUNDED
        assert mapper.map_order("approved") is OrderStatus.PAID
        assert mapper.map_subscription("expired") is SubscriptionStatus.CANCELLED
        assert mapper.map_gift_payment("approved") is GiftPaymentStatus.PAID

    def test_unknown_internal_status_rejected(self, tmp_path):
        path = tmp_path / "mapping.yaml"
        path.write_text("gift:\n  approved: delivered\n", encoding="utf-8")

        with pytest.raises(ValueError, match="gift.approved"):
            load_status_mapper(str(path))

    def test_malformed_yaml_rejected(self, tmp_path):
        path = tmp_path / "mapping.yaml"
        path.write_text("order: [approved: paid\n", encoding="utf-8")

        with pytest.raises(ValueError, match="not valid YAML"):
            load_status_mapper(str(path))

    def test_non_mapping_document_rejected(self, tmp_path):
        path = tmp_path / "mapping.yaml"
        path.write_text("- approved\n- pending\n", encoding="utf-8")

        with pytest.raises(ValueError, match="mapping at top level"):
            load_status_mapper(str(path))

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_status_mapper(str(tmp_path / "absent.yaml"))
