"""Records: parsing and merge rules."""

from decimal import Decimal

import pytest

from donation_core.models import (
    Donation, DonationPage, PaymentReturn, PaymentStatus, PaymentStatusResult, Session,
)
from donation_core.storage import SessionStore

from conftest import donation_payload


class TestPaymentStatus:
    @pytest.mark.parametrize("raw, expected", [
        ("approved", PaymentStatus.APPROVED),
        ("PENDING", PaymentStatus.PENDING),
        (3, PaymentStatus.DECLINED),
        ("4", PaymentStatus.EXPIRED),
        (PaymentStatus.APPROVED, PaymentStatus.APPROVED),
        ("refunded", None),
        (9, None),
        (None, None),
    ])
    def test_parse(self, raw, expected):
        assert PaymentStatus.parse(raw) is expected

    def test_only_pending_is_non_terminal(self):
        assert [s for s in PaymentStatus if not s.is_terminal] == [PaymentStatus.PENDING]


class TestDonation:
    def test_from_api(self):
        d = Donation.from_api(donation_payload(5, "APPROVED", "ORD-5", paid_at="2026-10-02T08:30:00Z"))
        assert d.id == 5
        assert d.amount == Decimal("25.00")
        assert d.status is PaymentStatus.APPROVED
        assert d.gateway_order_id == "ORD-5"
        assert d.paid_at.tzinfo is not None

    def test_numeric_status_id(self):
        data = donation_payload(5)
        del data["status"]
        data["status_id"] = 2
        assert Donation.from_api(data).status is PaymentStatus.APPROVED

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValueError):
            Donation.from_api(donation_payload(5, "REFUNDED"))

    def test_awaiting_gateway_needs_an_order(self):
        assert Donation.from_api(donation_payload(1, "PENDING", "ORD-1")).awaiting_gateway
        assert not Donation.from_api(donation_payload(1, "PENDING", None)).awaiting_gateway
        assert not Donation.from_api(donation_payload(1, "APPROVED", "ORD-1")).awaiting_gateway

    def test_merge_keeps_terminal_over_pending(self):
        approved = Donation.from_api(donation_payload(1, "APPROVED", "ORD-1"))
        pending = Donation.from_api(donation_payload(1, "PENDING", "ORD-1"))
        assert approved.merge(pending) is approved
        assert pending.merge(approved) is approved

    def test_merge_never_clears_the_order_id(self):
        with_order = Donation.from_api(donation_payload(1, "PENDING", "ORD-1"))
        without = Donation.from_api(donation_payload(1, "PENDING", None))
        assert with_order.merge(without).gateway_order_id == "ORD-1"

    def test_with_status_cannot_regress(self):
        declined = Donation.from_api(donation_payload(1, "DECLINED", "ORD-1"))
        assert declined.with_status(PaymentStatus.PENDING) is declined

    def test_page_merge_is_per_donation(self):
        old = DonationPage.from_api({"donations": [
            donation_payload(1, "APPROVED", "ORD-1"), donation_payload(2, "PENDING", "ORD-2"),
        ]})
        new = DonationPage.from_api({"donations": [
            donation_payload(1, "PENDING", "ORD-1"), donation_payload(2, "DECLINED", "ORD-2"),
            donation_payload(3),
        ], "total": 3})

        merged = old.merge(new)

        assert [d.status for d in merged.donations] == [
            PaymentStatus.APPROVED, PaymentStatus.DECLINED, PaymentStatus.PENDING,
        ]
        assert merged.total == 3


class TestPaymentStatusResult:
    def test_supersedes(self):
        approved = PaymentStatusResult.from_api({"status": "APPROVED", "donation_id": 1})
        pending = PaymentStatusResult.from_api({"status": "PENDING", "donation_id": 1})
        assert approved.supersedes(pending)
        assert approved.supersedes(None)
        assert not pending.supersedes(approved)

    def test_order_id_aliases(self):
        result = PaymentStatusResult.from_api({"status_id": 1, "payu_order_id": "ORD-1"})
        assert result.status is PaymentStatus.PENDING
        assert result.gateway_order_id == "ORD-1"


class TestPaymentReturn:
    def test_from_url(self):
        ret = PaymentReturn.from_url(
            "https://portal.test/return?referenceCode=DON-4&transactionId=tx-9&extra1=4&orderId=ORD-4"
        )
        assert ret == PaymentReturn("DON-4", "tx-9", "4", "ORD-4")
        assert ret.can_resume

    def test_only_reference_cannot_resume(self):
        assert not PaymentReturn.from_query({"referenceCode": "DON-4"}).can_resume


class TestSession:
    def test_record_round_trip_keeps_role_order(self):
        session = Session.build({"id": 1, "email": "a@x.org", "roles": ["DONOR", "ADMIN"]}, "a", "r")
        restored = Session.from_record(session.profile_record(), "a", "r")
        assert restored.primary_role == "donor"
        assert restored.issued_at == session.issued_at

    def test_degraded_tokens_are_recognised(self):
        session = Session.build({"email": "a@x.org"}, "degraded_access_1", "r")
        assert session.looks_degraded


class TestSessionStore:
    def test_partial_group_is_refused(self, tmp_path):
        store = SessionStore(tmp_path / "s.json")
        with pytest.raises(ValueError):
            store.save({"email": "a@x.org"}, "a1", None)
        assert store.load() is None

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "s.json"
        path.write_text("[1, 2", encoding="utf-8")
        with pytest.raises(ValueError):
            SessionStore(path).load()

    def test_clear_when_empty(self, tmp_path):
        SessionStore(tmp_path / "s.json").clear()
