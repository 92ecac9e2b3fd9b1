"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid)
- Idempotent event processing (duplicate event ids, replayed sessions)
- checkout.session.completed: one-time and subscription purchases
- customer.subscription.created / updated / deleted / paused / resumed
- invoice.payment_succeeded / invoice.payment_failed
- Handler failures return 400 and leave the event recorded
- Event insert failures return 400
- Concurrent project creation for one booking
"""

from unittest.mock import MagicMock, patch

import stripe
from sqlalchemy.exc import OperationalError

from studiodesk.extensions import db
from studiodesk.models.billing import BillingCustomer, Payment, ProjectSubscription, Subscription
from studiodesk.models.notification import Notification
from studiodesk.models.project import Booking, Project
from studiodesk.models.stripe_event import StripeEvent
from studiodesk.services.stripe_service import _create_booking, _create_project

PERIOD_END = 1798761600


def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _post(client):
    return client.post(
        "/stripe/webhooks",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _one_time_session(user_id, session_id="cs_test_one_time", **overrides):
    session = {
        "id": session_id,
        "mode": "payment",
        "payment_status": "paid",
        "amount_total": 45000,
        "currency": "usd",
        "customer_details": {"name": "Jane Client", "email": "jane@client.test"},
        "payment_method_types": ["card"],
        "metadata": {
            "user_id": user_id,
            "service_id": "svc-web",
            "service_name": "Website Build",
            "package_id": "pkg-basic",
            "package_name": "Basic",
        },
    }
    session.update(overrides)
    return session


def _subscription_session(user_id, session_id="cs_test_sub"):
    session = _one_time_session(user_id, session_id=session_id)
    session.update({
        "mode": "subscription",
        "amount_total": 5900,
        "subscription": "sub_123",
        "customer": "cus_123",
    })
    session["metadata"]["service_id"] = "svc-hosting"
    session["metadata"]["service_name"] = "Managed Hosting"
    return session


def _stripe_subscription(status="active", **overrides):
    sub = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": status,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "metadata": {},
        "items": {"data": [{
            "price": {"id": "price_hosting"},
            "current_period_end": PERIOD_END,
        }]},
    }
    sub.update(overrides)
    return sub


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client):
        resp = client.post("/stripe/webhooks", data="{}", content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Webhook misconfigured"

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_invalid_signature_returns_400(self, mock_construct, client):
        mock_construct.side_effect = stripe.error.SignatureVerificationError(
            "bad", "bad_sig"
        )
        resp = _post(client)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Invalid signature"


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_duplicate_event_returns_200(self, mock_construct, client, seed_data):
        db.session.add(StripeEvent(
            stripe_event_id="evt_duplicate_123",
            event_type="checkout.session.completed",
        ))
        db.session.commit()

        mock_construct.return_value = _event(
            "evt_duplicate_123",
            "checkout.session.completed",
            _one_time_session(seed_data["client_id"]),
        )

        resp = _post(client)

        assert resp.status_code == 200
        assert resp.get_json() == {"received": True, "duplicate": True}
        assert Payment.query.count() == 0

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_same_event_twice_creates_one_row_set(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event(
            "evt_once", "checkout.session.completed",
            _one_time_session(seed_data["client_id"]),
        )

        first = _post(client)
        second = _post(client)

        assert first.get_json() == {"received": True}
        assert second.get_json() == {"received": True, "duplicate": True}
        assert Payment.query.count() == 1
        assert Booking.query.count() == 1
        assert Project.query.count() == 1
        assert StripeEvent.query.count() == 1

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_replayed_session_under_new_event_id(self, mock_construct, client, seed_data):
        session = _one_time_session(seed_data["client_id"])
        mock_construct.side_effect = [
            _event("evt_first", "checkout.session.completed", session),
            _event("evt_retry", "checkout.session.completed", session),
        ]

        _post(client)
        resp = _post(client)

        assert resp.status_code == 200
        assert Payment.query.count() == 1
        assert Project.query.count() == 1


class TestCheckoutCompleted:
    """Tests for checkout.session.completed webhook."""

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_one_time_purchase_end_to_end(self, mock_construct, client, seed_data):
        user_id = seed_data["client_id"]
        mock_construct.return_value = _event(
            "evt_checkout_001", "checkout.session.completed", _one_time_session(user_id)
        )

        resp = _post(client)
        assert resp.status_code == 200

        payment = Payment.query.one()
        booking = Booking.query.one()
        project = Project.query.one()

        assert payment.status == "paid"
        assert float(payment.amount) == 450.0
        assert payment.currency == "USD"
        assert payment.booking_id == booking.id

        assert booking.status == "pending"
        assert booking.stripe_session_id == "cs_test_one_time"
        assert booking.session_id_from_notes() == "cs_test_one_time"

        assert project.booking_id == booking.id
        assert project.status == "pending"
        assert project.progress == 0
        assert project.payment_model == "one_time"
        assert project.user_id == user_id

        assert ProjectSubscription.query.count() == 0

        # Client + admin notified about the new project
        recipients = {n.user_id for n in Notification.query.filter_by(
            event_type="PROJECT_CREATED"
        )}
        assert recipients == {user_id, seed_data["admin_id"]}

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_unpaid_session_is_ignored(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event(
            "evt_unpaid", "checkout.session.completed",
            _one_time_session(seed_data["client_id"], payment_status="unpaid"),
        )

        resp = _post(client)

        assert resp.status_code == 200
        assert Payment.query.count() == 0

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_client_notes_sanitized(self, mock_construct, client, seed_data):
        session = _one_time_session(seed_data["client_id"])
        session["metadata"]["client_notes"] = "<script>x</script>Please use <b>blue</b>"
        mock_construct.return_value = _event("evt_notes", "checkout.session.completed", session)

        _post(client)

        project = Project.query.one()
        assert project.client_notes == "xPlease use blue"
        assert project.client_notes_updated_at is not None

    @patch("studiodesk.services.stripe_service.stripe.Subscription.retrieve")
    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_subscription_checkout_then_deleted(self, mock_construct, mock_sub_retrieve,
                                               client, seed_data):
        user_id = seed_data["client_id"]
        mock_sub_retrieve.return_value = _stripe_subscription()
        mock_construct.return_value = _event(
            "evt_sub_checkout", "checkout.session.completed", _subscription_session(user_id)
        )

        assert _post(client).status_code == 200

        project = Project.query.one()
        assert project.payment_model == "subscription"
        mirror = ProjectSubscription.query.one()
        assert mirror.project_id == project.id
        assert mirror.stripe_subscription_id == "sub_123"
        assert mirror.stripe_checkout_session_id == "cs_test_sub"
        assert mirror.status == "active"
        user_sub = Subscription.query.filter_by(user_id=user_id).one()
        assert user_sub.stripe_subscription_id == "sub_123"
        assert user_sub.price_id == "price_hosting"
        assert Payment.query.one().description == "Subscription: Managed Hosting"

        mock_construct.return_value = _event(
            "evt_sub_deleted", "customer.subscription.deleted",
            _stripe_subscription(status="canceled", ended_at=PERIOD_END),
        )
        assert _post(client).status_code == 200

        db.session.expire_all()
        mirror = ProjectSubscription.query.one()
        assert mirror.status == "canceled"
        assert mirror.canceled_at is not None
        assert mirror.access_until is not None
        assert Subscription.query.filter_by(user_id=user_id).one().status == "canceled"

    @patch("studiodesk.services.stripe_service.stripe.Subscription.retrieve")
    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_subscription_checkout_links_billing_customer(self, mock_construct,
                                                          mock_sub_retrieve,
                                                          client, seed_data):
        user_id = seed_data["client_id"]
        mock_sub_retrieve.return_value = _stripe_subscription()
        mock_construct.return_value = _event(
            "evt_sub_customer", "checkout.session.completed", _subscription_session(user_id)
        )

        assert _post(client).status_code == 200

        customer = BillingCustomer.query.one()
        assert customer.workspace_id == Project.query.one().workspace_id == user_id
        assert customer.stripe_customer_id == "cus_123"

    @patch("studiodesk.services.stripe_service.stripe.Subscription.retrieve")
    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_existing_workspace_customer_kept(self, mock_construct, mock_sub_retrieve,
                                              client, seed_data):
        user_id = seed_data["client_id"]
        db.session.add(BillingCustomer(workspace_id=user_id, stripe_customer_id="cus_old"))
        db.session.commit()
        mock_sub_retrieve.return_value = _stripe_subscription()
        mock_construct.return_value = _event(
            "evt_sub_known", "checkout.session.completed", _subscription_session(user_id)
        )

        assert _post(client).status_code == 200

        assert BillingCustomer.query.one().stripe_customer_id == "cus_old"
        assert ProjectSubscription.query.one().stripe_subscription_id == "sub_123"

    @patch("studiodesk.services.stripe_service.stripe.Subscription.retrieve")
    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_handler_failure_returns_400_and_keeps_event(self, mock_construct,
                                                         mock_sub_retrieve,
                                                         client, seed_data):
        mock_sub_retrieve.side_effect = stripe.error.APIConnectionError("down")
        mock_construct.return_value = _event(
            "evt_fails", "checkout.session.completed",
            _subscription_session(seed_data["client_id"]),
        )

        resp = _post(client)

        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Webhook error"}
        assert StripeEvent.query.filter_by(stripe_event_id="evt_fails").count() == 1
        assert Payment.query.count() == 0


def _seed_linked_subscription(user_id, status="active"):
    """Project + both mirrors for sub_123. Returns the project id."""
    project = Project(
        user_id=user_id, client_id=user_id, name="Managed Hosting",
        service_id="svc-hosting", payment_model="subscription",
    )
    db.session.add(project)
    db.session.flush()
    db.session.add(ProjectSubscription(
        project_id=project.id, stripe_subscription_id="sub_123",
        stripe_customer_id="cus_123", status=status,
    ))
    db.session.add(Subscription(
        user_id=user_id, stripe_subscription_id="sub_123",
        stripe_customer_id="cus_123", status=status,
    ))
    db.session.commit()
    return project.id


class TestSubscriptionEvents:
    """Tests for customer.subscription.* webhooks."""

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_updated_without_local_rows_is_noop(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event(
            "evt_update_orphan", "customer.subscription.updated",
            _stripe_subscription(id="sub_unknown", status="past_due"),
        )

        resp = _post(client)

        assert resp.status_code == 200
        assert ProjectSubscription.query.count() == 0
        assert Subscription.query.count() == 0

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_updated_syncs_both_mirrors(self, mock_construct, client, seed_data):
        _seed_linked_subscription(seed_data["client_id"])
        mock_construct.return_value = _event(
            "evt_update_001", "customer.subscription.updated",
            _stripe_subscription(status="past_due", cancel_at_period_end=True),
        )

        _post(client)

        db.session.expire_all()
        mirror = ProjectSubscription.query.one()
        assert mirror.status == "past_due"
        assert mirror.cancel_at_period_end is True
        assert mirror.next_renewal_date is not None
        user_sub = Subscription.query.one()
        assert user_sub.status == "past_due"
        assert user_sub.current_period_end is not None

    @patch("studiodesk.services.stripe_service.stripe.Customer.retrieve")
    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_created_links_project_by_metadata(self, mock_construct, mock_customer,
                                               client, seed_data):
        user_id = seed_data["client_id"]
        project = Project(
            user_id=user_id, client_id=user_id, name="Managed Hosting",
            service_id="svc-hosting", payment_model="subscription",
        )
        db.session.add(project)
        db.session.commit()
        project_id = project.id

        mock_customer.return_value = {"id": "cus_123", "email": "jane@client.test"}
        mock_construct.return_value = _event(
            "evt_created", "customer.subscription.created",
            _stripe_subscription(metadata={"user_id": user_id, "service_id": "svc-hosting"}),
        )

        assert _post(client).status_code == 200

        mirror = ProjectSubscription.query.one()
        assert mirror.project_id == project_id
        assert mirror.stripe_subscription_id == "sub_123"
        assert Subscription.query.filter_by(user_id=user_id).count() == 1
        assert Notification.query.filter_by(
            event_type="SUBSCRIPTION_ACTIVATED", user_id=user_id
        ).count() == 1

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_paused_then_resumed(self, mock_construct, client, seed_data):
        _seed_linked_subscription(seed_data["client_id"])

        mock_construct.return_value = _event(
            "evt_paused", "customer.subscription.paused",
            _stripe_subscription(status="paused", pause_collection={"behavior": "void"}),
        )
        _post(client)
        db.session.expire_all()
        mirror = ProjectSubscription.query.one()
        assert mirror.status == "paused"
        assert mirror.paused_at is not None

        mock_construct.return_value = _event(
            "evt_resumed", "customer.subscription.resumed", _stripe_subscription()
        )
        _post(client)
        db.session.expire_all()
        mirror = ProjectSubscription.query.one()
        assert mirror.status == "active"
        assert mirror.paused_at is None

        events = {n.event_type for n in Notification.query.all()}
        assert {"SUBSCRIPTION_PAUSED", "SUBSCRIPTION_RESUMED"} <= events


class TestInvoiceEvents:
    """Tests for invoice.* webhooks."""

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_renewal_payment_recorded_once(self, mock_construct, client, seed_data):
        _seed_linked_subscription(seed_data["client_id"])
        invoice = {
            "id": "in_renewal_1",
            "billing_reason": "subscription_cycle",
            "amount_paid": 5900,
            "currency": "usd",
            "customer_email": "jane@client.test",
            "parent": {"subscription_details": {"subscription": "sub_123"}},
        }
        mock_construct.side_effect = [
            _event("evt_inv_1", "invoice.payment_succeeded", invoice),
            _event("evt_inv_1_retry", "invoice.payment_succeeded", invoice),
        ]

        _post(client)
        _post(client)

        payment = Payment.query.one()
        assert payment.stripe_invoice_id == "in_renewal_1"
        assert payment.user_id == seed_data["client_id"]
        assert payment.description == "Subscription renewal"

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_first_invoice_skipped(self, mock_construct, client, seed_data):
        _seed_linked_subscription(seed_data["client_id"])
        mock_construct.return_value = _event("evt_inv_create", "invoice.payment_succeeded", {
            "id": "in_first",
            "billing_reason": "subscription_create",
            "subscription": "sub_123",
            "amount_paid": 5900,
        })

        _post(client)

        assert Payment.query.count() == 0

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_payment_failed_marks_past_due(self, mock_construct, client, seed_data):
        _seed_linked_subscription(seed_data["client_id"])
        mock_construct.return_value = _event("evt_inv_failed", "invoice.payment_failed", {
            "id": "in_failed",
            "subscription": "sub_123",
            "attempt_count": 2,
        })

        _post(client)

        db.session.expire_all()
        assert ProjectSubscription.query.one().status == "past_due"
        assert Subscription.query.one().status == "past_due"
        recipients = {n.user_id for n in Notification.query.filter_by(
            event_type="PAYMENT_FAILED"
        )}
        assert recipients == {seed_data["client_id"], seed_data["admin_id"]}

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_event_type_recorded(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event("evt_other", "charge.refunded", {"id": "ch_1"})

        resp = _post(client)

        assert resp.status_code == 200
        assert resp.get_json() == {"received": True}
        assert StripeEvent.query.filter_by(stripe_event_id="evt_other").count() == 1


class TestEventRecording:

    @patch("studiodesk.services.stripe_service.stripe.Webhook.construct_event")
    def test_database_failure_returns_400(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event("evt_db_down", "invoice.created", {"id": "in_1"})

        with patch.object(
            db.session, "commit",
            side_effect=OperationalError("INSERT", {}, Exception("db down")),
        ):
            resp = _post(client)

        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Webhook error"}
        assert StripeEvent.query.count() == 0


class TestCreateProject:

    def test_unique_violation_returns_existing_project(self, seed_data):
        user_id = seed_data["client_id"]
        session = _one_time_session(user_id)
        booking = _create_booking(session, user_id)
        existing = Project(
            user_id=user_id,
            workspace_id=user_id,
            booking_id=booking.id,
            name="Website Build",
            payment_model="one_time",
        )
        db.session.add(existing)
        db.session.flush()

        # The pre-check misses the row, as if another delivery inserted it meanwhile
        query = MagicMock()
        query.filter_by.return_value.first.side_effect = [None, existing]
        with patch.object(Project, "query", query):
            project, created = _create_project(session, user_id, booking)

        assert (project, created) == (existing, False)
        assert Project.query.filter_by(booking_id=booking.id).count() == 1
