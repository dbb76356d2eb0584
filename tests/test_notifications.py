import smtplib

from settlement.services import notifications
from settlement.services.notifications import (
    EmailService,
    Notification,
    NotificationBus,
    SMTPConfig,
    deliver_notification,
    get_bus,
    make_email_handler,
    notify,
    render_payout_email,
)


class _FakeEmail(EmailService):
    def __init__(self):
        super().__init__(SMTPConfig(host="", port=0, username="", password=""))
        self.sent = []

    def send_text(self, to_email, subject, text):
        self.sent.append((to_email, subject, text))
        return True


def test_failing_handler_does_not_stop_the_others():
    bus = NotificationBus(sync=True)
    seen = []

    def explode(_msg):
        raise RuntimeError("smtp down")

    bus.subscribe("payout.completed", explode)
    bus.subscribe("payout.completed", lambda msg: seen.append(msg.payload["payout_id"]))

    assert bus.publish("payout.completed", {"payout_id": "po_1"}) is True
    assert seen == ["po_1"]
    assert bus.failed == 1
    assert bus.delivered == 1


def test_queued_delivery_runs_in_a_celery_task(app):
    bus = get_bus()
    bus.sync = False
    seen = []
    bus.subscribe("payout.approved", lambda msg: seen.append(msg.payload["payout_id"]))

    assert notify("payout.approved", payout_id="po_1", amount="300.00") is True
    assert seen == ["po_1"]


def test_one_task_is_queued_per_handler(app, monkeypatch):
    bus = get_bus()
    bus.sync = False
    bus.subscribe("*", lambda msg: None, name="tracker")
    queued = []

    class _Task:
        @staticmethod
        def apply_async(args, **_kw):
            queued.append(args)

    monkeypatch.setattr(notifications, "deliver_notification", _Task)
    bus.publish("payout.completed", {"payout_id": "po_2"})

    assert [a[2] for a in queued] == ["email", "tracker"]
    assert queued[0][:2] == ("payout.completed", {"payout_id": "po_2"})


def test_smtp_failure_is_retried(app):
    calls = []

    def flaky(msg):
        calls.append(msg.event)
        if len(calls) == 1:
            raise smtplib.SMTPServerDisconnected("connection lost")

    get_bus().subscribe("payout.completed", flaky, name="flaky")

    result = deliver_notification.apply(args=("payout.completed", {"payout_id": "po_3"}, "flaky"))

    assert calls == ["payout.completed", "payout.completed"]
    assert result.successful()


def test_disabled_bus_drops_everything():
    bus = NotificationBus(sync=True, enabled=False)
    seen = []
    bus.subscribe("*", seen.append)
    assert bus.publish("payout.requested") is False
    assert seen == []


def test_unconfigured_email_service_does_not_send():
    email = EmailService(SMTPConfig(host="", port=587, username="", password=""))
    assert email.ready() is False
    assert email.send_text("v@example.com", "hi", "body") is False


def test_payout_email_rendering():
    fake = _FakeEmail()
    handler = make_email_handler(fake)

    handler(Notification("payout.failed", {
        "to": "v1@example.com",
        "vendor_name": "V1",
        "payout_id": "po_9",
        "amount": "300.00",
        "status": "FAILED",
        "failure_reason": "invalid bank details",
    }))
    handler(Notification("payout.failed", {"payout_id": "po_10"}))

    assert len(fake.sent) == 1
    to, subject, body = fake.sent[0]
    assert to == "v1@example.com"
    assert subject == "Payout request rejected"
    assert "Reason: invalid bank details" in body


def test_render_includes_transaction_reference():
    text = render_payout_email(Notification("payout.completed", {"payout_id": "po_1", "amount": "300.00",
                                                                 "external_transaction_id": "UTR123"}))
    assert "UTR123" in text
    assert text.startswith("Hello vendor,")


def test_notify_without_app_is_a_no_op():
    assert notify("payout.requested", payout_id="po_1") is False


def test_notify_uses_installed_bus(app):
    seen = []
    app.extensions["notifications"].subscribe("wallet.frozen", lambda msg: seen.append(msg.payload))
    assert notify("wallet.frozen", vendor_id=3) is True
    assert seen == [{"vendor_id": 3}]
