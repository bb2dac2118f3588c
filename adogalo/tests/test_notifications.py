"""
Event -> email mapping (log-only dev mode, no network)
"""
from adogalo.core.transaction import DomainEventEmitter, UnitOfWork
from adogalo.notification_service import NotificationService, NOTIFIED_EVENTS, OUTBOX_LIMIT, notification_html


def _event(event_type, **payload):
    unit = UnitOfWork("p-1")
    unit.queue_event(event_type, payload)
    return unit.drain()


class TestRendering:
    def test_recipients_follow_the_event(self):
        service = NotificationService(admin_email="ops@adogalo.example.com")
        assert service._render("milestone.finished", {"client_email": "c@x.com"})[0] == "c@x.com"
        assert service._render("termin.payment_requested", {"termin_title": "Termin 1"})[0] == "ops@adogalo.example.com"
        assert service._render("retensi.complaint", {"vendor_email": "v@x.com"})[0] == "v@x.com"

    def test_every_notified_event_has_a_template(self):
        service = NotificationService()
        for event_type in NOTIFIED_EVENTS:
            assert service._render(event_type, {}) is not None
        assert service._render("milestone.started", {}) is None

    def test_html_escapes_titles(self):
        body = notification_html("Judul", "Isi", project_title="<Rumah & Taman>")
        assert "&lt;Rumah &amp; Taman&gt;" in body


class TestDevMode:
    """Without Brevo credentials mails are only recorded"""

    async def test_outbox_records_sent_mail(self):
        service = NotificationService()
        emitter = DomainEventEmitter()
        service.register(emitter)

        await emitter.emit(_event("termin.paid", client_email="client@example.com",
                                  project_title="Rumah", termin_title="Termin 1"))

        assert service.enabled is False
        assert list(service.outbox) == [{"to": "client@example.com", "subject": "[Adogalo] Pembayaran termin dikonfirmasi"}]

    async def test_missing_recipient_is_skipped(self):
        service = NotificationService()
        assert await service.send_email(None, "Subjek", "<p></p>") is False
        assert len(service.outbox) == 0

    async def test_unrelated_events_are_ignored(self):
        service = NotificationService()
        emitter = DomainEventEmitter()
        service.register(emitter)
        await emitter.emit(_event("milestone.started", client_email="client@example.com"))
        assert len(service.outbox) == 0

    async def test_outbox_keeps_only_recent_mail(self):
        service = NotificationService()
        for index in range(OUTBOX_LIMIT + 5):
            await service.send_email(f"c{index}@example.com", "Subjek", "<p></p>")
        assert len(service.outbox) == OUTBOX_LIMIT
        assert service.outbox[0]["to"] == "c5@example.com"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BREVO_API_KEY", "key")
        monkeypatch.setenv("NOTIFICATION_SENDER", "noreply@adogalo.example.com")
        monkeypatch.delenv("ADMIN_NOTIFICATION_EMAIL", raising=False)
        service = NotificationService.from_env()
        assert service.enabled is True
        assert service.admin_email is None
