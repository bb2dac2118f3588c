"""
NOTIFICATION SERVICE

Fire-and-forget transactional email (Brevo API) for escrow domain events.
Handlers are registered on the DomainEventEmitter and run only after the
transaction committed, so a failed email never rolls anything back.

Without BREVO_API_KEY / NOTIFICATION_SENDER the service runs in log-only
dev mode.
"""

from typing import Dict, Any, Optional, Tuple
from collections import deque
import html
import logging
import os

import httpx

from adogalo.core.transaction import DomainEventEmitter

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

OUTBOX_LIMIT = 200

FOOTER = "Adogalo - Sistem Manajemen Proyek Konstruksi"


def notification_html(title: str, body: str, project_title: Optional[str] = None) -> str:
    project_line = ""
    if project_title:
        project_line = f'<p style="color:#94a3b8;font-size:14px;">Proyek: {html.escape(project_title)}</p>'
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        '<body style="font-family:sans-serif;padding:24px;">'
        f'<h2 style="color:#FF9013;">{html.escape(title)}</h2>'
        f"{project_line}"
        f'<p style="line-height:1.6;">{body}</p>'
        f'<p style="color:#64748b;font-size:12px;">{FOOTER}</p>'
        "</body></html>"
    )


class NotificationService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        admin_email: Optional[str] = None,
        timeout: float = 10.0
    ):
        self.api_key = api_key
        self.sender = sender
        self.admin_email = admin_email
        self.timeout = timeout
        # dev mode keeps the most recent mails that would have been sent
        self.outbox = deque(maxlen=OUTBOX_LIMIT)

    @classmethod
    def from_env(cls) -> "NotificationService":
        return cls(
            api_key=os.environ.get("BREVO_API_KEY"),
            sender=os.environ.get("NOTIFICATION_SENDER"),
            admin_email=os.environ.get("ADMIN_NOTIFICATION_EMAIL"),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.sender)

    async def send_email(self, to: Optional[str], subject: str, html_content: str) -> bool:
        if not to:
            logger.warning(f"[NOTIFY] No recipient for '{subject}', skipped")
            return False

        if not self.enabled:
            self.outbox.append({"to": to, "subject": subject})
            logger.info(f"[NOTIFY] (dev) to={to} subject={subject}")
            return True

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    BREVO_API_URL,
                    headers={"api-key": self.api_key, "Content-Type": "application/json"},
                    json={
                        "sender": {"email": self.sender},
                        "to": [{"email": to}],
                        "subject": subject,
                        "htmlContent": html_content,
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"[NOTIFY] Failed to send '{subject}' to {to}: {e}")
            return False

        logger.info(f"[NOTIFY] Sent '{subject}' to {to}")
        return True

    # =========================================================================
    # EVENT -> EMAIL
    # =========================================================================

    def _render(self, event_type: str, payload: Dict[str, Any]) -> Optional[Tuple[Optional[str], str, str, str]]:
        """(recipient, subject, title, body) for an event, None if unknown."""
        project = payload.get("project_title")

        if event_type == "milestone.finished":
            milestone = html.escape(payload.get("milestone_title", ""))
            return (
                payload.get("client_email"),
                f'[Adogalo] Pekerjaan "{payload.get("milestone_title")}" menunggu persetujuan',
                "Pekerjaan diajukan selesai",
                f"Vendor telah mengajukan penyelesaian pekerjaan: <strong>{milestone}</strong>. "
                "Silakan tinjau dan setujui di aplikasi.",
            )
        if event_type == "termin.payment_requested":
            return (
                self.admin_email,
                f"[Adogalo] Permintaan konfirmasi pembayaran termin - {project}",
                "Client mengajukan pembayaran termin",
                f"Client {html.escape(payload.get('client_name') or '')} mengajukan pembayaran "
                f"<strong>{html.escape(payload.get('termin_title', ''))}</strong>. Silakan cek transfer dan konfirmasi.",
            )
        if event_type == "termin.paid":
            return (
                payload.get("client_email"),
                "[Adogalo] Pembayaran termin dikonfirmasi",
                "Pembayaran diterima",
                f"Pembayaran <strong>{html.escape(payload.get('termin_title', ''))}</strong> telah dikonfirmasi admin.",
            )
        if event_type == "termin.refunded":
            return (
                payload.get("client_email"),
                "[Adogalo] Pengembalian dana diproses",
                "Pengembalian dana",
                f"Dana sebesar {payload.get('amount')} untuk "
                f"<strong>{html.escape(payload.get('termin_title', ''))}</strong> telah dikembalikan.",
            )
        if event_type == "retensi.proposed":
            return (
                payload.get("client_email"),
                "[Adogalo] Vendor mengajukan retensi",
                "Pengajuan retensi",
                f"Vendor mengajukan retensi {payload.get('percent')}% selama {payload.get('days')} hari "
                f"(nilai {payload.get('value')}). Silakan setujui atau tolak di aplikasi.",
            )
        if event_type == "retensi.approved":
            return (
                payload.get("vendor_email"),
                "[Adogalo] Retensi disetujui client",
                "Retensi disetujui",
                "Client menyetujui pengajuan retensi Anda.",
            )
        if event_type == "retensi.rejected":
            return (
                payload.get("vendor_email"),
                "[Adogalo] Retensi ditolak client",
                "Retensi ditolak",
                "Client menolak pengajuan retensi Anda.",
            )
        if event_type == "retensi.complaint":
            return (
                payload.get("vendor_email"),
                "[Adogalo] Ada komplain pada masa retensi",
                "Komplain masa retensi",
                "Client mengajukan komplain selama masa retensi. "
                "Silakan lakukan perbaikan dan upload bukti di aplikasi.",
            )
        if event_type == "retensi.fix_submitted":
            return (
                payload.get("client_email"),
                "[Adogalo] Perbaikan komplain retensi telah diupload",
                "Perbaikan diupload",
                "Vendor telah mengupload bukti perbaikan untuk komplain retensi. "
                "Silakan tinjau dan konfirmasi di aplikasi.",
            )
        if event_type == "retensi.fix_rejected":
            return (
                payload.get("vendor_email"),
                "[Adogalo] Perbaikan retensi ditolak client",
                "Perbaikan ditolak",
                "Client menolak perbaikan yang diupload. Silakan perbaiki kembali.",
            )
        return None

    async def handle_event(self, event: Dict[str, Any]):
        rendered = self._render(event["event_type"], event.get("payload", {}))
        if rendered is None:
            logger.debug(f"[NOTIFY] No template for {event['event_type']}")
            return
        recipient, subject, title, body = rendered
        await self.send_email(
            recipient, subject, notification_html(title, body, event.get("payload", {}).get("project_title"))
        )

    def register(self, emitter: DomainEventEmitter):
        for event_type in NOTIFIED_EVENTS:
            emitter.register_handler(event_type, self.handle_event)


NOTIFIED_EVENTS = (
    "milestone.finished",
    "termin.payment_requested",
    "termin.paid",
    "termin.refunded",
    "retensi.proposed",
    "retensi.approved",
    "retensi.rejected",
    "retensi.complaint",
    "retensi.fix_submitted",
    "retensi.fix_rejected",
)
