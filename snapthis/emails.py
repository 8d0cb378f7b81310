from html import escape
from typing import Dict, Optional, Tuple

import resend

DEFAULT_SENDER = "SnapThis <noreply@snapthis.pl>"
GUEST_PAGE_SUBJECT = "Twoja strona SnapThis jest gotowa"


def send_email_via_resend(
    payload: Dict[str, object], api_key: Optional[str]
) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def build_guest_page_email_html(title: str, link: str, contact_email: str) -> str:
    safe_title = escape(title or "SnapThis")
    safe_link = escape(link, quote=True)
    safe_contact = escape(contact_email or "")
    return f"""<!DOCTYPE html>
<html lang="pl">
  <body style="margin:0;padding:0;background:#f5f5f5;font-family:Arial,Helvetica,sans-serif;color:#222;">
    <div style="max-width:560px;margin:0 auto;padding:32px 24px;background:#ffffff;">
      <h1 style="margin:0 0 16px 0;font-size:22px;">{safe_title}</h1>
      <p style="margin:0 0 16px 0;font-size:15px;line-height:1.6;">
        Dziękujemy za zakup! Udostępnij ten link gościom, aby mogli dodawać zdjęcia:
      </p>
      <p style="margin:0 0 24px 0;">
        <a href="{safe_link}" style="display:inline-block;padding:12px 20px;background:#111;color:#fff;text-decoration:none;border-radius:6px;">{safe_link}</a>
      </p>
      <p style="margin:0;font-size:13px;color:#666;">
        Pytania? Napisz do nas: {safe_contact}
      </p>
    </div>
  </body>
</html>"""


def send_guest_page_email(
    recipient_email: str,
    page: Dict,
    link: str,
    api_key: Optional[str],
    sender: Optional[str] = None,
    contact_email: str = "",
) -> Tuple[bool, Optional[str]]:
    recipient = str(recipient_email or "").strip().lower()
    if not recipient:
        return False, "Missing buyer email for the guest page link."

    title = str(page.get("title") or "").strip() or "SnapThis"
    text_body = (
        f"Dziękujemy za zakup! Twoja strona \"{title}\" jest gotowa.\n"
        f"Link dla gości: {link}\n\n"
        "SnapThis"
    )
    payload: Dict[str, object] = {
        "from": sender or DEFAULT_SENDER,
        "to": [recipient],
        "subject": GUEST_PAGE_SUBJECT,
        "html": build_guest_page_email_html(title, link, contact_email),
        "text": text_body,
    }
    return send_email_via_resend(payload, api_key)
