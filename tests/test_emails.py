import resend

from snapthis.emails import build_guest_page_email_html, send_guest_page_email

PAGE = {"id": "tok1", "title": "Ala & Olek"}
LINK = "https://snapthis.pl/guest/tok1"


def test_requires_api_key():
    assert send_guest_page_email("buyer@example.com", PAGE, LINK, "") == (
        False,
        "Resend API key is not configured.",
    )


def test_requires_recipient():
    sent, error = send_guest_page_email("", PAGE, LINK, "re_key")
    assert sent is False
    assert "buyer email" in error


def test_sends_through_resend(monkeypatch):
    payloads = []

    def fake_send(payload):
        payloads.append((payload, resend.api_key))
        return {"id": "email_1"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    monkeypatch.setattr(resend, "api_key", "previous")

    result = send_guest_page_email(
        " Buyer@Example.com ", PAGE, LINK, "re_key", contact_email="kontakt@snapthis.pl"
    )

    assert result == (True, None)
    payload, key_during_send = payloads[0]
    assert key_during_send == "re_key"
    assert resend.api_key == "previous"
    assert payload["to"] == ["buyer@example.com"]
    assert LINK in payload["text"]
    assert LINK in payload["html"]
    assert payload["from"] == "SnapThis <noreply@snapthis.pl>"


def test_resend_error_is_reported(monkeypatch):
    def fake_send(payload):
        raise RuntimeError("domain not verified")

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    assert send_guest_page_email("a@b.pl", PAGE, LINK, "re_key") == (
        False,
        "domain not verified",
    )


def test_html_escapes_title():
    html = build_guest_page_email_html("<b>Party</b>", LINK, "kontakt@snapthis.pl")
    assert "&lt;b&gt;Party&lt;/b&gt;" in html
    assert "<b>Party</b>" not in html
