from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from .cadence import as_utc
from .config import settings

SMS_EXCERPT_LIMIT = 100
DIGEST_EXCERPT_LIMIT = 140

_TYPE_LABELS = {
    "en": {
        "new_lead": ("new lead", "new leads"),
        "new_message": ("new message", "new messages"),
        "lead_managed": ("lead handled", "leads handled"),
        "lead_converted": ("lead converted", "leads converted"),
        "ai_failed": ("AI reply failed", "AI replies failed"),
    },
    "da": {
        "new_lead": ("nyt kundeemne", "nye kundeemner"),
        "new_message": ("ny besked", "nye beskeder"),
        "lead_managed": ("kundeemne håndteret", "kundeemner håndteret"),
        "lead_converted": ("kundeemne konverteret", "kundeemner konverteret"),
        "ai_failed": ("AI-svar fejlede", "AI-svar fejlede"),
    },
}


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    body_text: str
    body_html: Optional[str] = None


class UnknownTemplate(ValueError):
    pass


def _lang(lang: Optional[str]) -> str:
    lang = (lang or settings.notification_language or "en").split(",")[0][:2].lower()
    return lang if lang in _TYPE_LABELS else "en"


def _esc(value: Any) -> str:
    return html.escape("" if value is None else str(value))


def _truncate(text: Optional[str], limit: int) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _format_dt(dt: Optional[datetime]) -> str:
    if not dt:
        return ""
    return as_utc(dt).strftime("%Y-%m-%d %H:%M UTC")


def build_lead_link(payload: dict[str, Any]) -> str:
    if payload.get("lead_link"):
        return str(payload["lead_link"])
    params = {}
    if payload.get("lead_id") is not None:
        params["leadId"] = payload["lead_id"]
    if payload.get("conversation_id") is not None:
        params["conversationId"] = payload["conversation_id"]
    base = settings.frontend_base_url.rstrip("/")
    if not params:
        return f"{base}/"
    return f"{base}/?{urlencode(params)}"


def _lead_label(payload: dict[str, Any]) -> str:
    return str(payload.get("lead_name") or payload.get("lead_phone") or "-")


def type_label(event_type: str, count: int = 1, lang: Optional[str] = None) -> str:
    labels = _TYPE_LABELS[_lang(lang)].get(event_type)
    if not labels:
        return event_type.replace("_", " ")
    return labels[0] if count == 1 else labels[1]


def render_email(event_type: str, payload: dict[str, Any], lang: Optional[str] = None) -> RenderedContent:
    lang = _lang(lang)
    if event_type == "digest":
        return _render_digest_email(payload, lang)
    if event_type == "weekly_report":
        return _render_weekly_report_email(payload, lang)

    link = build_lead_link(payload)
    lead = _lead_label(payload)
    da = lang == "da"

    if event_type in {"new_lead", "new_message"}:
        message = payload.get("message") or ""
        if event_type == "new_lead":
            subject = "Nyt kundeemne modtaget" if da else "New lead received"
            intro = f"Du har modtaget en ny henvendelse fra {lead}." if da else f"You have a new enquiry from {lead}."
        else:
            subject = f"Ny besked fra {lead}" if da else f"New message from {lead}"
            intro = f"{lead} har sendt en ny besked." if da else f"{lead} sent a new message."
        label = "Besked" if da else "Message"
        cta = "Se samtalen" if da else "Open conversation"
        body = f"{intro}\n\n{label}: {message}\n\n{cta}: {link}"
        body_html = (
            f"<p>{_esc(intro)}</p>"
            f"<p><strong>{label}:</strong> {_esc(message)}</p>"
            f"<p><a href=\"{_esc(link)}\">{cta}</a></p>"
        )
        return RenderedContent(subject, body, body_html)

    if event_type == "lead_managed":
        summary = payload.get("summary") or "-"
        subject = f"Kundeemne håndteret: {lead}" if da else f"Lead handled: {lead}"
        label = "Opsummering" if da else "Summary"
    elif event_type == "lead_converted":
        summary = payload.get("converted_value")
        summary = "-" if summary is None else str(summary)
        subject = f"Kundeemne konverteret: {lead}" if da else f"Lead converted: {lead}"
        label = "Værdi" if da else "Value"
    elif event_type == "ai_failed":
        summary = payload.get("error") or "-"
        subject = f"AI-svar fejlede for {lead}" if da else f"AI reply failed for {lead}"
        label = "Fejl" if da else "Error"
    else:
        raise UnknownTemplate(f"No email template for {event_type!r}")

    cta = "Se kundeemnet" if da else "Open lead"
    body = f"{subject}\n\n{label}: {summary}\n\n{cta}: {link}"
    body_html = (
        f"<h2>{_esc(subject)}</h2>"
        f"<p><strong>{label}:</strong> {_esc(summary)}</p>"
        f"<p><a href=\"{_esc(link)}\">{cta}</a></p>"
    )
    return RenderedContent(subject, body, body_html)


def render_sms(event_type: str, payload: dict[str, Any], lang: Optional[str] = None) -> RenderedContent:
    lang = _lang(lang)
    da = lang == "da"
    lead = _lead_label(payload)

    if event_type == "new_lead":
        text = f"Nyt kundeemne: {lead}. Se Replypilot for beskeden." if da else f"New lead: {lead}. See Replypilot for the message."
    elif event_type == "new_message":
        excerpt = _truncate(payload.get("message"), SMS_EXCERPT_LIMIT)
        text = f"Ny besked fra {lead}: {excerpt}" if da else f"New message from {lead}: {excerpt}"
    elif event_type == "lead_managed":
        text = f"Kundeemne håndteret: {lead}." if da else f"Lead handled: {lead}."
    elif event_type == "lead_converted":
        text = f"Kundeemne konverteret: {lead}." if da else f"Lead converted: {lead}."
    elif event_type == "ai_failed":
        text = f"AI-svar fejlede for {lead}. Svar manuelt." if da else f"AI reply failed for {lead}. Please reply manually."
    elif event_type == "digest":
        text = f"Replypilot: {payload.get('summary') or ''}".strip()
    else:
        raise UnknownTemplate(f"No SMS template for {event_type!r}")

    if event_type != "digest" and (payload.get("lead_id") is not None or payload.get("conversation_id") is not None or payload.get("lead_link")):
        text = f"{text} {build_lead_link(payload)}"
    return RenderedContent(subject="", body_text=text)


def render(channel: str, event_type: str, payload: dict[str, Any], lang: Optional[str] = None) -> RenderedContent:
    if channel == "sms":
        return render_sms(event_type, payload, lang)
    return render_email(event_type, payload, lang)


def summarize_event_types(counts: dict[str, int], total: int, lang: Optional[str] = None) -> str:
    lang = _lang(lang)
    parts = [f"{count} {type_label(event_type, count, lang)}" for event_type, count in counts.items()]
    if lang == "da":
        head = f"{total} {'ny notifikation' if total == 1 else 'nye notifikationer'}"
    else:
        head = f"{total} new {'notification' if total == 1 else 'notifications'}"
    if not parts:
        return head
    return f"{head}: {', '.join(parts)}"


def event_excerpt(event_type: str, payload: dict[str, Any]) -> str:
    lead = _lead_label(payload)
    detail = (
        payload.get("message")
        or payload.get("summary")
        or payload.get("error")
        or (None if payload.get("converted_value") is None else str(payload.get("converted_value")))
    )
    if detail:
        return _truncate(f"{lead}: {detail}", DIGEST_EXCERPT_LIMIT)
    return lead


def _render_digest_email(payload: dict[str, Any], lang: str) -> RenderedContent:
    da = lang == "da"
    count = int(payload.get("event_count") or 0)
    summary = payload.get("summary") or ""
    events = payload.get("events") or []
    subject = f"Replypilot opsummering: {summary}" if da else f"Replypilot summary: {summary}"

    lines = []
    items = []
    for item in events:
        when = item.get("occurred_at") or ""
        if when:
            when = _format_dt(datetime.fromisoformat(when))
        label = type_label(item.get("type") or "", 1, lang)
        excerpt = item.get("excerpt") or ""
        link = item.get("lead_link") or ""
        lines.append(f"- [{when}] {label}: {excerpt} {link}".rstrip())
        items.append(
            f"<li><strong>{_esc(label)}</strong> {_esc(excerpt)}"
            + (f" <a href=\"{_esc(link)}\">&rarr;</a>" if link else "")
            + "</li>"
        )

    shown = len(events)
    more = ""
    if count > shown:
        more = f"... og {count - shown} flere" if da else f"... and {count - shown} more"

    heading = "Seneste hændelser" if da else "Latest events"
    body = f"{summary}\n\n{heading}:\n" + "\n".join(lines)
    if more:
        body += f"\n{more}"
    body_html = f"<h2>{_esc(summary)}</h2><h3>{heading}</h3><ul>{''.join(items)}</ul>"
    if more:
        body_html += f"<p>{_esc(more)}</p>"
    return RenderedContent(subject, body, body_html)


def _render_weekly_report_email(payload: dict[str, Any], lang: str) -> RenderedContent:
    week_range = payload.get("week_range") or ""
    total = payload.get("total_conversations", 0)
    new_leads = payload.get("new_leads", 0)
    qualified = payload.get("qualified_leads", 0)
    link = f"{settings.frontend_base_url.rstrip('/')}/"

    if lang == "da":
        subject = f"Ugentlig rapport - {week_range}"
        rows = [("Samlede samtaler", total), ("Nye kundeemner", new_leads), ("Kvalificerede kundeemner", qualified)]
        cta = "Se dashboard"
        period = "Periode"
    else:
        subject = f"Weekly report - {week_range}"
        rows = [("Total conversations", total), ("New leads", new_leads), ("Qualified leads", qualified)]
        cta = "Open dashboard"
        period = "Period"

    body = f"{period}: {week_range}\n\n" + "\n".join(f"{label}: {value}" for label, value in rows) + f"\n\n{cta}: {link}"
    body_html = (
        f"<h2>{_esc(subject)}</h2>"
        "<ul>" + "".join(f"<li>{label}: {_esc(value)}</li>" for label, value in rows) + "</ul>"
        f"<p><a href=\"{_esc(link)}\">{cta}</a></p>"
    )
    return RenderedContent(subject, body, body_html)
