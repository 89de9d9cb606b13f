"""Conversation export: Markdown transcript, JSON document, PDF."""

from __future__ import annotations

import io
import json
import re
from datetime import date, datetime, timezone
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer

from chatrelay.schemas.conversation import Conversation

EXPORT_VERSION = "1.0"
MAX_FILENAME_TITLE = 50

EXTENSIONS = {"markdown": "md", "json": "json", "pdf": "pdf"}
CONTENT_TYPES = {
    "markdown": "text/markdown; charset=utf-8",
    "json": "application/json; charset=utf-8",
    "pdf": "application/pdf",
}

_UNSAFE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_filename(title: str) -> str:
    name = _UNSAFE.sub("_", title)
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"_+", "_", name).strip("_")
    return name[:MAX_FILENAME_TITLE]


def generate_filename(title: str, fmt: str, today: date | None = None) -> str:
    """``{sanitized-title}_{YYYYMMDD}.{ext}``"""
    today = today or date.today()
    return f"{sanitize_filename(title) or 'conversation'}_{today:%Y%m%d}.{EXTENSIONS[fmt]}"


def _local(dt: datetime) -> datetime:
    return dt.astimezone() if dt.tzinfo else dt


def _stamp(dt: datetime) -> str:
    return _local(dt).strftime("%Y-%m-%d %H:%M:%S")


def export_markdown(conversation: Conversation, exported_at: datetime | None = None) -> str:
    exported_at = exported_at or datetime.now(timezone.utc)
    lines = [
        f"# {conversation.title}",
        "",
        "## Conversation Info",
        "",
        f"- **Model**: {conversation.model}",
        f"- **Created**: {_stamp(conversation.created_at)}",
        f"- **Updated**: {_stamp(conversation.updated_at)}",
    ]
    if conversation.system_prompt:
        lines.append(f"- **System Prompt**: {conversation.system_prompt}")
    lines += ["", "---", "", "## Messages", ""]

    for message in conversation.messages:
        if message.role == "system":
            continue
        label = "👤 **User**" if message.role == "user" else "🤖 **Assistant**"
        lines += [f"### {label} ({_local(message.created_at):%H:%M:%S})", "", message.content, ""]
        if message.attachments:
            lines.append("**Attachments:**")
            for attachment in message.attachments:
                icon = "🖼️" if attachment.type == "image" else "📄"
                lines.append(f"- {icon} {attachment.name}")
            lines.append("")

    lines += ["---", "", f"*Exported at: {_stamp(exported_at)}*"]
    return "\n".join(lines)


def export_json(conversation: Conversation, exported_at: datetime | None = None) -> str:
    exported_at = exported_at or datetime.now(timezone.utc)
    data = conversation.to_json_dict()
    data["exportedAt"] = exported_at.isoformat()
    data["version"] = EXPORT_VERSION
    return json.dumps(data, ensure_ascii=False, indent=2)


def _paragraph_text(text: str) -> str:
    return escape(text).replace("\n", "<br/>")


def export_pdf(conversation: Conversation, exported_at: datetime | None = None) -> bytes:
    exported_at = exported_at or datetime.now(timezone.utc)
    styles = getSampleStyleSheet()
    meta = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=9, textColor=colors.HexColor("#555555"))
    header = ParagraphStyle("MessageHeader", parent=styles["Heading4"], spaceBefore=8, spaceAfter=2)
    body = ParagraphStyle("MessageBody", parent=styles["BodyText"], leading=14)

    story = [
        Paragraph(_paragraph_text(conversation.title), styles["Title"]),
        Paragraph(f"<b>Model:</b> {escape(conversation.model)}", meta),
        Paragraph(f"<b>Created:</b> {_stamp(conversation.created_at)}", meta),
        Paragraph(f"<b>Updated:</b> {_stamp(conversation.updated_at)}", meta),
    ]
    if conversation.system_prompt:
        story.append(Paragraph(f"<b>System Prompt:</b> {_paragraph_text(conversation.system_prompt)}", meta))
    story += [Spacer(1, 4 * mm), HRFlowable(width="100%", color=colors.HexColor("#667eea"))]

    for message in conversation.messages:
        if message.role == "system":
            continue
        role = "User" if message.role == "user" else "Assistant"
        story.append(Paragraph(f"{role} · {_local(message.created_at):%H:%M:%S}", header))
        story.append(Paragraph(_paragraph_text(message.content) or "&nbsp;", body))
        if message.attachments:
            names = ", ".join(escape(a.name) for a in message.attachments)
            story.append(Paragraph(f"<i>Attachments: {names}</i>", meta))

    story += [Spacer(1, 6 * mm), Paragraph(f"Exported at: {_stamp(exported_at)}", meta)]

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        title=conversation.title,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
    )
    doc.build(story)
    return buffer.getvalue()


def render_export(conversation: Conversation, fmt: str) -> tuple[bytes, str, str]:
    """Return ``(body, content_type, filename)`` for *fmt*."""
    if fmt == "markdown":
        body = export_markdown(conversation).encode("utf-8")
    elif fmt == "json":
        body = export_json(conversation).encode("utf-8")
    elif fmt == "pdf":
        body = export_pdf(conversation)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")
    return body, CONTENT_TYPES[fmt], generate_filename(conversation.title, fmt)
