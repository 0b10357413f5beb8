"""
Gmail operations: fetch one message, send a reply on its thread.

GmailClient is both the message source and the send collaborator. It is
built with a service factory (principal_id -> Gmail API resource) so
tests can hand it a fake.
"""

import base64
import logging
import re
from email.mime.text import MIMEText
from typing import Callable

from googleapiclient.errors import HttpError

import auth
from errors import CollaboratorFailure
from models import InboundMessage

logger = logging.getLogger(__name__)


class GmailClient:
    def __init__(self, service_factory: Callable = auth.get_gmail_service):
        self.service_factory = service_factory

    def get_message(self, principal_id: str, message_id: str) -> InboundMessage:
        try:
            service = self.service_factory(principal_id)
            detail = service.users().messages().get(
                userId="me", id=message_id, format="full"
            ).execute()
        except (HttpError, ValueError) as e:
            logger.error(f"[{principal_id}] Error fetching message {message_id}: {e}")
            raise CollaboratorFailure("gmail", f"could not fetch {message_id}: {e}") from e
        return _parse_message(detail)

    def send(self, principal_id: str, to: str, subject: str, body: str, thread_id: str) -> str:
        """Send a reply on the thread. Returns the sent message id."""
        msg = _build_message(to, subject, body)
        msg["threadId"] = thread_id
        try:
            service = self.service_factory(principal_id)
            sent = service.users().messages().send(userId="me", body=msg).execute()
        except (HttpError, ValueError) as e:
            logger.error(f"[{principal_id}] Error sending email to {to}: {e}")
            raise CollaboratorFailure("gmail", f"send to {to} failed: {e}") from e
        logger.info(f"[{principal_id}] Email sent to {to} ({sent['id']})")
        return sent["id"]


def _parse_message(detail: dict) -> InboundMessage:
    headers = {h["name"]: h["value"] for h in detail["payload"].get("headers", [])}
    return InboundMessage(
        message_id=detail["id"],
        thread_id=detail["threadId"],
        sender=headers.get("From", ""),
        subject=headers.get("Subject", "(no subject)"),
        body=_extract_body(detail["payload"])[:4000],  # cap for LLM context
    )


def _extract_body(payload: dict) -> str:
    if payload.get("mimeType") == "text/plain":
        data = payload.get("body", {}).get("data", "")
        if data:
            return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")

    if payload.get("mimeType") == "text/html":
        data = payload.get("body", {}).get("data", "")
        if data:
            text = base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")
            return re.sub(r"<[^>]+>", " ", text)

    for part in payload.get("parts", []):
        result = _extract_body(part)
        if result:
            return result

    return ""


def _build_message(to: str, subject: str, body: str) -> dict:
    """Build a base64-encoded plain-text email message dict."""
    mime = MIMEText(body, "plain")
    mime["to"] = to
    mime["subject"] = subject
    return {"raw": base64.urlsafe_b64encode(mime.as_bytes()).decode()}
