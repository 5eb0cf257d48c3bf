#!/usr/bin/env python3
"""
MIME Decoder Module

Resolves Gmail API message payload trees into a single cleaned text body and
builds immutable DecodedEmail records from full message resources.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Dict, List, Optional

from content_processor import (
    DEFAULT_CLEANING_RULES,
    CleaningRules,
    HtmlBoilerplateStripper,
    PlainTextSignatureStripper,
    TextNormalizer,
)

# Payload trees nested deeper than this are treated as malformed
MAX_PART_DEPTH = 25

UNKNOWN_ID = "unknown"


@dataclass(frozen=True)
class DecodedEmail:
    """One decoded and cleaned message, ready for serialization"""
    id: str
    thread_id: str
    date: str
    from_address: str
    to: str
    subject: str
    body: str = ""


def decode_base64_data(data: str) -> str:
    """
    Decode Gmail body data (URL-safe base64, padding optional) to UTF-8 text.

    Args:
        data: Encoded body data

    Returns:
        str: Decoded text, or an empty string when the data is not valid base64
    """
    if not data:
        return ""

    try:
        # Gmail emits the URL-safe alphabet; plain base64 input is accepted as well
        normalized = data.replace("+", "-").replace("/", "_").strip()
        padded = normalized + "=" * (-len(normalized) % 4)
        payload = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        print(f"Warning: Could not decode message body data: {str(e)}")
        return ""

    return payload.decode("utf-8", errors="replace")


def extract_headers(headers: Optional[List[Dict]]) -> Dict[str, str]:
    """
    Build a lower-cased header lookup from Gmail's ordered name/value list.

    Args:
        headers: List of {"name": ..., "value": ...} entries

    Returns:
        dict: Header values keyed by lower-cased name
    """
    lookup = {}
    for header in headers or []:
        if not isinstance(header, dict):
            continue
        name = header.get("name")
        if not name:
            continue
        lookup[str(name).lower()] = str(header.get("value") or "")
    return lookup


class MimePartDecoder:
    """Recursively resolves a message payload tree to one cleaned text body"""

    def __init__(
        self,
        rules: CleaningRules = DEFAULT_CLEANING_RULES,
        max_depth: int = MAX_PART_DEPTH,
    ):
        normalizer = TextNormalizer()
        self.plain_stripper = PlainTextSignatureStripper(normalizer)
        self.html_stripper = HtmlBoilerplateStripper(rules, normalizer)
        self.max_depth = max_depth

    def decode(self, part: Optional[Dict]) -> str:
        """
        Decode a payload tree, preferring plain text over HTML.

        Args:
            part: Gmail MessagePart dictionary

        Returns:
            str: Cleaned body text; empty string when nothing usable is found
        """
        return self._decode_part(part, 0)

    def _decode_part(self, part: Optional[Dict], depth: int) -> str:
        if not isinstance(part, dict):
            return ""

        if depth > self.max_depth:
            print(f"Warning: Message part nesting exceeds {self.max_depth} levels, skipping")
            return ""

        mime_type = str(part.get("mimeType") or "").lower()
        body = part.get("body") if isinstance(part.get("body"), dict) else {}
        data = body.get("data")
        children = part.get("parts") if isinstance(part.get("parts"), list) else []

        if mime_type == "text/plain" and data:
            return self.plain_stripper.clean(decode_base64_data(data))

        if mime_type == "text/html" and data:
            return self.html_stripper.clean(decode_base64_data(data))

        if mime_type == "multipart/alternative" and children:
            for preferred_type in ("text/plain", "text/html"):
                for child in children:
                    if isinstance(child, dict) and str(child.get("mimeType") or "").lower() == preferred_type:
                        return self._decode_part(child, depth + 1)
            return "\n".join(self._decode_part(child, depth + 1) for child in children)

        if children:
            decoded_children = [self._decode_part(child, depth + 1) for child in children]
            return "\n".join(text for text in decoded_children if text and text.strip())

        return ""

    def decode_message(self, message: Optional[Dict], thread_id: Optional[str] = None) -> DecodedEmail:
        """
        Build a DecodedEmail from a full Gmail message resource.

        Missing headers or payloads degrade to empty fields rather than errors.

        Args:
            message: Message resource as returned by users.messages.get
            thread_id: Thread identifier overriding the message's own threadId

        Returns:
            DecodedEmail: Decoded record
        """
        if not isinstance(message, dict):
            print("Warning: Message has an unexpected structure, writing placeholder row")
            return DecodedEmail(
                id=UNKNOWN_ID,
                thread_id=thread_id or UNKNOWN_ID,
                date="",
                from_address="",
                to="",
                subject="",
            )

        message_id = message.get("id") or UNKNOWN_ID
        payload = message.get("payload")

        if not isinstance(payload, dict) or not isinstance(payload.get("headers"), list):
            print(f"Warning: Message {message_id} has an unexpected structure.")

        payload = payload if isinstance(payload, dict) else {}
        headers = extract_headers(payload.get("headers"))

        return DecodedEmail(
            id=str(message_id),
            thread_id=str(thread_id or message.get("threadId") or UNKNOWN_ID),
            date=headers.get("date", ""),
            from_address=headers.get("from", ""),
            to=headers.get("to", ""),
            subject=headers.get("subject", ""),
            body=self.decode(payload) if payload else "",
        )


def is_malformed_message(message: Optional[Dict]) -> bool:
    """Return True when a message lacks the payload or header list needed for a full row"""
    if not isinstance(message, dict):
        return True
    payload = message.get("payload")
    return not isinstance(payload, dict) or not isinstance(payload.get("headers"), list)
