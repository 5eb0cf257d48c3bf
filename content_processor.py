#!/usr/bin/env python3
"""
Content Processor Module

Handles email body cleaning for the Gmail CSV Exporter.
Converts HTML bodies to plain text while stripping boilerplate, footers, signatures
and tracking links, strips signature blocks from plain-text bodies, and normalizes
whitespace for both paths.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

import html2text
from bs4 import BeautifulSoup


@dataclass(frozen=True)
class CleaningRules:
    """Static keyword lists, patterns and thresholds used by the content strippers"""

    # Elements carrying one of these classes are dropped before text extraction
    boilerplate_classes: Tuple[str, ...] = (
        "footer",
        "email-footer",
        "signature",
        "legal",
        "disclaimer",
        "footer-container",
        "email-bottom",
        "message-signature",
        "legal-notice",
    )

    # Elements whose text contains one of these phrases are dropped
    boilerplate_keywords: Tuple[str, ...] = (
        "unsubscribe",
        "privacy policy",
        "terms and conditions",
        "you received this email because",
        "view in browser",
        "sent from my",
        "this email was sent by",
        "copyright",
        "all rights reserved",
    )

    # Keywords checked line by line after the HTML has been flattened
    line_keywords: Tuple[str, ...] = (
        "unsubscribe",
        "privacy policy",
        "terms and conditions",
        "view in browser",
        "sent from my",
        "this email was sent by",
        "copyright",
        "all rights reserved",
    )

    # A keyword line is only boilerplate when the keyword sits within its first few words
    boilerplate_line_prefix: str = (
        r"^[^a-zA-Z]*(?:\S+\s+){0,4}"
        r"(?:unsubscribe|privacy|copyright|terms and conditions|view in browser"
        r"|sent from my|this email was sent by|all rights reserved)"
    )

    # Anchors pointing at these destinations take their parent container with them
    footer_link_targets: Tuple[str, ...] = ("unsubscribe", "privacy", "terms")

    tracking_url_patterns: Tuple[str, ...] = (
        r"https?://\S+?(?:[?&]utm_\S+|click\S+|link\.\S+)",
        r"https?://[^/\s]+/(?:track|click|open|view)\S*",
        r"https?://\S+/(?:e|t)/[a-zA-Z0-9]{5,}\S*",
    )

    entity_replacements: Tuple[Tuple[str, str], ...] = (
        ("\u00c2\u00a0", " "),
        ("\u00c2 ", " "),
        ("&nbsp;", " "),
        ("&quot;", '"'),
        ("&lt;", "<"),
        ("&gt;", ">"),
        ("&amp;", "&"),
    )

    min_line_length: int = 5
    max_boilerplate_line_length: int = 100
    duplicate_min_half_length: int = 100
    duplicate_probe_length: int = 150
    min_body_length: int = 20


DEFAULT_CLEANING_RULES = CleaningRules()

# Tags that make up the document skeleton and are never removed as boilerplate
DOCUMENT_ROOTS = {"[document]", "html", "head", "body"}

SCRIPT_STYLE_PATTERN = re.compile(
    r"<(script|style|noscript)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)
BRACKET_RUN_PATTERN = re.compile(r"\[\s*\[\s*\[|\]\s*\]\s*\]")
ZERO_WIDTH_PATTERN = re.compile("[\\u200b-\\u200f\\u2060\\ufeff\\u180e]")
UNICODE_SPACE_PATTERN = re.compile("[\\u00a0\\u1680\\u2000-\\u200a\\u202f\\u205f\\u3000]")

# html2text backslash-escapes these when they could read as markdown
MARKDOWN_ESCAPE_PATTERN = re.compile(r"\\([\\`*_{}\[\]()#+\-.!])")
MARKDOWN_HEADING_PATTERN = re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE)


class TextNormalizer:
    """Collapses whitespace runs and trims text; shared by the HTML and plain-text paths"""

    def normalize(self, text: Optional[str]) -> str:
        """
        Normalize whitespace while keeping single line breaks.

        Args:
            text: Text to normalize

        Returns:
            str: Text with spaces and newlines collapsed and trimmed
        """
        if not text:
            return ""

        # Replace different types of line breaks with standard \n
        text = re.sub(r"\r\n|\r", "\n", text)
        text = re.sub(r"[ \t]+", " ", text)
        # Any whitespace run that spans a line break becomes a single newline
        text = re.sub(r"\s*\n\s*", "\n", text)
        return text.strip()


class PlainTextSignatureStripper:
    """Removes trailing signature blocks from plain-text bodies"""

    SALUTATION_PATTERN = re.compile(
        r"^\s*(Best regards|Sincerely|Cheers|Thanks),?\s*$", re.IGNORECASE
    )

    def __init__(self, normalizer: Optional[TextNormalizer] = None):
        self.normalizer = normalizer or TextNormalizer()

    def find_signature_start(self, lines: list) -> int:
        """Return the index of the last signature delimiter line, or -1 when there is none"""
        for index in range(len(lines) - 1, -1, -1):
            trimmed = lines[index].strip()
            if trimmed == "--" or self.SALUTATION_PATTERN.match(trimmed):
                return index
        return -1

    def clean(self, text: Optional[str]) -> str:
        """
        Strip the signature block and blank lines from plain-text content.

        Args:
            text: Plain-text body

        Returns:
            str: Body without its signature, normalized
        """
        if not text:
            return ""

        lines = re.sub(r"\r\n|\r", "\n", text).split("\n")
        signature_start = self.find_signature_start(lines)
        if signature_start != -1:
            lines = lines[:signature_start]

        content_lines = [line for line in lines if line.strip()]
        return self.normalizer.normalize("\n".join(content_lines))


class HtmlBoilerplateStripper:
    """Converts HTML bodies to plain text, removing boilerplate and tracking artifacts"""

    def __init__(
        self,
        rules: CleaningRules = DEFAULT_CLEANING_RULES,
        normalizer: Optional[TextNormalizer] = None,
    ):
        self.rules = rules
        self.normalizer = normalizer or TextNormalizer()

        self.class_selector = ", ".join(f".{name}" for name in rules.boilerplate_classes)
        self.line_prefix_pattern = re.compile(rules.boilerplate_line_prefix, re.IGNORECASE)
        self.tracking_patterns = [re.compile(pattern) for pattern in rules.tracking_url_patterns]

        # Configure html2text converter
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = True
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = True
        self.html_converter.body_width = 0  # Don't wrap lines
        self.html_converter.unicode_snob = True

    def clean(self, html: Optional[str]) -> str:
        """
        Clean HTML email content and convert it to plain text.

        Args:
            html: Raw HTML body

        Returns:
            str: Cleaned plain text
        """
        if not html or not html.strip():
            return ""

        html = self.remove_script_and_style(html)

        soup = BeautifulSoup(html, "html.parser")
        self.remove_boilerplate(soup)

        text = self.html_converter.handle(str(soup))
        text = self.strip_markdown_markup(text)
        text = self.decode_entities(text)
        text = self.filter_boilerplate_lines(text)
        text = self.strip_tracking_urls(text)
        text = self.remove_invisible_characters(text)
        text = self.normalizer.normalize(text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        text = self.drop_duplicated_half(text)

        if len(text) < self.rules.min_body_length:
            print("Warning: Cleaned text is very short. Review original HTML.")

        return text

    def remove_script_and_style(self, html: str) -> str:
        """Remove <script>, <style> and <noscript> blocks"""
        return SCRIPT_STYLE_PATTERN.sub(" ", html)

    def remove_boilerplate(self, soup: BeautifulSoup) -> None:
        """
        Remove footer, signature and legal elements from the parsed document in place.

        Args:
            soup: Parsed HTML document
        """
        # Elements with common footer-related classes
        for element in soup.select(self.class_selector):
            element.extract()

        # Innermost elements containing footer keywords; their ancestors contain the same
        # text, so only elements without a matching child are removed
        keywords = self.rules.boilerplate_keywords
        candidates = [
            tag for tag in soup.find_all(True)
            if tag.name not in DOCUMENT_ROOTS
            and any(keyword in tag.get_text().lower() for keyword in keywords)
        ]
        parents_of_candidates = {id(tag.parent) for tag in candidates}
        for tag in candidates:
            if id(tag) not in parents_of_candidates:
                tag.extract()

        # Parent containers of footer links
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].lower()
            if not any(target in href for target in self.rules.footer_link_targets):
                continue
            parent = anchor.parent
            if parent is None or parent.name in DOCUMENT_ROOTS:
                anchor.extract()
            else:
                parent.extract()

        # Everything after the first horizontal rule is treated as signature
        separator = soup.find("hr")
        if separator is not None:
            for element in list(separator.next_elements):
                element.extract()
            separator.extract()

    def strip_markdown_markup(self, text: str) -> str:
        """
        Undo the markdown html2text adds so bodies read as plain text.

        Backslash escapes (``1\\.``, ``\\-``, ``\\\\``) are reverted and heading
        markers are dropped from the start of lines.
        """
        text = MARKDOWN_ESCAPE_PATTERN.sub(r"\1", text)
        return MARKDOWN_HEADING_PATTERN.sub("", text)

    def decode_entities(self, text: str) -> str:
        """Decode entities and non-breaking space artifacts left after conversion"""
        for entity, replacement in self.rules.entity_replacements:
            text = text.replace(entity, replacement)
        return text

    def filter_boilerplate_lines(self, text: str) -> str:
        """
        Drop short lines and footer-like lines from flattened text.

        A line mentioning a footer keyword is kept when it is long or when the
        keyword appears deep inside the sentence.

        Args:
            text: Flattened text

        Returns:
            str: Text with boilerplate lines removed
        """
        kept_lines = []
        for line in text.split("\n"):
            line = line.strip()
            if len(line) < self.rules.min_line_length:
                continue

            lower_line = line.lower()
            if any(keyword in lower_line for keyword in self.rules.line_keywords):
                if (
                    len(line) <= self.rules.max_boilerplate_line_length
                    and self.line_prefix_pattern.match(lower_line)
                ):
                    continue

            kept_lines.append(line)

        return "\n".join(kept_lines)

    def strip_tracking_urls(self, text: str) -> str:
        """Remove click/open tracking links while leaving ordinary URLs alone"""
        for pattern in self.tracking_patterns:
            text = pattern.sub("", text)
        return text

    def remove_invisible_characters(self, text: str) -> str:
        """Remove bracket-run artifacts and zero-width characters"""
        text = BRACKET_RUN_PATTERN.sub("", text)
        text = ZERO_WIDTH_PATTERN.sub("", text)
        return UNICODE_SPACE_PATTERN.sub(" ", text)

    def drop_duplicated_half(self, text: str) -> str:
        """
        Keep only the first half of text that some mail clients emit twice.

        Args:
            text: Normalized text

        Returns:
            str: The first half when the opening of the text repeats in its second half
        """
        half_length = len(text) // 2
        if half_length <= self.rules.duplicate_min_half_length:
            return text

        first_half = text[:half_length]
        second_half = text[half_length:]
        if first_half[:self.rules.duplicate_probe_length] in second_half:
            return first_half.strip()
        return text
