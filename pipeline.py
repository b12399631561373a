"""One chat answer, end to end.

generate -> clean -> citation report -> link verification -> compliance -> sanitize
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import bleach

import citations
from compliance import ComplianceReport, compliance_report, extract_urls
from generation import ChainGenerator, Message, clean_text
from url_verifier import UrlVerifier

LOGGER = logging.getLogger("catalog.pipeline")

ALLOWED_TAGS = ["a", "b", "br", "em", "i", "li", "ol", "p", "strong", "ul"]
ALLOWED_ATTRS = {"a": ["href", "title"]}

NO_BOOKS_ANSWER = (
    "لم أجد كتباً تطابق سؤالك في الكتالوج.<br>"
    "I didn't find any matching books in the catalog."
)

SYSTEM_PROMPT = (
    "You are a library assistant with strict source requirements. "
    "Use the numbered library records first and cite them as [1], [2], ... using exactly "
    "the numbers shown. For anything not in the records, use only official sites on {suffix} "
    'and cite them as "According to <Source>: <fact> (<full URL>)". '
    "Answer in the language of the question (Arabic or English)."
)

# which record fields go into the prompt for each search field
RECORD_FIELDS: Dict[str, Sequence[str]] = {
    "summary": ("title", "author", "publisher", "year", "summary"),
    "subject": ("title", "author", "subject"),
    "author": ("title", "author"),
    "default": ("title", "author", "subject", "summary"),
}


def _field(record: Mapping[str, Any], name: str) -> str:
    if name == "summary":
        value = record.get("summary") or record.get("contents") or record.get("content")
    else:
        value = record.get(name)
    return "" if value is None else str(value).strip()


def format_record(index: int, record: Mapping[str, Any], search_field: str = "default") -> str:
    names = RECORD_FIELDS.get(search_field, RECORD_FIELDS["default"])
    lines = [f"[{index}] {_field(record, 'title') or 'Untitled'}"]
    for name in names:
        if name == "title":
            continue
        value = _field(record, name)
        if value:
            lines.append(f"    {name.capitalize()}: {value}")
    return "\n".join(lines)


def build_messages(
    query: str,
    records: Sequence[Mapping[str, Any]],
    search_field: str = "default",
    suffix: str = ".ae",
) -> List[Message]:
    catalog = "\n---\n".join(format_record(i, r, search_field) for i, r in enumerate(records, start=1))
    user = f"LIBRARY RECORDS:\n{catalog}\n\nQUESTION: {query}"
    return [
        {"role": "system", "content": SYSTEM_PROMPT.format(suffix=suffix)},
        {"role": "user", "content": user},
    ]


def sanitize_answer(text: str) -> str:
    html = text.replace("\n", "<br>")
    return bleach.clean(html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRS, strip=True)


@dataclass
class AnswerResult:
    answer: str
    book_ids: List[int]
    verified_links: List[str]
    citation_report: Optional[citations.ValidationReport]
    compliance: Optional[ComplianceReport]
    source: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "bookIds": self.book_ids,
            "verifiedLinks": self.verified_links,
            "citations": self.citation_report.as_dict() if self.citation_report else None,
            "sourceCompliance": self.compliance.as_dict() if self.compliance else None,
            "source": self.source,
        }


class AnswerPipeline:
    def __init__(
        self,
        generator: ChainGenerator,
        verifier: UrlVerifier,
        verification_deadline: Optional[float] = 30.0,
    ) -> None:
        self.generator = generator
        self.verifier = verifier
        self.verification_deadline = verification_deadline

    async def answer(
        self,
        query: str,
        records: Sequence[Mapping[str, Any]],
        search_field: str = "default",
    ) -> AnswerResult:
        # fixed for the whole request: valid citations are [1]..[n]
        n = len(records)
        if n == 0:
            return AnswerResult(NO_BOOKS_ANSWER, [], [], None, None, source="none")

        suffix = self.verifier.allowed_suffix
        completion = await self.generator.complete(build_messages(query, records, search_field, suffix))
        text = clean_text(completion.text)

        report = citations.report(text, n)
        if report.has_out_of_range_references:
            LOGGER.info("Stripped out-of-range citation(s) %s (records=%d)", report.invalid_values, n)
        text = report.cleaned_text

        candidates = list(completion.links) + extract_urls(text)
        verified = await self.verifier.verify_batch(candidates, deadline=self.verification_deadline)

        compliance = compliance_report(text, n, suffix)
        if not compliance.compliant:
            LOGGER.info("Source compliance: %s", compliance.message)

        return AnswerResult(
            answer=sanitize_answer(text),
            book_ids=report.valid_ids,
            verified_links=verified,
            citation_report=report,
            compliance=compliance,
            source=completion.source,
        )
