"""External-source compliance for generated answers.

Library records are cited as [n]; anything else has to come from an
official site on the allowed domain suffix and be cited inline as

    According to <Source>: <statement> (https://...)

This module checks those inline citations against the authorized source
registry and summarizes what it found.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


# ---------------------------
# Registry
# ---------------------------

@dataclass(frozen=True)
class AuthorizedSource:
    key: str
    domain: str
    name: str
    base_url: str
    category: str = "official_government"
    official: bool = True


AUTHORIZED_SOURCES: List[AuthorizedSource] = [
    AuthorizedSource("wam", "wam.ae", "Emirates News Agency (WAM)", "https://wam.ae/", "official_news"),
    AuthorizedSource("uae-gov", "government.ae", "UAE Government Official Portal", "https://www.government.ae/"),
    AuthorizedSource("mohesr", "mohesr.gov.ae", "Ministry of Higher Education & Scientific Research", "https://www.mohesr.gov.ae/"),
    AuthorizedSource("mofa", "mofacdn.gov.ae", "Ministry of Foreign Affairs", "https://www.mofacdn.gov.ae/"),
    AuthorizedSource("dsc", "dsc.gov.ae", "General Authority of Islamic Affairs and Endowments", "https://dsc.gov.ae/"),
    AuthorizedSource("statistics", "fcsa.gov.ae", "Federal Centre for Competitiveness and Statistics", "https://www.fcsa.gov.ae/"),
    AuthorizedSource("sheikhdiscover", "shaikh.ae", "Official Emirati Historical Sources", "https://www.shaikh.ae/"),
]


@dataclass
class SourceAuthorization:
    authorized: bool
    domain: str
    source: Optional[AuthorizedSource] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "authorized": self.authorized,
            "domain": self.domain,
            "source": asdict(self.source) if self.source else None,
            "reason": self.reason,
        }


def authorize_domain(
    domain: str,
    suffix: str,
    registry: Optional[List[AuthorizedSource]] = None,
) -> SourceAuthorization:
    d = (domain or "").strip().lower()
    suffix = (suffix or "").lower()
    if not d.endswith(suffix):
        return SourceAuthorization(False, d, reason=f"Domain is not on {suffix}")
    for src in AUTHORIZED_SOURCES if registry is None else registry:
        if d == src.domain or d.endswith("." + src.domain):
            return SourceAuthorization(True, d, source=src)
    generic = AuthorizedSource("official", d, f"Official Source ({suffix})", f"https://{d}/", "official")
    return SourceAuthorization(True, d, source=generic)


def validate_external_source(url: str, suffix: str) -> SourceAuthorization:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        host = ""
    if not host or not url.lower().startswith(("http://", "https://")):
        return SourceAuthorization(False, host, reason="Invalid URL format")
    if host.startswith("www."):
        host = host[4:]
    return authorize_domain(host, suffix)


# ---------------------------
# Text scanning
# ---------------------------

URL_RE = re.compile(r"https?://[^\s<>\"'()\[\]]+", re.IGNORECASE)
_TRAILING = ".,;:!?"
ACCORDING_TO_RE = re.compile(r"According to\s+([^:\n]+):\s*([^\n]*)", re.IGNORECASE)


def extract_urls(text: str) -> List[str]:
    seen = set()
    out: List[str] = []
    for m in URL_RE.finditer(text or ""):
        url = m.group(0).rstrip(_TRAILING)
        if url and url not in seen:
            seen.add(url)
            out.append(url)
    return out


@dataclass
class ExternalCitation:
    source_name: str
    statement: str
    url: str
    authorization: SourceAuthorization

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sourceName": self.source_name,
            "quote": self.statement,
            "url": self.url,
            "verification": self.authorization.as_dict(),
        }


@dataclass
class ComplianceIssue:
    type: str
    source: str
    message: str
    url: Optional[str] = None


@dataclass
class ExternalAnalysis:
    citations: List[ExternalCitation] = field(default_factory=list)
    issues: List[ComplianceIssue] = field(default_factory=list)


def parse_external_citations(text: str, suffix: str) -> ExternalAnalysis:
    result = ExternalAnalysis()
    for m in ACCORDING_TO_RE.finditer(text or ""):
        source_name = m.group(1).strip().strip("[]").strip()
        statement = m.group(2).strip()
        urls = extract_urls(m.group(0))
        if not urls:
            result.issues.append(ComplianceIssue(
                "MISSING_EXTERNAL_URL",
                source_name,
                f'External source cited without URL: "{source_name}". Provide complete URL.',
            ))
            continue
        url = urls[0]
        auth = validate_external_source(url, suffix)
        result.citations.append(ExternalCitation(source_name, URL_RE.sub("", statement).strip(" ()"), url, auth))
        if not auth.authorized:
            result.issues.append(ComplianceIssue(
                "UNAUTHORIZED_EXTERNAL_SOURCE",
                source_name,
                f'External source "{source_name}" is NOT authorized. Only {suffix} sources allowed.',
                url=url,
            ))
    return result


# ---------------------------
# Report
# ---------------------------

@dataclass
class ComplianceReport:
    compliant: bool
    library_sources_used: bool
    external_sources_cited: int
    authorized_external_sources: int
    unauthorized_external_sources: int
    valid_external_sources: List[ExternalCitation]
    issues: List[ComplianceIssue]
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "compliant": self.compliant,
            "librarySourcesUsed": self.library_sources_used,
            "externalSourcesCited": self.external_sources_cited,
            "authorizedExternalSources": self.authorized_external_sources,
            "unauthorizedExternalSources": self.unauthorized_external_sources,
            "validExternalSources": [c.as_dict() for c in self.valid_external_sources],
            "issues": [asdict(i) for i in self.issues],
            "message": self.message,
        }


def compliance_report(text: str, record_count: int, suffix: str) -> ComplianceReport:
    analysis = parse_external_citations(text, suffix)
    authorized = [c for c in analysis.citations if c.authorization.authorized]
    issues = analysis.issues
    return ComplianceReport(
        compliant=not issues,
        library_sources_used=record_count > 0,
        external_sources_cited=len(analysis.citations),
        authorized_external_sources=len(authorized),
        unauthorized_external_sources=len(analysis.citations) - len(authorized),
        valid_external_sources=authorized,
        issues=issues,
        message="All sources verified and authorized" if not issues else f"{len(issues)} source issue(s) detected",
    )
