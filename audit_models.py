"""Result records produced by the page audit."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


# --- Page data ---

@dataclass
class Heading:
    tag: str
    text: str
    level: int

    def to_dict(self) -> Dict[str, Any]:
        return {"tag": self.tag, "text": self.text, "level": self.level}


@dataclass
class ImageInfo:
    src: str
    alt: str

    def to_dict(self) -> Dict[str, Any]:
        return {"src": self.src, "alt": self.alt}


@dataclass
class PageData:
    """Everything extracted from a loaded page in one evaluation."""
    headings: List[Heading] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    images: List[ImageInfo] = field(default_factory=list)
    title: str = ""
    meta_description: Optional[str] = None
    script_srcs: List[str] = field(default_factory=list)
    inline_scripts: List[str] = field(default_factory=list)
    search_console_meta: Optional[str] = None
    body_html_length: int = 0

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "PageData":
        raw = raw or {}
        headings = []
        for item in raw.get("headings") or []:
            try:
                headings.append(Heading(
                    tag=str(item["tag"]).lower(),
                    text=str(item.get("text") or ""),
                    level=int(item["level"]),
                ))
            except (KeyError, TypeError, ValueError):
                continue
        images = [
            ImageInfo(src=str(img.get("src") or ""), alt=str(img.get("alt") or ""))
            for img in raw.get("images") or []
            if isinstance(img, dict)
        ]
        return cls(
            headings=headings,
            links=[str(link) for link in raw.get("links") or [] if link],
            images=images,
            title=str(raw.get("title") or ""),
            meta_description=raw.get("metaDescription"),
            script_srcs=[str(src) for src in raw.get("scripts") or [] if src],
            inline_scripts=[str(body) for body in raw.get("inlineScripts") or [] if body],
            search_console_meta=raw.get("searchConsoleMeta") or None,
            body_html_length=int(raw.get("bodyHtmlLength") or 0),
        )


# --- Analyzer outputs ---

@dataclass
class AxeViolation:
    id: str
    impact: Optional[str]
    description: str
    nodes: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AxeViolation":
        return cls(
            id=str(raw.get("id") or ""),
            impact=raw.get("impact"),
            description=str(raw.get("description") or ""),
            nodes=list(raw.get("nodes") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "impact": self.impact, "description": self.description, "nodes": self.nodes}


def count_violation_instances(violations: Iterable[AxeViolation]) -> int:
    """Number of failing elements, as opposed to ``len(violations)`` failing rules."""
    return sum(len(v.nodes) for v in violations)


@dataclass
class BrokenLink:
    link: str
    status: int
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"link": self.link, "status": self.status, "ok": self.ok}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class GoogleAnalyticsData:
    has_ga4: bool = False
    has_universal_analytics: bool = False
    has_gtm: bool = False
    measurement_ids: List[str] = field(default_factory=list)
    gtm_containers: List[str] = field(default_factory=list)
    ua_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasGA4": self.has_ga4,
            "hasUniversalAnalytics": self.has_universal_analytics,
            "hasGTM": self.has_gtm,
            "measurementIds": list(self.measurement_ids),
            "gtmContainers": list(self.gtm_containers),
            "uaIds": list(self.ua_ids),
        }


@dataclass
class SearchConsoleData:
    has_meta_tag: bool = False
    has_html_file: bool = False
    has_dns_txt: bool = False
    meta_tag_content: Optional[str] = None
    dns_txt_content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "hasMetaTag": self.has_meta_tag,
            "hasHtmlFile": self.has_html_file,
            "hasDnsTxt": self.has_dns_txt,
        }
        if self.meta_tag_content is not None:
            data["metaTagContent"] = self.meta_tag_content
        if self.dns_txt_content is not None:
            data["dnsTxtContent"] = self.dns_txt_content
        return data


@dataclass
class AnalyticsData:
    google_analytics: GoogleAnalyticsData = field(default_factory=GoogleAnalyticsData)
    search_console: SearchConsoleData = field(default_factory=SearchConsoleData)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "googleAnalytics": self.google_analytics.to_dict(),
            "searchConsole": self.search_console.to_dict(),
        }


@dataclass
class Screenshots:
    mobile: Optional[str] = None
    tablet: Optional[str] = None
    desktop: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {name: value for name, value in
                (("mobile", self.mobile), ("tablet", self.tablet), ("desktop", self.desktop))
                if value is not None}


# --- Results ---

@dataclass
class AnalysisResult:
    url: str
    headings: List[Heading] = field(default_factory=list)
    seo_issues: List[str] = field(default_factory=list)
    accessibility_issues: List[AxeViolation] = field(default_factory=list)
    broken_links: List[BrokenLink] = field(default_factory=list)
    total_links_checked: int = 0
    total_links_found: int = 0
    images: List[ImageInfo] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)
    analytics: Optional[AnalyticsData] = None
    screenshots: Optional[Screenshots] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, url: str, error: str) -> "AnalysisResult":
        """Error-path record: every collection present and empty."""
        return cls(url=url, error=error)

    @property
    def accessibility_instance_count(self) -> int:
        return count_violation_instances(self.accessibility_issues)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "headings": [h.to_dict() for h in self.headings],
            "seoIssues": list(self.seo_issues),
            "accessibilityIssues": [v.to_dict() for v in self.accessibility_issues],
            "brokenLinks": [b.to_dict() for b in self.broken_links],
            "totalLinksChecked": self.total_links_checked,
            "totalLinksFound": self.total_links_found,
            "images": [img.to_dict() for img in self.images],
            "scripts": list(self.scripts),
        }
        if self.analytics is not None:
            data["analytics"] = self.analytics.to_dict()
        if self.screenshots is not None:
            data["screenshots"] = self.screenshots.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class GlobalResult:
    analytics: AnalyticsData

    def to_dict(self) -> Dict[str, Any]:
        return {"analytics": self.analytics.to_dict()}
