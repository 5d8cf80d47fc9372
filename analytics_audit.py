"""
Google Analytics / Tag Manager detection.

Three independent passes are unioned:

* script ``src`` URLs matched against the vendor loader endpoints, with ids
  taken from the ``id`` query parameter;
* inline script bodies scanned for quoted ids;
* the serialized HTML (comprehensive mode only), which also catches
  ``<noscript>`` iframe fallbacks and consent-blocked scripts that carry
  their source in ``data-src``-style attributes.

Detection is pattern based and best effort.
"""

import re
from typing import Dict, Iterable, Optional

from audit_models import GoogleAnalyticsData

GTAG_LOADER = "googletagmanager.com/gtag/js"
GTM_LOADER = "googletagmanager.com/gtm.js"
GTM_NOSCRIPT = "googletagmanager.com/ns.html"
UA_LOADERS = ("google-analytics.com/analytics.js", "google-analytics.com/ga.js")

_URL_GA4_ID = re.compile(r"[?&]id=(G-[A-Z0-9]+)", re.I)
_URL_GTM_ID = re.compile(r"[?&]id=(GTM-[A-Z0-9]+)", re.I)
_URL_UA_ID = re.compile(r"[?&]id=(UA-\d{4,10}-\d{1,4})", re.I)

_QUOTED_GA4_ID = re.compile(r"""['"](G-[A-Z0-9]{8,})['"]""")
_QUOTED_GTM_ID = re.compile(r"""['"](GTM-[A-Z0-9]{4,})['"]""")
_QUOTED_UA_ID = re.compile(r"""['"](UA-\d{4,10}-\d{1,4})['"]""")

_HTML_GA4_ID = re.compile(r"(?<![A-Za-z0-9-])(G-[A-Z0-9]{10})(?![A-Za-z0-9])")
_HTML_GTM_ID = re.compile(r"(?<![A-Za-z0-9-])(GTM-[A-Z0-9]{4,10})(?![A-Za-z0-9])")
_HTML_UA_ID = re.compile(r"(?<![A-Za-z0-9-])(UA-\d{4,10}-\d{1,4})(?![A-Za-z0-9])")

# Consent managers park the real source in an alternate attribute and mark
# the script inert (type="text/plain") until consent is given.
_DEFERRED_SRC = re.compile(
    r"""<script\b[^>]*?\bdata-(?:src|cookieconsent-src|lazy-src|cmp-src|blocked-src)\s*=\s*["']([^"']+)["']""",
    re.I,
)
_NOSCRIPT_IFRAME = re.compile(r"""<iframe\b[^>]*?\bsrc\s*=\s*["']([^"']*googletagmanager\.com/ns\.html[^"']*)["']""", re.I)
_INLINE_GTAG_CALL = re.compile(r"""gtag\(\s*['"]config['"]""")


class _Findings:
    def __init__(self):
        self.ga4 = False
        self.ua = False
        self.gtm = False
        self.measurement_ids: Dict[str, None] = {}
        self.gtm_containers: Dict[str, None] = {}
        self.ua_ids: Dict[str, None] = {}

    def add_ga4(self, measurement_id: Optional[str] = None) -> None:
        self.ga4 = True
        if measurement_id:
            self.measurement_ids.setdefault(measurement_id.upper(), None)

    def add_gtm(self, container: Optional[str] = None) -> None:
        self.gtm = True
        if container:
            self.gtm_containers.setdefault(container.upper(), None)

    def add_ua(self, ua_id: Optional[str] = None) -> None:
        self.ua = True
        if ua_id:
            self.ua_ids.setdefault(ua_id.upper(), None)

    def result(self) -> GoogleAnalyticsData:
        return GoogleAnalyticsData(
            has_ga4=self.ga4 or bool(self.measurement_ids),
            has_universal_analytics=self.ua or bool(self.ua_ids),
            has_gtm=self.gtm or bool(self.gtm_containers),
            measurement_ids=list(self.measurement_ids),
            gtm_containers=list(self.gtm_containers),
            ua_ids=list(self.ua_ids),
        )


def _scan_script_url(src: str, findings: _Findings) -> None:
    lowered = src.lower()
    if GTAG_LOADER in lowered:
        ga4 = _URL_GA4_ID.search(src)
        ua = _URL_UA_ID.search(src)
        gtm = _URL_GTM_ID.search(src)
        if ga4:
            findings.add_ga4(ga4.group(1))
        elif ua:
            findings.add_ua(ua.group(1))
        elif gtm:
            findings.add_gtm(gtm.group(1))
        else:
            findings.add_ga4()
    if GTM_LOADER in lowered or GTM_NOSCRIPT in lowered:
        gtm = _URL_GTM_ID.search(src)
        findings.add_gtm(gtm.group(1) if gtm else None)
    if any(loader in lowered for loader in UA_LOADERS):
        findings.add_ua()


def _scan_inline(text: str, findings: _Findings) -> None:
    for match in _QUOTED_GA4_ID.finditer(text):
        findings.add_ga4(match.group(1))
    for match in _QUOTED_GTM_ID.finditer(text):
        findings.add_gtm(match.group(1))
    for match in _QUOTED_UA_ID.finditer(text):
        findings.add_ua(match.group(1))

    lowered = text.lower()
    # Standard snippets load the libraries from inline code.
    if GTM_LOADER in lowered:
        findings.add_gtm()
    if any(loader in lowered for loader in UA_LOADERS):
        findings.add_ua()
    if (GTAG_LOADER in lowered or _INLINE_GTAG_CALL.search(text)) and not findings.ua_ids:
        findings.add_ga4()


def _scan_html(html: str, findings: _Findings) -> None:
    for match in _DEFERRED_SRC.finditer(html):
        _scan_script_url(match.group(1), findings)
    for match in _NOSCRIPT_IFRAME.finditer(html):
        _scan_script_url(match.group(1), findings)
    for match in _HTML_GA4_ID.finditer(html):
        findings.add_ga4(match.group(1))
    for match in _HTML_GTM_ID.finditer(html):
        findings.add_gtm(match.group(1))
    for match in _HTML_UA_ID.finditer(html):
        findings.add_ua(match.group(1))


def detect_analytics(
    script_srcs: Iterable[str],
    inline_scripts: Iterable[str] = (),
    html: Optional[str] = None,
) -> GoogleAnalyticsData:
    """Detect GA4, Universal Analytics and GTM; pass ``html`` for comprehensive mode."""
    findings = _Findings()
    for src in script_srcs:
        if src:
            _scan_script_url(src, findings)
    inline_text = "\n".join(body for body in inline_scripts if body)
    if inline_text:
        _scan_inline(inline_text, findings)
    if html:
        _scan_html(html, findings)
    return findings.result()

