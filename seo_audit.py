"""On-page SEO checks over extracted heading, title and meta description data."""

from typing import List, Optional, Sequence

from audit_models import Heading

META_DESCRIPTION_MIN = 50
META_DESCRIPTION_MAX = 160


def analyze_seo(headings: Sequence[Heading], title: Optional[str], meta_description: Optional[str]) -> List[str]:
    """Return human readable SEO issues; an empty list means the page passed.

    Checks the H1 count, that the first heading is an H1, that no heading
    goes more than one level deeper than the one before it, that the title
    is present and that the meta description exists and is 50-160 chars.
    """
    issues: List[str] = []

    h1_count = sum(1 for h in headings if h.level == 1)
    if h1_count == 0:
        issues.append("No H1 tag found.")
    elif h1_count > 1:
        issues.append(f"Found {h1_count} H1 tags. Recommended: 1.")

    previous_level = 0
    for index, heading in enumerate(headings):
        if index == 0:
            if heading.level != 1:
                issues.append(f"First heading is {heading.tag}, should be h1.")
        elif heading.level > previous_level + 1:
            issues.append(
                f'Skipped heading level: {previous_level} -> {heading.level} (at "{heading.text[:30]}...")'
            )
        previous_level = heading.level

    if not title or not title.strip():
        issues.append("Page title is missing or empty.")

    description = meta_description or ""
    if not description:
        issues.append("Meta description is missing.")
    elif len(description) < META_DESCRIPTION_MIN:
        issues.append(f"Meta description is too short (< {META_DESCRIPTION_MIN} chars).")
    elif len(description) > META_DESCRIPTION_MAX:
        issues.append(f"Meta description is too long (> {META_DESCRIPTION_MAX} chars).")

    return issues
