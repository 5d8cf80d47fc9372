"""
Accessibility auditing.

An accessibility rule engine is injected into the page and run against a
rule-tag filter. Any script exposing ``window.axe.run(context, options)``
works; a real ``axe.min.js`` can be supplied through ``axe_source_path``.
Without one the built-in engine below is used: it implements the common
axe rules with the same ids, tags and result shape.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

from audit_models import AxeViolation

logger = logging.getLogger(__name__)

# Lightweight axe-compatible engine
BUILTIN_AXE_JS = r"""
(() => {
    const selectorFor = (el) => {
        if (el.id) return `#${el.id}`;
        const parts = [];
        let node = el;
        while (node && node.nodeType === 1 && parts.length < 4) {
            let part = node.tagName.toLowerCase();
            const parent = node.parentElement;
            if (parent) {
                const siblings = Array.from(parent.children).filter(c => c.tagName === node.tagName);
                if (siblings.length > 1) part += `:nth-of-type(${siblings.indexOf(node) + 1})`;
            }
            parts.unshift(part);
            node = parent;
        }
        return parts.join(' > ');
    };

    const nodeFor = (el, summary) => ({
        target: [selectorFor(el)],
        html: (el.outerHTML || '').substring(0, 250),
        failureSummary: summary
    });

    const accessibleName = (el) => {
        const labelledby = el.getAttribute('aria-labelledby');
        if (labelledby) {
            const text = labelledby.split(/\s+/)
                .map(id => document.getElementById(id))
                .filter(Boolean)
                .map(n => n.textContent.trim())
                .join(' ');
            if (text) return text;
        }
        const label = el.getAttribute('aria-label') || el.getAttribute('title');
        if (label && label.trim()) return label.trim();
        const text = (el.textContent || '').trim();
        if (text) return text;
        const img = el.querySelector && el.querySelector('img[alt]');
        return img ? img.getAttribute('alt').trim() : '';
    };

    const parseColor = (color) => {
        const match = color.match(/rgba?\((\d+),\s*(\d+),\s*(\d+)(?:,\s*([\d.]+))?\)/);
        if (!match) return null;
        return {
            rgb: [parseInt(match[1]), parseInt(match[2]), parseInt(match[3])],
            alpha: match[4] === undefined ? 1 : parseFloat(match[4])
        };
    };

    const luminance = (rgb) => {
        const [r, g, b] = rgb.map(c => {
            c = c / 255;
            return c <= 0.03928 ? c / 12.92 : Math.pow((c + 0.055) / 1.055, 2.4);
        });
        return 0.2126 * r + 0.7152 * g + 0.0722 * b;
    };

    const backgroundOf = (el) => {
        let node = el;
        while (node && node.nodeType === 1) {
            const bg = parseColor(window.getComputedStyle(node).backgroundColor);
            if (bg && bg.alpha > 0) return bg.rgb;
            node = node.parentElement;
        }
        return [255, 255, 255];
    };

    const VALID_AUTOCOMPLETE = new Set([
        'on', 'off', 'name', 'honorific-prefix', 'given-name', 'additional-name', 'family-name',
        'honorific-suffix', 'nickname', 'email', 'username', 'new-password', 'current-password',
        'one-time-code', 'organization-title', 'organization', 'street-address', 'address-line1',
        'address-line2', 'address-line3', 'address-level4', 'address-level3', 'address-level2',
        'address-level1', 'country', 'country-name', 'postal-code', 'cc-name', 'cc-given-name',
        'cc-additional-name', 'cc-family-name', 'cc-number', 'cc-exp', 'cc-exp-month', 'cc-exp-year',
        'cc-csc', 'cc-type', 'transaction-currency', 'transaction-amount', 'language', 'bday',
        'bday-day', 'bday-month', 'bday-year', 'sex', 'tel', 'tel-country-code', 'tel-national',
        'tel-area-code', 'tel-local', 'tel-extension', 'impp', 'url', 'photo', 'webauthn',
        'shipping', 'billing', 'home', 'work', 'mobile', 'fax', 'pager'
    ]);

    const rules = [
        {
            id: 'image-alt', impact: 'critical', tags: ['wcag2a'],
            description: 'Ensures <img> elements have alternate text or a role of none or presentation',
            check: (root) => Array.from(root.querySelectorAll('img'))
                .filter(img => img.getAttribute('alt') === null
                    && !['none', 'presentation'].includes(img.getAttribute('role'))
                    && !img.getAttribute('aria-label'))
                .map(img => nodeFor(img, 'Element does not have an alt attribute'))
        },
        {
            id: 'label', impact: 'critical', tags: ['wcag2a'],
            description: 'Ensures every form element has a label',
            check: (root) => Array.from(root.querySelectorAll('input, textarea, select'))
                .filter(el => !['hidden', 'submit', 'button', 'reset', 'image'].includes((el.type || '').toLowerCase()))
                .filter(el => {
                    if (el.getAttribute('aria-label') || el.getAttribute('aria-labelledby') || el.getAttribute('title')) return false;
                    if (el.id && document.querySelector(`label[for="${CSS.escape(el.id)}"]`)) return false;
                    return !el.closest('label');
                })
                .map(el => nodeFor(el, 'Form element does not have an implicit or explicit label'))
        },
        {
            id: 'button-name', impact: 'critical', tags: ['wcag2a'],
            description: 'Ensures buttons have discernible text',
            check: (root) => Array.from(root.querySelectorAll('button, [role="button"]'))
                .filter(el => !accessibleName(el) && !el.getAttribute('value'))
                .map(el => nodeFor(el, 'Element does not have inner text that is visible to screen readers'))
        },
        {
            id: 'link-name', impact: 'serious', tags: ['wcag2a'],
            description: 'Ensures links have discernible text',
            check: (root) => Array.from(root.querySelectorAll('a[href]'))
                .filter(el => !accessibleName(el))
                .map(el => nodeFor(el, 'Element does not have text that is visible to screen readers'))
        },
        {
            id: 'document-title', impact: 'serious', tags: ['wcag2a'],
            description: 'Ensures each HTML document contains a non-empty <title> element',
            check: () => (document.title || '').trim() ? [] :
                [nodeFor(document.documentElement, 'Document does not have a non-empty <title> element')]
        },
        {
            id: 'html-has-lang', impact: 'serious', tags: ['wcag2a'],
            description: 'Ensures every HTML document has a lang attribute',
            check: () => (document.documentElement.getAttribute('lang') || '').trim() ? [] :
                [nodeFor(document.documentElement, 'The <html> element does not have a lang attribute')]
        },
        {
            id: 'color-contrast', impact: 'serious', tags: ['wcag2aa'],
            description: 'Ensures the contrast between foreground and background colors meets WCAG 2 AA contrast ratio thresholds',
            check: (root) => {
                const nodes = [];
                let checked = 0;
                for (const el of root.querySelectorAll('p, span, a, button, label, li, td, th, h1, h2, h3, h4, h5, h6')) {
                    if (checked >= 200) break;
                    const ownText = Array.from(el.childNodes)
                        .filter(n => n.nodeType === 3)
                        .map(n => n.textContent.trim())
                        .join('');
                    if (!ownText) continue;
                    const style = window.getComputedStyle(el);
                    if (style.visibility === 'hidden' || style.display === 'none') continue;
                    const fg = parseColor(style.color);
                    if (!fg) continue;
                    checked++;
                    const l1 = luminance(fg.rgb);
                    const l2 = luminance(backgroundOf(el));
                    const ratio = (Math.max(l1, l2) + 0.05) / (Math.min(l1, l2) + 0.05);
                    const size = parseFloat(style.fontSize) || 16;
                    const bold = parseInt(style.fontWeight) >= 700;
                    const large = size >= 24 || (bold && size >= 18.66);
                    if (ratio < (large ? 3 : 4.5)) {
                        nodes.push(nodeFor(el, `Element has insufficient color contrast of ${ratio.toFixed(2)}`));
                    }
                }
                return nodes;
            }
        },
        {
            id: 'meta-viewport', impact: 'critical', tags: ['wcag2aa'],
            description: 'Ensures <meta name="viewport"> does not disable text scaling and zooming',
            check: () => Array.from(document.querySelectorAll('meta[name="viewport"]'))
                .filter(meta => {
                    const content = (meta.getAttribute('content') || '').toLowerCase().replace(/\s/g, '');
                    const max = content.match(/maximum-scale=([\d.]+)/);
                    return content.includes('user-scalable=no') || (max && parseFloat(max[1]) < 2);
                })
                .map(meta => nodeFor(meta, 'Zooming and scaling must not be disabled'))
        },
        {
            id: 'autocomplete-valid', impact: 'serious', tags: ['wcag21aa'],
            description: 'Ensures the autocomplete attribute is correct and suitable for the form field',
            check: (root) => Array.from(root.querySelectorAll('input[autocomplete], select[autocomplete], textarea[autocomplete]'))
                .filter(el => {
                    const tokens = (el.getAttribute('autocomplete') || '').toLowerCase().trim().split(/\s+/)
                        .filter(t => t && !t.startsWith('section-'));
                    return tokens.length > 0 && !tokens.every(t => VALID_AUTOCOMPLETE.has(t));
                })
                .map(el => nodeFor(el, 'The autocomplete attribute is incorrectly formatted'))
        },
        {
            id: 'target-size', impact: 'serious', tags: ['wcag22aa'],
            description: 'Ensure touch targets have sufficient size and space',
            check: (root) => Array.from(root.querySelectorAll('a[href], button, input[type="checkbox"], input[type="radio"]'))
                .filter(el => {
                    const rect = el.getBoundingClientRect();
                    return rect.width > 0 && rect.height > 0 && (rect.width < 24 || rect.height < 24)
                        && window.getComputedStyle(el).display !== 'inline';
                })
                .slice(0, 50)
                .map(el => nodeFor(el, 'Target has insufficient size (smaller than 24px by 24px)'))
        },
        {
            id: 'heading-order', impact: 'moderate', tags: ['best-practice'],
            description: 'Ensures the order of headings is semantically correct',
            check: (root) => {
                const nodes = [];
                let previous = 0;
                root.querySelectorAll('h1, h2, h3, h4, h5, h6').forEach(h => {
                    const level = parseInt(h.tagName.charAt(1));
                    if (previous && level > previous + 1) {
                        nodes.push(nodeFor(h, 'Heading order invalid'));
                    }
                    previous = level;
                });
                return nodes;
            }
        },
        {
            id: 'empty-heading', impact: 'minor', tags: ['best-practice'],
            description: 'Ensures headings have discernible text',
            check: (root) => Array.from(root.querySelectorAll('h1, h2, h3, h4, h5, h6'))
                .filter(h => !accessibleName(h))
                .map(h => nodeFor(h, 'Element does not have text that is visible to screen readers'))
        },
        {
            id: 'landmark-one-main', impact: 'moderate', tags: ['best-practice'],
            description: 'Ensures the document has a main landmark',
            check: () => document.querySelector('main, [role="main"]') ? [] :
                [nodeFor(document.documentElement, 'Document does not have a main landmark')]
        }
    ];

    window.axe = {
        version: 'builtin',
        async run(context, options) {
            const root = context && context.querySelectorAll ? context : document;
            const runOnly = (options && options.runOnly && options.runOnly.values) || null;
            const violations = [];
            for (const rule of rules) {
                if (runOnly && !rule.tags.some(tag => runOnly.includes(tag))) continue;
                let nodes = [];
                try {
                    nodes = rule.check(root);
                } catch (e) {
                    continue;
                }
                if (nodes.length) {
                    violations.push({
                        id: rule.id,
                        impact: rule.impact,
                        tags: rule.tags,
                        description: rule.description,
                        nodes
                    });
                }
            }
            return { violations, passes: [], incomplete: [] };
        }
    };
})();
"""

AXE_PRESENT_JS = "() => typeof window.axe !== 'undefined' && typeof window.axe.run === 'function'"

AXE_RUN_JS = """
async (tags) => {
    if (typeof window.axe === 'undefined') return { violations: [] };
    return await window.axe.run(document, {
        runOnly: { type: 'tag', values: tags },
        resultTypes: ['violations']
    });
}
"""


def load_engine_source(path: Optional[str] = None) -> str:
    """Read an external engine script, falling back to the built-in one."""
    if not path:
        return BUILTIN_AXE_JS
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("[Accessibility] Could not read engine at %s (%s), using built-in rules", path, e)
        return BUILTIN_AXE_JS


class AccessibilityAuditor:
    def __init__(self, engine_source: Optional[str] = None):
        self.engine_source = engine_source or BUILTIN_AXE_JS

    async def ensure_injected(self, page: Any) -> bool:
        """Inject the engine unless the page already has it."""
        if await page.evaluate(AXE_PRESENT_JS):
            return True
        await page.add_script_tag(content=self.engine_source)
        return bool(await page.evaluate(AXE_PRESENT_JS))

    async def audit(self, page: Any, tags: Sequence[str]) -> List[AxeViolation]:
        """Run the engine restricted to ``tags``.

        Returns an empty list when the engine cannot be loaded or the run
        throws; adversarial pages must not fail the batch.
        """
        try:
            if not await self.ensure_injected(page):
                logger.warning("[Accessibility] Engine did not load on %s", getattr(page, "url", "page"))
                return []
            results = await page.evaluate(AXE_RUN_JS, list(tags))
        except Exception as e:
            logger.warning("[Accessibility] Audit failed: %s", e)
            return []

        if not isinstance(results, dict):
            return []
        return [AxeViolation.from_dict(v) for v in results.get("violations") or [] if isinstance(v, dict)]
