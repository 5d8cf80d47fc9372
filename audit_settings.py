"""
Batch audit settings and configuration.

Per-batch analysis settings (what the client asks for) and the orchestrator
configuration (how the server runs the batch) live here, together with the
error types shared by every audit module.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# --- Errors ---

class PageAuditError(Exception):
    """Base class for audit errors."""


class InvalidRequestError(PageAuditError, ValueError):
    """The analysis request or its settings are malformed."""


class BrowserLaunchError(PageAuditError):
    """The browser could not be launched or attached."""


class BatchAborted(PageAuditError):
    """Raised at a cancellation checkpoint once the batch has been aborted."""


# --- Engine selection ---

class BrowserMode(str, Enum):
    LAUNCH = "launch"
    ATTACH = "attach"


class ContextStrategy(str, Enum):
    SHARED = "shared"
    PER_URL = "per_url"


class AccessibilityStandard(str, Enum):
    """WCAG levels in cumulative order."""

    WCAG20_A = "2.0-A"
    WCAG20_AA = "2.0-AA"
    WCAG21_A = "2.1-A"
    WCAG21_AA = "2.1-AA"
    WCAG22_A = "2.2-A"
    WCAG22_AA = "2.2-AA"

    @property
    def tag(self) -> str:
        return _STANDARD_TAGS[self]

    @classmethod
    def parse(cls, value: Any) -> "AccessibilityStandard":
        """Accept "2.1-AA", "wcag21aa" or an enum member."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            for standard in cls:
                if text.upper() == standard.value.upper() or text.lower() == standard.tag:
                    return standard
        raise InvalidRequestError(f"Unknown accessibility standard: {value!r}")


_STANDARD_TAGS = {
    AccessibilityStandard.WCAG20_A: "wcag2a",
    AccessibilityStandard.WCAG20_AA: "wcag2aa",
    AccessibilityStandard.WCAG21_A: "wcag21a",
    AccessibilityStandard.WCAG21_AA: "wcag21aa",
    AccessibilityStandard.WCAG22_A: "wcag22a",
    AccessibilityStandard.WCAG22_AA: "wcag22aa",
}

BEST_PRACTICE_TAG = "best-practice"


def accessibility_tags_for(standard: AccessibilityStandard, best_practices: bool = True) -> List[str]:
    """Cumulative rule tags up to and including ``standard``."""
    ordered = list(AccessibilityStandard)
    tags = [level.tag for level in ordered[:ordered.index(standard) + 1]]
    if best_practices:
        tags.append(BEST_PRACTICE_TAG)
    return tags


# --- Per-batch settings ---

DEFAULT_CONCURRENCY = 2
DEFAULT_TIMEOUT_MS = 30000


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidRequestError(f"{name} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise InvalidRequestError(f"{name} must be an integer") from None
    if not isinstance(value, int):
        raise InvalidRequestError(f"{name} must be an integer")
    return value


def _coerce_bool(value: Any, name: str) -> bool:
    """Accept JSON booleans and the strings "true"/"false"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise InvalidRequestError(f"{name} must be true or false")


@dataclass(frozen=True)
class AnalysisSettings:
    concurrency: int = DEFAULT_CONCURRENCY
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    accessibility_standard: AccessibilityStandard = AccessibilityStandard.WCAG20_AA
    best_practices: bool = True
    capture_screenshots: bool = False

    def __post_init__(self):
        if self.concurrency < 1:
            raise InvalidRequestError("concurrency must be at least 1")
        if self.timeout_ms <= 0:
            raise InvalidRequestError("timeoutMs must be positive")

    @property
    def accessibility_tags(self) -> List[str]:
        return accessibility_tags_for(self.accessibility_standard, self.best_practices)

    @property
    def navigation_timeout_ms(self) -> int:
        return max(1, self.timeout_ms * 2 // 3)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AnalysisSettings":
        """Build settings from a partial camelCase payload.

        Missing keys take their defaults. ``timeout`` is accepted as an alias
        of ``timeoutMs`` and raw ``wcag*`` tag names are accepted for the
        standard, matching what older clients send.
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidRequestError("settings must be an object")

        kwargs: Dict[str, Any] = {}
        if data.get("concurrency") is not None:
            kwargs["concurrency"] = _coerce_int(data["concurrency"], "concurrency")
        timeout = data.get("timeoutMs", data.get("timeout"))
        if timeout is not None:
            kwargs["timeout_ms"] = _coerce_int(timeout, "timeoutMs")
        if data.get("accessibilityStandard") is not None:
            kwargs["accessibility_standard"] = AccessibilityStandard.parse(data["accessibilityStandard"])
        if data.get("bestPractices") is not None:
            kwargs["best_practices"] = _coerce_bool(data["bestPractices"], "bestPractices")
        if data.get("captureScreenshots") is not None:
            kwargs["capture_screenshots"] = _coerce_bool(data["captureScreenshots"], "captureScreenshots")
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "timeoutMs": self.timeout_ms,
            "accessibilityStandard": self.accessibility_standard.value,
            "bestPractices": self.best_practices,
            "captureScreenshots": self.capture_screenshots,
            "accessibilityTags": self.accessibility_tags,
        }


@dataclass(frozen=True)
class AnalysisRequest:
    urls: Tuple[str, ...]
    settings: AnalysisSettings = field(default_factory=AnalysisSettings)

    def __post_init__(self):
        if not self.urls:
            raise InvalidRequestError("URLs array is required")

    @classmethod
    def from_payload(cls, body: Any) -> "AnalysisRequest":
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        urls = body.get("urls")
        if not isinstance(urls, list) or not urls:
            raise InvalidRequestError("URLs array is required")
        cleaned = []
        for url in urls:
            if not isinstance(url, str) or not url.strip():
                raise InvalidRequestError("Every URL must be a non-empty string")
            cleaned.append(url.strip())
        return cls(urls=tuple(cleaned), settings=AnalysisSettings.from_dict(body.get("settings")))


# --- Orchestrator configuration ---

ENV_PREFIX = "PAGE_AUDIT_"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[Config] Ignoring %s%s=%r, expected an integer", ENV_PREFIX, name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[Config] Ignoring %s%s=%r, expected a number", ENV_PREFIX, name, raw)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OrchestratorConfig:
    browser_mode: BrowserMode = BrowserMode.LAUNCH
    context_strategy: ContextStrategy = ContextStrategy.SHARED
    cdp_endpoint: str = "http://localhost:9222"
    headless: bool = True
    max_concurrency: int = 10
    link_check_limit: int = 20
    link_timeout_s: float = 5.0
    global_timeout_ms: int = 15000
    scroll_step_px: int = 200
    scroll_max_steps: int = 50
    settle_delay_ms: int = 1000
    axe_source_path: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Read ``PAGE_AUDIT_*`` environment variables over the defaults."""
        defaults = cls()
        mode = os.getenv(ENV_PREFIX + "BROWSER_MODE", defaults.browser_mode.value)
        strategy = os.getenv(ENV_PREFIX + "CONTEXT_STRATEGY", defaults.context_strategy.value)
        try:
            browser_mode = BrowserMode(mode.strip().lower())
        except ValueError:
            logger.warning("[Config] Unknown browser mode %r, using %s", mode, defaults.browser_mode.value)
            browser_mode = defaults.browser_mode
        try:
            context_strategy = ContextStrategy(strategy.strip().lower())
        except ValueError:
            logger.warning("[Config] Unknown context strategy %r, using %s", strategy, defaults.context_strategy.value)
            context_strategy = defaults.context_strategy

        return cls(
            browser_mode=browser_mode,
            context_strategy=context_strategy,
            cdp_endpoint=os.getenv(ENV_PREFIX + "CDP_ENDPOINT", defaults.cdp_endpoint),
            headless=_env_bool("HEADLESS", defaults.headless),
            max_concurrency=max(1, _env_int("MAX_CONCURRENCY", defaults.max_concurrency)),
            link_check_limit=max(1, _env_int("LINK_CHECK_LIMIT", defaults.link_check_limit)),
            link_timeout_s=_env_float("LINK_TIMEOUT", defaults.link_timeout_s),
            global_timeout_ms=_env_int("GLOBAL_TIMEOUT_MS", defaults.global_timeout_ms),
            scroll_step_px=_env_int("SCROLL_STEP", defaults.scroll_step_px),
            scroll_max_steps=_env_int("SCROLL_MAX_STEPS", defaults.scroll_max_steps),
            settle_delay_ms=_env_int("SETTLE_DELAY_MS", defaults.settle_delay_ms),
            axe_source_path=os.getenv(ENV_PREFIX + "AXE_SOURCE") or None,
            user_agent=os.getenv(ENV_PREFIX + "USER_AGENT") or None,
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Send audit logs to stderr; stdout is reserved for the MCP transport."""
    level_name = (level or os.getenv(ENV_PREFIX + "LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
