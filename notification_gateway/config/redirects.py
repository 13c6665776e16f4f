"""
Redirect URL patterns keyed by source service.

Patterns are read from NOTIFICATION_REDIRECT_<SERVICE> environment variables,
e.g. NOTIFICATION_REDIRECT_LOAPHUONG=/announcements/{contentId}. The
NOTIFICATION_REDIRECT_DEFAULT entry is used when a service has no pattern.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "NOTIFICATION_REDIRECT_"
DEFAULT_KEY = "DEFAULT"

DEFAULT_PATTERNS: Dict[str, str] = {
    DEFAULT_KEY: "/notifications/{contentId}",
    "LOAPHUONG": "/announcements/{contentId}",
    "TASK": "/tasks/{contentId}",
    "PAYMENT": "/payments/{contentId}",
    "BOOKING": "/bookings/{contentId}",
}


def service_key(service: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", (service or "").upper())


def fill_placeholders(
    pattern: str, content_id: str, content_type: Optional[str] = None
) -> str:
    url = pattern.replace("{contentId}", content_id).replace("{id}", content_id)
    if content_type:
        url = url.replace("{contentType}", content_type)
    return url


class RedirectPatterns:
    """Read-mostly lookup of URL templates per source service."""

    def __init__(self, patterns: Optional[Mapping[str, str]] = None):
        source = dict(DEFAULT_PATTERNS) if patterns is None else dict(patterns)
        self._patterns: Dict[str, str] = {service_key(k): v for k, v in source.items()}

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RedirectPatterns":
        env = os.environ if env is None else env
        patterns: Dict[str, str] = {}
        for key, value in env.items():
            if key.startswith(ENV_PREFIX) and value:
                patterns[key[len(ENV_PREFIX):]] = value
                logger.debug("Loaded redirect pattern for %s: %s", key, value)
        if not patterns:
            logger.warning("No redirect patterns configured, using defaults")
            return cls()
        return cls(patterns)

    def pattern_for(self, service: Optional[str]) -> Optional[str]:
        if service:
            pattern = self._patterns.get(service_key(service))
            if pattern:
                return pattern
        return self._patterns.get(DEFAULT_KEY)

    def register(self, service: str, pattern: str) -> None:
        key = service_key(service)
        self._patterns[key] = pattern
        logger.info("Registered redirect pattern for %s: %s", key, pattern)

    def resolve(
        self,
        source_service: Optional[str],
        content_id: Optional[str],
        explicit_url: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Optional[str]:
        """Explicit URL, then service pattern, then default pattern, then nothing."""
        if explicit_url:
            return explicit_url
        if not content_id:
            return None
        pattern = self.pattern_for(source_service)
        if not pattern:
            logger.warning("No redirect pattern found for service: %s", source_service)
            return None
        return fill_placeholders(pattern, content_id, content_type)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._patterns)
