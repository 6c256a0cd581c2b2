"""Privacy exclusion gate.

Decides whether the foreground application may be captured. Runs before any
OCR or disk work on a tick, so an excluded window never leaves memory.
"""

import logging
from typing import Optional

from .models import Decision, ExclusionRuleSet

logger = logging.getLogger(__name__)

INCOGNITO_TERMS = ("incognito", "private browsing", "inprivate")


def decide(
    app_name: Optional[str],
    bundle_id: Optional[str],
    window_title: Optional[str],
    rules: ExclusionRuleSet,
) -> Decision:
    """Return EXCLUDE if the foreground window matches any rule.

    Checks run in order and the first match wins:
    1. bundle identifier is in the excluded set (exact match)
    2. window title contains an excluded keyword (case-insensitive)
    3. incognito detection is on and the title contains a private-browsing term

    A missing window title skips checks 2 and 3.

    Args:
        app_name: Display name of the application (only used for logging)
        bundle_id: Application identifier
        window_title: Title of the focused window
        rules: Current exclusion rules

    Returns:
        Decision.ALLOW or Decision.EXCLUDE
    """
    if bundle_id and bundle_id in rules.excluded_bundle_ids:
        logger.info(f"Excluded {bundle_id}: bundle id is in the excluded set")
        return Decision.EXCLUDE

    if window_title is None:
        return Decision.ALLOW

    title = window_title.lower()
    for keyword in rules.excluded_title_keywords:
        needle = keyword.strip().lower()
        if needle and needle in title:
            logger.info(f"Excluded {app_name or bundle_id or 'unknown app'}: title matches '{keyword}'")
            return Decision.EXCLUDE

    if rules.ignore_incognito:
        for term in INCOGNITO_TERMS:
            if term in title:
                logger.info(f"Excluded {app_name or bundle_id or 'unknown app'}: private browsing window")
                return Decision.EXCLUDE

    return Decision.ALLOW
