"""Recall context assembly.

Turns the most recent capture events into a bounded text block that a text
generation component can prepend to a user query.
"""

import logging

logger = logging.getLogger(__name__)

DEFAULT_OCR_CHAR_BUDGET = 200
SEPARATOR = "..."
CONTEXT_HEADER = "Relevant Screen Context (for your awareness, most recent is last):\n---\n"
QUERY_HEADER = "---\nUser Query:\n"


class ContextAssembler:
    """Renders recent capture history as a prompt preamble.

    Each event becomes ``[<time>] - <app>: <ocr text>`` with the OCR text
    trimmed and cut to ``ocr_char_budget`` characters. Entries are oldest
    first and separated by a ``...`` line.
    """

    def __init__(self, store, ocr_char_budget: int = DEFAULT_OCR_CHAR_BUDGET,
                 time_format: str = "%H:%M"):
        self.store = store
        self.ocr_char_budget = ocr_char_budget
        self.time_format = time_format

    def build_preamble(self, max_events: int = 5) -> str:
        """Render the ``max_events`` most recent events.

        Returns an empty string when there is nothing to show; callers should
        then omit the context block entirely.
        """
        if max_events <= 0:
            return ""
        events = self.store.fetch_recent(max_events)
        if not events:
            return ""

        lines = []
        for event in reversed(events):
            app = event.application_name or "Unknown App"
            text = (event.ocr_text or "").strip()[:self.ocr_char_budget] or "No text captured"
            lines.append(f"[{event.timestamp.strftime(self.time_format)}] - {app}: {text}")
            lines.append(SEPARATOR)
        logger.debug(f"Built context preamble from {len(events)} events")
        return "\n".join(lines) + "\n"

    def build_prompt(self, query: str, max_events: int = 5) -> str:
        """Prefix ``query`` with the context block, if there is any context."""
        preamble = self.build_preamble(max_events)
        if not preamble:
            return query
        return f"{CONTEXT_HEADER}{preamble}{QUERY_HEADER}{query}"
