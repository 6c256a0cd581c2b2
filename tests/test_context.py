from recall.context import CONTEXT_HEADER, QUERY_HEADER, ContextAssembler
from recall.models import CaptureEvent

from conftest import at


def add(store, seconds, text, app="Editor"):
    store.save(CaptureEvent.create(at(seconds), text, None, app, app and app.lower()))


def test_empty_store_gives_empty_preamble(store):
    assert ContextAssembler(store).build_preamble(5) == ""


def test_non_positive_max_events_gives_empty_preamble(store):
    add(store, 1, "text")
    assert ContextAssembler(store).build_preamble(0) == ""
    assert ContextAssembler(store).build_preamble(-1) == ""


def test_preamble_lists_oldest_first(store):
    add(store, 0, "first", app="Terminal")
    add(store, 60, "second", app="Firefox")

    preamble = ContextAssembler(store).build_preamble(5)

    assert preamble == (
        "[09:00] - Terminal: first\n"
        "...\n"
        "[09:01] - Firefox: second\n"
        "...\n"
    )


def test_preamble_keeps_only_most_recent_events(store):
    for minute in range(7):
        add(store, minute * 60, f"event {minute}")

    preamble = ContextAssembler(store).build_preamble(5)

    assert "event 0" not in preamble
    assert "event 1" not in preamble
    assert preamble.index("event 2") < preamble.index("event 6")
    assert preamble.count("...") == 5


def test_ocr_text_is_trimmed_and_truncated(store):
    add(store, 0, "   " + "x" * 300 + "   ")

    line = ContextAssembler(store).build_preamble(1).splitlines()[0]

    assert line == "[09:00] - Editor: " + "x" * 200


def test_custom_char_budget(store):
    add(store, 0, "abcdefghij")
    assert ": abcd\n" in ContextAssembler(store, ocr_char_budget=4).build_preamble(1)


def test_placeholders_for_missing_values(store):
    add(store, 0, None, app=None)
    add(store, 60, "   ", app="Editor")

    lines = ContextAssembler(store).build_preamble(5).splitlines()

    assert lines[0] == "[09:00] - Unknown App: No text captured"
    assert lines[2] == "[09:01] - Editor: No text captured"


def test_build_prompt_wraps_query_with_context(store):
    add(store, 0, "quarterly report")

    prompt = ContextAssembler(store).build_prompt("what was I reading?")

    assert prompt.startswith(CONTEXT_HEADER)
    assert "quarterly report" in prompt
    assert prompt.endswith(QUERY_HEADER + "what was I reading?")


def test_build_prompt_without_history_is_just_the_query(store):
    assert ContextAssembler(store).build_prompt("hello") == "hello"
