from __future__ import annotations

from windows_node_e2e.log_utils import contains_failure_marker, sanitize_log


def test_sanitize_log_normalizes_crlf_and_strips_ansi() -> None:
    raw = "=== RUN   TestX\r\n\x1b[32m--- PASS: TestX (0.00s)\x1b[0m\r\nprogress 10%\rprogress 20%\r\n"

    cleaned = sanitize_log(raw)

    assert "\r" not in cleaned
    assert "\x1b" not in cleaned
    lines = cleaned.splitlines()
    assert lines[0] == "=== RUN   TestX"
    assert lines[1] == "--- PASS: TestX (0.00s)"
    assert "progress 10%" in lines and "progress 20%" in lines


def test_sanitize_log_prefixes_failed_tests() -> None:
    cleaned = sanitize_log("--- FAIL: TestY (0.01s)\nFAIL\n")
    assert cleaned.splitlines()[0] == "[error] --- FAIL: TestY (0.01s)"
    # Already prefixed lines are left alone.
    assert sanitize_log(cleaned) == cleaned


def test_sanitize_log_empty() -> None:
    assert sanitize_log("") == ""


def test_failure_marker_detection() -> None:
    assert not contains_failure_marker("PASS: ok\n--- PASS: TestX")
    assert contains_failure_marker("--- FAIL: TestY")
    assert not contains_failure_marker("")
