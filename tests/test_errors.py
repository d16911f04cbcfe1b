"""Unit tests for the error registry."""

from __future__ import annotations

from containerview import clear_errors, get_errors, get_errors_by_category, log_error


class TestErrorRegistry:
    def test_log_and_group(self):
        log_error("docker.command", "docker ps", {"returncode": 1})
        log_error("store.refresh", "gone")
        log_error("docker.command", "docker images")
        grouped = get_errors_by_category()
        assert [e["msg"] for e in grouped["docker.command"]] == ["docker ps", "docker images"]
        assert grouped["store.refresh"][0]["ctx"] == {}

    def test_clear_category(self):
        log_error("a", "1")
        log_error("b", "2")
        log_error("a", "3")
        assert clear_errors("a") == 2
        assert [e["cat"] for e in get_errors()] == ["b"]

    def test_clear_unknown_category(self):
        assert clear_errors("nothing") == 0

    def test_get_errors_is_a_copy(self):
        errors = get_errors()
        log_error("a", "late")
        assert errors == []
