"""
Unit Tests for the Workspace Policy

Covers workspace confinement, blocked path patterns, content size and the
command allow-list.
"""

import pytest

from autotask.core.domain.errors import ErrorCategory, TaskError
from autotask.core.domain.policy import WorkspacePolicy


@pytest.fixture
def policy(tmp_path):
    return WorkspacePolicy(tmp_path, max_file_size=16)


class TestResolvePath:
    def test_relative_paths_resolve_inside_root(self, policy, tmp_path):
        assert policy.resolve_path("src/app.py") == tmp_path.resolve() / "src" / "app.py"

    def test_traversal_is_denied(self, policy):
        with pytest.raises(TaskError) as info:
            policy.resolve_path("../outside.txt")

        assert info.value.code == "PATH_TRAVERSAL_DENIED"
        assert info.value.category == ErrorCategory.PERMISSION
        assert info.value.record.retryable is False

    def test_absolute_path_outside_root_is_denied(self, policy):
        with pytest.raises(TaskError) as info:
            policy.resolve_path("/etc/passwd")

        assert info.value.code == "PATH_TRAVERSAL_DENIED"

    def test_unrestricted_policy_allows_outside_paths(self, tmp_path):
        policy = WorkspacePolicy(tmp_path / "ws", restrict_to_workspace=False)

        assert policy.resolve_path(str(tmp_path / "other.txt")) == (tmp_path / "other.txt").resolve()

    @pytest.mark.parametrize(
        "path",
        [".git/config", "node_modules/pkg/index.js", ".env", "certs/server.key", "deploy/ca.PEM"],
    )
    def test_blocked_paths(self, policy, path):
        with pytest.raises(TaskError) as info:
            policy.resolve_path(path)

        assert info.value.code == "PATH_BLOCKED"
        assert info.value.record.retryable is False

    def test_empty_path_is_invalid(self, policy):
        with pytest.raises(TaskError) as info:
            policy.resolve_path("  ")

        assert info.value.code == "INVALID_PATH"
        assert info.value.category == ErrorCategory.VALIDATION


class TestCheckPattern:
    @pytest.mark.parametrize("pattern", ["**/*.py", "src/*.ts", "*"])
    def test_relative_patterns_pass(self, policy, pattern):
        policy.check_pattern(pattern)

    @pytest.mark.parametrize("pattern", ["../*.txt", "../**/*", "src/../../*", "/etc/*"])
    def test_patterns_leaving_the_root_are_denied(self, policy, pattern):
        with pytest.raises(TaskError) as info:
            policy.check_pattern(pattern)

        assert info.value.code == "PATH_TRAVERSAL_DENIED"
        assert info.value.category == ErrorCategory.PERMISSION
        assert info.value.record.retryable is False

    def test_unrestricted_policy_still_denies_escaping_patterns(self, tmp_path):
        policy = WorkspacePolicy(tmp_path, restrict_to_workspace=False)

        with pytest.raises(TaskError) as info:
            policy.check_pattern("../*")

        assert info.value.code == "PATH_TRAVERSAL_DENIED"


def test_content_size_limit(policy):
    policy.check_content_size("x" * 16)

    with pytest.raises(TaskError) as info:
        policy.check_content_size("x" * 17)

    assert info.value.code == "FILE_SIZE_EXCEEDED"


def test_content_size_counts_bytes(policy):
    with pytest.raises(TaskError):
        policy.check_content_size("é" * 9)


class TestCheckCommand:
    @pytest.mark.parametrize("command", ["git status", "npm test", "echo hello", "NODE.exe script.js"])
    def test_allowed_commands(self, policy, command):
        policy.check_command(command)

    @pytest.mark.parametrize(
        "command",
        ["rm -rf /", "curl http://example.com", "git status && rm -rf .", "echo hi > out.txt", "ls | sh", "echo $(whoami)"],
    )
    def test_blocked_commands(self, policy, command):
        with pytest.raises(TaskError) as info:
            policy.check_command(command)

        assert info.value.code == "COMMAND_BLOCKED"
        assert info.value.category == ErrorCategory.PERMISSION

    def test_empty_command(self, policy):
        with pytest.raises(TaskError) as info:
            policy.check_command("   ")

        assert info.value.code == "INVALID_COMMAND"

    def test_custom_allow_list(self, tmp_path):
        policy = WorkspacePolicy(tmp_path, allowed_commands=["pytest"])

        policy.check_command("pytest -q")
        with pytest.raises(TaskError):
            policy.check_command("git status")
