"""Tests for sysop.safety — danger assessment and interactive-program detection."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

import sysop.tools  # noqa: F401  registers tools
from sysop.config import SafetySettings
from sysop.errors import SafetyViolation
from sysop.models.base import ToolInvocation
from sysop.safety import SafetyPolicy, Verdict
from sysop.safety.interactive import detect_interactive


def _call(name: str, **arguments: object) -> ToolInvocation:
    return ToolInvocation(id="t1", name=name, arguments=dict(arguments))


class TestClosedRegistry:
    """Names outside the registry are BLOCKED before anything else is looked at."""

    def setup_method(self) -> None:
        self.policy = SafetyPolicy(SafetySettings())

    @pytest.mark.parametrize(
        "name",
        ["delete_file", "execute_shell", "RUN_CMD", "run_cmd ", "", "mcp.filesystem", "__import__"],
    )
    def test_unknown_names_are_blocked(self, name: str) -> None:
        assessment = self.policy.assess(_call(name, cmd="ls"))
        assert assessment.verdict == Verdict.BLOCKED
        assert "unknown tool" in assessment.reason

    def test_non_mapping_arguments_are_blocked(self) -> None:
        bad = ToolInvocation(id="t", name="run_cmd", arguments=["ls"])  # type: ignore[arg-type]
        assert self.policy.assess(bad).blocked

    def test_schema_violations_are_blocked(self) -> None:
        assessment = self.policy.assess(_call("run_cmd", command="ls"))
        assert assessment.blocked
        assert "missing required argument 'cmd'" in assessment.reason

    def test_enforce_raises_on_blocked(self) -> None:
        with pytest.raises(SafetyViolation):
            self.policy.enforce(_call("format_disk"))

    def test_enforce_returns_non_blocked(self) -> None:
        assert self.policy.enforce(_call("run_cmd", cmd="uptime")).allowed


class TestShellAssessment:
    def setup_method(self) -> None:
        self.policy = SafetyPolicy(SafetySettings())

    @pytest.mark.parametrize("cmd", ["uptime", "df -h", "ls -la /tmp", "journalctl -u nginx -n 50 --no-pager | tail"])
    def test_harmless_commands_are_allowed(self, cmd: str) -> None:
        assert self.policy.assess(_call("run_cmd", cmd=cmd)).allowed

    @pytest.mark.parametrize(
        "cmd",
        [
            "rm -rf /tmp/build",
            "RM  -RF build",
            "cd /tmp && rm -r old",
            "sudo apt-get upgrade",
            "dd if=/dev/zero of=disk.img bs=1M count=10",
            "git reset --hard HEAD~1",
            "systemctl stop nginx",
            "echo ok; shutdown -h now",
        ],
    )
    def test_destructive_patterns_require_confirmation(self, cmd: str) -> None:
        assessment = self.policy.assess(_call("run_cmd", cmd=cmd))
        assert assessment.verdict == Verdict.REQUIRES_CONFIRMATION
        assert "destructive pattern" in assessment.reason

    @pytest.mark.parametrize(
        "cmd",
        [
            "find ~ -size +100M",
            "du -sh $HOME/Downloads",
            "cat /etc/hosts",
            "ls /",
            "cp build.log /var/log/app/",
            "grep -r --include=*.conf listen /etc/nginx",
            "echo hi >/etc/motd",
        ],
    )
    def test_sensitive_paths_require_confirmation(self, cmd: str) -> None:
        assessment = self.policy.assess(_call("run_cmd", cmd=cmd))
        assert assessment.verdict == Verdict.REQUIRES_CONFIRMATION
        assert "sensitive path" in assessment.reason

    @pytest.mark.parametrize(
        "cmd",
        [
            "ls /tmp 2>/dev/null",
            "grep -r error ./logs >/dev/null 2>&1",
            "head -c 16 /dev/urandom | base64",
            "echo started >/dev/stderr",
        ],
    )
    def test_harmless_device_files_are_allowed(self, cmd: str) -> None:
        assert self.policy.assess(_call("run_cmd", cmd=cmd)).allowed

    def test_other_devices_stay_sensitive(self) -> None:
        assessment = self.policy.assess(_call("run_cmd", cmd="cat /dev/sda 2>/dev/null | head -c 512"))
        assert assessment.needs_confirmation
        assert "/dev/sda" in assessment.reason

    def test_sensitive_cwd_requires_confirmation(self) -> None:
        assert self.policy.assess(_call("run_cmd", cmd="ls", cwd="/etc")).needs_confirmation

    def test_word_boundaries(self) -> None:
        # "perform" contains "rm " only as a suffix of another word
        assert self.policy.assess(_call("run_cmd", cmd="echo perform tasks")).allowed
        assert self.policy.assess(_call("run_cmd", cmd="./confirm --help")).allowed

    def test_interactive_programs_are_blocked(self) -> None:
        assessment = self.policy.assess(_call("run_cmd", cmd="vim notes.txt"))
        assert assessment.blocked
        assert "interactive" in assessment.reason

    def test_destructive_text_with_other_content_still_gated(self) -> None:
        cmd = "echo 'cleaning up' && ls && rm -rf ./dist && echo done"
        assert self.policy.assess(_call("run_cmd", cmd=cmd)).needs_confirmation

    def test_extra_patterns_and_paths_from_settings(self) -> None:
        policy = SafetyPolicy(SafetySettings(dangerous_patterns=["terraform destroy"], sensitive_paths=["/data"]))
        assert policy.assess(_call("run_cmd", cmd="terraform   destroy -auto-approve")).needs_confirmation
        assert policy.assess(_call("run_cmd", cmd="ls /data/backups")).needs_confirmation
        # The default list was replaced
        assert policy.assess(_call("run_cmd", cmd="rm -rf ./dist")).allowed


class TestOtherKinds:
    def setup_method(self) -> None:
        self.policy = SafetyPolicy(SafetySettings())

    def test_python_destructive_call(self) -> None:
        code = "import shutil\nshutil.rmtree('build')"
        assert self.policy.assess(_call("run_python", code=code)).needs_confirmation

    def test_python_home_access(self) -> None:
        code = "import os\nprint(os.listdir(os.path.expanduser('~')))"
        assert self.policy.assess(_call("run_python", code=code)).needs_confirmation

    def test_python_harmless(self) -> None:
        assert self.policy.assess(_call("run_python", code="print(sum(range(10)))")).allowed

    def test_write_to_system_path(self) -> None:
        assert self.policy.assess(_call("write_file", path="/etc/cron.d/job", content="x")).needs_confirmation

    def test_write_to_relative_path(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        if self.policy.is_sensitive_path(str(tmp_path)):
            pytest.skip("temporary directory lives under a sensitive prefix")
        assert self.policy.assess(_call("write_file", path="out/report.txt", content="x")).allowed

    def test_unresolvable_write_path_is_blocked(self) -> None:
        with patch.object(Path, "resolve", side_effect=ValueError("embedded null byte")):
            assessment = self.policy.assess(_call("write_file", path="out\x00.txt", content="x"))
        assert assessment.blocked
        assert "embedded null byte" in assessment.reason

    @pytest.mark.skipif(sys.platform == "win32", reason="~user expansion is POSIX-only")
    def test_unknown_user_home_is_blocked(self) -> None:
        assessment = self.policy.assess(
            _call("write_file", path="~sysop_no_such_user_12345/notes.txt", content="x")
        )
        assert assessment.blocked
        assert "unusable path" in assessment.reason

    def test_read_home_file(self) -> None:
        assert self.policy.assess(_call("read_file", path="~/.bashrc")).needs_confirmation

    def test_read_relative_file(self) -> None:
        assert self.policy.assess(_call("read_file", path="logs/app.log")).allowed

    def test_search_in_home(self) -> None:
        assert self.policy.assess(_call("search", pattern="*.iso", directory="~")).needs_confirmation

    def test_mcp_is_allowed_by_default(self) -> None:
        assessment = self.policy.assess(_call("mcp", server="github", tool="create_issue", arguments={}))
        assert assessment.allowed

    def test_mcp_confirm_globs(self) -> None:
        policy = SafetyPolicy(SafetySettings(mcp_confirm=["github/delete_*"]))
        assert policy.assess(_call("mcp", server="github", tool="delete_repo")).needs_confirmation
        assert policy.assess(_call("mcp", server="github", tool="list_issues")).allowed


class TestInteractiveDetection:
    @pytest.mark.parametrize(
        "cmd",
        [
            "vim /etc/hosts",
            "sudo nano /etc/fstab",
            "htop",
            "top",
            "less /var/log/syslog",
            "journalctl -u ssh | less",
            "ssh prod-1",
            "python3",
            "mysql -u root",
            "git commit",
            "git rebase -i HEAD~3",
            "crontab -e",
            "tmux",
            "FOO=1 watch -n 5 uptime",
        ],
    )
    def test_interactive(self, cmd: str) -> None:
        assert detect_interactive(cmd) is not None

    @pytest.mark.parametrize(
        "cmd",
        [
            "top -b -n 1",
            "cat /var/log/syslog | less | head",
            "ssh prod-1 uptime",
            "python3 -c 'print(1)'",
            "python3 script.py",
            "echo 'select 1' | mysql",
            "mysql -e 'show databases'",
            "git commit -m 'fix'",
            "crontab -l",
            "tmux ls",
            "vim --version",
            "ls -la 2>&1",
            "sleep 1 &",
        ],
    )
    def test_not_interactive(self, cmd: str) -> None:
        assert detect_interactive(cmd) is None

    def test_suggestion_is_offered(self) -> None:
        match = detect_interactive("top")
        assert match is not None
        assert "top -b" in match.suggestion
