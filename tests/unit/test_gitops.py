"""Tests for manifest rewriting and loop-safety checks (no git required)."""

from __future__ import annotations

import base64
import subprocess

import pytest

from pipewright.core import gitops
from pipewright.core.gitops import (
    COMMIT_MESSAGE,
    GitCommandError,
    GitOpsError,
    GitOpsUpdater,
    check_loop_safety,
    replace_image,
    split_image_ref,
)
from pipewright.core.stage_graph import ConfigurationError
from pipewright.models.events import TriggerConfig

MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
spec:
  template:
    spec:
      containers:
        - name: app
          image: ghcr.io/acme/app:1.0.0  # bumped by CI
        - name: sidecar
          image: "ghcr.io/acme/proxy:2.3"
"""


class TestSplitImageRef:
    @pytest.mark.parametrize(
        "ref, expected",
        [
            ("app:1.0", ("app", "1.0")),
            ("ghcr.io/acme/app:abc123", ("ghcr.io/acme/app", "abc123")),
            ("localhost:5000/app", ("localhost:5000/app", "")),
            ("localhost:5000/app:v2", ("localhost:5000/app", "v2")),
            ("app@sha256:ff00", ("app", "@sha256:ff00")),
            ("app", ("app", "")),
        ],
    )
    def test_split(self, ref, expected):
        assert split_image_ref(ref) == expected


class TestReplaceImage:
    def test_rewrites_only_matching_repository(self):
        text, replaced = replace_image(MANIFEST, "ghcr.io/acme/app", "ghcr.io/acme/app:deadbeef")
        assert replaced == ["ghcr.io/acme/app:1.0.0"]
        assert "image: ghcr.io/acme/app:deadbeef  # bumped by CI\n" in text
        assert 'image: "ghcr.io/acme/proxy:2.3"' in text

    def test_preserves_quotes(self):
        text, replaced = replace_image(MANIFEST, "ghcr.io/acme/proxy", "ghcr.io/acme/proxy:2.4")
        assert replaced == ["ghcr.io/acme/proxy:2.3"]
        assert 'image: "ghcr.io/acme/proxy:2.4"' in text

    def test_only_image_lines_change(self):
        text, _ = replace_image(MANIFEST, "ghcr.io/acme/app", "ghcr.io/acme/app:2")
        before = MANIFEST.splitlines()
        after = text.splitlines()
        assert len(before) == len(after)
        assert [i for i, (a, b) in enumerate(zip(before, after)) if a != b] == [7]

    def test_already_current_is_noop(self):
        text, replaced = replace_image(MANIFEST, "ghcr.io/acme/app", "ghcr.io/acme/app:1.0.0")
        assert replaced == []
        assert text == MANIFEST

    def test_unknown_repository(self):
        assert replace_image(MANIFEST, "docker.io/other", "docker.io/other:1")[1] == []

    def test_crlf_line_endings_kept(self):
        text, _ = replace_image("image: app:1\r\nname: x\r\n", "app", "app:2")
        assert text == "image: app:2\r\nname: x\r\n"


class TestLoopSafety:
    def test_covered_manifest_passes(self):
        check_loop_safety("k8s/deployment.yaml", TriggerConfig(ignore_paths=["k8s/**"]))

    def test_uncovered_manifest_rejected(self):
        with pytest.raises(ConfigurationError, match="re-trigger"):
            check_loop_safety("deploy/app.yaml", TriggerConfig(ignore_paths=["k8s/**"]))

    def test_no_ignore_paths_rejected(self):
        with pytest.raises(ConfigurationError):
            check_loop_safety("k8s/deployment.yaml", TriggerConfig())


class TestGitOpsUpdaterWithoutGit:
    def test_missing_manifest(self, tmp_path):
        with pytest.raises(GitOpsError, match="Manifest not found"):
            GitOpsUpdater(tmp_path).update_manifest("k8s/deployment.yaml", "app:1")

    def test_nothing_to_replace_leaves_file_alone(self, tmp_path):
        manifest = tmp_path / "deployment.yaml"
        manifest.write_text(MANIFEST, encoding="utf-8")
        updater = GitOpsUpdater(tmp_path)
        with pytest.raises(GitOpsError, match="No image reference"):
            updater.update_manifest("deployment.yaml", "ghcr.io/acme/app:1.0.0")
        assert manifest.read_text(encoding="utf-8") == MANIFEST
        assert updater.history == []

    def test_author_parsing(self, tmp_path):
        assert GitOpsUpdater(tmp_path, author="CI Bot <ci@example.com>")._author_parts() == (
            "CI Bot",
            "ci@example.com",
        )
        assert GitOpsUpdater(tmp_path, author="ci")._author_parts() == ("ci", "pipewright@localhost")


def test_commit_message_format():
    assert COMMIT_MESSAGE.format(name="app", tag="abc") == "chore(deploy): update app image to abc"


def test_git_command_error_message():
    err = GitCommandError(command=["git", "push"], returncode=128, stderr="rejected\n")
    assert str(err) == "git command failed (128): git push: rejected"
    assert isinstance(err, GitOpsError)


class TestGitClientCredentials:
    def test_token_travels_in_environment_only(self, tmp_path, monkeypatch):
        seen = {}

        def _fake_run(command, **kwargs):
            seen["command"] = command
            seen["env"] = kwargs["env"]
            return subprocess.CompletedProcess(command, 0, stdout="ok\n", stderr="")

        monkeypatch.setattr(gitops.subprocess, "run", _fake_run)
        out = gitops.GitClient(tmp_path, token="s3cr3t-token").run(["push", "origin", "HEAD:refs/heads/main"])

        assert out == "ok"
        assert all("s3cr3t-token" not in part for part in seen["command"])
        env = seen["env"]
        assert env["GIT_TERMINAL_PROMPT"] == "0"
        assert env["GIT_CONFIG_KEY_0"] == "http.extraHeader"
        expected = base64.b64encode(b"x-access-token:s3cr3t-token").decode()
        assert env["GIT_CONFIG_VALUE_0"] == f"Authorization: Basic {expected}"

    def test_failure_raises(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            gitops.subprocess,
            "run",
            lambda command, **kwargs: subprocess.CompletedProcess(command, 1, stdout="", stderr="fatal: nope"),
        )
        with pytest.raises(GitCommandError) as excinfo:
            gitops.GitClient(tmp_path).run(["status"])
        assert excinfo.value.returncode == 1
        assert excinfo.value.stderr == "fatal: nope"
        assert "GIT_CONFIG_COUNT" not in excinfo.value.command
