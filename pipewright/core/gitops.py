"""GitOps Updater — rewrites the deployed image reference and commits it.

``update_manifest(path, image_ref)`` performs a targeted replacement of the
``image:`` field for one image repository inside a deployment descriptor,
commits that single file and pushes it.

The commit this produces is itself a push event.  It must be suppressed by
the Trigger Filter's ignore patterns, otherwise every deployment would
trigger another run.  :meth:`GitOpsUpdater.commit_event` reconstructs that
event from git so it can be replayed through the filter, and
:func:`check_loop_safety` rejects configurations where the manifest path is
not ignored.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pipewright.core.stage_graph import ConfigurationError
from pipewright.core.trigger_filter import only_ignored_paths
from pipewright.models.events import Event, EventType, TriggerConfig

logger = logging.getLogger(__name__)

COMMIT_MESSAGE = "chore(deploy): update {name} image to {tag}"

_IMAGE_LINE = re.compile(
    r"^(?P<prefix>\s*(?:-\s*)?image:\s*)(?P<quote>[\"']?)(?P<ref>[^\s\"'#]+)(?P=quote)(?P<rest>.*)$"
)


class GitOpsError(RuntimeError):
    """Raised when the manifest cannot be updated."""


class GitCommandError(GitOpsError):
    """Raised when a git subprocess exits non-zero."""

    def __init__(self, *, command: Sequence[str], returncode: int, stderr: str) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True)
class ManifestUpdate:
    path: str
    old_refs: tuple[str, ...]
    new_ref: str
    commit: str


def split_image_ref(ref: str) -> tuple[str, str]:
    """Split ``repo[:tag][@digest]`` into ``(repo, tag-or-digest)``.

    A registry port (``host:5000/app``) is not mistaken for a tag.
    """
    if "@" in ref:
        repo, digest = ref.split("@", 1)
        return repo, f"@{digest}"
    last_slash = ref.rfind("/")
    colon = ref.rfind(":")
    if colon > last_slash:
        return ref[:colon], ref[colon + 1:]
    return ref, ""


def replace_image(text: str, image_name: str, image_ref: str) -> tuple[str, list[str]]:
    """Rewrite every ``image:`` line whose repository is *image_name*.

    Returns the new text and the references that were replaced.  Quoting,
    indentation and trailing comments are preserved.
    """
    replaced: list[str] = []
    lines = text.splitlines(keepends=True)
    for i, line in enumerate(lines):
        body = line.rstrip("\r\n")
        match = _IMAGE_LINE.match(body)
        if not match:
            continue
        old_ref = match.group("ref")
        if split_image_ref(old_ref)[0] != image_name or old_ref == image_ref:
            continue
        newline = line[len(body):]
        lines[i] = (
            f"{match.group('prefix')}{match.group('quote')}{image_ref}"
            f"{match.group('quote')}{match.group('rest')}{newline}"
        )
        replaced.append(old_ref)
    return "".join(lines), replaced


def check_loop_safety(manifest_path: str, triggers: TriggerConfig) -> None:
    """Refuse configurations where the GitOps commit would re-trigger the pipeline."""
    if not only_ignored_paths([manifest_path], triggers.ignore_paths):
        raise ConfigurationError(
            f"GitOps manifest {manifest_path!r} is not covered by trigger ignore_paths "
            f"{triggers.ignore_paths}; its write-back commit would re-trigger the pipeline"
        )


class GitClient:
    """Thin wrapper over the ``git`` CLI for one working tree."""

    def __init__(self, repo_path: Path | str, *, token: str = "") -> None:
        self.repo_path = Path(repo_path)
        self._token = token

    def run(self, args: Sequence[str], *, check: bool = True) -> str:
        command = ("git", *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self._token:
            # Passed via environment so the credential never appears in argv.
            basic = base64.b64encode(f"x-access-token:{self._token}".encode()).decode()
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.extraHeader"
            env["GIT_CONFIG_VALUE_0"] = f"Authorization: Basic {basic}"

        completed = subprocess.run(
            command,
            cwd=self.repo_path,
            env=env,
            text=True,
            capture_output=True,
            check=False,
        )
        if check and completed.returncode != 0:
            raise GitCommandError(
                command=command, returncode=completed.returncode, stderr=completed.stderr
            )
        return completed.stdout.strip()

    def head(self) -> str:
        return self.run(["rev-parse", "HEAD"])

    def changed_files(self, commit: str) -> list[str]:
        out = self.run(["diff-tree", "--no-commit-id", "--name-only", "-r", "--root", commit])
        return [line for line in out.splitlines() if line]


class GitOpsUpdater:
    """Terminal-stage behaviour: update the manifest, commit, push.

    Parameters
    ----------
    repo_path:
        Working tree containing the manifest.
    image_name:
        Repository part of the image reference to rewrite.  Defaults to the
        repository of the reference passed to :meth:`update_manifest`.
    branch / remote:
        Push target.  ``push=False`` commits locally only.
    """

    def __init__(
        self,
        repo_path: Path | str,
        *,
        image_name: str = "",
        branch: str = "main",
        remote: str = "origin",
        push: bool = True,
        author: str = "pipewright <pipewright@localhost>",
    ) -> None:
        self.repo_path = Path(repo_path)
        self.image_name = image_name
        self.branch = branch
        self.remote = remote
        self.push = push
        self.author = author
        self.history: list[ManifestUpdate] = []

    def update_manifest(self, path: str, image_ref: str, *, token: str = "") -> str:
        """Rewrite *path* to reference *image_ref*; return the new commit id."""
        return self.apply(path, image_ref, token=token).commit

    def apply(self, path: str, image_ref: str, *, token: str = "") -> ManifestUpdate:
        manifest = self.repo_path / path
        if not manifest.is_file():
            raise GitOpsError(f"Manifest not found: {path}")

        image_name = self.image_name or split_image_ref(image_ref)[0]
        text = manifest.read_text(encoding="utf-8")
        new_text, old_refs = replace_image(text, image_name, image_ref)
        if not old_refs:
            raise GitOpsError(
                f"No image reference for {image_name!r} to update in {path} "
                f"(already at {image_ref}?)"
            )
        manifest.write_text(new_text, encoding="utf-8")

        git = GitClient(self.repo_path, token=token)
        name, email = self._author_parts()
        _, tag = split_image_ref(image_ref)
        committed = False
        try:
            git.run(["add", "--", path])
            git.run([
                "-c", f"user.name={name}", "-c", f"user.email={email}",
                "commit", "--no-gpg-sign", "--only", "-m",
                COMMIT_MESSAGE.format(name=image_name.rsplit("/", 1)[-1], tag=tag or image_ref),
                "--", path,
            ])
            committed = True
            commit = git.head()
            logger.info("Committed %s -> %s as %s", path, image_ref, commit[:12])

            if self.push:
                git.run(["push", self.remote, f"HEAD:refs/heads/{self.branch}"])
                logger.info("Pushed %s to %s/%s", commit[:12], self.remote, self.branch)
        except GitCommandError:
            self._rollback(git, manifest, path, text, committed=committed)
            raise

        update = ManifestUpdate(path=path, old_refs=tuple(old_refs), new_ref=image_ref, commit=commit)
        self.history.append(update)
        return update

    def _rollback(
        self, git: GitClient, manifest: Path, path: str, original: str, *, committed: bool
    ) -> None:
        """Put the working tree back where :meth:`apply` found it."""
        logger.warning("Rolling back manifest update of %s", path)
        if committed:
            git.run(["reset", "-q", "--soft", "HEAD~1"], check=False)
        git.run(["reset", "-q", "HEAD", "--", path], check=False)
        manifest.write_text(original, encoding="utf-8")

    def commit_event(self, commit: str) -> Event:
        """The push event the source-control host will emit for *commit*."""
        git = GitClient(self.repo_path)
        return Event(
            type=EventType.PUSH,
            branch=self.branch,
            changed_paths=frozenset(git.changed_files(commit)),
            commit_sha=commit,
            actor="pipewright",
        )

    def _author_parts(self) -> tuple[str, str]:
        match = re.match(r"^(.*?)\s*<([^>]+)>$", self.author)
        if match:
            return match.group(1), match.group(2)
        return self.author, "pipewright@localhost"
