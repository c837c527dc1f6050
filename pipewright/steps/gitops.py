"""``gitops-update`` step action — writes the new image tag back to git."""

from __future__ import annotations

from pipewright.core.gitops import GitOpsError, GitOpsUpdater
from pipewright.steps.base import StepContext, StepOutcome


class GitOpsStep:
    """Read the ``image_tag`` output and update the deployment manifest.

    The updater keeps the history of commits it made; the orchestrator
    replays each one through the trigger filter.
    """

    def __init__(
        self,
        updater: GitOpsUpdater,
        *,
        manifest_path: str,
        image_repository: str,
        token_secret: str = "scm_write_token",
    ) -> None:
        self.updater = updater
        self.manifest_path = manifest_path
        self.image_repository = image_repository
        self.token_secret = token_secret

    def __call__(self, ctx: StepContext) -> StepOutcome:
        tag = ctx.read_output(str(ctx.params.get("input", "image_tag")))
        image_ref = f"{self.image_repository}:{tag}"
        try:
            commit = self.updater.update_manifest(
                self.manifest_path, image_ref, token=ctx.secrets.get(self.token_secret, "")
            )
        except GitOpsError as exc:
            return StepOutcome(exit_code=1, log=str(exc))
        return StepOutcome(log=f"{self.manifest_path} now references {image_ref} ({commit[:12]})")
