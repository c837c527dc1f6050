"""Container build/push and artifact upload step actions.

Runtime contract: ``build(context, dockerfile, image_ref) -> image_ref``.
Registry contract: ``push(image_ref) -> digest``.
"""

from __future__ import annotations

import gzip
import io
import logging
import tarfile
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from pipewright.core.hasher import content_address
from pipewright.steps.base import StepContext, StepOutcome

logger = logging.getLogger(__name__)

IMAGE_REF_STATE = "image_ref"


@runtime_checkable
class ContainerRuntime(Protocol):
    def build(self, context: Path, dockerfile: str, image_ref: str) -> str:
        ...


@runtime_checkable
class Registry(Protocol):
    def push(self, image_ref: str) -> str:
        ...


class RecordingRuntime:
    """Records builds and returns the requested reference.

    The build context only lives for the duration of the call, so the files
    it held are kept in ``contexts`` by relative path.
    """

    def __init__(self) -> None:
        self.builds: list[tuple[Path, str, str]] = []
        self.contexts: list[dict[str, bytes]] = []

    def build(self, context: Path, dockerfile: str, image_ref: str) -> str:
        self.builds.append((context, dockerfile, image_ref))
        self.contexts.append({
            item.relative_to(context).as_posix(): item.read_bytes()
            for item in sorted(context.rglob("*"))
            if item.is_file()
        })
        return image_ref


class InMemoryRegistry:
    """Keeps pushed references and answers with a deterministic digest."""

    def __init__(self) -> None:
        self.pushed: dict[str, str] = {}

    def push(self, image_ref: str) -> str:
        digest = content_address(image_ref.encode("utf-8"))
        self.pushed[image_ref] = digest
        return digest


def image_tag_for(ctx: StepContext) -> str:
    """Explicit ``with.tag``, else the short commit sha, else the run id."""
    tag = ctx.params.get("tag")
    if tag:
        return str(tag)
    sha = ctx.env.get("COMMIT_SHA", "")
    return sha[:12] if sha else ctx.run_id


def pack_directory(path: Path) -> bytes:
    """Deterministic gzipped tarball of *path* (sorted, zeroed mtimes)."""
    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            for item in sorted(path.rglob("*")):
                if not item.is_file():
                    continue
                info = tar.gettarinfo(str(item), arcname=item.relative_to(path).as_posix())
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                with item.open("rb") as fh:
                    tar.addfile(info, fh)
    return buffer.getvalue()


def unpack_into(data: bytes, destination: Path) -> list[str]:
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        tar.extractall(destination, filter="data")
        return tar.getnames()


class PublishArtifactStep:
    """Publish ``with.path`` (file or directory) under ``with.key``."""

    def __call__(self, ctx: StepContext) -> StepOutcome:
        key = str(ctx.params["key"])
        source = ctx.workdir / str(ctx.params.get("path", "."))
        if source.is_dir():
            data = pack_directory(source)
        elif source.is_file():
            data = source.read_bytes()
        else:
            return StepOutcome(exit_code=1, log=f"nothing to publish at {source}")
        ctx.publish_artifact(key, data)
        return StepOutcome(log=f"staged {key} ({len(data)} bytes)")


class ContainerBuildStep:
    """Build the image from the consumed build artifact.

    The artifact is unpacked into a temporary directory outside the working
    tree that is removed as soon as the runtime returns.
    """

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    def __call__(self, ctx: StepContext) -> StepOutcome:
        image = str(ctx.params["image"])
        tag = image_tag_for(ctx)
        dockerfile = str(ctx.params.get("dockerfile", "Dockerfile"))

        artifact_key = ctx.params.get("artifact")
        if artifact_key:
            data = ctx.read_artifact(str(artifact_key))
            with tempfile.TemporaryDirectory(prefix=f"pipewright-{ctx.stage.stage_id}-") as tmp:
                names = unpack_into(data, Path(tmp))
                ctx.log(f"unpacked {len(names)} file(s) from {artifact_key}")
                image_ref = self.runtime.build(Path(tmp), dockerfile, f"{image}:{tag}")
        else:
            image_ref = self.runtime.build(ctx.workdir, dockerfile, f"{image}:{tag}")
        ctx.state[IMAGE_REF_STATE] = image_ref
        ctx.state["image_tag"] = tag
        return StepOutcome(log=f"built {image_ref}")


class ContainerPushStep:
    """Push the image built earlier in the stage and publish its tag."""

    def __init__(self, registry: Registry) -> None:
        self.registry = registry

    def __call__(self, ctx: StepContext) -> StepOutcome:
        image_ref = ctx.state.get(IMAGE_REF_STATE)
        if not image_ref:
            return StepOutcome(exit_code=1, log="no image was built in this stage")
        digest = self.registry.push(image_ref)
        ctx.set_output(str(ctx.params.get("output", "image_tag")), ctx.state["image_tag"])
        return StepOutcome(log=f"pushed {image_ref} ({digest})")
