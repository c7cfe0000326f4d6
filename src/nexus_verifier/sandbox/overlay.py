"""Ephemeral execution overlays and the content-addressed artifact store."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from nexus_verifier.domain.errors import ProvisioningError
from nexus_verifier.domain.models import ArtifactRef
from nexus_verifier.utils.fs import atomic_write, copy_tree, resolve_relative, safe_delete
from nexus_verifier.utils.hashing import sha256_file

if TYPE_CHECKING:
    from nexus_verifier.domain.models import ExecutionRequest

ARTIFACTS_DIRNAME: Final[str] = "artifacts"
_TMP_DIRNAME: Final[str] = ".tmp"
_OVERLAY_PREFIX: Final[str] = "overlay-"

logger = structlog.get_logger(__name__)


class ArtifactStore:
    """Stores files by SHA-256 under ``<root>/<aa>/<digest>``; identical files share storage."""

    def __init__(self, root: Path | str, *, max_artifact_bytes: int = 64 * 1024 * 1024) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._max_artifact_bytes = max_artifact_bytes

    @property
    def root(self) -> Path:
        return self._root

    def store(self, source: Path, name: str) -> ArtifactRef | None:
        """Copy ``source`` into the store; returns ``None`` for files over the size cap."""

        size = source.stat().st_size
        if size > self._max_artifact_bytes:
            logger.warning(
                "artifact_skipped_oversize",
                artifact=name,
                size_bytes=size,
                limit_bytes=self._max_artifact_bytes,
            )
            return None
        digest = sha256_file(source)
        target_dir = self._root / digest[:2]
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / digest
        if not target.exists():
            atomic_write(target, source.read_bytes())
        return ArtifactRef(name=name, sha256=digest, size_bytes=size, location=str(target))

    def read(self, ref: ArtifactRef) -> bytes:
        return Path(ref.location).read_bytes()


class SandboxOverlay:
    """Writable copy of a snapshot plus inline inputs, private to one execution."""

    def __init__(self, root: Path, workspace_root: Path) -> None:
        self._root = root
        self._workspace_root = workspace_root
        self._destroyed = False

    @classmethod
    def provision(cls, request: ExecutionRequest, workspace_root: Path) -> SandboxOverlay:
        workspace_root.mkdir(parents=True, exist_ok=True)
        try:
            root = Path(tempfile.mkdtemp(prefix=_OVERLAY_PREFIX, dir=workspace_root))
        except OSError as exc:
            raise ProvisioningError(f"unable to create overlay: {exc}", transient=True) from exc

        overlay = cls(root, workspace_root)
        try:
            if request.snapshot is not None:
                if not request.snapshot.root.is_dir():
                    raise ProvisioningError(
                        f"snapshot root {request.snapshot.root} is not a directory",
                        transient=False,
                    )
                copy_tree(request.snapshot.root, root)
            for item in request.inputs:
                target = resolve_relative(root, item.path)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(item.content)
            (root / ARTIFACTS_DIRNAME).mkdir(exist_ok=True)
            (root / _TMP_DIRNAME).mkdir(exist_ok=True)
            if request.workdir != ".":
                resolve_relative(root, request.workdir).mkdir(parents=True, exist_ok=True)
        except ProvisioningError:
            overlay.destroy()
            raise
        except OSError as exc:
            overlay.destroy()
            raise ProvisioningError(f"unable to seed overlay: {exc}", transient=True) from exc
        return overlay

    @property
    def root(self) -> Path:
        return self._root

    @property
    def artifacts_dir(self) -> Path:
        return self._root / ARTIFACTS_DIRNAME

    @property
    def tmp_dir(self) -> Path:
        return self._root / _TMP_DIRNAME

    def workdir(self, relative: str) -> Path:
        return self._root if relative == "." else resolve_relative(self._root, relative)

    def collect_artifacts(self, store: ArtifactStore) -> tuple[ArtifactRef, ...]:
        if not self.artifacts_dir.is_dir():
            return ()
        refs: list[ArtifactRef] = []
        for current_dir, dir_names, file_names in os.walk(self.artifacts_dir, followlinks=False):
            dir_names.sort()
            for file_name in sorted(file_names):
                path = Path(current_dir) / file_name
                if path.is_symlink() or not path.is_file():
                    continue
                ref = store.store(path, path.relative_to(self.artifacts_dir).as_posix())
                if ref is not None:
                    refs.append(ref)
        return tuple(refs)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if not self._root.exists():
            return
        try:
            safe_delete(self._root, self._workspace_root)
        except PermissionError:
            # Commands may leave read-only directories behind.
            for current_dir, _dirs, _files in os.walk(self._root):
                os.chmod(current_dir, 0o700)
            safe_delete(self._root, self._workspace_root)


__all__ = ["ARTIFACTS_DIRNAME", "ArtifactStore", "SandboxOverlay"]
