"""Per-request scratch workspaces."""

from __future__ import annotations

import json
import logging
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .errors import ProvisioningFailed
from .registry import RuntimeDescriptor

logger = logging.getLogger("runbox.workspace")

WORKSPACE_PREFIX = "exec-"


@dataclass
class Workspace:
    root_path: Path
    source_path: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False


class WorkspaceProvisioner:
    """Creates uniquely named scratch directories under a shared root.

    Names come from ``uuid4`` and the directory is created with
    ``exist_ok=False``, so two in-flight requests never share a path.
    """

    def __init__(self, scratch_root: Path) -> None:
        self.scratch_root = Path(scratch_root)

    def acquire(self, descriptor: RuntimeDescriptor, source: str) -> Workspace:
        root = self.scratch_root / f"{WORKSPACE_PREFIX}{descriptor.id}-{uuid.uuid4().hex}"
        try:
            self.scratch_root.mkdir(parents=True, exist_ok=True)
            root.mkdir(mode=0o700, exist_ok=False)
        except OSError as exc:
            raise ProvisioningFailed(f"建立 workspace 失敗：{exc}") from exc

        source_path = root / descriptor.source_filename
        try:
            with source_path.open("x", encoding="utf-8", newline="") as handle:
                handle.write(source)
        except (OSError, UnicodeError) as exc:
            shutil.rmtree(root, ignore_errors=True)
            raise ProvisioningFailed(f"寫入原始碼失敗：{exc}") from exc

        return Workspace(root_path=root, source_path=source_path)

    def release(self, workspace: Workspace) -> None:
        if workspace.released:
            return
        workspace.released = True
        try:
            shutil.rmtree(workspace.root_path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning(
                json.dumps(
                    {
                        "event": "exec.workspace.release_failed",
                        "path": str(workspace.root_path),
                        "error": str(exc),
                    },
                    ensure_ascii=False,
                    sort_keys=True,
                )
            )

    @contextmanager
    def provision(self, descriptor: RuntimeDescriptor, source: str) -> Iterator[Workspace]:
        workspace = self.acquire(descriptor, source)
        try:
            yield workspace
        finally:
            self.release(workspace)
