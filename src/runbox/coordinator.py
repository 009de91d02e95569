"""Execution coordinator: the single public entry point of the sandbox."""

from __future__ import annotations

import json
import logging
import os
import uuid
from enum import Enum
from threading import BoundedSemaphore, Lock
from typing import Any

from .config import RunnerSettings
from .errors import MissingField, RunboxError, RunnerBusy, RunnerFailure, SourceTooLarge, ValidationError
from .models import ExecutionRequest, ExecutionResult
from .process import ProcessRunner
from .registry import RuntimeDescriptor, RuntimeRegistry
from .workspace import Workspace, WorkspaceProvisioner

logger = logging.getLogger("runbox")

_DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"


class ExecutionPhase(str, Enum):
    VALIDATING = "validating"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"


class ExecutionCoordinator:
    def __init__(
        self,
        settings: RunnerSettings,
        registry: RuntimeRegistry | None = None,
        provisioner: WorkspaceProvisioner | None = None,
        runner: ProcessRunner | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or RuntimeRegistry.from_settings(settings)
        self.provisioner = provisioner or WorkspaceProvisioner(settings.scratch_dir)
        self.runner = runner or ProcessRunner(max_output_bytes=settings.limits.max_output_bytes)
        self._max_concurrency = max(1, settings.max_concurrency)
        self._semaphore = BoundedSemaphore(value=self._max_concurrency)
        self._inflight = 0
        self._inflight_lock = Lock()

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        execution_id = uuid.uuid4().hex
        descriptor = self._validate(request, execution_id)

        if not self._semaphore.acquire(blocking=False):
            self._log_event("exec.run.rejected", execution_id=execution_id, reason="busy")
            raise RunnerBusy("runner busy, please retry")
        with self._inflight_lock:
            self._inflight += 1
        try:
            return self._execute_locked(request, descriptor, execution_id)
        finally:
            with self._inflight_lock:
                self._inflight -= 1
            self._semaphore.release()

    def _validate(self, request: ExecutionRequest, execution_id: str) -> RuntimeDescriptor:
        try:
            if not (request.language or "").strip() or not request.source:
                raise MissingField()
            try:
                size = len(request.source.encode("utf-8"))
            except UnicodeEncodeError as exc:
                raise ValidationError("code 必須是合法的 UTF-8 文字") from exc
            if size > self.settings.limits.max_source_bytes:
                raise SourceTooLarge(size, self.settings.limits.max_source_bytes)
            return self.registry.resolve(request.language)
        except ValidationError as exc:
            self._log_event(
                "exec.run.rejected",
                execution_id=execution_id,
                phase=ExecutionPhase.FAILED.value,
                reason=type(exc).__name__,
            )
            raise

    def _execute_locked(
        self,
        request: ExecutionRequest,
        descriptor: RuntimeDescriptor,
        execution_id: str,
    ) -> ExecutionResult:
        timeout_s = descriptor.default_timeout_s or self.settings.default_timeout_s
        phase = ExecutionPhase.PROVISIONING
        result: ExecutionResult | None = None

        self._log_event(
            "exec.run.start",
            execution_id=execution_id,
            language=descriptor.id,
            timeout_s=timeout_s,
            source_bytes=len(request.source.encode("utf-8")),
        )
        try:
            with self.provisioner.provision(descriptor, request.source) as workspace:
                phase = ExecutionPhase.RUNNING
                try:
                    result = self.runner.run(
                        descriptor.executable,
                        descriptor.build_args(str(workspace.source_path.resolve())),
                        workspace.root_path,
                        timeout_s,
                        env=self._build_env(workspace),
                    )
                except RunboxError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    logger.exception("執行 %s 時發生未預期錯誤", execution_id)
                    raise RunnerFailure(f"runner internal error: {exc}") from exc
                phase = ExecutionPhase.CLEANING
            phase = ExecutionPhase.DONE
            return result
        finally:
            self._log_event(
                "exec.run.finish",
                execution_id=execution_id,
                language=descriptor.id,
                phase=phase.value if phase is ExecutionPhase.DONE else ExecutionPhase.FAILED.value,
                failed_in=None if phase is ExecutionPhase.DONE else phase.value,
                exit_code=result.exit_code if result else None,
                timed_out=result.timed_out if result else False,
                duration_ms=result.duration_ms if result else 0,
                stdout_bytes=len(result.stdout) if result else 0,
                stderr_bytes=len(result.stderr) if result else 0,
                truncated=bool(result and (result.stdout_truncated or result.stderr_truncated)),
            )

    def _build_env(self, workspace: Workspace) -> dict[str, str]:
        root = str(workspace.root_path.resolve())
        safe_env = {
            "PATH": os.environ.get("PATH") or _DEFAULT_PATH,
            "HOME": root,
            "TMPDIR": root,
            "LANG": "C.UTF-8",
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }
        if os.name == "nt":
            # The Windows loader needs SYSTEMROOT to start most executables.
            safe_env["SYSTEMROOT"] = os.environ.get("SYSTEMROOT", r"C:\Windows")
        for key in self.settings.env_allowlist:
            value = os.environ.get(key)
            if value is None:
                continue
            safe_env[key] = value.replace("\n", "").replace("\r", "")
        return safe_env

    def health_snapshot(self) -> dict[str, Any]:
        with self._inflight_lock:
            inflight = self._inflight
        return {
            "concurrency": {
                "max": self._max_concurrency,
                "inflight": inflight,
                "utilization": round(inflight / self._max_concurrency, 4),
            },
            "languages": self.registry.supported(),
        }

    def _log_event(self, event: str, **fields: Any) -> None:
        payload = {"event": event, **fields}
        logger.info(json.dumps(payload, ensure_ascii=False, sort_keys=True))
