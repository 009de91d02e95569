import json
import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from runbox.config import RunnerLimits, RunnerSettings
from runbox.coordinator import ExecutionCoordinator
from runbox.errors import (
    MissingField,
    ProvisioningFailed,
    RunnerBusy,
    RunnerFailure,
    SourceTooLarge,
    UnsupportedLanguage,
)
from runbox.models import ExecutionRequest, ExecutionResult
from runbox.process import LAUNCH_FAILED_EXIT_CODE, TIMEOUT_MESSAGE
from runbox.registry import RuntimeDescriptor, RuntimeRegistry


class _BlockingRunner:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def run(self, command, args, working_directory, timeout, env=None):  # type: ignore[no-untyped-def]
        self.started.set()
        self.release.wait(5)
        return ExecutionResult(stdout=b"", stderr=b"", exit_code=0, timed_out=False)


class _ExplodingRunner:
    def __init__(self) -> None:
        self.workdirs: list[Path] = []

    def run(self, command, args, working_directory, timeout, env=None):  # type: ignore[no-untyped-def]
        self.workdirs.append(Path(working_directory))
        raise OSError("pipe broke mid-stream")


class ExecutionCoordinatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.scratch = Path(self._temp_dir.name) / "scratch"

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _settings(self, **overrides) -> RunnerSettings:  # type: ignore[no-untyped-def]
        values = {"scratch_dir": self.scratch, "python_path": sys.executable, "default_timeout_s": 10.0}
        values.update(overrides)
        return RunnerSettings(**values)

    def _assert_scratch_empty(self) -> None:
        if self.scratch.exists():
            self.assertEqual(list(self.scratch.iterdir()), [])

    def test_hello_world_python(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        result = coordinator.execute(ExecutionRequest(language="python", source="print('ok')\n"))

        self.assertEqual(result.exit_code, 0)
        self.assertFalse(result.timed_out)
        self.assertIn(b"ok", result.stdout)
        self._assert_scratch_empty()

    def test_language_lookup_is_case_insensitive(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        result = coordinator.execute(ExecutionRequest(language="  PyThOn ", source="print('ok')"))

        self.assertEqual(result.exit_code, 0)

    def test_workspace_removed_after_success(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        source = "import os\nprint(os.getcwd())\nprint(sorted(os.listdir('.')))\n"
        result = coordinator.execute(ExecutionRequest(language="python", source=source))

        lines = result.stdout.decode().splitlines()
        workspace = Path(lines[0])
        self.assertEqual(lines[1], "['main.py']")
        self.assertEqual(workspace.resolve().parent, self.scratch.resolve())
        self.assertFalse(workspace.exists())
        self._assert_scratch_empty()

    def test_workspace_removed_after_non_zero_exit(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        result = coordinator.execute(ExecutionRequest(language="python", source="raise SystemExit(7)"))

        self.assertEqual(result.exit_code, 7)
        self._assert_scratch_empty()

    def test_timeout_result_and_cleanup(self) -> None:
        coordinator = ExecutionCoordinator(self._settings(default_timeout_s=0.5))
        start = time.monotonic()
        result = coordinator.execute(ExecutionRequest(language="python", source="while True:\n    pass\n"))

        self.assertTrue(result.timed_out)
        self.assertIsNone(result.exit_code)
        self.assertEqual(result.stderr, TIMEOUT_MESSAGE)
        self.assertLess(time.monotonic() - start, 0.5 + 5)
        self._assert_scratch_empty()

    def test_descriptor_timeout_overrides_default(self) -> None:
        settings = self._settings(default_timeout_s=60.0)
        registry = RuntimeRegistry(
            [
                RuntimeDescriptor(
                    id="python",
                    executable=sys.executable,
                    source_filename="main.py",
                    default_timeout_s=0.5,
                )
            ]
        )
        coordinator = ExecutionCoordinator(settings, registry=registry)
        start = time.monotonic()
        result = coordinator.execute(ExecutionRequest(language="python", source="import time\ntime.sleep(30)\n"))

        self.assertTrue(result.timed_out)
        self.assertLess(time.monotonic() - start, 10)

    def test_launch_failure_is_folded_into_result(self) -> None:
        settings = self._settings(python_path=str(Path(self._temp_dir.name) / "missing-python"))
        coordinator = ExecutionCoordinator(settings)
        result = coordinator.execute(ExecutionRequest(language="python", source="print('ok')"))

        self.assertEqual(result.exit_code, LAUNCH_FAILED_EXIT_CODE)
        self.assertFalse(result.timed_out)
        self.assertIn(b"missing-python", result.stderr)
        self._assert_scratch_empty()

    def test_unsupported_language_has_no_side_effects(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        with patch("runbox.process.subprocess.Popen") as popen_mock:
            with self.assertRaises(UnsupportedLanguage) as ctx:
                coordinator.execute(ExecutionRequest(language="undefined-lang", source="x"))

        self.assertEqual(str(ctx.exception), "Unsupported language: undefined-lang")
        popen_mock.assert_not_called()
        self.assertFalse(self.scratch.exists())

    def test_missing_fields_rejected_before_allocation(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        for request in (
            ExecutionRequest(language="", source="print(1)"),
            ExecutionRequest(language="   ", source="print(1)"),
            ExecutionRequest(language="python", source=""),
        ):
            with self.subTest(request=request):
                with self.assertRaisesRegex(MissingField, "language and code are required"):
                    coordinator.execute(request)
        self.assertFalse(self.scratch.exists())

    def test_payload_parsing_names_the_offending_language(self) -> None:
        self.assertEqual(ExecutionRequest.from_payload({"language": 123, "code": "x"}).language, "123")
        self.assertEqual(ExecutionRequest.from_payload({"language": 0, "code": "x"}).language, "")
        self.assertEqual(ExecutionRequest.from_payload({"language": ["py"], "code": "x"}).language, "")
        self.assertEqual(ExecutionRequest.from_payload(None), ExecutionRequest(language="", source=""))

        coordinator = ExecutionCoordinator(self._settings())
        with self.assertRaises(UnsupportedLanguage) as ctx:
            coordinator.execute(ExecutionRequest.from_payload({"language": 123, "code": "print(1)"}))
        self.assertEqual(str(ctx.exception), "Unsupported language: 123")
        self.assertFalse(self.scratch.exists())

    def test_source_size_limit(self) -> None:
        settings = self._settings(limits=RunnerLimits(max_source_bytes=8))
        coordinator = ExecutionCoordinator(settings)
        with self.assertRaises(SourceTooLarge):
            coordinator.execute(ExecutionRequest(language="python", source="print('this is too long')"))
        self.assertFalse(self.scratch.exists())

    def test_provisioning_failure_is_distinct(self) -> None:
        self.scratch.parent.mkdir(parents=True, exist_ok=True)
        self.scratch.write_text("not a directory", encoding="utf-8")
        coordinator = ExecutionCoordinator(self._settings())
        with patch("runbox.process.subprocess.Popen") as popen_mock:
            with self.assertRaises(ProvisioningFailed):
                coordinator.execute(ExecutionRequest(language="python", source="print('ok')"))
        popen_mock.assert_not_called()

    def test_unexpected_runner_failure_still_cleans_up(self) -> None:
        runner = _ExplodingRunner()
        coordinator = ExecutionCoordinator(self._settings(), runner=runner)  # type: ignore[arg-type]
        with self.assertLogs("runbox", level="INFO"):
            with self.assertRaises(RunnerFailure):
                coordinator.execute(ExecutionRequest(language="python", source="print('ok')"))

        self.assertEqual(len(runner.workdirs), 1)
        self.assertFalse(runner.workdirs[0].exists())
        self._assert_scratch_empty()

    def test_release_failure_is_logged_not_raised(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        with patch("runbox.workspace.shutil.rmtree", side_effect=PermissionError("busy")):
            with self.assertLogs("runbox.workspace", level="WARNING") as logs:
                result = coordinator.execute(ExecutionRequest(language="python", source="print('ok')"))

        self.assertEqual(result.exit_code, 0)
        self.assertIn("exec.workspace.release_failed", "\n".join(logs.output))
        shutil.rmtree(self.scratch, ignore_errors=True)

    def test_concurrent_runs_use_distinct_workspaces(self) -> None:
        coordinator = ExecutionCoordinator(self._settings(max_concurrency=4))
        source = "import os, time\ntime.sleep(0.3)\nprint(os.getcwd())\n"
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(
                pool.map(
                    lambda _: coordinator.execute(ExecutionRequest(language="python", source=source)),
                    range(4),
                )
            )

        workdirs = {result.stdout.decode().strip() for result in results}
        self.assertEqual(len(workdirs), 4)
        for result in results:
            self.assertEqual(result.exit_code, 0)
        for workdir in workdirs:
            self.assertFalse(Path(workdir).exists())
        self._assert_scratch_empty()

    def test_busy_when_all_slots_taken(self) -> None:
        runner = _BlockingRunner()
        coordinator = ExecutionCoordinator(self._settings(max_concurrency=1), runner=runner)  # type: ignore[arg-type]
        worker = threading.Thread(
            target=coordinator.execute,
            args=(ExecutionRequest(language="python", source="print(1)"),),
        )
        worker.start()
        try:
            self.assertTrue(runner.started.wait(5))
            self.assertEqual(coordinator.health_snapshot()["concurrency"]["inflight"], 1)
            with self.assertRaises(RunnerBusy):
                coordinator.execute(ExecutionRequest(language="python", source="print(2)"))
        finally:
            runner.release.set()
            worker.join(5)
        self.assertEqual(coordinator.health_snapshot()["concurrency"]["inflight"], 0)

    def test_repeated_requests_leave_no_residual_state(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        writer = "open('state.txt', 'w').write('leftover')\nprint('wrote')\n"
        for _ in range(2):
            result = coordinator.execute(ExecutionRequest(language="python", source=writer))
            self.assertEqual(result.exit_code, 0)

        reader = "import os\nprint(os.path.exists('state.txt'))\n"
        result = coordinator.execute(ExecutionRequest(language="python", source=reader))
        self.assertEqual(result.stdout.strip(), b"False")
        self._assert_scratch_empty()

    def test_child_environment_is_sanitized(self) -> None:
        source = "import os\nprint(os.environ.get('RUNBOX_TEST_SECRET'))\nprint(os.environ.get('HOME') == os.getcwd())\n"
        with patch.dict(os.environ, {"RUNBOX_TEST_SECRET": "hunter2"}):
            hidden = ExecutionCoordinator(self._settings()).execute(
                ExecutionRequest(language="python", source=source)
            )
            allowed = ExecutionCoordinator(self._settings(env_allowlist=("RUNBOX_TEST_SECRET",))).execute(
                ExecutionRequest(language="python", source=source)
            )

        self.assertEqual(hidden.stdout.decode().split(), ["None", "True"])
        self.assertEqual(allowed.stdout.decode().split(), ["hunter2", "True"])

    def test_logs_start_and_finish_events(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        with self.assertLogs("runbox", level="INFO") as logs:
            coordinator.execute(ExecutionRequest(language="python", source="print('ok')"))

        events = []
        for line in logs.output:
            message = line.split(":", 2)[2].strip()
            if message.startswith("{"):
                events.append(json.loads(message))
        names = [payload["event"] for payload in events]
        self.assertIn("exec.run.start", names)
        self.assertIn("exec.run.finish", names)
        finish = next(payload for payload in events if payload["event"] == "exec.run.finish")
        self.assertEqual(finish["phase"], "done")
        self.assertEqual(finish["exit_code"], 0)
        self.assertEqual(finish["language"], "python")

    @unittest.skipIf(shutil.which("node") is None, "node is required for javascript execution tests")
    def test_hello_world_javascript(self) -> None:
        coordinator = ExecutionCoordinator(self._settings())
        result = coordinator.execute(ExecutionRequest(language="JavaScript", source="console.log('ok')"))

        self.assertEqual(result.exit_code, 0)
        self.assertIn(b"ok", result.stdout)
        self._assert_scratch_empty()


if __name__ == "__main__":
    unittest.main()
