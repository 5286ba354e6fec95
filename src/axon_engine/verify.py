"""Independent verification of a bead the agent claims to have completed.

The agent's completion sentinel only triggers verification; the checks here
are the gate for marking a bead ``completed``. Each check is a shell command
run in the project root under a timeout, and its combined output is judged by
the first ``CheckInterpreter`` whose name rule matches the check name.
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .settings import RuntimeSettings
from .state_store import _atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_TEST_COMMAND = "pytest -q"
DEFAULT_LINT_COMMAND = "ruff check ."
DEFAULT_TYPE_CHECK_COMMAND = "mypy ."

_CRITERION_COMMAND = re.compile(r"test[s]?\s+[`\"']([^`\"']+)[`\"']", re.IGNORECASE)
_MAX_LOGGED_OUTPUT = 500


class CustomCheck(BaseModel):
    name: str
    command: str


class VerificationConfig(BaseModel):
    """Check commands read from ``.axon/verify.json``; camelCase keys are accepted."""

    model_config = ConfigDict(populate_by_name=True)

    test_command: str | None = Field(default=None, validation_alias=AliasChoices("test_command", "testCommand"))
    lint_command: str | None = Field(default=None, validation_alias=AliasChoices("lint_command", "lintCommand"))
    type_check_command: str | None = Field(
        default=None, validation_alias=AliasChoices("type_check_command", "typeCheckCommand")
    )
    custom_checks: list[CustomCheck] = Field(
        default_factory=list, validation_alias=AliasChoices("custom_checks", "customChecks")
    )

    @classmethod
    def defaults(cls) -> "VerificationConfig":
        return cls(
            test_command=DEFAULT_TEST_COMMAND,
            lint_command=DEFAULT_LINT_COMMAND,
            type_check_command=DEFAULT_TYPE_CHECK_COMMAND,
        )


def load_verification_config(path: Path) -> VerificationConfig:
    """Load the check configuration, falling back to defaults when missing or unreadable."""
    if not path.is_file():
        return VerificationConfig.defaults()
    try:
        return VerificationConfig.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValidationError) as exc:
        logger.warning("Ignoring unreadable verification config %s: %s", path, exc)
        return VerificationConfig.defaults()


def save_verification_config(path: Path, config: VerificationConfig) -> None:
    _atomic_write_text(path, config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Interpreters
# ---------------------------------------------------------------------------


class CheckInterpreter(Protocol):
    """Judges one check's combined output; ``applies_to`` selects it by check name."""

    def applies_to(self, name: str) -> bool:
        ...

    def passed(self, output: str) -> bool:
        ...


def _mentions_failure(lowered: str) -> bool:
    return "fail" in lowered


class TypeCheckInterpreter:
    def applies_to(self, name: str) -> bool:
        return "type" in name.lower()

    def passed(self, output: str) -> bool:
        lowered = output.lower()
        return "error" not in output and "typeerror" not in lowered and not _mentions_failure(lowered)


class LintInterpreter:
    def applies_to(self, name: str) -> bool:
        return "lint" in name.lower()

    def passed(self, output: str) -> bool:
        lowered = output.lower()
        return "error" not in lowered and not _mentions_failure(lowered)


class TestRunInterpreter:
    """A test run passes only on an explicit pass/success marker."""

    __test__ = False

    def applies_to(self, name: str) -> bool:
        return "test" in name.lower()

    def passed(self, output: str) -> bool:
        lowered = output.lower()
        if _mentions_failure(lowered):
            return False
        return "pass" in lowered or "success" in lowered


class KeywordInterpreter:
    """Fallback for any other check: failed only if the output mentions fail or error."""

    def applies_to(self, name: str) -> bool:
        return True

    def passed(self, output: str) -> bool:
        lowered = output.lower()
        return not _mentions_failure(lowered) and "error" not in lowered


DEFAULT_INTERPRETERS: tuple[CheckInterpreter, ...] = (TypeCheckInterpreter(), LintInterpreter(), TestRunInterpreter())
FALLBACK_INTERPRETER: CheckInterpreter = KeywordInterpreter()


def interpret_output(
    name: str, output: str, interpreters: Sequence[CheckInterpreter] = DEFAULT_INTERPRETERS
) -> bool:
    for interpreter in interpreters:
        if interpreter.applies_to(name):
            return interpreter.passed(output)
    return FALLBACK_INTERPRETER.passed(output)


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def combined(self) -> str:
        return self.stdout + self.stderr


CommandRunner = Callable[[str, Path, float], CommandOutcome]


def run_shell_command(command: str, cwd: Path, timeout: float) -> CommandOutcome:
    try:
        completed = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        stdout = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else exc.stdout or ""
        stderr = exc.stderr.decode("utf-8", "replace") if isinstance(exc.stderr, bytes) else exc.stderr or ""
        return CommandOutcome(exit_code=None, stdout=stdout, stderr=stderr, timed_out=True)
    except OSError as exc:
        return CommandOutcome(exit_code=None, stdout="", stderr=f"Failed to run {command!r}: {exc}")
    return CommandOutcome(exit_code=completed.returncode, stdout=completed.stdout, stderr=completed.stderr)


class CheckResult(BaseModel):
    name: str
    passed: bool
    output: str = ""
    duration_seconds: float = 0.0
    command: str | None = None
    timed_out: bool = False


class VerificationResult(BaseModel):
    passed: bool
    bead_id: str
    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def failed_checks(self) -> list[str]:
        return [check.name for check in self.checks if not check.passed]


class Verifier:
    def __init__(
        self,
        project_root: Path,
        *,
        config: VerificationConfig | None = None,
        config_path: Path | None = None,
        check_timeout_seconds: float = 120.0,
        criterion_timeout_seconds: float = 60.0,
        interpreters: Sequence[CheckInterpreter] = DEFAULT_INTERPRETERS,
        runner: CommandRunner = run_shell_command,
    ) -> None:
        self.project_root = project_root
        self.config_path = config_path or project_root / ".axon" / "verify.json"
        self.config = config if config is not None else load_verification_config(self.config_path)
        self.check_timeout_seconds = check_timeout_seconds
        self.criterion_timeout_seconds = criterion_timeout_seconds
        self.interpreters = tuple(interpreters)
        self._run = runner

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, **kwargs: object) -> "Verifier":
        return cls(
            settings.project_root_path,
            config_path=settings.verify_config_file,
            check_timeout_seconds=settings.check_timeout_seconds,
            criterion_timeout_seconds=settings.criterion_timeout_seconds,
            **kwargs,  # type: ignore[arg-type]
        )

    def save_config(self, config: VerificationConfig) -> None:
        save_verification_config(self.config_path, config)
        self.config = config

    def configured_checks(self) -> list[tuple[str, str]]:
        checks: list[tuple[str, str]] = []
        if self.config.type_check_command:
            checks.append(("Type Check", self.config.type_check_command))
        if self.config.lint_command:
            checks.append(("Linting", self.config.lint_command))
        if self.config.test_command:
            checks.append(("Tests", self.config.test_command))
        checks.extend((check.name, check.command) for check in self.config.custom_checks)
        return checks

    def run_check(self, name: str, command: str) -> CheckResult:
        start = time.monotonic()
        outcome = self._run(command, self.project_root, self.check_timeout_seconds)
        output = outcome.combined
        if outcome.timed_out:
            passed = False
            output = f"{output}\nTimed out after {self.check_timeout_seconds}s".lstrip("\n")
        elif outcome.exit_code != 0:
            passed = False
        else:
            passed = interpret_output(name, output, self.interpreters)
        return CheckResult(
            name=name,
            passed=passed,
            output=output,
            duration_seconds=time.monotonic() - start,
            command=command,
            timed_out=outcome.timed_out,
        )

    def check_criteria(self, criteria: Sequence[str]) -> list[CheckResult]:
        """Run commands named by ``test "<cmd>"`` criteria; other criteria pass as informational."""
        results: list[CheckResult] = []
        for index, criterion in enumerate(criteria, start=1):
            start = time.monotonic()
            match = _CRITERION_COMMAND.search(criterion)
            if not match:
                results.append(CheckResult(name=f"Acceptance Criterion {index}", passed=True, output=f"Criterion: {criterion}"))
                continue
            command = match.group(1)
            outcome = self._run(command, self.project_root, self.criterion_timeout_seconds)
            passed = outcome.exit_code == 0 and not outcome.timed_out
            results.append(
                CheckResult(
                    name=f"Acceptance Criterion {index}",
                    passed=passed,
                    output=outcome.stdout if passed else outcome.combined,
                    duration_seconds=time.monotonic() - start,
                    command=command,
                    timed_out=outcome.timed_out,
                )
            )
        return results

    def verify(self, bead_id: str, acceptance_criteria: Sequence[str] | None = None) -> VerificationResult:
        """Run every configured check, then the acceptance criteria; all must pass."""
        logger.info("Verifying bead %s", bead_id)
        checks = [self.run_check(name, command) for name, command in self.configured_checks()]
        if acceptance_criteria:
            checks.extend(self.check_criteria(acceptance_criteria))

        result = VerificationResult(passed=all(check.passed for check in checks), bead_id=bead_id, checks=checks)
        if result.passed:
            logger.info("Verification passed for bead %s", bead_id)
        else:
            logger.warning("Verification failed for bead %s", bead_id)
            for check in checks:
                if not check.passed:
                    logger.warning("  - %s: %s", check.name, check.output[-_MAX_LOGGED_OUTPUT:])
        return result
