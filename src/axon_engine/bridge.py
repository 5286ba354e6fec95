"""Agent Bridge: run one bead through the coding agent and report a structured result.

The agent is told to print ``[[AXON_STATUS:COMPLETED]]`` when done and
``[[AXON_STATUS:FAILED:<reason>]]`` when it gives up. Those markers, not the
process exit code, decide completion: the agent may keep running (or keep
flushing output) long after its work is finished.

Output is read from binary pipes by pump threads and scanned through a
bounded sliding window, so a long-lived session never grows an unbounded
buffer. When no CLI agent is usable the same contract is sent to the LLM
session, and the fenced JSON file block in its answer is written to disk.
"""

from __future__ import annotations

import codecs
import logging
import os
import queue
import re
import shlex
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import IO, Protocol

from pydantic import BaseModel, Field, ValidationError

from .context import BeadContext
from .errors import AgentTimeoutError, InvocationError, ProviderResolutionError
from .llm import LLMOptions, messages_from_prompt
from .models import Bead
from .resolver import LLMSession
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

COMPLETION_SENTINEL = "[[AXON_STATUS:COMPLETED]]"
COMPLETION_PATTERN = re.compile(r"\[\[AXON_STATUS:COMPLETED\]\]")
FAILURE_PATTERN = re.compile(r"\[\[AXON_STATUS:FAILED:([^\]]+)\]\]")

_JSON_BLOCK = re.compile(r"```json[ \t]*\n(.*?)\n?```", re.DOTALL)
_READ_SIZE = 65_536
_POLL_SECONDS = 0.02
_JOIN_SECONDS = 1.0
_LOG_PREVIEW_CHARS = 200

API_OUTPUT_CONTRACT = """
## Output Format
You cannot edit files directly. Return every file you create or change in a
single fenced block:

```json
{
  "files": [{"path": "src/example.py", "content": "..."}],
  "tests": [{"path": "tests/test_example.py", "content": "..."}],
  "explanation": "..."
}
```

Paths are relative to the project root. After the block, output the status line.
"""


def build_prompt(bead_id: str, system_prompt: str, instruction: str) -> str:
    return f"""You are an AI code implementation agent.

## Task Context
Bead ID: {bead_id}

{system_prompt}

## Current Task
{instruction}

## Instructions
1. Understand the task and existing codebase context
2. Implement the required changes
3. Verify your implementation works
4. When complete, output exactly: {COMPLETION_SENTINEL}
5. If you cannot fix errors after multiple retries, output: [[AXON_STATUS:FAILED:Reason]]""".strip()


def strip_sentinels(text: str) -> str:
    return FAILURE_PATTERN.sub("", COMPLETION_PATTERN.sub("", text))


_FAILURE_PREFIX = "[[AXON_STATUS:FAILED:"


def _is_sentinel_tail(fragment: str) -> bool:
    if COMPLETION_SENTINEL.endswith(fragment):
        return True
    body = fragment[:-2]
    for size in range(1, len(_FAILURE_PREFIX) + 1):
        if body.startswith(_FAILURE_PREFIX[-size:]) and "]" not in body[size:]:
            return True
    return False


def drop_partial_sentinel(text: str) -> str:
    """Remove the tail of a status marker left at the head of truncated output.

    A failure marker cut inside its reason text is indistinguishable from
    ordinary output and is kept.
    """
    end = text.find("]]")
    if end == -1 or "[[" in text[:end]:
        return text
    fragment = text[: end + 2]
    return text[end + 2 :] if _is_sentinel_tail(fragment) else text


class SentinelScanner:
    """Detect status sentinels across chunk boundaries using a bounded tail window.

    Only the last ``window_chars`` characters survive between chunks, which is
    enough for any marker split across reads while keeping memory constant.
    """

    def __init__(self, window_chars: int) -> None:
        self.window_chars = window_chars
        self._tail = ""
        self.completed = False
        self.failure_reason: str | None = None

    def feed(self, text: str) -> None:
        window = self._tail + text
        if not self.completed and COMPLETION_PATTERN.search(window):
            self.completed = True
        if self.failure_reason is None:
            match = FAILURE_PATTERN.search(window)
            if match:
                self.failure_reason = match.group(1)
        self._tail = window[-self.window_chars :]


class OutputBuffer:
    """Keep at most ``max_chars`` of the most recent output."""

    def __init__(self, max_chars: int) -> None:
        self.max_chars = max_chars
        self._parts: deque[str] = deque()
        self._size = 0
        self.truncated = False

    def append(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._size += len(text)
        while self._size > self.max_chars:
            overflow = self._size - self.max_chars
            head = self._parts[0]
            if len(head) <= overflow:
                self._parts.popleft()
                self._size -= len(head)
            else:
                self._parts[0] = head[overflow:]
                self._size -= overflow
            self.truncated = True

    def text(self) -> str:
        """Return the retained output; after truncation a cut status marker at the head is dropped."""
        text = "".join(self._parts)
        return drop_partial_sentinel(text) if self.truncated else text


class AgentProcess(Protocol):
    stdin: IO[bytes] | None
    stdout: IO[bytes] | None
    stderr: IO[bytes] | None
    returncode: int | None

    def poll(self) -> int | None:
        ...

    def wait(self, timeout: float | None = None) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


SpawnFn = Callable[[list[str], Path, dict[str, str]], AgentProcess]


def spawn_agent(argv: list[str], cwd: Path, env: dict[str, str]) -> AgentProcess:
    return subprocess.Popen(
        argv,
        cwd=str(cwd),
        env=env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=0,
    )


def _pump(name: str, stream: IO[bytes], sink: queue.Queue[tuple[str, bytes | None]]) -> None:
    try:
        while True:
            chunk = stream.read(_READ_SIZE)
            if not chunk:
                break
            sink.put((name, chunk))
    except (OSError, ValueError) as exc:
        logger.debug("Agent %s pipe closed: %s", name, exc)
    finally:
        sink.put((name, None))


def _feed_stdin(stream: IO[bytes], payload: bytes) -> None:
    try:
        view = memoryview(payload)
        while view:
            written = stream.write(view)
            view = view[written if written else len(view) :]
    except (OSError, ValueError) as exc:
        logger.debug("Agent stdin closed before the prompt was fully written: %s", exc)
    finally:
        try:
            stream.close()
        except OSError:
            pass


class GeneratedFile(BaseModel):
    path: str
    content: str = ""


class GeneratedCode(BaseModel):
    files: list[GeneratedFile] = Field(default_factory=list)
    tests: list[GeneratedFile] = Field(default_factory=list)
    explanation: str = ""


def parse_generated_code(text: str) -> GeneratedCode:
    """Extract the fenced ``json`` file block from an API-mode answer.

    Raises:
        InvocationError: If no block is present or it does not match the file schema.
    """
    match = _JSON_BLOCK.search(text)
    if not match:
        raise InvocationError("Malformed agent response: no ```json block found")
    try:
        return GeneratedCode.model_validate_json(match.group(1))
    except ValidationError as exc:
        raise InvocationError(f"Malformed agent response: {exc.errors()[0]['msg']}") from exc


def write_generated_files(project_root: Path, code: GeneratedCode) -> list[str]:
    """Write generated files under *project_root* and return their relative paths.

    Raises:
        InvocationError: If any path is absolute or escapes the project root, or a
            file cannot be written.
    """
    root = project_root.resolve()
    targets: list[tuple[Path, GeneratedFile]] = []
    for item in [*code.files, *code.tests]:
        candidate = Path(item.path)
        target = (root / candidate).resolve()
        if candidate.is_absolute() or not target.is_relative_to(root):
            raise InvocationError(f"Refusing to write outside the project root: {item.path}")
        targets.append((target, item))

    written: list[str] = []
    for target, item in targets:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(item.content, encoding="utf-8")
        except OSError as exc:
            raise InvocationError(f"Could not write generated file {item.path}: {exc}") from exc
        written.append(target.relative_to(root).as_posix())
    return written


class AgentExecutionResult(BaseModel):
    success: bool
    bead_id: str
    output: str = ""
    error: str | None = None
    error_code: str | None = None
    duration_seconds: float = 0.0
    timed_out: bool = False
    exit_code: int | None = None
    mode: str = "cli"
    model: str | None = None
    artifacts: list[str] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class AgentBridge:
    """Invoke the coding agent for one bead at a time."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        session: LLMSession | None = None,
        spawn: SpawnFn = spawn_agent,
    ) -> None:
        self.settings = settings
        self.project_root = settings.project_root_path
        self.session = session
        self._spawn = spawn

    def build_argv(self, bead: Bead) -> list[str]:
        agent = bead.agent or self.settings.agent_name
        return [*shlex.split(self.settings.agent_command), "run", "--agent", agent, "--no-interactive"]

    def validate(self) -> bool:
        """Return True when the agent executable answers ``--version``."""
        try:
            completed = subprocess.run(
                [*shlex.split(self.settings.agent_command), "--version"],
                capture_output=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return completed.returncode == 0

    def execute(self, bead: Bead, context: BeadContext | None = None) -> AgentExecutionResult:
        context = context or BeadContext()
        prompt = build_prompt(bead.id, context.render(), bead.prompt_instruction)
        logger.info("Executing bead %s", bead.id)

        if self.session is None or self.session.mode == "cli":
            try:
                return self.run_cli(bead, prompt)
            except OSError as exc:
                if self.session is None:
                    return AgentExecutionResult(
                        success=False,
                        bead_id=bead.id,
                        error=f"Process spawn failed: {exc}",
                        error_code=InvocationError.code,
                    )
                # Nothing bead-specific has happened yet: degrade the session instead of failing the bead.
                self.session.mark_failed(exc)
                logger.info("Bead %s continues through the LLM session in %s", bead.id, self.session.mode_description)
        return self.run_api(bead, prompt)

    def run_cli(self, bead: Bead, prompt: str) -> AgentExecutionResult:
        """Run the agent subprocess under the sentinel protocol.

        Raises:
            OSError: If the agent process cannot be spawned.
        """
        start = time.monotonic()
        timeout = self.settings.agent_timeout_seconds
        env = {**os.environ, "AXON_BEAD_ID": bead.id}
        process = self._spawn(self.build_argv(bead), self.project_root, env)

        events: queue.Queue[tuple[str, bytes | None]] = queue.Queue()
        threads: list[threading.Thread] = []
        if process.stdin is not None:
            threads.append(threading.Thread(target=_feed_stdin, args=(process.stdin, prompt.encode("utf-8")), daemon=True))
        open_streams: set[str] = set()
        for name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is not None:
                open_streams.add(name)
                threads.append(threading.Thread(target=_pump, args=(name, stream, events), daemon=True))
        for thread in threads:
            thread.start()

        decoders = {name: codecs.getincrementaldecoder("utf-8")(errors="replace") for name in ("stdout", "stderr")}
        buffers = {name: OutputBuffer(self.settings.max_output_chars) for name in ("stdout", "stderr")}
        scanners = {name: SentinelScanner(self.settings.sentinel_window_chars) for name in ("stdout", "stderr")}

        deadline = start + timeout
        timed_out = False
        exit_code: int | None = None

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            if not open_streams:
                try:
                    exit_code = process.wait(timeout=remaining)
                except subprocess.TimeoutExpired:
                    timed_out = True
                break
            try:
                name, chunk = events.get(timeout=min(remaining, _POLL_SECONDS))
            except queue.Empty:
                continue
            if chunk is None:
                open_streams.discard(name)
                text = decoders[name].decode(b"", final=True)
            else:
                text = decoders[name].decode(chunk)
            if not text:
                continue
            buffers[name].append(text)
            scanners[name].feed(text)
            logger.debug("Agent %s [%s]: %s", name, bead.id, text[:_LOG_PREVIEW_CHARS])
            if name == "stdout" and scanners["stdout"].completed:
                break

        duration = time.monotonic() - start
        stdout_text = buffers["stdout"].text()
        stderr_text = buffers["stderr"].text()

        if timed_out:
            process.kill()
            process.wait()
            self._join(threads)
            timeout_error = AgentTimeoutError(f"Timeout: execution exceeded {timeout}s", timeout_seconds=timeout)
            logger.error("Bead %s timed out after %.3fs", bead.id, timeout)
            return AgentExecutionResult(
                success=False,
                bead_id=bead.id,
                output=stdout_text,
                error=timeout_error.message,
                error_code=timeout_error.code,
                duration_seconds=duration,
                timed_out=True,
                exit_code=process.returncode,
            )

        if scanners["stdout"].completed:
            exit_code = self._stop(process)
            self._join(threads)
            logger.info("Bead %s reported completion after %.1fs", bead.id, duration)
            return AgentExecutionResult(
                success=True,
                bead_id=bead.id,
                output=strip_sentinels(stdout_text),
                duration_seconds=duration,
                exit_code=exit_code,
            )

        self._join(threads)
        failure = scanners["stderr"].failure_reason or scanners["stdout"].failure_reason
        error_code: str | None = None
        if failure is not None:
            error = failure
        elif exit_code != 0:
            error = f"Process exited with code {exit_code}"
            error_code = InvocationError.code
            if stderr_text.strip():
                error += f": {stderr_text.strip()[-500:]}"
        else:
            error = None
        if error:
            logger.error("Bead %s failed: %s", bead.id, error)
        return AgentExecutionResult(
            success=error is None,
            bead_id=bead.id,
            output=strip_sentinels(stdout_text),
            error=error,
            error_code=error_code,
            duration_seconds=duration,
            exit_code=exit_code,
        )

    def _stop(self, process: AgentProcess) -> int | None:
        """Terminate gracefully, then kill once the grace window passes."""
        if process.poll() is not None:
            return process.returncode
        process.terminate()
        try:
            return process.wait(timeout=self.settings.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Agent did not exit within %.1fs of SIGTERM; killing", self.settings.kill_grace_seconds)
            process.kill()
            return process.wait()

    @staticmethod
    def _join(threads: list[threading.Thread]) -> None:
        for thread in threads:
            thread.join(timeout=_JOIN_SECONDS)

    def run_api(self, bead: Bead, prompt: str) -> AgentExecutionResult:
        """Send the completion contract to the LLM session and apply the returned files."""
        if self.session is None:
            raise InvocationError("API mode requires an LLM session")
        start = time.monotonic()
        try:
            response = self.session.chat(
                messages_from_prompt(prompt + "\n" + API_OUTPUT_CONTRACT),
                LLMOptions(timeout=self.settings.agent_timeout_seconds),
            )
        except ProviderResolutionError as exc:
            logger.error("Bead %s: no LLM backend available: %s", bead.id, exc.message)
            return AgentExecutionResult(
                success=False,
                bead_id=bead.id,
                error=exc.message,
                error_code=exc.code,
                duration_seconds=time.monotonic() - start,
                mode=self.session.mode,
            )

        result = AgentExecutionResult(
            success=False,
            bead_id=bead.id,
            output=strip_sentinels(response.content),
            mode=self.session.mode,
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=response.cost_usd,
        )
        failure = FAILURE_PATTERN.search(response.content)
        if not COMPLETION_PATTERN.search(response.content):
            result.error = failure.group(1) if failure else "Response did not contain the completion sentinel"
        else:
            try:
                result.artifacts = write_generated_files(self.project_root, parse_generated_code(response.content))
                result.success = True
            except InvocationError as exc:
                result.error = exc.message
                result.error_code = exc.code
        result.duration_seconds = time.monotonic() - start
        if result.error:
            logger.error("Bead %s failed in API mode: %s", bead.id, result.error)
        return result

