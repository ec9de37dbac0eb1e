"""Planner adapters: free-text completions for decomposition and triage."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

import httpx

from agent_tree.config import PlannerSettings
from agent_tree.coordination.errors import PlannerError
from agent_tree.coordination.repository import TaskGraphRepository

logger = logging.getLogger(__name__)

TRANSIENT_EXIT_CODES = (137, 143)
ERROR_PREVIEW_CHARS = 500


class Planner(Protocol):
    """Protocol implemented by completion backends."""

    def complete(self, prompt: str, *, purpose: str, task_id: str | None = None) -> str:
        """Return completion text or raise PlannerError."""


class CliPlanner:
    """Run a command template such as ``claude -p {prompt}`` per completion."""

    def __init__(self, *, command_template: str, timeout_seconds: int = 300) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def complete(self, prompt: str, *, purpose: str, task_id: str | None = None) -> str:
        with tempfile.TemporaryDirectory(prefix="agent-tree-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            argv = _build_argv(self.command_template, prompt=prompt, prompt_file=prompt_file)
            logger.debug("Planner call %s via %s (task=%s)", purpose, argv[0], task_id)
            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as error:
                raise PlannerError(
                    f"Planner command not found: {argv[0]}",
                    transient=False,
                ) from error
            except subprocess.TimeoutExpired as error:
                raise PlannerError(
                    f"Planner command timed out after {self.timeout_seconds}s",
                    transient=True,
                ) from error
            except OSError as error:
                raise PlannerError(
                    f"Planner command failed to start: {error}",
                    transient=True,
                ) from error

        if completed.returncode != 0:
            raise PlannerError(
                f"Planner command exited with {completed.returncode}: "
                f"{completed.stderr.strip()[:ERROR_PREVIEW_CHARS]}",
                transient=completed.returncode in TRANSIENT_EXIT_CODES,
            )
        return completed.stdout.strip()


def _build_argv(template: str, *, prompt: str, prompt_file: Path) -> list[str]:
    stripped = template.strip()
    if "{prompt" not in stripped:
        raise PlannerError(
            "Planner command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise PlannerError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise PlannerError("Planner command template rendered empty command.", transient=False)
    return argv


class HttpPlanner:
    """OpenAI-compatible chat completions endpoint."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 300.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.model = model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
        )

    def complete(self, prompt: str, *, purpose: str, task_id: str | None = None) -> str:
        body = {"model": self.model, "messages": [{"role": "user", "content": prompt}]}
        try:
            response = self._client.post(self.url, json=body)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling planner at %s (%s)", self.url, purpose)
            raise PlannerError("Planner request timed out", transient=True) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling planner at %s: %s", self.url, error)
            raise PlannerError(f"Planner request failed: {error}", transient=True) from error

        if not response.is_success:
            raise PlannerError(
                f"Planner returned HTTP {response.status_code}: "
                f"{response.text[:ERROR_PREVIEW_CHARS]}",
                transient=response.status_code == 429 or response.status_code >= 500,
            )
        try:
            return str(response.json()["choices"][0]["message"]["content"]).strip()
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise PlannerError(f"Unexpected planner response shape: {error}") from error

    def close(self) -> None:
        self._client.close()


class RecordingPlanner:
    """Wrap a planner and log every call to the planner-call table."""

    def __init__(self, inner: Planner, *, repository: TaskGraphRepository) -> None:
        self.inner = inner
        self.repository = repository

    def complete(self, prompt: str, *, purpose: str, task_id: str | None = None) -> str:
        try:
            text = self.inner.complete(prompt, purpose=purpose, task_id=task_id)
        except PlannerError as error:
            self.repository.record_planner_call(
                purpose=purpose,
                task_id=task_id,
                prompt_chars=len(prompt),
                response_chars=0,
                succeeded=False,
                error_summary=str(error)[:ERROR_PREVIEW_CHARS],
            )
            raise
        self.repository.record_planner_call(
            purpose=purpose,
            task_id=task_id,
            prompt_chars=len(prompt),
            response_chars=len(text),
            succeeded=True,
        )
        return text

    def close(self) -> None:
        close = getattr(self.inner, "close", None)
        if close is not None:
            close()


def build_planner(settings: PlannerSettings, *, repository: TaskGraphRepository) -> Planner:
    """Construct the configured backend wrapped in call recording."""

    inner: Planner
    if settings.backend == "http":
        inner = HttpPlanner(
            url=settings.http_url,
            model=settings.http_model,
            api_key=os.getenv(settings.http_api_key_env),
            timeout_seconds=float(settings.timeout_seconds),
        )
    else:
        inner = CliPlanner(
            command_template=settings.command_template,
            timeout_seconds=settings.timeout_seconds,
        )
    return RecordingPlanner(inner, repository=repository)
