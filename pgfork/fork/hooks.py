from __future__ import annotations

import logging
import os
import subprocess
from typing import Mapping

from pgfork.fork.errors import HookError
from pgfork.fork.types import HookConfig

HOOK_STAGES = ("pre_fork", "post_fork", "on_error")
OUTPUT_TAIL_CHARS = 2000


class HookRunner:
    """Runs user shell commands around a fork.

    Commands run in order through ``sh -c`` with the job context exported as
    ``PGFORK_*`` environment variables. A non-zero exit fails the stage.
    """

    def __init__(
        self,
        hooks: HookConfig,
        *,
        job_id: str,
        target_database: str,
        timeout_seconds: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self._hooks = hooks
        self._job_id = job_id
        self._target_database = target_database
        self._timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger(__name__)

    def commands(self, stage: str) -> tuple[str, ...]:
        if stage not in HOOK_STAGES:
            raise ValueError(f"Unknown hook stage: {stage}")
        return getattr(self._hooks, stage)

    def _environment(self, stage: str, extra: Mapping[str, str]) -> dict[str, str]:
        env = dict(os.environ)
        env["PGFORK_JOB_ID"] = self._job_id
        env["PGFORK_TARGET_DATABASE"] = self._target_database
        env["PGFORK_HOOK_STAGE"] = stage
        env.update(extra)
        return env

    def run(self, stage: str, *, extra_env: Mapping[str, str] | None = None) -> int:
        commands = self.commands(stage)
        env = self._environment(stage, extra_env or {})
        for index, command in enumerate(commands, start=1):
            self._logger.info("Running %s hook %d/%d: %s", stage, index, len(commands), command)
            try:
                completed = subprocess.run(
                    ["sh", "-c", command],
                    check=False,
                    capture_output=True,
                    text=True,
                    env=env,
                    timeout=self._timeout_seconds,
                )
            except subprocess.TimeoutExpired as exc:
                raise HookError(f"{stage} hook timed out after {exc.timeout:.0f}s: {command}") from exc
            except OSError as exc:
                raise HookError(f"{stage} hook could not be started: {command}: {exc}") from exc

            if completed.stdout.strip():
                self._logger.debug("%s hook output: %s", stage, completed.stdout.strip()[-OUTPUT_TAIL_CHARS:])
            if completed.returncode != 0:
                detail = (completed.stderr or completed.stdout or "").strip()[-OUTPUT_TAIL_CHARS:]
                message = f"{stage} hook exited with status {completed.returncode}: {command}"
                if detail:
                    message = f"{message}: {detail}"
                raise HookError(message)
        return len(commands)

    def run_on_error(self, error: Exception) -> None:
        """Error hooks never replace the original failure; their own failures are only logged."""
        try:
            self.run("on_error", extra_env={"PGFORK_ERROR": str(error)})
        except HookError as hook_error:
            self._logger.error("on_error hook failed: %s", hook_error)
