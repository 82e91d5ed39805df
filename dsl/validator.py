"""Client for the external Strudel evaluator used to validate generated code."""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Protocol

from pydantic import ValidationError

from core.config import settings
from core.errors import CodeValidationError
from core.models import ValidationResult

logger = logging.getLogger(__name__)


class CodeValidator(Protocol):
    async def validate(self, code: str) -> ValidationResult:
        """Return whether `code` evaluates, with a short diagnostic if not."""
        ...


class SubprocessValidator:
    """Runs the evaluator command with code on stdin, reads one JSON verdict.

    The command must print `{"valid": bool, "error": str, "line"?: int,
    "column"?: int}` on stdout.
    """

    def __init__(self, command: str, timeout: float | None = None):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("validator command is empty")
        self.timeout = timeout if timeout is not None else settings.validator_timeout_seconds

    async def validate(self, code: str) -> ValidationResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CodeValidationError(f"failed to start validator: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(code.encode("utf-8")), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise CodeValidationError(f"validator timed out after {self.timeout}s") from e
        except asyncio.CancelledError:
            process.kill()
            raise

        if not stdout.strip():
            raise CodeValidationError(
                f"validator produced no output (exit {process.returncode}): "
                f"{stderr.decode('utf-8', 'replace').strip()}"
            )

        try:
            result = ValidationResult.model_validate_json(stdout)
        except ValidationError as e:
            raise CodeValidationError(f"malformed validator output: {e}") from e

        logger.debug("Validation result: valid=%s error=%s", result.valid, result.error)
        return result


def validator_from_settings() -> SubprocessValidator | None:
    """Build the configured validator, or None when validation is disabled."""
    if not settings.validator_command:
        logger.warning("No validator command configured, continuing without validation")
        return None
    return SubprocessValidator(settings.validator_command)
