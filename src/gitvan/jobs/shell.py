# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Shell command runner for declarative jobs.

Executes commands with {variable} substitution inside a worktree, under
the deterministic environment (TZ=UTC, LANG=C) and a per-command timeout.
"""

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from gitvan.errors import JobTimeoutError
from gitvan.git import git_env

ESCAPE_OPEN = "\x00ESCAPED_OPEN\x00"
ESCAPE_CLOSE = "\x00ESCAPED_CLOSE\x00"


class CommandRunner:
    """Executes shell commands with variable substitution."""

    def __init__(
        self,
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        dry_run: bool = False,
    ):
        """
        Initialize command runner.

        Args:
            cwd: Working directory for every command (the worktree)
            env: Extra environment variables layered over the deterministic base
            dry_run: If True, only log what would be executed
        """
        self.cwd = Path(cwd)
        self.env = git_env(env)
        self.dry_run = dry_run
        self.logger = logging.getLogger(__name__)

    def substitute_variables(self, command: str, variables: Dict[str, Any]) -> str:
        """
        Substitute {name} placeholders; {{text}} is an escape for {text}.

        Example:
            >>> runner.substitute_variables("echo {name}", {"name": "Alice"})
            'echo Alice'
            >>> runner.substitute_variables("echo {{literal}}", {})
            'echo {literal}'
        """
        result = command.replace("{{", ESCAPE_OPEN).replace("}}", ESCAPE_CLOSE)

        for key, value in variables.items():
            placeholder = f"{{{key}}}"
            if placeholder in result:
                result = result.replace(placeholder, str(value))
                self.logger.debug(f"Substituted {{{key}}} -> {value}")

        remaining = re.findall(r"\{(\w+)\}", result)
        if remaining:
            self.logger.warning(f"Unsubstituted variables: {remaining}")

        return result.replace(ESCAPE_OPEN, "{").replace(ESCAPE_CLOSE, "}")

    def run(
        self,
        command: str,
        variables: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> Optional[subprocess.CompletedProcess]:
        """
        Execute a shell command in the worktree.

        Returns:
            CompletedProcess if executed, None in dry-run mode

        Raises:
            subprocess.CalledProcessError: If the command fails and check=True
            JobTimeoutError: If the command outlives `timeout`
        """
        final_command = self.substitute_variables(command, variables or {})

        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would execute: {final_command}")
            return None

        if len(final_command) > 100:
            self.logger.info(f"Executing: {final_command[:100]}...")
        else:
            self.logger.info(f"Executing: {final_command}")

        try:
            result = subprocess.run(
                final_command,
                shell=True,
                check=check,
                capture_output=True,
                text=True,
                cwd=self.cwd,
                env=self.env,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise JobTimeoutError(f"command timed out after {timeout}s: {final_command[:100]}")
        except subprocess.CalledProcessError as e:
            self.logger.error(f"Command failed with exit code {e.returncode}")
            if e.stderr:
                self.logger.error(f"STDERR:\n{e.stderr}")
            raise

        if result.stdout:
            self.logger.debug(f"STDOUT:\n{result.stdout}")
        if result.stderr:
            self.logger.warning(f"STDERR:\n{result.stderr}")
        return result

    def run_multiple(
        self,
        commands: List[Union[str, Dict[str, Any]]],
        variables: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> List[Optional[subprocess.CompletedProcess]]:
        """
        Execute commands in sequence.

        Each item is a command string or a mapping with `command` and an
        optional `condition` (see evaluate_condition).
        """
        results = []
        for i, item in enumerate(commands, 1):
            self.logger.debug(f"Command {i}/{len(commands)}")
            if isinstance(item, dict):
                condition = item.get("condition")
                if condition and not self.evaluate_condition(condition, variables):
                    self.logger.info(f"Skipping command {i} (condition not met)")
                    results.append(None)
                    continue
                command = item.get("command")
                if not command:
                    self.logger.error(f"Command {i} has no 'command' key")
                    results.append(None)
                    continue
            else:
                command = item
            results.append(self.run(command, variables, timeout=timeout))
        return results

    def resolve_path(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.cwd / candidate

    def evaluate_condition(
        self,
        condition: Dict[str, Any],
        variables: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Evaluate a step or command condition; all entries must pass.

        Supported conditions:
        - file_exists: path
        - file_not_empty: path
        - json_has_field: {file: path, field: name}
        """
        variables = variables or {}

        for cond_type, cond_value in condition.items():
            if cond_type == "file_exists":
                path = self.resolve_path(self.substitute_variables(str(cond_value), variables))
                if not path.exists():
                    self.logger.info(f"Condition failed: file does not exist: {path}")
                    return False

            elif cond_type == "file_not_empty":
                path = self.resolve_path(self.substitute_variables(str(cond_value), variables))
                if not path.exists() or path.stat().st_size == 0:
                    self.logger.info(f"Condition failed: file missing or empty: {path}")
                    return False

            elif cond_type == "json_has_field":
                if not isinstance(cond_value, dict):
                    self.logger.error("json_has_field requires a mapping with 'file' and 'field'")
                    return False
                path = self.resolve_path(self.substitute_variables(str(cond_value.get("file", "")), variables))
                field_name = cond_value.get("field", "")
                try:
                    data = json.loads(path.read_text())
                except (OSError, json.JSONDecodeError) as e:
                    self.logger.info(f"Condition failed: cannot read JSON {path}: {e}")
                    return False
                if not isinstance(data, dict) or field_name not in data:
                    self.logger.info(f"Condition failed: field '{field_name}' not in {path}")
                    return False

            else:
                self.logger.warning(f"Unknown condition type: {cond_type}")
                return False

        return True
