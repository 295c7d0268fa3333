"""Agent process launcher — spawns the external test agent for one run."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from webpilot.models.config import RunnerConfig
from webpilot.models.workspace import FixtureItem, TestItem

from .interfaces import (
    AgentLaunchError,
    AgentProcessHandle,
    DefinitionStore,
    EnvironmentSelector,
)

logger = logging.getLogger(__name__)


class AgentLauncher:
    """Builds the agent command line and spawns it as an asyncio subprocess.

    Fixture and environment files are resolved through the injected store
    and environment selector rather than any process-wide registry.
    """

    def __init__(
        self,
        config: RunnerConfig,
        store: DefinitionStore | None = None,
        environments: EnvironmentSelector | None = None,
    ):
        self.config = config
        self.store = store
        self.environments = environments

    def build_args(self, test: TestItem, target_id: str) -> list[str]:
        """Return the agent argv (without the interpreter) for a test and tab."""
        args = [
            str(self.config.agent_cli_script),
            test.full_path,
            "--config", str(self.config.agent_config_file),
            "--cdp-endpoint", self.config.cdp_endpoint,
        ]

        fixture_path = self._fixture_path(test)
        if fixture_path:
            args += ["--fixture-file-path", fixture_path]

        environment = self.environments.selected() if self.environments else None
        if environment is not None and environment.full_path:
            args += ["--environment-file-path", environment.full_path]

        args += ["--target-id", target_id]
        return args

    def build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.config.agent_env)
        return env

    def _fixture_path(self, test: TestItem) -> Optional[str]:
        if not test.fixture_id or self.store is None:
            return None
        fixture = self.store.get_by_id(test.fixture_id)
        if not isinstance(fixture, FixtureItem):
            logger.warning("Fixture %s for test %s not found", test.fixture_id, test.name)
            return None
        return fixture.full_path or None

    async def spawn(self, test: TestItem, target_id: str) -> AgentProcessHandle:
        """Spawn the agent process with piped stdout and stderr."""
        cli_script = self.config.agent_cli_script
        if not cli_script.exists():
            raise AgentLaunchError(f"CLI script not found: {cli_script}")

        python = str(self.config.agent_python)
        args = self.build_args(test, target_id)
        logger.debug("Spawning agent for %s: %s %s", test.name, python, " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                python,
                *args,
                env=self.build_env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AgentLaunchError(f"Failed to start agent process: {e}") from e

        logger.info("Agent started for %s (pid=%s, target=%s)", test.name, process.pid, target_id)
        return process


async def terminate_gracefully(process: AgentProcessHandle, grace_seconds: float) -> Optional[int]:
    """Send SIGTERM, then SIGKILL if the process is still alive after the grace period.

    Returns the exit code, or None if it could not be observed.
    """
    if process.returncode is not None:
        return process.returncode

    try:
        process.terminate()
    except ProcessLookupError:
        return process.returncode

    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning("Process %s ignored SIGTERM for %.1fs, sending SIGKILL",
                       process.pid, grace_seconds)

    try:
        process.kill()
    except ProcessLookupError:
        return process.returncode
    return await process.wait()
