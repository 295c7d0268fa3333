"""Configuration models for the parallel test runner."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ViewportConfig(BaseModel):
    width: int = 1920
    height: int = 1080


class ScreencastConfig(BaseModel):
    enabled: bool = True
    format: Literal["jpeg", "png"] = "jpeg"
    quality: int = 60
    max_width: int = 1920
    max_height: int = 1080
    every_nth_frame: int = 2

    @field_validator("quality")
    @classmethod
    def check_quality(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("quality must be between 1 and 100")
        return v

    @field_validator("every_nth_frame")
    @classmethod
    def check_every_nth_frame(cls, v: int) -> int:
        if v < 1:
            raise ValueError("every_nth_frame must be at least 1")
        return v


class RunnerConfig(BaseModel):
    # Browser
    cdp_endpoint: str = "http://localhost:9222"
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    screencast: ScreencastConfig = Field(default_factory=ScreencastConfig)

    # Workspace layout
    workspace_root: str = "."
    data_dir: str = ".webtestpilot"

    # Test agent
    engine_path: str = "WebTestPilot/webtestpilot"
    python_path: Optional[str] = None
    agent_env: dict[str, str] = Field(default_factory=lambda: {"BAML_LOG": "info"})

    # Scheduling
    launch_delay_seconds: float = 1.0
    stop_grace_seconds: float = 2.0

    # Output interpretation
    parser_mode: Literal["rich", "basic"] = "rich"

    # Output locations
    log_dir: str = ".webtestpilot/logs"
    report_output_dir: str = "./webpilot-reports"

    @field_validator("launch_delay_seconds", "stop_grace_seconds")
    @classmethod
    def check_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must not be negative")
        return v

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_root).expanduser()

    @property
    def engine_dir(self) -> Path:
        return self.workspace_path / self.engine_path

    @property
    def agent_python(self) -> Path:
        if self.python_path:
            return Path(self.python_path).expanduser()
        return self.engine_dir / ".venv" / "bin" / "python"

    @property
    def agent_cli_script(self) -> Path:
        return self.engine_dir / "src" / "cli.py"

    @property
    def agent_config_file(self) -> Path:
        return self.engine_dir / "src" / "config.yaml"

    @property
    def data_path(self) -> Path:
        return self.workspace_path / self.data_dir

    @property
    def log_path(self) -> Path:
        return self.workspace_path / self.log_dir

    @classmethod
    def load(cls, path: str | Path) -> "RunnerConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
